"""
Error taxonomy shared by every domain module.

Domain functions raise these; ``main.py`` turns them into
``{"message": ..., "errors": ...}`` responses with the class status code.
"""
from typing import Any, Dict, Optional


class AppError(Exception):
    status_code = 500
    default_message = "Server error"

    def __init__(self, message: Optional[str] = None, errors: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.errors = errors
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"message": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


class ValidationError(AppError):
    status_code = 400
    default_message = "Validation error"


class Unauthorized(AppError):
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(AppError):
    status_code = 403
    default_message = "Forbidden"


class NotFound(AppError):
    status_code = 404
    default_message = "Not found"


class Conflict(AppError):
    status_code = 409
    default_message = "Conflict"


class InternalError(AppError):
    status_code = 500
    default_message = "Internal server error"


class UpstreamError(AppError):
    status_code = 502
    default_message = "Upstream service error"


# Order pipeline

class UnknownProduct(ValidationError):
    def __init__(self, missing):
        self.missing = list(missing)
        super().__init__(
            f"Unknown or inactive products: {', '.join(self.missing)}",
            {"items": {pid: "Unknown or inactive product" for pid in self.missing}},
        )


class InsufficientStock(Conflict):
    def __init__(self, available: Dict[str, int]):
        self.available = dict(available)
        messages = {pid: f"Insufficient stock: available {qty}" for pid, qty in self.available.items()}
        if len(messages) == 1:
            message = next(iter(messages.values()))
        else:
            message = "Insufficient stock"
        super().__init__(message, {"stock": messages})


class InvalidCoupon(ValidationError):
    def __init__(self, code: str):
        self.code = code
        super().__init__("Invalid or expired coupon", {"coupon_code": "Invalid or expired coupon"})


class CouponNotApplicable(ValidationError):
    def __init__(self, code: str):
        self.code = code
        super().__init__(
            "Coupon does not apply to the products in the cart",
            {"coupon_code": "Coupon does not apply to the products in the cart"},
        )


class AddressRequired(ValidationError):
    def __init__(self):
        super().__init__(
            "Missing shipping_address or shipping_address_id",
            {"shipping_address": "shipping_address or shipping_address_id is required"},
        )
