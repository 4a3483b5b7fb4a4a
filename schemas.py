"""
Q-Beauty Database Schemas

Each Pydantic model in the first half represents one MongoDB collection. The
collection name is the snake_case class name. Example: class OrderCounter ->
collection "order_counter".

The second half holds the validated input payloads. Request bodies are parsed
into these before any domain code runs, so services never coerce raw JSON.
"""
import re
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

from money import is_valid_coupon_code, normalize_coupon_code

ORDER_STATUSES = (
    "draft",
    "pending_payment",
    "paid",
    "processing",
    "shipped",
    "completed",
    "cancelled",
    "refunded",
)
OrderStatus = Literal[
    "draft", "pending_payment", "paid", "processing", "shipped", "completed", "cancelled", "refunded"
]
CustomerType = Literal["private", "piva"]


# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------

class User(BaseModel):
    email: EmailStr
    password_hash: str
    customer_type: CustomerType
    role: str = Field("user", description="user | admin")
    first_name: str
    last_name: str
    phone: Optional[str] = None
    company_name: Optional[str] = None
    vat_number: Optional[str] = None
    reset_password_token_hash: Optional[str] = None
    reset_password_expires_at: Optional[datetime] = None
    reset_password_used_at: Optional[datetime] = None


class Address(BaseModel):
    user_id: str
    label: str = ""
    is_default: bool = False
    name: str = ""
    surname: str = ""
    phone: str = ""
    email: str = ""
    address: str = ""
    street_number: str = ""
    city: str = ""
    cap: str = ""


class Product(BaseModel):
    product_id: str = Field(..., description="Unique slug, immutable after creation")
    name: str
    price_cents: int = Field(..., ge=0)
    compare_at_price_cents: Optional[int] = Field(None, ge=0)
    stock_qty: int = Field(0, ge=0)
    is_active: bool = True
    sort_order: int = Field(9999, ge=0)
    image_url: Optional[str] = None
    short_desc: Optional[str] = None
    description: Optional[str] = None


class CouponRule(BaseModel):
    product_id: str
    type: Literal["percent", "fixed"]
    value: float = Field(..., gt=0)


class Coupon(BaseModel):
    code: str
    name: Optional[str] = None
    is_active: bool = True
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    rules: List[CouponRule] = []


class OrderItem(BaseModel):
    product_id: str = Field(..., description="Identifier as submitted in the cart")
    product_ref: str = Field(..., description="Internal product id")
    product_slug: Optional[str] = None
    name: str
    unit_price_cents: int = Field(..., ge=0)
    qty: int = Field(..., ge=1)
    line_total_cents: int = Field(..., ge=0)
    global_discount_cents: int = Field(0, ge=0)
    coupon_discount_cents: int = Field(0, ge=0)


class ShippingAddress(BaseModel):
    name: str = ""
    surname: str = ""
    phone: str = ""
    email: str = ""
    address: str = ""
    street_number: str = ""
    city: str = ""
    cap: str = ""
    tax_code: Optional[str] = None


class Shipment(BaseModel):
    carrier_name: str = ""
    tracking_code: str = ""
    tracking_url: str = ""
    shipped_at: Optional[datetime] = None
    notified_at: Optional[datetime] = None


class Order(BaseModel):
    user_id: str
    email: Optional[str] = None
    public_id: str
    status: OrderStatus = "pending_payment"
    items: List[OrderItem]
    subtotal_cents: int = Field(..., ge=0)
    discount_cents: int = Field(0, ge=0)
    global_discount_cents: int = Field(0, ge=0)
    coupon_discount_cents: int = Field(0, ge=0)
    coupon_code_applied: Optional[str] = None
    discount_label: Optional[str] = None
    discount_type: str = Field("none", description="none | piva | first_order")
    shipping_cents: int = Field(0, ge=0)
    total_cents: int = Field(..., ge=0)
    currency: str = "EUR"
    shipping_address: ShippingAddress
    shipping_address_ref: Optional[str] = None
    shipment: Optional[Shipment] = None
    payment_provider: Optional[str] = None
    paid_at: Optional[datetime] = None
    payment_email_sent_at: Optional[datetime] = None
    bank_email_sent_at: Optional[datetime] = None
    bank_email_send_count: int = 0


class OrderCounter(BaseModel):
    year: int
    seq: int = 0


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

def _strip_or_none(v):
    if v is None:
        return None
    v = str(v).strip()
    return v or None


def _utc(v: Optional[datetime]) -> Optional[datetime]:
    if v is not None and v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v


def _check_http_url(v: Optional[str]) -> Optional[str]:
    if v and not re.match(r"^https?://\S+$", v):
        raise ValueError("must be an http(s) URL")
    return v


class CartLine(BaseModel):
    product_id: str = Field(..., min_length=1)
    qty: int = Field(..., ge=1)

    @field_validator("product_id", mode="before")
    @classmethod
    def _strip_id(cls, v):
        return str(v).strip() if v is not None else v


class CouponCodeMixin(BaseModel):
    coupon_code: Optional[str] = None

    @field_validator("coupon_code", mode="before")
    @classmethod
    def _check_coupon_code(cls, v):
        v = _strip_or_none(v)
        if v is None:
            return None
        if not is_valid_coupon_code(normalize_coupon_code(v)):
            raise ValueError("invalid coupon code (3-32 chars: letters, digits, _ or -)")
        return v


class ShippingAddressIn(BaseModel):
    name: str
    surname: str
    phone: str
    email: Optional[EmailStr] = None
    address: str
    street_number: Optional[str] = None
    city: str
    cap: str
    tax_code: Optional[str] = None

    @field_validator("name", "surname", "address", "city")
    @classmethod
    def _required(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("required")
        return v

    @field_validator("phone")
    @classmethod
    def _phone(cls, v: str) -> str:
        digits = re.sub(r"\D", "", v or "")
        if not 7 <= len(digits) <= 15:
            raise ValueError("invalid phone number")
        return v

    @field_validator("cap")
    @classmethod
    def _cap(cls, v: str) -> str:
        if not re.match(r"^\d{5}$", (v or "").strip()):
            raise ValueError("CAP must be 5 digits")
        return v.strip()

    @field_validator("tax_code", mode="before")
    @classmethod
    def _tax_code(cls, v):
        v = _strip_or_none(v)
        if v is None:
            return None
        v = v.upper()
        if not (re.match(r"^[A-Z0-9]{16}$", v) or re.match(r"^\d{11}$", v)):
            raise ValueError("tax code must be 16 characters or 11 digits")
        return v


class AddressIn(ShippingAddressIn):
    label: Optional[str] = None
    is_default: bool = False


class ProductCreate(BaseModel):
    product_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    price_cents: int = Field(..., ge=0)
    compare_at_price_cents: Optional[int] = Field(None, ge=0)
    stock_qty: int = Field(..., ge=0)
    is_active: bool = True
    sort_order: int = Field(9999, ge=0)
    image_url: Optional[str] = None
    short_desc: Optional[str] = None
    description: Optional[str] = None

    @field_validator("product_id", "name", mode="before")
    @classmethod
    def _strip(cls, v):
        return str(v).strip() if v is not None else v

    @field_validator("image_url", "short_desc", "description", mode="before")
    @classmethod
    def _optional(cls, v):
        return _strip_or_none(v)

    @field_validator("image_url")
    @classmethod
    def _url(cls, v):
        return _check_http_url(v)

    @model_validator(mode="after")
    def _compare_at(self):
        if self.compare_at_price_cents is not None and self.compare_at_price_cents < self.price_cents:
            raise ValueError("compare_at_price_cents must be >= price_cents")
        return self


class ProductUpdate(BaseModel):
    product_id: Optional[str] = None
    name: Optional[str] = None
    price_cents: Optional[int] = Field(None, ge=0)
    compare_at_price_cents: Optional[int] = Field(None, ge=0)
    stock_qty: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None
    sort_order: Optional[int] = Field(None, ge=0)
    image_url: Optional[str] = None
    short_desc: Optional[str] = None
    description: Optional[str] = None

    @field_validator("image_url", "short_desc", "description", mode="before")
    @classmethod
    def _optional(cls, v):
        return _strip_or_none(v)

    @field_validator("image_url")
    @classmethod
    def _url(cls, v):
        return _check_http_url(v)


class CouponRuleIn(BaseModel):
    product_id: str = Field(..., min_length=1)
    type: Literal["percent", "fixed"]
    value: float = Field(..., gt=0)

    @model_validator(mode="after")
    def _percent_cap(self):
        if self.type == "percent" and self.value > 100:
            raise ValueError("percent value must be at most 100")
        return self


class CouponIn(BaseModel):
    code: str
    name: Optional[str] = None
    is_active: bool = True
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    rules: List[CouponRuleIn] = Field(..., min_length=1)

    @field_validator("code", mode="before")
    @classmethod
    def _code(cls, v):
        code = normalize_coupon_code(v)
        if not is_valid_coupon_code(code):
            raise ValueError("invalid code (3-32 chars: A-Z, 0-9, _ or -)")
        return code

    @field_validator("name", mode="before")
    @classmethod
    def _name(cls, v):
        return _strip_or_none(v)

    @field_validator("starts_at", "ends_at")
    @classmethod
    def _aware(cls, v):
        return _utc(v)

    @model_validator(mode="after")
    def _window(self):
        if self.starts_at and self.ends_at and self.ends_at < self.starts_at:
            raise ValueError("ends_at must be >= starts_at")
        return self


class CouponUpdate(BaseModel):
    code: Optional[str] = None
    name: Optional[str] = None
    is_active: Optional[bool] = None
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    rules: Optional[List[CouponRuleIn]] = None

    @field_validator("code", mode="before")
    @classmethod
    def _code(cls, v):
        if v is None:
            return None
        code = normalize_coupon_code(v)
        if not is_valid_coupon_code(code):
            raise ValueError("invalid code (3-32 chars: A-Z, 0-9, _ or -)")
        return code

    @field_validator("name", mode="before")
    @classmethod
    def _name(cls, v):
        return _strip_or_none(v)

    @field_validator("starts_at", "ends_at")
    @classmethod
    def _aware(cls, v):
        return _utc(v)


class ShipmentIn(BaseModel):
    carrier_name: Optional[str] = None
    tracking_code: Optional[str] = None
    tracking_url: Optional[str] = None

    @field_validator("carrier_name", "tracking_code", "tracking_url", mode="before")
    @classmethod
    def _strip(cls, v):
        return _strip_or_none(v)
