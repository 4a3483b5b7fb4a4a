import os
import logging
from contextlib import asynccontextmanager
from typing import Optional, List, Dict, Any

from fastapi import FastAPI, Depends, Header, Request, BackgroundTasks, Query
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

import addresses
import auth
import catalog
import config
import coupons
import database
import orders
import payments
from auth import get_current_user, require_admin
from errors import AppError, NotFound
from notifier import Notifier, get_notifier
from pricing import compute_quote
from schemas import (
    AddressIn,
    CartLine,
    CouponCodeMixin,
    CouponIn,
    CouponRuleIn,
    CouponUpdate,
    ProductCreate,
    ProductUpdate,
    ShipmentIn,
    ShippingAddressIn,
    User,
)

# Logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger("qbeauty")


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        database.ensure_indexes()
    except Exception:
        logger.exception("Index bootstrap failed")
    yield


app = FastAPI(title="Q-Beauty API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in config.ALLOWED_ORIGINS] if config.ALLOWED_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handlers
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors: Dict[str, str] = {}
    for err in exc.errors():
        path = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path", "header")]
        message = str(err.get("msg", "Invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        errors[".".join(path) or "body"] = message
    return JSONResponse(status_code=400, content={"message": "Validation error", "errors": errors})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error: %s", exc)
    return JSONResponse(status_code=500, content={"message": "Internal server error"})


# Health and config
@app.get("/")
def root():
    return {"name": config.STORE_NAME, "status": "ok"}


@app.get("/config")
def get_config():
    return {
        "store_name": config.STORE_NAME,
        "currency": config.PRIMARY_CURRENCY,
        "shipping": {
            "free_threshold_cents": config.FREE_SHIPPING_THRESHOLD_CENTS,
            "fee_cents": config.SHIPPING_FEE_CENTS,
        },
        "discounts": {
            "piva_percent": config.PIVA_DISCOUNT_PERCENT,
            "first_order_percent": config.FIRST_ORDER_DISCOUNT_PERCENT,
        },
        "payments": {"stripe": bool(config.STRIPE_SECRET_KEY), "bank_transfer": bool(config.BANK_IBAN)},
    }


# Auth
@app.post("/auth/register", status_code=201)
def register(data: auth.RegisterDTO, notifier: Notifier = Depends(get_notifier)):
    return auth.register_user(data, notifier)


@app.post("/auth/login")
def login(data: auth.LoginDTO):
    return auth.login_user(data.email, data.password)


@app.get("/auth/me")
def me(user: Dict[str, Any] = Depends(get_current_user)):
    return auth.get_me(user["_id"])


@app.patch("/auth/me")
def update_me(data: auth.UpdateMeDTO, user: Dict[str, Any] = Depends(get_current_user)):
    return auth.update_me(user, data)


@app.post("/auth/change-password")
def change_password(data: auth.ChangePasswordDTO, user: Dict[str, Any] = Depends(get_current_user)):
    return auth.change_password(user, data.current_password, data.new_password)


@app.post("/auth/forgot-password")
def forgot_password(data: auth.ForgotPasswordDTO, notifier: Notifier = Depends(get_notifier)):
    return auth.request_password_reset(str(data.email), notifier)


@app.post("/auth/reset-password")
def reset_password(data: auth.ResetPasswordDTO):
    return auth.reset_password_with_token(data.token, data.new_password)


# Addresses
@app.get("/addresses/me")
def my_addresses(user: Dict[str, Any] = Depends(get_current_user)):
    return addresses.list_my_addresses(user)


@app.post("/addresses", status_code=201)
def create_address(data: AddressIn, user: Dict[str, Any] = Depends(get_current_user)):
    return addresses.create_address(user, data)


@app.patch("/addresses/{address_id}/default")
def set_default_address(address_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    return addresses.set_default_address(user, address_id)


# Products
@app.get("/products")
def list_products():
    return catalog.list_active_products()


@app.get("/products/admin")
def admin_list_products(page: int = 1, limit: int = 20, q: Optional[str] = None,
                        user: Dict[str, Any] = Depends(require_admin)):
    return catalog.admin_list_products(page, limit, q)


@app.get("/products/admin/{product_id}")
def admin_get_product(product_id: str, user: Dict[str, Any] = Depends(require_admin)):
    return catalog.admin_get_product(product_id)


@app.get("/products/{product_id}")
def get_product(product_id: str):
    return catalog.get_active_product(product_id)


@app.post("/products", status_code=201)
def create_product(data: ProductCreate, user: Dict[str, Any] = Depends(require_admin)):
    return catalog.create_product(data)


@app.patch("/products/{product_id}")
def update_product(product_id: str, data: ProductUpdate, user: Dict[str, Any] = Depends(require_admin)):
    return catalog.update_product(product_id, data)


@app.delete("/products/{product_id}")
def delete_product(product_id: str, user: Dict[str, Any] = Depends(require_admin)):
    return catalog.soft_delete_product(product_id)


@app.delete("/products/{product_id}/hard")
def hard_delete_product(product_id: str, user: Dict[str, Any] = Depends(require_admin)):
    return catalog.hard_delete_product(product_id)


# Coupons
@app.get("/coupons/admin")
def list_coupons(page: int = 1, limit: int = 20, q: Optional[str] = None,
                 user: Dict[str, Any] = Depends(require_admin)):
    return coupons.list_coupons(page, limit, q)


@app.post("/coupons/admin", status_code=201)
def create_coupon(data: CouponIn, user: Dict[str, Any] = Depends(require_admin)):
    return coupons.create_coupon(data)


@app.get("/coupons/admin/{coupon_id}")
def get_coupon(coupon_id: str, user: Dict[str, Any] = Depends(require_admin)):
    return coupons.get_coupon(coupon_id)


@app.patch("/coupons/admin/{coupon_id}")
def update_coupon(coupon_id: str, data: CouponUpdate, user: Dict[str, Any] = Depends(require_admin)):
    return coupons.update_coupon(coupon_id, data)


@app.delete("/coupons/admin/{coupon_id}")
def delete_coupon(coupon_id: str, user: Dict[str, Any] = Depends(require_admin)):
    return coupons.delete_coupon(coupon_id)


# Orders
class QuoteDTO(CouponCodeMixin):
    items: List[CartLine]


class CreateOrderDTO(CouponCodeMixin):
    items: List[CartLine]
    shipping_address: Optional[ShippingAddressIn] = None
    shipping_address_id: Optional[str] = None


class OrderStatusDTO(BaseModel):
    status: str
    shipment: Optional[ShipmentIn] = None


@app.post("/orders/quote")
def quote(data: QuoteDTO, user: Dict[str, Any] = Depends(get_current_user)):
    return compute_quote(user, data.items, data.coupon_code).model_dump()


@app.post("/orders", status_code=201)
def create_order(data: CreateOrderDTO, user: Dict[str, Any] = Depends(get_current_user)):
    return orders.create_order(user, data.items, data.shipping_address, data.shipping_address_id, data.coupon_code)


@app.get("/orders/me")
def my_orders(user: Dict[str, Any] = Depends(get_current_user)):
    return orders.list_my_orders(user)


@app.get("/orders/admin")
def admin_list_orders(page: int = 1, limit: int = 20, status: Optional[str] = None, q: Optional[str] = None,
                      user: Dict[str, Any] = Depends(require_admin)):
    return orders.admin_list_orders(page, limit, status, q)


@app.get("/orders/admin/stats")
def admin_stats(range_: str = Query("week", alias="range"), year: Optional[int] = None,
                user: Dict[str, Any] = Depends(require_admin)):
    return orders.admin_dashboard_stats(range_, year)


@app.get("/orders/admin/stats/years")
def admin_stats_years(user: Dict[str, Any] = Depends(require_admin)):
    return orders.admin_dashboard_years()


@app.get("/orders/admin/{order_id}")
def admin_get_order(order_id: str, user: Dict[str, Any] = Depends(require_admin)):
    return orders.admin_get_order(order_id)


@app.patch("/orders/admin/{order_id}/status")
def admin_set_status(order_id: str, data: OrderStatusDTO, user: Dict[str, Any] = Depends(require_admin),
                     notifier: Notifier = Depends(get_notifier)):
    return orders.admin_set_order_status(order_id, data.status, data.shipment, notifier)


@app.patch("/orders/admin/{order_id}/cancel")
def admin_cancel(order_id: str, user: Dict[str, Any] = Depends(require_admin)):
    return orders.admin_cancel_order_and_restock(order_id)


# Payments
class CheckoutSessionDTO(BaseModel):
    order_id: str


class BankTransferDTO(BaseModel):
    order_id: str
    force: bool = False


@app.post("/payments/stripe/checkout-session")
def checkout_session(data: CheckoutSessionDTO, user: Dict[str, Any] = Depends(get_current_user)):
    return payments.create_checkout_session(user, data.order_id)


@app.post("/payments/bank-transfer/send-instructions")
def bank_transfer_instructions(data: BankTransferDTO, user: Dict[str, Any] = Depends(get_current_user),
                               notifier: Notifier = Depends(get_notifier)):
    return payments.send_bank_transfer_instructions(user, data.order_id, data.force, notifier)


# Stripe webhook: acknowledge first, reconcile after the response is sent
@app.post("/webhooks/stripe")
async def stripe_webhook(request: Request, background_tasks: BackgroundTasks,
                         stripe_signature: Optional[str] = Header(default=None),
                         notifier: Notifier = Depends(get_notifier)):
    payload = await request.body()
    event = payments.verify_webhook(payload, stripe_signature)
    logger.info("Stripe webhook received: %s %s", event.get("id"), event.get("type"))
    background_tasks.add_task(payments.reconcile_in_background, event, notifier)
    return {"received": True}


# Sample seed endpoint (dev only)
@app.post("/dev/seed")
def seed():
    if not config.ENABLE_DEV_ROUTES:
        raise NotFound()
    if not database.db["user"].find_one({"email": "admin@qbeauty.it"}):
        database.create_document("user", User(
            email="admin@qbeauty.it",
            password_hash=auth.hash_password("admin12345"),
            customer_type="private",
            role="admin",
            first_name="Admin",
            last_name="Q-Beauty",
        ))
    samples = [
        ProductCreate(product_id="SPRAY-100", name="Spray Volumizzante 100ml", price_cents=1790, stock_qty=100,
                      sort_order=1, short_desc="Spray texturizzante"),
        ProductCreate(product_id="SIERO-30", name="Siero Ristrutturante 30ml", price_cents=2490,
                      compare_at_price_cents=2990, stock_qty=50, sort_order=2),
        ProductCreate(product_id=config.BUNDLE_PRODUCT_SLUG, name="Set Experience",
                      price_cents=config.BUNDLE_PRICE_PRIVATE_CENTS, stock_qty=20, sort_order=3),
    ]
    for product in samples:
        if not database.db["product"].find_one({"product_id": product.product_id}):
            catalog.create_product(product)
    if not database.db["coupon"].find_one({"code": "WELCOME10"}):
        coupons.create_coupon(CouponIn(code="WELCOME10", name="Benvenuto",
                                       rules=[CouponRuleIn(product_id="SPRAY-100", type="percent", value=10)]))
    return {"ok": True}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
