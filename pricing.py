"""
Quote engine.

``compute_quote`` prices a cart for a given customer without touching any
persisted state. Order creation calls it again server-side, so the totals a
client sees and the totals an order stores come from the same code path.

Order of operations:

1. resolve cart lines to active products and merge lines of the same product
2. pre-check stock for every line
3. apply the bundle price override by customer type
4. global discount (P.IVA or first purchase) on the non-bundle subtotal,
   allocated to lines with largest-remainder rounding
5. coupon discount on what is left of each line after step 4
6. shipping on the discounted total
"""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

import catalog
import config
import coupons
import database
from errors import (
    CouponNotApplicable,
    InsufficientStock,
    InternalError,
    InvalidCoupon,
    UnknownProduct,
    ValidationError,
)
from money import normalize_coupon_code, normalize_slug, percent_of, round_half_up, split_cents
from schemas import CartLine, OrderItem

logger = logging.getLogger(__name__)

# Statuses that make an order count as a "previous purchase". Cancelled orders do not.
PRIOR_ORDER_STATUSES = ["draft", "pending_payment", "paid", "processing", "shipped", "completed", "refunded"]


class DiscountBreakdown(BaseModel):
    global_discount_cents: int = 0
    coupon_discount_cents: int = 0


class Quote(BaseModel):
    items: List[OrderItem]
    subtotal_cents: int
    discount_cents: int
    discount_label: Optional[str] = None
    discount_type: str = "none"
    shipping_cents: int
    total_cents: int
    coupon_code_applied: Optional[str] = None
    discount_breakdown: DiscountBreakdown


def merge_cart(cart: List[CartLine]) -> Dict[str, int]:
    merged: Dict[str, int] = {}
    for line in cart:
        merged[line.product_id] = merged.get(line.product_id, 0) + line.qty
    return merged


def merge_by_product(requested: Dict[str, int], products: Dict[str, Dict[str, Any]]) -> Dict[str, int]:
    """Fold identifiers that resolve to the same product into the first one seen."""
    first: Dict[str, str] = {}
    merged: Dict[str, int] = {}
    for ident, qty in requested.items():
        key = first.setdefault(str(products[ident]["_id"]), ident)
        merged[key] = merged.get(key, 0) + qty
    return merged


def has_prior_orders(user_id: Any) -> bool:
    return database.db["order"].count_documents(
        {"user_id": str(user_id), "status": {"$in": PRIOR_ORDER_STATUSES}}, limit=1
    ) > 0


def is_bundle(slug: Optional[str]) -> bool:
    return bool(slug) and normalize_slug(slug) == normalize_slug(config.BUNDLE_PRODUCT_SLUG)


def _unit_price(product: Dict[str, Any], customer_type: str) -> int:
    if is_bundle(product.get("product_id")):
        if customer_type == "piva":
            return config.BUNDLE_PRICE_PIVA_CENTS
        return config.BUNDLE_PRICE_PRIVATE_CENTS
    price = product.get("price_cents")
    if isinstance(price, bool) or not isinstance(price, int) or price < 0:
        raise InternalError("Invalid product price")
    return price


def global_discount_tier(user: Dict[str, Any]):
    """(percent, label, discount_type) for the customer, or (0, None, "none")."""
    if user.get("customer_type") == "piva":
        pct = config.PIVA_DISCOUNT_PERCENT
        return pct, f"Sconto P.IVA -{pct:g}%", "piva"
    if user.get("customer_type") == "private" and not has_prior_orders(user["_id"]):
        pct = config.FIRST_ORDER_DISCOUNT_PERCENT
        return pct, f"Primo acquisto -{pct:g}%", "first_order"
    return 0, None, "none"


def allocate(total: int, weights: List[int], percent) -> List[int]:
    """Split ``total`` over lines in proportion to ``weights``.

    Each line first gets the floor of its exact share; the cents left over go
    one at a time to the lines with the largest fractional part, earlier lines
    winning ties. No line gets more than its own weight.
    """
    rate = Decimal(str(percent)) / Decimal(100)
    rows = []
    for i, weight in enumerate(weights):
        whole, fraction = split_cents(Decimal(weight) * rate)
        rows.append((i, whole, fraction))

    remaining = total - sum(whole for _, whole, _ in rows)
    shares = [0] * len(weights)
    # sorted() is stable, so equal remainders keep input order
    for i, whole, _ in sorted(rows, key=lambda r: r[2], reverse=True):
        share = whole
        if remaining > 0:
            share += 1
            remaining -= 1
        shares[i] = min(share, weights[i])
    return shares


def _coupon_line_discount(rule: Dict[str, Any], remaining: int, qty: int) -> int:
    kind = str(rule.get("type") or "").strip()
    try:
        value = Decimal(str(rule.get("value")))
    except ArithmeticError:
        raise InternalError("Coupon misconfigured")
    if not value.is_finite() or value <= 0:
        raise InternalError("Coupon misconfigured")

    if kind == "percent":
        if value > 100:
            raise InternalError("Coupon misconfigured")
        discount = percent_of(remaining, value)
    elif kind == "fixed":
        discount = round_half_up(value) * qty
    else:
        raise InternalError("Coupon misconfigured")
    return min(discount, remaining)


def compute_quote(user: Dict[str, Any], cart: List[CartLine], coupon_code: Optional[str] = None) -> Quote:
    requested = merge_cart(cart)
    if not requested:
        raise ValidationError("Cart is empty", {"items": "Cart is empty"})

    products = catalog.find_active_products(requested.keys())
    missing = [pid for pid in requested if pid not in products]
    if missing:
        raise UnknownProduct(missing)
    merged = merge_by_product(requested, products)

    short = {}
    for pid, qty in merged.items():
        stock = int(products[pid].get("stock_qty") or 0)
        if qty > stock:
            short[pid] = stock
    if short:
        raise InsufficientStock(short)

    customer_type = user.get("customer_type") or "private"
    lines: List[Dict[str, Any]] = []
    for pid, qty in merged.items():
        product = products[pid]
        unit = _unit_price(product, customer_type)
        lines.append({
            "product_id": pid,
            "product_ref": str(product["_id"]),
            "product_slug": product.get("product_id"),
            "name": product.get("name") or "",
            "unit_price_cents": unit,
            "qty": qty,
            "line_total_cents": unit * qty,
            "global_discount_cents": 0,
            "coupon_discount_cents": 0,
        })

    subtotal = sum(l["line_total_cents"] for l in lines)

    # Global discount, never on the bundle
    eligible = [i for i, l in enumerate(lines) if not is_bundle(l["product_slug"])]
    base = sum(lines[i]["line_total_cents"] for i in eligible)
    percent, global_label, discount_type = global_discount_tier(user)
    global_discount = percent_of(base, percent) if percent else 0
    if global_discount <= 0:
        global_discount, global_label, discount_type = 0, None, "none"
    else:
        shares = allocate(global_discount, [lines[i]["line_total_cents"] for i in eligible], percent)
        for i, share in zip(eligible, shares):
            lines[i]["global_discount_cents"] = share

    # Coupon, on what the global discount left of each line
    coupon_applied = None
    coupon_discount = 0
    code = normalize_coupon_code(coupon_code) if coupon_code else ""
    if code:
        coupon = coupons.find_active_coupon(code)
        if not coupon:
            raise InvalidCoupon(code)
        rules = {}
        for rule in coupon.get("rules") or []:
            slug = normalize_slug(rule.get("product_id"))
            if slug:
                rules[slug] = rule
        for line in lines:
            rule = rules.get(normalize_slug(line["product_slug"]))
            if not rule:
                continue
            remaining = max(0, line["line_total_cents"] - line["global_discount_cents"])
            line["coupon_discount_cents"] = _coupon_line_discount(rule, remaining, line["qty"])
            coupon_discount += line["coupon_discount_cents"]
        if coupon_discount <= 0:
            raise CouponNotApplicable(code)
        coupon_applied = code

    discount = global_discount + coupon_discount
    label = None
    if discount > 0:
        parts = []
        if global_discount and global_label:
            parts.append(global_label)
        if coupon_applied:
            parts.append(f"Coupon {coupon_applied}")
        label = " + ".join(parts) or None

    discounted = max(0, subtotal - discount)
    shipping = 0 if discounted >= config.FREE_SHIPPING_THRESHOLD_CENTS else max(0, config.SHIPPING_FEE_CENTS)
    logger.debug("Quote for %s: subtotal=%s discount=%s shipping=%s", user.get("email"), subtotal, discount, shipping)

    return Quote(
        items=[OrderItem(**l) for l in lines],
        subtotal_cents=subtotal,
        discount_cents=discount,
        discount_label=label,
        discount_type=discount_type,
        shipping_cents=shipping,
        total_cents=discounted + shipping,
        coupon_code_applied=coupon_applied,
        discount_breakdown=DiscountBreakdown(
            global_discount_cents=global_discount,
            coupon_discount_cents=coupon_discount,
        ),
    )
