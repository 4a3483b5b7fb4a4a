"""
Order lifecycle: creation with stock reservation, the status state machine,
cancellation with restock, and the admin back-office queries.

Every invariant here rests on a single-document conditional write:

* stock is taken with ``stock_qty >= qty`` in the filter
* order numbers come from one upserted ``$inc`` on the yearly counter
* status changes that must happen once are filtered on the current status
* notifications are claimed by setting their timestamp only while it is unset
"""
import logging
import math
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from pymongo import ReturnDocument

import addresses
import catalog
import config
import database
from database import as_utc, create_document, now_utc, to_object_id, to_str_id
from errors import AddressRequired, InsufficientStock, NotFound, ValidationError
from money import normalize_shipping_address
from notifier import Notifier
from pricing import compute_quote
from schemas import ORDER_STATUSES, CartLine, Order, OrderCounter, Shipment, ShipmentIn, ShippingAddressIn

logger = logging.getLogger(__name__)

ADMIN_STATUSES = [s for s in ORDER_STATUSES if s != "draft"]
SETTLED_STATUSES = ("cancelled", "refunded", "completed")
IN_PROGRESS_STATUSES = ["paid", "processing"]
REVENUE_STATUSES = ["paid", "processing", "shipped", "completed"]

_FORWARD = {"draft": 0, "pending_payment": 1, "paid": 2, "processing": 3, "shipped": 4, "completed": 5}

STATS_RANGES = {
    "day": (0, "Oggi"),
    "week": (6, "Ultimi 7 giorni"),
    "month": (29, "Ultimi 30 giorni"),
}


def store_tz() -> ZoneInfo:
    return ZoneInfo(config.STORE_TIMEZONE)


def _order_query(order_id: Any) -> Dict[str, Any]:
    oid = to_object_id(order_id)
    if oid is None:
        raise NotFound("Order not found")
    return {"_id": oid}


def get_order(order_id: Any) -> Dict[str, Any]:
    order = database.db["order"].find_one(_order_query(order_id))
    if not order:
        raise NotFound("Order not found")
    return order


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

def next_public_id(now: Optional[datetime] = None) -> str:
    """Draw the next human order number for the current store-local year."""
    year = (now or now_utc()).astimezone(store_tz()).year
    doc = database.db["order_counter"].find_one_and_update(
        {"year": year},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    counter = OrderCounter.model_validate(doc)
    return f"#{year}{99 + counter.seq}"


def resolve_shipping_address(user: Dict[str, Any], shipping_address: Optional[ShippingAddressIn],
                             shipping_address_id: Optional[str]) -> Tuple[Dict[str, Any], Optional[str]]:
    if shipping_address_id:
        saved = addresses.get_owned_address(user, shipping_address_id)
        return normalize_shipping_address(saved), str(saved["_id"])
    if shipping_address is not None:
        return normalize_shipping_address(shipping_address.model_dump()), None
    raise AddressRequired()


def _rollback(reserved: List[Tuple[Any, int]]) -> None:
    for ref, qty in reversed(reserved):
        try:
            if not catalog.release_stock(ref, qty):
                logger.error("Stock rollback found no product %s (qty %s)", ref, qty)
        except Exception:
            logger.exception("Stock rollback failed for product %s (qty %s)", ref, qty)
    if reserved:
        logger.warning("Rolled back %d stock reservation(s)", len(reserved))


def create_order(user: Dict[str, Any], cart: List[CartLine], shipping_address: Optional[ShippingAddressIn] = None,
                 shipping_address_id: Optional[str] = None, coupon_code: Optional[str] = None) -> Dict[str, Any]:
    quote = compute_quote(user, cart, coupon_code)
    address, address_ref = resolve_shipping_address(user, shipping_address, shipping_address_id)

    reserved: List[Tuple[Any, int]] = []
    try:
        for item in quote.items:
            ref = to_object_id(item.product_ref)
            if ref is None or not catalog.reserve_stock(ref, item.qty):
                available = catalog.current_stock(ref) if ref is not None else 0
                raise InsufficientStock({item.product_id: available})
            reserved.append((ref, item.qty))

        public_id = next_public_id()
        order = Order(
            user_id=str(user["_id"]),
            email=user.get("email"),
            public_id=public_id,
            status="pending_payment",
            items=quote.items,
            subtotal_cents=quote.subtotal_cents,
            discount_cents=quote.discount_cents,
            global_discount_cents=quote.discount_breakdown.global_discount_cents,
            coupon_discount_cents=quote.discount_breakdown.coupon_discount_cents,
            coupon_code_applied=quote.coupon_code_applied,
            discount_label=quote.discount_label,
            discount_type=quote.discount_type,
            shipping_cents=quote.shipping_cents,
            total_cents=quote.total_cents,
            currency=config.PRIMARY_CURRENCY,
            shipping_address=address,
            shipping_address_ref=address_ref,
            shipment=None,
        )
        order_id = create_document("order", order)
    except Exception:
        _rollback(reserved)
        raise

    logger.info("Order %s created for %s: total %s cents", public_id, user.get("email"), quote.total_cents)
    return {
        "order_id": order_id,
        "public_id": public_id,
        "status": "pending_payment",
        "items": [i.model_dump() for i in quote.items],
        "subtotal_cents": quote.subtotal_cents,
        "discount_cents": quote.discount_cents,
        "discount_label": quote.discount_label,
        "discount_type": quote.discount_type,
        "shipping_cents": quote.shipping_cents,
        "total_cents": quote.total_cents,
        "coupon_code_applied": quote.coupon_code_applied,
        "discount_breakdown": quote.discount_breakdown.model_dump(),
    }


def list_my_orders(user: Dict[str, Any]) -> List[Dict[str, Any]]:
    cursor = database.db["order"].find({"user_id": str(user["_id"])}).sort("created_at", -1)
    return [to_str_id(o) for o in cursor]


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

def _customer(order: Dict[str, Any]) -> Dict[str, Any]:
    user = None
    oid = to_object_id(order.get("user_id"))
    if oid is not None:
        user = database.db["user"].find_one({"_id": oid}, {"email": 1, "first_name": 1, "last_name": 1,
                                                           "customer_type": 1, "role": 1})
    return user or {}


def _is_backwards(old: str, new: str) -> bool:
    if old in ("cancelled", "refunded"):
        return new != old
    return new in _FORWARD and old in _FORWARD and _FORWARD[new] < _FORWARD[old]


def _notify_shipment(order: Dict[str, Any], notifier: Notifier) -> bool:
    shipment = order.get("shipment") or {}
    if shipment.get("notified_at") or not (shipment.get("tracking_code") and shipment.get("tracking_url")):
        return False

    now = now_utc()
    claim = database.db["order"].update_one(
        {"_id": order["_id"], "status": "shipped", "shipment.notified_at": None},
        {"$set": {"shipment.notified_at": now}},
    )
    if claim.modified_count != 1:
        return False

    customer = _customer(order)
    to = customer.get("email") or order.get("email")
    result = notifier.send("shipment", {
        "to": to,
        "name": customer.get("first_name", ""),
        "public_id": order.get("public_id") or f"#{order['_id']}",
        "carrier_name": shipment.get("carrier_name", ""),
        "tracking_code": shipment.get("tracking_code", ""),
        "tracking_url": shipment.get("tracking_url", ""),
    })
    if not result.ok:
        database.db["order"].update_one(
            {"_id": order["_id"], "shipment.notified_at": now},
            {"$set": {"shipment.notified_at": None}},
        )
        logger.warning("Shipment email for %s not sent: %s", order.get("public_id"), result.error)
        return False
    logger.info("Shipment email sent for %s", order.get("public_id"))
    return True


def admin_set_order_status(order_id: Any, status: str, shipment: Optional[ShipmentIn], notifier: Notifier) -> Dict[str, Any]:
    status = (status or "").strip()
    if not status:
        raise ValidationError(errors={"status": "status is required"})
    if status not in ADMIN_STATUSES:
        raise ValidationError(errors={"status": f"Invalid status. Allowed: {', '.join(ADMIN_STATUSES)}"})

    order = get_order(order_id)
    incoming = shipment or ShipmentIn()
    existing = order.get("shipment") or {}

    if status == "shipped":
        missing = {}
        if not (incoming.tracking_code or existing.get("tracking_code")):
            missing["tracking_code"] = "Required to mark the order as shipped"
        if not (incoming.tracking_url or existing.get("tracking_url")):
            missing["tracking_url"] = "Required to mark the order as shipped"
        if missing:
            raise ValidationError(errors={"shipment": missing})

    old_status = order.get("status")
    if _is_backwards(old_status, status):
        logger.warning("Order %s moved backwards: %s -> %s", order.get("public_id"), old_status, status)

    now = now_utc()
    sets: Dict[str, Any] = {"status": status, "updated_at": now}
    fields = {k: v for k, v in incoming.model_dump().items() if v}
    needs_shipped_at = status == "shipped" and not existing.get("shipped_at")

    if fields or needs_shipped_at:
        if isinstance(order.get("shipment"), dict):
            for key, value in fields.items():
                sets[f"shipment.{key}"] = value
            if needs_shipped_at:
                sets["shipment.shipped_at"] = now
        else:
            sets["shipment"] = Shipment(**fields, shipped_at=now if needs_shipped_at else None).model_dump()

    database.db["order"].update_one({"_id": order["_id"]}, {"$set": sets})
    if old_status != status:
        logger.info("Order %s status %s -> %s", order.get("public_id"), old_status, status)

    order = get_order(order["_id"])
    if order.get("status") == "shipped":
        _notify_shipment(order, notifier)
        order = get_order(order["_id"])
    return to_str_id(order)


def cancel_unpaid_order(order_id: Any, statuses=("pending_payment", "draft")) -> Optional[Dict[str, Any]]:
    """Cancel the order only while it is still in one of ``statuses``.

    Returns the order as it was before cancelling, or None when it had already
    moved on. Stock reserved at creation goes back to the catalog exactly once,
    by whichever caller wins the conditional update.
    """
    before = database.db["order"].find_one_and_update(
        {**_order_query(order_id), "status": {"$in": list(statuses)}},
        {"$set": {"status": "cancelled", "updated_at": now_utc()}},
        return_document=ReturnDocument.BEFORE,
    )
    if before is None:
        return None
    if before.get("status") == "pending_payment":
        for item in before.get("items") or []:
            catalog.restock_item(item)
    logger.info("Order %s cancelled from %s", before.get("public_id"), before.get("status"))
    return before


def admin_cancel_order_and_restock(order_id: Any) -> Dict[str, Any]:
    order = get_order(order_id)
    status = order.get("status")
    if status in SETTLED_STATUSES:
        return to_str_id(order)

    if status == "pending_payment":
        cancel_unpaid_order(order["_id"], statuses=("pending_payment",))
    else:
        # Paid orders keep their stock; refunds and returns are handled apart.
        res = database.db["order"].update_one(
            {"_id": order["_id"], "status": status},
            {"$set": {"status": "cancelled", "updated_at": now_utc()}},
        )
        if res.modified_count:
            logger.info("Order %s cancelled from %s without restock", order.get("public_id"), status)
    return to_str_id(get_order(order["_id"]))


# ---------------------------------------------------------------------------
# Admin queries
# ---------------------------------------------------------------------------

def admin_list_orders(page: int = 1, limit: int = 20, status: Optional[str] = None,
                      q: Optional[str] = None) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if status and status.strip():
        query["status"] = status.strip()
    if q and q.strip():
        rx = {"$regex": re.escape(q.strip()), "$options": "i"}
        clauses: List[Dict[str, Any]] = [{"public_id": rx}, {"email": rx}]
        users = database.db["user"].find(
            {"$or": [{"email": rx}, {"first_name": rx}, {"last_name": rx}]}, {"_id": 1}
        )
        user_ids = [str(u["_id"]) for u in users]
        if user_ids:
            clauses.append({"user_id": {"$in": user_ids}})
        query["$or"] = clauses

    page = max(1, int(page or 1))
    limit = min(100, max(1, int(limit or 20)))
    total = database.db["order"].count_documents(query)
    cursor = database.db["order"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    orders = []
    for o in cursor:
        doc = to_str_id(o)
        doc["customer"] = to_str_id(_customer(o)) or None
        orders.append(doc)
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": max(1, math.ceil(total / limit)),
        "orders": orders,
    }


def admin_get_order(id_or_public_id: Any) -> Dict[str, Any]:
    raw = str(id_or_public_id or "").strip()
    if not raw:
        raise ValidationError("Order id required", {"id": "Order id required"})
    oid = to_object_id(raw)
    query = {"_id": oid} if oid is not None else {"public_id": raw if raw.startswith("#") else f"#{raw}"}
    order = database.db["order"].find_one(query)
    if not order:
        raise NotFound("Order not found")
    doc = to_str_id(order)
    doc["customer"] = to_str_id(_customer(order)) or None
    return doc


def stats_window(range_: str, year: Optional[int] = None, now: Optional[datetime] = None):
    """UTC bounds and label of a dashboard window computed in the store timezone.

    Rolling windows end now (inclusive); calendar years are half-open.
    """
    tz = store_tz()
    local_now = (now or now_utc()).astimezone(tz)
    if range_ in STATS_RANGES:
        days_back, label = STATS_RANGES[range_]
        midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        # wall-clock arithmetic: the offset is recomputed across DST changes
        start = midnight - timedelta(days=days_back)
        return start.astimezone(timezone.utc), local_now.astimezone(timezone.utc), label, False

    valid_year = bool(year) and 2000 <= year <= 3000
    target = year if valid_year else local_now.year
    label = f"Anno {target}" if valid_year else "Anno corrente"
    start = datetime(target, 1, 1, tzinfo=tz)
    end = datetime(target + 1, 1, 1, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc), label, True


def admin_dashboard_stats(range_: str = "week", year: Optional[int] = None,
                          now: Optional[datetime] = None) -> Dict[str, Any]:
    range_ = range_ if range_ in ("day", "week", "month", "year") else "week"
    start, end, label, half_open = stats_window(range_, year, now)
    created = {"$gte": start, ("$lt" if half_open else "$lte"): end}

    orders = in_progress = shipped = revenue_orders = revenue_cents = 0
    for o in database.db["order"].find({"created_at": created}, {"status": 1, "total_cents": 1}):
        orders += 1
        status = o.get("status")
        if status in IN_PROGRESS_STATUSES:
            in_progress += 1
        if status == "shipped":
            shipped += 1
        if status in REVENUE_STATUSES:
            revenue_orders += 1
            revenue_cents += int(o.get("total_cents") or 0)

    return {
        "range": range_,
        "range_label": label,
        "from": start.isoformat(),
        "to": end.isoformat(),
        "orders": orders,
        "in_progress": in_progress,
        "shipped": shipped,
        "revenue": {"total_cents": revenue_cents, "orders": revenue_orders},
    }


def admin_dashboard_years(now: Optional[datetime] = None) -> Dict[str, Any]:
    tz = store_tz()
    years = set()
    for o in database.db["order"].find({}, {"created_at": 1}):
        created_at = as_utc(o.get("created_at"))
        if created_at is not None:
            years.add(created_at.astimezone(tz).year)
    years.add((now or now_utc()).astimezone(tz).year)
    return {"years": sorted(years)}
