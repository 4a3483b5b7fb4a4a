"""
Payment adapter: Stripe hosted checkout, webhook reconciliation and manual
bank transfer instructions.

Webhooks are acknowledged before they are processed; ``reconcile_event`` runs
afterwards and relies on conditional updates, so a redelivered event never
flips an order twice or sends a second confirmation email.
"""
import logging
from typing import Any, Dict, Optional

import stripe

import config
import database
import orders
from auth import is_admin
from database import now_utc, to_object_id, to_str_id
from errors import Forbidden, InternalError, NotFound, UpstreamError, ValidationError
from notifier import Notifier

logger = logging.getLogger(__name__)

PAYABLE_STATUSES = ("pending_payment", "draft")
PAID_STATUSES = ("paid", "processing", "shipped", "completed")

COMPLETED_EVENTS = ("checkout.session.completed", "checkout.session.async_payment_succeeded")
FAILED_EVENTS = ("checkout.session.expired", "checkout.session.async_payment_failed")


def _load_order(order_id: Any) -> Dict[str, Any]:
    oid = to_object_id(order_id)
    if oid is None:
        raise ValidationError("Invalid order_id", {"order_id": "Invalid order_id"})
    order = database.db["order"].find_one({"_id": oid})
    if not order:
        raise NotFound("Order not found")
    return order


def ensure_owner(user: Dict[str, Any], order: Dict[str, Any]) -> None:
    """Only the order's owner, by id or email, or an admin may pay for it."""
    if is_admin(user):
        return
    if order.get("user_id") and order["user_id"] == str(user.get("_id")):
        return
    order_email = order.get("email") or (order.get("shipping_address") or {}).get("email")
    user_email = user.get("email")
    if order_email and user_email and order_email.lower() == user_email.lower():
        return
    raise Forbidden()


# ---------------------------------------------------------------------------
# Hosted checkout
# ---------------------------------------------------------------------------

def create_checkout_session(user: Dict[str, Any], order_id: Any) -> Dict[str, Any]:
    if not config.STRIPE_SECRET_KEY:
        raise InternalError("Stripe is not configured")

    order = _load_order(order_id)
    ensure_owner(user, order)

    status = order.get("status")
    if status not in PAYABLE_STATUSES:
        raise ValidationError(f'Order in status "{status}" is not payable', {"status": "Order is not payable"})

    total = order.get("total_cents")
    if not isinstance(total, int) or total <= 0:
        raise ValidationError("Invalid order total", {"total_cents": "Invalid order total"})

    order_key = str(order["_id"])
    frontend = config.FRONTEND_URL
    stripe.api_key = config.STRIPE_SECRET_KEY
    try:
        session = stripe.checkout.Session.create(
            mode="payment",
            line_items=[{
                "price_data": {
                    "currency": config.PRIMARY_CURRENCY.lower(),
                    "product_data": {"name": f"{config.STORE_NAME} order {order.get('public_id') or order_key[-6:]}"},
                    "unit_amount": total,
                },
                "quantity": 1,
            }],
            success_url=f"{frontend}/shop/order-success/{order_key}?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{frontend}/shop/checkout?canceled=1&order_id={order_key}",
            metadata={"order_id": order_key, "user_id": str(user.get("_id") or "")},
            customer_email=user.get("email") or None,
            locale="it",
        )
    except stripe.StripeError as e:
        logger.error("Stripe checkout session for %s failed: %s", order.get("public_id"), e)
        raise UpstreamError("Payment provider error")

    now = now_utc()
    database.db["order"].update_one(
        {"_id": order["_id"]},
        {"$set": {
            "stripe_checkout_session_id": session.id,
            "stripe_checkout_created_at": now,
            "payment_provider": "stripe",
            "updated_at": now,
        }},
    )
    logger.info("Checkout session %s created for %s", session.id, order.get("public_id"))
    return {"url": session.url}


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------

def verify_webhook(payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """Check the Stripe-Signature header and return the decoded event."""
    secret = config.STRIPE_WEBHOOK_SECRET
    if not secret:
        raise InternalError("Webhook secret is not configured")
    if not signature:
        raise ValidationError("Missing stripe-signature header")
    try:
        event = stripe.Webhook.construct_event(
            payload, signature, secret, tolerance=config.STRIPE_WEBHOOK_TOLERANCE
        )
    except stripe.SignatureVerificationError:
        raise ValidationError("Invalid signature")
    except (ValueError, TypeError, AttributeError):
        raise ValidationError("Invalid payload")
    event = event.to_dict()
    if not event.get("type"):
        raise ValidationError("Invalid payload")
    return event


def _session_order_id(session: Dict[str, Any]) -> Optional[str]:
    metadata = session.get("metadata") or {}
    return metadata.get("order_id") or metadata.get("orderId")


def _send_payment_confirmation(order: Dict[str, Any], session: Dict[str, Any], notifier: Notifier) -> bool:
    if order.get("payment_email_sent_at"):
        return False

    to = (
        (order.get("shipping_address") or {}).get("email")
        or (session.get("customer_details") or {}).get("email")
        or session.get("customer_email")
        or order.get("email")
    )
    if not to:
        logger.warning("Payment email for %s not sent: no recipient", order.get("public_id"))
        return False

    now = now_utc()
    claim = database.db["order"].update_one(
        {"_id": order["_id"], "payment_email_sent_at": None},
        {"$set": {"payment_email_sent_at": now}},
    )
    if claim.modified_count != 1:
        return False

    name = (order.get("shipping_address") or {}).get("name", "")
    result = notifier.send("payment_confirmed", {"to": to, "name": name, "order": to_str_id(order)})
    if not result.ok:
        database.db["order"].update_one(
            {"_id": order["_id"], "payment_email_sent_at": now},
            {"$set": {"payment_email_sent_at": None}},
        )
        logger.warning("Payment email for %s failed: %s", order.get("public_id"), result.error)
        return False
    logger.info("Payment email sent for %s", order.get("public_id"))
    return True


def _handle_paid(session: Dict[str, Any], notifier: Notifier) -> str:
    oid = to_object_id(_session_order_id(session))
    if oid is None:
        logger.warning("Stripe session %s has no valid order_id", session.get("id"))
        return "ignored"

    now = now_utc()
    res = database.db["order"].update_one(
        {"_id": oid, "status": {"$in": list(PAYABLE_STATUSES)}},
        {"$set": {
            "status": "paid",
            "paid_at": now,
            "payment_provider": "stripe",
            "stripe_checkout_session_id": session.get("id"),
            "stripe_payment_intent_id": session.get("payment_intent"),
            "updated_at": now,
        }},
    )
    order = database.db["order"].find_one({"_id": oid})
    if not order:
        logger.warning("Stripe webhook for unknown order %s", oid)
        return "ignored"

    if res.modified_count:
        logger.info("Order %s marked paid", order.get("public_id"))
        outcome = "paid"
    elif order.get("status") in PAID_STATUSES:
        outcome = "duplicate"
    else:
        # Charged after the order left the payable states: keep the trace for a manual refund
        database.db["order"].update_one(
            {"_id": oid, "payment_received_while": None},
            {"$set": {
                "payment_received_while": order.get("status"),
                "payment_received_at": now,
                "stripe_checkout_session_id": session.get("id"),
                "stripe_payment_intent_id": session.get("payment_intent"),
                "updated_at": now,
            }},
        )
        logger.error("Payment received for order %s in status %s: refund required",
                     order.get("public_id"), order.get("status"))
        return "refund_required"

    _send_payment_confirmation(order, session, notifier)
    return outcome


def reconcile_event(event: Dict[str, Any], notifier: Notifier) -> str:
    """Apply a verified Stripe event to its order and return what happened."""
    kind = event.get("type")
    session = (event.get("data") or {}).get("object") or {}
    logger.info("Stripe event %s (%s)", event.get("id"), kind)

    if kind in COMPLETED_EVENTS:
        if kind == "checkout.session.completed" and session.get("payment_status") not in ("paid", "no_payment_required"):
            logger.info("Session %s completed with payment_status %s", session.get("id"), session.get("payment_status"))
            return "pending"
        return _handle_paid(session, notifier)

    if kind in FAILED_EVENTS:
        oid = to_object_id(_session_order_id(session))
        if oid is None:
            return "ignored"
        return "cancelled" if orders.cancel_unpaid_order(oid) else "ignored"

    logger.info("Stripe event %s ignored", kind)
    return "ignored"


def reconcile_in_background(event: Dict[str, Any], notifier: Notifier) -> None:
    try:
        outcome = reconcile_event(event, notifier)
        logger.info("Stripe event %s processed: %s", event.get("id"), outcome)
    except Exception:
        # The provider already has its 2xx; there is nobody left to raise to.
        logger.exception("Stripe event %s processing failed", event.get("id"))


# ---------------------------------------------------------------------------
# Bank transfer
# ---------------------------------------------------------------------------

def send_bank_transfer_instructions(user: Dict[str, Any], order_id: Any, force: bool,
                                    notifier: Notifier) -> Dict[str, Any]:
    order = _load_order(order_id)
    ensure_owner(user, order)
    public_id = order.get("public_id") or f"#{str(order['_id'])[-6:]}"

    status = order.get("status")
    if status == "paid":
        return {"ok": True, "already_paid": True, "public_id": public_id}
    if order.get("bank_email_sent_at") and not force:
        return {"ok": True, "already_sent": True, "public_id": public_id}
    if status not in PAYABLE_STATUSES:
        raise ValidationError(f'Order in status "{status}" cannot be paid by bank transfer',
                              {"status": "Order is not payable by bank transfer"})
    if not config.BANK_IBAN:
        raise InternalError("Bank transfer is not configured")

    shipping = order.get("shipping_address") or {}
    to = shipping.get("email") or user.get("email") or order.get("email")
    if not to:
        raise InternalError("Missing recipient email")

    now = now_utc()
    first = not order.get("bank_email_sent_at")
    if first:
        claim = database.db["order"].update_one(
            {"_id": order["_id"], "bank_email_sent_at": None},
            {"$set": {"bank_email_sent_at": now, "payment_provider": "bank_transfer", "updated_at": now}},
        )
        if claim.modified_count != 1 and not force:
            return {"ok": True, "already_sent": True, "public_id": public_id}
        first = claim.modified_count == 1

    result = notifier.send("bank_transfer_instructions", {
        "to": to,
        "name": shipping.get("name", ""),
        "public_id": public_id,
        "total_cents": order.get("total_cents", 0),
        "beneficiary": config.BANK_BENEFICIARY,
        "iban": config.BANK_IBAN,
        "deadline_hours": config.BANK_DEADLINE_HOURS,
    })
    if not result.ok:
        if first:
            database.db["order"].update_one(
                {"_id": order["_id"], "bank_email_sent_at": now},
                {"$set": {"bank_email_sent_at": None}},
            )
        logger.error("Bank transfer instructions for %s failed: %s", public_id, result.error)
        raise UpstreamError("Could not send bank transfer instructions")

    update: Dict[str, Any] = {"$inc": {"bank_email_send_count": 1}}
    if not first:
        update["$set"] = {"bank_email_last_sent_at": now, "payment_provider": "bank_transfer", "updated_at": now}
    database.db["order"].update_one({"_id": order["_id"]}, update)

    logger.info("Bank transfer instructions sent for %s (resent=%s)", public_id, not first)
    return {"ok": True, "sent": True, "resent": not first, "public_id": public_id}
