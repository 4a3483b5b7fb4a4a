import hashlib
import hmac
import json
import time
from unittest.mock import MagicMock, patch

import pytest
import stripe

import config
import orders
import payments
from errors import ValidationError
from schemas import CartLine, ShippingAddressIn


def sign(payload: bytes, secret: str = "whsec_test", timestamp=None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def event(kind, order_id, **session):
    session.setdefault("id", "cs_test_1")
    session.setdefault("payment_status", "paid")
    session.setdefault("payment_intent", "pi_test_1")
    session["metadata"] = {"order_id": order_id}
    return {"id": "evt_test_1", "type": kind, "data": {"object": session}}


@pytest.fixture
def customer(make_user):
    return make_user("private", email="giulia@example.com")


@pytest.fixture
def pending_order(db, customer, make_product, shipping_address):
    make_product("SPRAY-100", 1790, stock_qty=5)
    result = orders.create_order(
        customer, [CartLine(product_id="SPRAY-100", qty=2)], shipping_address=ShippingAddressIn(**shipping_address)
    )
    return db["order"].find_one({"public_id": result["public_id"]})


@pytest.fixture
def post_event(client):
    def _post(evt, signature=None):
        payload = json.dumps(evt).encode("utf-8")
        headers = {"content-type": "application/json"}
        headers["stripe-signature"] = signature if signature is not None else sign(payload)
        return client.post("/webhooks/stripe", content=payload, headers=headers)

    return _post


def status_of(db, order):
    return db["order"].find_one({"_id": order["_id"]})["status"]


# ============================================================================
# WEBHOOK
# ============================================================================


def test_completed_session_marks_order_paid_and_emails_once(db, pending_order, post_event, notifier):
    evt = event("checkout.session.completed", str(pending_order["_id"]))

    first = post_event(evt)
    second = post_event(evt)

    assert first.status_code == 200
    assert first.json() == {"received": True}
    assert second.status_code == 200
    order = db["order"].find_one({"_id": pending_order["_id"]})
    assert order["status"] == "paid"
    assert order["paid_at"] is not None
    assert order["stripe_payment_intent_id"] == "pi_test_1"
    assert notifier.kinds() == ["payment_confirmed"]
    to, subject, body = notifier.delivered[0]
    assert to == "giulia.rossi@example.com"
    assert pending_order["public_id"] in subject
    assert "39,22 €" in body


def test_expired_session_cancels_and_restocks_once(db, pending_order, post_event):
    evt = event("checkout.session.expired", str(pending_order["_id"]), payment_status="unpaid")
    assert db["product"].find_one({"product_id": "SPRAY-100"})["stock_qty"] == 3

    post_event(evt)
    post_event(evt)

    assert status_of(db, pending_order) == "cancelled"
    assert db["product"].find_one({"product_id": "SPRAY-100"})["stock_qty"] == 5


def test_expired_session_after_payment_is_ignored(db, pending_order, post_event):
    order_id = str(pending_order["_id"])
    post_event(event("checkout.session.completed", order_id))

    post_event(event("checkout.session.expired", order_id, payment_status="unpaid"))

    assert status_of(db, pending_order) == "paid"
    assert db["product"].find_one({"product_id": "SPRAY-100"})["stock_qty"] == 3


def test_invalid_signature_is_rejected(db, pending_order, post_event, notifier):
    evt = event("checkout.session.completed", str(pending_order["_id"]))
    payload = json.dumps(evt).encode("utf-8")

    response = post_event(evt, signature=sign(payload, secret="whsec_other"))

    assert response.status_code == 400
    assert response.json()["message"] == "Invalid signature"
    assert status_of(db, pending_order) == "pending_payment"
    assert notifier.sent == []


def test_missing_and_stale_signatures_are_rejected(pending_order, post_event):
    evt = event("checkout.session.completed", str(pending_order["_id"]))
    payload = json.dumps(evt).encode("utf-8")

    assert post_event(evt, signature="").status_code == 400
    assert post_event(evt, signature="garbage").status_code == 400
    assert post_event(evt, signature=sign(payload, timestamp=int(time.time()) - 3600)).status_code == 400


def test_reconcile_outcomes(db, pending_order, notifier):
    order_id = str(pending_order["_id"])
    unpaid = event("checkout.session.completed", order_id, payment_status="unpaid")
    paid = event("checkout.session.completed", order_id)

    assert payments.reconcile_event(unpaid, notifier) == "pending"
    assert payments.reconcile_event(paid, notifier) == "paid"
    assert payments.reconcile_event(paid, notifier) == "duplicate"
    assert payments.reconcile_event(event("checkout.session.expired", order_id), notifier) == "ignored"
    assert payments.reconcile_event({"type": "invoice.paid", "data": {"object": {}}}, notifier) == "ignored"
    assert payments.reconcile_event(event("checkout.session.completed", "nope"), notifier) == "ignored"


def test_async_payment_success_marks_paid(db, pending_order, notifier):
    evt = event("checkout.session.async_payment_succeeded", str(pending_order["_id"]), payment_status="unpaid")

    assert payments.reconcile_event(evt, notifier) == "paid"
    assert status_of(db, pending_order) == "paid"


def test_payment_on_cancelled_order_is_recorded_for_refund(db, pending_order, notifier):
    orders.admin_cancel_order_and_restock(str(pending_order["_id"]))
    evt = event("checkout.session.completed", str(pending_order["_id"]), payment_intent="pi_late")

    assert payments.reconcile_event(evt, notifier) == "refund_required"
    assert payments.reconcile_event(evt, notifier) == "refund_required"

    order = db["order"].find_one({"_id": pending_order["_id"]})
    assert order["status"] == "cancelled"
    assert order["payment_received_while"] == "cancelled"
    assert order["stripe_payment_intent_id"] == "pi_late"
    assert order["payment_received_at"] is not None
    assert notifier.sent == []



def test_failed_payment_email_is_sent_on_redelivery(db, pending_order, notifier):
    evt = event("checkout.session.completed", str(pending_order["_id"]))

    notifier.fail = True
    assert payments.reconcile_event(evt, notifier) == "paid"
    assert db["order"].find_one({"_id": pending_order["_id"]})["payment_email_sent_at"] is None

    notifier.fail = False
    assert payments.reconcile_event(evt, notifier) == "duplicate"
    assert len(notifier.delivered) == 1
    assert db["order"].find_one({"_id": pending_order["_id"]})["payment_email_sent_at"] is not None


def test_verify_webhook_returns_plain_event(pending_order):
    evt = event("checkout.session.completed", str(pending_order["_id"]))
    payload = json.dumps(evt).encode("utf-8")

    verified = payments.verify_webhook(payload, sign(payload))

    assert verified["type"] == "checkout.session.completed"
    assert verified["data"]["object"]["metadata"]["order_id"] == str(pending_order["_id"])


def test_verify_webhook_rejects_signed_garbage():
    payload = b"not json"

    with pytest.raises(ValidationError) as exc:
        payments.verify_webhook(payload, sign(payload))

    assert exc.value.message == "Invalid payload"


def test_verify_webhook_requires_event_type():
    payload = json.dumps({"id": "evt_1"}).encode("utf-8")

    with pytest.raises(ValidationError):
        payments.verify_webhook(payload, sign(payload))


# ============================================================================
# CHECKOUT SESSION
# ============================================================================


def test_checkout_session_for_own_order(client, db, customer, pending_order, auth_headers):
    session = MagicMock(id="cs_test_42", url="https://checkout.stripe.com/c/pay/cs_test_42")
    with patch("stripe.checkout.Session.create", return_value=session) as create:
        response = client.post(
            "/payments/stripe/checkout-session",
            json={"order_id": str(pending_order["_id"])},
            headers=auth_headers(customer),
        )

    assert response.status_code == 200
    assert response.json() == {"url": "https://checkout.stripe.com/c/pay/cs_test_42"}
    kwargs = create.call_args.kwargs
    assert kwargs["metadata"]["order_id"] == str(pending_order["_id"])
    assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 3922
    assert kwargs["line_items"][0]["price_data"]["currency"] == "eur"
    order = db["order"].find_one({"_id": pending_order["_id"]})
    assert order["stripe_checkout_session_id"] == "cs_test_42"
    assert order["status"] == "pending_payment"


def test_checkout_session_for_someone_elses_order(client, pending_order, make_user, auth_headers):
    with patch("stripe.checkout.Session.create") as create:
        response = client.post(
            "/payments/stripe/checkout-session",
            json={"order_id": str(pending_order["_id"])},
            headers=auth_headers(make_user()),
        )

    assert response.status_code == 403
    create.assert_not_called()


def test_admin_can_open_checkout_for_any_order(client, pending_order, make_user, auth_headers):
    session = MagicMock(id="cs_test_7", url="https://checkout.stripe.com/c/pay/cs_test_7")
    with patch("stripe.checkout.Session.create", return_value=session):
        response = client.post(
            "/payments/stripe/checkout-session",
            json={"order_id": str(pending_order["_id"])},
            headers=auth_headers(make_user(role="admin")),
        )

    assert response.status_code == 200


def test_checkout_session_rejects_paid_order(client, db, customer, pending_order, auth_headers):
    db["order"].update_one({"_id": pending_order["_id"]}, {"$set": {"status": "paid"}})

    response = client.post(
        "/payments/stripe/checkout-session",
        json={"order_id": str(pending_order["_id"])},
        headers=auth_headers(customer),
    )

    assert response.status_code == 400
    assert "status" in response.json()["errors"]


def test_checkout_session_provider_failure(client, db, customer, pending_order, auth_headers):
    with patch("stripe.checkout.Session.create", side_effect=stripe.StripeError("boom")):
        response = client.post(
            "/payments/stripe/checkout-session",
            json={"order_id": str(pending_order["_id"])},
            headers=auth_headers(customer),
        )

    assert response.status_code == 502
    assert status_of(db, pending_order) == "pending_payment"


def test_checkout_session_without_stripe_key(client, customer, pending_order, auth_headers, monkeypatch):
    monkeypatch.setattr(config, "STRIPE_SECRET_KEY", None)

    response = client.post(
        "/payments/stripe/checkout-session",
        json={"order_id": str(pending_order["_id"])},
        headers=auth_headers(customer),
    )

    assert response.status_code == 500


def test_checkout_session_invalid_order_id(client, customer, auth_headers):
    response = client.post(
        "/payments/stripe/checkout-session", json={"order_id": "123"}, headers=auth_headers(customer)
    )

    assert response.status_code == 400
    assert response.json()["errors"] == {"order_id": "Invalid order_id"}


# ============================================================================
# BANK TRANSFER
# ============================================================================


def send_instructions(client, headers, order, force=False):
    return client.post(
        "/payments/bank-transfer/send-instructions",
        json={"order_id": str(order["_id"]), "force": force},
        headers=headers,
    )


def test_bank_transfer_first_send_then_already_sent(client, db, customer, pending_order, auth_headers, notifier):
    headers = auth_headers(customer)

    first = send_instructions(client, headers, pending_order)
    second = send_instructions(client, headers, pending_order)

    assert first.status_code == 200
    assert first.json() == {"ok": True, "sent": True, "resent": False, "public_id": pending_order["public_id"]}
    assert second.json() == {"ok": True, "already_sent": True, "public_id": pending_order["public_id"]}
    assert notifier.kinds() == ["bank_transfer_instructions"]
    _, _, body = notifier.delivered[0]
    assert "IT60X0542811101000000123456" in body
    assert "39,22 €" in body
    order = db["order"].find_one({"_id": pending_order["_id"]})
    assert order["bank_email_sent_at"] is not None
    assert order["bank_email_send_count"] == 1
    assert order["payment_provider"] == "bank_transfer"
    assert order["status"] == "pending_payment"


def test_bank_transfer_forced_resend(client, db, customer, pending_order, auth_headers, notifier):
    headers = auth_headers(customer)
    send_instructions(client, headers, pending_order)

    resent = send_instructions(client, headers, pending_order, force=True)

    assert resent.json()["resent"] is True
    assert len(notifier.delivered) == 2
    order = db["order"].find_one({"_id": pending_order["_id"]})
    assert order["bank_email_send_count"] == 2
    assert order["bank_email_last_sent_at"] is not None


def test_bank_transfer_on_paid_order(client, db, customer, pending_order, auth_headers, notifier):
    db["order"].update_one({"_id": pending_order["_id"]}, {"$set": {"status": "paid"}})

    response = send_instructions(client, auth_headers(customer), pending_order, force=True)

    assert response.json() == {"ok": True, "already_paid": True, "public_id": pending_order["public_id"]}
    assert notifier.sent == []


def test_bank_transfer_on_cancelled_order(client, db, customer, pending_order, auth_headers):
    db["order"].update_one({"_id": pending_order["_id"]}, {"$set": {"status": "cancelled"}})

    response = send_instructions(client, auth_headers(customer), pending_order)

    assert response.status_code == 400


def test_bank_transfer_email_failure_releases_claim(client, db, customer, pending_order, auth_headers, notifier):
    notifier.fail = True

    response = send_instructions(client, auth_headers(customer), pending_order)

    assert response.status_code == 502
    order = db["order"].find_one({"_id": pending_order["_id"]})
    assert order["bank_email_sent_at"] is None
    assert order["bank_email_send_count"] == 0

    notifier.fail = False
    assert send_instructions(client, auth_headers(customer), pending_order).json()["sent"] is True


def test_bank_transfer_not_configured(client, customer, pending_order, auth_headers, monkeypatch):
    monkeypatch.setattr(config, "BANK_IBAN", "")

    response = send_instructions(client, auth_headers(customer), pending_order)

    assert response.status_code == 500


def test_bank_transfer_for_someone_elses_order(client, pending_order, make_user, auth_headers, notifier):
    response = send_instructions(client, auth_headers(make_user()), pending_order)

    assert response.status_code == 403
    assert notifier.sent == []
