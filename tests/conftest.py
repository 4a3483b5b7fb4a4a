"""
Shared fixtures for the Q-Beauty test suite.

Every test gets a fresh in-memory MongoDB (mongomock) patched into
``database.db`` and a recording notifier that renders real templates but
never touches the network.
"""
import mongomock
import pytest
from fastapi.testclient import TestClient

import auth
import config
import database
from database import create_document, to_object_id
from main import app
from notifier import Notifier, get_notifier
from schemas import Product, User

TEST_PASSWORD = "secret123"
_password_hash = None


def password_hash():
    # bcrypt is slow on purpose: hash once per session
    global _password_hash
    if _password_hash is None:
        _password_hash = auth.hash_password(TEST_PASSWORD)
    return _password_hash


class RecordingNotifier(Notifier):
    """Keeps every send; ``fail = True`` makes delivery raise."""

    def __init__(self):
        self.sent = []
        self.delivered = []
        self.fail = False

    def send(self, kind, payload):
        self.sent.append((kind, payload))
        return super().send(kind, payload)

    def deliver(self, to, subject, body):
        if self.fail:
            raise ConnectionError("smtp unavailable")
        self.delivered.append((to, subject, body))

    def kinds(self):
        return [kind for kind, _ in self.sent]


# ============================================================================
# CONFIG FIXTURES
# ============================================================================


@pytest.fixture(autouse=True)
def store_config(monkeypatch):
    """Pin every setting a test depends on, whatever the environment says."""
    monkeypatch.setattr(config, "JWT_SECRET", "test-secret")
    monkeypatch.setattr(config, "STORE_TIMEZONE", "Europe/Rome")
    monkeypatch.setattr(config, "FRONTEND_URL", "http://shop.test")
    monkeypatch.setattr(config, "FREE_SHIPPING_THRESHOLD_CENTS", 12000)
    monkeypatch.setattr(config, "SHIPPING_FEE_CENTS", 700)
    monkeypatch.setattr(config, "PIVA_DISCOUNT_PERCENT", 15.0)
    monkeypatch.setattr(config, "FIRST_ORDER_DISCOUNT_PERCENT", 10.0)
    monkeypatch.setattr(config, "BUNDLE_PRODUCT_SLUG", "SET EXPERIENCE")
    monkeypatch.setattr(config, "BUNDLE_PRICE_PIVA_CENTS", 5400)
    monkeypatch.setattr(config, "BUNDLE_PRICE_PRIVATE_CENTS", 6000)
    monkeypatch.setattr(config, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(config, "STRIPE_WEBHOOK_SECRET", "whsec_test")
    monkeypatch.setattr(config, "STRIPE_WEBHOOK_TOLERANCE", 300)
    monkeypatch.setattr(config, "BANK_BENEFICIARY", "Q-Beauty S.r.l.")
    monkeypatch.setattr(config, "BANK_IBAN", "IT60X0542811101000000123456")
    monkeypatch.setattr(config, "SMTP_HOST", None)
    monkeypatch.setattr(config, "MAIL_SAFE_MODE", False)
    monkeypatch.setattr(config, "MAIL_TEST_TO", "")
    monkeypatch.setattr(config, "ENABLE_DEV_ROUTES", False)


# ============================================================================
# DATABASE FIXTURES
# ============================================================================


@pytest.fixture
def db(monkeypatch):
    mock_db = mongomock.MongoClient(tz_aware=True)["qbeauty_test"]
    monkeypatch.setattr(database, "db", mock_db)
    database.ensure_indexes()
    return mock_db


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(customer_type="private", role="user", email=None, **extra):
        counter["n"] += 1
        user = User(
            email=email or f"user{counter['n']}@example.com",
            password_hash=password_hash(),
            customer_type=customer_type,
            role=role,
            first_name=extra.pop("first_name", "Giulia"),
            last_name=extra.pop("last_name", "Rossi"),
            company_name="Salone Srl" if customer_type == "piva" else None,
            vat_number="01234567890" if customer_type == "piva" else None,
            **extra,
        )
        user_id = create_document("user", user)
        return db["user"].find_one({"_id": to_object_id(user_id)})

    return _make


@pytest.fixture
def make_product(db):
    def _make(product_id="SPRAY-100", price_cents=1790, stock_qty=10, **extra):
        extra.setdefault("name", product_id.title())
        product = Product(product_id=product_id, price_cents=price_cents, stock_qty=stock_qty, **extra)
        doc_id = create_document("product", product)
        return db["product"].find_one({"_id": to_object_id(doc_id)})

    return _make


@pytest.fixture
def make_coupon(db):
    def _make(code="SPRAY10", rules=None, **extra):
        doc = {
            "code": code,
            "name": extra.pop("name", None),
            "is_active": extra.pop("is_active", True),
            "starts_at": extra.pop("starts_at", None),
            "ends_at": extra.pop("ends_at", None),
            "rules": rules or [{"product_id": "SPRAY-100", "type": "percent", "value": 10}],
        }
        doc.update(extra)
        doc_id = create_document("coupon", doc)
        return db["coupon"].find_one({"_id": to_object_id(doc_id)})

    return _make


@pytest.fixture
def shipping_address():
    return {
        "name": "giulia",
        "surname": "rossi",
        "phone": "+39 333 1234567",
        "email": "Giulia.Rossi@Example.com",
        "address": "via roma 12",
        "city": "reggio di calabria",
        "cap": "89100",
    }


# ============================================================================
# API FIXTURES
# ============================================================================


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def client(db, notifier):
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def _headers(user):
        return {"Authorization": f"Bearer {auth.create_token(user)}"}

    return _headers


@pytest.fixture
def user_password():
    """Plain-text password of every user built by ``make_user``."""
    return TEST_PASSWORD
