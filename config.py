"""
Q-Beauty runtime configuration.

Every setting is read once from the environment at import time. Modules read
them as ``config.NAME`` at call time so tests can monkeypatch single values.
"""
import os


def _flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# Database
DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "qbeauty")

# Security
JWT_SECRET = os.getenv("JWT_SECRET", "devsecret_change_me")
JWT_EXP_MIN = int(os.getenv("JWT_EXP_MIN", "10080"))  # 7 days
PASSWORD_RESET_TTL_MIN = int(os.getenv("PASSWORD_RESET_TTL_MIN", "10"))
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*").split(",")

# Store
STORE_NAME = os.getenv("STORE_NAME", "Q-Beauty")
STORE_TIMEZONE = os.getenv("STORE_TIMEZONE", "Europe/Rome")
PRIMARY_CURRENCY = "EUR"
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173").strip().rstrip("/")

# Pricing
FREE_SHIPPING_THRESHOLD_CENTS = int(os.getenv("FREE_SHIPPING_THRESHOLD_CENTS", "12000"))
SHIPPING_FEE_CENTS = int(os.getenv("SHIPPING_FEE_CENTS", "700"))
PIVA_DISCOUNT_PERCENT = float(os.getenv("PIVA_DISCOUNT_PERCENT", "15"))
FIRST_ORDER_DISCOUNT_PERCENT = float(os.getenv("FIRST_ORDER_DISCOUNT_PERCENT", "10"))
BUNDLE_PRODUCT_SLUG = os.getenv("BUNDLE_PRODUCT_SLUG", "SET EXPERIENCE")
BUNDLE_PRICE_PIVA_CENTS = int(os.getenv("BUNDLE_PRICE_PIVA_CENTS", "5400"))
BUNDLE_PRICE_PRIVATE_CENTS = int(os.getenv("BUNDLE_PRICE_PRIVATE_CENTS", "6000"))

# Payments
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
STRIPE_WEBHOOK_TOLERANCE = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300"))
BANK_BENEFICIARY = os.getenv("BANK_BENEFICIARY", "Q-Beauty")
BANK_IBAN = os.getenv("BANK_IBAN", "")
BANK_DEADLINE_HOURS = int(os.getenv("BANK_DEADLINE_HOURS", "48"))

# Email
SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
MAIL_FROM = os.getenv("MAIL_FROM", "no-reply@qbeauty.it")
MAIL_SAFE_MODE = _flag("MAIL_SAFE_MODE")
MAIL_TEST_TO = os.getenv("MAIL_TEST_TO", "")
NOTIFY_TIMEOUT_SECONDS = float(os.getenv("NOTIFY_TIMEOUT_SECONDS", "15"))

# Dev
ENABLE_DEV_ROUTES = _flag("ENABLE_DEV_ROUTES")
