"""
Money and string normalization helpers.

All amounts are integer cents. Percentages are applied on exact decimals and
rounded half-up, so ``percent_of(3222, 10) == 322`` and
``percent_of(5, 50) == 3``.
"""
import re
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional, Tuple, Union

Number = Union[int, float, Decimal]

COUPON_CODE_RE = re.compile(r"^[A-Z0-9_-]{3,32}$")

_LOWER_WORDS = {
    "di", "da", "del", "della", "dei", "degli", "delle",
    "e", "a", "al", "alla", "alle", "ai", "agli", "in", "su",
}
_STREET_NUMBER_RE = re.compile(r"^(.*?)[,\s]+(\d+[A-Za-z]?)$")


def _dec(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() keeps 0.1 as 0.1 instead of its binary expansion
    return Decimal(str(value))


def round_half_up(value: Number) -> int:
    return int(_dec(value).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def floor_cents(value: Number) -> int:
    return int(_dec(value).quantize(Decimal(1), rounding=ROUND_FLOOR))


def percent_of(cents: int, percent: Number) -> int:
    return round_half_up(_dec(cents) * _dec(percent) / Decimal(100))


def split_cents(value: Number) -> Tuple[int, Decimal]:
    """Integer part and fractional remainder of an exact amount."""
    d = _dec(value)
    whole = floor_cents(d)
    return whole, d - whole


def format_eur(cents: int) -> str:
    cents = int(cents or 0)
    sign = "-" if cents < 0 else ""
    euros, rest = divmod(abs(cents), 100)
    grouped = f"{euros:,}".replace(",", ".")
    return f"{sign}{grouped},{rest:02d} €"


# Strings

def collapse_spaces(value: Any) -> str:
    return re.sub(r"\s+", " ", str(value or "")).strip()


def normalize_coupon_code(value: Any) -> str:
    return str(value or "").strip().upper()


def is_valid_coupon_code(code: str) -> bool:
    return bool(COUPON_CODE_RE.match(code or ""))


def normalize_slug(value: Any) -> str:
    """Case-insensitive comparison key for product slugs."""
    return str(value or "").strip().lower()


def title_case_it(value: Any) -> str:
    cleaned = collapse_spaces(value).lower()
    if not cleaned:
        return ""
    words = []
    for word in cleaned.split(" "):
        words.append(word if word in _LOWER_WORDS else word[:1].upper() + word[1:])
    return " ".join(words)


def normalize_email(value: Any) -> str:
    return collapse_spaces(value).lower()


def normalize_cap(value: Any) -> str:
    return re.sub(r"\D", "", str(value or ""))


def normalize_tax_code(value: Any) -> Optional[str]:
    code = collapse_spaces(value).replace(" ", "").upper()
    return code or None


def normalize_shipping_address(addr: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Snapshot form of a shipping address.

    Names and city are title-cased (Italian particles stay lowercase), the
    email is lowercased, the CAP keeps only digits, and a trailing house
    number is split off ``address`` when ``street_number`` is empty.
    """
    a = addr or {}
    address = collapse_spaces(a.get("address"))
    street_number = collapse_spaces(a.get("street_number"))
    if not street_number:
        m = _STREET_NUMBER_RE.match(address)
        if m:
            address = collapse_spaces(m.group(1))
            street_number = collapse_spaces(m.group(2))

    normalized = {
        "name": title_case_it(a.get("name")),
        "surname": title_case_it(a.get("surname")),
        "phone": collapse_spaces(a.get("phone")),
        "email": normalize_email(a.get("email")),
        "address": address,
        "street_number": street_number,
        "city": title_case_it(a.get("city")),
        "cap": normalize_cap(a.get("cap")),
    }
    tax_code = normalize_tax_code(a.get("tax_code"))
    if tax_code:
        normalized["tax_code"] = tax_code
    return normalized
