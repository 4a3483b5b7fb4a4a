import logging
import math
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pymongo.errors import DuplicateKeyError

import database
from database import as_utc, create_document, now_utc, to_object_id, to_str_id
from errors import NotFound, ValidationError
from money import is_valid_coupon_code, normalize_coupon_code, round_half_up
from schemas import Coupon, CouponIn, CouponRuleIn, CouponUpdate

logger = logging.getLogger(__name__)

DUPLICATE_CODE = {"code": "code already exists"}


def _resolve_rules(rules: List[CouponRuleIn]) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
    """Bind each rule to an active product slug and reject duplicates."""
    out: List[Dict[str, Any]] = []
    errors: Dict[str, Any] = {}
    seen = set()

    for i, rule in enumerate(rules):
        raw = rule.product_id.strip()
        oid = to_object_id(raw)
        query = {"_id": oid} if oid is not None else {"product_id": raw}
        product = database.db["product"].find_one({**query, "is_active": True}, {"product_id": 1})
        if not product or not product.get("product_id"):
            errors[str(i)] = {"product_id": "Unknown or inactive product"}
            continue

        slug = str(product["product_id"]).strip()
        if slug in seen:
            errors[str(i)] = {"product_id": "Duplicate product in rules"}
            continue
        seen.add(slug)

        value = round_half_up(rule.value) if rule.type == "fixed" else rule.value
        out.append({"product_id": slug, "type": rule.type, "value": value})

    return out, errors


def _get(coupon_id: Any) -> Dict[str, Any]:
    oid = to_object_id(coupon_id)
    coupon = database.db["coupon"].find_one({"_id": oid}) if oid is not None else None
    if not coupon:
        raise NotFound("Coupon not found")
    return coupon


def create_coupon(data: CouponIn) -> Dict[str, Any]:
    rules, rule_errors = _resolve_rules(data.rules)
    if rule_errors:
        raise ValidationError(errors={"rules": rule_errors})
    if database.db["coupon"].find_one({"code": data.code}):
        raise ValidationError(errors=DUPLICATE_CODE)

    coupon = Coupon(
        code=data.code,
        name=data.name,
        is_active=data.is_active,
        starts_at=data.starts_at,
        ends_at=data.ends_at,
        rules=rules,
    )
    try:
        coupon_id = create_document("coupon", coupon)
    except DuplicateKeyError:
        raise ValidationError(errors=DUPLICATE_CODE)
    logger.info("Coupon created: %s", data.code)
    return to_str_id(_get(coupon_id))


def update_coupon(coupon_id: Any, data: CouponUpdate) -> Dict[str, Any]:
    current = _get(coupon_id)
    fields = data.model_fields_set
    updates: Dict[str, Any] = {}
    errors: Dict[str, Any] = {}

    if "code" in fields:
        if not data.code:
            errors["code"] = "code is required"
        else:
            updates["code"] = data.code
    if "name" in fields:
        updates["name"] = data.name
    if "is_active" in fields and data.is_active is not None:
        updates["is_active"] = data.is_active
    if "starts_at" in fields:
        updates["starts_at"] = data.starts_at
    if "ends_at" in fields:
        updates["ends_at"] = data.ends_at

    starts_at = as_utc(updates.get("starts_at", current.get("starts_at")))
    ends_at = as_utc(updates.get("ends_at", current.get("ends_at")))
    if starts_at and ends_at and ends_at < starts_at:
        errors["ends_at"] = "ends_at must be >= starts_at"

    if "rules" in fields:
        if not data.rules:
            errors["rules"] = "At least one product rule is required"
        else:
            rules, rule_errors = _resolve_rules(data.rules)
            if rule_errors:
                errors["rules"] = rule_errors
            else:
                updates["rules"] = rules

    if errors:
        raise ValidationError(errors=errors)

    if updates.get("code") and updates["code"] != current.get("code"):
        if database.db["coupon"].find_one({"code": updates["code"], "_id": {"$ne": current["_id"]}}):
            raise ValidationError(errors=DUPLICATE_CODE)

    updates["updated_at"] = now_utc()
    try:
        database.db["coupon"].update_one({"_id": current["_id"]}, {"$set": updates})
    except DuplicateKeyError:
        raise ValidationError(errors=DUPLICATE_CODE)
    return to_str_id(_get(current["_id"]))


def list_coupons(page: int = 1, limit: int = 20, q: Optional[str] = None) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if q and q.strip():
        rx = {"$regex": re.escape(q.strip()), "$options": "i"}
        query["$or"] = [{"code": rx}, {"name": rx}]

    page = max(1, int(page or 1))
    limit = min(100, max(1, int(limit or 20)))
    total = database.db["coupon"].count_documents(query)
    cursor = database.db["coupon"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": max(1, math.ceil(total / limit)),
        "coupons": [to_str_id(c) for c in cursor],
    }


def get_coupon(coupon_id: Any) -> Dict[str, Any]:
    return to_str_id(_get(coupon_id))


def delete_coupon(coupon_id: Any) -> Dict[str, Any]:
    oid = to_object_id(coupon_id)
    res = database.db["coupon"].delete_one({"_id": oid}) if oid is not None else None
    if res is None or res.deleted_count != 1:
        raise NotFound("Coupon not found")
    return {"ok": True}


def is_within_window(coupon: Dict[str, Any], now: datetime) -> bool:
    starts_at = as_utc(coupon.get("starts_at"))
    ends_at = as_utc(coupon.get("ends_at"))
    if starts_at is not None and starts_at > now:
        return False
    if ends_at is not None and ends_at < now:
        return False
    return True


def find_active_coupon(code: Any, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """Active coupon for ``code`` whose validity window contains ``now``, else None."""
    normalized = normalize_coupon_code(code)
    if not is_valid_coupon_code(normalized):
        return None
    coupon = database.db["coupon"].find_one({"code": normalized, "is_active": True})
    if not coupon or not is_within_window(coupon, now or now_utc()):
        return None
    return coupon
