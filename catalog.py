"""
Product catalog: storefront reads, admin CRUD and the stock primitives used by
order fulfillment.

Products are addressed either by internal id or by their ``product_id`` slug.
Stock only ever changes through single conditional updates so concurrent
checkouts cannot oversell.
"""
import logging
import math
import re
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

import database
from database import create_document, now_utc, to_object_id, to_str_id
from errors import NotFound, ValidationError
from money import normalize_slug
from schemas import Product, ProductCreate, ProductUpdate

logger = logging.getLogger(__name__)

SORT = [("sort_order", 1), ("name", 1)]


def _id_query(id_or_slug: Any) -> Dict[str, Any]:
    raw = str(id_or_slug or "").strip()
    if not raw:
        raise ValidationError("Product id required", {"id": "Product id required"})
    oid = to_object_id(raw)
    if oid is not None:
        return {"_id": oid}
    return {"product_id": raw}


def _slug_pattern(slug: str):
    return re.compile(f"^{re.escape(slug.strip())}$", re.IGNORECASE)


# Storefront

def list_active_products() -> List[Dict[str, Any]]:
    return [to_str_id(p) for p in database.db["product"].find({"is_active": True}).sort(SORT)]


def get_active_product(id_or_slug: Any) -> Dict[str, Any]:
    product = database.db["product"].find_one({**_id_query(id_or_slug), "is_active": True})
    if not product:
        raise NotFound("Product not found")
    return to_str_id(product)


def find_active_products(ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
    """Resolve cart identifiers to active product documents.

    Each identifier may be an internal id or a slug (matched ignoring case and
    surrounding spaces). Returns ``{identifier: product}``; identifiers that
    do not resolve are absent from the result.
    """
    wanted = list(dict.fromkeys(str(i).strip() for i in ids if str(i or "").strip()))
    if not wanted:
        return {}

    oids = [ObjectId(i) for i in wanted if ObjectId.is_valid(i)]
    slugs = [i for i in wanted if not ObjectId.is_valid(i)]
    clauses = []
    if oids:
        clauses.append({"_id": {"$in": oids}})
    if slugs:
        clauses.append({"product_id": {"$in": [_slug_pattern(s) for s in slugs]}})

    docs = list(database.db["product"].find({"is_active": True, "$or": clauses}))
    by_id = {str(d["_id"]): d for d in docs}
    by_slug = {normalize_slug(d.get("product_id")): d for d in docs}

    resolved = {}
    for ident in wanted:
        doc = by_id.get(ident) or by_slug.get(normalize_slug(ident))
        if doc is not None:
            resolved[ident] = doc
    return resolved


# Stock

def reserve_stock(product_ref: ObjectId, qty: int) -> bool:
    """Take ``qty`` units if, and only if, that many are available right now."""
    res = database.db["product"].update_one(
        {"_id": product_ref, "is_active": True, "stock_qty": {"$gte": qty}},
        {"$inc": {"stock_qty": -qty}, "$set": {"updated_at": now_utc()}},
    )
    return res.modified_count == 1


def release_stock(product_ref: ObjectId, qty: int) -> bool:
    res = database.db["product"].update_one(
        {"_id": product_ref},
        {"$inc": {"stock_qty": qty}, "$set": {"updated_at": now_utc()}},
    )
    return res.modified_count == 1


def current_stock(product_ref: ObjectId) -> int:
    doc = database.db["product"].find_one({"_id": product_ref}, {"stock_qty": 1})
    return int((doc or {}).get("stock_qty") or 0)


def restock_item(item: Dict[str, Any]) -> bool:
    """Return an order line's quantity to the catalog, by reference then by slug."""
    qty = int(item.get("qty") or 0)
    if qty <= 0:
        return False
    ref = to_object_id(item.get("product_ref"))
    if ref is not None and release_stock(ref, qty):
        return True
    slug = item.get("product_slug")
    if slug:
        res = database.db["product"].update_one(
            {"product_id": _slug_pattern(slug)},
            {"$inc": {"stock_qty": qty}, "$set": {"updated_at": now_utc()}},
        )
        if res.modified_count == 1:
            return True
    logger.warning("Restock skipped, product not found: ref=%s slug=%s", item.get("product_ref"), slug)
    return False


# Admin

def admin_list_products(page: int = 1, limit: int = 20, q: Optional[str] = None) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if q and q.strip():
        rx = {"$regex": re.escape(q.strip()), "$options": "i"}
        query["$or"] = [{"name": rx}, {"product_id": rx}]

    page = max(1, int(page or 1))
    limit = min(100, max(1, int(limit or 20)))
    total = database.db["product"].count_documents(query)
    cursor = database.db["product"].find(query).sort(SORT).skip((page - 1) * limit).limit(limit)
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": max(1, math.ceil(total / limit)),
        "products": [to_str_id(p) for p in cursor],
    }


def admin_get_product(id_or_slug: Any) -> Dict[str, Any]:
    product = database.db["product"].find_one(_id_query(id_or_slug))
    if not product:
        raise NotFound("Product not found")
    return to_str_id(product)


def create_product(data: ProductCreate) -> Dict[str, Any]:
    duplicate = ValidationError(errors={"product_id": "product_id already exists"})
    if database.db["product"].find_one({"product_id": data.product_id}):
        raise duplicate
    try:
        product_id = create_document("product", Product(**data.model_dump()))
    except DuplicateKeyError:
        raise duplicate
    logger.info("Product created: %s", data.product_id)
    return to_str_id(database.db["product"].find_one({"_id": ObjectId(product_id)}))


def update_product(id_or_slug: Any, data: ProductUpdate) -> Dict[str, Any]:
    query = _id_query(id_or_slug)
    fields = data.model_fields_set
    if "product_id" in fields:
        raise ValidationError(errors={"product_id": "product_id cannot be changed"})

    current = database.db["product"].find_one(query)
    if not current:
        raise NotFound("Product not found")

    updates: Dict[str, Any] = {}
    errors: Dict[str, str] = {}

    if "name" in fields:
        name = (data.name or "").strip()
        if name:
            updates["name"] = name
        else:
            errors["name"] = "name is required"
    for key in ("price_cents", "stock_qty", "is_active"):
        if key in fields:
            value = getattr(data, key)
            if value is None:
                errors[key] = f"{key} cannot be null"
            else:
                updates[key] = value
    if "sort_order" in fields:
        updates["sort_order"] = 9999 if data.sort_order is None else data.sort_order
    for key in ("compare_at_price_cents", "image_url", "short_desc", "description"):
        if key in fields:
            updates[key] = getattr(data, key)

    price = updates.get("price_cents", current.get("price_cents"))
    compare_at = updates.get("compare_at_price_cents", current.get("compare_at_price_cents"))
    if compare_at is not None and price is not None and compare_at < price:
        errors["compare_at_price_cents"] = "compare_at_price_cents must be >= price_cents"

    if errors:
        raise ValidationError(errors=errors)

    updates["updated_at"] = now_utc()
    database.db["product"].update_one({"_id": current["_id"]}, {"$set": updates})
    return to_str_id(database.db["product"].find_one({"_id": current["_id"]}))


def soft_delete_product(id_or_slug: Any) -> Dict[str, Any]:
    res = database.db["product"].update_one(_id_query(id_or_slug), {"$set": {"is_active": False, "updated_at": now_utc()}})
    if res.matched_count == 0:
        raise NotFound("Product not found")
    return {"ok": True}


def hard_delete_product(id_or_slug: Any) -> Dict[str, Any]:
    res = database.db["product"].delete_one(_id_query(id_or_slug))
    if res.deleted_count == 0:
        raise NotFound("Product not found")
    logger.info("Product permanently deleted: %s", id_or_slug)
    return {"ok": True}
