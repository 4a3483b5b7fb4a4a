"""
MongoDB access for the Q-Beauty backend.

``db`` is created lazily by pymongo: no connection is opened until the first
operation. Domain modules reference ``database.db`` at call time so the handle
can be swapped (tests use mongomock).
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

import config

client = MongoClient(config.DATABASE_URL, tz_aware=True, connect=False)
db = client[config.DATABASE_NAME]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from storage."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    raw = str(value or "").strip()
    if not ObjectId.is_valid(raw):
        return None
    return ObjectId(raw)


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = now_utc()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    inserted_id = db[collection_name].insert_one(doc).inserted_id
    return str(inserted_id)


def _plain(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def to_str_id(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """JSON-ready copy of a document: ``_id`` becomes ``id``, ids and dates become strings."""
    if not doc:
        return doc
    d = dict(doc)
    if d.get("_id") is not None:
        d["id"] = d.pop("_id")
    return _plain(d)


def ensure_indexes() -> None:
    db["user"].create_index("email", unique=True)
    db["address"].create_index([("user_id", ASCENDING), ("is_default", DESCENDING)])
    db["product"].create_index("product_id", unique=True)
    db["coupon"].create_index("code", unique=True)
    db["order"].create_index("public_id", unique=True, sparse=True)
    db["order"].create_index([("user_id", ASCENDING), ("status", ASCENDING), ("created_at", DESCENDING)])
    db["order_counter"].create_index("year", unique=True)
