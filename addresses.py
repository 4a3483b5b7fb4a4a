from typing import Any, Dict, List

import database
from database import create_document, now_utc, to_object_id, to_str_id
from errors import NotFound
from money import normalize_shipping_address
from schemas import Address, AddressIn


def _user_key(user: Dict[str, Any]) -> str:
    return str(user["_id"])


def list_my_addresses(user: Dict[str, Any]) -> List[Dict[str, Any]]:
    cursor = database.db["address"].find({"user_id": _user_key(user)}).sort([("is_default", -1), ("created_at", -1)])
    return [to_str_id(a) for a in cursor]


def get_owned_address(user: Dict[str, Any], address_id: Any) -> Dict[str, Any]:
    oid = to_object_id(address_id)
    addr = database.db["address"].find_one({"_id": oid, "user_id": _user_key(user)}) if oid is not None else None
    if not addr:
        raise NotFound("Address not found")
    return addr


def _unset_defaults(user_id: str) -> None:
    # Clearing first means a lost race leaves no default rather than two.
    database.db["address"].update_many(
        {"user_id": user_id, "is_default": True},
        {"$set": {"is_default": False, "updated_at": now_utc()}},
    )


def create_address(user: Dict[str, Any], data: AddressIn) -> Dict[str, Any]:
    user_id = _user_key(user)
    normalized = normalize_shipping_address(data.model_dump())
    is_default = database.db["address"].count_documents({"user_id": user_id}) == 0 or data.is_default

    if is_default:
        _unset_defaults(user_id)

    address = Address(user_id=user_id, label=(data.label or "").strip(), is_default=is_default, **normalized)
    address_id = create_document("address", address)
    return to_str_id(database.db["address"].find_one({"_id": to_object_id(address_id)}))


def set_default_address(user: Dict[str, Any], address_id: Any) -> Dict[str, Any]:
    addr = get_owned_address(user, address_id)
    _unset_defaults(addr["user_id"])
    database.db["address"].update_one({"_id": addr["_id"]}, {"$set": {"is_default": True, "updated_at": now_utc()}})
    return to_str_id(database.db["address"].find_one({"_id": addr["_id"]}))
