import hashlib
import logging
import secrets
from datetime import timedelta
from typing import Any, Dict, Literal, Optional

import jwt
from fastapi import Depends, Header
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator
from pymongo.errors import DuplicateKeyError

import config
import database
from database import as_utc, create_document, now_utc, to_object_id
from errors import Conflict, Forbidden, NotFound, Unauthorized, ValidationError
from notifier import Notifier
from schemas import User

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


class RegisterDTO(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    customer_type: Literal["private", "piva"]
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    phone: Optional[str] = None
    company_name: Optional[str] = None
    vat_number: Optional[str] = None

    @field_validator("first_name", "last_name", "phone", "company_name", "vat_number", mode="before")
    @classmethod
    def _strip(cls, v):
        if v is None:
            return None
        return str(v).strip()

    @model_validator(mode="after")
    def _business_fields(self):
        if self.customer_type == "piva" and not (self.company_name and self.vat_number):
            raise ValueError("company_name and vat_number are required for piva")
        return self


class LoginDTO(BaseModel):
    email: str
    password: str


class UpdateMeDTO(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    company_name: Optional[str] = None
    vat_number: Optional[str] = None

    @field_validator("first_name", "last_name", "phone", "company_name", "vat_number", mode="before")
    @classmethod
    def _strip(cls, v):
        if v is None:
            return None
        return str(v).strip()


class ChangePasswordDTO(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8)


class ForgotPasswordDTO(BaseModel):
    email: EmailStr


class ResetPasswordDTO(BaseModel):
    token: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def create_token(user_doc: Dict[str, Any]) -> str:
    now = now_utc()
    payload = {
        "sub": str(user_doc.get("_id")),
        "email": user_doc.get("email"),
        "role": user_doc.get("role", "user"),
        "exp": now + timedelta(minutes=config.JWT_EXP_MIN),
        "iat": now,
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=["HS256"])
    except jwt.PyJWTError:
        raise Unauthorized()


def get_current_user(authorization: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    if not authorization:
        raise Unauthorized()
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise Unauthorized()
    payload = decode_token(token.strip())
    user_id = to_object_id(payload.get("sub"))
    if user_id is None:
        raise Unauthorized()
    user = database.db["user"].find_one({"_id": user_id})
    if not user:
        raise Unauthorized()
    return user


def require_admin(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if user.get("role") != "admin":
        raise Forbidden()
    return user


def is_admin(user: Optional[Dict[str, Any]]) -> bool:
    return bool(user) and user.get("role") == "admin"


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(user["_id"]),
        "email": user.get("email"),
        "role": user.get("role", "user"),
        "customer_type": user.get("customer_type"),
        "first_name": user.get("first_name"),
        "last_name": user.get("last_name"),
        "phone": user.get("phone"),
        "company_name": user.get("company_name"),
        "vat_number": user.get("vat_number"),
    }


def register_user(data: RegisterDTO, notifier: Notifier) -> Dict[str, Any]:
    email = str(data.email).strip().lower()
    if database.db["user"].find_one({"email": email}):
        raise Conflict("Email already registered", {"email": "Email already registered"})

    piva = data.customer_type == "piva"
    user = User(
        email=email,
        password_hash=hash_password(data.password),
        customer_type=data.customer_type,
        role="user",
        first_name=data.first_name,
        last_name=data.last_name,
        phone=data.phone or None,
        company_name=data.company_name if piva else None,
        vat_number=data.vat_number if piva else None,
    )
    try:
        user_id = create_document("user", user)
    except DuplicateKeyError:
        raise Conflict("Email already registered", {"email": "Email already registered"})

    doc = database.db["user"].find_one({"_id": to_object_id(user_id)})
    logger.info("User registered: %s (%s)", email, data.customer_type)

    result = notifier.send("welcome", {"to": email, "name": data.first_name})
    if not result.ok:
        logger.warning("Welcome email to %s not sent: %s", email, result.error)

    return {"user": public_user(doc), "token": create_token(doc)}


def login_user(email: str, password: str) -> Dict[str, Any]:
    user = database.db["user"].find_one({"email": str(email or "").strip().lower()})
    if not user or not verify_password(password or "", user.get("password_hash", "")):
        raise Unauthorized("Invalid credentials")
    return {"user": public_user(user), "token": create_token(user)}


def get_me(user_id) -> Dict[str, Any]:
    user = database.db["user"].find_one({"_id": to_object_id(user_id)})
    if not user:
        raise NotFound("User not found")
    return {"user": public_user(user)}


def update_me(user: Dict[str, Any], data: UpdateMeDTO) -> Dict[str, Any]:
    """Apply the fields present in ``data``; an explicit empty phone clears it."""
    given = data.model_fields_set
    errors: Dict[str, str] = {}
    changes: Dict[str, Any] = {}

    for field, message in (("first_name", "First name is required"), ("last_name", "Last name is required")):
        if field in given:
            value = getattr(data, field)
            if value:
                changes[field] = value
            else:
                errors[field] = message

    if "phone" in given:
        changes["phone"] = data.phone or None

    if user.get("customer_type") == "piva":
        for field, message in (("company_name", "Company name is required"), ("vat_number", "VAT number is required")):
            value = getattr(data, field) if field in given else user.get(field)
            if not value:
                errors[field] = message
            elif field in given:
                changes[field] = value

    if errors:
        raise ValidationError(errors=errors)

    if changes:
        changes["updated_at"] = now_utc()
        database.db["user"].update_one({"_id": user["_id"]}, {"$set": changes})
        logger.info("Profile updated for %s: %s", user.get("email"), sorted(k for k in changes if k != "updated_at"))
    return get_me(user["_id"])


def change_password(user: Dict[str, Any], current_password: str, new_password: str) -> Dict[str, Any]:
    if not verify_password(current_password, user.get("password_hash", "")):
        raise ValidationError(errors={"current_password": "Current password is incorrect"})
    database.db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": hash_password(new_password), "updated_at": now_utc()}},
    )
    return {"ok": True}


def request_password_reset(email: str, notifier: Notifier) -> Dict[str, Any]:
    """Always answers ok so the endpoint cannot be used to discover accounts."""
    normalized = str(email or "").strip().lower()
    user = database.db["user"].find_one({"email": normalized})
    if not user:
        return {"ok": True}

    token = secrets.token_hex(32)
    database.db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {
            "reset_password_token_hash": hash_reset_token(token),
            "reset_password_expires_at": now_utc() + timedelta(minutes=config.PASSWORD_RESET_TTL_MIN),
            "reset_password_used_at": None,
            "updated_at": now_utc(),
        }},
    )

    reset_url = f"{config.FRONTEND_URL}/reset-password?token={token}"
    result = notifier.send("password_reset", {"to": normalized, "name": user.get("first_name", ""), "reset_url": reset_url})
    if not result.ok:
        logger.warning("Password reset email to %s not sent: %s", normalized, result.error)
    return {"ok": True}


def reset_password_with_token(token: str, new_password: str) -> Dict[str, Any]:
    invalid = ValidationError("Invalid or expired token", {"token": "Invalid or expired token"})
    token_hash = hash_reset_token(token.strip())
    user = database.db["user"].find_one({"reset_password_token_hash": token_hash})
    if not user or user.get("reset_password_used_at"):
        raise invalid
    expires_at = as_utc(user.get("reset_password_expires_at"))
    if expires_at is None or expires_at <= now_utc():
        raise invalid

    now = now_utc()
    res = database.db["user"].update_one(
        {"_id": user["_id"], "reset_password_token_hash": token_hash, "reset_password_used_at": None},
        {"$set": {
            "password_hash": hash_password(new_password),
            "reset_password_token_hash": None,
            "reset_password_expires_at": None,
            "reset_password_used_at": now,
            "updated_at": now,
        }},
    )
    if res.modified_count == 0:
        raise invalid
    return {"ok": True}
