"""
Password hashing, bearer tokens and the FastAPI dependencies that
resolve the calling user.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from fastapi import Depends, Header
from pymongo.database import Database

import config
from database import get_db, to_object_id
from errors import AccessDenied, AccountDisabled, AuthenticationFailed, ValidationFailed
from sellers import reconcile_seller_role

logger = logging.getLogger(__name__)

TOKEN_ALGORITHM = "HS256"


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=config.BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode(), salt).decode()


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    return bcrypt.checkpw(password.encode(), password_hash.encode())


def create_token(user_id: str, role: str) -> str:
    expires = datetime.now(timezone.utc) + timedelta(days=config.JWT_EXPIRES_DAYS)
    return jwt.encode({"user_id": user_id, "role": role, "exp": expires}, config.JWT_SECRET,
                      algorithm=TOKEN_ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=[TOKEN_ALGORITHM])
    except jwt.PyJWTError:
        raise AuthenticationFailed("Invalid or expired token. Please log in again.")


def get_current_user(authorization: Optional[str] = Header(None),
                     database: Database = Depends(get_db)) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationFailed("No token provided. Please log in.")
    claims = decode_token(authorization.split(" ", 1)[1])
    try:
        user_oid = to_object_id(claims.get("user_id"))
    except ValidationFailed:
        raise AuthenticationFailed("Invalid or expired token. Please log in again.")
    user = database["user"].find_one({"_id": user_oid})
    if not user:
        raise AuthenticationFailed("User not found. Please log in again.")
    if not user.get("is_active", True):
        raise AccountDisabled()
    return reconcile_seller_role(database, user)


def require_role(*roles: str):
    def dependency(user: dict = Depends(get_current_user)) -> dict:
        if user.get("role") not in roles:
            raise AccessDenied(
                f"Access denied. This action requires one of the following roles: {', '.join(roles)}"
            )
        return user
    return dependency


require_admin = require_role("admin")
require_customer = require_role("customer")
require_seller = require_role("seller", "admin")


def public_user(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "name": user.get("name"),
        "email": user.get("email"),
        "phone": user.get("phone"),
        "role": user.get("role"),
        "is_active": user.get("is_active", True),
        "is_verified": user.get("is_verified", False),
        "avatar": user.get("avatar"),
    }
