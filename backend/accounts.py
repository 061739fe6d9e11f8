"""
Account lifecycle: signup, password + OTP login, verification,
password reset and Google sign-in account resolution.
"""
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
from auth import create_token, hash_password, public_user, verify_password
from database import create_document, to_object_id, utcnow
from errors import AccountDisabled, AccessDenied, AuthenticationFailed, NotFound, ValidationFailed
from mailer import send_otp_email, send_welcome_email
from otp import issue_otp, verify_otp
from schemas import SellerProfile, User

logger = logging.getLogger(__name__)


class AccountOutcome(str, Enum):
    NEW_ACCOUNT = "new_account"
    LINKED_EXISTING = "linked_existing"
    EXISTING_MATCH = "existing_match"


@dataclass
class ResolvedAccount:
    user: dict
    outcome: AccountOutcome


def check_password_strength(password: str) -> None:
    if len(password) < 8:
        raise ValidationFailed("Password must be at least 8 characters long")
    if not re.search(r"[A-Z]", password):
        raise ValidationFailed("Password must contain at least one uppercase letter")
    if not re.search(r"[0-9]", password):
        raise ValidationFailed("Password must contain at least one number")


def find_user_by_email(database: Database, email: str) -> Optional[dict]:
    return database["user"].find_one({"email": email.lower()})


def signup(database: Database, name: str, email: str, password: str, phone: Optional[str] = None,
           role: str = "customer", store_name: Optional[str] = None,
           store_description: Optional[str] = None) -> dict:
    email = email.lower()
    if role not in ("customer", "seller"):
        raise ValidationFailed("Role must be customer or seller")
    check_password_strength(password)
    if find_user_by_email(database, email):
        raise ValidationFailed("User with this email already exists")

    # sellers start as customers with a pending profile until an admin approves them
    user = User(name=name, email=email, password_hash=hash_password(password), phone=phone,
                role="customer", is_verified=False)
    try:
        uid = create_document(database, "user", user)
    except DuplicateKeyError:
        raise ValidationFailed("User with this email already exists")
    if role == "seller":
        create_document(database, "sellerprofile", SellerProfile(
            user_id=uid,
            store_name=store_name or f"{name}'s Store",
            store_description=store_description or "",
            phone=phone or "",
            seller_status="pending",
            status_changed_at=utcnow(),
        ))

    code = issue_otp(database, email, "verify")
    send_otp_email(email, code, "Account Verification OTP")
    logger.info("New account %s registered (requested role %s)", email, role)
    return database["user"].find_one({"_id": to_object_id(uid)})


def login(database: Database, email: str, password: str) -> dict:
    user = find_user_by_email(database, email)
    if not user:
        raise AuthenticationFailed("Invalid email or password")
    if not user.get("is_active", True):
        raise AccountDisabled()
    if not user.get("is_verified"):
        raise AccessDenied("Please verify your email before logging in.")
    if not verify_password(password, user.get("password_hash")):
        logger.warning("Failed login attempt for %s", user["email"])
        raise AuthenticationFailed("Invalid email or password")

    code = issue_otp(database, user["email"], "login")
    send_otp_email(user["email"], code, "Login Verification OTP")
    return {"needs_otp": True, "email": user["email"]}


def complete_otp(database: Database, email: str, code: str) -> dict:
    """Consume a verification/login code; returns the user and a bearer token."""
    if not verify_otp(database, email, code, ("verify", "login")):
        raise ValidationFailed("Invalid or expired OTP")
    user = find_user_by_email(database, email)
    if not user:
        raise NotFound("User not found")
    if not user.get("is_active", True):
        raise AccountDisabled()
    if not user.get("is_verified"):
        database["user"].update_one({"_id": user["_id"]},
                                    {"$set": {"is_verified": True, "updated_at": utcnow()}})
        user["is_verified"] = True
        send_welcome_email(user["email"], user.get("name", ""))
    return {"user": public_user(user), "token": create_token(str(user["_id"]), user["role"])}


def resend_otp(database: Database, email: str) -> None:
    user = find_user_by_email(database, email)
    if not user:
        raise NotFound("No user found with this email")
    if user.get("is_verified"):
        raise ValidationFailed("Account is already verified")
    code = issue_otp(database, user["email"], "verify")
    send_otp_email(user["email"], code, "Account Verification OTP")


def forgot_password(database: Database, email: str) -> None:
    user = find_user_by_email(database, email)
    if not user:
        raise NotFound("No user found with this email")
    code = issue_otp(database, user["email"], "reset")
    send_otp_email(user["email"], code)


def reset_password(database: Database, email: str, code: str, new_password: str) -> None:
    check_password_strength(new_password)
    if not verify_otp(database, email, code, ("reset",)):
        raise ValidationFailed("Invalid or expired OTP")
    result = database["user"].update_one(
        {"email": email.lower()},
        {"$set": {"password_hash": hash_password(new_password), "updated_at": utcnow()}},
    )
    if result.matched_count == 0:
        raise NotFound("User not found")
    logger.info("Password reset for %s", email.lower())


def resolve_google_account(database: Database, google_id: str, email: str, name: str,
                           avatar: Optional[str] = None,
                           requested_role: Optional[str] = None) -> ResolvedAccount:
    now = utcnow()
    user = database["user"].find_one({"google_id": google_id})
    if user:
        if avatar and user.get("avatar") != avatar:
            database["user"].update_one({"_id": user["_id"]}, {"$set": {"avatar": avatar, "updated_at": now}})
            user["avatar"] = avatar
        outcome = AccountOutcome.EXISTING_MATCH
    else:
        user = find_user_by_email(database, email)
        if user:
            changes = {"google_id": google_id, "is_verified": True, "updated_at": now}
            if avatar:
                changes["avatar"] = avatar
            database["user"].update_one({"_id": user["_id"]}, {"$set": changes})
            user.update(changes)
            outcome = AccountOutcome.LINKED_EXISTING
        else:
            role = "seller" if requested_role == "seller" else "customer"
            uid = create_document(database, "user", User(
                name=name, email=email.lower(), google_id=google_id, avatar=avatar,
                role=role, is_verified=True, role_changed_at=now,
            ))
            user = database["user"].find_one({"_id": to_object_id(uid)})
            if role == "seller":
                create_document(database, "sellerprofile", SellerProfile(
                    user_id=uid, store_name=f"{name}'s Store", seller_status="active",
                    status_changed_at=now,
                ))
            outcome = AccountOutcome.NEW_ACCOUNT

    if not user.get("is_active", True):
        raise AccountDisabled()
    logger.info("Google sign-in for %s: %s", user["email"], outcome.value)
    return ResolvedAccount(user=user, outcome=outcome)


def ensure_admin(database: Database) -> None:
    """Create or promote the configured bootstrap admin."""
    if not config.ADMIN_EMAIL or not config.ADMIN_PASSWORD:
        return
    now = utcnow()
    existing = find_user_by_email(database, config.ADMIN_EMAIL)
    if existing:
        if existing.get("role") != "admin":
            database["user"].update_one({"_id": existing["_id"]},
                                        {"$set": {"role": "admin", "role_changed_at": now, "is_verified": True}})
            logger.info("Promoted %s to admin", config.ADMIN_EMAIL)
        return
    create_document(database, "user", User(
        name="Admin", email=config.ADMIN_EMAIL, password_hash=hash_password(config.ADMIN_PASSWORD),
        role="admin", is_verified=True, role_changed_at=now,
    ))
    logger.info("Created admin account %s", config.ADMIN_EMAIL)
