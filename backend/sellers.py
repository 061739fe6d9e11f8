"""
Seller profiles and the role <-> seller status synchronization.

A user whose role is "seller" must own an "active" profile, and a profile
that is not active must not belong to a seller. Admin actions change one
side and then the other; both writes carry the same timestamp
(role_changed_at / status_changed_at). The second write is retried a few
times. If it still fails, the pair stays inconsistent until the user is
next loaded, when reconcile_seller_role repairs it in favour of the newer
write.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import create_document, paginate, to_object_id, utcnow
from errors import NotFound, SyncPartialFailure, ValidationFailed
from schemas import ROLES, SELLER_STATUSES, SellerProfile

logger = logging.getLogger(__name__)

SYNC_WRITE_ATTEMPTS = 3


def _retry_write(description: str, write: Callable[[], None]) -> None:
    for attempt in range(1, SYNC_WRITE_ATTEMPTS + 1):
        try:
            write()
            return
        except PyMongoError as exc:
            logger.warning("%s failed (attempt %d/%d): %s", description, attempt, SYNC_WRITE_ATTEMPTS, exc)
    logger.error("%s gave up; left for reconciliation on next load", description)
    raise SyncPartialFailure(f"{description} could not be completed")


def role_for_status(status: str, current_role: str) -> str:
    if current_role == "admin":
        return "admin"
    return "seller" if status == "active" else "customer"


def _placeholder_profile(user: dict, now: datetime) -> SellerProfile:
    return SellerProfile(
        user_id=str(user["_id"]),
        store_name=f"{user.get('name', 'Seller')}'s Store",
        phone=user.get("phone") or "",
        seller_status="active",
        status_changed_at=now,
    )


def _set_profile_status(database: Database, user: dict, status: str, now: datetime) -> None:
    user_id = str(user["_id"])
    profile = database["sellerprofile"].find_one({"user_id": user_id})
    if profile is None:
        if status == "active":
            create_document(database, "sellerprofile", _placeholder_profile(user, now))
        return
    if profile.get("seller_status") == status:
        return
    database["sellerprofile"].update_one(
        {"_id": profile["_id"]},
        {"$set": {"seller_status": status, "status_changed_at": now, "updated_at": now}},
    )


def _set_user_role(database: Database, user_id: str, role: str, now: datetime) -> None:
    database["user"].update_one(
        {"_id": to_object_id(user_id)},
        {"$set": {"role": role, "role_changed_at": now, "updated_at": now}},
    )


def set_seller_status(database: Database, profile_id: str, status: str) -> dict:
    """Admin action: change a profile's status and mirror it onto the user's role."""
    if status not in SELLER_STATUSES:
        raise ValidationFailed("Invalid status. Must be pending, active, or blocked.")
    now = utcnow()
    profile = database["sellerprofile"].find_one_and_update(
        {"_id": to_object_id(profile_id, "seller id")},
        {"$set": {"seller_status": status, "status_changed_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if not profile:
        raise NotFound("Seller not found")

    user = database["user"].find_one({"_id": to_object_id(profile["user_id"])})
    if user:
        target = role_for_status(status, user.get("role"))
        if target != user.get("role"):
            _retry_write(
                f"Role update to {target} for user {profile['user_id']}",
                lambda: _set_user_role(database, profile["user_id"], target, now),
            )
    logger.info("Seller %s status set to %s", profile_id, status)
    return profile


def set_user_role(database: Database, user_id: str, role: str) -> dict:
    """Admin action: change a user's role and mirror it onto the seller profile."""
    if role not in ROLES:
        raise ValidationFailed("Invalid role. Must be customer, seller, or admin.")
    now = utcnow()
    before = database["user"].find_one_and_update(
        {"_id": to_object_id(user_id, "user id")},
        {"$set": {"role": role, "role_changed_at": now, "updated_at": now}},
    )
    if not before:
        raise NotFound("User not found")
    old_role = before.get("role")

    if role == "seller":
        _retry_write(
            f"Seller profile activation for user {user_id}",
            lambda: _set_profile_status(database, before, "active", now),
        )
    elif old_role == "seller":
        _retry_write(
            f"Seller profile block for user {user_id}",
            lambda: _set_profile_status(database, before, "blocked", now),
        )
    logger.info("User %s role changed %s -> %s", user_id, old_role, role)
    return database["user"].find_one({"_id": before["_id"]})


def _newer(a: Optional[datetime], b: Optional[datetime]) -> bool:
    return a is not None and (b is None or a > b)


def reconcile_seller_role(database: Database, user: dict) -> dict:
    """Repair a drifted role/status pair; returns the (possibly updated) user."""
    role = user.get("role")
    if role == "admin":
        return user
    user_id = str(user["_id"])
    profile = database["sellerprofile"].find_one({"user_id": user_id})
    now = utcnow()

    if profile is None:
        if role == "seller":
            logger.warning("Seller %s had no profile; creating an active one", user_id)
            create_document(database, "sellerprofile", _placeholder_profile(user, now))
        return user

    status = profile.get("seller_status")
    if (role == "seller") == (status == "active"):
        return user

    if _newer(user.get("role_changed_at"), profile.get("status_changed_at")):
        new_status = "active" if role == "seller" else "blocked"
        logger.warning("Repairing seller profile of %s: %s -> %s", user_id, status, new_status)
        _set_profile_status(database, user, new_status, now)
        return user

    new_role = role_for_status(status, role)
    logger.warning("Repairing role of %s: %s -> %s", user_id, role, new_role)
    _set_user_role(database, user_id, new_role, now)
    user = dict(user)
    user["role"] = new_role
    user["role_changed_at"] = now
    return user


# ========== PROFILES ==========

def list_sellers(database: Database, status: Optional[str], page: int, limit: int) -> dict:
    filt = {}
    if status:
        filt["seller_status"] = status
    return paginate(database, "sellerprofile", filt, page, limit)


def get_profile(database: Database, profile_id: str) -> dict:
    profile = database["sellerprofile"].find_one({"_id": to_object_id(profile_id, "seller id")})
    if not profile:
        raise NotFound("Seller not found")
    return profile


def get_profile_for_user(database: Database, user_id: str) -> Optional[dict]:
    return database["sellerprofile"].find_one({"user_id": user_id})


def update_own_profile(database: Database, user_id: str, changes: dict) -> dict:
    changes = {k: v for k, v in changes.items() if v is not None}
    if not changes:
        raise ValidationFailed("No fields to update")
    changes["updated_at"] = utcnow()
    profile = database["sellerprofile"].find_one_and_update(
        {"user_id": user_id}, {"$set": changes}, return_document=ReturnDocument.AFTER,
    )
    if not profile:
        raise NotFound("Seller profile not found")
    return profile


def request_upgrade(database: Database, user: dict, store_name: str, store_description: str,
                    phone: str) -> dict:
    existing = get_profile_for_user(database, str(user["_id"]))
    if existing:
        if existing.get("seller_status") == "active":
            raise ValidationFailed("You are already a seller")
        raise ValidationFailed("A seller request is already pending or blocked")
    profile = SellerProfile(
        user_id=str(user["_id"]),
        store_name=store_name,
        store_description=store_description or "",
        phone=phone,
        seller_status="pending",
        status_changed_at=utcnow(),
    )
    pid = create_document(database, "sellerprofile", profile)
    logger.info("Seller upgrade requested by %s", user["_id"])
    return database["sellerprofile"].find_one({"_id": to_object_id(pid)})
