"""
One-time codes for email verification, the login second factor and
password reset. One live code per email; a code verifies once.
"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import Iterable, Optional

from pymongo.database import Database

import config
from database import create_document, utcnow
from schemas import Otp

logger = logging.getLogger(__name__)


def generate_code() -> str:
    return str(secrets.randbelow(900000) + 100000)


def issue_otp(database: Database, email: str, purpose: str, now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    email = email.lower()
    removed = database["otp"].delete_many({"email": email}).deleted_count
    if removed:
        logger.debug("Invalidated %d previous code(s) for %s", removed, email)
    code = generate_code()
    create_document(database, "otp", Otp(
        email=email,
        code=code,
        purpose=purpose,
        expires_at=now + timedelta(minutes=config.OTP_TTL_MINUTES),
    ))
    return code


def verify_otp(database: Database, email: str, code: str, purposes: Iterable[str],
               now: Optional[datetime] = None) -> bool:
    # find_one_and_delete makes the code single-use even under concurrent attempts
    now = now or utcnow()
    otp = database["otp"].find_one_and_delete({
        "email": email.lower(),
        "code": str(code),
        "purpose": {"$in": list(purposes)},
        "expires_at": {"$gt": now},
    })
    return otp is not None
