"""
Google OAuth 2.0 (authorization code flow) over plain HTTP.
"""
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from urllib.parse import urlencode

import jwt
import requests

import config
from auth import TOKEN_ALGORITHM
from errors import AuthenticationFailed, ProviderError

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"
STATE_TTL_MINUTES = 10


def make_state(role: str) -> Tuple[str, str]:
    """Signed OAuth state carrying the requested role, plus the nonce the browser must echo back."""
    nonce = secrets.token_urlsafe(16)
    expires = datetime.now(timezone.utc) + timedelta(minutes=STATE_TTL_MINUTES)
    state = jwt.encode({"role": role, "nonce": nonce, "exp": expires}, config.JWT_SECRET,
                       algorithm=TOKEN_ALGORITHM)
    return state, nonce


def read_state(state: Optional[str], nonce: Optional[str]) -> str:
    if not state or not nonce:
        raise AuthenticationFailed("Google sign-in session is missing. Please try again.")
    try:
        claims = jwt.decode(state, config.JWT_SECRET, algorithms=[TOKEN_ALGORITHM])
    except jwt.PyJWTError:
        raise AuthenticationFailed("Google sign-in session is invalid or expired. Please try again.")
    if not hmac.compare_digest(str(claims.get("nonce", "")), nonce):
        logger.warning("Google callback with mismatched state nonce")
        raise AuthenticationFailed("Google sign-in session is invalid or expired. Please try again.")
    return claims.get("role") or "customer"


def authorization_url(state: str) -> str:
    if not config.GOOGLE_CLIENT_ID:
        raise ProviderError("Google sign-in is not configured")
    params = {
        "client_id": config.GOOGLE_CLIENT_ID,
        "redirect_uri": config.GOOGLE_CALLBACK_URL,
        "response_type": "code",
        "scope": "openid email profile",
        "state": state,
        "prompt": "select_account",
    }
    return f"{AUTHORIZE_URL}?{urlencode(params)}"


def fetch_profile(code: str, session=None) -> dict:
    """Exchange the callback code and return {google_id, email, name, avatar}."""
    http = session or requests
    try:
        token_response = http.post(TOKEN_URL, data={
            "code": code,
            "client_id": config.GOOGLE_CLIENT_ID,
            "client_secret": config.GOOGLE_CLIENT_SECRET,
            "redirect_uri": config.GOOGLE_CALLBACK_URL,
            "grant_type": "authorization_code",
        }, timeout=config.PROVIDER_TIMEOUT_SECONDS)
        if token_response.status_code == 400:
            raise AuthenticationFailed("Google sign-in was not completed")
        token_response.raise_for_status()
        access_token = token_response.json()["access_token"]

        info_response = http.get(USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"},
                                 timeout=config.PROVIDER_TIMEOUT_SECONDS)
        info_response.raise_for_status()
        info = info_response.json()
    except requests.RequestException as exc:
        logger.error("Google OAuth error: %s", exc)
        raise ProviderError("Google sign-in failed")

    if not info.get("email") or not info.get("email_verified", False):
        raise AuthenticationFailed("Google account has no verified email")
    return {
        "google_id": info["sub"],
        "email": info["email"].lower(),
        "name": info.get("name") or info["email"].split("@")[0],
        "avatar": info.get("picture"),
    }
