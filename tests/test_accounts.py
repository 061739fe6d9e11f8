from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

import accounts
from auth import verify_password
from conftest import PASSWORD, auth_header, make_user
from database import utcnow
from errors import AccessDenied, AccountDisabled, AuthenticationFailed, ValidationFailed
from otp import issue_otp, verify_otp

EMAIL = "aline@kuisoko.rw"


def code_for(db, email=EMAIL):
    return db["otp"].find_one({"email": email})["code"]


def signup_payload(**overrides):
    payload = {"name": "Aline Uwase", "email": EMAIL, "password": PASSWORD}
    payload.update(overrides)
    return payload


def test_signup_then_verify_with_code(client, db):
    res = client.post("/api/auth/signup", json=signup_payload())
    assert res.status_code == 201
    assert res.json()["user"]["is_verified"] is False
    code = code_for(db)

    wrong = "000000" if code != "000000" else "111111"
    res = client.post("/api/auth/verify-otp", json={"email": EMAIL, "code": wrong})
    assert res.status_code == 400
    assert db["user"].find_one({"email": EMAIL})["is_verified"] is False

    res = client.post("/api/auth/verify-otp", json={"email": EMAIL, "code": code})
    assert res.status_code == 200
    assert res.json()["token"]
    assert db["user"].find_one({"email": EMAIL})["is_verified"] is True
    assert db["otp"].count_documents({"email": EMAIL}) == 0


def test_otp_verifies_once(db):
    code = issue_otp(db, EMAIL, "verify")
    assert verify_otp(db, EMAIL, code, ("verify",)) is True
    assert verify_otp(db, EMAIL, code, ("verify",)) is False


def test_otp_expires(db):
    issued_at = utcnow() - timedelta(minutes=11)
    code = issue_otp(db, EMAIL, "verify", now=issued_at)
    assert verify_otp(db, EMAIL, code, ("verify",)) is False


def test_new_code_replaces_old_one(db):
    first = issue_otp(db, EMAIL, "verify")
    second = issue_otp(db, EMAIL, "verify")
    assert db["otp"].count_documents({"email": EMAIL}) == 1
    if first != second:
        assert verify_otp(db, EMAIL, first, ("verify",)) is False
    assert verify_otp(db, EMAIL, second, ("verify",)) is True


def test_reset_code_cannot_log_in(db):
    make_user(db, email=EMAIL)
    accounts.forgot_password(db, EMAIL)
    code = code_for(db)

    with pytest.raises(ValidationFailed):
        accounts.complete_otp(db, EMAIL, code)


def test_login_code_cannot_reset_password(db):
    make_user(db, email=EMAIL)
    accounts.login(db, EMAIL, PASSWORD)
    code = code_for(db)

    with pytest.raises(ValidationFailed):
        accounts.reset_password(db, EMAIL, code, "Another123")


def test_login_is_two_step(client, db):
    make_user(db, email=EMAIL)

    res = client.post("/api/auth/login", json={"email": EMAIL, "password": PASSWORD})
    assert res.status_code == 200
    assert res.json()["needs_otp"] is True
    assert "token" not in res.json()

    res = client.post("/api/auth/verify-otp", json={"email": EMAIL, "code": code_for(db)})
    token = res.json()["token"]
    res = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert res.json()["user"]["email"] == EMAIL


def test_login_failures(db):
    make_user(db, email=EMAIL)
    with pytest.raises(AuthenticationFailed):
        accounts.login(db, EMAIL, "Wrong1234")
    with pytest.raises(AuthenticationFailed):
        accounts.login(db, "nobody@kuisoko.rw", PASSWORD)

    make_user(db, email="new@kuisoko.rw", is_verified=False)
    with pytest.raises(AccessDenied):
        accounts.login(db, "new@kuisoko.rw", PASSWORD)


def test_password_reset(db):
    make_user(db, email=EMAIL)
    accounts.forgot_password(db, EMAIL)
    accounts.reset_password(db, EMAIL, code_for(db), "Another123")

    accounts.login(db, EMAIL, "Another123")
    with pytest.raises(AuthenticationFailed):
        accounts.login(db, EMAIL, PASSWORD)


def test_weak_password_and_duplicate_email(client, db):
    res = client.post("/api/auth/signup", json=signup_payload(password="short"))
    assert res.status_code == 400
    assert res.json()["code"] == "VALIDATION"

    make_user(db, email=EMAIL)
    res = client.post("/api/auth/signup", json=signup_payload(email=EMAIL.upper()))
    assert res.status_code == 400
    assert res.json()["detail"] == "User with this email already exists"


def test_seller_signup_waits_for_approval(db):
    user = accounts.signup(db, "Jean Bosco", "jean@kuisoko.rw", PASSWORD, phone="250788123456",
                           role="seller", store_name="Bosco Crafts")
    profile = db["sellerprofile"].find_one({"user_id": str(user["_id"])})

    assert user["role"] == "customer"
    assert profile["seller_status"] == "pending"
    assert profile["store_name"] == "Bosco Crafts"


def test_deactivated_user_is_locked_out(client, db):
    user = make_user(db, email=EMAIL, is_active=False)

    with pytest.raises(AccountDisabled):
        accounts.login(db, EMAIL, PASSWORD)
    res = client.get("/api/auth/me", headers=auth_header(user))
    assert res.status_code == 403
    assert res.json()["code"] == "ACCOUNT_DISABLED"


def test_bad_tokens(client):
    assert client.get("/api/auth/me").status_code == 401
    res = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 401
    assert res.json()["code"] == "UNAUTHORIZED"


def test_google_new_account(db):
    resolved = accounts.resolve_google_account(db, "g-1", "new@kuisoko.rw", "New Person",
                                               requested_role="seller")

    assert resolved.outcome == accounts.AccountOutcome.NEW_ACCOUNT
    assert resolved.user["role"] == "seller"
    assert resolved.user["is_verified"] is True
    profile = db["sellerprofile"].find_one({"user_id": str(resolved.user["_id"])})
    assert profile["seller_status"] == "active"


def test_google_links_existing_email(db):
    existing = make_user(db, email=EMAIL, is_verified=False)

    resolved = accounts.resolve_google_account(db, "g-2", EMAIL, "Aline", avatar="https://img/a.png")

    assert resolved.outcome == accounts.AccountOutcome.LINKED_EXISTING
    assert resolved.user["_id"] == existing["_id"]
    stored = db["user"].find_one({"_id": existing["_id"]})
    assert stored["google_id"] == "g-2"
    assert stored["is_verified"] is True

    again = accounts.resolve_google_account(db, "g-2", EMAIL, "Aline")
    assert again.outcome == accounts.AccountOutcome.EXISTING_MATCH


def test_google_disabled_account(db):
    make_user(db, email=EMAIL, is_active=False, google_id="g-3")
    with pytest.raises(AccountDisabled):
        accounts.resolve_google_account(db, "g-3", EMAIL, "Aline")


GOOGLE_PROFILE = {"google_id": "g-4", "email": EMAIL, "name": "Aline", "avatar": None}


def start_google_login(client, monkeypatch, role="customer"):
    import config

    monkeypatch.setattr(config, "GOOGLE_CLIENT_ID", "client-id")
    res = client.get("/api/auth/google", params={"role": role}, follow_redirects=False)
    assert res.status_code == 307
    assert "google_oauth_nonce" in res.headers["set-cookie"]
    return parse_qs(urlparse(res.headers["location"]).query)["state"][0]


def test_google_callback_redirects_with_token(client, db, monkeypatch):
    import google

    monkeypatch.setattr(google, "fetch_profile", lambda code: GOOGLE_PROFILE)
    state = start_google_login(client, monkeypatch, role="seller")

    res = client.get("/api/auth/google/callback", params={"code": "abc", "state": state},
                     follow_redirects=False)

    assert res.status_code == 307
    location = res.headers["location"]
    assert "/auth/google/success?token=" in location
    assert "outcome=new_account" in location
    assert "role=seller" in location


def test_google_callback_rejects_forged_state(client, db, monkeypatch):
    import google
    import jwt
    from fastapi.testclient import TestClient

    import main

    calls = []
    monkeypatch.setattr(google, "fetch_profile", lambda code: calls.append(code) or GOOGLE_PROFILE)
    start_google_login(client, monkeypatch)

    # plain role name, as an attacker-built link would carry
    res = client.get("/api/auth/google/callback", params={"code": "abc", "state": "seller"})
    assert res.status_code == 401
    assert res.json()["code"] == "UNAUTHORIZED"

    forged = jwt.encode({"role": "seller", "nonce": "x"}, "other-secret", algorithm="HS256")
    res = client.get("/api/auth/google/callback", params={"code": "abc", "state": forged})
    assert res.status_code == 401

    # a valid state replayed from a browser that never started the login
    state, _ = google.make_state("seller")
    res = TestClient(main.app).get("/api/auth/google/callback", params={"code": "abc", "state": state})
    assert res.status_code == 401

    assert calls == []
    assert db["user"].count_documents({}) == 0


def test_google_state_nonce_must_match():
    import google

    state, nonce = google.make_state("seller")
    assert google.read_state(state, nonce) == "seller"
    with pytest.raises(AuthenticationFailed):
        google.read_state(state, "someone-elses-nonce")
    with pytest.raises(AuthenticationFailed):
        google.read_state(state, None)


def test_bootstrap_admin(db, monkeypatch):
    import config

    monkeypatch.setattr(config, "ADMIN_EMAIL", "boss@kuisoko.rw")
    monkeypatch.setattr(config, "ADMIN_PASSWORD", "Admin12345")
    accounts.ensure_admin(db)
    accounts.ensure_admin(db)

    admins = list(db["user"].find({"role": "admin"}))
    assert [a["email"] for a in admins] == ["boss@kuisoko.rw"]
    assert verify_password("Admin12345", admins[0]["password_hash"])


def test_app_startup_prepares_database(db, monkeypatch):
    import config
    import database as database_module
    from fastapi.testclient import TestClient

    import main

    monkeypatch.setattr(database_module, "db", db)
    monkeypatch.setattr(config, "ADMIN_EMAIL", "boss@kuisoko.rw")
    monkeypatch.setattr(config, "ADMIN_PASSWORD", "Admin12345")

    with TestClient(main.app) as app_client:
        assert app_client.get("/").json()["status"] == "ok"

    assert db["user"].find_one({"email": "boss@kuisoko.rw"})["role"] == "admin"
    assert db["user"].index_information()["email_1"]["unique"] is True


def test_app_starts_without_database(monkeypatch):
    import database as database_module
    from fastapi.testclient import TestClient

    import main

    monkeypatch.setattr(database_module, "db", None)
    with TestClient(main.app) as app_client:
        assert app_client.get("/").status_code == 200
