"""
tests/test_api_routes.py -- Integration tests for the /account routes.

These tests exercise the full stack: FastAPI routing -> AccessGate dependency
-> engines -> SQLAlchemy store -> response model serialization -> the
ErrorResponse exception handlers in api/main.py.

Coverage:
  - register: 201 camelCase body, 400 ACC0001 duplicate, 400 GBL0003 with validationErrors
  - login: token pair + expiries, ACC0002 / ACC0004 / ACC0005, Cache-Control no-store
  - login: the password is compared exactly as sent (no trimming); the email is trimmed
  - extend: expired-but-renewable session rotates, ACC0009 mismatch, old token dead
  - logout: 204, token rejected afterwards
  - users/me: ACC0006 with debugDescription, ACC0007 unknown token
  - users: Admin only (ACC0010), pagination echoed back, query validation
  - forgot-password: request-otp 204 without echoing the OTP, verify, reset, reuse
  - store failure rendered as 500 GBL9999
  - rate limits: 429 envelope with Retry-After; debugDescription only in debug mode

Fixtures used (from conftest.py):
  - api: ApiHarness(client, db, clock, auth, reset) shared by the module
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from api.limiter import limiter
from core.config import get_settings

PASSWORD = "Abcdef1!"
NEW_PASSWORD = "Newpass1!"


def _email(prefix: str = "user") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}@example.com"


def _register(client: TestClient, email: str, password: str = PASSWORD) -> dict:
    resp = client.post("/account/auth/register", json={"email": email, "password": password})
    assert resp.status_code == 201, resp.text
    return resp.json()


def _login(client: TestClient, email: str, password: str = PASSWORD) -> dict:
    resp = client.post("/account/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()


def _headers(body: dict) -> dict:
    return {"X-Session-Id": body["sessionToken"]}


def _error(resp) -> dict:
    return resp.json()["error"]


class TestRegister:
    def test_register_returns_user(self, api) -> None:
        email = _email()
        data = _register(api.client, email)
        assert data["email"] == email
        assert data["role"] == "User"
        assert isinstance(data["id"], int)
        assert "password" not in data and "passwordHash" not in data

    def test_duplicate_email(self, api) -> None:
        email = _email()
        _register(api.client, email)
        resp = api.client.post("/account/auth/register", json={"email": email, "password": PASSWORD})
        assert resp.status_code == 400
        assert _error(resp)["code"] == "ACC0001"

    def test_weak_password_lists_field_errors(self, api) -> None:
        resp = api.client.post("/account/auth/register", json={"email": "bad", "password": "weak"})
        assert resp.status_code == 400
        err = _error(resp)
        assert err["code"] == "GBL0003"
        assert {e["property"] for e in err["validationErrors"]} == {"email", "password"}

    def test_missing_body_fields(self, api) -> None:
        resp = api.client.post("/account/auth/register", json={"email": ""})
        assert resp.status_code == 400
        err = _error(resp)
        assert err["code"] == "GBL0003"
        assert {e["property"] for e in err["validationErrors"]} == {"email", "password"}


class TestLogin:
    def test_login_returns_token_pair(self, api) -> None:
        email = _email()
        _register(api.client, email)
        resp = api.client.post("/account/auth/login", json={"email": email, "password": PASSWORD})
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        data = resp.json()
        assert data["sessionToken"] != data["refreshToken"]
        assert data["user"]["email"] == email
        expiry = datetime.fromisoformat(data["sessionTokenExpiry"].replace("Z", "+00:00"))
        refresh_expiry = datetime.fromisoformat(data["refreshTokenExpiry"].replace("Z", "+00:00"))
        assert expiry - api.clock.now == timedelta(minutes=15)
        assert refresh_expiry > expiry

    def test_unknown_email(self, api) -> None:
        resp = api.client.post("/account/auth/login", json={"email": _email(), "password": PASSWORD})
        assert resp.status_code == 404
        assert _error(resp)["code"] == "ACC0002"

    def test_wrong_password_then_lockout(self, api) -> None:
        email = _email()
        _register(api.client, email)
        for _ in range(3):
            resp = api.client.post("/account/auth/login", json={"email": email, "password": "Wrongpw1!"})
            assert resp.status_code == 400
            assert _error(resp)["code"] == "ACC0004"
        resp = api.client.post("/account/auth/login", json={"email": email, "password": PASSWORD})
        assert resp.status_code == 400
        assert _error(resp)["code"] == "ACC0005"

    def test_padded_password_is_a_wrong_password(self, api) -> None:
        email = _email()
        _register(api.client, email)
        resp = api.client.post("/account/auth/login", json={"email": email, "password": f"  {PASSWORD}  "})
        assert resp.status_code == 400
        assert _error(resp)["code"] == "ACC0004"
        assert api.auth.users.get_by_email(email).login_attempts == 1

    def test_email_is_trimmed(self, api) -> None:
        email = _email()
        _register(api.client, email)
        resp = api.client.post("/account/auth/login", json={"email": f"  {email} ", "password": PASSWORD})
        assert resp.status_code == 200
        assert resp.json()["user"]["email"] == email

    def test_second_login_invalidates_first_token(self, api) -> None:
        email = _email()
        _register(api.client, email)
        first = _login(api.client, email)
        second = _login(api.client, email)
        assert api.client.get("/account/users/me", headers=_headers(first)).status_code == 401
        assert api.client.get("/account/users/me", headers=_headers(second)).status_code == 200


class TestExtendAndLogout:
    def test_extend_expired_session(self, api) -> None:
        email = _email()
        _register(api.client, email)
        tokens = _login(api.client, email)
        api.clock.advance(minutes=16)
        assert api.client.get("/account/users/me", headers=_headers(tokens)).status_code == 401

        resp = api.client.post(
            "/account/auth/extend", json={"refreshToken": tokens["refreshToken"]}, headers=_headers(tokens)
        )
        assert resp.status_code == 200, resp.text
        fresh = resp.json()
        assert fresh["sessionToken"] != tokens["sessionToken"]
        assert api.client.get("/account/users/me", headers=_headers(fresh)).status_code == 200

        again = api.client.post(
            "/account/auth/extend", json={"refreshToken": tokens["refreshToken"]}, headers=_headers(tokens)
        )
        assert again.status_code == 401
        assert _error(again)["code"] == "ACC0007"

    def test_extend_with_wrong_refresh_token(self, api) -> None:
        email = _email()
        _register(api.client, email)
        tokens = _login(api.client, email)
        resp = api.client.post("/account/auth/extend", json={"refreshToken": "wrong"}, headers=_headers(tokens))
        assert resp.status_code == 401
        assert _error(resp)["code"] == "ACC0009"
        assert api.client.get("/account/users/me", headers=_headers(tokens)).status_code == 200

    def test_extend_without_header(self, api) -> None:
        resp = api.client.post("/account/auth/extend", json={"refreshToken": "x"})
        assert resp.status_code == 401
        assert _error(resp)["code"] == "ACC0006"

    def test_logout(self, api) -> None:
        email = _email()
        _register(api.client, email)
        tokens = _login(api.client, email)
        resp = api.client.post("/account/auth/logout", headers=_headers(tokens))
        assert resp.status_code == 204
        me = api.client.get("/account/users/me", headers=_headers(tokens))
        assert me.status_code == 401
        assert _error(me)["code"] == "ACC0007"


class TestUsers:
    def test_me(self, api) -> None:
        email = _email()
        user = _register(api.client, email)
        tokens = _login(api.client, email)
        resp = api.client.get("/account/users/me", headers=_headers(tokens))
        assert resp.status_code == 200
        assert resp.json() == {"id": user["id"], "email": email, "role": "User"}

    def test_me_without_header_has_debug_description(self, api) -> None:
        resp = api.client.get("/account/users/me")
        assert resp.status_code == 401
        err = _error(resp)
        assert err["code"] == "ACC0006"
        assert "X-Session-Id" in err["debugDescription"]

    def test_me_with_unknown_token(self, api) -> None:
        resp = api.client.get("/account/users/me", headers={"X-Session-Id": "nope"})
        assert resp.status_code == 401
        assert _error(resp)["code"] == "ACC0007"

    def test_list_requires_admin(self, api) -> None:
        email = _email()
        _register(api.client, email)
        tokens = _login(api.client, email)
        resp = api.client.get("/account/users", headers=_headers(tokens))
        assert resp.status_code == 403
        assert _error(resp)["code"] == "ACC0010"

    def test_list_as_admin(self, api) -> None:
        email = _email("admin")
        _register(api.client, email)
        api.auth.promote(email)
        tokens = _login(api.client, email)
        resp = api.client.get("/account/users?take=1&skip=0", headers=_headers(tokens))
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["request"] == {"take": 1, "skip": 0}
        assert data["total"] >= 1
        assert len(data["content"]) == 1

    def test_list_rejects_bad_paging(self, api) -> None:
        email = _email("admin")
        _register(api.client, email)
        api.auth.promote(email)
        tokens = _login(api.client, email)
        resp = api.client.get("/account/users?take=0", headers=_headers(tokens))
        assert resp.status_code == 400
        assert _error(resp)["validationErrors"][0]["property"] == "take"


class TestForgotPassword:
    def test_full_reset_flow(self, api, monkeypatch) -> None:
        monkeypatch.setattr("account.password_reset.generate_otp", lambda length: "483920")
        email = _email()
        _register(api.client, email)

        resp = api.client.post("/account/forgot-password/request-otp", json={"email": email})
        assert resp.status_code == 204
        assert resp.content == b""

        resp = api.client.post("/account/forgot-password/verify-otp", json={"email": email, "otp": "483920"})
        assert resp.status_code == 200
        reset_token = resp.json()["token"]

        resp = api.client.post("/account/forgot-password/reset", json={"token": reset_token, "password": NEW_PASSWORD})
        assert resp.status_code == 204
        _login(api.client, email, NEW_PASSWORD)

        reuse = api.client.post("/account/forgot-password/reset", json={"token": reset_token, "password": PASSWORD})
        assert reuse.status_code == 400
        assert _error(reuse)["code"] == "ACC0008"

    def test_wrong_otp(self, api) -> None:
        email = _email()
        _register(api.client, email)
        txn = api.reset.request_otp(email)
        wrong = "".join(str((int(c) + 1) % 10) for c in txn.otp)
        resp = api.client.post("/account/forgot-password/verify-otp", json={"email": email, "otp": wrong})
        assert resp.status_code == 400
        assert _error(resp)["code"] == "ACC0008"

    def test_request_otp_unknown_email(self, api) -> None:
        resp = api.client.post("/account/forgot-password/request-otp", json={"email": _email()})
        assert resp.status_code == 404
        assert _error(resp)["code"] == "ACC0002"

    def test_reset_rejects_weak_password(self, api) -> None:
        email = _email()
        _register(api.client, email)
        txn = api.reset.request_otp(email)
        token = api.reset.verify_otp(email, txn.otp)
        resp = api.client.post("/account/forgot-password/reset", json={"token": token, "password": "weak"})
        assert resp.status_code == 400
        assert _error(resp)["code"] == "GBL0003"


def test_store_failure_is_internal_error(api, monkeypatch) -> None:
    def boom(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(api.auth.users, "get_by_email", boom)
    resp = api.client.post("/account/auth/login", json={"email": _email(), "password": PASSWORD})
    assert resp.status_code == 500
    err = _error(resp)
    assert err["code"] == "GBL9999"
    assert err["message"] == "An unknown error has occured."


@pytest.fixture
def tight_limits(monkeypatch):
    """Drop the login and OTP limits to one request per minute for this test."""
    settings = get_settings()
    monkeypatch.setattr(settings, "login_rate_limit", "1/minute")
    monkeypatch.setattr(settings, "otp_rate_limit", "1/minute")
    limiter.reset()
    yield settings
    limiter.reset()


class TestRateLimiting:
    def test_login_is_limited(self, api, tight_limits) -> None:
        email = _email()
        _register(api.client, email)
        _login(api.client, email)
        resp = api.client.post("/account/auth/login", json={"email": email, "password": PASSWORD})
        assert resp.status_code == 429
        assert resp.headers["Retry-After"]
        err = _error(resp)
        assert err["code"] == "rate_limited"
        assert "1 per 1 minute" in err["debugDescription"]

    def test_verify_otp_is_limited(self, api, tight_limits) -> None:
        body = {"email": _email(), "otp": "123456"}
        assert api.client.post("/account/forgot-password/verify-otp", json=body).status_code == 404
        assert api.client.post("/account/forgot-password/verify-otp", json=body).status_code == 429

    def test_limit_detail_hidden_outside_debug(self, api, tight_limits, monkeypatch) -> None:
        monkeypatch.setattr(tight_limits, "debug", False)
        body = {"email": _email()}
        api.client.post("/account/forgot-password/request-otp", json=body)
        resp = api.client.post("/account/forgot-password/request-otp", json=body)
        assert resp.status_code == 429
        err = _error(resp)
        assert err == {"code": "rate_limited", "message": "Too many requests."}
