"""Integration tests for the authentication flow over HTTP.

Covers:
- Registration and email verification
- Two-step login (password, then mailed one-time code)
- Lockout after repeated failures and the unlock flow
- Token refresh, logout and the current-user endpoint
- Rate limiting and the health check
"""

import uuid

import pytest
from fastapi.testclient import TestClient

from gatekeeper import app as app_module
from gatekeeper.service.runtime import get_runtime

PASSWORD = "Correct-Horse-1"


@pytest.fixture
def client():
    with TestClient(app_module.app) as test_client:
        yield test_client


def _register(client, password=PASSWORD):
    suffix = uuid.uuid4().hex[:8]
    username = f"user_{suffix}"
    email = f"{username}@example.com"
    response = client.post(
        "/v1/auth/register",
        json={"username": username, "email": email, "password": password, "captcha_token": "ok"},
    )
    assert response.status_code == 201, f"Register failed: {response.text}"
    return response.json()["data"]["user"]


def _verify(client, user):
    token = get_runtime().tokens.issue_email_verification(user["email"], user["id"])
    response = client.post("/v1/auth/verify-email", json={"token": token})
    assert response.status_code == 200, response.text
    return response


def _login(client, identifier, password=PASSWORD):
    return client.post(
        "/v1/auth/login",
        json={"identifier": identifier, "password": password, "captcha_token": "ok"},
    )


def _full_login(client, user, password=PASSWORD):
    response = _login(client, user["username"], password)
    assert response.status_code == 200, response.text
    assert response.json()["data"]["requires_otp"] is True
    otp = get_runtime().store.get_user(user["id"]).login_otp
    response = client.post(
        "/v1/auth/verify-otp", json={"identifier": user["username"], "otp": otp}
    )
    assert response.status_code == 200, response.text
    return response.json()["data"]


@pytest.fixture
def verified_user(client):
    user = _register(client)
    _verify(client, user)
    return user


class TestRegistration:
    def test_register_returns_summary(self, client):
        user = _register(client)

        assert user["role"] == "user"
        assert user["is_system_admin"] is False
        assert get_runtime().store.get_user(user["id"]).is_verified is False

    def test_duplicate_username_conflicts(self, client):
        user = _register(client)
        response = client.post(
            "/v1/auth/register",
            json={
                "username": user["username"],
                "email": f"other_{uuid.uuid4().hex[:6]}@example.com",
                "password": PASSWORD,
                "captcha_token": "ok",
            },
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_short_password_is_validation_error(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"username": "shorty", "email": "s@example.com", "password": "short", "captcha_token": "ok"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_missing_challenge_rejected(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"username": "nochallenge", "email": "nc@example.com", "password": PASSWORD},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "challenge_failed"

    def test_unverified_login_is_forbidden(self, client):
        user = _register(client)

        response = _login(client, user["email"])

        assert response.status_code == 403
        body = response.json()["error"]
        assert body["code"] == "email_not_verified"
        assert body["details"]["email"].endswith("@example.com")

    def test_verify_email_twice(self, client):
        user = _register(client)
        assert _verify(client, user).json()["data"]["already_verified"] is False

        assert _verify(client, user).json()["data"]["already_verified"] is True


class TestLogin:
    def test_password_then_otp(self, client, verified_user):
        data = _full_login(client, verified_user)

        assert data["token_type"] == "bearer"
        assert data["user"]["id"] == verified_user["id"]
        assert data["session_id"].startswith(f"session_{verified_user['id']}_")

    def test_otp_is_single_use(self, client, verified_user):
        _login(client, verified_user["username"])
        otp = get_runtime().store.get_user(verified_user["id"]).login_otp
        payload = {"identifier": verified_user["username"], "otp": otp}

        assert client.post("/v1/auth/verify-otp", json=payload).status_code == 200
        response = client.post("/v1/auth/verify-otp", json=payload)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_otp"

    def test_malformed_otp_is_400(self, client, verified_user):
        response = client.post(
            "/v1/auth/verify-otp", json={"identifier": verified_user["username"], "otp": "12ab"}
        )

        assert response.status_code == 400

    def test_wrong_password_reports_attempts(self, client, verified_user):
        response = _login(client, verified_user["username"], "Wrong-Password-1")

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "invalid_credentials"
        assert error["details"] == {"attempts_remaining": 2, "is_locked": False}

    def test_lockout_then_unlock(self, client, verified_user):
        for _ in range(2):
            assert _login(client, verified_user["username"], "Wrong-Password-1").status_code == 401
        locked = _login(client, verified_user["username"], "Wrong-Password-1")
        assert locked.status_code == 423
        assert locked.json()["error"]["code"] == "account_locked"

        # Correct password does not bypass the lock
        assert _login(client, verified_user["username"]).status_code == 423

        unlock_token = get_runtime().store.get_user(verified_user["id"]).unlock_token
        response = client.post(
            "/v1/auth/unlock", json={"token": unlock_token, "new_password": "Brand-New-Pass-2"}
        )
        assert response.status_code == 200, response.text

        assert _login(client, verified_user["username"], "Brand-New-Pass-2").status_code == 200

    def test_unknown_account_is_generic(self, client):
        response = _login(client, "nobody@example.com")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"

    def test_login_rate_limited(self, client):
        limit = get_runtime().settings.login_rate_limit_per_minute
        for _ in range(limit):
            assert _login(client, "ghost", "Wrong-Password-1").status_code == 401

        response = _login(client, "ghost", "Wrong-Password-1")

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) >= 1


class TestTokens:
    def test_me(self, client, verified_user):
        data = _full_login(client, verified_user)

        response = client.get("/v1/auth/me", headers={"Authorization": f"Bearer {data['access_token']}"})

        assert response.status_code == 200
        assert response.json()["data"]["username"] == verified_user["username"]

    def test_me_requires_token(self, client):
        response = client.get("/v1/auth/me")

        assert response.status_code == 401
        assert response.json()["status"] == "error"

    def test_refresh_rotates(self, client, verified_user):
        data = _full_login(client, verified_user)

        response = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})

        assert response.status_code == 200
        rotated = response.json()["data"]
        assert rotated["refresh_token"] != data["refresh_token"]
        stale = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert stale.status_code == 401

    def test_logout_revokes_refresh(self, client, verified_user):
        data = _full_login(client, verified_user)
        headers = {"Authorization": f"Bearer {data['access_token']}"}

        response = client.post("/v1/auth/logout", headers=headers)

        assert response.status_code == 200
        assert response.json()["data"]["sessions_removed"] == 1
        assert client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]}).status_code == 401

    def test_activity_feed(self, client, verified_user):
        data = _full_login(client, verified_user)

        response = client.get(
            "/v1/auth/activity", headers={"Authorization": f"Bearer {data['access_token']}"}
        )

        actions = [entry["action"] for entry in response.json()["data"]]
        assert "LOGIN_SUCCESS" in actions
        assert "OTP_VERIFIED" in actions


class TestRecovery:
    def test_forgot_password_never_reveals_accounts(self, client, verified_user):
        known = client.post("/v1/auth/forgot-password", json={"email": verified_user["email"]})
        unknown = client.post("/v1/auth/forgot-password", json={"email": "missing@example.com"})

        assert known.json()["data"] == unknown.json()["data"] == {"status": "sent"}

    def test_reset_password(self, client, verified_user):
        client.post("/v1/auth/forgot-password", json={"email": verified_user["email"]})
        token = get_runtime().store.get_user(verified_user["id"]).password_reset_token

        response = client.post(
            "/v1/auth/reset-password", json={"token": token, "new_password": "Reset-Password-9"}
        )

        assert response.status_code == 200
        assert _login(client, verified_user["username"], "Reset-Password-9").status_code == 200

    def test_deregister(self, client, verified_user):
        data = _full_login(client, verified_user)

        response = client.post(
            "/v1/auth/deregister",
            json={"password": PASSWORD, "reason": "leaving"},
            headers={"Authorization": f"Bearer {data['access_token']}"},
        )

        assert response.status_code == 200
        assert get_runtime().store.get_user_by_email(verified_user["email"]) is None


def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["type"] == "memory"
    assert body["checks"]["redis"] == {"status": "not_configured"}


def test_security_headers(client):
    response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"
    assert response.headers["X-Frame-Options"] == "DENY"
