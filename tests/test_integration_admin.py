"""Integration tests for admin operations.

Tests admin-only functionality including:
- System administrator login
- User management
- Session listing and termination
- Permission overrides
"""

import uuid

import pytest
from fastapi.testclient import TestClient

from gatekeeper import app as app_module
from gatekeeper.service.runtime import get_runtime
from gatekeeper.service.sessions import derive_session_id
from gatekeeper.storage.models import Role, utcnow

PASSWORD = "Member-Password-1"


@pytest.fixture
def client():
    with TestClient(app_module.app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers(client):
    """Log in as the configured system administrator."""
    response = client.post(
        "/v1/auth/login",
        json={"identifier": "root@example.com", "password": "Root-Password-123"},
    )
    assert response.status_code == 200, f"Admin login failed: {response.text}"
    data = response.json()["data"]
    assert data["user"]["is_system_admin"] is True
    return {"Authorization": f"Bearer {data['access_token']}"}


def _member(client, role=Role.USER):
    """Create a verified account through the store and log it in over HTTP."""
    runtime = get_runtime()
    username = f"member_{uuid.uuid4().hex[:8]}"
    user = runtime.store.create_user(
        email=f"{username}@example.com",
        username=username,
        password_hash=runtime.auth.hash_password(PASSWORD),
        is_verified=True,
        role=role,
    )
    response = client.post(
        "/v1/auth/login",
        json={"identifier": username, "password": PASSWORD, "captcha_token": "ok"},
    )
    assert response.status_code == 200, response.text
    otp = runtime.store.get_user(user.id).login_otp
    response = client.post("/v1/auth/verify-otp", json={"identifier": username, "otp": otp})
    assert response.status_code == 200, response.text
    data = response.json()["data"]
    return {
        "user": user,
        "session_id": data["session_id"],
        "headers": {"Authorization": f"Bearer {data['access_token']}"},
    }


class TestAccess:
    def test_regular_user_is_forbidden(self, client):
        member = _member(client)

        response = client.get("/v1/admin/users", headers=member["headers"])

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_anonymous_is_unauthorized(self, client):
        assert client.get("/v1/admin/sessions").status_code == 401

    def test_admin_role_account_has_access(self, client):
        admin = _member(client, role=Role.ADMIN)

        assert client.get("/v1/admin/stats", headers=admin["headers"]).status_code == 200

    def test_system_admin_me(self, client, admin_headers):
        response = client.get("/v1/auth/me", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["data"]["email"] == "root@example.com"
        assert response.json()["data"]["is_system_admin"] is True


class TestUserManagement:
    def test_list_users(self, client, admin_headers):
        member = _member(client)

        response = client.get("/v1/admin/users?include_system_admin=true", headers=admin_headers)

        items = response.json()["data"]["items"]
        assert items[0]["is_system_admin"] is True
        assert member["user"].id in {item["id"] for item in items}
        assert all("password_hash" not in item for item in items)

    def test_disable_user_blocks_access(self, client, admin_headers):
        member = _member(client)

        response = client.patch(
            f"/v1/admin/users/{member['user'].id}/status",
            json={"is_active": False},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["data"]["is_active"] is False
        assert client.get("/v1/auth/me", headers=member["headers"]).status_code == 403

    def test_force_logout(self, client, admin_headers):
        member = _member(client)

        response = client.post(
            f"/v1/admin/users/{member['user'].id}/force-logout", headers=admin_headers
        )

        assert response.json()["data"]["sessions_removed"] == 1
        sessions = client.get("/v1/admin/sessions", headers=admin_headers).json()["data"]["items"]
        assert member["session_id"] not in {s["session_id"] for s in sessions}

    def test_delete_unknown_user(self, client, admin_headers):
        response = client.delete("/v1/admin/users/does-not-exist", headers=admin_headers)

        assert response.status_code == 404


class TestSessions:
    def test_login_appears_in_session_list(self, client, admin_headers):
        member = _member(client)

        response = client.get("/v1/admin/sessions", headers=admin_headers)

        sessions = response.json()["data"]["items"]
        match = [s for s in sessions if s["session_id"] == member["session_id"]]
        assert len(match) == 1
        assert match[0]["user"]["username"] == member["user"].username
        # The system administrator is never reconstructed from the log
        assert all(not s["user"]["is_system_admin"] for s in sessions)

    def test_terminate_session(self, client, admin_headers):
        member = _member(client)

        response = client.delete(
            f"/v1/admin/sessions/{member['session_id']}", headers=admin_headers
        )

        assert response.status_code == 200
        assert response.json()["data"]["terminated"] is True
        sessions = client.get("/v1/admin/sessions", headers=admin_headers).json()["data"]["items"]
        assert member["session_id"] not in {s["session_id"] for s in sessions}

    def test_terminate_missing_session(self, client, admin_headers):
        session_id = derive_session_id("ghost-user", utcnow())

        response = client.delete(f"/v1/admin/sessions/{session_id}", headers=admin_headers)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_terminate_malformed_id(self, client, admin_headers):
        response = client.delete("/v1/admin/sessions/not-a-session", headers=admin_headers)

        assert response.status_code == 400

    def test_stats_count_sessions(self, client, admin_headers):
        _member(client)
        _member(client)

        data = client.get("/v1/admin/stats", headers=admin_headers).json()["data"]

        assert data["active_sessions"] == 2
        assert data["total_users"] == 2


class TestOverrides:
    def test_override_lifecycle(self, client, admin_headers):
        member = _member(client)
        user_id = member["user"].id

        created = client.post(
            "/v1/admin/overrides",
            json={"user_id": user_id, "permissions": ["report_access"]},
            headers=admin_headers,
        )
        assert created.status_code == 201, created.text
        assert "report_access" in created.json()["data"]["permissions"]

        duplicate = client.post(
            "/v1/admin/overrides",
            json={"user_id": user_id, "permissions": ["report_access"]},
            headers=admin_headers,
        )
        assert duplicate.status_code == 409

        listed = client.get("/v1/admin/overrides", headers=admin_headers).json()["data"]
        assert listed["count"] == 1

        deleted = client.delete(f"/v1/admin/overrides/{user_id}", headers=admin_headers)
        assert deleted.status_code == 200
        assert client.get("/v1/admin/overrides", headers=admin_headers).json()["data"]["count"] == 0

    def test_update_path_mismatch(self, client, admin_headers):
        response = client.put(
            "/v1/admin/overrides/abc",
            json={"user_id": "xyz", "permissions": []},
            headers=admin_headers,
        )

        assert response.status_code == 400

    def test_unknown_permission_rejected(self, client, admin_headers):
        member = _member(client)

        response = client.post(
            "/v1/admin/overrides",
            json={"user_id": member["user"].id, "permissions": ["launch_missiles"]},
            headers=admin_headers,
        )

        assert response.status_code == 400


def test_suspicious_activity(client, admin_headers):
    member = _member(client)
    client.post(
        "/v1/auth/login",
        json={"identifier": member["user"].username, "password": "Wrong-Password-1", "captcha_token": "ok"},
    )

    response = client.get("/v1/admin/activity/suspicious", headers=admin_headers)

    items = response.json()["data"]["items"]
    assert any(
        item["action"] == "LOGIN_FAILED" and item["user_id"] == member["user"].id for item in items
    )
