"""Integration tests for the HTTP auth flow.

Covers:
- Registration and login
- Profile access with bearer tokens
- Logout and logout from all devices
- Password change and password reset
- Refresh rotation
- User administration endpoints
- Health check
"""

import pytest
from fastapi.testclient import TestClient

from inkwell import app as app_module
from inkwell.service.password_reset import GENERIC_RESET_MESSAGE
from inkwell.service.runtime import get_runtime
from inkwell.storage.models import UserRole

PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _register(client, email="alice@example.com", password=PASSWORD):
    return client.post(
        "/v1/auth/register",
        json={"email": email, "password": password, "first_name": "Alice", "last_name": "Liddell"},
    )


def _login(client, email="alice@example.com", password=PASSWORD):
    response = client.post("/v1/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["data"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def alice(client):
    assert _register(client).status_code == 201
    return _login(client)


class TestRegisterAndLogin:
    """Registration and login endpoints."""

    def test_register_returns_public_user(self, client):
        response = _register(client)
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["email"] == "alice@example.com"
        assert data["role"] == "user"
        assert "password" not in str(data).lower()
        assert "refresh" not in str(data).lower()

    def test_register_normalizes_email(self, client):
        response = _register(client, email="  Alice@Example.COM ")
        assert response.json()["data"]["email"] == "alice@example.com"

    def test_duplicate_registration_conflicts(self, client):
        _register(client)
        response = _register(client)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_short_password_is_rejected(self, client):
        response = _register(client, password="short")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_signup_can_be_disabled(self, client, monkeypatch):
        monkeypatch.setattr(get_runtime().settings, "allow_signup", False)
        response = _register(client)
        assert response.status_code == 403

    def test_login_returns_tokens(self, client, alice):
        assert alice["access_token"]
        assert alice["refresh_token"]
        assert alice["token_type"] == "bearer"
        assert alice["user"]["email"] == "alice@example.com"

    def test_login_with_wrong_password(self, client, alice):
        response = client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": "nope-nope"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid credentials"

    def test_profile_with_token(self, client, alice):
        response = client.get("/v1/auth/profile", headers=_auth(alice["access_token"]))
        assert response.status_code == 200
        assert response.json()["data"]["id"] == alice["user"]["id"]
        assert response.headers["Cache-Control"].startswith("no-store")


class TestLogout:
    """Logout endpoints."""

    def test_logout_revokes_token(self, client, alice):
        headers = _auth(alice["access_token"])
        response = client.post(
            "/v1/auth/logout", json={"refresh_token": alice["refresh_token"]}, headers=headers
        )
        assert response.status_code == 200
        assert client.get("/v1/auth/profile", headers=headers).status_code == 401
        refresh = client.post("/v1/auth/refresh", json={"refresh_token": alice["refresh_token"]})
        assert refresh.status_code == 401

    def test_logout_twice_is_ok(self, client, alice):
        headers = _auth(alice["access_token"])
        assert client.post("/v1/auth/logout", headers=headers).status_code == 200
        second = client.post("/v1/auth/logout", headers=headers)
        assert second.status_code == 200
        assert second.json()["data"]["message"] == "logged out"

    def test_logout_all_devices(self, client, alice):
        other = _login(client)
        response = client.post("/v1/auth/logout-all", headers=_auth(other["access_token"]))
        assert response.status_code == 200
        assert client.get("/v1/auth/profile", headers=_auth(alice["access_token"])).status_code == 401
        # The calling token is exempt for a short grace window
        assert client.get("/v1/auth/profile", headers=_auth(other["access_token"])).status_code == 200


class TestPasswordFlows:
    """Password change and reset over HTTP."""

    def test_change_password_revokes_old_token(self, client, alice):
        headers = _auth(alice["access_token"])
        response = client.post(
            "/v1/auth/password/change",
            json={"current_password": PASSWORD, "new_password": "BrandNewPassword456!"},
            headers=headers,
        )
        assert response.status_code == 200
        assert client.get("/v1/auth/profile", headers=headers).status_code == 401

        fresh = _login(client, password="BrandNewPassword456!")
        assert client.get("/v1/auth/profile", headers=_auth(fresh["access_token"])).status_code == 200

    def test_change_password_with_wrong_current(self, client, alice):
        response = client.post(
            "/v1/auth/password/change",
            json={"current_password": "wrong", "new_password": "BrandNewPassword456!"},
            headers=_auth(alice["access_token"]),
        )
        assert response.status_code == 401

    def test_forgot_password_is_generic(self, client, alice):
        known = client.post("/v1/auth/password/forgot", json={"email": "alice@example.com"})
        unknown = client.post("/v1/auth/password/forgot", json={"email": "unknown@nowhere.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"]["message"] == GENERIC_RESET_MESSAGE
        assert unknown.json()["data"]["message"] == GENERIC_RESET_MESSAGE

    def test_reset_password_round_trip(self, client, alice):
        client.post("/v1/auth/password/forgot", json={"email": "alice@example.com"})
        store = get_runtime().store
        token = next(iter(store.password_resets))

        status = client.post("/v1/auth/password/validate", json={"token": token})
        assert status.json()["data"] == {"valid": True, "email": "alice@example.com"}

        response = client.post(
            "/v1/auth/password/reset",
            json={"token": token, "new_password": "ResetPassword789!"},
        )
        assert response.status_code == 200
        assert client.get(
            "/v1/auth/profile", headers=_auth(alice["access_token"])
        ).status_code == 401

        again = client.post(
            "/v1/auth/password/reset",
            json={"token": token, "new_password": "ResetPassword789!"},
        )
        assert again.status_code == 401
        status = client.post("/v1/auth/password/validate", json={"token": token})
        assert status.json()["data"]["valid"] is False
        _login(client, password="ResetPassword789!")


class TestRefresh:
    """Refresh endpoint."""

    def test_refresh_rotates(self, client, alice):
        response = client.post("/v1/auth/refresh", json={"refresh_token": alice["refresh_token"]})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["refresh_token"] != alice["refresh_token"]
        replay = client.post("/v1/auth/refresh", json={"refresh_token": alice["refresh_token"]})
        assert replay.status_code == 401


class TestUserAdministration:
    """User endpoints with role checks."""

    @pytest.fixture
    def root(self, client):
        _register(client, email="root@example.com")
        runtime = get_runtime()
        user = runtime.store.get_user_by_email("root@example.com")
        runtime.store.update_user(user.id, role=UserRole.SUPER_ADMIN.value)
        return _login(client, email="root@example.com")

    def test_listing_needs_super_admin(self, client, alice, root):
        assert client.get("/v1/users", headers=_auth(alice["access_token"])).status_code == 403
        response = client.get("/v1/users", headers=_auth(root["access_token"]))
        assert response.status_code == 200
        assert len(response.json()["data"]["items"]) == 2

    def test_user_updates_own_profile(self, client, alice):
        response = client.put(
            f"/v1/users/{alice['user']['id']}",
            json={"first_name": "Ally"},
            headers=_auth(alice["access_token"]),
        )
        assert response.status_code == 200
        assert response.json()["data"]["first_name"] == "Ally"

    def test_user_cannot_read_others(self, client, alice, root):
        response = client.get(
            f"/v1/users/{root['user']['id']}", headers=_auth(alice["access_token"])
        )
        assert response.status_code == 403

    def test_super_admin_changes_role(self, client, alice, root):
        response = client.patch(
            f"/v1/users/{alice['user']['id']}/role",
            json={"role": "admin"},
            headers=_auth(root["access_token"]),
        )
        assert response.status_code == 200
        assert response.json()["data"]["role"] == "admin"

    def test_forced_revocation(self, client, alice, root):
        response = client.post(
            f"/v1/users/{alice['user']['id']}/revoke", headers=_auth(root["access_token"])
        )
        assert response.status_code == 200
        assert client.get("/v1/auth/profile", headers=_auth(alice["access_token"])).status_code == 401

    def test_delete_self(self, client, alice):
        response = client.delete(
            f"/v1/users/{alice['user']['id']}", headers=_auth(alice["access_token"])
        )
        assert response.status_code == 200
        assert client.get("/v1/auth/profile", headers=_auth(alice["access_token"])).status_code == 401


class TestOAuth:
    """Google sign-in endpoints."""

    def test_start_without_configuration(self, client):
        response = client.get("/v1/auth/oauth/google/start")
        assert response.status_code == 400

    def test_callback_with_unknown_state(self, client):
        response = client.get(
            "/v1/auth/oauth/google/callback", params={"code": "abc", "state": "unknown"}
        )
        assert response.status_code == 401


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["type"] == "memory"
    assert body["checks"]["redis"]["status"] == "not_configured"
    assert body["checks"]["filesystem"]["status"] == "healthy"
