"""Integration tests for the authentication flow over HTTP.

Covers:
- Registration and login
- Lockout after repeated failures
- Token refresh and replay
- Logout and session revocation
- Per-client request ceiling
"""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from taskgate import app as app_module
from taskgate.service.runtime import get_runtime
from taskgate.storage.errors import CacheUnavailableError

PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _register(client, email="testuser@example.com", password=PASSWORD):
    return client.post("/v1/auth/register", json={"email": email, "password": password})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegistration:
    def test_register_creates_user(self, client):
        response = _register(client)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["access_token"]
        assert data["refresh_token"]
        assert data["expires_in"] == 3600
        assert data["user"]["email"] == "testuser@example.com"
        assert data["user"]["role"] == "USER"
        assert "password_hash" not in data["user"]

    def test_register_rejects_weak_password(self, client):
        response = _register(client, password="abc")

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["message"] == "Password must be at least 8 characters long"

    def test_register_rejects_duplicate_email(self, client):
        _register(client)
        response = _register(client, email="TestUser@Example.com")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_register_rejects_malformed_email(self, client):
        response = _register(client, email="not-an-email")
        assert response.status_code == 400


class TestLogin:
    def test_login_succeeds(self, client):
        _register(client)
        response = client.post(
            "/v1/auth/login", json={"email": "testuser@example.com", "password": PASSWORD}
        )
        assert response.status_code == 200
        assert response.json()["data"]["user"]["email"] == "testuser@example.com"

    def test_wrong_password_is_generic(self, client):
        _register(client)
        response = client.post(
            "/v1/auth/login",
            json={"email": "testuser@example.com", "password": "WrongPassword1!"},
        )
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid credentials"

    def test_lockout_after_five_failures(self, client):
        _register(client)
        for _ in range(5):
            client.post(
                "/v1/auth/login",
                json={"email": "testuser@example.com", "password": "WrongPassword1!"},
            )

        response = client.post(
            "/v1/auth/login", json={"email": "testuser@example.com", "password": PASSWORD}
        )
        assert response.status_code == 401
        error = response.json()["error"]
        assert error["message"] == "Account temporarily locked. Try again in 15 minutes"
        assert error["details"] == {"retry_after_minutes": 15}

    def test_missing_password_is_validation_error(self, client):
        response = client.post("/v1/auth/login", json={"email": "testuser@example.com"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_cache_outage_is_service_unavailable(self, client, monkeypatch):
        _register(client)
        runtime = get_runtime()
        monkeypatch.setattr(
            runtime.cache, "get", AsyncMock(side_effect=CacheUnavailableError("get"))
        )
        response = client.post(
            "/v1/auth/login", json={"email": "testuser@example.com", "password": PASSWORD}
        )
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "service_unavailable"


class TestRefresh:
    def test_refresh_rotates_tokens(self, client):
        tokens = _register(client).json()["data"]

        response = client.post(
            "/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["refresh_token"] != tokens["refresh_token"]
        assert client.get("/v1/me", headers=_bearer(data["access_token"])).status_code == 200

    def test_refresh_replay_rejected(self, client):
        tokens = _register(client).json()["data"]
        client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})

        response = client.post(
            "/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
        )
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid refresh token"

    def test_refresh_with_non_ascii_token_is_generic_error(self, client):
        tokens = _register(client).json()["data"]
        header, payload, _ = tokens["refresh_token"].split(".")

        response = client.post(
            "/v1/auth/refresh", json={"refresh_token": f"{header}.{payload}.éé"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid refresh token"


class TestLogoutAndSessions:
    def test_logout_revokes_refresh_and_access(self, client):
        tokens = _register(client).json()["data"]
        headers = _bearer(tokens["access_token"])

        response = client.post("/v1/auth/logout", headers=headers)
        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Successfully logged out"

        assert client.get("/v1/me", headers=headers).status_code == 401
        refresh = client.post(
            "/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
        )
        assert refresh.status_code == 401

    def test_delete_current_session(self, client):
        tokens = _register(client).json()["data"]
        headers = _bearer(tokens["access_token"])

        response = client.delete("/v1/sessions/current", headers=headers)
        assert response.status_code == 200

        me = client.get("/v1/me", headers=headers)
        assert me.status_code == 401
        assert me.json()["error"]["message"] == "Invalid session"

    def test_login_after_revocation_reopens_session(self, client):
        tokens = _register(client).json()["data"]
        client.delete("/v1/sessions/current", headers=_bearer(tokens["access_token"]))

        login = client.post(
            "/v1/auth/login", json={"email": "testuser@example.com", "password": PASSWORD}
        )
        fresh = login.json()["data"]["access_token"]
        assert client.get("/v1/me", headers=_bearer(fresh)).status_code == 200


class TestRequestRateGuard:
    def test_auth_routes_capped_per_client(self, client):
        get_runtime().request_guard.max_requests = 2
        payload = {"email": "nobody@example.com", "password": PASSWORD}

        assert client.post("/v1/auth/login", json=payload).status_code == 401
        second = client.post("/v1/auth/login", json=payload)
        assert second.status_code == 401
        blocked = client.post("/v1/auth/login", json=payload)

        assert blocked.status_code == 403
        assert blocked.headers["X-RateLimit-Remaining"] == "0"
        assert int(blocked.headers["Retry-After"]) >= 1
        assert blocked.json()["error"]["details"]["remaining"] == 0

    def test_guard_headers_on_success(self, client):
        response = _register(client)
        assert response.headers["X-RateLimit-Limit"] == "1000"
        assert response.headers["X-RateLimit-Remaining"] == "999"

    def test_forwarded_clients_counted_separately(self, client):
        get_runtime().request_guard.max_requests = 1
        payload = {"email": "nobody@example.com", "password": PASSWORD}
        first = client.post(
            "/v1/auth/login", json=payload, headers={"X-Forwarded-For": "203.0.113.1"}
        )
        second = client.post(
            "/v1/auth/login", json=payload, headers={"X-Forwarded-For": "203.0.113.2"}
        )
        assert first.status_code == second.status_code == 401
