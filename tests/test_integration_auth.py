"""Integration tests for the HTTP surface.

Tests the complete flow including:
- Student and teacher registration
- Login, refresh and logout
- Authorization failures and their envelopes
- Admin role management and token revocation
- Audit endpoints
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from learnity import app as app_module
from learnity.service.identity import ProviderUnavailable
from learnity.service.runtime import get_runtime
from learnity.storage.models import Role

PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _register(client, email, kind="student", **extra):
    body = {"email": email, "password": PASSWORD, **extra}
    if kind == "teacher":
        body.setdefault("display_name", "Grace Hopper")
        body.setdefault("subjects", ["computer science"])
    response = client.post(f"/v1/auth/register/{kind}", json=body)
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _make_admin(client, email="admin@example.com"):
    data = _register(client, email)
    asyncio.run(get_runtime().roles.assign_role(data["subject_id"], Role.ADMIN))
    return data


class TestRegistration:
    def test_student_registration(self, client):
        data = _register(client, "student@example.com", grade_level="9")
        assert data["role"] == "student"
        assert data["token_type"] == "Bearer"
        assert data["identity_token"] and data["refresh_token"]

    def test_teacher_registration_is_pending(self, client):
        data = _register(client, "teacher@example.com", kind="teacher")
        assert data["role"] == "pending_teacher"

    def test_duplicate_email(self, client):
        _register(client, "student@example.com")
        response = client.post(
            "/v1/auth/register/student",
            json={"email": "student@example.com", "password": PASSWORD},
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_invalid_email(self, client):
        response = client.post(
            "/v1/auth/register/student", json={"email": "not-an-email", "password": PASSWORD}
        )
        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"
        assert "not-an-email" not in response.text

    def test_short_password(self, client):
        response = client.post(
            "/v1/auth/register/student", json={"email": "a@example.com", "password": "short"}
        )
        assert response.status_code == 400

    def test_teacher_requires_subjects(self, client):
        response = client.post(
            "/v1/auth/register/teacher",
            json={"email": "t@example.com", "password": PASSWORD, "display_name": "T"},
        )
        assert response.status_code == 400


class TestLoginFlow:
    def test_login_and_me(self, client):
        _register(client, "student@example.com")
        response = client.post(
            "/v1/auth/login", json={"email": "Student@Example.com", "password": PASSWORD}
        )
        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "10"
        token = response.json()["data"]["identity_token"]

        me = client.get("/v1/auth/me", headers=_auth(token))
        assert me.status_code == 200
        data = me.json()["data"]
        assert data["role"] == "student"
        assert data["email"] == "student@example.com"
        assert "book:tutoring" in data["permissions"]

    def test_bad_password(self, client):
        _register(client, "student@example.com")
        response = client.post(
            "/v1/auth/login", json={"email": "student@example.com", "password": "nope-nope"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_login_rate_limit(self, client):
        for _ in range(10):
            response = client.post(
                "/v1/auth/login", json={"email": "nobody@example.com", "password": "whatever"}
            )
            assert response.status_code == 401
        response = client.post(
            "/v1/auth/login", json={"email": "nobody@example.com", "password": "whatever"}
        )
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) >= 1

    def test_refresh(self, client):
        data = _register(client, "student@example.com")
        response = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert response.status_code == 200
        refreshed = response.json()["data"]
        assert refreshed["session_id"] == data["session_id"]

        replay = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "token_revoked"

    def test_sessions_list_marks_current(self, client):
        data = _register(client, "student@example.com")
        client.post("/v1/auth/login", json={"email": "student@example.com", "password": PASSWORD})

        response = client.get("/v1/auth/sessions", headers=_auth(data["identity_token"]))
        sessions = response.json()["data"]
        assert len(sessions) == 2
        assert [s["current"] for s in sessions].count(True) == 1

    def test_route_access(self, client):
        data = _register(client, "student@example.com")
        headers = _auth(data["identity_token"])
        allowed = client.get("/v1/auth/route-access", params={"route": "/dashboard/student"}, headers=headers)
        denied = client.get("/v1/auth/route-access", params={"route": "/admin/users"}, headers=headers)
        assert allowed.json()["data"]["allowed"] is True
        assert denied.json()["data"]["allowed"] is False


class TestLogout:
    def test_logout_revokes_identity_token(self, client):
        data = _register(client, "student@example.com")
        response = client.post(
            "/v1/auth/logout",
            json={"refresh_token": data["refresh_token"]},
            headers=_auth(data["identity_token"]),
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"success": True}

        me = client.get("/v1/auth/me", headers=_auth(data["identity_token"]))
        assert me.status_code == 401
        assert me.json()["error"]["code"] == "token_revoked"

    def test_logout_all_devices(self, client):
        first = _register(client, "student@example.com")
        second = client.post(
            "/v1/auth/login", json={"email": "student@example.com", "password": PASSWORD}
        ).json()["data"]

        client.post(
            "/v1/auth/logout", json={"refresh_token": first["refresh_token"], "all_devices": True}
        )

        me = client.get("/v1/auth/me", headers=_auth(second["identity_token"]))
        assert me.status_code == 401
        assert me.json()["error"]["code"] == "session_terminated"

    def test_logout_without_tokens(self, client):
        response = client.post("/v1/auth/logout", json={})
        assert response.status_code == 400


class TestAuthorizationErrors:
    def test_missing_token(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"
        assert response.headers["WWW-Authenticate"].startswith("Bearer")

    def test_student_cannot_read_audit_logs(self, client):
        data = _register(client, "student@example.com")
        response = client.get("/v1/admin/audit/logs", headers=_auth(data["identity_token"]))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "insufficient_role"

    def test_provider_outage_is_503(self, client, monkeypatch):
        data = _register(client, "student@example.com")

        async def unavailable(token, *, token_kind):
            raise ProviderUnavailable("connection refused")

        monkeypatch.setattr(get_runtime().provider, "verify_token", unavailable)
        response = client.get("/v1/auth/me", headers=_auth(data["identity_token"]))
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "provider_unreachable"
        assert response.headers["Retry-After"] == "5"


class TestAdmin:
    def test_approve_teacher(self, client):
        admin = _make_admin(client)
        applicant = _register(client, "teacher@example.com", kind="teacher")

        response = client.post(
            f"/v1/admin/teachers/{applicant['subject_id']}/approve",
            headers=_auth(admin["identity_token"]),
        )
        assert response.status_code == 200
        assert response.json()["data"]["role"] == "teacher"

        me = client.get("/v1/auth/me", headers=_auth(applicant["identity_token"]))
        assert me.json()["data"]["role"] == "teacher"

    def test_disallowed_role_change(self, client):
        admin = _make_admin(client)
        applicant = _register(client, "teacher@example.com", kind="teacher")
        response = client.post(
            f"/v1/admin/users/{applicant['subject_id']}/role",
            json={"role": "admin"},
            headers=_auth(admin["identity_token"]),
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_role_change_for_unknown_subject(self, client):
        admin = _make_admin(client)
        response = client.post(
            "/v1/admin/users/missing/role",
            json={"role": "teacher"},
            headers=_auth(admin["identity_token"]),
        )
        assert response.status_code == 404

    def test_revoke_tokens(self, client):
        admin = _make_admin(client)
        victim = _register(client, "victim@example.com")

        response = client.post(
            f"/v1/admin/users/{victim['subject_id']}/revoke-tokens",
            json={"reason": "compromised"},
            headers=_auth(admin["identity_token"]),
        )
        assert response.status_code == 200
        assert response.json()["data"]["sessions_terminated"] == 1

        me = client.get("/v1/auth/me", headers=_auth(victim["identity_token"]))
        assert me.status_code == 401
        assert me.json()["error"]["code"] == "token_revoked"

    def test_audit_endpoints(self, client):
        admin = _make_admin(client)
        _register(client, "student@example.com")
        for _ in range(5):
            client.post(
                "/v1/auth/login", json={"email": "student@example.com", "password": "wrong-pass"}
            )
        headers = _auth(admin["identity_token"])

        logs = client.get("/v1/admin/audit/logs", params={"action": "login", "success": "false"}, headers=headers)
        assert logs.status_code == 200
        assert logs.json()["data"]["total"] == 5

        patterns = client.get("/v1/admin/audit/patterns", headers=headers).json()["data"]
        assert any(
            p["type"] == "multiple_failed_logins" and p["severity"] == "medium" for p in patterns
        )

        summary = client.get("/v1/admin/audit/summary", headers=headers).json()["data"]
        assert summary["failed_logins"] == 5

        failed = client.get("/v1/admin/audit/failed-logins", headers=headers).json()["data"]
        assert failed["total_failed_logins"] == 5

        report = client.get("/v1/admin/audit/report", headers=headers)
        assert report.status_code == 200
        assert report.json()["data"]["recommendations"]

        alerts = client.get("/v1/admin/audit/alerts", headers=headers)
        assert alerts.status_code == 200

    def test_session_stats_and_prune(self, client):
        admin = _make_admin(client)
        headers = _auth(admin["identity_token"])
        stats = client.get("/v1/admin/sessions/stats", headers=headers).json()["data"]
        assert stats["active_sessions"] >= 1

        prune = client.post("/v1/admin/maintenance/prune-blacklist", headers=headers)
        assert prune.status_code == 200
        assert "removed" in prune.json()["data"]


class TestHealth:
    def test_healthz(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"]["status"] == "not_configured"
        assert body["timestamp"].endswith("+00:00")
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["Cache-Control"].startswith("no-store")
