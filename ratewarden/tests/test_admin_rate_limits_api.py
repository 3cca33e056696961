"""Tests for the admin rate limit API."""

import pytest
from fastapi.testclient import TestClient

from ratewarden.core.limits import Role
from ratewarden.main import create_app

ADMIN = {"X-Test-Role": "ADMIN", "X-Test-User": "admin-1"}
STUDENT = {"X-Test-Role": "STUDENT", "X-Test-User": "s-1"}
BASE = "/api/admin/rate-limits"


async def header_role_resolver(request):
    raw = request.headers.get("X-Test-Role")
    if not raw:
        return (None, None)
    return (Role(raw), request.headers.get("X-Test-User"))


@pytest.fixture
def client():
    app = create_app(role_resolver=header_role_resolver)

    @app.post("/api/auth/login")
    async def login():
        return {"ok": True}

    with TestClient(app) as client:
        yield client


def _trip_limit(client, times=6):
    for _ in range(times):
        response = client.post("/api/auth/login")
    return response


@pytest.mark.security
class TestAdminAuthorization:
    def test_unauthenticated_rejected(self, client):
        response = client.get(BASE)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "E2000"

    def test_non_admin_forbidden(self, client):
        for method, path in (
            ("GET", BASE),
            ("GET", f"{BASE}/testclient"),
            ("DELETE", f"{BASE}/testclient"),
        ):
            response = client.request(method, path, headers=STUDENT)
            assert response.status_code == 403
            assert response.json()["error"]["code"] == "E2001"

        response = client.post(f"{BASE}/reset", json={"identifier": "testclient"}, headers=STUDENT)
        assert response.status_code == 403


class TestAdminViolations:
    def test_empty_listing(self, client):
        response = client.get(BASE, headers=ADMIN)

        assert response.status_code == 200
        assert response.json() == {
            "violations": [],
            "stats": {"total": 0, "active_blocks": 0, "high_violators": 0},
        }

    def test_listing_after_violation(self, client):
        assert _trip_limit(client).status_code == 429

        data = client.get(BASE, headers=ADMIN).json()

        assert data["stats"]["total"] == 1
        record = data["violations"][0]
        assert record["identity"] == "testclient"
        assert record["count"] == 1
        assert record["blocked"] is False
        assert record["first_violation"] == record["last_violation"]

    def test_listing_counts_blocks(self, client):
        _trip_limit(client, times=10)

        stats = client.get(BASE, headers=ADMIN).json()["stats"]

        assert stats == {"total": 1, "active_blocks": 1, "high_violators": 1}

    def test_get_single_record(self, client):
        _trip_limit(client)

        response = client.get(f"{BASE}/testclient", headers=ADMIN)

        assert response.status_code == 200
        assert response.json()["count"] == 1

    def test_get_unknown_identifier(self, client):
        response = client.get(f"{BASE}/192.0.2.1", headers=ADMIN)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "E4040"

    def test_delete_resets_blocked_identity(self, client):
        assert _trip_limit(client, times=10).status_code == 429

        response = client.delete(f"{BASE}/testclient", headers=ADMIN)

        assert response.status_code == 200
        assert response.json() == {"identifier": "testclient", "reset": True, "had_violations": True}
        assert client.get(f"{BASE}/testclient", headers=ADMIN).status_code == 404
        # Behaves as a brand-new identity
        login = client.post("/api/auth/login")
        assert login.status_code == 200
        assert login.headers["X-RateLimit-Remaining"] == "4"

    def test_post_reset(self, client):
        _trip_limit(client)

        response = client.post(f"{BASE}/reset", json={"identifier": "testclient"}, headers=ADMIN)

        assert response.status_code == 200
        assert response.json()["had_violations"] is True

    def test_reset_without_history(self, client):
        response = client.post(f"{BASE}/reset", json={"identifier": "192.0.2.1"}, headers=ADMIN)

        assert response.status_code == 200
        assert response.json()["had_violations"] is False

    def test_reset_requires_identifier(self, client):
        response = client.post(f"{BASE}/reset", json={"identifier": ""}, headers=ADMIN)

        assert response.status_code == 422
