"""Integration tests for admin operations.

Tests admin-only functionality including:
- Role gate for API and browser callers
- User listing
- User deletion
"""

import pytest
from fastapi.testclient import TestClient

from bastion import app as app_module
from bastion.service.runtime import get_runtime


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _headers(user_id):
    token = get_runtime().auth.issue_tokens(user_id).access
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_user():
    """Create an admin user and return bearer headers."""
    runtime = get_runtime()
    user = runtime.auth.create_user("admin@example.com", "AdminPassword123!")
    # promote via direct store access (in tests only)
    runtime.store.update_user_role(user.id, "admin")
    return {"user_id": user.id, "headers": _headers(user.id)}


@pytest.fixture
def regular_user():
    """Create a regular (non-admin) user and return bearer headers."""
    user = get_runtime().auth.create_user("regular@example.com", "RegularPassword123!")
    return {"user_id": user.id, "headers": _headers(user.id)}


class TestRoleGate:
    def test_regular_user_gets_403_json(self, client, regular_user):
        response = client.get("/api/admin/users", headers=regular_user["headers"])
        assert response.status_code == 403
        body = response.json()
        assert body["error"]["code"] == "forbidden"
        assert body["error"]["message"] == "Admin access required"

    def test_anonymous_api_caller_gets_403(self, client):
        response = client.get("/api/admin/users")
        assert response.status_code == 403

    def test_regular_browser_user_redirected_with_flash(self, client, regular_user):
        client.get("/csrf-token")
        token = get_runtime().auth.issue_tokens(regular_user["user_id"]).access
        client.cookies.set("access", token)

        response = client.get("/admin", follow_redirects=False)

        assert response.status_code == 303
        assert response.headers["location"] == "/login"
        session = get_runtime().sessions.backend.get_session(client.cookies.get("session_id"))
        assert session.meta["flash_error"] == "Admin access required"

    def test_lookalike_path_not_gated(self, client, regular_user):
        response = client.get("/administrator", headers=regular_user["headers"])
        assert response.status_code == 404

    def test_admin_browser_page(self, client, admin_user):
        response = client.get("/admin", headers=admin_user["headers"])
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["admin"]["role"] == "admin"
        assert data["user_count"] == 1


class TestUserManagement:
    def test_list_users(self, client, admin_user, regular_user):
        response = client.get("/api/admin/users", headers=admin_user["headers"])
        assert response.status_code == 200
        emails = [item["email"] for item in response.json()["data"]["items"]]
        assert emails == ["admin@example.com", "regular@example.com"]

    def test_list_users_limit(self, client, admin_user, regular_user):
        response = client.get("/api/admin/users?limit=1", headers=admin_user["headers"])
        assert len(response.json()["data"]["items"]) == 1

    def test_list_users_invalid_limit(self, client, admin_user):
        response = client.get("/api/admin/users?limit=0", headers=admin_user["headers"])
        assert response.status_code in (400, 422)

    def test_delete_user_drops_refresh_tokens(self, client, admin_user, regular_user):
        runtime = get_runtime()
        handle = runtime.auth.issue_tokens(regular_user["user_id"]).refresh

        response = client.delete(
            f"/api/admin/users/{regular_user['user_id']}", headers=admin_user["headers"]
        )

        assert response.status_code == 200
        assert response.json()["data"] == {"deleted": True, "user_id": regular_user["user_id"]}
        assert runtime.store.get_refresh_token(handle.split(":")[0]) is None
        # a still-valid access token for a deleted user is anonymous
        assert client.get("/api/me", headers=regular_user["headers"]).status_code == 401

    def test_delete_missing_user(self, client, admin_user):
        response = client.delete("/api/admin/users/9999", headers=admin_user["headers"])
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_cannot_delete_self(self, client, admin_user):
        response = client.delete(
            f"/api/admin/users/{admin_user['user_id']}", headers=admin_user["headers"]
        )
        assert response.status_code == 400
