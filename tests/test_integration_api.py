"""Integration tests for the HTTP API.

Tests the complete flow over HTTP:
- Login, refresh, profile and logout
- Permission and role gates on every resource
- User, role and permission administration
- Lockout and unlock
"""

import asyncio

import pytest
from conftest import ADMIN_PASSWORD
from fastapi.testclient import TestClient

from rbac_admin import app as app_module
from rbac_admin.service.runtime import get_runtime
from rbac_admin.service.seed import ensure_superadmin, seed_catalogue

ADMIN_ROLE_ID = 2
USER_ROLE_ID = 3
ROLE_READ_ID = 7


@pytest.fixture
def client():
    """A test client against a freshly seeded runtime."""
    runtime = get_runtime()
    asyncio.run(seed_catalogue(runtime.store))
    asyncio.run(ensure_superadmin(runtime.store, runtime.passwords, password=ADMIN_PASSWORD))
    return TestClient(app_module.app)


def _login(client, username, password):
    response = client.post("/v1/auth/login", json={"username": username, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["data"]


def _auth(tokens):
    return {"Authorization": f"Bearer {tokens['accessToken']}"}


@pytest.fixture
def root_headers(client):
    return _auth(_login(client, "superadmin", ADMIN_PASSWORD)["tokens"])


def _create_user(client, headers, username, role_ids):
    response = client.post(
        "/v1/users",
        headers=headers,
        json={"username": username, "email": f"{username}@example.com", "roleIds": role_ids},
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


@pytest.fixture
def admin_headers(client, root_headers):
    created = _create_user(client, root_headers, "office_admin", [ADMIN_ROLE_ID])
    tokens = _login(client, "office_admin", created["generatedPassword"])["tokens"]
    return _auth(tokens)


@pytest.fixture
def reader_headers(client, root_headers):
    created = _create_user(client, root_headers, "reader", [USER_ROLE_ID])
    tokens = _login(client, "reader", created["generatedPassword"])["tokens"]
    return _auth(tokens)


class TestAuthFlow:
    def test_superadmin_login(self, client):
        body = client.post(
            "/v1/auth/login", json={"username": "superadmin", "password": ADMIN_PASSWORD}
        ).json()

        assert body["status"] == "success"
        assert body["message"] == "Login successful"
        data = body["data"]
        assert data["user"]["username"] == "superadmin"
        assert "password" not in data["user"]
        assert data["roles"] == ["superadmin"]
        assert data["tokens"]["tokenType"] == "Bearer"

    def test_bad_credentials(self, client):
        response = client.post(
            "/v1/auth/login", json={"username": "superadmin", "password": "Wrong123!"}
        )
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid username or password"

    def test_profile_requires_token(self, client):
        response = client.get("/v1/auth/profile")
        assert response.status_code == 401
        assert response.json()["message"] == "Access token is required"

    def test_profile_and_refresh(self, client):
        tokens = _login(client, "superadmin", ADMIN_PASSWORD)["tokens"]

        profile = client.get("/v1/auth/profile", headers=_auth(tokens))
        assert profile.json()["data"]["username"] == "superadmin"

        refreshed = client.post(
            "/v1/auth/refresh-token", json={"refreshToken": tokens["refreshToken"]}
        )
        assert refreshed.status_code == 200
        assert client.get(
            "/v1/auth/profile", headers=_auth(refreshed.json()["data"])
        ).status_code == 200

    def test_refresh_token_is_not_a_bearer_token(self, client):
        tokens = _login(client, "superadmin", ADMIN_PASSWORD)["tokens"]
        response = client.get(
            "/v1/auth/profile", headers={"Authorization": f"Bearer {tokens['refreshToken']}"}
        )
        assert response.status_code == 401

    def test_change_password_and_logout(self, client, root_headers):
        response = client.post(
            "/v1/auth/change-password",
            headers=root_headers,
            json={"currentPassword": ADMIN_PASSWORD, "newPassword": "N3w-Passw0rd!"},
        )
        assert response.status_code == 200
        _login(client, "superadmin", "N3w-Passw0rd!")

        assert client.post("/v1/auth/logout", headers=root_headers).json()["message"] == (
            "Logout successful"
        )

    def test_forgot_password_does_not_reveal_accounts(self, client):
        known = client.post("/v1/auth/forgot-password", json={"email": "superadmin@example.com"})
        unknown = client.post("/v1/auth/forgot-password", json={"email": "ghost@example.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json()["message"] == unknown.json()["message"]

    def test_lockout_and_admin_unlock(self, client, root_headers):
        created = _create_user(client, root_headers, "jane", [USER_ROLE_ID])
        for _ in range(5):
            client.post("/v1/auth/login", json={"username": "jane", "password": "Wrong123!"})

        locked = client.post(
            "/v1/auth/login",
            json={"username": "jane", "password": created["generatedPassword"]},
        )
        assert locked.status_code == 401
        assert locked.json()["message"] == "Account is locked. Please contact administrator"

        user_id = created["user"]["id"]
        unlocked = client.post(f"/v1/users/{user_id}/unlock", headers=root_headers)
        assert unlocked.json()["data"]["status"] == "active"
        _login(client, "jane", created["generatedPassword"])


class TestUserAdministration:
    def test_create_user(self, client, root_headers):
        response = client.post(
            "/v1/users",
            headers=root_headers,
            json={
                "username": "john_doe",
                "email": "john@example.com",
                "firstName": "John",
                "lastName": "Doe",
                "roleIds": [ADMIN_ROLE_ID],
            },
        )
        body = response.json()

        assert response.status_code == 201
        assert body["statusCode"] == 201
        user = body["data"]["user"]
        assert [r["id"] for r in user["roles"]] == [ADMIN_ROLE_ID]
        assert user["isActive"] is True
        assert user["isVerified"] is False
        assert user["displayName"] == "John Doe"
        assert user["createdBy"] == 1
        assert len(body["data"]["generatedPassword"]) == 12

    @pytest.mark.parametrize(
        "field, value",
        [
            ("firstName", "x" * 51),
            ("displayName", "x" * 101),
            ("phone", "5" * 21),
            ("email", "a" * 95 + "@example.com"),
        ],
    )
    def test_oversized_fields_rejected_before_storage(self, client, root_headers, field, value):
        payload = {"username": "wide", "email": "wide@example.com", "roleIds": [USER_ROLE_ID]}
        payload[field] = value

        response = client.post("/v1/users", headers=root_headers, json=payload)

        assert response.status_code == 422
        assert [e["field"] for e in response.json()["errors"]] == [field]

    def test_duplicate_username(self, client, root_headers):
        _create_user(client, root_headers, "jane", [USER_ROLE_ID])
        response = client.post(
            "/v1/users",
            headers=root_headers,
            json={"username": "JANE", "email": "other@example.com", "roleIds": [USER_ROLE_ID]},
        )
        assert response.status_code == 409
        assert response.json()["message"] == "Username already exists"

    def test_list_users_paginates(self, client, root_headers):
        for name in ("alice", "bob", "carol"):
            _create_user(client, root_headers, name, [USER_ROLE_ID])

        body = client.get(
            "/v1/users",
            headers=root_headers,
            params={"limit": 2, "sortBy": "username", "sortOrder": "asc", "roleIds": USER_ROLE_ID},
        ).json()

        assert [u["username"] for u in body["data"]] == ["alice", "bob"]
        assert body["pagination"] == {"page": 1, "limit": 2, "total": 3, "totalPages": 2}

    def test_limit_is_bounded(self, client, root_headers):
        response = client.get("/v1/users", headers=root_headers, params={"limit": 500})
        assert response.status_code == 400

    def test_update_and_bulk_update(self, client, root_headers):
        first = _create_user(client, root_headers, "first", [USER_ROLE_ID])["user"]
        second = _create_user(client, root_headers, "second", [USER_ROLE_ID])["user"]

        updated = client.put(
            f"/v1/users/{first['id']}", headers=root_headers, json={"phone": "555-0100"}
        )
        assert updated.json()["data"]["phone"] == "555-0100"

        bulk = client.patch(
            "/v1/users/bulk",
            headers=root_headers,
            json={"userIds": [first["id"], second["id"], 999], "updates": {"isVerified": True}},
        ).json()["data"]
        assert bulk["success"] == 2
        assert bulk["failed"] == 1
        assert bulk["errors"] == [{"id": 999, "error": "User not found"}]

    def test_superadmin_cannot_delete_self(self, client, root_headers):
        response = client.delete("/v1/users/1", headers=root_headers)
        assert response.status_code == 403
        assert response.json()["message"] == "Cannot delete your own account"

    def test_admin_cannot_delete_superadmin(self, client, admin_headers):
        response = client.delete("/v1/users/1", headers=admin_headers)
        assert response.status_code == 403
        assert response.json()["message"] == "Cannot delete super admin user"

    def test_admin_reset_password(self, client, root_headers):
        created = _create_user(client, root_headers, "jane", [USER_ROLE_ID])
        response = client.post(
            f"/v1/users/{created['user']['id']}/reset-password",
            headers=root_headers,
            json={"newPassword": "Brand-New-Pass1"},
        )
        assert response.status_code == 200
        _login(client, "jane", "Brand-New-Pass1")


class TestPermissionGates:
    """Endpoints enforce permissions; superadmin bypasses them all."""

    def test_reader_cannot_create_users(self, client, reader_headers):
        response = client.post(
            "/v1/users",
            headers=reader_headers,
            json={"username": "sneaky", "email": "s@example.com", "roleIds": [USER_ROLE_ID]},
        )
        assert response.status_code == 403
        assert response.json()["errors"] == {"required_permissions": ["user.create"]}

    def test_reader_can_list_users(self, client, reader_headers):
        assert client.get("/v1/users", headers=reader_headers).status_code == 200

    def test_role_users_requires_both_permissions(self, client, root_headers):
        role = client.post(
            "/v1/roles",
            headers=root_headers,
            json={"name": "role_viewer", "permissionIds": [ROLE_READ_ID]},
        ).json()["data"]
        created = _create_user(client, root_headers, "viewer", [role["id"]])
        headers = _auth(_login(client, "viewer", created["generatedPassword"])["tokens"])

        assert client.get(f"/v1/roles/{USER_ROLE_ID}", headers=headers).status_code == 200
        denied = client.get(f"/v1/roles/{USER_ROLE_ID}/users", headers=headers)
        assert denied.status_code == 403
        assert denied.json()["errors"] == {"missing_permissions": ["user.read"]}

    def test_admin_has_no_permission_catalogue_access(self, client, admin_headers):
        assert client.get("/v1/permissions", headers=admin_headers).status_code == 403

    def test_permission_writes_need_superadmin_role(self, client, admin_headers, root_headers):
        payload = {"module": "tour", "action": "read", "name": "tour.export"}

        denied = client.post("/v1/permissions", headers=admin_headers, json=payload)
        assert denied.status_code == 403
        assert denied.json()["message"] == "Insufficient role privileges"

        created = client.post("/v1/permissions", headers=root_headers, json=payload)
        assert created.status_code == 201
        assert created.json()["data"]["name"] == "tour.export"


class TestRoleAdministration:
    def test_role_lifecycle(self, client, root_headers):
        created = client.post(
            "/v1/roles",
            headers=root_headers,
            json={"name": "editors", "permissionIds": [1, 2]},
        )
        assert created.status_code == 201
        role_id = created.json()["data"]["id"]

        updated = client.put(
            f"/v1/roles/{role_id}", headers=root_headers, json={"description": "Edits"}
        )
        assert updated.json()["data"]["description"] == "Edits"
        assert len(updated.json()["data"]["permissions"]) == 2

        assert client.delete(f"/v1/roles/{role_id}", headers=root_headers).status_code == 200
        assert client.get(f"/v1/roles/{role_id}", headers=root_headers).status_code == 404

    def test_admin_cannot_touch_system_role(self, client, admin_headers):
        response = client.put("/v1/roles/1", headers=admin_headers, json={"description": "x"})
        assert response.status_code == 403

    def test_list_roles(self, client, root_headers):
        body = client.get("/v1/roles", headers=root_headers).json()
        assert body["pagination"]["total"] == 3


class TestHealthAndHeaders:
    def test_healthz(self, client):
        body = client.get("/healthz").json()
        assert body["status"] == "ok"
        assert body["store"] == "memory"

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "abc-123"})
        assert response.headers["X-Request-ID"] == "abc-123"

    def test_api_responses_are_not_cached(self, client, root_headers):
        response = client.get("/v1/auth/profile", headers=root_headers)
        assert "no-store" in response.headers["Cache-Control"]
        assert response.headers["API-Version"] == app_module.__version__
