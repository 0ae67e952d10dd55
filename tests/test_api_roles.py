"""
tests/test_api_roles.py -- Integration tests for /api/v1/roles*.

Covers:
  - permission catalog grouped by category
  - role listing shows SYSTEM roles and the company's own, never PLATFORM roles
  - custom role create / update / delete with permission validation
  - SYSTEM roles are read-only (403 system_role_protected)
  - assignment and revocation take effect on the member's next request
  - PLATFORM roles are invisible (404) to company administrators
"""

from __future__ import annotations


def _create(client, name: str, permissions: list[str]):
    return client.post("/api/v1/roles", json={"name": name, "permissions": permissions})


# ---------------------------------------------------------------------------
# Catalogue
# ---------------------------------------------------------------------------


def test_permission_catalog(api_client, login):
    client, _ = api_client
    login(client, "alice@acme.com")
    resp = client.get("/api/v1/roles/permissions")
    assert resp.status_code == 200
    customers = {p["name"] for p in resp.json()["Customers"]}
    assert "customer:read" in customers


def test_role_list_excludes_platform_roles(api_client, login):
    client, _ = api_client
    login(client, "admin@acme.com")
    listed = client.get("/api/v1/roles").json()
    names = {r["name"] for r in listed}
    assert {"admin", "salesRep", "viewer"} <= names
    assert "platformAdmin" not in names
    assert {r["type"] for r in listed} <= {"system", "company"}


def test_my_roles(api_client, login):
    client, _ = api_client
    login(client, "alice@acme.com")
    data = client.get("/api/v1/roles/me").json()
    assert [r["name"] for r in data["roles"]] == ["salesRep"]
    assert "customer:read" in data["permissions"]
    assert "role:create" not in data["permissions"]
    assert data["platform_permissions"] == []


def test_role_routes_need_permissions(api_client, login):
    client, _ = api_client
    login(client, "alice@acme.com")
    resp = _create(client, "closer", ["customer:read"])
    assert resp.status_code == 403
    assert resp.json()["error"]["details"] == {"required": "role:create"}


# ---------------------------------------------------------------------------
# Custom roles
# ---------------------------------------------------------------------------


def test_create_update_delete_custom_role(api_client, login):
    client, seed = api_client
    login(client, "admin@acme.com")

    created = _create(client, "closer", ["customer:read", "customer:update"])
    assert created.status_code == 201
    role = created.json()
    assert role["type"] == "company"
    assert role["company_id"] == seed.acme
    assert role["display_name"] == "closer"

    assert _create(client, "closer", ["customer:read"]).status_code == 409

    updated = client.patch(f"/api/v1/roles/{role['id']}", json={"permissions": ["customer:*"]})
    assert updated.status_code == 200
    assert updated.json()["permissions"] == ["customer:*"]

    empty = client.patch(f"/api/v1/roles/{role['id']}", json={})
    assert empty.status_code == 400

    assert client.delete(f"/api/v1/roles/{role['id']}").status_code == 200
    assert client.delete(f"/api/v1/roles/{role['id']}").status_code == 404


def test_unknown_permissions_are_rejected(api_client, login):
    client, _ = api_client
    login(client, "admin@acme.com")
    resp = _create(client, "broken", ["customer:read", "rockets:launch"])
    assert resp.status_code == 400
    assert resp.json()["error"]["details"] == {"invalid": ["rockets:launch"]}

    platform = _create(client, "sneaky", ["platform:admin"])
    assert platform.status_code == 400


def test_system_roles_are_read_only(api_client, login):
    client, seed = api_client
    login(client, "admin@acme.com")
    sales_rep = seed.engine.permissions.get_role_by_name("salesRep")
    resp = client.patch(f"/api/v1/roles/{sales_rep.id}", json={"description": "changed"})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "system_role_protected"
    assert client.delete(f"/api/v1/roles/{sales_rep.id}").status_code == 403


def test_other_companies_roles_are_not_found(api_client, login):
    client, seed = api_client
    foreign = seed.engine.permissions.create_role("globexOnly", company_id=seed.globex, permissions=["customer:read"])
    login(client, "admin@acme.com")
    assert client.patch(f"/api/v1/roles/{foreign.id}", json={"description": "x"}).status_code == 404
    assert client.delete(f"/api/v1/roles/{foreign.id}").status_code == 404


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------


def test_assign_and_revoke(api_client, login):
    client, seed = api_client
    login(client, "admin@acme.com")
    role_id = _create(client, "reporter", ["report:export"]).json()["id"]

    assigned = client.post(f"/api/v1/roles/{role_id}/assign", json={"user_id": seed.alice.id})
    assert assigned.status_code == 201
    assert client.post(f"/api/v1/roles/{role_id}/assign", json={"user_id": seed.alice.id}).status_code == 409

    login(client, "alice@acme.com")
    assert "report:export" in client.get("/api/v1/roles/me").json()["permissions"]

    login(client, "admin@acme.com")
    assert client.delete(f"/api/v1/roles/{role_id}/assign/{seed.alice.id}").status_code == 200
    assert client.delete(f"/api/v1/roles/{role_id}/assign/{seed.alice.id}").status_code == 404

    login(client, "alice@acme.com")
    assert "report:export" not in client.get("/api/v1/roles/me").json()["permissions"]


def test_assign_to_non_member_is_not_found(api_client, login):
    client, seed = api_client
    login(client, "admin@acme.com")
    viewer = seed.engine.permissions.get_role_by_name("viewer")
    assert client.post(f"/api/v1/roles/{viewer.id}/assign", json={"user_id": seed.ops.id}).status_code == 404


def test_platform_roles_are_invisible_to_company_admins(api_client, login):
    client, seed = api_client
    platform_admin = seed.engine.permissions.get_role_by_name("platformAdmin")
    login(client, "admin@acme.com")
    assert client.patch(f"/api/v1/roles/{platform_admin.id}", json={"description": "x"}).status_code == 404
    resp = client.post(f"/api/v1/roles/{platform_admin.id}/assign", json={"user_id": seed.alice.id})
    assert resp.status_code == 404
