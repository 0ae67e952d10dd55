"""
tests/test_api_companies.py -- Integration tests for company context routes.

Covers:
  - GET /users/me/companies lists only active memberships
  - switching into an inactive or unknown company answers 403 no_active_membership
  - multi-company users switch and the session follows
  - pinning applies to active memberships only
  - membership deactivation ends sessions in that company and needs user:activate
  - internal-user allow-list management needs platform:manage_internal_users
"""

from __future__ import annotations

from auth.models import User
from auth.tokens import hash_password


def _new_member(seed, email: str) -> int:
    user_id = seed.engine.store.create_user(
        User(email=email, company_id=seed.acme, password_hash=hash_password(seed.password))
    )
    seed.engine.access.add_membership(user_id, seed.acme)
    return user_id


# ---------------------------------------------------------------------------
# Own companies
# ---------------------------------------------------------------------------


def test_company_list_shows_active_memberships_only(api_client, login):
    client, seed = api_client
    login(client, "alice@acme.com")
    resp = client.get("/api/v1/users/me/companies")
    assert resp.status_code == 200
    data = resp.json()
    assert [c["name"] for c in data["results"]] == ["Acme"]
    assert data["total"] == 1
    assert data["has_more"] is False


def test_switch_into_inactive_or_unknown_company_is_forbidden(api_client, login):
    client, seed = api_client
    login(client, "alice@acme.com")
    for company_id in (seed.globex, 99999):
        resp = client.post("/api/v1/users/me/switch-company", json={"company_id": company_id})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "no_active_membership"
    assert client.get("/api/v1/users/me/active-company").json()["company"]["id"] == seed.acme


def test_multi_company_user_switches(api_client, login):
    client, seed = api_client
    resp = login(client, "admin@acme.com")
    assert resp.json()["can_switch_companies"] is True

    switched = client.post("/api/v1/users/me/switch-company", json={"company_id": seed.initech})
    assert switched.status_code == 200
    assert switched.json()["company"]["name"] == "Initech"
    assert client.get("/api/v1/users/me/active-company").json()["company"]["id"] == seed.initech
    assert client.get("/api/v1/auth/me").json()["active_company"]["id"] == seed.initech

    back = client.post("/api/v1/users/me/switch-company", json={"company_id": seed.acme})
    assert back.json()["company"]["id"] == seed.acme


def test_search_filters_by_name(api_client, login):
    client, _ = api_client
    login(client, "admin@acme.com")
    data = client.get("/api/v1/users/me/companies", params={"search": "init"}).json()
    assert [c["name"] for c in data["results"]] == ["Initech"]


def test_pinning(api_client, login):
    client, seed = api_client
    login(client, "alice@acme.com")
    resp = client.patch(f"/api/v1/users/me/companies/{seed.acme}", json={"is_pinned": True})
    assert resp.status_code == 200
    assert [c["id"] for c in client.get("/api/v1/users/me/companies").json()["pinned"]] == [seed.acme]

    # inactive membership
    assert client.patch(f"/api/v1/users/me/companies/{seed.globex}", json={"is_pinned": True}).status_code == 404

    client.patch(f"/api/v1/users/me/companies/{seed.acme}", json={"is_pinned": False})
    assert client.get("/api/v1/users/me/companies").json()["pinned"] == []


# ---------------------------------------------------------------------------
# Membership administration
# ---------------------------------------------------------------------------


def test_deactivate_and_reactivate_membership(api_client, login):
    client, seed = api_client
    member_id = _new_member(seed, "frank@acme.com")
    victim = seed.engine.sessions.bind_login(None, member_id, seed.acme).session

    login(client, "admin@acme.com")
    resp = client.delete(f"/api/v1/users/{member_id}/membership")
    assert resp.status_code == 200
    assert resp.json()["revoked"] == 1
    assert seed.engine.sessions.touch(victim.sid) is None
    assert login(client, "frank@acme.com").status_code == 403

    login(client, "admin@acme.com")
    assert client.delete(f"/api/v1/users/{member_id}/membership").status_code == 404
    assert client.post(f"/api/v1/users/{member_id}/membership/reactivate").status_code == 200
    assert login(client, "frank@acme.com").status_code == 200


def test_membership_admin_needs_user_activate(api_client, login):
    client, seed = api_client
    login(client, "alice@acme.com")
    resp = client.delete(f"/api/v1/users/{seed.admin.id}/membership")
    assert resp.status_code == 403
    assert resp.json()["error"]["details"] == {"required": "user:activate"}


# ---------------------------------------------------------------------------
# Internal-user allow-list
# ---------------------------------------------------------------------------


def test_internal_user_grants(api_client, login):
    client, seed = api_client
    login(client, "ops@platform.com")
    url = f"/api/v1/internal-users/{seed.support.id}/companies"

    assert client.get(url).json() == {"has_restrictions": False, "companies": []}

    granted = client.post(url, json={"company_id": seed.acme})
    assert granted.status_code == 201
    assert granted.json()["has_restrictions"] is True
    assert [c["id"] for c in granted.json()["companies"]] == [seed.acme]

    assert client.post(url, json={"company_id": seed.acme}).status_code == 409
    assert client.post(url, json={"company_id": 99999}).status_code == 404

    removed = client.delete(f"{url}/{seed.acme}")
    assert removed.status_code == 200
    assert removed.json() == {"has_restrictions": False, "companies": []}
    assert client.delete(f"{url}/{seed.acme}").status_code == 404


def test_grants_on_company_user_are_not_found(api_client, login):
    client, seed = api_client
    login(client, "ops@platform.com")
    resp = client.post(f"/api/v1/internal-users/{seed.alice.id}/companies", json={"company_id": seed.acme})
    assert resp.status_code == 404


def test_grant_management_needs_platform_permission(api_client, login):
    client, seed = api_client
    login(client, "admin@acme.com")
    assert client.get(f"/api/v1/internal-users/{seed.support.id}/companies").status_code == 403
