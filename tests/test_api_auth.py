"""
tests/test_api_auth.py -- Integration tests for /api/v1/auth/* and /api/v1/auth/mfa/*.

Covers:
  - login sets the httpOnly session cookie and answers with Cache-Control: no-store
  - unknown email and wrong password produce byte-identical 401 responses
  - a failed login still leaves a PENDING session row
  - MFA gate: an unverified session only reaches /auth/me and the MFA endpoints
  - logout, session listing and revocation scoped to the caller
  - API keys authenticate through X-API-Key and stop working once revoked
  - password change, forgot and reset flows
  - impersonation (platform:admin only) and force logout
"""

from __future__ import annotations

import pyotp

from auth.models import User
from auth.store import sessions
from auth.tokens import hash_password


def _new_member(seed, email: str) -> int:
    """Company user in Acme with the default roles, created directly in the store."""
    user_id = seed.engine.store.create_user(
        User(email=email, company_id=seed.acme, password_hash=hash_password(seed.password))
    )
    seed.engine.access.add_membership(user_id, seed.acme)
    return user_id


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


def test_login_sets_session_cookie(api_client, login):
    client, seed = api_client
    resp = login(client, "admin@acme.com")
    assert resp.status_code == 200
    assert resp.headers["cache-control"] == "no-store"
    assert "httponly" in resp.headers["set-cookie"].lower()
    assert client.cookies.get("sid")

    data = resp.json()
    assert data["requires_mfa"] is False
    assert data["user"]["email"] == "admin@acme.com"
    assert data["active_company"] == {"id": seed.acme, "name": "Acme"}
    assert data["can_switch_companies"] is True


def test_unknown_email_and_wrong_password_are_identical(api_client, login):
    client, _ = api_client
    unknown = login(client, "nobody@acme.com", "Whatever-pass1")
    wrong = login(client, "admin@acme.com", "Whatever-pass1")
    assert unknown.status_code == wrong.status_code == 401
    assert unknown.json() == wrong.json()
    assert unknown.json()["error"]["code"] == "invalid_credentials"


def test_failed_login_still_writes_pending_session(api_client, login):
    client, seed = api_client
    store = seed.engine.store

    def pending_rows() -> int:
        return store.read(lambda conn: store.count_rows(conn, sessions, sessions.c.user_id.is_(None)))

    before = pending_rows()
    assert login(client, "alice@acme.com", "Wrong-password1").status_code == 401
    assert pending_rows() == before + 1

    # a successful login binds its own pending row instead of leaving one behind
    assert login(client, "alice@acme.com").status_code == 200
    assert pending_rows() == before + 1


def test_login_body_is_validated(api_client):
    client, _ = api_client
    resp = client.post("/api/v1/auth/login", json={"email": "not-an-email", "password": "x"})
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "validation_error"


def test_me_without_credentials_is_401(api_client):
    client, _ = api_client
    client.cookies.clear()
    resp = client.get("/api/v1/auth/me")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"


def test_me_reports_identity(api_client, login):
    client, seed = api_client
    login(client, "alice@acme.com")
    data = client.get("/api/v1/auth/me").json()
    assert data["user"]["id"] == seed.alice.id
    assert data["auth_method"] == "session"
    assert data["impersonated_by"] is None


# ---------------------------------------------------------------------------
# MFA gate
# ---------------------------------------------------------------------------


def test_mfa_user_is_gated_until_verified(api_client, login):
    client, seed = api_client
    resp = login(client, "bob@acme.com")
    assert resp.status_code == 200
    assert resp.json()["requires_mfa"] is True
    assert resp.json()["user"] is None

    me = client.get("/api/v1/auth/me").json()
    assert me["requires_mfa"] is True
    assert me["user"] is None

    blocked = client.get("/api/v1/users/me/companies")
    assert blocked.status_code == 401
    assert blocked.json()["error"]["code"] == "mfa_required"

    bad = client.post("/api/v1/auth/mfa/verify", json={"code": "12345678"})
    assert bad.status_code == 401
    assert bad.json()["error"]["code"] == "mfa_invalid_code"

    ok = client.post("/api/v1/auth/mfa/verify", json={"code": pyotp.TOTP(seed.bob_totp_secret).now()})
    assert ok.status_code == 200
    assert ok.headers["cache-control"] == "no-store"
    assert client.get("/api/v1/auth/me").json()["user"]["email"] == "bob@acme.com"
    assert client.get("/api/v1/users/me/companies").status_code == 200


def test_trusted_device_cookie_skips_mfa(api_client, login):
    client, seed = api_client
    login(client, "bob@acme.com")
    resp = client.post(
        "/api/v1/auth/mfa/verify",
        json={"code": pyotp.TOTP(seed.bob_totp_secret).now(), "trust_device": True},
    )
    device = resp.cookies.get("device_trust")
    assert device

    client.cookies.delete("sid")
    again = client.post("/api/v1/auth/login", json={"email": "bob@acme.com", "password": seed.password})
    assert again.json()["requires_mfa"] is False


# ---------------------------------------------------------------------------
# Logout and sessions
# ---------------------------------------------------------------------------


def test_logout_revokes_session(api_client, login):
    client, seed = api_client
    login(client, "alice@acme.com")
    sid = client.cookies.get("sid")
    assert client.post("/api/v1/auth/logout").status_code == 200
    assert client.get("/api/v1/auth/me").status_code == 401
    assert seed.engine.sessions.resolve(sid) is None


def test_session_list_marks_current_and_revokes_others(api_client, login):
    client, seed = api_client
    login(client, "alice@acme.com")
    other = seed.engine.sessions.bind_login(None, seed.alice.id, seed.acme).session

    listed = client.get("/api/v1/auth/sessions").json()
    assert [s["current"] for s in listed].count(True) == 1
    assert other.sid in {s["sid"] for s in listed}

    assert client.delete(f"/api/v1/auth/sessions/{other.sid}").status_code == 200
    assert client.delete(f"/api/v1/auth/sessions/{other.sid}").status_code == 404

    seed.engine.sessions.bind_login(None, seed.alice.id, seed.acme)
    revoked = client.delete("/api/v1/auth/sessions").json()["revoked"]
    assert revoked >= 1
    remaining = client.get("/api/v1/auth/sessions").json()
    assert len(remaining) == 1 and remaining[0]["current"]


def test_cannot_revoke_someone_elses_session(api_client, login):
    client, seed = api_client
    victim = seed.engine.sessions.bind_login(None, seed.admin.id, seed.acme).session
    login(client, "alice@acme.com")
    assert client.delete(f"/api/v1/auth/sessions/{victim.sid}").status_code == 404
    assert seed.engine.sessions.get(victim.sid).revoked_at is None


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


def test_api_key_lifecycle(api_client, login):
    client, _ = api_client
    login(client, "admin@acme.com")
    created = client.post("/api/v1/auth/api-keys", json={"name": "CI deploy"})
    assert created.status_code == 201
    raw = created.json()["key"]
    key_id = created.json()["id"]
    assert raw.startswith("tg_")
    assert "key" not in client.get("/api/v1/auth/api-keys").json()[0]

    client.cookies.clear()
    me = client.get("/api/v1/auth/me", headers={"X-API-Key": raw})
    assert me.status_code == 200
    assert me.json()["auth_method"] == "api_key"
    assert me.json()["user"]["email"] == "admin@acme.com"

    revoked = client.delete(f"/api/v1/auth/api-keys/{key_id}", headers={"X-API-Key": raw})
    assert revoked.status_code == 200
    assert client.get("/api/v1/auth/me", headers={"X-API-Key": raw}).status_code == 401


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


def test_password_change(api_client, login):
    client, seed = api_client
    _new_member(seed, "carol@acme.com")
    login(client, "carol@acme.com")

    wrong = client.post(
        "/api/v1/auth/password/change", json={"current_password": "Nope-nope1", "new_password": "Better-pass1"}
    )
    assert wrong.status_code == 401

    weak = client.post(
        "/api/v1/auth/password/change", json={"current_password": seed.password, "new_password": "weak"}
    )
    assert weak.status_code == 400
    assert weak.json()["error"]["code"] == "password_policy_violation"

    ok = client.post(
        "/api/v1/auth/password/change", json={"current_password": seed.password, "new_password": "Better-pass1"}
    )
    assert ok.status_code == 200
    assert client.get("/api/v1/auth/me").status_code == 200
    assert login(client, "carol@acme.com", "Better-pass1").status_code == 200


def test_forgot_password_answers_identically(api_client):
    client, _ = api_client
    known = client.post("/api/v1/auth/password/forgot", json={"email": "alice@acme.com"})
    unknown = client.post("/api/v1/auth/password/forgot", json={"email": "ghost@acme.com"})
    assert known.status_code == unknown.status_code == 200
    assert known.json() == unknown.json()


def test_password_reset_ends_existing_sessions(api_client, login):
    client, seed = api_client
    _new_member(seed, "dan@acme.com")
    login(client, "dan@acme.com")
    issued = seed.engine.credentials.request_password_reset("dan@acme.com")

    resp = client.post("/api/v1/auth/password/reset", json={"token": issued.token, "new_password": "Reset-pass1"})
    assert resp.status_code == 200
    assert client.get("/api/v1/auth/me").status_code == 401

    reused = client.post("/api/v1/auth/password/reset", json={"token": issued.token, "new_password": "Reset-pass2"})
    assert reused.status_code == 400
    assert reused.json()["error"]["code"] == "token_already_used"
    assert login(client, "dan@acme.com", "Reset-pass1").status_code == 200


# ---------------------------------------------------------------------------
# Impersonation and force logout
# ---------------------------------------------------------------------------


def test_platform_admin_can_impersonate_and_return(api_client, login):
    client, seed = api_client
    login(client, "ops@platform.com")

    started = client.post("/api/v1/auth/impersonate", json={"user_id": seed.alice.id})
    assert started.status_code == 200
    assert started.json()["user"]["id"] == seed.alice.id
    assert started.json()["impersonated_by"] == seed.ops.id

    me = client.get("/api/v1/auth/me").json()
    assert me["user"]["id"] == seed.alice.id
    assert me["active_company"]["id"] == seed.acme
    assert me["impersonated_by"] == seed.ops.id

    ended = client.delete("/api/v1/auth/impersonate")
    assert ended.status_code == 200
    assert ended.json()["user"]["id"] == seed.ops.id
    assert client.get("/api/v1/auth/me").json()["impersonated_by"] is None


def test_impersonation_needs_platform_admin(api_client, login):
    client, seed = api_client
    login(client, "alice@acme.com")
    resp = client.post("/api/v1/auth/impersonate", json={"user_id": seed.admin.id})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"


def test_internal_users_cannot_be_impersonated(api_client, login):
    client, seed = api_client
    login(client, "ops@platform.com")
    assert client.post("/api/v1/auth/impersonate", json={"user_id": seed.support.id}).status_code == 403


def test_force_logout_member(api_client, login):
    client, seed = api_client
    target_id = _new_member(seed, "erin@acme.com")
    victim = seed.engine.sessions.bind_login(None, target_id, seed.acme).session

    login(client, "alice@acme.com")
    assert client.post(f"/api/v1/auth/users/{target_id}/force-logout").status_code == 403

    login(client, "admin@acme.com")
    assert client.post(f"/api/v1/auth/users/{target_id}/force-logout").status_code == 200
    assert seed.engine.sessions.touch(victim.sid) is None
    # not a member of Acme
    assert client.post(f"/api/v1/auth/users/{seed.ops.id}/force-logout").status_code == 404
