"""
tests/test_api_oauth.py -- Integration tests for /api/v1/oauth/*.

Covers:
  - consent (/authorize) needs a fully verified session
  - authorization_code grant with PKCE, form or HTTP Basic client credentials
  - bearer tokens authenticate API calls in the consenting user's company
  - refresh rotation; replaying a rotated refresh token kills the grant
  - error codes: invalid_client, pkce_mismatch, token_already_used,
    unsupported_grant_type
  - /revoke always answers 200 {}; /introspect reports live tokens only
"""

from __future__ import annotations

import pytest
from authlib.oauth2.rfc7636 import create_s256_code_challenge

from auth.models import OAuthClientType

REDIRECT = "https://reports.example.com/callback"
VERIFIER = "k" * 64


@pytest.fixture
def oauth_client(api_client):
    _, seed = api_client
    return seed.engine.oauth.register_client(
        "Reports",
        redirect_uris=[REDIRECT],
        allowed_scopes=["profile", "email", "offline_access"],
    )


def _authorize(client, client_id: str, **overrides):
    body = {
        "client_id": client_id,
        "redirect_uri": REDIRECT,
        "scope": "profile email",
        "state": "st-123",
        "code_challenge": create_s256_code_challenge(VERIFIER),
        "code_challenge_method": "S256",
        **overrides,
    }
    return client.post("/api/v1/oauth/authorize", json=body)


def _code(client, login, registered) -> str:
    login(client, "alice@acme.com")
    resp = _authorize(client, registered.client.client_id)
    assert resp.status_code == 200
    client.cookies.clear()
    return resp.json()["code"]


def _exchange(client, registered, code: str, **overrides):
    form = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": REDIRECT,
        "code_verifier": VERIFIER,
        "client_id": registered.client.client_id,
        "client_secret": registered.client_secret,
        **overrides,
    }
    return client.post("/api/v1/oauth/token", data={k: v for k, v in form.items() if v is not None})


# ---------------------------------------------------------------------------
# Consent
# ---------------------------------------------------------------------------


def test_scope_catalog_is_public(api_client):
    client, _ = api_client
    client.cookies.clear()
    scopes = client.get("/api/v1/oauth/scopes").json()
    assert "profile" in scopes and "offline_access" in scopes


def test_authorize_needs_a_signed_in_user(api_client, oauth_client):
    client, _ = api_client
    client.cookies.clear()
    assert _authorize(client, oauth_client.client.client_id).status_code == 401


def test_authorize_needs_mfa_completed(api_client, login, oauth_client):
    client, _ = api_client
    login(client, "bob@acme.com")
    resp = _authorize(client, oauth_client.client.client_id)
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "mfa_required"


def test_authorize_echoes_state_and_redirect(api_client, login, oauth_client):
    client, _ = api_client
    login(client, "alice@acme.com")
    data = _authorize(client, oauth_client.client.client_id).json()
    assert data["state"] == "st-123"
    assert data["redirect_uri"] == REDIRECT
    assert data["code"]


def test_authorize_rejects_bad_requests(api_client, login, oauth_client):
    client, _ = api_client
    login(client, "alice@acme.com")
    client_id = oauth_client.client.client_id
    assert _authorize(client, client_id, redirect_uri="https://evil.example.com/cb").status_code == 400
    assert _authorize(client, client_id, code_challenge=None).status_code == 400
    assert _authorize(client, client_id, response_type="token").status_code == 400
    unknown_scope = _authorize(client, client_id, scope="reports:read")
    assert unknown_scope.status_code == 400
    assert unknown_scope.json()["error"]["code"] == "invalid_scope"


# ---------------------------------------------------------------------------
# Token endpoint
# ---------------------------------------------------------------------------


def test_full_code_flow_and_bearer_access(api_client, login, oauth_client):
    client, seed = api_client
    code = _code(client, login, oauth_client)

    resp = _exchange(client, oauth_client, code)
    assert resp.status_code == 200
    assert resp.headers["cache-control"] == "no-store"
    data = resp.json()
    assert data["token_type"] == "Bearer"
    assert data["expires_in"] == 3600
    assert data["scope"] == "profile email"
    assert data["access_token"].startswith("tga_")
    assert data["refresh_token"].startswith("tgr_")

    me = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {data['access_token']}"})
    assert me.status_code == 200
    assert me.json()["auth_method"] == "bearer"
    assert me.json()["user"]["id"] == seed.alice.id
    assert me.json()["active_company"]["id"] == seed.acme


def test_client_credentials_via_basic_auth(api_client, login, oauth_client):
    client, _ = api_client
    code = _code(client, login, oauth_client)
    resp = client.post(
        "/api/v1/oauth/token",
        data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": REDIRECT,
            "code_verifier": VERIFIER,
        },
        auth=(oauth_client.client.client_id, oauth_client.client_secret),
    )
    assert resp.status_code == 200


def test_wrong_client_secret(api_client, login, oauth_client):
    client, _ = api_client
    code = _code(client, login, oauth_client)
    resp = _exchange(client, oauth_client, code, client_secret="tgs_wrong")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "invalid_client"


def test_pkce_mismatch(api_client, login, oauth_client):
    client, _ = api_client
    code = _code(client, login, oauth_client)
    resp = _exchange(client, oauth_client, code, code_verifier="x" * 64)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "pkce_mismatch"


def test_code_is_single_use(api_client, login, oauth_client):
    client, _ = api_client
    code = _code(client, login, oauth_client)
    assert _exchange(client, oauth_client, code).status_code == 200
    again = _exchange(client, oauth_client, code)
    assert again.status_code == 400
    assert again.json()["error"]["code"] == "token_already_used"


def test_unsupported_grant_and_missing_code(api_client, oauth_client):
    client, _ = api_client
    unsupported = client.post(
        "/api/v1/oauth/token",
        data={"grant_type": "password", "client_id": oauth_client.client.client_id},
    )
    assert unsupported.status_code == 400
    assert unsupported.json()["error"]["code"] == "unsupported_grant_type"

    missing = client.post("/api/v1/oauth/token", data={"grant_type": "authorization_code"})
    assert missing.status_code == 400


def test_public_client_needs_no_secret(api_client, login):
    client, seed = api_client
    public = seed.engine.oauth.register_client(
        "Mobile", client_type=OAuthClientType.PUBLIC, redirect_uris=[REDIRECT], allowed_scopes=["profile"]
    )
    assert public.client_secret is None
    login(client, "alice@acme.com")
    code = _authorize(client, public.client.client_id, scope="profile").json()["code"]
    client.cookies.clear()
    resp = _exchange(client, public, code, client_secret=None)
    assert resp.status_code == 200
    assert resp.json()["scope"] == "profile"


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


def test_refresh_rotation_and_reuse_detection(api_client, login, oauth_client):
    client, _ = api_client
    tokens = _exchange(client, oauth_client, _code(client, login, oauth_client)).json()
    creds = {"client_id": oauth_client.client.client_id, "client_secret": oauth_client.client_secret}

    rotated = client.post(
        "/api/v1/oauth/token", data={"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"], **creds}
    )
    assert rotated.status_code == 200
    fresh = rotated.json()
    assert fresh["refresh_token"] != tokens["refresh_token"]
    bearer = {"Authorization": f"Bearer {fresh['access_token']}"}
    assert client.get("/api/v1/auth/me", headers=bearer).status_code == 200

    replay = client.post(
        "/api/v1/oauth/token", data={"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"], **creds}
    )
    assert replay.status_code == 400
    assert replay.json()["error"]["code"] == "refresh_token_reuse_detected"

    # the whole grant is gone
    assert client.get("/api/v1/auth/me", headers=bearer).status_code == 401
    dead = client.post(
        "/api/v1/oauth/token", data={"grant_type": "refresh_token", "refresh_token": fresh["refresh_token"], **creds}
    )
    assert dead.status_code == 400


def test_refresh_can_narrow_scopes(api_client, login, oauth_client):
    client, _ = api_client
    tokens = _exchange(client, oauth_client, _code(client, login, oauth_client)).json()
    resp = client.post(
        "/api/v1/oauth/token",
        data={
            "grant_type": "refresh_token",
            "refresh_token": tokens["refresh_token"],
            "scope": "profile",
            "client_id": oauth_client.client.client_id,
            "client_secret": oauth_client.client_secret,
        },
    )
    assert resp.status_code == 200
    assert resp.json()["scope"] == "profile"


# ---------------------------------------------------------------------------
# Revocation and introspection
# ---------------------------------------------------------------------------


def test_revoke_always_answers_200(api_client, login, oauth_client):
    client, _ = api_client
    tokens = _exchange(client, oauth_client, _code(client, login, oauth_client)).json()

    unknown = client.post("/api/v1/oauth/revoke", data={"token": "tgr_nothing"})
    assert unknown.status_code == 200
    assert unknown.json() == {}

    resp = client.post(
        "/api/v1/oauth/revoke",
        data={"token": tokens["refresh_token"], "client_id": oauth_client.client.client_id},
    )
    assert resp.status_code == 200
    assert resp.json() == {}
    bearer = {"Authorization": f"Bearer {tokens['access_token']}"}
    assert client.get("/api/v1/auth/me", headers=bearer).status_code == 401


def test_introspect(api_client, login, oauth_client):
    client, seed = api_client
    tokens = _exchange(client, oauth_client, _code(client, login, oauth_client)).json()

    live = client.post("/api/v1/oauth/introspect", data={"token": tokens["access_token"]})
    assert live.headers["cache-control"] == "no-store"
    data = live.json()
    assert data["active"] is True
    assert data["token_type"] == "Bearer"
    assert data["client_id"] == oauth_client.client.client_id
    assert data["sub"] == str(seed.alice.id)
    assert data["scope"] == "profile email"

    client.post("/api/v1/oauth/revoke", data={"token": tokens["access_token"]})
    assert client.post("/api/v1/oauth/introspect", data={"token": tokens["access_token"]}).json() == {
        "active": False
    }
    assert client.post("/api/v1/oauth/introspect", data={"token": "garbage"}).json() == {"active": False}
