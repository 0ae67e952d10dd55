"""Unit tests for auth/oauth_server.py -- authorization codes, PKCE and token rotation.

Covers:
- client registration: confidential secrets, public clients always use PKCE
- code exchange: single use, expiry, redirect_uri binding, PKCE S256/plain
- refresh rotation links the old row forward and revokes it with reason "rotation"
- a replayed refresh token revokes its whole family, even when two refreshes race
- revocation (RFC 7009) and introspection (RFC 7662)
"""

from concurrent.futures import ThreadPoolExecutor

import pytest
from authlib.oauth2.rfc7636 import create_s256_code_challenge

from auth.errors import (
    InvalidClient,
    InvalidGrant,
    InvalidScope,
    PkceMismatch,
    RefreshTokenReuseDetected,
    TokenAlreadyUsed,
    TokenExpired,
    ValidationFailed,
)
from auth.models import Company, OAuthClientType, User
from auth.oauth_server import parse_scopes, verify_code_challenge
from auth.tokens import hash_password

REDIRECT = "https://app.example.com/callback"
VERIFIER = "a" * 43 + "-verifier-for-tests"

# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def client(engine):
    """Confidential client with PKCE required; (client, secret)."""
    registered = engine.oauth.register_client(
        "CRM Sync", redirect_uris=[REDIRECT], allowed_scopes=["profile", "email", "offline_access"]
    )
    return registered.client, registered.client_secret


@pytest.fixture
def user(acme, make_user):
    return make_user("alice@acme.com", acme.id)


def _code(oauth, client, user, **overrides):
    params = dict(
        state="xyz",
        scopes="profile email",
        code_challenge=create_s256_code_challenge(VERIFIER),
        code_challenge_method="S256",
    )
    params.update(overrides)
    return oauth.issue_code(client.client_id, user.id, REDIRECT, **params)


def _exchange(oauth, client, secret, code, **overrides):
    params = dict(client_id=client.client_id, client_secret=secret, redirect_uri=REDIRECT, code_verifier=VERIFIER)
    params.update(overrides)
    return oauth.exchange_code(code, **params)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def test_parse_scopes_dedupes_and_keeps_order():
    assert parse_scopes("profile  email profile") == ["profile", "email"]
    assert parse_scopes(None) == []
    assert parse_scopes(["email", "email"]) == ["email"]


def test_verify_code_challenge_methods():
    assert verify_code_challenge(VERIFIER, create_s256_code_challenge(VERIFIER), "S256")
    assert not verify_code_challenge("other", create_s256_code_challenge(VERIFIER), "S256")
    assert verify_code_challenge("same", "same", "plain")
    assert not verify_code_challenge("same", "same", "S512")


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


def test_confidential_client_gets_prefixed_secret(engine, client):
    registered, secret = client
    assert secret.startswith("tgs_")
    assert registered.client_secret_hash != secret
    assert engine.oauth.authenticate_client(registered.client_id, secret).id == registered.id
    with pytest.raises(InvalidClient):
        engine.oauth.authenticate_client(registered.client_id, "tgs_wrong")
    with pytest.raises(InvalidClient):
        engine.oauth.authenticate_client(registered.client_id, None)


def test_public_client_always_requires_pkce(engine):
    registered = engine.oauth.register_client(
        "Mobile", client_type=OAuthClientType.PUBLIC, redirect_uris=[REDIRECT], require_pkce=False
    )
    assert registered.client_secret is None
    assert registered.client.require_pkce


def test_register_rejects_unknown_scope(engine):
    with pytest.raises(InvalidScope):
        engine.oauth.register_client("Bad", redirect_uris=[REDIRECT], allowed_scopes=["root"])


# ---------------------------------------------------------------------------
# Authorization codes
# ---------------------------------------------------------------------------


def test_code_exchange_issues_prefixed_pair(engine, client, user):
    registered, secret = client
    pair = _exchange(engine.oauth, registered, secret, _code(engine.oauth, registered, user))
    assert pair.access_token.startswith("tga_")
    assert pair.refresh_token.startswith("tgr_")
    assert pair.scopes == ["profile", "email"]
    assert pair.expires_in == 3600
    assert engine.oauth.authenticate_access_token(pair.access_token).user_id == user.id


def test_code_is_single_use(engine, client, user):
    registered, secret = client
    code = _code(engine.oauth, registered, user)
    _exchange(engine.oauth, registered, secret, code)
    with pytest.raises(TokenAlreadyUsed):
        _exchange(engine.oauth, registered, secret, code)


def test_wrong_verifier_is_pkce_mismatch(engine, client, user):
    registered, secret = client
    code = _code(engine.oauth, registered, user)
    with pytest.raises(PkceMismatch):
        _exchange(engine.oauth, registered, secret, code, code_verifier="b" * 50)
    with pytest.raises(PkceMismatch):
        _exchange(engine.oauth, registered, secret, code, code_verifier=None)


def test_challenge_required_when_client_requires_pkce(engine, client, user):
    registered, _ = client
    with pytest.raises(ValidationFailed):
        _code(engine.oauth, registered, user, code_challenge=None, code_challenge_method=None)


def test_state_and_registered_redirect_required(engine, client, user):
    registered, _ = client
    with pytest.raises(ValidationFailed):
        _code(engine.oauth, registered, user, state=None)
    with pytest.raises(ValidationFailed):
        engine.oauth.issue_code(registered.client_id, user.id, "https://evil.example.com/cb", state="xyz")


def test_code_expires(engine, clock, client, user):
    registered, secret = client
    code = _code(engine.oauth, registered, user)
    clock.advance(minutes=11)
    with pytest.raises(TokenExpired):
        _exchange(engine.oauth, registered, secret, code)


def test_redirect_uri_must_match_request(engine, client, user):
    registered, secret = client
    code = _code(engine.oauth, registered, user)
    with pytest.raises(InvalidGrant):
        _exchange(engine.oauth, registered, secret, code, redirect_uri="https://app.example.com/other")


def test_code_bound_to_its_client(engine, client, user):
    registered, _ = client
    other = engine.oauth.register_client("Other", redirect_uris=[REDIRECT])
    code = _code(engine.oauth, registered, user)
    with pytest.raises(InvalidGrant):
        _exchange(engine.oauth, other.client, other.client_secret, code)


def test_plain_challenge_method(engine, user):
    registered = engine.oauth.register_client("Legacy", redirect_uris=[REDIRECT])
    code = _code(engine.oauth, registered.client, user, code_challenge=VERIFIER, code_challenge_method="plain")
    assert _exchange(engine.oauth, registered.client, registered.client_secret, code).access_token


def test_unknown_scope_request_is_rejected(engine, client, user):
    registered, _ = client
    with pytest.raises(InvalidScope):
        _code(engine.oauth, registered, user, scopes="profile customers:write")


# ---------------------------------------------------------------------------
# Refresh and reuse detection
# ---------------------------------------------------------------------------


def test_refresh_rotates_and_links_old_row(engine, client, user):
    registered, secret = client
    first = _exchange(engine.oauth, registered, secret, _code(engine.oauth, registered, user))
    second = engine.oauth.refresh(first.refresh_token, client_id=registered.client_id, client_secret=secret)

    assert second.refresh_token != first.refresh_token
    assert second.token.refresh_token_family == first.token.refresh_token_family

    old, new = engine.oauth.family(first.token.refresh_token_family)
    assert old.revoked_reason == "rotation"
    assert old.replaced_by_token_id == new.id
    assert new.revoked_at is None
    assert engine.oauth.authenticate_access_token(first.access_token) is None


def test_replayed_refresh_token_revokes_family(engine, client, user):
    registered, secret = client
    first = _exchange(engine.oauth, registered, secret, _code(engine.oauth, registered, user))
    second = engine.oauth.refresh(first.refresh_token, client_id=registered.client_id, client_secret=secret)

    with pytest.raises(RefreshTokenReuseDetected):
        engine.oauth.refresh(first.refresh_token, client_id=registered.client_id, client_secret=secret)

    family = engine.oauth.family(first.token.refresh_token_family)
    assert all(t.revoked_at is not None for t in family)
    assert family[-1].revoked_reason == "suspicious_reuse"
    assert engine.oauth.authenticate_access_token(second.access_token) is None
    with pytest.raises(RefreshTokenReuseDetected):
        engine.oauth.refresh(second.refresh_token, client_id=registered.client_id, client_secret=secret)


def test_racing_refreshes_rotate_once(file_engine):
    """Two threads refresh the same token: one rotates, the other trips reuse detection."""
    oauth = file_engine.oauth
    company_id = file_engine.store.create_company(Company(name="Race"))
    user_id = file_engine.store.create_user(
        User(email="racer@acme.com", company_id=company_id, password_hash=hash_password("Racer-pass1"))
    )
    registered = oauth.register_client("Race", redirect_uris=[REDIRECT])
    code = oauth.issue_code(
        registered.client.client_id,
        user_id,
        REDIRECT,
        state="s",
        code_challenge=create_s256_code_challenge(VERIFIER),
    )
    pair = _exchange(oauth, registered.client, registered.client_secret, code)

    def _refresh(_):
        try:
            oauth.refresh(
                pair.refresh_token,
                client_id=registered.client.client_id,
                client_secret=registered.client_secret,
            )
            return "rotated"
        except RefreshTokenReuseDetected:
            return "reuse"

    with ThreadPoolExecutor(max_workers=2) as pool:
        outcomes = sorted(pool.map(_refresh, range(2)))

    assert outcomes == ["reuse", "rotated"]
    assert all(t.revoked_at is not None for t in oauth.family(pair.token.refresh_token_family))


def test_refresh_may_narrow_but_not_widen_scope(engine, client, user):
    registered, secret = client
    first = _exchange(engine.oauth, registered, secret, _code(engine.oauth, registered, user))
    narrowed = engine.oauth.refresh(
        first.refresh_token, client_id=registered.client_id, client_secret=secret, scopes="profile"
    )
    assert narrowed.scopes == ["profile"]

    with pytest.raises(InvalidScope):
        engine.oauth.refresh(
            narrowed.refresh_token, client_id=registered.client_id, client_secret=secret, scopes="profile email"
        )
    # the failed request left the token usable
    assert engine.oauth.refresh(narrowed.refresh_token, client_id=registered.client_id, client_secret=secret)


def test_refresh_by_another_client_is_invalid_grant(engine, client, user):
    registered, secret = client
    other = engine.oauth.register_client("Other", redirect_uris=[REDIRECT])
    pair = _exchange(engine.oauth, registered, secret, _code(engine.oauth, registered, user))
    with pytest.raises(InvalidGrant):
        engine.oauth.refresh(pair.refresh_token, client_id=other.client.client_id, client_secret=other.client_secret)


def test_refresh_for_deactivated_user_is_invalid_grant(engine, client, user):
    registered, secret = client
    pair = _exchange(engine.oauth, registered, secret, _code(engine.oauth, registered, user))
    with engine.store.transaction() as conn:
        engine.store.update_user(conn, user.id, is_active=False)

    with pytest.raises(InvalidGrant):
        engine.oauth.refresh(pair.refresh_token, client_id=registered.client_id, client_secret=secret)
    # nothing was rotated
    assert [t.revoked_at for t in engine.oauth.family(pair.token.refresh_token_family)] == [None]


def test_access_token_expires(engine, clock, client, user):
    registered, secret = client
    pair = _exchange(engine.oauth, registered, secret, _code(engine.oauth, registered, user))
    clock.advance(seconds=3601)
    assert engine.oauth.authenticate_access_token(pair.access_token) is None
    assert engine.oauth.introspect(pair.access_token) == {"active": False}
    assert engine.oauth.introspect(pair.refresh_token)["active"]


# ---------------------------------------------------------------------------
# Revocation and introspection
# ---------------------------------------------------------------------------


def test_revoking_refresh_token_revokes_family(engine, client, user):
    registered, secret = client
    first = _exchange(engine.oauth, registered, secret, _code(engine.oauth, registered, user))
    second = engine.oauth.refresh(first.refresh_token, client_id=registered.client_id, client_secret=secret)

    engine.oauth.revoke(second.refresh_token)
    assert all(t.revoked_at is not None for t in engine.oauth.family(first.token.refresh_token_family))
    assert engine.oauth.authenticate_access_token(second.access_token) is None


def test_revoking_access_token_revokes_its_row(engine, client, user):
    registered, secret = client
    pair = _exchange(engine.oauth, registered, secret, _code(engine.oauth, registered, user))
    engine.oauth.revoke(pair.access_token)
    assert engine.oauth.authenticate_access_token(pair.access_token) is None
    assert engine.oauth.introspect(pair.refresh_token) == {"active": False}


def test_revoke_ignores_foreign_client_and_unknown_tokens(engine, client, user):
    registered, secret = client
    pair = _exchange(engine.oauth, registered, secret, _code(engine.oauth, registered, user))
    engine.oauth.revoke(pair.access_token, client_id="someone-else")
    engine.oauth.revoke("tga_not-a-real-token")
    assert engine.oauth.authenticate_access_token(pair.access_token) is not None


def test_introspect_reports_token_fields(engine, client, user):
    registered, secret = client
    pair = _exchange(engine.oauth, registered, secret, _code(engine.oauth, registered, user))
    info = engine.oauth.introspect(pair.access_token)
    assert info["active"]
    assert info["token_type"] == "Bearer"
    assert info["scope"] == "profile email"
    assert info["client_id"] == registered.client_id
    assert info["sub"] == str(user.id)
    assert info["exp"] > info["iat"]

    assert engine.oauth.introspect(pair.refresh_token)["token_type"] == "refresh_token"
    assert engine.oauth.introspect(None) == {"active": False}
    assert engine.oauth.introspect("garbage") == {"active": False}
