"""
auth/oauth_server.py -- OAuth 2.0 provider: authorization codes, PKCE and token rotation.

Grant lifecycle:
    CODE_ISSUED --exchange_code--> EXCHANGED(access, refresh)
        --refresh--> ROTATED --refresh--> ... --revoke | reuse--> REVOKED

Authorization codes are single-use, hashed at rest and expire after
oauth_code_ttl_minutes. Public clients, and confidential clients registered
with require_pkce, must send a code_challenge; method S256 (default) or plain.
The S256 transform comes from authlib's RFC 7636 module.

Tokens: every row of oauth_tokens holds one access/refresh pair. All pairs
minted from one authorization code share refresh_token_family; a rotation
revokes the old row (revoked_reason="rotation") and links it forward with
replaced_by_token_id.

Reuse detection: presenting a refresh token whose row is already revoked is
the signature of a stolen token racing its legitimate owner. The whole family
is revoked (revoked_reason="suspicious_reuse") and RefreshTokenReuseDetected
is raised. The family revocation commits before the error is raised.

Concurrency: rotation runs in one write transaction with the old row locked
and the revoke written as a conditional UPDATE (... WHERE revoked_at IS NULL).
Of two simultaneous refreshes with the same token exactly one rotates; the
other sees the row revoked and triggers reuse handling.

Raw tokens carry prefixes ("tga_" access, "tgr_" refresh, "tgs_" client
secret) so they are recognisable in logs and secret scanners; only their
HMAC digests and first 12 characters are stored.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from authlib.oauth2.rfc7636 import create_s256_code_challenge
from sqlalchemy import or_, select
from sqlalchemy.engine import Connection

from auth.audit import AuditLog
from auth.errors import (
    InvalidClient,
    InvalidGrant,
    InvalidScope,
    NotFound,
    PkceMismatch,
    RefreshTokenReuseDetected,
    TokenAlreadyUsed,
    TokenExpired,
    ValidationFailed,
)
from auth.models import LoginEventType, OAuthClient, OAuthClientType, OAuthToken, TokenPair
from auth.store import (
    AuthStore,
    _row_to_authorization_code,
    _row_to_oauth_client,
    _row_to_oauth_token,
    dump_list,
    oauth_authorization_codes,
    oauth_clients,
    oauth_tokens,
)
from auth.tokens import constant_time_equals, generate_client_id, generate_token, hash_token, token_prefix
from core.config import Settings, get_settings
from core.timeutil import Clock, to_iso, utc_now

logger = logging.getLogger("tenantgate.auth.oauth")

ACCESS_TOKEN_PREFIX = "tga_"
REFRESH_TOKEN_PREFIX = "tgr_"
CLIENT_SECRET_PREFIX = "tgs_"

PKCE_METHODS = ("S256", "plain")

OAUTH_SCOPES: dict[str, str] = {
    "profile": "Read your name and account details",
    "email": "Read your email address",
    "companies:read": "List the companies you belong to",
    "customers:read": "Read customer records",
    "customers:write": "Create and update customer records",
    "reports:read": "Read reports",
    "offline_access": "Stay connected when you are not using the app",
}


@dataclass
class RegisteredClient:
    client: OAuthClient
    client_secret: str | None  # shown once; None for public clients


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def parse_scopes(raw: str | list[str] | None) -> list[str]:
    """Space-delimited scope string (or list) to a de-duplicated, ordered list."""
    if not raw:
        return []
    items = raw.split() if isinstance(raw, str) else list(raw)
    seen: dict[str, None] = {}
    for item in items:
        item = item.strip()
        if item:
            seen.setdefault(item, None)
    return list(seen)


def verify_code_challenge(verifier: str, challenge: str, method: str) -> bool:
    if method == "S256":
        return constant_time_equals(create_s256_code_challenge(verifier), challenge)
    if method == "plain":
        return constant_time_equals(verifier, challenge)
    return False


def is_access_token_valid(token: OAuthToken, now: datetime) -> bool:
    return now < token.access_token_expires_at


def is_refresh_token_valid(token: OAuthToken, now: datetime) -> bool:
    return (
        token.revoked_at is None
        and token.refresh_token_expires_at is not None
        and now < token.refresh_token_expires_at
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class OAuthTokenService:
    def __init__(
        self,
        store: AuthStore,
        audit: AuditLog,
        clock: Clock = utc_now,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.clock = clock
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    def register_client(
        self,
        name: str,
        *,
        client_type: OAuthClientType = OAuthClientType.CONFIDENTIAL,
        redirect_uris: list[str],
        allowed_scopes: list[str] | None = None,
        require_pkce: bool = True,
    ) -> RegisteredClient:
        client_type = OAuthClientType(client_type)
        if not redirect_uris:
            raise ValidationFailed("At least one redirect URI is required.")
        scopes = parse_scopes(allowed_scopes) or list(OAUTH_SCOPES)
        unknown = [s for s in scopes if s not in OAUTH_SCOPES]
        if unknown:
            raise InvalidScope(f"Unknown scopes: {', '.join(unknown)}")
        if client_type == OAuthClientType.PUBLIC:
            require_pkce = True
            secret = None
        else:
            secret = generate_token(CLIENT_SECRET_PREFIX)

        with self.store.transaction() as conn:
            result = conn.execute(
                oauth_clients.insert().values(
                    client_id=generate_client_id(),
                    client_secret_hash=hash_token(secret) if secret else None,
                    name=name,
                    client_type=client_type.value,
                    redirect_uris=dump_list(redirect_uris),
                    allowed_scopes=dump_list(scopes),
                    require_pkce=require_pkce,
                    created_at=to_iso(self.clock()),
                )
            )
            row = conn.execute(
                oauth_clients.select().where(oauth_clients.c.id == result.inserted_primary_key[0])
            ).fetchone()
        client = _row_to_oauth_client(row)
        logger.info("Registered %s OAuth client %s (%s)", client_type.value, client.client_id, name)
        return RegisteredClient(client=client, client_secret=secret)

    def get_client(self, client_id: str) -> OAuthClient | None:
        def _load(conn: Connection) -> OAuthClient | None:
            row = conn.execute(
                oauth_clients.select().where(oauth_clients.c.client_id == client_id, oauth_clients.c.is_active.is_(True))
            ).fetchone()
            return _row_to_oauth_client(row) if row is not None else None

        return self.store.read(_load)

    def authenticate_client(self, client_id: str | None, client_secret: str | None) -> OAuthClient:
        """Confidential clients must present their secret; public clients only their id."""
        client = self.get_client(client_id) if client_id else None
        if client is None:
            raise InvalidClient()
        if client.client_type == OAuthClientType.CONFIDENTIAL:
            if not client_secret or not client.client_secret_hash:
                raise InvalidClient()
            if not constant_time_equals(hash_token(client_secret), client.client_secret_hash):
                raise InvalidClient()
        return client

    @staticmethod
    def validate_scopes(client: OAuthClient, requested: str | list[str] | None) -> list[str]:
        """No scopes requested means every scope the client is allowed."""
        scopes = parse_scopes(requested)
        if not scopes:
            return list(client.allowed_scopes)
        invalid = [s for s in scopes if s not in client.allowed_scopes]
        if invalid:
            raise InvalidScope(f"Invalid scopes: {', '.join(invalid)}")
        return scopes

    # ------------------------------------------------------------------
    # Authorization code
    # ------------------------------------------------------------------

    def issue_code(
        self,
        client_id: str,
        user_id: int,
        redirect_uri: str,
        *,
        state: str | None,
        scopes: str | list[str] | None = None,
        code_challenge: str | None = None,
        code_challenge_method: str | None = None,
        company_id: int | None = None,
    ) -> str:
        """Return a raw authorization code for an approved consent."""
        client = self.get_client(client_id)
        if client is None:
            raise InvalidClient()
        if redirect_uri not in client.redirect_uris:
            raise ValidationFailed("Invalid redirect URI.")
        if not state:
            raise ValidationFailed("state is required.")
        granted = self.validate_scopes(client, scopes)
        if (client.require_pkce or client.client_type == OAuthClientType.PUBLIC) and not code_challenge:
            raise ValidationFailed("PKCE code_challenge required for this client.")
        method = None
        if code_challenge:
            method = code_challenge_method or "S256"
            if method not in PKCE_METHODS:
                raise ValidationFailed("Unsupported code_challenge_method.")

        raw = generate_token(nbytes=32)
        now = self.clock()
        with self.store.transaction() as conn:
            conn.execute(
                oauth_authorization_codes.insert().values(
                    code_hash=hash_token(raw),
                    client_id=client.id,
                    user_id=user_id,
                    company_id=company_id,
                    redirect_uri=redirect_uri,
                    scopes=dump_list(granted),
                    code_challenge=code_challenge,
                    code_challenge_method=method,
                    state=state,
                    expires_at=to_iso(now + timedelta(minutes=self.settings.oauth_code_ttl_minutes)),
                    created_at=to_iso(now),
                )
            )
        return raw

    def exchange_code(
        self,
        code: str,
        *,
        client_id: str | None,
        client_secret: str | None = None,
        redirect_uri: str | None = None,
        code_verifier: str | None = None,
    ) -> TokenPair:
        client = self.authenticate_client(client_id, client_secret)
        now = self.clock()
        with self.store.transaction() as conn:
            row = conn.execute(
                oauth_authorization_codes.select()
                .where(oauth_authorization_codes.c.code_hash == hash_token(code))
                .with_for_update()
            ).fetchone()
            if row is None:
                raise InvalidGrant()
            grant = _row_to_authorization_code(row)
            if grant.client_id != client.id:
                raise InvalidGrant()
            if grant.used_at is not None:
                logger.warning("Authorization code replayed by client %s", client.client_id)
                raise TokenAlreadyUsed()
            if now > grant.expires_at:
                raise TokenExpired("Authorization code expired.")
            if redirect_uri != grant.redirect_uri:
                raise InvalidGrant("redirect_uri does not match the authorization request.")
            if grant.code_challenge:
                if not code_verifier or not verify_code_challenge(
                    code_verifier, grant.code_challenge, grant.code_challenge_method or "S256"
                ):
                    raise PkceMismatch()

            consumed = conn.execute(
                oauth_authorization_codes.update()
                .where(oauth_authorization_codes.c.id == grant.id, oauth_authorization_codes.c.used_at.is_(None))
                .values(used_at=to_iso(now))
            ).rowcount
            if consumed != 1:
                raise TokenAlreadyUsed()
            user = self.store.fetch_user(conn, grant.user_id)
            if user is None or not user.is_active:
                raise InvalidGrant()

            pair = self._mint(conn, client.id, grant.user_id, grant.company_id, grant.scopes, uuid.uuid4().hex, now)
            self.audit.record_event(
                LoginEventType.TOKEN_ISSUED,
                user_id=grant.user_id,
                company_id=grant.company_id,
                metadata={"client_id": client.client_id, "family": pair.token.refresh_token_family[:8]},
                conn=conn,
            )
        return pair

    def _mint(
        self,
        conn: Connection,
        client_pk: int,
        user_id: int,
        company_id: int | None,
        scopes: list[str],
        family: str,
        now: datetime,
    ) -> TokenPair:
        access = generate_token(ACCESS_TOKEN_PREFIX)
        refresh = generate_token(REFRESH_TOKEN_PREFIX)
        ttl = self.settings.oauth_access_token_ttl_seconds
        result = conn.execute(
            oauth_tokens.insert().values(
                client_id=client_pk,
                user_id=user_id,
                company_id=company_id,
                scopes=dump_list(scopes),
                access_token_hash=hash_token(access),
                access_token_prefix=token_prefix(access),
                access_token_expires_at=to_iso(now + timedelta(seconds=ttl)),
                refresh_token_hash=hash_token(refresh),
                refresh_token_prefix=token_prefix(refresh),
                refresh_token_expires_at=to_iso(now + timedelta(days=self.settings.oauth_refresh_token_ttl_days)),
                refresh_token_family=family,
                created_at=to_iso(now),
            )
        )
        row = conn.execute(oauth_tokens.select().where(oauth_tokens.c.id == result.inserted_primary_key[0])).fetchone()
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            expires_in=ttl,
            scopes=list(scopes),
            token=_row_to_oauth_token(row),
        )

    # ------------------------------------------------------------------
    # Refresh and rotation
    # ------------------------------------------------------------------

    def refresh(
        self,
        refresh_token: str,
        *,
        client_id: str | None,
        client_secret: str | None = None,
        scopes: str | list[str] | None = None,
    ) -> TokenPair:
        client = self.authenticate_client(client_id, client_secret)
        now = self.clock()
        reused: OAuthToken | None = None
        pair: TokenPair | None = None

        with self.store.transaction() as conn:
            row = conn.execute(
                oauth_tokens.select()
                .where(oauth_tokens.c.refresh_token_hash == hash_token(refresh_token))
                .with_for_update()
            ).fetchone()
            if row is None:
                raise InvalidGrant()
            old = _row_to_oauth_token(row)
            if old.client_id != client.id:
                raise InvalidGrant()

            if old.revoked_at is not None:
                self._revoke_family(conn, old.refresh_token_family, "suspicious_reuse", now)
                reused = old
            else:
                if not is_refresh_token_valid(old, now):
                    raise TokenExpired("Refresh token expired.")
                requested = parse_scopes(scopes)
                if requested and not set(requested) <= set(old.scopes):
                    raise InvalidScope("Requested scopes exceed the original grant.")
                user = self.store.fetch_user(conn, old.user_id)
                if user is None or not user.is_active:
                    raise InvalidGrant()
                rotated = conn.execute(
                    oauth_tokens.update()
                    .where(oauth_tokens.c.id == old.id, oauth_tokens.c.revoked_at.is_(None))
                    .values(revoked_at=to_iso(now), revoked_reason="rotation")
                ).rowcount
                if rotated != 1:
                    self._revoke_family(conn, old.refresh_token_family, "suspicious_reuse", now)
                    reused = old
                else:
                    pair = self._mint(
                        conn,
                        client.id,
                        old.user_id,
                        old.company_id,
                        requested or old.scopes,
                        old.refresh_token_family,
                        now,
                    )
                    conn.execute(
                        oauth_tokens.update()
                        .where(oauth_tokens.c.id == old.id)
                        .values(replaced_by_token_id=pair.token.id)
                    )
                    self.audit.record_event(
                        LoginEventType.TOKEN_REFRESHED,
                        user_id=old.user_id,
                        company_id=old.company_id,
                        metadata={"client_id": client.client_id, "family": old.refresh_token_family[:8]},
                        conn=conn,
                    )
            if reused is not None:
                self.audit.record_event(
                    LoginEventType.TOKEN_REUSE_DETECTED,
                    user_id=reused.user_id,
                    company_id=reused.company_id,
                    metadata={"client_id": client.client_id, "family": reused.refresh_token_family[:8]},
                    conn=conn,
                )

        if reused is not None:
            logger.warning(
                "Refresh token reuse for user %s; family %s revoked",
                reused.user_id,
                reused.refresh_token_family[:8],
            )
            raise RefreshTokenReuseDetected()
        return pair

    def _revoke_family(self, conn: Connection, family: str, reason: str, now: datetime) -> int:
        return conn.execute(
            oauth_tokens.update()
            .where(oauth_tokens.c.refresh_token_family == family, oauth_tokens.c.revoked_at.is_(None))
            .values(revoked_at=to_iso(now), revoked_reason=reason)
        ).rowcount

    def family(self, family_id: str) -> list[OAuthToken]:
        """Every token of one grant, oldest first."""
        stmt = oauth_tokens.select().where(oauth_tokens.c.refresh_token_family == family_id).order_by(oauth_tokens.c.id)
        return self.store.read(lambda conn: [_row_to_oauth_token(r) for r in conn.execute(stmt)])

    # ------------------------------------------------------------------
    # Revocation and introspection
    # ------------------------------------------------------------------

    def revoke(self, token: str, *, client_id: str | None = None) -> None:
        """RFC 7009 revocation. Unknown tokens are ignored; the caller always answers 200.

        A refresh token revokes its whole grant. An access token revokes its
        own row, which also retires the refresh token paired with it.
        """
        digest = hash_token(token)
        now = self.clock()
        with self.store.transaction() as conn:
            row = conn.execute(
                oauth_tokens.select().where(
                    or_(oauth_tokens.c.refresh_token_hash == digest, oauth_tokens.c.access_token_hash == digest)
                )
            ).fetchone()
            if row is None:
                return
            found = _row_to_oauth_token(row)
            if client_id is not None:
                client = conn.execute(
                    select(oauth_clients.c.client_id).where(oauth_clients.c.id == found.client_id)
                ).scalar()
                if client != client_id:
                    return
            if found.refresh_token_hash == digest:
                count = self._revoke_family(conn, found.refresh_token_family, "revoked", now)
            else:
                count = conn.execute(
                    oauth_tokens.update()
                    .where(oauth_tokens.c.id == found.id, oauth_tokens.c.revoked_at.is_(None))
                    .values(revoked_at=to_iso(now), revoked_reason="revoked")
                ).rowcount
            if count:
                self.audit.record_event(
                    LoginEventType.TOKEN_REVOKED,
                    user_id=found.user_id,
                    company_id=found.company_id,
                    metadata={"family": found.refresh_token_family[:8], "count": count},
                    conn=conn,
                )

    def revoke_user_tokens(self, user_id: int, reason: str = "revoked") -> int:
        now = to_iso(self.clock())
        with self.store.transaction() as conn:
            return conn.execute(
                oauth_tokens.update()
                .where(oauth_tokens.c.user_id == user_id, oauth_tokens.c.revoked_at.is_(None))
                .values(revoked_at=now, revoked_reason=reason)
            ).rowcount

    def authenticate_access_token(self, raw: str) -> OAuthToken | None:
        """The live token row for a bearer credential, or None."""
        now = self.clock()

        def _load(conn: Connection) -> OAuthToken | None:
            row = conn.execute(
                oauth_tokens.select().where(oauth_tokens.c.access_token_hash == hash_token(raw))
            ).fetchone()
            return _row_to_oauth_token(row) if row is not None else None

        token = self.store.read(_load)
        if token is None or token.revoked_at is not None or not is_access_token_valid(token, now):
            return None
        return token

    def introspect(self, raw: str | None) -> dict:
        """RFC 7662 response. Anything unknown, expired or revoked is {"active": False}."""
        if not raw:
            return {"active": False}
        digest = hash_token(raw)
        now = self.clock()

        def _load(conn: Connection):
            return conn.execute(
                select(oauth_tokens, oauth_clients.c.client_id.label("public_client_id"))
                .select_from(oauth_tokens.join(oauth_clients, oauth_clients.c.id == oauth_tokens.c.client_id))
                .where(or_(oauth_tokens.c.access_token_hash == digest, oauth_tokens.c.refresh_token_hash == digest))
            ).fetchone()

        row = self.store.read(_load)
        if row is None:
            return {"active": False}
        token = _row_to_oauth_token(row)
        if token.revoked_at is not None:
            return {"active": False}
        if token.access_token_hash == digest:
            if not is_access_token_valid(token, now):
                return {"active": False}
            token_type, expires = "Bearer", token.access_token_expires_at
        else:
            if not is_refresh_token_valid(token, now):
                return {"active": False}
            token_type, expires = "refresh_token", token.refresh_token_expires_at
        return {
            "active": True,
            "token_type": token_type,
            "scope": " ".join(token.scopes),
            "client_id": row.public_client_id,
            "sub": str(token.user_id),
            "exp": int(expires.timestamp()),
            "iat": int(token.created_at.timestamp()),
        }

    def deactivate_client(self, client_id: str) -> None:
        with self.store.transaction() as conn:
            changed = conn.execute(
                oauth_clients.update().where(oauth_clients.c.client_id == client_id).values(is_active=False)
            ).rowcount
            if not changed:
                raise NotFound("Client not found.")
