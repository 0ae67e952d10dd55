"""
auth/api_keys.py -- Long-lived API keys for CI/CD and scripts.

Keys look like tg_<64 hex chars> (256 bits of entropy). Only the
HMAC-SHA256 digest is stored, so a leaked database does not leak usable
keys; the first 12 characters are kept in clear so users can tell keys
apart in the UI. The raw key is returned exactly once, from create().

Each user may hold at most MAX_KEYS_PER_USER active keys, which keeps a
compromised account from minting an unbounded number of credentials and
keeps incident-response audits practical.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass

from sqlalchemy.engine import Connection

from auth.errors import NotFound, ValidationFailed
from auth.models import ApiKey, User
from auth.store import AuthStore, _row_to_api_key, api_keys
from auth.tokens import hash_token, token_prefix
from core.timeutil import Clock, to_iso, utc_now

logger = logging.getLogger("tenantgate.auth.api_keys")

MAX_KEYS_PER_USER = 10
KEY_PREFIX = "tg_"


def generate_api_key() -> str:
    return f"{KEY_PREFIX}{secrets.token_hex(32)}"


@dataclass
class CreatedKey:
    key: ApiKey
    raw_key: str


class ApiKeyService:
    def __init__(self, store: AuthStore, clock: Clock = utc_now) -> None:
        self.store = store
        self.clock = clock

    def create(self, user_id: int, name: str) -> CreatedKey:
        name = name.strip()
        if not name:
            raise ValidationFailed("Key name is required.")
        raw = generate_api_key()
        with self.store.transaction() as conn:
            active = self.store.count_rows(
                conn, api_keys, api_keys.c.user_id == user_id, api_keys.c.is_active.is_(True)
            )
            if active >= MAX_KEYS_PER_USER:
                raise ValidationFailed(
                    f"Maximum of {MAX_KEYS_PER_USER} API keys per user. Revoke an existing key first.",
                    details={"limit": MAX_KEYS_PER_USER},
                )
            result = conn.execute(
                api_keys.insert().values(
                    user_id=user_id,
                    name=name,
                    key_hash=hash_token(raw),
                    key_prefix=token_prefix(raw),
                    created_at=to_iso(self.clock()),
                    is_active=True,
                )
            )
            key = self._fetch(conn, result.inserted_primary_key[0])
        logger.info("API key %s created for user %s", key.key_prefix, user_id)
        return CreatedKey(key=key, raw_key=raw)

    @staticmethod
    def _fetch(conn: Connection, key_id: int) -> ApiKey:
        return _row_to_api_key(conn.execute(api_keys.select().where(api_keys.c.id == key_id)).fetchone())

    def list(self, user_id: int) -> list[ApiKey]:
        return self.store.read(
            lambda conn: [
                _row_to_api_key(r)
                for r in conn.execute(
                    api_keys.select()
                    .where(api_keys.c.user_id == user_id, api_keys.c.is_active.is_(True))
                    .order_by(api_keys.c.created_at.desc(), api_keys.c.id.desc())
                )
            ]
        )

    def revoke(self, key_id: int, user_id: int) -> None:
        """Deactivate a key. Scoped by owner so users cannot revoke each other's keys."""
        with self.store.transaction() as conn:
            changed = conn.execute(
                api_keys.update()
                .where(api_keys.c.id == key_id, api_keys.c.user_id == user_id, api_keys.c.is_active.is_(True))
                .values(is_active=False)
            ).rowcount
        if not changed:
            raise NotFound("API key not found.")
        logger.info("API key %s revoked by user %s", key_id, user_id)

    def authenticate(self, raw_key: str) -> tuple[ApiKey, User] | None:
        if not raw_key or not raw_key.startswith(KEY_PREFIX):
            return None
        with self.store.transaction() as conn:
            row = conn.execute(
                api_keys.select().where(api_keys.c.key_hash == hash_token(raw_key), api_keys.c.is_active.is_(True))
            ).fetchone()
            if row is None:
                return None
            key = _row_to_api_key(row)
            user = self.store.fetch_user(conn, key.user_id)
            if user is None or not user.is_active:
                return None
            conn.execute(api_keys.update().where(api_keys.c.id == key.id).values(last_used=to_iso(self.clock())))
        return key, user
