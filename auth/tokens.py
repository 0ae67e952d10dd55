"""
auth/tokens.py -- Password hashing, secret-token generation and cookie helpers.

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper). Bcrypt's cost factor
       makes brute force of low-entropy secrets expensive. The cost comes from
       Settings.bcrypt_rounds so tests can lower it. _DUMMY_HASH enables timing
       equalization in the credential check so response time does not reveal
       whether an email exists [C1]. Passwords are SHA-256 pre-hashed so the
       whole 128-character policy range reaches bcrypt's 72-byte input.

  High-entropy secrets (session ids, OAuth codes and tokens, API keys,
       reset/verification/invite links, trusted-device tokens, MFA codes,
       recovery codes): stored as HMAC-SHA256(SECRET_KEY, raw). The hash is
       deterministic, so lookups are a single indexed equality match, and an
       attacker holding a DB dump cannot test guesses without SECRET_KEY.
       bcrypt's slowness buys nothing for 256-bit random values.

  Comparisons of secrets held in memory use hmac.compare_digest.

  SECRET_KEY: sourced from core.config.get_settings(); validated at startup
       (length >= 32, required outside DEBUG) [M6][M7].

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets

import bcrypt
from authlib.common.security import generate_token as _authlib_generate_token

from core.config import get_settings

logger = logging.getLogger("tenantgate.auth.tokens")

_settings = get_settings()

# Recovery codes avoid 0/O and 1/I so they survive being read aloud.
_RECOVERY_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage)
# ---------------------------------------------------------------------------


def _prehash(plain: str) -> bytes:
    """SHA-256 digest, base64-encoded: 44 bytes with no NULs.

    bcrypt only reads 72 bytes (current releases refuse anything longer),
    while the password policy allows 128 characters of any script.
    """
    return base64.b64encode(hashlib.sha256(plain.encode("utf-8")).digest())


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(_prehash(plain), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed stored hash is treated as a mismatch, never as an error the
    caller has to handle.
    """
    try:
        return bcrypt.checkpw(_prehash(plain), hashed.encode("utf-8"))
    except ValueError:
        logger.error("Stored password hash is malformed")
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. Always call verify_password() even when the
# email does not exist.
_DUMMY_HASH: str = hash_password("tenantgate_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Spend one bcrypt verification on a throwaway hash [C1]."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Secret generation and hashing
# ---------------------------------------------------------------------------


def generate_token(prefix: str = "", nbytes: int = 32) -> str:
    """Return a URL-safe random token, optionally with a readable prefix.

    prefix lets operators tell token kinds apart in logs and support tickets
    (e.g. "tga_" access token, "tgr_" refresh token) without revealing them.
    """
    return f"{prefix}{secrets.token_urlsafe(nbytes)}"


def generate_client_id() -> str:
    """Return a 24-character alphanumeric OAuth client identifier."""
    return _authlib_generate_token(24)


def generate_numeric_code(length: int = 6) -> str:
    """Return a zero-padded numeric one-time code."""
    return f"{secrets.randbelow(10**length):0{length}d}"


def generate_recovery_code() -> str:
    """Return a recovery code formatted XXXX-XXXX."""
    chars = "".join(secrets.choice(_RECOVERY_ALPHABET) for _ in range(8))
    return f"{chars[:4]}-{chars[4:]}"


def normalize_recovery_code(code: str) -> str:
    """Uppercase and strip separators so users may type codes loosely."""
    return code.strip().upper().replace("-", "").replace(" ", "")


def hash_token(raw: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw) as a hex string."""
    return hmac.new(
        _settings.secret_key.encode(),
        raw.encode(),
        hashlib.sha256,
    ).hexdigest()


def token_prefix(raw: str, length: int = 12) -> str:
    """First characters of a raw token, kept in clear for display only."""
    return raw[:length]


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, sid: str, max_age: int) -> None:
    """Write the opaque session id as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the session's absolute ceiling; the server enforces the
        shorter sliding expiry on its own.
    """
    response.set_cookie(
        _settings.session_cookie_name,
        value=sid,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=max_age,
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(_settings.session_cookie_name)


def set_device_cookie(response, token: str, max_age: int) -> None:
    """Write the trusted-device token cookie (same flags as the session cookie)."""
    response.set_cookie(
        _settings.trusted_device_cookie_name,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=max_age,
    )
