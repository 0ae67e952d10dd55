"""
core/config.py -- TenantGate settings, read once from the environment.

Every environment variable the service understands is a field on Settings.
Other modules call get_settings(); none of them touch os.environ.

Field names map to upper-case variables (bcrypt_rounds -> BCRYPT_ROUNDS) and
may also come from a .env file in the working directory. Values are cached
for the life of the process, so tests that need different settings build
their own copy with get_settings().model_copy(update={...}).

SECRET_KEY keys the HMAC-SHA256 digests under which OAuth codes and tokens,
API keys, reset links, invites and trusted-device tokens are stored. It must
be at least 32 characters. Without DEBUG=true a missing key stops startup,
since a fresh random key would orphan every stored digest.

Per-company policy (password rules, session limits, lockout window) lives on
the companies table. The values here are only the fallbacks used when a
company leaves a field unset.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tenantgate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'tenantgate.db'}"


class Settings(BaseSettings):
    """Service configuration. Every field has a default; only SECRET_KEY is checked."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    # Applied per statement (SQLite busy timeout, Postgres statement_timeout).
    store_timeout_seconds: float = 5.0
    # Read-only operations only. Mutations are never retried blindly.
    store_read_retries: int = 2

    # ------------------------------------------------------------------
    # Passwords and lockout
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    lockout_threshold: int = 5
    lockout_minutes: int = 15
    password_reset_ttl_minutes: int = 60
    email_verification_ttl_hours: int = 24
    require_email_verification: bool = False

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_cookie_name: str = "sid"
    session_sliding_minutes: int = 60
    session_remember_me_days: int = 30
    session_absolute_days: int = 30
    default_max_sessions: int = 5

    # ------------------------------------------------------------------
    # MFA
    # ------------------------------------------------------------------

    totp_issuer: str = "TenantGate"
    mfa_code_ttl_minutes: int = 5
    mfa_code_max_attempts: int = 5
    mfa_recovery_code_count: int = 10
    trusted_device_days: int = 30
    trusted_device_cookie_name: str = "device_trust"

    # ------------------------------------------------------------------
    # OAuth provider
    # ------------------------------------------------------------------

    oauth_code_ttl_minutes: int = 10
    oauth_access_token_ttl_seconds: int = 3600
    oauth_refresh_token_ttl_days: int = 30

    # ------------------------------------------------------------------
    # Invites
    # ------------------------------------------------------------------

    invite_ttl_days: int = 7

    # ------------------------------------------------------------------
    # Outbound email (empty smtp_host means log-only delivery)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    mail_from: str = "no-reply@tenantgate.local"
    app_base_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Generate a dev SECRET_KEY under DEBUG, otherwise require one; bound bcrypt cost."""
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Issued tokens will not verify after a restart."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Process-wide Settings, built on first call."""
    return Settings()
