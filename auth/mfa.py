"""
auth/mfa.py -- Second-factor verification, recovery codes and trusted devices.

State per user: DISABLED -> ENABLED(secret). A login for an ENABLED user (or
any user of a company with mfa_required) binds a session with
mfa_verified=False. That session can reach /auth/me and the MFA endpoints
but nothing protected until verify() succeeds on it.

verify() accepts, in order:
  6-digit code  -> TOTP (pyotp, +/-1 step) when a secret is enrolled,
                   otherwise the session's pending emailed code
  anything else -> single-use recovery code (XXXX-XXXX, case/dash-insensitive)

Emailed codes live in mfa_challenges, one live row per session, hashed, with
an attempt cap. The engine never sends mail itself: send_code() returns the
raw code and the transport hands it to the notifier in a background task, so
delivery never blocks the HTTP response.

Recovery codes and emailed codes are consumed with a conditional UPDATE
(... WHERE used_at IS NULL) whose row count decides the winner: a code can
be spent once even under concurrent submissions.

Trusted devices: verify(trust_device=True) returns a random token that the
transport stores in an httpOnly cookie. Presenting it on a later login for
the same user within trusted_device_days skips MFA entirely.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta

import pyotp
from sqlalchemy import select

from auth.audit import AuditLog
from auth.errors import MfaInvalidCode, NotFound, Unauthenticated, ValidationFailed
from auth.models import LoginEventType, Session, TrustedDevice, User
from auth.store import (
    AuthStore,
    _row_to_mfa_challenge,
    _row_to_trusted_device,
    mfa_challenges,
    mfa_recovery_codes,
    sessions,
    trusted_devices,
)
from auth.tokens import (
    constant_time_equals,
    generate_numeric_code,
    generate_recovery_code,
    generate_token,
    hash_token,
    normalize_recovery_code,
)
from core.config import Settings, get_settings
from core.timeutil import Clock, to_iso, utc_now

logger = logging.getLogger("tenantgate.auth.mfa")

CODE_LENGTH = 6


@dataclass
class MfaSetup:
    """Returned once on enrolment. The secret and codes are never shown again."""

    secret: str
    provisioning_uri: str
    recovery_codes: list[str]


@dataclass
class IssuedCode:
    user: User
    code: str
    expires_in_minutes: int


@dataclass
class MfaVerification:
    user_id: int
    method: str  # "totp", "email" or "recovery"
    device_token: str | None = None


@dataclass
class MfaStatus:
    enabled: bool
    totp_enrolled: bool
    recovery_codes_remaining: int
    trusted_devices: list[TrustedDevice] = field(default_factory=list)


def device_name(user_agent: str | None) -> str:
    """Turn a User-Agent header into a label like "Chrome on macOS"."""
    if not user_agent or not user_agent.strip():
        return "Unknown Device"
    ua = user_agent
    if "Edg/" in ua:
        browser = "Edge"
    elif "OPR/" in ua or "Opera" in ua:
        browser = "Opera"
    elif "Chrome/" in ua and "Chromium/" not in ua:
        browser = "Chrome"
    elif "Safari/" in ua and "Chrome/" not in ua:
        browser = "Safari"
    elif "Firefox/" in ua:
        browser = "Firefox"
    else:
        browser = None

    if "iPhone" in ua or "iPad" in ua:
        os_name = "iOS"
    elif "Android" in ua:
        os_name = "Android"
    elif "Windows" in ua:
        os_name = "Windows"
    elif "Mac OS X" in ua or "Macintosh" in ua:
        os_name = "macOS"
    elif "Linux" in ua:
        os_name = "Linux"
    else:
        os_name = None

    if browser and os_name:
        return f"{browser} on {os_name}"
    if browser:
        return browser
    if os_name:
        return f"Browser on {os_name}"
    return "Unknown Device"


class MfaEngine:
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
    # Enrolment
    # ------------------------------------------------------------------

    def enable(self, user_id: int) -> MfaSetup:
        """Enrol a TOTP secret, switch MFA on and issue fresh recovery codes."""
        user = self._require_user(user_id)
        secret = pyotp.random_base32()
        uri = pyotp.TOTP(secret).provisioning_uri(name=user.email, issuer_name=self.settings.totp_issuer)
        with self.store.transaction() as conn:
            self.store.update_user(conn, user_id, mfa_enabled=True, totp_secret=secret)
            codes = self._replace_recovery_codes(conn, user_id)
            self.audit.record_event(
                LoginEventType.MFA_ENABLED, user_id=user_id, email=user.email, company_id=user.company_id, conn=conn
            )
        logger.info("MFA enabled for user %s", user_id)
        return MfaSetup(secret=secret, provisioning_uri=uri, recovery_codes=codes)

    def disable(self, user_id: int) -> None:
        """Switch MFA off and discard the secret, recovery codes and trusted devices."""
        user = self._require_user(user_id)
        with self.store.transaction() as conn:
            self.store.update_user(conn, user_id, mfa_enabled=False, totp_secret=None)
            conn.execute(mfa_recovery_codes.delete().where(mfa_recovery_codes.c.user_id == user_id))
            conn.execute(trusted_devices.delete().where(trusted_devices.c.user_id == user_id))
            self.audit.record_event(
                LoginEventType.MFA_DISABLED, user_id=user_id, email=user.email, company_id=user.company_id, conn=conn
            )
        logger.info("MFA disabled for user %s", user_id)

    def regenerate_recovery_codes(self, user_id: int) -> list[str]:
        user = self._require_user(user_id)
        if not user.mfa_enabled:
            raise ValidationFailed("MFA is not enabled.")
        with self.store.transaction() as conn:
            return self._replace_recovery_codes(conn, user_id)

    def remaining_recovery_codes(self, user_id: int) -> int:
        return self.store.read(
            lambda conn: self.store.count_rows(
                conn,
                mfa_recovery_codes,
                mfa_recovery_codes.c.user_id == user_id,
                mfa_recovery_codes.c.used_at.is_(None),
            )
        )

    def status(self, user_id: int) -> MfaStatus:
        user = self._require_user(user_id)
        return MfaStatus(
            enabled=user.mfa_enabled,
            totp_enrolled=user.totp_secret is not None,
            recovery_codes_remaining=self.remaining_recovery_codes(user_id),
            trusted_devices=self.list_trusted_devices(user_id),
        )

    def _replace_recovery_codes(self, conn, user_id: int) -> list[str]:
        now = to_iso(self.clock())
        codes = [generate_recovery_code() for _ in range(self.settings.mfa_recovery_code_count)]
        conn.execute(mfa_recovery_codes.delete().where(mfa_recovery_codes.c.user_id == user_id))
        conn.execute(
            mfa_recovery_codes.insert(),
            [
                {"user_id": user_id, "code_hash": hash_token(normalize_recovery_code(c)), "created_at": now}
                for c in codes
            ],
        )
        return codes

    # ------------------------------------------------------------------
    # Challenge / verify
    # ------------------------------------------------------------------

    def send_code(self, session: Session) -> IssuedCode:
        """Create a fresh emailed code for this session, superseding any earlier one."""
        if session.user_id is None:
            raise Unauthenticated()
        user = self._require_user(session.user_id)
        code = generate_numeric_code(CODE_LENGTH)
        now = self.clock()
        ttl = self.settings.mfa_code_ttl_minutes
        with self.store.transaction() as conn:
            conn.execute(
                mfa_challenges.update()
                .where(mfa_challenges.c.session_id == session.sid, mfa_challenges.c.used_at.is_(None))
                .values(used_at=to_iso(now))
            )
            conn.execute(
                mfa_challenges.insert().values(
                    user_id=user.id,
                    session_id=session.sid,
                    code_hash=hash_token(code),
                    attempts=0,
                    expires_at=to_iso(now + timedelta(minutes=ttl)),
                    created_at=to_iso(now),
                )
            )
            self.audit.record_event(
                LoginEventType.MFA_CODE_SENT, user_id=user.id, company_id=user.company_id, conn=conn
            )
        return IssuedCode(user=user, code=code, expires_in_minutes=ttl)

    def verify(
        self,
        session: Session,
        code: str,
        *,
        trust_device: bool = False,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> MfaVerification:
        """Verify a second factor and mark the session MFA-verified."""
        if session.user_id is None:
            raise Unauthenticated()
        user = self._require_user(session.user_id)
        now = self.clock()
        candidate = code.strip().replace(" ", "")

        method: str | None = None
        if len(candidate) == CODE_LENGTH and candidate.isdigit():
            if user.totp_secret and pyotp.TOTP(user.totp_secret).verify(candidate, for_time=now, valid_window=1):
                method = "totp"
            elif self._check_emailed_code(session, candidate):
                method = "email"
        elif self._consume_recovery_code(user.id, candidate):
            method = "recovery"

        if method is None:
            self.audit.record_event(
                LoginEventType.MFA_FAILED,
                user_id=user.id,
                company_id=user.company_id,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise MfaInvalidCode()

        device_token: str | None = None
        with self.store.transaction() as conn:
            result = conn.execute(
                sessions.update()
                .where(
                    sessions.c.sid == session.sid,
                    sessions.c.user_id == user.id,
                    sessions.c.revoked_at.is_(None),
                )
                .values(mfa_verified=True)
            )
            if result.rowcount == 0:
                raise Unauthenticated("Session is no longer valid.")
            event = LoginEventType.MFA_RECOVERY_CODE_USED if method == "recovery" else LoginEventType.MFA_VERIFIED
            self.audit.record_event(
                event,
                user_id=user.id,
                company_id=session.active_company_id,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"method": method},
                conn=conn,
            )
            if trust_device:
                device_token = self._insert_trusted_device(conn, user.id, ip_address, user_agent)
        return MfaVerification(user_id=user.id, method=method, device_token=device_token)

    def _check_emailed_code(self, session: Session, candidate: str) -> bool:
        """Compare against the session's live challenge, counting the attempt.

        The attempt counter is committed even when the code is wrong; the
        challenge is burned once mfa_code_max_attempts is reached.
        """
        now = self.clock()
        max_attempts = self.settings.mfa_code_max_attempts
        with self.store.transaction() as conn:
            row = conn.execute(
                select(mfa_challenges)
                .where(mfa_challenges.c.session_id == session.sid, mfa_challenges.c.used_at.is_(None))
                .order_by(mfa_challenges.c.id.desc())
                .limit(1)
                .with_for_update()
            ).fetchone()
            if row is None:
                return False
            challenge = _row_to_mfa_challenge(row)
            if now > challenge.expires_at or challenge.attempts >= max_attempts:
                conn.execute(
                    mfa_challenges.update().where(mfa_challenges.c.id == challenge.id).values(used_at=to_iso(now))
                )
                return False

            attempts = challenge.attempts + 1
            matched = constant_time_equals(hash_token(candidate), challenge.code_hash)
            values: dict = {"attempts": attempts}
            if matched or attempts >= max_attempts:
                values["used_at"] = to_iso(now)
            result = conn.execute(
                mfa_challenges.update()
                .where(mfa_challenges.c.id == challenge.id, mfa_challenges.c.used_at.is_(None))
                .values(**values)
            )
            return matched and result.rowcount == 1

    def _consume_recovery_code(self, user_id: int, candidate: str) -> bool:
        normalized = normalize_recovery_code(candidate)
        if not normalized:
            return False
        with self.store.transaction() as conn:
            result = conn.execute(
                mfa_recovery_codes.update()
                .where(
                    mfa_recovery_codes.c.user_id == user_id,
                    mfa_recovery_codes.c.code_hash == hash_token(normalized),
                    mfa_recovery_codes.c.used_at.is_(None),
                )
                .values(used_at=to_iso(self.clock()))
            )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Trusted devices
    # ------------------------------------------------------------------

    def _insert_trusted_device(self, conn, user_id: int, ip_address: str | None, user_agent: str | None) -> str:
        raw = generate_token(nbytes=64)
        now = self.clock()
        conn.execute(
            trusted_devices.insert().values(
                user_id=user_id,
                token_hash=hash_token(raw),
                device_name=device_name(user_agent),
                ip_address=ip_address,
                user_agent=user_agent,
                expires_at=to_iso(now + timedelta(days=self.settings.trusted_device_days)),
                last_seen_at=to_iso(now),
                created_at=to_iso(now),
            )
        )
        self.audit.record_event(
            LoginEventType.TRUSTED_DEVICE_ADDED,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"device_name": device_name(user_agent)},
            conn=conn,
        )
        return raw

    def is_trusted_device(self, user_id: int, raw_token: str | None, *, ip_address: str | None = None) -> bool:
        """Return True if raw_token is a live trust token for this user; refreshes last_seen_at."""
        if not raw_token:
            return False
        now = self.clock()
        with self.store.transaction() as conn:
            row = conn.execute(
                select(trusted_devices).where(
                    trusted_devices.c.token_hash == hash_token(raw_token),
                    trusted_devices.c.user_id == user_id,
                )
            ).fetchone()
            if row is None:
                logger.info("Trusted device check failed for user %s: not_found", user_id)
                return False
            device = _row_to_trusted_device(row)
            if now > device.expires_at:
                logger.info("Trusted device check failed for user %s: expired", user_id)
                return False
            conn.execute(
                trusted_devices.update()
                .where(trusted_devices.c.id == device.id)
                .values(last_seen_at=to_iso(now), ip_address=ip_address or device.ip_address)
            )
        return True

    def list_trusted_devices(self, user_id: int) -> list[TrustedDevice]:
        now = to_iso(self.clock())
        stmt = (
            select(trusted_devices)
            .where(trusted_devices.c.user_id == user_id, trusted_devices.c.expires_at > now)
            .order_by(trusted_devices.c.last_seen_at.desc())
        )
        return self.store.read(lambda conn: [_row_to_trusted_device(r) for r in conn.execute(stmt)])

    def remove_trusted_device(self, user_id: int, device_id: int) -> None:
        """Delete one device. user_id is part of the WHERE clause [IDOR guard]."""
        with self.store.transaction() as conn:
            result = conn.execute(
                trusted_devices.delete().where(trusted_devices.c.id == device_id, trusted_devices.c.user_id == user_id)
            )
        if result.rowcount == 0:
            raise NotFound("Trusted device not found.")

    def clear_trusted_devices(self, user_id: int) -> int:
        with self.store.transaction() as conn:
            return conn.execute(trusted_devices.delete().where(trusted_devices.c.user_id == user_id)).rowcount

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_user(self, user_id: int) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFound("User not found.")
        return user
