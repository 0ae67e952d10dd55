"""
auth/credentials.py -- Password verification, policy, history and lockout.

CredentialStore is a leaf service: it reads company policy at enforcement
time, writes LoginAttempt/LoginEvent rows through AuditLog, and knows
nothing about sessions. Password resets invalidate sessions by stamping
users.force_logout_at, which the session layer honours on its own.

Check order in verify() [C1]:
  1. unknown email   -> dummy bcrypt run, invalid_credentials
  2. locked account  -> account_locked, password hash NOT checked
  3. inactive        -> account_inactive
  4. wrong password  -> failure counter++, maybe lock, invalid_credentials
  5. success         -> counters cleared
Unknown email and wrong password return the same reason.

Lockout escalates with the company threshold T and window W:
  >= T failures   locked for W minutes
  >= 2T failures  locked for 4W minutes
  >= 3T failures  locked for 24 hours
The counter resets on success, on password change, or after 24 hours
without a failure.

Failure-counter updates are a compare-and-set on users.version retried in a
short loop, so two concurrent wrong passwords both count and neither holds a
lock across a bcrypt call.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.engine import Connection

from auth.audit import AuditLog
from auth.errors import (
    Conflict,
    InvalidCredentials,
    NotFound,
    PasswordPolicyViolation,
    StoreUnavailable,
    TokenAlreadyUsed,
    TokenExpired,
    ValidationFailed,
)
from auth.models import Company, LoginEventType, PasswordPolicy, User, UserToken
from auth.store import (
    AuthStore,
    _row_to_user_token,
    email_verification_tokens,
    password_history,
    password_reset_tokens,
    users,
)
from auth.tokens import burn_password_check, generate_token, hash_password, hash_token, verify_password
from core.config import Settings, get_settings
from core.timeutil import Clock, to_iso, utc_now

logger = logging.getLogger("tenantgate.auth.credentials")

MAX_PASSWORD_LENGTH = 128
_SPECIAL_CHARS = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")
_COUNTER_RESET = timedelta(hours=24)
_LONG_LOCKOUT = timedelta(hours=24)
_CAS_RETRIES = 5


@dataclass
class VerifyResult:
    ok: bool
    reason: str | None = None
    user: User | None = None


@dataclass
class ResetRequest:
    """Raw reset token for the notifier. Never returned over the API."""

    user: User
    token: str


# ---------------------------------------------------------------------------
# Pure policy functions
# ---------------------------------------------------------------------------


def is_account_locked(user: User, now: datetime) -> bool:
    return user.locked_until is not None and now < user.locked_until


def lockout_duration(failed_attempts: int, threshold: int, minutes: int) -> timedelta | None:
    """Return how long to lock after this many consecutive failures, or None."""
    if failed_attempts >= 3 * threshold:
        return _LONG_LOCKOUT
    if failed_attempts >= 2 * threshold:
        return timedelta(minutes=4 * minutes)
    if failed_attempts >= threshold:
        return timedelta(minutes=minutes)
    return None


def validate_password(password: str, policy: PasswordPolicy) -> list[str]:
    """Return human-readable policy violations; an empty list means acceptable."""
    errors: list[str] = []
    if len(password) < policy.min_length:
        errors.append(f"Password must be at least {policy.min_length} characters.")
    if len(password) > MAX_PASSWORD_LENGTH:
        errors.append(f"Password must be at most {MAX_PASSWORD_LENGTH} characters.")
    if policy.require_uppercase and not re.search(r"[A-Z]", password):
        errors.append("Password must contain an uppercase letter.")
    if policy.require_lowercase and not re.search(r"[a-z]", password):
        errors.append("Password must contain a lowercase letter.")
    if policy.require_numbers and not re.search(r"\d", password):
        errors.append("Password must contain a number.")
    if policy.require_special_chars and not _SPECIAL_CHARS.search(password):
        errors.append("Password must contain a special character.")
    return errors


def is_password_expired(user: User, policy: PasswordPolicy, now: datetime) -> bool:
    if user.needs_reset_password:
        return True
    if policy.max_age_days is None or user.password_changed_at is None:
        return False
    return now - user.password_changed_at > timedelta(days=policy.max_age_days)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class CredentialStore:
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

    def lockout_policy(self, company: Company | None) -> tuple[int, int]:
        threshold = (company.lockout_threshold if company else None) or self.settings.lockout_threshold
        minutes = (company.lockout_minutes if company else None) or self.settings.lockout_minutes
        return threshold, minutes

    def policy_for(self, company_id: int) -> PasswordPolicy:
        company = self.store.get_company(company_id)
        return company.password_policy if company else PasswordPolicy()

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(
        self,
        email: str,
        password: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> VerifyResult:
        """Check an email/password pair and record the attempt."""
        email = email.strip().lower()
        now = self.clock()
        user = self.store.get_user_by_email(email)

        if user is None or user.password_hash is None:
            burn_password_check(password)
            self._record_failure_trail(email, None, "invalid_credentials", ip_address, user_agent)
            return VerifyResult(False, "invalid_credentials")

        if is_account_locked(user, now):
            self._record_failure_trail(email, user, "account_locked", ip_address, user_agent)
            return VerifyResult(False, "account_locked", user)

        if not user.is_active:
            self._record_failure_trail(email, user, "account_inactive", ip_address, user_agent)
            return VerifyResult(False, "account_inactive", user)

        if not verify_password(password, user.password_hash):
            self._register_failure(user, ip_address, user_agent)
            return VerifyResult(False, "invalid_credentials", user)

        with self.store.transaction() as conn:
            self.store.update_user(
                conn,
                user.id,
                failed_login_attempts=0,
                last_failed_login_at=None,
                locked_until=None,
                version=users.c.version + 1,
            )
            self.audit.record_attempt(
                email, success=True, user_id=user.id, ip_address=ip_address, user_agent=user_agent, conn=conn
            )
        return VerifyResult(True, None, user)

    def _record_failure_trail(
        self,
        email: str,
        user: User | None,
        reason: str,
        ip_address: str | None,
        user_agent: str | None,
    ) -> None:
        user_id = user.id if user else None
        with self.store.transaction() as conn:
            self.audit.record_attempt(
                email,
                success=False,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                failure_reason=reason,
                conn=conn,
            )
            self.audit.record_event(
                LoginEventType.LOGIN_FAILED,
                user_id=user_id,
                email=email,
                company_id=user.company_id if user else None,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"reason": reason},
                conn=conn,
            )

    def _register_failure(self, user: User, ip_address: str | None, user_agent: str | None) -> None:
        """Increment the failure counter with compare-and-set, locking if a tier is reached."""
        now = self.clock()
        for _ in range(_CAS_RETRIES):
            with self.store.transaction() as conn:
                current = self.store.fetch_user(conn, user.id)
                if current is None:
                    return
                company = self.store.fetch_company(conn, current.company_id)
                threshold, minutes = self.lockout_policy(company)

                attempts = current.failed_login_attempts
                if current.last_failed_login_at and now - current.last_failed_login_at > _COUNTER_RESET:
                    attempts = 0
                attempts += 1
                duration = lockout_duration(attempts, threshold, minutes)

                values = {
                    "failed_login_attempts": attempts,
                    "last_failed_login_at": to_iso(now),
                    "version": current.version + 1,
                }
                if duration is not None:
                    values["locked_until"] = to_iso(now + duration)
                result = conn.execute(
                    users.update().where(users.c.id == user.id, users.c.version == current.version).values(**values)
                )
                if result.rowcount == 0:
                    continue

                self.audit.record_attempt(
                    current.email,
                    success=False,
                    user_id=user.id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    failure_reason="invalid_credentials",
                    conn=conn,
                )
                if duration is not None:
                    self.audit.record_event(
                        LoginEventType.ACCOUNT_LOCKED,
                        user_id=user.id,
                        email=current.email,
                        company_id=current.company_id,
                        ip_address=ip_address,
                        user_agent=user_agent,
                        metadata={"attempts": attempts, "lockout_minutes": int(duration.total_seconds() // 60)},
                        conn=conn,
                    )
                self.audit.record_event(
                    LoginEventType.LOGIN_FAILED,
                    user_id=user.id,
                    email=current.email,
                    company_id=current.company_id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    metadata={"reason": "invalid_credentials", "attempts": attempts},
                    conn=conn,
                )
                return
        logger.warning("Failure counter for user %s not updated after %d attempts", user.id, _CAS_RETRIES)
        raise StoreUnavailable()

    # ------------------------------------------------------------------
    # Password changes
    # ------------------------------------------------------------------

    def prepare_password(self, password: str, policy: PasswordPolicy) -> str:
        """Validate a brand-new password against policy and return its hash."""
        errors = validate_password(password, policy)
        if errors:
            raise PasswordPolicyViolation(details={"errors": errors})
        return hash_password(password)

    def change_password(
        self,
        user_id: int,
        new_password: str,
        *,
        current_password: str | None = None,
        ip_address: str | None = None,
    ) -> None:
        """Set a new password after policy and history checks.

        When current_password is given it must match. Hashing runs outside
        the write transaction; the final update is a compare-and-set on
        users.version so a concurrent change is reported instead of lost.
        """
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFound("User not found.")
        if current_password is not None and (
            user.password_hash is None or not verify_password(current_password, user.password_hash)
        ):
            raise InvalidCredentials("Current password is incorrect.")

        policy = self.policy_for(user.company_id)
        new_hash = self._checked_hash(user, new_password, policy)
        now = self.clock()

        with self.store.transaction() as conn:
            applied = self._apply_password(conn, user, new_hash, policy.history_count, now, expect_version=user.version)
            if not applied:
                raise Conflict("Password was changed concurrently. Please retry.")
            self.audit.record_event(
                LoginEventType.PASSWORD_CHANGED,
                user_id=user.id,
                email=user.email,
                company_id=user.company_id,
                ip_address=ip_address,
                conn=conn,
            )
        logger.info("Password changed for user %s", user.id)

    def _checked_hash(self, user: User, new_password: str, policy: PasswordPolicy) -> str:
        errors = validate_password(new_password, policy)
        if errors:
            raise PasswordPolicyViolation(details={"errors": errors})
        if self._is_reused(user, new_password, policy.history_count):
            raise PasswordPolicyViolation(
                f"Password cannot match your current password or your last {policy.history_count} passwords.",
                details={"errors": ["password_reused"]},
            )
        return hash_password(new_password)

    def _is_reused(self, user: User, candidate: str, history_count: int) -> bool:
        hashes = [user.password_hash] if user.password_hash else []
        if history_count > 0:
            stmt = (
                select(password_history.c.password_hash)
                .where(password_history.c.user_id == user.id)
                .order_by(password_history.c.id.desc())
                .limit(history_count)
            )
            hashes.extend(self.store.read(lambda conn: [r.password_hash for r in conn.execute(stmt)]))
        return any(verify_password(candidate, h) for h in hashes)

    def _apply_password(
        self,
        conn: Connection,
        user: User,
        new_hash: str,
        history_count: int,
        now: datetime,
        *,
        expect_version: int | None = None,
        extra: dict | None = None,
    ) -> bool:
        stmt = users.update().where(users.c.id == user.id)
        if expect_version is not None:
            stmt = stmt.where(users.c.version == expect_version)
        values = {
            "password_hash": new_hash,
            "password_changed_at": to_iso(now),
            "needs_reset_password": False,
            "failed_login_attempts": 0,
            "last_failed_login_at": None,
            "locked_until": None,
            "version": users.c.version + 1,
        }
        values.update(extra or {})
        if conn.execute(stmt.values(**values)).rowcount == 0:
            return False

        if user.password_hash and history_count > 0:
            conn.execute(
                password_history.insert().values(
                    user_id=user.id, password_hash=user.password_hash, created_at=to_iso(now)
                )
            )
        keep = [
            r.id
            for r in conn.execute(
                select(password_history.c.id)
                .where(password_history.c.user_id == user.id)
                .order_by(password_history.c.id.desc())
                .limit(history_count)
            )
        ]
        conn.execute(
            password_history.delete().where(password_history.c.user_id == user.id, password_history.c.id.not_in(keep))
        )
        return True

    # ------------------------------------------------------------------
    # Forgot / reset password
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str, *, ip_address: str | None = None) -> ResetRequest | None:
        """Issue a reset token if the email belongs to an active user.

        The caller must answer the HTTP request identically whether or not
        this returns None. The token goes out through the notifier only.
        """
        user = self.store.get_user_by_email(email)
        if user is None or not user.is_active:
            logger.info("Password reset requested for unknown or inactive account")
            return None
        raw = generate_token(nbytes=32)
        now = self.clock()
        with self.store.transaction() as conn:
            conn.execute(
                password_reset_tokens.insert().values(
                    user_id=user.id,
                    token_hash=hash_token(raw),
                    expires_at=to_iso(now + timedelta(minutes=self.settings.password_reset_ttl_minutes)),
                    created_at=to_iso(now),
                )
            )
            self.audit.record_event(
                LoginEventType.PASSWORD_RESET_REQUESTED,
                user_id=user.id,
                email=user.email,
                company_id=user.company_id,
                ip_address=ip_address,
                conn=conn,
            )
        return ResetRequest(user=user, token=raw)

    def reset_password(self, raw_token: str, new_password: str, *, ip_address: str | None = None) -> User:
        """Consume a reset token, set the password and log the user out everywhere."""
        now = self.clock()
        token = self._peek_user_token(password_reset_tokens, raw_token, now)
        user = self.store.get_user(token.user_id)
        if user is None or not user.is_active:
            raise ValidationFailed("Invalid or expired reset token.")
        policy = self.policy_for(user.company_id)
        new_hash = self._checked_hash(user, new_password, policy)

        with self.store.transaction() as conn:
            self._consume_user_token(conn, password_reset_tokens, token, now)
            self._apply_password(
                conn, user, new_hash, policy.history_count, now, extra={"force_logout_at": to_iso(now)}
            )
            self.audit.record_event(
                LoginEventType.PASSWORD_RESET_COMPLETED,
                user_id=user.id,
                email=user.email,
                company_id=user.company_id,
                ip_address=ip_address,
                conn=conn,
            )
        logger.info("Password reset completed for user %s", user.id)
        return user

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def issue_email_verification(self, user_id: int) -> str:
        raw = generate_token(nbytes=32)
        now = self.clock()
        with self.store.transaction() as conn:
            conn.execute(
                email_verification_tokens.insert().values(
                    user_id=user_id,
                    token_hash=hash_token(raw),
                    expires_at=to_iso(now + timedelta(hours=self.settings.email_verification_ttl_hours)),
                    created_at=to_iso(now),
                )
            )
        return raw

    def verify_email(self, raw_token: str) -> User:
        now = self.clock()
        token = self._peek_user_token(email_verification_tokens, raw_token, now)
        with self.store.transaction() as conn:
            self._consume_user_token(conn, email_verification_tokens, token, now)
            self.store.update_user(conn, token.user_id, email_verified=True)
            user = self.store.fetch_user(conn, token.user_id)
            self.audit.record_event(
                LoginEventType.EMAIL_VERIFIED, user_id=token.user_id, email=user.email if user else None, conn=conn
            )
        return user

    # ------------------------------------------------------------------
    # Single-use token helpers
    # ------------------------------------------------------------------

    def _peek_user_token(self, table, raw_token: str, now: datetime) -> UserToken:
        stmt = select(table).where(table.c.token_hash == hash_token(raw_token))
        row = self.store.read(lambda conn: conn.execute(stmt).fetchone())
        if row is None:
            raise ValidationFailed("Invalid or expired token.")
        token = _row_to_user_token(row)
        if token.used_at is not None:
            raise TokenAlreadyUsed()
        if now > token.expires_at:
            raise TokenExpired()
        return token

    def _consume_user_token(self, conn: Connection, table, token: UserToken, now: datetime) -> None:
        result = conn.execute(
            table.update().where(table.c.id == token.id, table.c.used_at.is_(None)).values(used_at=to_iso(now))
        )
        if result.rowcount == 0:
            raise TokenAlreadyUsed()
