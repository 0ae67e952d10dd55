"""
auth/login.py -- Login orchestration.

LoginFlow strings the engine components together in a fixed order:

  1. CredentialStore.verify     locked / inactive / wrong password
  2. password expiry            needs_reset_password or policy max_age_days
  3. email verification         only when require_email_verification is on
  4. company resolution         most recently used active membership, or the
                                internal user's home / first allowed company
  5. MFA decision               user.mfa_enabled or company.mfa_required,
                                skipped for a live trusted-device token
  6. SessionManager.bind_login  session-limit policy, sid rotation
  7. bookkeeping                last_login_at, LOGIN_SUCCESS event

Each failing step raises its own AuthError; nothing after it runs. A session
is only ever bound once every check before step 6 has passed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from auth.access import MultiCompanyAccessController
from auth.audit import AuditLog
from auth.credentials import CredentialStore, is_password_expired
from auth.errors import (
    AccountInactive,
    AccountLocked,
    EmailNotVerified,
    InvalidCredentials,
    NoActiveMembership,
    PasswordExpired,
)
from auth.mfa import MfaEngine
from auth.models import Company, LoginEventType, Session, SessionSource, User
from auth.sessions import SessionManager
from core.config import Settings, get_settings
from core.timeutil import Clock, to_iso, utc_now

logger = logging.getLogger("tenantgate.auth.login")

_FAILURES = {
    "account_locked": AccountLocked,
    "account_inactive": AccountInactive,
}


@dataclass
class LoginResult:
    session: Session
    user: User
    company: Company
    requires_mfa: bool
    can_switch_companies: bool
    evicted: list[str] = field(default_factory=list)


class LoginFlow:
    def __init__(
        self,
        audit: AuditLog,
        credentials: CredentialStore,
        sessions: SessionManager,
        mfa: MfaEngine,
        access: MultiCompanyAccessController,
        clock: Clock = utc_now,
        settings: Settings | None = None,
    ) -> None:
        self.audit = audit
        self.credentials = credentials
        self.sessions = sessions
        self.mfa = mfa
        self.access = access
        self.clock = clock
        self.settings = settings or get_settings()
        self.store = credentials.store

    def login(
        self,
        email: str,
        password: str,
        *,
        sid: str | None = None,
        source: str = SessionSource.WEB.value,
        remember_me: bool = False,
        device_token: str | None = None,
        revoke_session_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> LoginResult:
        result = self.credentials.verify(email, password, ip_address=ip_address, user_agent=user_agent)
        if not result.ok:
            raise _FAILURES.get(result.reason, InvalidCredentials)()
        user = result.user
        now = self.clock()

        if is_password_expired(user, self.credentials.policy_for(user.company_id), now):
            logger.info("Login refused for user %s: password expired", user.id)
            raise PasswordExpired()

        if self.settings.require_email_verification and not user.email_verified:
            raise EmailNotVerified()

        company = self.store.read(lambda conn: self.access.default_company_in(conn, user))
        if company is None:
            logger.info("Login refused for user %s: no active membership", user.id)
            raise NoActiveMembership("No active company membership.")

        requires_mfa = user.mfa_enabled or company.mfa_required
        if requires_mfa and self.mfa.is_trusted_device(user.id, device_token, ip_address=ip_address):
            requires_mfa = False

        bound = self.sessions.bind_login(
            sid,
            user.id,
            company.id,
            source=source,
            remember_me=remember_me,
            mfa_verified=not requires_mfa,
            revoke_session_id=revoke_session_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

        with self.store.transaction() as conn:
            self.store.update_user(conn, user.id, last_login_at=to_iso(now))
            self.audit.record_event(
                LoginEventType.LOGIN_SUCCESS,
                user_id=user.id,
                email=user.email,
                company_id=company.id,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"source": source, "requires_mfa": requires_mfa},
                conn=conn,
            )
        logger.info("User %s logged in to company %s (mfa pending: %s)", user.id, company.id, requires_mfa)

        return LoginResult(
            session=bound.session,
            user=user,
            company=company,
            requires_mfa=requires_mfa,
            can_switch_companies=self.access.can_switch_companies(user),
            evicted=bound.evicted,
        )
