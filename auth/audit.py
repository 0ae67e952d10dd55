"""
auth/audit.py -- Append-only recorder of security events.

Two trails:
  login_attempts  one row per credential check, keyed by email + IP. The
                  email may not belong to any user.
  login_events    one row per security event (login, lockout, MFA, invite,
                  token issuance, ...), keyed by event type.

Every other component calls in here; AuditLog depends on nothing but the
store. There is deliberately no update or delete method.

Writes accept an optional connection. Passing the caller's transaction
connection makes the audit row commit or roll back together with the change
it describes. Without one, the row is written in its own transaction.

Each event is also emitted on the "tenantgate.audit" logger. Metadata is
logged as given, so callers must never put secrets in it.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import select
from sqlalchemy.engine import Connection

from auth.models import LoginAttempt, LoginEvent, LoginEventType
from auth.store import AuthStore, _row_to_login_attempt, _row_to_login_event, login_attempts, login_events
from core.timeutil import Clock, to_iso, utc_now

logger = logging.getLogger("tenantgate.audit")

_WARNING_EVENTS = {
    LoginEventType.ACCOUNT_LOCKED,
    LoginEventType.TOKEN_REUSE_DETECTED,
    LoginEventType.FORCE_LOGOUT,
}


class AuditLog:
    def __init__(self, store: AuthStore, clock: Clock = utc_now) -> None:
        self.store = store
        self.clock = clock

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record_event(
        self,
        event_type: LoginEventType,
        *,
        user_id: int | None = None,
        email: str | None = None,
        company_id: int | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        metadata: dict | None = None,
        conn: Connection | None = None,
    ) -> None:
        values = dict(
            event_type=LoginEventType(event_type).value,
            user_id=user_id,
            email=email,
            company_id=company_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=json.dumps(metadata or {}, default=str),
            created_at=to_iso(self.clock()),
        )
        self._insert(login_events, values, conn)
        level = logging.WARNING if event_type in _WARNING_EVENTS else logging.INFO
        logger.log(
            level,
            "%s user_id=%s company_id=%s ip=%s %s",
            values["event_type"],
            user_id,
            company_id,
            ip_address,
            metadata or "",
        )

    def record_attempt(
        self,
        email: str,
        *,
        success: bool,
        user_id: int | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        failure_reason: str | None = None,
        conn: Connection | None = None,
    ) -> None:
        values = dict(
            email=email.strip().lower(),
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            success=success,
            failure_reason=failure_reason,
            created_at=to_iso(self.clock()),
        )
        self._insert(login_attempts, values, conn)

    def _insert(self, table, values: dict, conn: Connection | None) -> None:
        if conn is not None:
            conn.execute(table.insert().values(**values))
            return
        with self.store.transaction() as own:
            own.execute(table.insert().values(**values))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_events(
        self,
        *,
        user_id: int | None = None,
        company_id: int | None = None,
        event_type: LoginEventType | None = None,
        limit: int = 100,
    ) -> list[LoginEvent]:
        """Return events newest first, optionally filtered."""
        stmt = select(login_events)
        if user_id is not None:
            stmt = stmt.where(login_events.c.user_id == user_id)
        if company_id is not None:
            stmt = stmt.where(login_events.c.company_id == company_id)
        if event_type is not None:
            stmt = stmt.where(login_events.c.event_type == LoginEventType(event_type).value)
        stmt = stmt.order_by(login_events.c.id.desc()).limit(limit)
        return self.store.read(lambda conn: [_row_to_login_event(r) for r in conn.execute(stmt)])

    def list_attempts(self, email: str, *, limit: int = 100) -> list[LoginAttempt]:
        stmt = (
            select(login_attempts)
            .where(login_attempts.c.email == email.strip().lower())
            .order_by(login_attempts.c.id.desc())
            .limit(limit)
        )
        return self.store.read(lambda conn: [_row_to_login_attempt(r) for r in conn.execute(stmt)])
