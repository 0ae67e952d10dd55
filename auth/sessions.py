"""
auth/sessions.py -- Server-side session lifecycle and concurrency limits.

State machine:
    PENDING --bind_login--> ACTIVE --(timeout | force logout)--> EXPIRED
                              |
                              +--(logout | eviction | revoke)--> REVOKED

  create()      writes a PENDING row before credentials are checked. The
                login route calls ensure_pending() first, so a row exists
                whatever the outcome.
  bind_login()  fills user/company/active company, applies the session
                limit, sets both expirations and rotates the sid [H1].
  touch()       slides expires_at forward on activity, never past
                absolute_expires_at.

Expiry is a pure function of a snapshot (is_session_expired): past either
expiration, or created before users.force_logout_at. Rows are never deleted
to expire them; purge_expired() only reclaims space long after the fact.

Session limit on bind_login: the user's other ACTIVE sessions with the same
source and login company are counted against
min(user.max_sessions, company.max_sessions_per_user). At capacity the
company's strategy decides:
  BLOCK_NEW      SessionLimitExceeded, nothing written
  REVOKE_OLDEST  revoke smallest created_at until there is room
  REVOKE_LRU     revoke smallest last_activity_at until there is room
  PROMPT_USER    SessionSelectionRequired listing the candidates; the
                 caller retries with revoke_session_id
The count, the eviction and the bind happen in one transaction with the
user row locked, so two simultaneous logins cannot both squeeze in.

Security:
  [H1] Session fixation: the pre-login sid is replaced by a fresh random sid
       at bind time. A sid planted in a victim's browser before login is
       useless afterwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import or_, select
from sqlalchemy.engine import Connection

from auth.audit import AuditLog
from auth.errors import (
    CompanyNotFound,
    NotFound,
    PermissionDenied,
    SessionLimitExceeded,
    SessionSelectionRequired,
    Unauthenticated,
    ValidationFailed,
)
from auth.models import (
    Company,
    LoginEventType,
    Session,
    SessionLimitStrategy,
    SessionSource,
    SessionState,
    User,
)
from auth.store import AuthStore, _row_to_session, sessions
from auth.tokens import generate_token
from core.config import Settings, get_settings
from core.timeutil import Clock, to_iso, utc_now

logger = logging.getLogger("tenantgate.auth.sessions")


@dataclass
class BindResult:
    session: Session
    evicted: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Pure functions over snapshots
# ---------------------------------------------------------------------------


def is_session_expired(session: Session, user: User | None, now: datetime) -> bool:
    if now > session.expires_at or now > session.absolute_expires_at:
        return True
    if user is not None and user.force_logout_at is not None and user.force_logout_at > session.created_at:
        return True
    return False


def session_state(session: Session, user: User | None, now: datetime) -> SessionState:
    if session.revoked_at is not None:
        return SessionState.REVOKED
    if session.user_id is None:
        return SessionState.EXPIRED if now > session.expires_at else SessionState.PENDING
    if is_session_expired(session, user, now):
        return SessionState.EXPIRED
    return SessionState.ACTIVE


def slide_expiry(session: Session, now: datetime, window: timedelta) -> datetime:
    """New sliding expiry: now + window, capped at the absolute ceiling."""
    return min(now + window, session.absolute_expires_at)


def session_summary(session: Session) -> dict:
    """Public view of a session for PROMPT_USER payloads and session lists."""
    return {
        "sid": session.sid,
        "source": session.source,
        "ip_address": session.ip_address,
        "user_agent": session.user_agent,
        "created_at": to_iso(session.created_at),
        "last_activity_at": to_iso(session.last_activity_at),
    }


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class SessionManager:
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

    def sliding_window(self, remember_me: bool) -> timedelta:
        if remember_me:
            return timedelta(days=self.settings.session_remember_me_days)
        return timedelta(minutes=self.settings.session_sliding_minutes)

    def session_limit(self, user: User, company: Company) -> int:
        default = self.settings.default_max_sessions
        return max(1, min(user.max_sessions or default, company.max_sessions_per_user or default))

    # ------------------------------------------------------------------
    # Creation and binding
    # ------------------------------------------------------------------

    def create(
        self,
        *,
        source: str = SessionSource.WEB.value,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Session:
        """Write a PENDING row. It expires after one sliding window if never bound."""
        with self.store.transaction() as conn:
            return self._insert_pending(conn, source, ip_address, user_agent)

    def ensure_pending(
        self,
        sid: str | None,
        *,
        source: str = SessionSource.WEB.value,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Session:
        """Return the PENDING session named by sid, or write a new one."""
        with self.store.transaction() as conn:
            current = self.store.fetch_session(conn, sid, for_update=True) if sid else None
            if current is not None and session_state(current, None, self.clock()) == SessionState.PENDING:
                return current
            return self._insert_pending(conn, source, ip_address, user_agent)

    def _insert_pending(
        self, conn: Connection, source: str, ip_address: str | None, user_agent: str | None
    ) -> Session:
        now = self.clock()
        expires = now + self.sliding_window(False)
        session = Session(
            sid=generate_token(nbytes=32),
            source=SessionSource(source).value,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
            last_activity_at=now,
            expires_at=expires,
            absolute_expires_at=expires,
        )
        conn.execute(
            sessions.insert().values(
                sid=session.sid,
                source=session.source,
                ip_address=ip_address,
                user_agent=user_agent,
                mfa_verified=False,
                remember_me=False,
                created_at=to_iso(now),
                last_activity_at=to_iso(now),
                expires_at=to_iso(expires),
                absolute_expires_at=to_iso(expires),
            )
        )
        return session

    def get(self, sid: str) -> Session | None:
        return self.store.read(lambda conn: self.store.fetch_session(conn, sid))

    def bind_login(
        self,
        sid: str | None,
        user_id: int,
        company_id: int,
        *,
        source: str | None = None,
        remember_me: bool = False,
        mfa_verified: bool = True,
        revoke_session_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> BindResult:
        """Attach a user to a PENDING session under the session-limit policy.

        If sid is missing or no longer PENDING a fresh PENDING row is created
        in the same transaction. Returns the bound session under its new sid.
        """
        now = self.clock()
        evicted: list[str] = []
        with self.store.transaction() as conn:
            user = self.store.fetch_user(conn, user_id, for_update=True)
            if user is None:
                raise NotFound("User not found.")
            company = self.store.fetch_company(conn, company_id)
            if company is None:
                raise CompanyNotFound()

            pending = self.store.fetch_session(conn, sid, for_update=True) if sid else None
            if pending is None or session_state(pending, None, now) != SessionState.PENDING:
                pending = self._insert_pending(conn, source or SessionSource.WEB.value, ip_address, user_agent)
            elif source and pending.source != source:
                pending.source = SessionSource(source).value

            limit = self.session_limit(user, company)
            active = self._active_sessions(conn, user, company_id, pending.source, pending.sid, now)

            if revoke_session_id:
                chosen = next((s for s in active if s.sid == revoke_session_id), None)
                if chosen is not None:
                    self._revoke_in(conn, chosen, "user_selected", now)
                    active.remove(chosen)
                    evicted.append(chosen.sid)

            overflow = len(active) - (limit - 1)
            if overflow > 0:
                strategy = company.session_limit_strategy
                if strategy == SessionLimitStrategy.BLOCK_NEW:
                    raise SessionLimitExceeded(details={"max_sessions": limit})
                if strategy == SessionLimitStrategy.PROMPT_USER:
                    raise SessionSelectionRequired(
                        details={"max_sessions": limit, "sessions": [session_summary(s) for s in active]}
                    )
                if strategy == SessionLimitStrategy.REVOKE_LRU:
                    active.sort(key=lambda s: (s.last_activity_at, s.created_at))
                else:
                    active.sort(key=lambda s: s.created_at)
                for victim in active[:overflow]:
                    self._revoke_in(conn, victim, "session_limit", now)
                    evicted.append(victim.sid)
                logger.warning(
                    "Session limit (%d) reached for user %s; evicted %d session(s) via %s",
                    limit,
                    user.id,
                    overflow,
                    strategy.value,
                )

            new_sid = generate_token(nbytes=32)
            absolute = now + timedelta(days=self.settings.session_absolute_days)
            expires = min(now + self.sliding_window(remember_me), absolute)
            conn.execute(
                sessions.update()
                .where(sessions.c.sid == pending.sid)
                .values(
                    sid=new_sid,
                    user_id=user.id,
                    company_id=company_id,
                    active_company_id=company_id,
                    source=pending.source,
                    mfa_verified=mfa_verified,
                    remember_me=remember_me,
                    ip_address=ip_address or pending.ip_address,
                    user_agent=user_agent or pending.user_agent,
                    created_at=to_iso(now),
                    last_activity_at=to_iso(now),
                    expires_at=to_iso(expires),
                    absolute_expires_at=to_iso(absolute),
                )
            )
            for victim_sid in evicted:
                self.audit.record_event(
                    LoginEventType.SESSION_REVOKED,
                    user_id=user.id,
                    company_id=company_id,
                    ip_address=ip_address,
                    metadata={"reason": "session_limit", "revoked_session": victim_sid[:8]},
                    conn=conn,
                )
            bound = self.store.fetch_session(conn, new_sid)
        return BindResult(session=bound, evicted=evicted)

    def _active_sessions(
        self,
        conn: Connection,
        user: User,
        company_id: int,
        source: str,
        exclude_sid: str,
        now: datetime,
    ) -> list[Session]:
        rows = conn.execute(
            select(sessions).where(
                sessions.c.user_id == user.id,
                sessions.c.company_id == company_id,
                sessions.c.source == source,
                sessions.c.sid != exclude_sid,
                sessions.c.revoked_at.is_(None),
                sessions.c.expires_at > to_iso(now),
            )
        )
        candidates = [_row_to_session(r) for r in rows]
        return [s for s in candidates if session_state(s, user, now) == SessionState.ACTIVE]

    # ------------------------------------------------------------------
    # Per-request
    # ------------------------------------------------------------------

    def touch(self, sid: str) -> Session | None:
        """Slide an ACTIVE session's expiry. Returns None for anything not ACTIVE."""
        resolved = self.resolve(sid)
        return resolved[0] if resolved else None

    def resolve(self, sid: str) -> tuple[Session, User] | None:
        """Return (session, acting user) for an ACTIVE session, sliding its expiry."""
        now = self.clock()
        with self.store.transaction() as conn:
            session = self.store.fetch_session(conn, sid, for_update=True)
            if session is None or session.user_id is None:
                return None
            user = self.store.fetch_user(conn, session.user_id)
            if user is None or not user.is_active:
                return None
            if session_state(session, user, now) != SessionState.ACTIVE:
                return None
            session.expires_at = slide_expiry(session, now, self.sliding_window(session.remember_me))
            session.last_activity_at = now
            conn.execute(
                sessions.update()
                .where(sessions.c.sid == sid)
                .values(expires_at=to_iso(session.expires_at), last_activity_at=to_iso(now))
            )
        return session, user

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def _revoke_in(self, conn: Connection, session: Session, reason: str, now: datetime) -> bool:
        result = conn.execute(
            sessions.update()
            .where(sessions.c.sid == session.sid, sessions.c.revoked_at.is_(None))
            .values(revoked_at=to_iso(now), revoked_reason=reason)
        )
        return result.rowcount > 0

    def revoke(self, sid: str, reason: str = "revoked", *, user_id: int | None = None) -> bool:
        """Revoke one session. When user_id is given the session must belong to it [IDOR guard]."""
        now = self.clock()
        stmt = sessions.update().where(sessions.c.sid == sid, sessions.c.revoked_at.is_(None))
        if user_id is not None:
            stmt = stmt.where(or_(sessions.c.user_id == user_id, sessions.c.source_user_id == user_id))
        with self.store.transaction() as conn:
            result = conn.execute(stmt.values(revoked_at=to_iso(now), revoked_reason=reason))
            if result.rowcount and user_id is not None:
                self.audit.record_event(
                    LoginEventType.SESSION_REVOKED, user_id=user_id, metadata={"reason": reason}, conn=conn
                )
        return result.rowcount > 0

    def logout(self, sid: str, *, ip_address: str | None = None) -> None:
        session = self.get(sid)
        if session is None:
            return
        now = self.clock()
        with self.store.transaction() as conn:
            if self._revoke_in(conn, session, "logout", now) and session.user_id is not None:
                self.audit.record_event(
                    LoginEventType.LOGOUT,
                    user_id=session.user_id,
                    company_id=session.active_company_id,
                    ip_address=ip_address,
                    conn=conn,
                )

    def revoke_all(self, user_id: int, *, except_sid: str | None = None, reason: str = "logout_all") -> int:
        now = self.clock()
        stmt = sessions.update().where(sessions.c.user_id == user_id, sessions.c.revoked_at.is_(None))
        if except_sid is not None:
            stmt = stmt.where(sessions.c.sid != except_sid)
        with self.store.transaction() as conn:
            count = conn.execute(stmt.values(revoked_at=to_iso(now), revoked_reason=reason)).rowcount
            if count:
                self.audit.record_event(
                    LoginEventType.SESSION_REVOKED,
                    user_id=user_id,
                    metadata={"reason": reason, "count": count},
                    conn=conn,
                )
        return count

    def force_logout(self, user_id: int, *, actor_id: int | None = None) -> None:
        """Invalidate every session created before now without touching the rows."""
        now = self.clock()
        with self.store.transaction() as conn:
            if not self.store.update_user(conn, user_id, force_logout_at=now):
                raise NotFound("User not found.")
            self.audit.record_event(
                LoginEventType.FORCE_LOGOUT, user_id=user_id, metadata={"actor_id": actor_id}, conn=conn
            )

    def list_active(self, user_id: int) -> list[Session]:
        """ACTIVE sessions of a user, most recently used first."""
        now = self.clock()

        def _load(conn: Connection) -> list[Session]:
            user = self.store.fetch_user(conn, user_id)
            rows = conn.execute(
                select(sessions)
                .where(sessions.c.user_id == user_id, sessions.c.revoked_at.is_(None))
                .order_by(sessions.c.last_activity_at.desc())
            )
            return [s for s in map(_row_to_session, rows) if session_state(s, user, now) == SessionState.ACTIVE]

        return self.store.read(_load)

    def purge_expired(self, grace: timedelta = timedelta(days=7)) -> int:
        """Delete rows whose absolute expiry passed more than `grace` ago."""
        cutoff = to_iso(self.clock() - grace)
        with self.store.transaction() as conn:
            count = conn.execute(sessions.delete().where(sessions.c.absolute_expires_at < cutoff)).rowcount
        if count:
            logger.info("Purged %d expired session(s)", count)
        return count

    # ------------------------------------------------------------------
    # Impersonation
    # ------------------------------------------------------------------

    def start_impersonation(self, sid: str, actor: User, target_user_id: int) -> Session:
        """Make `actor`'s session act as another user, remembering the origin.

        The caller must already have checked that actor holds platform:admin.
        """
        now = self.clock()
        with self.store.transaction() as conn:
            session = self.store.fetch_session(conn, sid, for_update=True)
            if session is None or session_state(session, actor, now) != SessionState.ACTIVE:
                raise Unauthenticated()
            if session.user_id != actor.id or session.source_user_id is not None:
                raise ValidationFailed("Session is already impersonating another user.")
            target = self.store.fetch_user(conn, target_user_id)
            if target is None or not target.is_active:
                raise NotFound("User not found.")
            if target.is_internal:
                raise PermissionDenied("Internal users cannot be impersonated.")
            conn.execute(
                sessions.update()
                .where(sessions.c.sid == sid)
                .values(
                    user_id=target.id,
                    source_user_id=actor.id,
                    company_id=target.company_id,
                    active_company_id=target.company_id,
                )
            )
            self.audit.record_event(
                LoginEventType.IMPERSONATION_STARTED,
                user_id=actor.id,
                company_id=target.company_id,
                metadata={"target_user_id": target.id},
                conn=conn,
            )
            return self.store.fetch_session(conn, sid)

    def end_impersonation(self, sid: str) -> Session:
        with self.store.transaction() as conn:
            session = self.store.fetch_session(conn, sid, for_update=True)
            if session is None or session.source_user_id is None:
                raise ValidationFailed("Session is not impersonating anyone.")
            origin = self.store.fetch_user(conn, session.source_user_id)
            if origin is None:
                raise NotFound("User not found.")
            conn.execute(
                sessions.update()
                .where(sessions.c.sid == sid)
                .values(
                    user_id=origin.id,
                    source_user_id=None,
                    company_id=origin.company_id,
                    active_company_id=origin.company_id,
                )
            )
            self.audit.record_event(
                LoginEventType.IMPERSONATION_ENDED,
                user_id=origin.id,
                metadata={"target_user_id": session.user_id},
                conn=conn,
            )
            return self.store.fetch_session(conn, sid)
