"""
auth/access.py -- Which companies a user may act in, and switching between them.

Access scope (AccessScope = Unrestricted | RestrictedTo):
  company user   RestrictedTo(companies with an ACTIVE user_companies row)
  internal user  Unrestricted while the user has zero internal_user_companies
                 rows; RestrictedTo(exactly those rows) as soon as one exists

The internal-user rule is a policy inversion (absence grants). Every caller
goes through access_scope() so no call site infers it from an empty list.

switch_company() runs in one transaction: lock the session, check access,
then check the company exists, then write. Access is checked before existence
so a 404 never tells a caller that a company it cannot enter exists.

Membership mutations bump users.permissions_version in the same transaction,
which invalidates cached permission sets (see auth/permissions.py).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from auth.audit import AuditLog
from auth.errors import (
    AlreadyMember,
    CompanyNotFound,
    Conflict,
    NoActiveMembership,
    NotFound,
    Unauthenticated,
    ValidationFailed,
)
from auth.models import (
    AccessScope,
    Company,
    InternalUserCompany,
    LoginEventType,
    RestrictedTo,
    Unrestricted,
    User,
)
from auth.permissions import PermissionResolver
from auth.store import (
    AuthStore,
    _row_to_company,
    _row_to_internal_user_company,
    companies,
    internal_user_companies,
    sessions,
    user_companies,
)
from core.timeutil import Clock, from_iso, to_iso, utc_now

logger = logging.getLogger("tenantgate.auth.access")

MAX_PAGE_SIZE = 100
RECENT_COUNT = 5


@dataclass
class CompanySummary:
    id: int
    name: str
    is_pinned: bool = False
    last_accessed_at: datetime | None = None


@dataclass
class CompanyListing:
    pinned: list[CompanySummary] = field(default_factory=list)
    recent: list[CompanySummary] = field(default_factory=list)
    results: list[CompanySummary] = field(default_factory=list)
    total: int = 0
    has_more: bool = False


@dataclass
class InternalGrants:
    has_restrictions: bool
    companies: list[CompanySummary] = field(default_factory=list)


def _name_matches(search: str):
    """Case-insensitive substring match; % and _ in search are literal."""
    escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return companies.c.name.ilike(f"%{escaped}%", escape="\\")


class MultiCompanyAccessController:
    def __init__(
        self,
        store: AuthStore,
        audit: AuditLog,
        permissions: PermissionResolver,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.audit = audit
        self.permissions = permissions
        self.clock = clock

    # ------------------------------------------------------------------
    # Scope
    # ------------------------------------------------------------------

    def access_scope_in(self, conn: Connection, user: User) -> AccessScope:
        if user.is_internal:
            ids = {
                r.company_id
                for r in conn.execute(
                    select(internal_user_companies.c.company_id).where(internal_user_companies.c.user_id == user.id)
                )
            }
            return RestrictedTo(frozenset(ids)) if ids else Unrestricted()
        ids = {
            r.company_id
            for r in conn.execute(
                select(user_companies.c.company_id).where(
                    user_companies.c.user_id == user.id, user_companies.c.is_active.is_(True)
                )
            )
        }
        return RestrictedTo(frozenset(ids))

    def access_scope(self, user: User) -> AccessScope:
        return self.store.read(lambda conn: self.access_scope_in(conn, user))

    def can_switch_companies(self, user: User) -> bool:
        scope = self.access_scope(user)
        if isinstance(scope, Unrestricted):
            return True
        return len(scope.company_ids) > 1

    def default_company_in(self, conn: Connection, user: User) -> Company | None:
        """Company a fresh login lands in.

        Company users: the most recently accessed active membership in an
        active company (home company first on ties). Internal users: their
        home company, or the first allowed company when restricted away
        from it.
        """
        if user.is_internal:
            scope = self.access_scope_in(conn, user)
            if scope.allows(user.company_id):
                return self.store.fetch_company(conn, user.company_id)
            row = conn.execute(
                select(companies)
                .select_from(
                    internal_user_companies.join(companies, companies.c.id == internal_user_companies.c.company_id)
                )
                .where(internal_user_companies.c.user_id == user.id, companies.c.is_active.is_(True))
                .order_by(internal_user_companies.c.last_accessed_at.desc(), companies.c.name)
            ).first()
            return _row_to_company(row) if row is not None else None

        rows = conn.execute(
            select(companies, user_companies.c.last_accessed_at.label("accessed"))
            .select_from(user_companies.join(companies, companies.c.id == user_companies.c.company_id))
            .where(
                user_companies.c.user_id == user.id,
                user_companies.c.is_active.is_(True),
                companies.c.is_active.is_(True),
            )
        ).all()
        if not rows:
            return None
        best = max(rows, key=lambda r: (r.accessed or "", r.id == user.company_id))
        return _row_to_company(best)

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list_companies(
        self,
        user: User,
        *,
        search: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> CompanyListing:
        limit = min(max(1, limit), MAX_PAGE_SIZE)
        offset = max(0, offset)

        def _load(conn: Connection) -> CompanyListing:
            scope = self.access_scope_in(conn, user)
            if isinstance(scope, Unrestricted):
                return self._list_all(conn, search, limit, offset)
            link = internal_user_companies if user.is_internal else user_companies
            return self._list_linked(conn, link, user.id, search, limit, offset)

        return self.store.read(_load)

    def _list_all(self, conn: Connection, search: str | None, limit: int, offset: int) -> CompanyListing:
        conds = [companies.c.is_active.is_(True)]
        if search:
            conds.append(_name_matches(search))
        total = self.store.count_rows(conn, companies, *conds)
        rows = conn.execute(
            select(companies.c.id, companies.c.name).where(*conds).order_by(companies.c.name).limit(limit).offset(offset)
        ).all()
        results = [CompanySummary(id=r.id, name=r.name) for r in rows]
        return CompanyListing(results=results, total=total, has_more=offset + len(results) < total)

    def _list_linked(
        self, conn: Connection, link, user_id: int, search: str | None, limit: int, offset: int
    ) -> CompanyListing:
        joined = link.join(companies, companies.c.id == link.c.company_id)
        conds = [link.c.user_id == user_id, companies.c.is_active.is_(True)]
        if link is user_companies:
            conds.append(user_companies.c.is_active.is_(True))
        base = select(companies.c.id, companies.c.name, link.c.is_pinned, link.c.last_accessed_at).select_from(joined)

        def summaries(stmt) -> list[CompanySummary]:
            return [
                CompanySummary(
                    id=r.id, name=r.name, is_pinned=bool(r.is_pinned), last_accessed_at=from_iso(r.last_accessed_at)
                )
                for r in conn.execute(stmt)
            ]

        recent = summaries(
            base.where(*conds, link.c.last_accessed_at.is_not(None))
            .order_by(link.c.last_accessed_at.desc())
            .limit(RECENT_COUNT)
        )
        pinned = summaries(base.where(*conds, link.c.is_pinned.is_(True)).order_by(companies.c.name))

        search_conds = list(conds)
        if search:
            search_conds.append(_name_matches(search))
        total = conn.execute(select(func.count()).select_from(joined).where(*search_conds)).scalar() or 0
        results = summaries(base.where(*search_conds).order_by(companies.c.name).limit(limit).offset(offset))
        return CompanyListing(
            pinned=pinned,
            recent=recent,
            results=results,
            total=total,
            has_more=offset + len(results) < total,
        )

    # ------------------------------------------------------------------
    # Active company
    # ------------------------------------------------------------------

    def switch_company(self, sid: str, company_id: int, *, ip_address: str | None = None) -> Company:
        now = to_iso(self.clock())
        with self.store.transaction() as conn:
            session = self.store.fetch_session(conn, sid, for_update=True)
            if session is None or session.user_id is None or session.revoked_at is not None:
                raise Unauthenticated()
            user = self.store.fetch_user(conn, session.user_id)
            if user is None:
                raise Unauthenticated()

            scope = self.access_scope_in(conn, user)
            if not scope.allows(company_id):
                raise NoActiveMembership()
            company = self.store.fetch_company(conn, company_id)
            if company is None or not company.is_active:
                raise CompanyNotFound()

            conn.execute(sessions.update().where(sessions.c.sid == sid).values(active_company_id=company_id))
            if user.is_internal:
                if isinstance(scope, RestrictedTo):
                    conn.execute(
                        internal_user_companies.update()
                        .where(
                            internal_user_companies.c.user_id == user.id,
                            internal_user_companies.c.company_id == company_id,
                        )
                        .values(last_accessed_at=now)
                    )
            else:
                stamped = conn.execute(
                    user_companies.update()
                    .where(
                        user_companies.c.user_id == user.id,
                        user_companies.c.company_id == company_id,
                        user_companies.c.is_active.is_(True),
                    )
                    .values(last_accessed_at=now)
                ).rowcount
                if stamped != 1:
                    raise NoActiveMembership()

            self.audit.record_event(
                LoginEventType.COMPANY_SWITCHED,
                user_id=user.id,
                company_id=company_id,
                ip_address=ip_address,
                metadata={"from_company_id": session.active_company_id},
                conn=conn,
            )
        logger.info("User %s switched to company %s", user.id, company_id)
        return company

    def active_company(self, sid: str) -> Company | None:
        def _load(conn: Connection) -> Company | None:
            session = self.store.fetch_session(conn, sid)
            if session is None or session.active_company_id is None:
                return None
            return self.store.fetch_company(conn, session.active_company_id)

        return self.store.read(_load)

    def set_pinned(self, user: User, company_id: int, is_pinned: bool) -> None:
        """Pin or unpin an existing membership. Pinning never grants access."""
        link = internal_user_companies if user.is_internal else user_companies
        stmt = link.update().where(link.c.user_id == user.id, link.c.company_id == company_id)
        if link is user_companies:
            stmt = stmt.where(user_companies.c.is_active.is_(True))
        with self.store.transaction() as conn:
            if conn.execute(stmt.values(is_pinned=is_pinned)).rowcount == 0:
                raise NotFound("Company membership not found.")

    # ------------------------------------------------------------------
    # Memberships
    # ------------------------------------------------------------------

    def add_membership(
        self,
        user_id: int,
        company_id: int,
        *,
        actor_id: int | None = None,
        assign_defaults: bool = True,
    ) -> None:
        with self.store.transaction() as conn:
            self.add_membership_in(conn, user_id, company_id, actor_id=actor_id, assign_defaults=assign_defaults)

    def add_membership_in(
        self,
        conn: Connection,
        user_id: int,
        company_id: int,
        *,
        actor_id: int | None = None,
        assign_defaults: bool = True,
    ) -> None:
        """Create or reactivate a membership inside the caller's transaction."""
        user = self.store.fetch_user(conn, user_id)
        if user is None:
            raise NotFound("User not found.")
        if user.is_internal:
            raise ValidationFailed("Internal users are granted access, not memberships.")
        if self.store.fetch_company(conn, company_id) is None:
            raise CompanyNotFound()
        now = to_iso(self.clock())
        existing = conn.execute(
            select(user_companies.c.is_active).where(
                user_companies.c.user_id == user_id, user_companies.c.company_id == company_id
            )
        ).first()
        if existing is not None and existing.is_active:
            raise AlreadyMember()
        if existing is not None:
            conn.execute(
                user_companies.update()
                .where(user_companies.c.user_id == user_id, user_companies.c.company_id == company_id)
                .values(is_active=True, deactivated_at=None, deactivated_by=None, joined_at=now)
            )
        else:
            try:
                conn.execute(user_companies.insert().values(user_id=user_id, company_id=company_id, joined_at=now))
            except IntegrityError as exc:
                raise AlreadyMember() from exc
        if assign_defaults:
            self.permissions.assign_default_roles(conn, user_id, company_id)
        self.store.bump_permissions_version(conn, user_id)
        logger.info("User %s joined company %s (by %s)", user_id, company_id, actor_id)

    def deactivate_membership(self, user_id: int, company_id: int, *, actor_id: int | None = None) -> int:
        """Deactivate one membership and revoke the user's sessions in that company.

        Exactly one row moves from active to inactive; a second concurrent
        call finds nothing to update and raises NotFound. Returns the number
        of sessions revoked.
        """
        now = to_iso(self.clock())
        with self.store.transaction() as conn:
            changed = conn.execute(
                user_companies.update()
                .where(
                    user_companies.c.user_id == user_id,
                    user_companies.c.company_id == company_id,
                    user_companies.c.is_active.is_(True),
                )
                .values(is_active=False, is_pinned=False, deactivated_at=now, deactivated_by=actor_id)
            ).rowcount
            if changed != 1:
                raise NotFound("Active membership not found.")
            revoked = conn.execute(
                sessions.update()
                .where(
                    sessions.c.user_id == user_id,
                    sessions.c.active_company_id == company_id,
                    sessions.c.revoked_at.is_(None),
                )
                .values(revoked_at=now, revoked_reason="membership_deactivated")
            ).rowcount
            self.store.bump_permissions_version(conn, user_id)
            self.audit.record_event(
                LoginEventType.MEMBERSHIP_DEACTIVATED,
                user_id=user_id,
                company_id=company_id,
                metadata={"actor_id": actor_id, "sessions_revoked": revoked},
                conn=conn,
            )
        return revoked

    def reactivate_membership(self, user_id: int, company_id: int, *, actor_id: int | None = None) -> None:
        with self.store.transaction() as conn:
            changed = conn.execute(
                user_companies.update()
                .where(
                    user_companies.c.user_id == user_id,
                    user_companies.c.company_id == company_id,
                    user_companies.c.is_active.is_(False),
                )
                .values(is_active=True, deactivated_at=None, deactivated_by=None)
            ).rowcount
            if changed != 1:
                raise NotFound("Inactive membership not found.")
            self.store.bump_permissions_version(conn, user_id)
        logger.info("Membership of user %s in company %s reactivated by %s", user_id, company_id, actor_id)

    def count_active_members(self, conn: Connection, company_id: int) -> int:
        return self.store.count_rows(
            conn,
            user_companies,
            user_companies.c.company_id == company_id,
            user_companies.c.is_active.is_(True),
        )

    def is_active_member_in(self, conn: Connection, user_id: int, company_id: int) -> bool:
        return (
            self.store.count_rows(
                conn,
                user_companies,
                user_companies.c.user_id == user_id,
                user_companies.c.company_id == company_id,
                user_companies.c.is_active.is_(True),
            )
            > 0
        )

    # ------------------------------------------------------------------
    # Internal-user grants
    # ------------------------------------------------------------------

    def list_internal_grants(self, user_id: int) -> InternalGrants:
        def _load(conn: Connection) -> InternalGrants:
            self._require_internal(conn, user_id)
            rows = conn.execute(
                select(companies.c.id, companies.c.name, internal_user_companies.c.is_pinned)
                .select_from(
                    internal_user_companies.join(companies, companies.c.id == internal_user_companies.c.company_id)
                )
                .where(internal_user_companies.c.user_id == user_id)
                .order_by(companies.c.name)
            ).all()
            return InternalGrants(
                has_restrictions=bool(rows),
                companies=[CompanySummary(id=r.id, name=r.name, is_pinned=bool(r.is_pinned)) for r in rows],
            )

        return self.store.read(_load)

    def grant_internal_access(
        self, user_id: int, company_id: int, *, actor_id: int | None = None
    ) -> InternalUserCompany:
        """Allow-list a company. The first grant turns an unrestricted user into a restricted one."""
        now = to_iso(self.clock())
        with self.store.transaction() as conn:
            self._require_internal(conn, user_id)
            if self.store.fetch_company(conn, company_id) is None:
                raise CompanyNotFound()
            first = not self.store.count_rows(
                conn, internal_user_companies, internal_user_companies.c.user_id == user_id
            )
            try:
                result = conn.execute(
                    internal_user_companies.insert().values(
                        user_id=user_id, company_id=company_id, granted_by=actor_id, created_at=now
                    )
                )
            except IntegrityError as exc:
                raise Conflict("User already has access to this company.") from exc
            if first:
                # access to every other company ends now
                conn.execute(
                    sessions.update()
                    .where(
                        sessions.c.user_id == user_id,
                        sessions.c.active_company_id != company_id,
                        sessions.c.revoked_at.is_(None),
                    )
                    .values(revoked_at=now, revoked_reason="access_restricted")
                )
            self.store.bump_permissions_version(conn, user_id)
            self.audit.record_event(
                LoginEventType.INTERNAL_ACCESS_GRANTED,
                user_id=user_id,
                company_id=company_id,
                metadata={"actor_id": actor_id, "now_restricted": first},
                conn=conn,
            )
            row = conn.execute(
                internal_user_companies.select().where(
                    internal_user_companies.c.id == result.inserted_primary_key[0]
                )
            ).fetchone()
        return _row_to_internal_user_company(row)

    def revoke_internal_access(self, user_id: int, company_id: int, *, actor_id: int | None = None) -> None:
        with self.store.transaction() as conn:
            self._require_internal(conn, user_id)
            removed = conn.execute(
                internal_user_companies.delete().where(
                    internal_user_companies.c.user_id == user_id,
                    internal_user_companies.c.company_id == company_id,
                )
            ).rowcount
            if removed == 0:
                raise NotFound("Company access not found.")
            remaining = self.store.count_rows(
                conn, internal_user_companies, internal_user_companies.c.user_id == user_id
            )
            if remaining == 0:
                logger.warning("Internal user %s has no grants left and is now unrestricted", user_id)
            else:
                conn.execute(
                    sessions.update()
                    .where(
                        sessions.c.user_id == user_id,
                        sessions.c.active_company_id == company_id,
                        sessions.c.revoked_at.is_(None),
                    )
                    .values(revoked_at=to_iso(self.clock()), revoked_reason="access_revoked")
                )
            self.store.bump_permissions_version(conn, user_id)
            self.audit.record_event(
                LoginEventType.INTERNAL_ACCESS_REVOKED,
                user_id=user_id,
                company_id=company_id,
                metadata={"actor_id": actor_id, "now_unrestricted": remaining == 0},
                conn=conn,
            )

    def _require_internal(self, conn: Connection, user_id: int) -> User:
        user = self.store.fetch_user(conn, user_id)
        if user is None or not user.is_internal:
            raise NotFound("Internal user not found.")
        return user
