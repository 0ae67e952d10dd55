"""
auth/invites.py -- Invitations into a company.

Two kinds, decided when the invite is created:
  new-user       no account exists for the email. Accepting creates the
                 User (email already verified by the link), the membership
                 and the roles.
  existing-user  an account exists. Accepting only adds the membership and
                 roles, and must be done by that account while logged in.

Rules on create:
  - internal users are never invited (InternalUserNotInvitable)
  - existing active members are rejected (AlreadyMember)
  - one pending invite per (email, company) (Conflict)
  - active members + pending invites must stay below company.max_seats
    (SeatLimitReached); NULL max_seats means unlimited

The raw token is returned to the caller, which mails it in a background
task; only its HMAC digest is stored. Acceptance consumes the invite with a
conditional UPDATE so one link creates at most one account.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import func, select
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from auth.access import MultiCompanyAccessController
from auth.audit import AuditLog
from auth.credentials import CredentialStore
from auth.errors import (
    AlreadyMember,
    CompanyNotFound,
    Conflict,
    InternalUserNotInvitable,
    InviteInvalid,
    NotFound,
    PermissionDenied,
    SeatLimitReached,
    Unauthenticated,
    ValidationFailed,
)
from auth.models import Company, LoginEventType, RoleType, User, UserInvite
from auth.permissions import PermissionResolver
from auth.store import AuthStore, _row_to_invite, _row_to_role, dump_list, roles, user_invites
from auth.tokens import generate_token, hash_token
from core.config import Settings, get_settings
from core.timeutil import Clock, to_iso, utc_now

logger = logging.getLogger("tenantgate.auth.invites")


@dataclass
class IssuedInvite:
    invite: UserInvite
    token: str
    company: Company


@dataclass
class InviteDetails:
    invite: UserInvite
    company_name: str

    @property
    def email(self) -> str:
        return self.invite.email

    @property
    def is_existing_user(self) -> bool:
        return self.invite.is_existing_user_invite


class InviteService:
    def __init__(
        self,
        store: AuthStore,
        audit: AuditLog,
        credentials: CredentialStore,
        access: MultiCompanyAccessController,
        permissions: PermissionResolver,
        clock: Clock = utc_now,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.credentials = credentials
        self.access = access
        self.permissions = permissions
        self.clock = clock
        self.settings = settings or get_settings()

    def _expiry(self):
        return self.clock() + timedelta(days=self.settings.invite_ttl_days)

    def _pending(self, now_iso: str):
        return (
            user_invites.c.accepted_at.is_(None),
            user_invites.c.revoked_at.is_(None),
            user_invites.c.expires_at > now_iso,
        )

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(
        self,
        email: str,
        company_id: int,
        *,
        invited_by_id: int | None,
        role_ids: list[int] | None = None,
    ) -> IssuedInvite:
        email = email.strip().lower()
        role_ids = list(dict.fromkeys(role_ids or []))
        now = self.clock()
        now_iso = to_iso(now)
        raw = generate_token(nbytes=32)

        with self.store.transaction() as conn:
            company = self.store.fetch_company(conn, company_id)
            if company is None:
                raise CompanyNotFound()

            existing = self.store.fetch_user_by_email(conn, email)
            if existing is not None:
                if existing.is_internal:
                    raise InternalUserNotInvitable()
                if self.access.is_active_member_in(conn, existing.id, company_id):
                    raise AlreadyMember()

            pending = self.store.count_rows(
                conn,
                user_invites,
                user_invites.c.email == email,
                user_invites.c.company_id == company_id,
                *self._pending(now_iso),
            )
            if pending:
                raise Conflict("A pending invitation already exists for this email.")

            if company.max_seats is not None:
                used = self.access.count_active_members(conn, company_id) + self.store.count_rows(
                    conn, user_invites, user_invites.c.company_id == company_id, *self._pending(now_iso)
                )
                if used >= company.max_seats:
                    raise SeatLimitReached(
                        f"Company has reached maximum seats ({company.max_seats}).",
                        details={"max_seats": company.max_seats},
                    )

            self._check_roles(conn, role_ids, company_id)
            result = conn.execute(
                user_invites.insert().values(
                    email=email,
                    company_id=company_id,
                    invited_by_id=invited_by_id,
                    role_ids=dump_list(role_ids),
                    token_hash=hash_token(raw),
                    is_existing_user_invite=existing is not None,
                    existing_user_id=existing.id if existing is not None else None,
                    expires_at=to_iso(self._expiry()),
                    created_at=now_iso,
                )
            )
            self.audit.record_event(
                LoginEventType.INVITE_CREATED,
                user_id=invited_by_id,
                email=email,
                company_id=company_id,
                metadata={"existing_user": existing is not None},
                conn=conn,
            )
            invite = self._fetch(conn, result.inserted_primary_key[0])
        logger.info("Invite %s created for company %s", invite.id, company_id)
        return IssuedInvite(invite=invite, token=raw, company=company)

    def _check_roles(self, conn: Connection, role_ids: list[int], company_id: int) -> None:
        for role_id in role_ids:
            row = conn.execute(roles.select().where(roles.c.id == role_id)).fetchone()
            role = _row_to_role(row) if row is not None else None
            if role is None or role.type == RoleType.PLATFORM:
                raise ValidationFailed(f"Role {role_id} cannot be granted by invite.")
            if role.type == RoleType.COMPANY and role.company_id != company_id:
                raise ValidationFailed(f"Role {role_id} cannot be granted by invite.")

    @staticmethod
    def _fetch(conn: Connection, invite_id: int) -> UserInvite:
        return _row_to_invite(conn.execute(user_invites.select().where(user_invites.c.id == invite_id)).fetchone())

    # ------------------------------------------------------------------
    # Validate and accept
    # ------------------------------------------------------------------

    def _check_usable(self, invite: UserInvite | None) -> UserInvite:
        if invite is None:
            raise InviteInvalid("Invalid invitation token.")
        if invite.accepted_at is not None:
            raise InviteInvalid("This invitation has already been used.")
        if invite.revoked_at is not None:
            raise InviteInvalid("This invitation has been revoked.")
        if self.clock() > invite.expires_at:
            raise InviteInvalid("This invitation has expired.")
        return invite

    def validate(self, token: str) -> InviteDetails:
        def _load(conn: Connection):
            row = conn.execute(user_invites.select().where(user_invites.c.token_hash == hash_token(token))).fetchone()
            invite = _row_to_invite(row) if row is not None else None
            company = self.store.fetch_company(conn, invite.company_id) if invite else None
            return invite, company

        invite, company = self.store.read(_load)
        invite = self._check_usable(invite)
        return InviteDetails(invite=invite, company_name=company.name if company else "")

    def accept(
        self,
        token: str,
        *,
        password: str | None = None,
        name_first: str = "",
        name_last: str = "",
        current_user_id: int | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> User:
        details = self.validate(token)
        invite = details.invite

        password_hash = None
        if invite.is_existing_user_invite:
            if current_user_id is None:
                raise Unauthenticated("Log in as the invited user to accept this invitation.")
            if current_user_id != invite.existing_user_id:
                raise PermissionDenied("This invitation belongs to another account.")
        else:
            if not password:
                raise ValidationFailed("A password is required to create the account.")
            password_hash = self.credentials.prepare_password(
                password, self.credentials.policy_for(invite.company_id)
            )

        now_iso = to_iso(self.clock())
        with self.store.transaction() as conn:
            row = conn.execute(
                user_invites.select().where(user_invites.c.id == invite.id).with_for_update()
            ).fetchone()
            invite = self._check_usable(_row_to_invite(row) if row is not None else None)

            if invite.is_existing_user_invite:
                user_id = invite.existing_user_id
                if self.access.is_active_member_in(conn, user_id, invite.company_id):
                    raise AlreadyMember()
            else:
                try:
                    user_id = self.store.insert_user(
                        conn,
                        User(
                            email=invite.email,
                            company_id=invite.company_id,
                            password_hash=password_hash,
                            name_first=name_first,
                            name_last=name_last,
                            email_verified=True,
                        ),
                    )
                except IntegrityError as exc:
                    raise Conflict("A user with this email already exists.") from exc

            self.access.add_membership_in(
                conn,
                user_id,
                invite.company_id,
                actor_id=invite.invited_by_id,
                assign_defaults=not invite.role_ids,
            )
            for role_id in invite.role_ids:
                self.permissions.assign_in(conn, user_id, role_id, invite.company_id, actor_id=invite.invited_by_id)

            consumed = conn.execute(
                user_invites.update()
                .where(
                    user_invites.c.id == invite.id,
                    user_invites.c.accepted_at.is_(None),
                    user_invites.c.revoked_at.is_(None),
                )
                .values(accepted_at=now_iso)
            ).rowcount
            if consumed != 1:
                raise InviteInvalid("This invitation has already been used.")

            self.audit.record_event(
                LoginEventType.INVITE_ACCEPTED,
                user_id=user_id,
                email=invite.email,
                company_id=invite.company_id,
                ip_address=ip_address,
                user_agent=user_agent,
                conn=conn,
            )
            user = self.store.fetch_user(conn, user_id)
        logger.info("Invite %s accepted by user %s", invite.id, user_id)
        return user

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def revoke(self, invite_id: int, company_id: int, *, actor_id: int | None = None) -> None:
        with self.store.transaction() as conn:
            changed = conn.execute(
                user_invites.update()
                .where(
                    user_invites.c.id == invite_id,
                    user_invites.c.company_id == company_id,
                    user_invites.c.accepted_at.is_(None),
                    user_invites.c.revoked_at.is_(None),
                )
                .values(revoked_at=to_iso(self.clock()))
            ).rowcount
            if not changed:
                raise NotFound("Invite not found or already processed.")
            self.audit.record_event(
                LoginEventType.INVITE_REVOKED,
                user_id=actor_id,
                company_id=company_id,
                metadata={"invite_id": invite_id},
                conn=conn,
            )

    def resend(self, invite_id: int, company_id: int) -> IssuedInvite:
        """Issue a fresh token and expiry. The old link stops working."""
        raw = generate_token(nbytes=32)
        with self.store.transaction() as conn:
            row = conn.execute(
                user_invites.select().where(user_invites.c.id == invite_id, user_invites.c.company_id == company_id)
            ).fetchone()
            if row is None:
                raise NotFound("Invite not found.")
            invite = _row_to_invite(row)
            if invite.accepted_at is not None or invite.revoked_at is not None:
                raise ValidationFailed("Can only resend pending invites.")
            conn.execute(
                user_invites.update()
                .where(user_invites.c.id == invite_id)
                .values(token_hash=hash_token(raw), expires_at=to_iso(self._expiry()))
            )
            invite = self._fetch(conn, invite_id)
            company = self.store.fetch_company(conn, company_id)
        return IssuedInvite(invite=invite, token=raw, company=company)

    def list_pending(self, company_id: int, *, limit: int = 20, offset: int = 0) -> tuple[list[UserInvite], int]:
        """Invites neither accepted nor revoked (expired ones included), newest first."""
        conds = (
            user_invites.c.company_id == company_id,
            user_invites.c.accepted_at.is_(None),
            user_invites.c.revoked_at.is_(None),
        )

        def _load(conn: Connection):
            total = conn.execute(select(func.count()).select_from(user_invites).where(*conds)).scalar() or 0
            rows = conn.execute(
                user_invites.select()
                .where(*conds)
                .order_by(user_invites.c.created_at.desc(), user_invites.c.id.desc())
                .limit(min(max(1, limit), 100))
                .offset(max(0, offset))
            )
            return [_row_to_invite(r) for r in rows], total

        return self.store.read(_load)
