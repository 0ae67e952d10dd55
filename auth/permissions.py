"""
auth/permissions.py -- Permission catalog, wildcard matching and role resolution.

Permissions are "resource:action" strings. Role permission lists may also
hold patterns:
  "*"           every permission
  "resource:*"  every action on resource

Effective permissions for (user, active company) are the union of:
  - permissions of every role assigned to the user in that company
  - company_permissions of every PLATFORM role the user holds (platform
    roles are assigned with no company and apply inside any company)

Both only count while the user may act in that company: an active
membership for company users, an allow-list entry (or none at all) for
internal users.

A PLATFORM role's own `permissions` govern platform-console actions and are
returned separately by platform_permissions().

Caching: effective sets are cached per (user_id, company_id,
users.permissions_version) for CACHE_TTL_SECONDS. Every role or membership
mutation bumps permissions_version in the same transaction, so a stale entry
is never served after a change commits; the TTL only bounds memory.

SYSTEM roles are shared templates and cannot be changed through this API:
update/delete raise SystemRoleProtected.
"""

from __future__ import annotations

import logging
import threading
import time

from sqlalchemy import and_, or_, select
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from auth.audit import AuditLog
from auth.errors import Conflict, NotFound, SystemRoleProtected, ValidationFailed
from auth.models import LoginEventType, Role, RoleType, User
from auth.store import (
    AuthStore,
    _load_list,
    _row_to_role,
    dump_list,
    internal_user_companies,
    roles,
    user_companies,
    user_roles,
)
from core.timeutil import Clock, to_iso, utc_now

logger = logging.getLogger("tenantgate.auth.permissions")

CACHE_TTL_SECONDS = 300

# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

# permission -> (label, category, description)
PERMISSIONS: dict[str, tuple[str, str, str]] = {
    "customer:read": ("View Customers", "Customers", "View customer list and details"),
    "customer:create": ("Create Customers", "Customers", "Add new customers to the system"),
    "customer:update": ("Edit Customers", "Customers", "Modify existing customer information"),
    "customer:delete": ("Delete Customers", "Customers", "Remove customers from the system"),
    "user:read": ("View Users", "Users", "View user list and profiles"),
    "user:create": ("Create Users", "Users", "Add new users to the company"),
    "user:update": ("Edit Users", "Users", "Modify user profiles and settings"),
    "user:delete": ("Delete Users", "Users", "Soft delete users from the company"),
    "user:activate": ("Activate/Deactivate Users", "Users", "Enable or disable user accounts"),
    "office:read": ("View Offices", "Offices", "View office list and details"),
    "office:create": ("Create Offices", "Offices", "Add new offices to the company"),
    "office:update": ("Edit Offices", "Offices", "Modify office settings and information"),
    "office:delete": ("Delete Offices", "Offices", "Remove offices from the company"),
    "role:read": ("View Roles", "Roles & Permissions", "View available roles and their permissions"),
    "role:create": ("Create Roles", "Roles & Permissions", "Create custom roles for the company"),
    "role:update": ("Edit Roles", "Roles & Permissions", "Modify role permissions and settings"),
    "role:delete": ("Delete Roles", "Roles & Permissions", "Remove custom roles from the company"),
    "role:assign": ("Assign Roles", "Roles & Permissions", "Assign or revoke user roles"),
    "report:read": ("View Reports", "Reports", "Access reports and analytics dashboards"),
    "report:export": ("Export Reports", "Reports", "Export reports to CSV, PDF, or other formats"),
    "settings:read": ("View Settings", "Settings", "View company and application settings"),
    "settings:update": ("Manage Settings", "Settings", "Modify company and application settings"),
    "company:read": ("View Company Info", "Company", "View company profile and subscription details"),
    "company:update": ("Manage Company", "Company", "Update company profile and subscription settings"),
    "file:read": ("View Files", "Files", "View and download files"),
    "file:create": ("Upload Files", "Files", "Upload new files to the system"),
    "file:update": ("Edit Files", "Files", "Update file metadata and visibility"),
    "file:delete": ("Delete Files", "Files", "Delete files from the system"),
    "data:migration": ("Data Migration", "Data Migration", "Import data from legacy systems"),
    "price_guide:import_export": (
        "Price Guide Import/Export",
        "Price Guide",
        "Export and import price guide pricing data via spreadsheet",
    ),
    "platform:admin": ("Platform Admin", "Platform", "Full platform administration access"),
    "platform:view_companies": ("View All Companies", "Platform", "View list of all companies in the platform"),
    "platform:create_company": ("Create Companies", "Platform", "Create new companies in the platform"),
    "platform:update_company": ("Update Companies", "Platform", "Update company settings and details"),
    "platform:switch_company": ("Switch Company", "Platform", "Switch active company context"),
    "platform:view_audit_logs": ("View Audit Logs", "Platform", "Access platform-wide audit and activity logs"),
    "platform:manage_internal_users": (
        "Manage Internal Users",
        "Platform",
        "Create, edit, and manage internal platform users",
    ),
}

ALL_PERMISSIONS: list[str] = list(PERMISSIONS)


def permissions_by_category() -> dict[str, list[dict]]:
    """Group the catalog for permission pickers."""
    grouped: dict[str, list[dict]] = {}
    for name, (label, category, description) in PERMISSIONS.items():
        grouped.setdefault(category, []).append({"permission": name, "label": label, "description": description})
    return grouped


def is_platform_permission(permission: str) -> bool:
    return permission.startswith("platform:")


def match_permission(permission: str, pattern: str) -> bool:
    """True if `pattern` ("*", "resource:*" or an exact name) grants `permission`."""
    if pattern == "*" or pattern == permission:
        return True
    if pattern.endswith(":*"):
        return permission.startswith(pattern[:-1])
    return False


def has_permission(granted, required: str) -> bool:
    """Check `required` against a collection of granted permissions and patterns."""
    if "*" in granted:
        return True
    return any(match_permission(required, pattern) for pattern in granted)


def expand_wildcard(pattern: str) -> list[str]:
    """Concrete catalog permissions covered by a pattern (unknown names expand to [])."""
    if pattern == "*":
        return list(ALL_PERMISSIONS)
    if pattern.endswith(":*"):
        return [p for p in ALL_PERMISSIONS if match_permission(p, pattern)]
    return [pattern] if pattern in PERMISSIONS else []


def validate_permissions(values: list[str]) -> list[str]:
    """Return the entries that name nothing in the catalog."""
    return [v for v in values if not expand_wildcard(v)]


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class PermissionResolver:
    def __init__(
        self,
        store: AuthStore,
        audit: AuditLog,
        clock: Clock = utc_now,
        cache_ttl: float = CACHE_TTL_SECONDS,
    ) -> None:
        self.store = store
        self.audit = audit
        self.clock = clock
        self.cache_ttl = cache_ttl
        self._cache: dict[tuple[int, int | None, int], tuple[float, frozenset[str]]] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def effective_permissions(self, user_id: int, company_id: int | None) -> frozenset[str]:
        """Permission patterns the user holds while acting in company_id."""
        user = self.store.get_user(user_id)
        if user is None or not user.is_active:
            return frozenset()
        key = (user_id, company_id, user.permissions_version)
        now = time.monotonic()
        with self._lock:
            hit = self._cache.get(key)
            if hit is not None and hit[0] > now:
                return hit[1]

        scope = and_(user_roles.c.company_id.is_(None), roles.c.type == RoleType.PLATFORM.value)
        if company_id is not None:
            scope = or_(user_roles.c.company_id == company_id, scope)

        def _load(conn: Connection) -> frozenset[str]:
            if company_id is not None and not _may_act_in(conn, user, company_id):
                return frozenset()
            granted: set[str] = set()
            stmt = (
                select(roles.c.type, roles.c.permissions, roles.c.company_permissions)
                .select_from(user_roles.join(roles, roles.c.id == user_roles.c.role_id))
                .where(user_roles.c.user_id == user_id, scope)
            )
            for row in conn.execute(stmt):
                if row.type == RoleType.PLATFORM.value:
                    if company_id is not None:
                        granted.update(_load_list(row.company_permissions))
                else:
                    granted.update(_load_list(row.permissions))
            return frozenset(granted)

        result = self.store.read(_load)
        with self._lock:
            self._cache[key] = (now + self.cache_ttl, result)
            self._evict_expired(now)
        return result

    def platform_permissions(self, user_id: int) -> frozenset[str]:
        """Platform-console permissions from the user's PLATFORM roles."""
        stmt = (
            select(roles.c.permissions)
            .select_from(user_roles.join(roles, roles.c.id == user_roles.c.role_id))
            .where(
                user_roles.c.user_id == user_id,
                user_roles.c.company_id.is_(None),
                roles.c.type == RoleType.PLATFORM.value,
            )
        )

        def _load(conn: Connection) -> frozenset[str]:
            granted: set[str] = set()
            for row in conn.execute(stmt):
                granted.update(_load_list(row.permissions))
            return frozenset(granted)

        return self.store.read(_load)

    def has(self, user_id: int, company_id: int | None, required: str) -> bool:
        if is_platform_permission(required):
            return has_permission(self.platform_permissions(user_id), required)
        return has_permission(self.effective_permissions(user_id, company_id), required)

    def invalidate(self, user_id: int | None = None) -> None:
        with self._lock:
            if user_id is None:
                self._cache.clear()
            else:
                for key in [k for k in self._cache if k[0] == user_id]:
                    del self._cache[key]

    def _evict_expired(self, now: float) -> None:
        for key in [k for k, (expires, _) in self._cache.items() if expires <= now]:
            del self._cache[key]

    # ------------------------------------------------------------------
    # Role catalogue
    # ------------------------------------------------------------------

    def get_role(self, role_id: int) -> Role | None:
        def _load(conn: Connection) -> Role | None:
            row = conn.execute(roles.select().where(roles.c.id == role_id)).fetchone()
            return _row_to_role(row) if row is not None else None

        return self.store.read(_load)

    def get_role_by_name(self, name: str, company_id: int | None = None) -> Role | None:
        """Company role of that name in company_id, else the SYSTEM or PLATFORM role."""

        def _load(conn: Connection) -> Role | None:
            rows = conn.execute(
                roles.select().where(
                    roles.c.name == name,
                    or_(roles.c.company_id == company_id, roles.c.company_id.is_(None)),
                )
            )
            found = sorted(map(_row_to_role, rows), key=lambda r: r.company_id is None)
            return found[0] if found else None

        return self.store.read(_load)

    def list_available_roles(self, company_id: int) -> list[Role]:
        """SYSTEM roles plus the company's own roles."""
        stmt = (
            roles.select()
            .where(
                or_(
                    roles.c.type == RoleType.SYSTEM.value,
                    and_(roles.c.type == RoleType.COMPANY.value, roles.c.company_id == company_id),
                )
            )
            .order_by(roles.c.type.desc(), roles.c.name)
        )
        return self.store.read(lambda conn: [_row_to_role(r) for r in conn.execute(stmt)])

    def list_platform_roles(self) -> list[Role]:
        stmt = roles.select().where(roles.c.type == RoleType.PLATFORM.value).order_by(roles.c.name)
        return self.store.read(lambda conn: [_row_to_role(r) for r in conn.execute(stmt)])

    def list_user_roles(self, user_id: int, company_id: int | None) -> list[Role]:
        """Roles held in company_id plus any PLATFORM roles."""
        stmt = (
            select(roles)
            .select_from(user_roles.join(roles, roles.c.id == user_roles.c.role_id))
            .where(
                user_roles.c.user_id == user_id,
                or_(user_roles.c.company_id == company_id, user_roles.c.company_id.is_(None)),
            )
            .order_by(roles.c.name)
        )
        return self.store.read(lambda conn: [_row_to_role(r) for r in conn.execute(stmt)])

    # ------------------------------------------------------------------
    # Role mutation
    # ------------------------------------------------------------------

    def create_role(
        self,
        name: str,
        *,
        role_type: RoleType = RoleType.COMPANY,
        company_id: int | None = None,
        permissions: list[str] | None = None,
        company_permissions: list[str] | None = None,
        display_name: str = "",
        description: str = "",
        is_default: bool = False,
    ) -> Role:
        role_type = RoleType(role_type)
        permissions = list(permissions or [])
        company_permissions = list(company_permissions or [])
        if role_type == RoleType.SYSTEM:
            raise SystemRoleProtected("System roles are seeded, not created.")
        if role_type == RoleType.COMPANY and company_id is None:
            raise ValidationFailed("Company roles need a company.")
        if role_type == RoleType.PLATFORM:
            company_id = None
        _check_role_permissions(role_type, permissions, company_permissions)

        now = to_iso(self.clock())
        with self.store.transaction() as conn:
            clash = conn.execute(
                select(roles.c.id).where(
                    roles.c.name == name,
                    roles.c.company_id == company_id if company_id is not None else roles.c.company_id.is_(None),
                )
            ).first()
            if clash is not None:
                raise Conflict(f"A role named '{name}' already exists.")
            result = conn.execute(
                roles.insert().values(
                    name=name,
                    display_name=display_name or name,
                    description=description,
                    type=role_type.value,
                    company_id=company_id,
                    permissions=dump_list(permissions),
                    company_permissions=dump_list(company_permissions),
                    is_default=is_default,
                    created_at=now,
                )
            )
            role_id = result.inserted_primary_key[0]
            row = conn.execute(roles.select().where(roles.c.id == role_id)).fetchone()
        logger.info("Role %s (%s) created in company %s", name, role_type.value, company_id)
        return _row_to_role(row)

    def update_role(self, role_id: int, *, company_id: int | None = None, **changes) -> Role:
        """Change name/display_name/description/permissions/company_permissions/is_default.

        company_id scopes the lookup: a company admin cannot reach another
        company's role (NotFound, not Forbidden).
        """
        allowed = {"name", "display_name", "description", "permissions", "company_permissions", "is_default"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationFailed(f"Unknown role fields: {', '.join(sorted(unknown))}")
        with self.store.transaction() as conn:
            role = self._fetch_scoped(conn, role_id, company_id)
            if "permissions" in changes or "company_permissions" in changes:
                _check_role_permissions(
                    role.type,
                    changes.get("permissions", role.permissions),
                    changes.get("company_permissions", role.company_permissions),
                )
            values = dict(changes)
            for key in ("permissions", "company_permissions"):
                if key in values:
                    values[key] = dump_list(values[key])
            values["updated_at"] = to_iso(self.clock())
            conn.execute(roles.update().where(roles.c.id == role_id).values(**values))
            self.store.bump_permissions_version(conn, self._holders(conn, role_id))
            row = conn.execute(roles.select().where(roles.c.id == role_id)).fetchone()
        return _row_to_role(row)

    def delete_role(self, role_id: int, *, company_id: int | None = None) -> None:
        with self.store.transaction() as conn:
            role = self._fetch_scoped(conn, role_id, company_id)
            holders = self._holders(conn, role_id)
            conn.execute(user_roles.delete().where(user_roles.c.role_id == role_id))
            conn.execute(roles.delete().where(roles.c.id == role_id))
            self.store.bump_permissions_version(conn, holders)
        logger.info("Role %s deleted (%d holder(s) affected)", role.name, len(holders))

    def _fetch_scoped(self, conn: Connection, role_id: int, company_id: int | None) -> Role:
        row = conn.execute(roles.select().where(roles.c.id == role_id)).fetchone()
        if row is None:
            raise NotFound("Role not found.")
        role = _row_to_role(row)
        if role.type == RoleType.SYSTEM:
            raise SystemRoleProtected()
        if company_id is not None and role.type == RoleType.COMPANY and role.company_id != company_id:
            raise NotFound("Role not found.")
        return role

    @staticmethod
    def _holders(conn: Connection, role_id: int) -> list[int]:
        rows = conn.execute(select(user_roles.c.user_id).where(user_roles.c.role_id == role_id).distinct())
        return [r.user_id for r in rows]

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    def assign_role(
        self, user_id: int, role_id: int, company_id: int | None, *, actor_id: int | None = None
    ) -> None:
        with self.store.transaction() as conn:
            self.assign_in(conn, user_id, role_id, company_id, actor_id=actor_id)

    def assign_in(
        self,
        conn: Connection,
        user_id: int,
        role_id: int,
        company_id: int | None,
        *,
        actor_id: int | None = None,
    ) -> None:
        """Assign inside the caller's transaction (invites, membership creation)."""
        row = conn.execute(roles.select().where(roles.c.id == role_id)).fetchone()
        if row is None:
            raise NotFound("Role not found.")
        role = _row_to_role(row)
        user = self.store.fetch_user(conn, user_id)
        if user is None:
            raise NotFound("User not found.")

        if role.type == RoleType.PLATFORM:
            if not user.is_internal:
                raise ValidationFailed("Platform roles can only be assigned to internal users.")
            company_id = None
        elif company_id is None:
            raise ValidationFailed("Company and system roles are assigned within a company.")
        elif role.type == RoleType.COMPANY and role.company_id != company_id:
            raise NotFound("Role not found.")

        existing = conn.execute(
            select(user_roles.c.id).where(
                user_roles.c.user_id == user_id,
                user_roles.c.role_id == role_id,
                user_roles.c.company_id == company_id if company_id is not None else user_roles.c.company_id.is_(None),
            )
        ).first()
        if existing is not None:
            raise Conflict("User already has this role.")
        try:
            conn.execute(
                user_roles.insert().values(
                    user_id=user_id, role_id=role_id, company_id=company_id, created_at=to_iso(self.clock())
                )
            )
        except IntegrityError as exc:
            raise Conflict("User already has this role.") from exc
        self.store.bump_permissions_version(conn, user_id)
        self.audit.record_event(
            LoginEventType.ROLE_ASSIGNED,
            user_id=user_id,
            company_id=company_id,
            metadata={"role": role.name, "actor_id": actor_id},
            conn=conn,
        )

    def revoke_role(
        self, user_id: int, role_id: int, company_id: int | None, *, actor_id: int | None = None
    ) -> bool:
        stmt = user_roles.delete().where(user_roles.c.user_id == user_id, user_roles.c.role_id == role_id)
        if company_id is None:
            stmt = stmt.where(user_roles.c.company_id.is_(None))
        else:
            # platform assignments carry no company; let a company-scoped
            # call revoke those too
            stmt = stmt.where(or_(user_roles.c.company_id == company_id, user_roles.c.company_id.is_(None)))
        with self.store.transaction() as conn:
            removed = conn.execute(stmt).rowcount
            if removed:
                self.store.bump_permissions_version(conn, user_id)
                self.audit.record_event(
                    LoginEventType.ROLE_REVOKED,
                    user_id=user_id,
                    company_id=company_id,
                    metadata={"role_id": role_id, "actor_id": actor_id},
                    conn=conn,
                )
        return removed > 0

    def assign_default_roles(self, conn: Connection, user_id: int, company_id: int) -> list[int]:
        """Give a new member every is_default role available in the company."""
        rows = conn.execute(
            select(roles.c.id).where(
                roles.c.is_default.is_(True),
                or_(
                    roles.c.type == RoleType.SYSTEM.value,
                    and_(roles.c.type == RoleType.COMPANY.value, roles.c.company_id == company_id),
                ),
            )
        )
        assigned: list[int] = []
        for (role_id,) in rows.all():
            held = conn.execute(
                select(user_roles.c.id).where(
                    user_roles.c.user_id == user_id,
                    user_roles.c.role_id == role_id,
                    user_roles.c.company_id == company_id,
                )
            ).first()
            if held is None:
                self.assign_in(conn, user_id, role_id, company_id)
                assigned.append(role_id)
        return assigned


def _may_act_in(conn: Connection, user: User, company_id: int) -> bool:
    """Membership gate: roles held in a company count only while the user may enter it."""
    if user.is_internal:
        grants = [
            r.company_id
            for r in conn.execute(
                select(internal_user_companies.c.company_id).where(internal_user_companies.c.user_id == user.id)
            )
        ]
        return not grants or company_id in grants
    return (
        conn.execute(
            select(user_companies.c.id).where(
                user_companies.c.user_id == user.id,
                user_companies.c.company_id == company_id,
                user_companies.c.is_active.is_(True),
            )
        ).first()
        is not None
    )


def _check_role_permissions(role_type: RoleType, permissions: list[str], company_permissions: list[str]) -> None:
    invalid = validate_permissions(list(permissions) + list(company_permissions))
    if invalid:
        raise ValidationFailed("Unknown permissions.", details={"invalid": invalid})
    if role_type == RoleType.PLATFORM:
        if not any(is_platform_permission(p) or p == "*" for p in permissions):
            raise ValidationFailed("Platform roles need at least one platform permission.")
        if any(is_platform_permission(p) for p in company_permissions):
            raise ValidationFailed("company_permissions cannot contain platform permissions.")
    elif any(is_platform_permission(p) for p in permissions):
        raise ValidationFailed("Only platform roles may carry platform permissions.")
    elif company_permissions:
        raise ValidationFailed("Only platform roles carry company_permissions.")


# ---------------------------------------------------------------------------
# Seeding
# ---------------------------------------------------------------------------

SYSTEM_ROLES: list[dict] = [
    {
        "name": "superUser",
        "display_name": "Super User",
        "description": "Full system access. Can do everything.",
        "type": RoleType.SYSTEM,
        "permissions": ["*"],
    },
    {
        "name": "admin",
        "display_name": "Administrator",
        "description": "Company administrator with full access to manage users, roles, and settings.",
        "type": RoleType.SYSTEM,
        "permissions": [
            "customer:*",
            "user:*",
            "office:*",
            "role:*",
            "settings:*",
            "company:*",
            "report:read",
            "report:export",
        ],
    },
    {
        "name": "salesRep",
        "display_name": "Sales Representative",
        "description": "Standard sales user with access to customers and reports.",
        "type": RoleType.SYSTEM,
        "is_default": True,
        "permissions": [
            "customer:read",
            "customer:create",
            "customer:update",
            "office:read",
            "report:read",
            "settings:read",
        ],
    },
    {
        "name": "viewer",
        "display_name": "Viewer",
        "description": "Read-only access to customers and reports.",
        "type": RoleType.SYSTEM,
        "permissions": ["customer:read", "office:read", "report:read"],
    },
    {
        "name": "platformAdmin",
        "display_name": "Platform Administrator",
        "description": "Full platform access. Can manage all companies and internal users.",
        "type": RoleType.PLATFORM,
        "permissions": [p for p in ALL_PERMISSIONS if is_platform_permission(p)],
        "company_permissions": ["*"],
    },
    {
        "name": "platformSupport",
        "display_name": "Platform Support",
        "description": "Read-only access to all companies for customer support purposes.",
        "type": RoleType.PLATFORM,
        "permissions": ["platform:view_companies", "platform:switch_company", "platform:view_audit_logs"],
        "company_permissions": [p for p in ALL_PERMISSIONS if p.endswith(":read") and not is_platform_permission(p)],
    },
    {
        "name": "platformDeveloper",
        "display_name": "Platform Developer",
        "description": "Developer access with read permissions across companies.",
        "type": RoleType.PLATFORM,
        "permissions": ["platform:view_companies", "platform:switch_company"],
        "company_permissions": ["customer:read", "user:read", "office:read", "settings:read", "company:read"],
    },
]


def seed_system_roles(store: AuthStore, *, force: bool = False) -> dict[str, int]:
    """Insert the built-in SYSTEM and PLATFORM roles if they are missing.

    force=True rewrites the permission lists of roles that already exist.
    Returns {"created": n, "updated": m}.
    """
    now = to_iso(utc_now())
    created = updated = 0
    with store.transaction() as conn:
        for builtin in SYSTEM_ROLES:
            values = dict(
                display_name=builtin["display_name"],
                description=builtin["description"],
                type=builtin["type"].value,
                permissions=dump_list(builtin["permissions"]),
                company_permissions=dump_list(builtin.get("company_permissions", [])),
                is_default=builtin.get("is_default", False),
            )
            existing = conn.execute(
                select(roles.c.id).where(roles.c.name == builtin["name"], roles.c.company_id.is_(None))
            ).first()
            if existing is None:
                conn.execute(roles.insert().values(name=builtin["name"], company_id=None, created_at=now, **values))
                created += 1
            elif force:
                conn.execute(roles.update().where(roles.c.id == existing.id).values(updated_at=now, **values))
                updated += 1
    logger.info("Seeded roles: %d created, %d updated", created, updated)
    return {"created": created, "updated": updated}
