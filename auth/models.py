"""
auth/models.py -- Domain dataclasses for the authentication engine.

Pattern: Data class (pure data container). Stores map rows to these types;
services do the work. Computed states such as "is this session expired" or
"is this account locked" are NOT properties here -- they are pure functions
in the owning service module that take the snapshot plus an explicit `now`,
so a decision is always recomputed from timestamps read in the same
transaction.

Layer rule: no imports from api/. Imports from core/ are not needed here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class UserType(str, Enum):
    COMPANY = "company"
    INTERNAL = "internal"


class SessionSource(str, Enum):
    WEB = "web"
    IOS = "ios"
    ANDROID = "android"
    API = "api"


class SessionLimitStrategy(str, Enum):
    BLOCK_NEW = "block_new"
    REVOKE_OLDEST = "revoke_oldest"
    REVOKE_LRU = "revoke_lru"
    PROMPT_USER = "prompt_user"


class SessionState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class RoleType(str, Enum):
    SYSTEM = "system"
    COMPANY = "company"
    PLATFORM = "platform"


class OAuthClientType(str, Enum):
    CONFIDENTIAL = "confidential"
    PUBLIC = "public"


class LoginEventType(str, Enum):
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    ACCOUNT_LOCKED = "account_locked"
    PASSWORD_CHANGED = "password_changed"
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET_COMPLETED = "password_reset_completed"
    EMAIL_VERIFIED = "email_verified"
    MFA_CODE_SENT = "mfa_code_sent"
    MFA_VERIFIED = "mfa_verified"
    MFA_FAILED = "mfa_failed"
    MFA_RECOVERY_CODE_USED = "mfa_recovery_code_used"
    MFA_ENABLED = "mfa_enabled"
    MFA_DISABLED = "mfa_disabled"
    TRUSTED_DEVICE_ADDED = "trusted_device_added"
    SESSION_REVOKED = "session_revoked"
    FORCE_LOGOUT = "force_logout"
    COMPANY_SWITCHED = "company_switched"
    MEMBERSHIP_DEACTIVATED = "membership_deactivated"
    INTERNAL_ACCESS_GRANTED = "internal_access_granted"
    INTERNAL_ACCESS_REVOKED = "internal_access_revoked"
    ROLE_ASSIGNED = "role_assigned"
    ROLE_REVOKED = "role_revoked"
    INVITE_CREATED = "invite_created"
    INVITE_ACCEPTED = "invite_accepted"
    INVITE_REVOKED = "invite_revoked"
    TOKEN_ISSUED = "token_issued"
    TOKEN_REFRESHED = "token_refreshed"
    TOKEN_REVOKED = "token_revoked"
    TOKEN_REUSE_DETECTED = "token_reuse_detected"
    IMPERSONATION_STARTED = "impersonation_started"
    IMPERSONATION_ENDED = "impersonation_ended"


# ---------------------------------------------------------------------------
# Tenancy
# ---------------------------------------------------------------------------


@dataclass
class PasswordPolicy:
    """Per-company password rules, stored as a JSON blob on the company row.

    history_count is how many previous password hashes are kept and checked
    (the current password is always rejected as well). max_age_days of None
    disables password expiry.
    """

    min_length: int = 8
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_numbers: bool = True
    require_special_chars: bool = False
    history_count: int = 3
    max_age_days: int | None = None


@dataclass
class Company:
    """Tenant boundary. Policy fields are read at enforcement time, never cached.

    None in max_sessions_per_user / lockout_* / max_seats means "use the
    application default" (or, for max_seats, "unlimited").
    """

    name: str
    id: int | None = None
    is_active: bool = True
    max_sessions_per_user: int | None = None
    session_limit_strategy: SessionLimitStrategy = SessionLimitStrategy.REVOKE_OLDEST
    password_policy: PasswordPolicy = field(default_factory=PasswordPolicy)
    mfa_required: bool = False
    max_seats: int | None = None
    lockout_threshold: int | None = None
    lockout_minutes: int | None = None
    created_at: datetime | None = None


@dataclass
class User:
    """An identity. Never hard-deleted; deactivated via is_active.

    company_id is the home company. For internal users it is the platform's
    own company and carries no access implication.

    permissions_version is bumped on every role or membership change and is
    part of the permission cache key. version is the optimistic-concurrency
    counter used by lockout-counter updates.
    """

    email: str
    company_id: int
    user_type: UserType = UserType.COMPANY
    id: int | None = None
    password_hash: str | None = None
    name_first: str = ""
    name_last: str = ""
    is_active: bool = True
    email_verified: bool = False
    mfa_enabled: bool = False
    totp_secret: str | None = None
    failed_login_attempts: int = 0
    last_failed_login_at: datetime | None = None
    locked_until: datetime | None = None
    force_logout_at: datetime | None = None
    needs_reset_password: bool = False
    password_changed_at: datetime | None = None
    max_sessions: int | None = None
    last_login_at: datetime | None = None
    permissions_version: int = 0
    version: int = 0
    created_at: datetime | None = None

    @property
    def is_internal(self) -> bool:
        return self.user_type == UserType.INTERNAL


@dataclass
class UserCompany:
    """Membership of a user in a company other than (or including) their home."""

    user_id: int
    company_id: int
    id: int | None = None
    is_active: bool = True
    is_pinned: bool = False
    joined_at: datetime | None = None
    last_accessed_at: datetime | None = None
    deactivated_at: datetime | None = None
    deactivated_by: int | None = None


@dataclass
class InternalUserCompany:
    """Allow-list grant for a platform user. Presence of any row restricts the user."""

    user_id: int
    company_id: int
    id: int | None = None
    granted_by: int | None = None
    is_pinned: bool = False
    last_accessed_at: datetime | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class Unrestricted:
    """Access scope of an internal user with no allow-list rows."""

    def allows(self, company_id: int) -> bool:
        return True


@dataclass(frozen=True)
class RestrictedTo:
    """Access scope limited to an explicit set of companies."""

    company_ids: frozenset[int]

    def allows(self, company_id: int) -> bool:
        return company_id in self.company_ids


AccessScope = Unrestricted | RestrictedTo


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


@dataclass
class Role:
    """Permission bundle.

    company_id is set only for COMPANY roles. SYSTEM roles are shared
    templates assigned per company; PLATFORM roles are assigned with no
    company and grant company_permissions inside any company the holder
    enters.
    """

    name: str
    type: RoleType
    id: int | None = None
    display_name: str = ""
    description: str = ""
    company_id: int | None = None
    permissions: list[str] = field(default_factory=list)
    company_permissions: list[str] = field(default_factory=list)
    is_default: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class UserRole:
    user_id: int
    role_id: int
    company_id: int | None = None  # None only for platform-role assignments
    id: int | None = None
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Sessions and audit
# ---------------------------------------------------------------------------


@dataclass
class Session:
    """A server-side session keyed by an opaque identifier.

    user_id is None while the row is PENDING (created before credentials are
    checked). source_user_id is set while impersonating: it is the origin
    user, user_id is the acting user.
    """

    sid: str
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    absolute_expires_at: datetime
    source: str = SessionSource.WEB.value
    user_id: int | None = None
    company_id: int | None = None
    active_company_id: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    mfa_verified: bool = False
    remember_me: bool = False
    source_user_id: int | None = None
    revoked_at: datetime | None = None
    revoked_reason: str | None = None


@dataclass
class LoginAttempt:
    email: str
    success: bool
    id: int | None = None
    user_id: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    failure_reason: str | None = None
    created_at: datetime | None = None


@dataclass
class LoginEvent:
    event_type: LoginEventType
    id: int | None = None
    user_id: int | None = None
    email: str | None = None
    company_id: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    metadata: dict = field(default_factory=dict)
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Hashed secrets
# ---------------------------------------------------------------------------


@dataclass
class UserToken:
    """Single-use emailed secret (password reset, email verification).

    Both purposes share this shape and live in separate tables.
    """

    user_id: int
    token_hash: str
    expires_at: datetime
    id: int | None = None
    used_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class MfaRecoveryCode:
    user_id: int
    code_hash: str
    id: int | None = None
    used_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class MfaChallenge:
    """An emailed one-time MFA code bound to one session."""

    user_id: int
    session_id: str
    code_hash: str
    expires_at: datetime
    id: int | None = None
    attempts: int = 0
    used_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class TrustedDevice:
    user_id: int
    token_hash: str
    expires_at: datetime
    id: int | None = None
    device_name: str = ""
    ip_address: str | None = None
    user_agent: str | None = None
    last_seen_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class ApiKey:
    """A long-lived credential for non-browser API clients (CI/CD, scripts).

    key_hash is HMAC-SHA256(SECRET_KEY, raw_key). key_prefix is display-only.
    The raw key is returned once at creation and never persisted.
    """

    user_id: int
    name: str
    key_hash: str
    key_prefix: str
    id: int | None = None
    created_at: datetime | None = None
    last_used: datetime | None = None
    is_active: bool = True


# ---------------------------------------------------------------------------
# OAuth provider
# ---------------------------------------------------------------------------


@dataclass
class OAuthClient:
    client_id: str
    name: str
    client_type: OAuthClientType
    id: int | None = None
    client_secret_hash: str | None = None  # None for public clients
    redirect_uris: list[str] = field(default_factory=list)
    allowed_scopes: list[str] = field(default_factory=list)
    require_pkce: bool = True
    is_active: bool = True
    created_at: datetime | None = None


@dataclass
class OAuthAuthorizationCode:
    code_hash: str
    client_id: int
    user_id: int
    redirect_uri: str
    expires_at: datetime
    id: int | None = None
    company_id: int | None = None
    scopes: list[str] = field(default_factory=list)
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    state: str | None = None
    used_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class OAuthToken:
    """One access/refresh pair. Every rotation of a grant shares refresh_token_family."""

    client_id: int
    user_id: int
    access_token_hash: str
    access_token_prefix: str
    access_token_expires_at: datetime
    refresh_token_family: str
    id: int | None = None
    company_id: int | None = None
    scopes: list[str] = field(default_factory=list)
    refresh_token_hash: str | None = None
    refresh_token_prefix: str | None = None
    refresh_token_expires_at: datetime | None = None
    replaced_by_token_id: int | None = None
    revoked_at: datetime | None = None
    revoked_reason: str | None = None
    created_at: datetime | None = None


@dataclass
class TokenPair:
    """Raw token material returned to the client exactly once."""

    access_token: str
    refresh_token: str
    expires_in: int
    scopes: list[str]
    token: OAuthToken
    token_type: str = "Bearer"


# ---------------------------------------------------------------------------
# Invites
# ---------------------------------------------------------------------------


@dataclass
class UserInvite:
    """Invitation to join a company.

    A new-user invite creates the User and membership on acceptance. An
    existing-user invite (is_existing_user_invite=True) only adds the
    membership and must be accepted by existing_user_id.
    """

    email: str
    company_id: int
    token_hash: str
    expires_at: datetime
    id: int | None = None
    invited_by_id: int | None = None
    role_ids: list[int] = field(default_factory=list)
    is_existing_user_invite: bool = False
    existing_user_id: int | None = None
    accepted_at: datetime | None = None
    revoked_at: datetime | None = None
    created_at: datetime | None = None
