"""
API request and response models for TenantGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two
with the from_* helpers below.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from auth.access import CompanySummary
from auth.models import ApiKey, Company, Role, Session, TrustedDevice, User, UserInvite

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class SourceEnum(str, Enum):
    web = "web"
    ios = "ios"
    android = "android"
    api = "api"


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    details: Optional[dict] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class CompanyResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str

    @classmethod
    def from_company(cls, company: Company) -> "CompanyResponse":
        return cls(id=company.id, name=company.name)


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name_first: str
    name_last: str
    user_type: str
    company_id: int
    email_verified: bool
    mfa_enabled: bool
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name_first=user.name_first,
            name_last=user.name_last,
            user_type=user.user_type.value if hasattr(user.user_type, "value") else str(user.user_type),
            company_id=user.company_id,
            email_verified=user.email_verified,
            mfa_enabled=user.mfa_enabled,
            last_login_at=user.last_login_at,
        )


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    revoke_session_id is only sent on the retry after a
    session_selection_required response: it names the session to end.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    password: str = Field(min_length=1, max_length=128)
    source: SourceEnum = SourceEnum.web
    remember_me: bool = False
    revoke_session_id: Optional[str] = None


class LoginResponse(BaseModel):
    """Response for POST /api/v1/auth/login.

    When requires_mfa is True, user is omitted: the session exists but only
    /auth/me and the MFA endpoints accept it until verification succeeds.
    """

    model_config = ConfigDict(frozen=True)

    user: Optional[UserResponse] = None
    requires_mfa: bool = False
    can_switch_companies: bool = False
    active_company: Optional[CompanyResponse] = None


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: Optional[UserResponse] = None
    requires_mfa: bool = False
    active_company: Optional[CompanyResponse] = None
    impersonated_by: Optional[int] = None
    auth_method: str = "session"


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=1, max_length=128)


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1)
    new_password: str = Field(min_length=1, max_length=128)


class TokenRequest(BaseModel):
    token: str = Field(min_length=1)


class SessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    sid: str
    source: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    current: bool = False

    @classmethod
    def from_session(cls, session: Session, current_sid: Optional[str]) -> "SessionResponse":
        return cls(
            sid=session.sid,
            source=session.source,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            created_at=session.created_at,
            last_activity_at=session.last_activity_at,
            expires_at=session.expires_at,
            current=session.sid == current_sid,
        )


class RevokedCountResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    revoked: int


class ImpersonateRequest(BaseModel):
    user_id: int


class ApiKeyCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)


class ApiKeyResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    key_prefix: str
    created_at: Optional[datetime] = None
    last_used: Optional[datetime] = None

    @classmethod
    def from_key(cls, key: ApiKey) -> "ApiKeyResponse":
        return cls(
            id=key.id, name=key.name, key_prefix=key.key_prefix, created_at=key.created_at, last_used=key.last_used
        )


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Includes the raw key. Shown once; never retrievable again."""

    key: str


# ---------------------------------------------------------------------------
# MFA
# ---------------------------------------------------------------------------


class MfaVerifyRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=6, max_length=16)
    trust_device: bool = False


class MfaSendResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    expires_in_minutes: int


class MfaEnableResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    secret: str
    provisioning_uri: str
    recovery_codes: list[str]


class MfaDisableRequest(BaseModel):
    password: str = Field(min_length=1, max_length=128)


class RecoveryCodesResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    recovery_codes: list[str]


class TrustedDeviceResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    device_name: str
    ip_address: Optional[str] = None
    last_seen_at: Optional[datetime] = None
    expires_at: datetime

    @classmethod
    def from_device(cls, device: TrustedDevice) -> "TrustedDeviceResponse":
        return cls(
            id=device.id,
            device_name=device.device_name,
            ip_address=device.ip_address,
            last_seen_at=device.last_seen_at,
            expires_at=device.expires_at,
        )


class MfaStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool
    totp_enrolled: bool
    recovery_codes_remaining: int
    trusted_devices: list[TrustedDeviceResponse]


# ---------------------------------------------------------------------------
# Companies
# ---------------------------------------------------------------------------


class CompanySummaryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    is_pinned: bool = False
    last_accessed_at: Optional[datetime] = None

    @classmethod
    def from_summary(cls, summary: CompanySummary) -> "CompanySummaryResponse":
        return cls(
            id=summary.id,
            name=summary.name,
            is_pinned=summary.is_pinned,
            last_accessed_at=summary.last_accessed_at,
        )


class CompanyListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    pinned: list[CompanySummaryResponse]
    recent: list[CompanySummaryResponse]
    results: list[CompanySummaryResponse]
    total: int
    has_more: bool


class ActiveCompanyResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    company: Optional[CompanyResponse] = None
    can_switch_companies: bool = False


class SwitchCompanyRequest(BaseModel):
    company_id: int


class PinCompanyRequest(BaseModel):
    is_pinned: bool


class InternalGrantRequest(BaseModel):
    company_id: int


class InternalGrantsResponse(BaseModel):
    """has_restrictions=False means the user can enter every company."""

    model_config = ConfigDict(frozen=True)

    has_restrictions: bool
    companies: list[CompanySummaryResponse]


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


class PermissionInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str
    description: str


class RoleCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100, pattern=r"^[A-Za-z][A-Za-z0-9_]*$")
    display_name: str = Field(default="", max_length=100)
    description: str = Field(default="", max_length=500)
    permissions: list[str] = Field(default_factory=list)
    is_default: bool = False


class RoleUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    display_name: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    permissions: Optional[list[str]] = None
    is_default: Optional[bool] = None


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    type: str
    display_name: str
    description: str
    company_id: Optional[int] = None
    permissions: list[str]
    company_permissions: list[str]
    is_default: bool

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            type=role.type.value,
            display_name=role.display_name,
            description=role.description,
            company_id=role.company_id,
            permissions=list(role.permissions),
            company_permissions=list(role.company_permissions),
            is_default=role.is_default,
        )


class RoleAssignRequest(BaseModel):
    user_id: int


class MyRolesResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    roles: list[RoleResponse]
    permissions: list[str]
    platform_permissions: list[str]


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class AuthorizeRequest(BaseModel):
    """Consent approval from the logged-in user (POST /api/v1/oauth/authorize)."""

    response_type: str = "code"
    client_id: str
    redirect_uri: str
    scope: Optional[str] = None
    state: str = Field(min_length=1)
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None


class AuthorizeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    state: str
    redirect_uri: str


class TokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: str
    scope: str


# ---------------------------------------------------------------------------
# Invites
# ---------------------------------------------------------------------------


class InviteCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    role_ids: list[int] = Field(default_factory=list, max_length=20)


class InviteResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    company_id: int
    role_ids: list[int]
    is_existing_user_invite: bool
    expires_at: datetime
    created_at: Optional[datetime] = None

    @classmethod
    def from_invite(cls, invite: UserInvite) -> "InviteResponse":
        return cls(
            id=invite.id,
            email=invite.email,
            company_id=invite.company_id,
            role_ids=list(invite.role_ids),
            is_existing_user_invite=invite.is_existing_user_invite,
            expires_at=invite.expires_at,
            created_at=invite.created_at,
        )


class InviteListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    invites: list[InviteResponse]
    total: int


class InviteValidateResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    email: str
    company_name: str
    is_existing_user: bool
    expires_at: datetime


class InviteAcceptRequest(BaseModel):
    """password and names are required only for new-user invites."""

    model_config = ConfigDict(str_strip_whitespace=True)

    token: str = Field(min_length=1)
    password: Optional[str] = Field(default=None, max_length=128)
    name_first: str = Field(default="", max_length=100)
    name_last: str = Field(default="", max_length=100)
