"""
api/routes/v1/auth.py -- Login, logout, passwords, sessions and API keys.

Routes:
  POST   /api/v1/auth/login                  -- password login; sets session cookie
  POST   /api/v1/auth/logout                 -- revokes the session, clears cookie
  GET    /api/v1/auth/me                     -- current identity (works before MFA)
  POST   /api/v1/auth/password/change        -- change own password
  POST   /api/v1/auth/password/forgot        -- always 200; mails a reset link
  POST   /api/v1/auth/password/reset         -- consume reset token
  POST   /api/v1/auth/email/verify           -- consume email verification token
  POST   /api/v1/auth/email/resend           -- always 200; mails a verification link
  GET    /api/v1/auth/sessions               -- own active sessions
  DELETE /api/v1/auth/sessions/{sid}         -- revoke one own session
  DELETE /api/v1/auth/sessions               -- revoke every other own session
  POST   /api/v1/auth/users/{id}/force-logout -- end every session of a user
  POST   /api/v1/auth/impersonate            -- act as another user (platform:admin)
  DELETE /api/v1/auth/impersonate            -- return to the original user
  POST   /api/v1/auth/api-keys               -- create API key (raw key shown once)
  GET    /api/v1/auth/api-keys               -- list own API keys
  DELETE /api/v1/auth/api-keys/{id}          -- revoke own key

Security:
  POST /login is rate-limited per IP (LOGIN_RATE_LIMIT).
  Unknown email and wrong password produce the same invalid_credentials error.
  Forgot-password and resend-verification answer identically for every email.
  Cache-Control: no-store on login responses.
  IDOR guard: session and API-key revocation are scoped by the caller's user id.
"""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import auth_rate_limit, limiter
from api.models import (
    ApiKeyCreate,
    ApiKeyCreatedResponse,
    ApiKeyResponse,
    CompanyResponse,
    ForgotPasswordRequest,
    ImpersonateRequest,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    PasswordChangeRequest,
    ResetPasswordRequest,
    RevokedCountResponse,
    SessionResponse,
    TokenRequest,
    UserResponse,
)
from auth.dependencies import (
    AuthContext,
    client_ip,
    get_auth,
    get_engine,
    get_session_id,
    require_permission,
    require_session,
    require_verified,
)
from auth.errors import NotFound, PermissionDenied
from auth.tokens import clear_session_cookie, set_session_cookie

# Auth policy:
# - login, logout, password/forgot, password/reset, email/*: public
# - GET /auth/me:                       any session, MFA pending allowed
# - impersonate (POST):                 platform:admin
# - users/{id}/force-logout:            user:update in the acting company
# - everything else:                    MFA-verified caller
router = APIRouter()

_GENERIC_RESET = "If that email is registered, a reset link has been sent."
_GENERIC_VERIFY = "If that email needs verification, a link has been sent."


def _user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent")


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


@limiter.limit(auth_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest, background: BackgroundTasks) -> JSONResponse:
    """Authenticate with email and password and bind a session.

    For MFA users the session is bound unverified and user is omitted from
    the response. Users without an authenticator app get an emailed code
    immediately, sent after the response.
    """
    engine = get_engine(request)
    settings = engine.settings
    pending = engine.sessions.ensure_pending(
        get_session_id(request),
        source=body.source.value,
        ip_address=client_ip(request),
        user_agent=_user_agent(request),
    )
    result = engine.login.login(
        body.email,
        body.password,
        sid=pending.sid,
        source=body.source.value,
        remember_me=body.remember_me,
        device_token=request.cookies.get(settings.trusted_device_cookie_name),
        revoke_session_id=body.revoke_session_id,
        ip_address=client_ip(request),
        user_agent=_user_agent(request),
    )

    if result.requires_mfa and not result.user.totp_secret:
        issued = engine.mfa.send_code(result.session)
        background.add_task(engine.notifier.send_mfa_code, issued.user.email, issued.code, issued.expires_in_minutes)

    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            user=None if result.requires_mfa else UserResponse.from_user(result.user),
            requires_mfa=result.requires_mfa,
            can_switch_companies=result.can_switch_companies,
            active_company=CompanyResponse.from_company(result.company),
        ).model_dump(mode="json"),
        background=background,
    )
    set_session_cookie(resp, result.session.sid, settings.session_absolute_days * 24 * 3600)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Revoke the current session (if any) and clear the cookie."""
    sid = get_session_id(request)
    if sid:
        get_engine(request).sessions.logout(sid, ip_address=client_ip(request))
    resp = JSONResponse(content={"message": "Logged out."})
    clear_session_cookie(resp)
    return resp


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, ctx: AuthContext = Depends(get_auth)) -> MeResponse:
    """Identity of the caller. Before MFA verification only requires_mfa is reported."""
    if not ctx.mfa_verified:
        return MeResponse(requires_mfa=True, auth_method=ctx.method)
    company = get_engine(request).store.get_company(ctx.company_id) if ctx.company_id else None
    return MeResponse(
        user=UserResponse.from_user(ctx.user),
        active_company=CompanyResponse.from_company(company) if company else None,
        impersonated_by=ctx.impersonator_id,
        auth_method=ctx.method,
    )


# ---------------------------------------------------------------------------
# Passwords and email verification
# ---------------------------------------------------------------------------


@router.post("/auth/password/change", response_model=MessageResponse)
def change_password(
    request: Request, body: PasswordChangeRequest, ctx: AuthContext = Depends(require_verified)
) -> MessageResponse:
    """Change own password; every other session of the user is revoked."""
    engine = get_engine(request)
    engine.credentials.change_password(
        ctx.user.id, body.new_password, current_password=body.current_password, ip_address=client_ip(request)
    )
    engine.sessions.revoke_all(
        ctx.user.id, except_sid=ctx.session.sid if ctx.session else None, reason="password_changed"
    )
    return MessageResponse(message="Password changed.")


@limiter.limit(auth_rate_limit)
@router.post("/auth/password/forgot", response_model=MessageResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest, background: BackgroundTasks) -> MessageResponse:
    engine = get_engine(request)
    issued = engine.credentials.request_password_reset(body.email, ip_address=client_ip(request))
    if issued is not None:
        background.add_task(engine.notifier.send_password_reset, issued.user.email, issued.token)
    return MessageResponse(message=_GENERIC_RESET)


@router.post("/auth/password/reset", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    """Set a new password from a reset link. All sessions and OAuth tokens end."""
    engine = get_engine(request)
    user = engine.credentials.reset_password(body.token, body.new_password, ip_address=client_ip(request))
    engine.oauth.revoke_user_tokens(user.id, "password_reset")
    return MessageResponse(message="Password has been reset. Please log in.")


@router.post("/auth/email/verify", response_model=MessageResponse)
def verify_email(request: Request, body: TokenRequest) -> MessageResponse:
    get_engine(request).credentials.verify_email(body.token)
    return MessageResponse(message="Email verified.")


@limiter.limit(auth_rate_limit)
@router.post("/auth/email/resend", response_model=MessageResponse)
def resend_verification(
    request: Request, body: ForgotPasswordRequest, background: BackgroundTasks
) -> MessageResponse:
    engine = get_engine(request)
    user = engine.store.get_user_by_email(body.email)
    if user is not None and user.is_active and not user.email_verified:
        token = engine.credentials.issue_email_verification(user.id)
        background.add_task(engine.notifier.send_email_verification, user.email, token)
    return MessageResponse(message=_GENERIC_VERIFY)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(request: Request, ctx: AuthContext = Depends(require_verified)) -> list[SessionResponse]:
    current = ctx.session.sid if ctx.session else None
    return [
        SessionResponse.from_session(s, current) for s in get_engine(request).sessions.list_active(ctx.user.id)
    ]


@router.delete("/auth/sessions/{sid}", response_model=MessageResponse)
def revoke_session(sid: str, request: Request, ctx: AuthContext = Depends(require_verified)) -> MessageResponse:
    if not get_engine(request).sessions.revoke(sid, "user_revoked", user_id=ctx.user.id):
        raise NotFound("Session not found.")
    return MessageResponse(message="Session revoked.")


@router.delete("/auth/sessions", response_model=RevokedCountResponse)
def revoke_other_sessions(request: Request, ctx: AuthContext = Depends(require_verified)) -> RevokedCountResponse:
    count = get_engine(request).sessions.revoke_all(
        ctx.user.id, except_sid=ctx.session.sid if ctx.session else None, reason="user_revoked_all"
    )
    return RevokedCountResponse(revoked=count)


@router.post("/auth/users/{user_id}/force-logout", response_model=MessageResponse)
def force_logout(
    user_id: int, request: Request, ctx: AuthContext = Depends(require_permission("user:update"))
) -> MessageResponse:
    """End every session of a user who belongs to the caller's acting company."""
    engine = get_engine(request)
    is_member = engine.store.read(lambda conn: engine.access.is_active_member_in(conn, user_id, ctx.company_id))
    if not is_member:
        raise NotFound("User not found.")
    engine.sessions.force_logout(user_id, actor_id=ctx.user.id)
    return MessageResponse(message="User logged out everywhere.")


@router.post("/auth/impersonate", response_model=MeResponse)
def start_impersonation(
    request: Request,
    body: ImpersonateRequest,
    ctx: AuthContext = Depends(require_permission("platform:admin")),
) -> MeResponse:
    if ctx.session is None:
        raise PermissionDenied("Impersonation requires a browser session.")
    engine = get_engine(request)
    session = engine.sessions.start_impersonation(ctx.session.sid, ctx.user, body.user_id)
    target = engine.store.get_user(session.user_id)
    company = engine.store.get_company(session.active_company_id)
    return MeResponse(
        user=UserResponse.from_user(target),
        active_company=CompanyResponse.from_company(company) if company else None,
        impersonated_by=session.source_user_id,
    )


@router.delete("/auth/impersonate", response_model=MeResponse)
def end_impersonation(request: Request, ctx: AuthContext = Depends(require_session)) -> MeResponse:
    engine = get_engine(request)
    session = engine.sessions.end_impersonation(ctx.session.sid)
    origin = engine.store.get_user(session.user_id)
    company = engine.store.get_company(session.active_company_id)
    return MeResponse(
        user=UserResponse.from_user(origin),
        active_company=CompanyResponse.from_company(company) if company else None,
    )


# ---------------------------------------------------------------------------
# API key management
# ---------------------------------------------------------------------------


@router.post("/auth/api-keys", response_model=ApiKeyCreatedResponse, status_code=201)
def create_api_key(
    request: Request, body: ApiKeyCreate, ctx: AuthContext = Depends(require_verified)
) -> ApiKeyCreatedResponse:
    """Generate a new API key. The raw key is shown ONCE and never stored."""
    created = get_engine(request).api_keys.create(ctx.user.id, body.name)
    base = ApiKeyResponse.from_key(created.key)
    return ApiKeyCreatedResponse(**base.model_dump(), key=created.raw_key)


@router.get("/auth/api-keys", response_model=list[ApiKeyResponse])
def list_api_keys(request: Request, ctx: AuthContext = Depends(require_verified)) -> list[ApiKeyResponse]:
    return [ApiKeyResponse.from_key(k) for k in get_engine(request).api_keys.list(ctx.user.id)]


@router.delete("/auth/api-keys/{key_id}", response_model=MessageResponse)
def revoke_api_key(key_id: int, request: Request, ctx: AuthContext = Depends(require_verified)) -> MessageResponse:
    get_engine(request).api_keys.revoke(key_id, ctx.user.id)
    return MessageResponse(message="API key revoked.")
