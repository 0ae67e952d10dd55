"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Three auth methods are checked in priority order:
  1. Session cookie ("sid") -- set by POST /auth/login.
  2. Authorization: Bearer <token> header -- OAuth access tokens issued by
     /oauth/token to third-party clients.
  3. X-API-Key header -- CI/CD and scripts using long-lived API keys.

All three converge on an AuthContext (user, acting company, how the caller
authenticated). The context is resolved once per request and cached on
request.state, since resolving a session slides its expiry.

try_get_auth() is the soft variant (returns None on failure).
get_auth() raises Unauthenticated. It accepts sessions still waiting for
MFA, which /auth/me and the MFA endpoints need.
require_verified() additionally rejects such sessions with MfaRequired;
every other protected route depends on it (directly or via
require_permission). Bearer and API-key callers count as verified.

Errors are AuthError subclasses; api/main.py renders them.

Layer rule: no imports from api/. This module may import from fastapi
because it is part of the dependency injection system.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, Request

from auth.engine import AuthEngine
from auth.errors import MfaRequired, PermissionDenied, Unauthenticated
from auth.models import Session, User
from auth.permissions import is_platform_permission

_UNSET = object()


@dataclass
class AuthContext:
    user: User
    method: str
    company_id: int | None
    mfa_verified: bool = True
    session: Session | None = None
    scopes: list[str] | None = None

    @property
    def impersonator_id(self) -> int | None:
        return self.session.source_user_id if self.session else None


def get_engine(request: Request) -> AuthEngine:
    return request.app.state.engine


def get_session_id(request: Request) -> str | None:
    engine = get_engine(request)
    return request.cookies.get(engine.settings.session_cookie_name) or None


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _resolve(request: Request) -> AuthContext | None:
    engine = get_engine(request)

    # 1. Session cookie
    sid = get_session_id(request)
    if sid:
        resolved = engine.sessions.resolve(sid)
        if resolved is not None:
            session, user = resolved
            return AuthContext(
                user=user,
                method="session",
                company_id=session.active_company_id,
                mfa_verified=session.mfa_verified,
                session=session,
            )

    # 2. Authorization: Bearer (OAuth access token)
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = engine.oauth.authenticate_access_token(auth_header[7:].strip())
        if token is not None:
            user = engine.store.get_user(token.user_id)
            if user is not None and user.is_active:
                return AuthContext(
                    user=user,
                    method="bearer",
                    company_id=token.company_id or user.company_id,
                    scopes=token.scopes,
                )

    # 3. X-API-Key
    raw_key = request.headers.get("X-API-Key", "")
    if raw_key:
        authenticated = engine.api_keys.authenticate(raw_key)
        if authenticated is not None:
            _, user = authenticated
            return AuthContext(user=user, method="api_key", company_id=user.company_id)

    return None


def try_get_auth(request: Request) -> AuthContext | None:
    """Authenticate the request. Never raises."""
    cached = getattr(request.state, "auth", _UNSET)
    if cached is _UNSET:
        cached = _resolve(request)
        request.state.auth = cached
    return cached


def get_auth(request: Request) -> AuthContext:
    ctx = try_get_auth(request)
    if ctx is None:
        raise Unauthenticated()
    return ctx


def get_current_user(request: Request) -> User:
    return get_auth(request).user


def require_verified(request: Request) -> AuthContext:
    ctx = get_auth(request)
    if not ctx.mfa_verified:
        raise MfaRequired()
    return ctx


def require_session(ctx: AuthContext = Depends(require_verified)) -> AuthContext:
    """Routes that operate on the caller's own session (switching, impersonation)."""
    if ctx.session is None:
        raise PermissionDenied("This action requires a browser session.")
    return ctx


def require_permission(permission: str):
    """Dependency factory: the caller must hold `permission` in its acting company.

    Usage:
        @router.post("/roles")
        async def route(ctx: AuthContext = Depends(require_permission("role:create"))): ...
    """

    def _check(request: Request, ctx: AuthContext = Depends(require_verified)) -> AuthContext:
        resolver = get_engine(request).permissions
        company_id = None if is_platform_permission(permission) else ctx.company_id
        if not resolver.has(ctx.user.id, company_id, permission):
            raise PermissionDenied(details={"required": permission})
        return ctx

    return _check
