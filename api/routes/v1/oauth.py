"""
api/routes/v1/oauth.py -- OAuth 2.0 authorization-code grant with refresh rotation.

Routes:
  GET  /api/v1/oauth/scopes       -- scope catalog for consent screens
  POST /api/v1/oauth/authorize    -- approve consent; returns a one-time code
  POST /api/v1/oauth/token        -- authorization_code or refresh_token grant
  POST /api/v1/oauth/revoke       -- RFC 7009; always 200
  POST /api/v1/oauth/introspect   -- RFC 7662; inactive tokens are {"active": false}

/authorize is called by the first-party consent page on behalf of the
signed-in user, so it needs a verified session. The other three are called
by the client application with form-encoded bodies. Client credentials are
accepted in the form or as HTTP Basic.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from api.limiter import auth_rate_limit, limiter
from api.models import AuthorizeRequest, AuthorizeResponse, TokenResponse
from auth.dependencies import AuthContext, get_engine, require_verified
from auth.errors import UnsupportedGrantType, ValidationFailed
from auth.models import TokenPair
from auth.oauth_server import OAUTH_SCOPES

router = APIRouter()

_basic = HTTPBasic(auto_error=False)


def _client_credentials(
    client_id: str | None, client_secret: str | None, basic: HTTPBasicCredentials | None
) -> tuple[str | None, str | None]:
    if basic is not None:
        return basic.username, basic.password
    return client_id, client_secret


def _token_response(pair: TokenPair) -> JSONResponse:
    body = TokenResponse(
        access_token=pair.access_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
        refresh_token=pair.refresh_token,
        scope=" ".join(pair.scopes),
    )
    resp = JSONResponse(content=body.model_dump())
    resp.headers["Cache-Control"] = "no-store"
    resp.headers["Pragma"] = "no-cache"
    return resp


@router.get("/oauth/scopes", response_model=dict[str, str])
def list_scopes() -> dict[str, str]:
    return dict(OAUTH_SCOPES)


@router.post("/oauth/authorize", response_model=AuthorizeResponse)
def authorize(
    request: Request, body: AuthorizeRequest, ctx: AuthContext = Depends(require_verified)
) -> AuthorizeResponse:
    """Issue an authorization code bound to the caller's active company."""
    if body.response_type != "code":
        raise ValidationFailed("Only response_type=code is supported.")
    code = get_engine(request).oauth.issue_code(
        body.client_id,
        ctx.user.id,
        body.redirect_uri,
        state=body.state,
        scopes=body.scope,
        code_challenge=body.code_challenge,
        code_challenge_method=body.code_challenge_method,
        company_id=ctx.company_id,
    )
    return AuthorizeResponse(code=code, state=body.state, redirect_uri=body.redirect_uri)


@limiter.limit(auth_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/oauth/token", response_model=TokenResponse)
def token(
    request: Request,
    grant_type: str = Form(...),
    code: str | None = Form(default=None),
    redirect_uri: str | None = Form(default=None),
    code_verifier: str | None = Form(default=None),
    refresh_token: str | None = Form(default=None),
    scope: str | None = Form(default=None),
    client_id: str | None = Form(default=None),
    client_secret: str | None = Form(default=None),
    basic: HTTPBasicCredentials | None = Depends(_basic),
) -> JSONResponse:
    oauth = get_engine(request).oauth
    client_id, client_secret = _client_credentials(client_id, client_secret, basic)

    if grant_type == "authorization_code":
        if not code:
            raise ValidationFailed("code is required.")
        pair = oauth.exchange_code(
            code,
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=redirect_uri,
            code_verifier=code_verifier,
        )
    elif grant_type == "refresh_token":
        if not refresh_token:
            raise ValidationFailed("refresh_token is required.")
        pair = oauth.refresh(refresh_token, client_id=client_id, client_secret=client_secret, scopes=scope)
    else:
        raise UnsupportedGrantType()
    return _token_response(pair)


@router.post("/oauth/revoke")
def revoke(
    request: Request,
    token: str = Form(default=""),
    client_id: str | None = Form(default=None),
    client_secret: str | None = Form(default=None),
    basic: HTTPBasicCredentials | None = Depends(_basic),
) -> JSONResponse:
    """Revoke a token. Unknown or foreign tokens still answer 200."""
    client_id, _ = _client_credentials(client_id, client_secret, basic)
    if token:
        get_engine(request).oauth.revoke(token, client_id=client_id)
    return JSONResponse(content={})


@router.post("/oauth/introspect")
def introspect(request: Request, token: str = Form(default="")) -> JSONResponse:
    resp = JSONResponse(content=get_engine(request).oauth.introspect(token))
    resp.headers["Cache-Control"] = "no-store"
    return resp
