"""
api/routes/v1/mfa.py -- Second-factor verification and MFA management.

Routes:
  POST   /api/v1/auth/mfa/send              -- email a code for the pending session
  POST   /api/v1/auth/mfa/verify            -- verify TOTP / emailed / recovery code
  POST   /api/v1/auth/mfa/enable            -- enrol TOTP; returns secret + recovery codes
  POST   /api/v1/auth/mfa/disable           -- requires the current password
  GET    /api/v1/auth/mfa/status            -- enabled flag, remaining codes, devices
  POST   /api/v1/auth/mfa/recovery-codes    -- replace recovery codes
  GET    /api/v1/auth/mfa/devices           -- trusted devices
  DELETE /api/v1/auth/mfa/devices/{id}      -- forget one trusted device
  DELETE /api/v1/auth/mfa/devices           -- forget all trusted devices

send and verify accept a session that is still waiting for MFA; the rest
require a verified caller. verify is rate-limited like login.
"""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import auth_rate_limit, limiter
from api.models import (
    MessageResponse,
    MfaDisableRequest,
    MfaEnableResponse,
    MfaSendResponse,
    MfaStatusResponse,
    MfaVerifyRequest,
    RecoveryCodesResponse,
    RevokedCountResponse,
    TrustedDeviceResponse,
)
from auth.dependencies import AuthContext, client_ip, get_auth, get_engine, require_verified
from auth.errors import InvalidCredentials, Unauthenticated
from auth.tokens import set_device_cookie, verify_password

router = APIRouter()


def _pending_session(ctx: AuthContext):
    if ctx.session is None:
        raise Unauthenticated("MFA verification needs a session.")
    return ctx.session


@router.post("/auth/mfa/send", response_model=MfaSendResponse)
def send_code(request: Request, background: BackgroundTasks, ctx: AuthContext = Depends(get_auth)) -> MfaSendResponse:
    """Email a one-time code. Delivery happens after the response is sent."""
    engine = get_engine(request)
    issued = engine.mfa.send_code(_pending_session(ctx))
    background.add_task(engine.notifier.send_mfa_code, issued.user.email, issued.code, issued.expires_in_minutes)
    return MfaSendResponse(message="Verification code sent.", expires_in_minutes=issued.expires_in_minutes)


@limiter.limit(auth_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/mfa/verify", response_model=MessageResponse)
def verify(request: Request, body: MfaVerifyRequest, ctx: AuthContext = Depends(get_auth)) -> JSONResponse:
    engine = get_engine(request)
    result = engine.mfa.verify(
        _pending_session(ctx),
        body.code,
        trust_device=body.trust_device,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    resp = JSONResponse(content={"message": "Verification successful."})
    if result.device_token:
        set_device_cookie(resp, result.device_token, engine.settings.trusted_device_days * 24 * 3600)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/mfa/enable", response_model=MfaEnableResponse)
def enable(request: Request, ctx: AuthContext = Depends(require_verified)) -> JSONResponse:
    setup = get_engine(request).mfa.enable(ctx.user.id)
    resp = JSONResponse(
        content=MfaEnableResponse(
            secret=setup.secret, provisioning_uri=setup.provisioning_uri, recovery_codes=setup.recovery_codes
        ).model_dump()
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/mfa/disable", response_model=MessageResponse)
def disable(request: Request, body: MfaDisableRequest, ctx: AuthContext = Depends(require_verified)) -> MessageResponse:
    if not ctx.user.password_hash or not verify_password(body.password, ctx.user.password_hash):
        raise InvalidCredentials("Password is incorrect.")
    get_engine(request).mfa.disable(ctx.user.id)
    return MessageResponse(message="Two-factor authentication disabled.")


@router.get("/auth/mfa/status", response_model=MfaStatusResponse)
def status(request: Request, ctx: AuthContext = Depends(require_verified)) -> MfaStatusResponse:
    current = get_engine(request).mfa.status(ctx.user.id)
    return MfaStatusResponse(
        enabled=current.enabled,
        totp_enrolled=current.totp_enrolled,
        recovery_codes_remaining=current.recovery_codes_remaining,
        trusted_devices=[TrustedDeviceResponse.from_device(d) for d in current.trusted_devices],
    )


@router.post("/auth/mfa/recovery-codes", response_model=RecoveryCodesResponse)
def regenerate_recovery_codes(request: Request, ctx: AuthContext = Depends(require_verified)) -> JSONResponse:
    codes = get_engine(request).mfa.regenerate_recovery_codes(ctx.user.id)
    resp = JSONResponse(content={"recovery_codes": codes})
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/auth/mfa/devices", response_model=list[TrustedDeviceResponse])
def list_devices(request: Request, ctx: AuthContext = Depends(require_verified)) -> list[TrustedDeviceResponse]:
    return [TrustedDeviceResponse.from_device(d) for d in get_engine(request).mfa.list_trusted_devices(ctx.user.id)]


@router.delete("/auth/mfa/devices/{device_id}", response_model=MessageResponse)
def remove_device(device_id: int, request: Request, ctx: AuthContext = Depends(require_verified)) -> MessageResponse:
    get_engine(request).mfa.remove_trusted_device(ctx.user.id, device_id)
    return MessageResponse(message="Trusted device removed.")


@router.delete("/auth/mfa/devices", response_model=RevokedCountResponse)
def clear_devices(request: Request, ctx: AuthContext = Depends(require_verified)) -> RevokedCountResponse:
    return RevokedCountResponse(revoked=get_engine(request).mfa.clear_trusted_devices(ctx.user.id))
