"""
api/routes/v1/invites.py -- Company invitations.

Routes:
  POST   /api/v1/users/invites                -- invite an email into the acting company
  GET    /api/v1/users/invites                -- pending invites (expired ones included)
  DELETE /api/v1/users/invites/{id}           -- revoke a pending invite
  POST   /api/v1/users/invites/{id}/resend    -- new token and expiry, mail again
  GET    /api/v1/invites/validate?token=      -- public: who and where the invite is for
  POST   /api/v1/invites/accept               -- public for new users; existing users log in first

Invite emails are sent from BackgroundTasks after the response; the raw token
never appears in a response body.
"""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request

from api.models import (
    InviteAcceptRequest,
    InviteCreate,
    InviteListResponse,
    InviteResponse,
    InviteValidateResponse,
    MessageResponse,
    UserResponse,
)
from auth.dependencies import AuthContext, client_ip, get_engine, require_permission, try_get_auth
from auth.invites import IssuedInvite

router = APIRouter()


def _mail(background: BackgroundTasks, request: Request, issued: IssuedInvite) -> None:
    background.add_task(
        get_engine(request).notifier.send_invite,
        issued.invite.email,
        issued.token,
        issued.company.name,
        existing_user=issued.invite.is_existing_user_invite,
    )


@router.post("/users/invites", response_model=InviteResponse, status_code=201)
def create_invite(
    request: Request,
    body: InviteCreate,
    background: BackgroundTasks,
    ctx: AuthContext = Depends(require_permission("user:create")),
) -> InviteResponse:
    issued = get_engine(request).invites.create(
        body.email, ctx.company_id, invited_by_id=ctx.user.id, role_ids=body.role_ids
    )
    _mail(background, request, issued)
    return InviteResponse.from_invite(issued.invite)


@router.get("/users/invites", response_model=InviteListResponse)
def list_invites(
    request: Request,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    ctx: AuthContext = Depends(require_permission("user:read")),
) -> InviteListResponse:
    invites, total = get_engine(request).invites.list_pending(ctx.company_id, limit=limit, offset=offset)
    return InviteListResponse(invites=[InviteResponse.from_invite(i) for i in invites], total=total)


@router.delete("/users/invites/{invite_id}", response_model=MessageResponse)
def revoke_invite(
    invite_id: int, request: Request, ctx: AuthContext = Depends(require_permission("user:create"))
) -> MessageResponse:
    get_engine(request).invites.revoke(invite_id, ctx.company_id, actor_id=ctx.user.id)
    return MessageResponse(message="Invitation revoked.")


@router.post("/users/invites/{invite_id}/resend", response_model=InviteResponse)
def resend_invite(
    invite_id: int,
    request: Request,
    background: BackgroundTasks,
    ctx: AuthContext = Depends(require_permission("user:create")),
) -> InviteResponse:
    issued = get_engine(request).invites.resend(invite_id, ctx.company_id)
    _mail(background, request, issued)
    return InviteResponse.from_invite(issued.invite)


@router.get("/invites/validate", response_model=InviteValidateResponse)
def validate_invite(request: Request, token: str = Query(min_length=1)) -> InviteValidateResponse:
    details = get_engine(request).invites.validate(token)
    return InviteValidateResponse(
        email=details.email,
        company_name=details.company_name,
        is_existing_user=details.is_existing_user,
        expires_at=details.invite.expires_at,
    )


@router.post("/invites/accept", response_model=UserResponse)
def accept_invite(request: Request, body: InviteAcceptRequest) -> UserResponse:
    """Accept an invitation.

    New-user invites create the account and need no session. Existing-user
    invites must be accepted by that user while fully signed in.
    """
    ctx = try_get_auth(request)
    current_user_id = ctx.user.id if ctx is not None and ctx.mfa_verified else None
    user = get_engine(request).invites.accept(
        body.token,
        password=body.password,
        name_first=body.name_first,
        name_last=body.name_last,
        current_user_id=current_user_id,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return UserResponse.from_user(user)
