"""
api/routes/v1/companies.py -- Company context, memberships and internal-user grants.

Routes:
  GET    /api/v1/users/me/companies                      -- pinned, recent and paged results
  GET    /api/v1/users/me/active-company                 -- company of the current session
  POST   /api/v1/users/me/switch-company                 -- change the session's company
  PATCH  /api/v1/users/me/companies/{company_id}         -- pin / unpin
  DELETE /api/v1/users/{user_id}/membership              -- deactivate in acting company
  POST   /api/v1/users/{user_id}/membership/reactivate   -- reactivate in acting company
  GET    /api/v1/internal-users/{id}/companies           -- allow-list of an internal user
  POST   /api/v1/internal-users/{id}/companies           -- add a company to the allow-list
  DELETE /api/v1/internal-users/{id}/companies/{cid}     -- remove a company

Switching checks membership before existence: for company users and
restricted internal users an unknown company and a company the caller
cannot enter both answer 403 no_active_membership. An unrestricted internal
user may enter any company, so an unknown id answers 404 company_not_found.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from api.models import (
    ActiveCompanyResponse,
    CompanyListResponse,
    CompanyResponse,
    CompanySummaryResponse,
    InternalGrantRequest,
    InternalGrantsResponse,
    MessageResponse,
    PinCompanyRequest,
    RevokedCountResponse,
    SwitchCompanyRequest,
)
from auth.access import MAX_PAGE_SIZE
from auth.dependencies import AuthContext, client_ip, get_engine, require_permission, require_session, require_verified

# Auth policy:
# - /users/me/*:                    MFA-verified caller (switch needs a session)
# - /users/{id}/membership*:        user:activate in the acting company
# - /internal-users/*:              platform:manage_internal_users
router = APIRouter()


# ---------------------------------------------------------------------------
# Own company context
# ---------------------------------------------------------------------------


@router.get("/users/me/companies", response_model=CompanyListResponse)
def list_my_companies(
    request: Request,
    search: str | None = Query(default=None, max_length=100),
    limit: int = Query(default=20, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(default=0, ge=0),
    ctx: AuthContext = Depends(require_verified),
) -> CompanyListResponse:
    listing = get_engine(request).access.list_companies(ctx.user, search=search, limit=limit, offset=offset)
    return CompanyListResponse(
        pinned=[CompanySummaryResponse.from_summary(c) for c in listing.pinned],
        recent=[CompanySummaryResponse.from_summary(c) for c in listing.recent],
        results=[CompanySummaryResponse.from_summary(c) for c in listing.results],
        total=listing.total,
        has_more=listing.has_more,
    )


@router.get("/users/me/active-company", response_model=ActiveCompanyResponse)
def active_company(request: Request, ctx: AuthContext = Depends(require_verified)) -> ActiveCompanyResponse:
    engine = get_engine(request)
    company = engine.store.get_company(ctx.company_id) if ctx.company_id else None
    return ActiveCompanyResponse(
        company=CompanyResponse.from_company(company) if company else None,
        can_switch_companies=engine.access.can_switch_companies(ctx.user),
    )


@router.post("/users/me/switch-company", response_model=ActiveCompanyResponse)
def switch_company(
    request: Request, body: SwitchCompanyRequest, ctx: AuthContext = Depends(require_session)
) -> ActiveCompanyResponse:
    engine = get_engine(request)
    company = engine.access.switch_company(ctx.session.sid, body.company_id, ip_address=client_ip(request))
    return ActiveCompanyResponse(
        company=CompanyResponse.from_company(company),
        can_switch_companies=engine.access.can_switch_companies(ctx.user),
    )


@router.patch("/users/me/companies/{company_id}", response_model=MessageResponse)
def pin_company(
    company_id: int, request: Request, body: PinCompanyRequest, ctx: AuthContext = Depends(require_verified)
) -> MessageResponse:
    get_engine(request).access.set_pinned(ctx.user, company_id, body.is_pinned)
    return MessageResponse(message="Company pinned." if body.is_pinned else "Company unpinned.")


# ---------------------------------------------------------------------------
# Membership administration (acting company only)
# ---------------------------------------------------------------------------


@router.delete("/users/{user_id}/membership", response_model=RevokedCountResponse)
def deactivate_membership(
    user_id: int, request: Request, ctx: AuthContext = Depends(require_permission("user:activate"))
) -> RevokedCountResponse:
    """Deactivate a member; their sessions in this company end immediately."""
    revoked = get_engine(request).access.deactivate_membership(user_id, ctx.company_id, actor_id=ctx.user.id)
    return RevokedCountResponse(revoked=revoked)


@router.post("/users/{user_id}/membership/reactivate", response_model=MessageResponse)
def reactivate_membership(
    user_id: int, request: Request, ctx: AuthContext = Depends(require_permission("user:activate"))
) -> MessageResponse:
    get_engine(request).access.reactivate_membership(user_id, ctx.company_id, actor_id=ctx.user.id)
    return MessageResponse(message="Membership reactivated.")


# ---------------------------------------------------------------------------
# Internal-user allow-list
# ---------------------------------------------------------------------------

_manage_internal = require_permission("platform:manage_internal_users")


def _grants_response(request: Request, user_id: int) -> InternalGrantsResponse:
    grants = get_engine(request).access.list_internal_grants(user_id)
    return InternalGrantsResponse(
        has_restrictions=grants.has_restrictions,
        companies=[CompanySummaryResponse.from_summary(c) for c in grants.companies],
    )


@router.get("/internal-users/{user_id}/companies", response_model=InternalGrantsResponse)
def list_internal_companies(
    user_id: int, request: Request, ctx: AuthContext = Depends(_manage_internal)
) -> InternalGrantsResponse:
    return _grants_response(request, user_id)


@router.post("/internal-users/{user_id}/companies", response_model=InternalGrantsResponse, status_code=201)
def grant_internal_company(
    user_id: int, request: Request, body: InternalGrantRequest, ctx: AuthContext = Depends(_manage_internal)
) -> InternalGrantsResponse:
    get_engine(request).access.grant_internal_access(user_id, body.company_id, actor_id=ctx.user.id)
    return _grants_response(request, user_id)


@router.delete("/internal-users/{user_id}/companies/{company_id}", response_model=InternalGrantsResponse)
def revoke_internal_company(
    user_id: int, company_id: int, request: Request, ctx: AuthContext = Depends(_manage_internal)
) -> InternalGrantsResponse:
    get_engine(request).access.revoke_internal_access(user_id, company_id, actor_id=ctx.user.id)
    return _grants_response(request, user_id)
