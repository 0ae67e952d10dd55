"""
api/routes/v1/roles.py -- Role catalogue, custom roles and role assignment.

Routes:
  GET    /api/v1/roles/permissions              -- permission catalog by category
  GET    /api/v1/roles/me                       -- caller's roles and effective permissions
  GET    /api/v1/roles                          -- SYSTEM roles plus the company's own
  POST   /api/v1/roles                          -- create a COMPANY role
  PATCH  /api/v1/roles/{role_id}                -- edit a COMPANY or PLATFORM role
  DELETE /api/v1/roles/{role_id}                -- delete a COMPANY or PLATFORM role
  POST   /api/v1/roles/{role_id}/assign         -- assign to a member
  DELETE /api/v1/roles/{role_id}/assign/{uid}   -- revoke from a member

Every route acts inside the caller's active company. A role owned by another
company answers 404, never 403.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import (
    MessageResponse,
    MyRolesResponse,
    PermissionInfo,
    RoleAssignRequest,
    RoleCreate,
    RoleResponse,
    RoleUpdate,
)
from auth.dependencies import AuthContext, get_engine, require_permission, require_verified
from auth.errors import NotFound, ValidationFailed
from auth.models import RoleType
from auth.permissions import permissions_by_category

router = APIRouter()


def _require_member(request: Request, user_id: int, company_id: int) -> None:
    engine = get_engine(request)
    if not engine.store.read(lambda conn: engine.access.is_active_member_in(conn, user_id, company_id)):
        raise NotFound("User is not a member of this company.")


def _check_reachable(request: Request, ctx: AuthContext, role_id: int) -> None:
    """PLATFORM roles are only visible to callers who manage internal users."""
    engine = get_engine(request)
    role = engine.permissions.get_role(role_id)
    if role is None:
        raise NotFound("Role not found.")
    if role.type == RoleType.PLATFORM and not engine.permissions.has(
        ctx.user.id, None, "platform:manage_internal_users"
    ):
        raise NotFound("Role not found.")


@router.get("/roles/permissions", response_model=dict[str, list[PermissionInfo]])
def list_permissions(ctx: AuthContext = Depends(require_verified)) -> dict[str, list[PermissionInfo]]:
    return {
        category: [PermissionInfo(name=p["permission"], label=p["label"], description=p["description"]) for p in perms]
        for category, perms in permissions_by_category().items()
    }


@router.get("/roles/me", response_model=MyRolesResponse)
def my_roles(request: Request, ctx: AuthContext = Depends(require_verified)) -> MyRolesResponse:
    resolver = get_engine(request).permissions
    return MyRolesResponse(
        roles=[RoleResponse.from_role(r) for r in resolver.list_user_roles(ctx.user.id, ctx.company_id)],
        permissions=sorted(resolver.effective_permissions(ctx.user.id, ctx.company_id)),
        platform_permissions=sorted(resolver.platform_permissions(ctx.user.id)),
    )


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(request: Request, ctx: AuthContext = Depends(require_permission("role:read"))) -> list[RoleResponse]:
    return [RoleResponse.from_role(r) for r in get_engine(request).permissions.list_available_roles(ctx.company_id)]


@router.post("/roles", response_model=RoleResponse, status_code=201)
def create_role(
    request: Request, body: RoleCreate, ctx: AuthContext = Depends(require_permission("role:create"))
) -> RoleResponse:
    role = get_engine(request).permissions.create_role(
        body.name,
        role_type=RoleType.COMPANY,
        company_id=ctx.company_id,
        permissions=body.permissions,
        display_name=body.display_name,
        description=body.description,
        is_default=body.is_default,
    )
    return RoleResponse.from_role(role)


@router.patch("/roles/{role_id}", response_model=RoleResponse)
def update_role(
    role_id: int, request: Request, body: RoleUpdate, ctx: AuthContext = Depends(require_permission("role:update"))
) -> RoleResponse:
    _check_reachable(request, ctx, role_id)
    changes = body.model_dump(exclude_none=True)
    if not changes:
        raise ValidationFailed("No changes supplied.")
    role = get_engine(request).permissions.update_role(role_id, company_id=ctx.company_id, **changes)
    return RoleResponse.from_role(role)


@router.delete("/roles/{role_id}", response_model=MessageResponse)
def delete_role(
    role_id: int, request: Request, ctx: AuthContext = Depends(require_permission("role:delete"))
) -> MessageResponse:
    _check_reachable(request, ctx, role_id)
    get_engine(request).permissions.delete_role(role_id, company_id=ctx.company_id)
    return MessageResponse(message="Role deleted.")


@router.post("/roles/{role_id}/assign", response_model=MessageResponse, status_code=201)
def assign_role(
    role_id: int,
    request: Request,
    body: RoleAssignRequest,
    ctx: AuthContext = Depends(require_permission("role:assign")),
) -> MessageResponse:
    _require_member(request, body.user_id, ctx.company_id)
    _check_reachable(request, ctx, role_id)
    get_engine(request).permissions.assign_role(body.user_id, role_id, ctx.company_id, actor_id=ctx.user.id)
    return MessageResponse(message="Role assigned.")


@router.delete("/roles/{role_id}/assign/{user_id}", response_model=MessageResponse)
def revoke_role(
    role_id: int, user_id: int, request: Request, ctx: AuthContext = Depends(require_permission("role:assign"))
) -> MessageResponse:
    _require_member(request, user_id, ctx.company_id)
    _check_reachable(request, ctx, role_id)
    if not get_engine(request).permissions.revoke_role(user_id, role_id, ctx.company_id, actor_id=ctx.user.id):
        raise NotFound("User does not hold this role.")
    return MessageResponse(message="Role revoked.")
