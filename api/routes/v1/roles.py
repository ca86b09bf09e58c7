"""
api/routes/v1/roles.py -- Role administration endpoints.

Routes:
  GET    /api/v1/roles                  -- list with user counts          user:read
  GET    /api/v1/roles/stats/overview   -- totals + top permissions       system:manage
  GET    /api/v1/roles/{id}             -- one role with user count       user:read
  POST   /api/v1/roles                  -- create                         system:manage
  PUT    /api/v1/roles/{id}             -- update attributes              system:manage
  PUT    /api/v1/roles/{id}/permissions -- replace the permission set     system:manage
  DELETE /api/v1/roles/{id}             -- delete                         super admin (level >= 90)

System roles (the seeded defaults) are immutable: update, permission
assignment and deletion all refuse them. A role that is still some user's
primary role cannot be deleted.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.exc import IntegrityError

from api.models import (
    AssignPermissionsRequest,
    MessageResponse,
    Pagination,
    RoleCreate,
    RoleListResponse,
    RoleResponse,
    RoleStatsResponse,
    RoleUpdate,
)
from audit.sink import AuditSink
from auth.dependencies import request_origin, require_permission, require_super_admin
from auth.gate import AuthContext
from auth.models import Role
from auth.store import UserStore

router = APIRouter()


def _store(request: Request) -> UserStore:
    return request.app.state.user_store


def _audit(request: Request) -> AuditSink:
    return request.app.state.audit


def _get_role_or_404(store: UserStore, role_id: int) -> Role:
    role = store.get_role(role_id)
    if role is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Role not found."})
    return role


def _check_permission_ids(store: UserStore, permission_ids: list[int]) -> list[int]:
    unique = list(dict.fromkeys(permission_ids))
    if len(store.existing_permission_ids(unique)) != len(unique):
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_permissions", "message": "Some permissions are invalid."},
        )
    return unique


def _refuse_system_role(role: Role) -> None:
    if role.is_system_role:
        raise HTTPException(
            status_code=400,
            detail={"code": "system_role", "message": "System roles cannot be modified."},
        )


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@router.get("/roles", response_model=RoleListResponse)
def list_roles(
    request: Request,
    is_active: Optional[bool] = None,
    search: Optional[str] = Query(default=None, max_length=100),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    ctx: AuthContext = Depends(require_permission("user:read")),
) -> RoleListResponse:
    store = _store(request)
    roles, total = store.list_roles(is_active=is_active, search=search, page=page, limit=limit)
    _audit(request).record(
        ctx.user.id, "role_list_access", "system", {"total_returned": len(roles)}, request_origin(request)
    )
    return RoleListResponse(
        roles=[RoleResponse.from_role(r, store.count_users_with_role(r.id)) for r in roles],
        pagination=Pagination.build(page, limit, total),
    )


@router.get("/roles/stats/overview", response_model=RoleStatsResponse)
def role_stats(
    request: Request,
    ctx: AuthContext = Depends(require_permission("system:manage")),
) -> RoleStatsResponse:
    return RoleStatsResponse(**_store(request).role_stats())


@router.get("/roles/{role_id}", response_model=RoleResponse)
def get_role(
    request: Request,
    role_id: int,
    ctx: AuthContext = Depends(require_permission("user:read")),
) -> RoleResponse:
    store = _store(request)
    role = _get_role_or_404(store, role_id)
    return RoleResponse.from_role(role, store.count_users_with_role(role.id))


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


@router.post("/roles", response_model=RoleResponse, status_code=201)
def create_role(
    request: Request,
    body: RoleCreate,
    ctx: AuthContext = Depends(require_permission("system:manage")),
) -> RoleResponse:
    store = _store(request)
    permission_ids = _check_permission_ids(store, body.permission_ids)
    try:
        role_id = store.create_role(
            Role(
                name=body.name,
                display_name=body.display_name,
                description=body.description,
                level=body.level,
                permission_ids=permission_ids,
                color=body.color,
                icon=body.icon,
            )
        )
    except IntegrityError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "role_exists", "message": "A role with that name already exists."},
        ) from exc

    role = store.get_role(role_id)
    _audit(request).record(
        ctx.user.id,
        "role_create",
        "system",
        {"created_role": role.id, "name": role.name, "permission_count": len(permission_ids), "level": role.level},
        request_origin(request),
        "success",
        "high",
        resource_id=str(role.id),
    )
    return RoleResponse.from_role(role, 0)


@router.put("/roles/{role_id}", response_model=RoleResponse)
def update_role(
    request: Request,
    role_id: int,
    body: RoleUpdate,
    ctx: AuthContext = Depends(require_permission("system:manage")),
) -> RoleResponse:
    store = _store(request)
    old = _get_role_or_404(store, role_id)
    _refuse_system_role(old)
    permission_ids = _check_permission_ids(store, body.permission_ids) if body.permission_ids is not None else None

    store.update_role(
        old.id,
        display_name=body.display_name,
        description=body.description,
        level=body.level,
        color=body.color,
        icon=body.icon,
        is_active=body.is_active,
        permission_ids=permission_ids,
    )
    role = store.get_role(old.id)

    changes = {}
    for field in ("display_name", "description", "level", "color", "icon", "is_active"):
        before, after = getattr(old, field), getattr(role, field)
        if before != after:
            changes[field] = {"from": before, "to": after}
    if permission_ids is not None and sorted(permission_ids) != sorted(old.permission_ids):
        changes["permissions"] = {"from": len(old.permission_ids), "to": len(permission_ids)}
    _audit(request).record(
        ctx.user.id,
        "role_update",
        "system",
        {"updated_role": role.id, "changes": changes},
        request_origin(request),
        "success",
        "high",
        resource_id=str(role.id),
    )
    return RoleResponse.from_role(role, store.count_users_with_role(role.id))


@router.put("/roles/{role_id}/permissions", response_model=RoleResponse)
def assign_permissions(
    request: Request,
    role_id: int,
    body: AssignPermissionsRequest,
    ctx: AuthContext = Depends(require_permission("system:manage")),
) -> RoleResponse:
    """Replace the role's permission set. Principals see the change at next login."""
    store = _store(request)
    old = _get_role_or_404(store, role_id)
    _refuse_system_role(old)
    permission_ids = _check_permission_ids(store, body.permission_ids)

    store.set_role_permissions(old.id, permission_ids)
    role = store.get_role(old.id)
    _audit(request).record(
        ctx.user.id,
        "role_permissions_update",
        "system",
        {
            "role_id": role.id,
            "role_name": role.name,
            "old_permission_count": len(old.permission_ids),
            "new_permission_count": len(permission_ids),
        },
        request_origin(request),
        "success",
        "high",
        resource_id=str(role.id),
    )
    return RoleResponse.from_role(role, store.count_users_with_role(role.id))


@router.delete("/roles/{role_id}", response_model=MessageResponse)
def delete_role(
    request: Request,
    role_id: int,
    ctx: AuthContext = Depends(require_super_admin),
) -> MessageResponse:
    store = _store(request)
    role = _get_role_or_404(store, role_id)
    if role.is_system_role:
        raise HTTPException(
            status_code=400,
            detail={"code": "system_role", "message": "System roles cannot be deleted"},
        )
    user_count = store.count_users_with_role(role.id)
    if user_count > 0:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "role_in_use",
                "message": f"Cannot delete role. {user_count} users are assigned to this role",
            },
        )

    store.delete_role(role.id)
    _audit(request).record(
        ctx.user.id,
        "role_delete",
        "system",
        {"deleted_role": role.id, "name": role.name, "permission_count": len(role.permission_ids)},
        request_origin(request),
        "success",
        "high",
        resource_id=str(role.id),
    )
    return MessageResponse(message="Role deleted.")
