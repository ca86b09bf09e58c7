"""
api/routes/v1/permissions.py -- Permission catalogue endpoints. All require system:manage.

Routes:
  GET    /api/v1/permissions              -- list (category / active / search)
  GET    /api/v1/permissions/categories   -- count per category
  GET    /api/v1/permissions/{id}
  POST   /api/v1/permissions              -- create; name is derived as resource:action
  PUT    /api/v1/permissions/{id}         -- display name, description, category, active flag
  DELETE /api/v1/permissions/{id}         -- also unlinks it from every role

Deactivating a permission removes it from every effective set computed
afterwards; tokens already issued keep their snapshot.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.exc import IntegrityError

from api.models import (
    CategoryCount,
    MessageResponse,
    Pagination,
    PermissionCategoryEnum,
    PermissionCreate,
    PermissionListResponse,
    PermissionResponse,
    PermissionUpdate,
)
from auth.dependencies import admin_only, request_origin
from auth.gate import AuthContext
from auth.models import Permission
from auth.permissions import permission_name
from auth.store import UserStore

router = APIRouter()


def _store(request: Request) -> UserStore:
    return request.app.state.user_store


def _get_permission_or_404(store: UserStore, permission_id: int) -> Permission:
    permission = store.get_permission(permission_id)
    if permission is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Permission not found."})
    return permission


@router.get("/permissions", response_model=PermissionListResponse)
def list_permissions(
    request: Request,
    category: Optional[PermissionCategoryEnum] = None,
    is_active: Optional[bool] = None,
    search: Optional[str] = Query(default=None, max_length=100),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    ctx: AuthContext = Depends(admin_only),
) -> PermissionListResponse:
    permissions, total = _store(request).list_permissions(
        category=category.value if category else None,
        is_active=is_active,
        search=search,
        page=page,
        limit=limit,
    )
    request.app.state.audit.record(
        ctx.user.id,
        "permission_list_access",
        "system",
        {"total_returned": len(permissions)},
        request_origin(request),
    )
    return PermissionListResponse(
        permissions=[PermissionResponse.from_permission(p) for p in permissions],
        pagination=Pagination.build(page, limit, total),
    )


@router.get("/permissions/categories", response_model=list[CategoryCount])
def permission_categories(request: Request, ctx: AuthContext = Depends(admin_only)) -> list[CategoryCount]:
    return [CategoryCount(**c) for c in _store(request).permission_categories()]


@router.get("/permissions/{permission_id}", response_model=PermissionResponse)
def get_permission(
    request: Request,
    permission_id: int,
    ctx: AuthContext = Depends(admin_only),
) -> PermissionResponse:
    return PermissionResponse.from_permission(_get_permission_or_404(_store(request), permission_id))


@router.post("/permissions", response_model=PermissionResponse, status_code=201)
def create_permission(
    request: Request,
    body: PermissionCreate,
    ctx: AuthContext = Depends(admin_only),
) -> PermissionResponse:
    store = _store(request)
    name = permission_name(body.resource, body.action.value)
    try:
        permission_id = store.create_permission(
            Permission(
                resource=body.resource,
                action=body.action.value,
                name=name,
                display_name=body.display_name,
                description=body.description,
                category=body.category.value,
            )
        )
    except IntegrityError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "permission_exists", "message": f"Permission {name} already exists."},
        ) from exc

    permission = store.get_permission(permission_id)
    request.app.state.audit.record(
        ctx.user.id,
        "permission_create",
        "system",
        {"created_permission": permission.id, "name": permission.name, "category": permission.category},
        request_origin(request),
        "success",
        "medium",
        resource_id=str(permission.id),
    )
    return PermissionResponse.from_permission(permission)


@router.put("/permissions/{permission_id}", response_model=PermissionResponse)
def update_permission(
    request: Request,
    permission_id: int,
    body: PermissionUpdate,
    ctx: AuthContext = Depends(admin_only),
) -> PermissionResponse:
    store = _store(request)
    old = _get_permission_or_404(store, permission_id)
    store.update_permission(
        old.id,
        display_name=body.display_name,
        description=body.description,
        category=body.category.value if body.category else None,
        is_active=body.is_active,
    )
    permission = store.get_permission(old.id)

    changes = {}
    for field in ("display_name", "description", "category", "is_active"):
        before, after = getattr(old, field), getattr(permission, field)
        if before != after:
            changes[field] = {"from": before, "to": after}
    request.app.state.audit.record(
        ctx.user.id,
        "permission_update",
        "system",
        {"updated_permission": permission.id, "changes": changes},
        request_origin(request),
        "success",
        "medium",
        resource_id=str(permission.id),
    )
    return PermissionResponse.from_permission(permission)


@router.delete("/permissions/{permission_id}", response_model=MessageResponse)
def delete_permission(
    request: Request,
    permission_id: int,
    ctx: AuthContext = Depends(admin_only),
) -> MessageResponse:
    store = _store(request)
    permission = _get_permission_or_404(store, permission_id)
    store.delete_permission(permission.id)
    request.app.state.audit.record(
        ctx.user.id,
        "permission_delete",
        "system",
        {"deleted_permission": permission.id, "name": permission.name},
        request_origin(request),
        "success",
        "high",
        resource_id=str(permission.id),
    )
    return MessageResponse(message="Permission deleted.")
