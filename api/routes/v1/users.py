"""
api/routes/v1/users.py -- User administration endpoints.

Routes:
  GET    /api/v1/users                                -- list (filters, sort, pagination)   user:read
  GET    /api/v1/users/stats                          -- status totals + role distribution user:read
  GET    /api/v1/users/{id}                           -- one user                           user:read
  POST   /api/v1/users                                -- create                             user:create
  PUT    /api/v1/users/{id}                           -- name / email / status              user:update
  PUT    /api/v1/users/{id}/role                      -- replace primary role               user:update
  PUT    /api/v1/users/{id}/additional-roles          -- add an additional role             user:update
  DELETE /api/v1/users/{id}/additional-roles/{role}   -- remove an additional role          user:update
  DELETE /api/v1/users/{id}                           -- delete (never yourself)            user:delete

Role changes take effect at the principal's next login: tokens already issued
keep their permission snapshot until they expire or are revoked.

Every mutation emits one audit record.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.exc import IntegrityError

from api.models import (
    AssignRoleRequest,
    MessageResponse,
    Pagination,
    SortOrderEnum,
    UserCreate,
    UserListResponse,
    UserResponse,
    UserStatsResponse,
    UserStatusEnum,
    UserUpdate,
)
from audit.sink import AuditSink
from auth.dependencies import request_origin, require_permission
from auth.gate import AuthContext
from auth.models import User
from auth.store import UserStore
from auth.tokens import hash_password

router = APIRouter()


def _store(request: Request) -> UserStore:
    return request.app.state.user_store


def _audit(request: Request) -> AuditSink:
    return request.app.state.audit


def _get_user_or_404(store: UserStore, user_id: int) -> User:
    user = store.get_by_id(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found."})
    return user


def _respond(store: UserStore, user: User) -> UserResponse:
    return UserResponse.from_user(user, store.get_roles([user.role_id, *user.additional_role_ids]))


def _invalid_role() -> HTTPException:
    return HTTPException(status_code=400, detail={"code": "invalid_role", "message": "Invalid role ID."})


def _email_exists() -> HTTPException:
    return HTTPException(
        status_code=400,
        detail={"code": "email_exists", "message": "A user with that email already exists."},
    )


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@router.get("/users", response_model=UserListResponse)
def list_users(
    request: Request,
    status: Optional[UserStatusEnum] = None,
    role_id: Optional[int] = None,
    search: Optional[str] = Query(default=None, max_length=100),
    sort_by: str = "created_at",
    sort_order: SortOrderEnum = SortOrderEnum.desc,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    ctx: AuthContext = Depends(require_permission("user:read")),
) -> UserListResponse:
    store = _store(request)
    users, total = store.list_users(
        status=status.value if status else None,
        role_id=role_id,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order.value,
        page=page,
        limit=limit,
    )
    role_ids = {u.role_id for u in users} | {r for u in users for r in u.additional_role_ids}
    roles = store.get_roles(list(role_ids))
    filters = {"status": status.value if status else None, "role_id": role_id, "search": search}
    _audit(request).record(
        ctx.user.id,
        "user_list_access",
        "user",
        {"filters": filters, "total_returned": len(users)},
        request_origin(request),
    )
    return UserListResponse(
        users=[UserResponse.from_user(u, roles) for u in users],
        pagination=Pagination.build(page, limit, total),
    )


@router.get("/users/stats", response_model=UserStatsResponse)
def user_stats(
    request: Request,
    ctx: AuthContext = Depends(require_permission("user:read")),
) -> UserStatsResponse:
    stats = _store(request).user_stats()
    _audit(request).record(ctx.user.id, "user_stats_access", "system", {}, request_origin(request))
    return UserStatsResponse(**stats)


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(
    request: Request,
    user_id: int,
    ctx: AuthContext = Depends(require_permission("user:read")),
) -> UserResponse:
    store = _store(request)
    user = _get_user_or_404(store, user_id)
    _audit(request).record(
        ctx.user.id,
        "user_profile_access",
        "user",
        {"viewed_user": user.id},
        request_origin(request),
        resource_id=str(user.id),
    )
    return _respond(store, user)


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    ctx: AuthContext = Depends(require_permission("user:create")),
) -> UserResponse:
    store = _store(request)
    if store.email_taken(body.email):
        raise _email_exists()
    role = store.get_role(body.role_id)
    if role is None:
        raise _invalid_role()
    additional = list(dict.fromkeys(r for r in body.additional_role_ids if r != body.role_id))
    if len(store.get_roles(additional)) != len(additional):
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_role", "message": "Some additional roles are invalid."},
        )

    try:
        user_id = store.create_user(
            User(
                name=body.name,
                email=body.email,
                hashed_password=hash_password(body.password, request.app.state.settings.bcrypt_rounds),
                role_id=role.id,
                additional_role_ids=additional,
                status=body.status.value,
            )
        )
    except IntegrityError as exc:
        raise _email_exists() from exc

    user = store.get_by_id(user_id)
    _audit(request).record(
        ctx.user.id,
        "user_create",
        "user",
        {
            "created_user": user.id,
            "email": user.email,
            "role": role.name,
            "additional_roles_count": len(additional),
            "status": user.status,
        },
        request_origin(request),
        "success",
        "medium",
        resource_id=str(user.id),
    )
    return _respond(store, user)


@router.put("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserUpdate,
    ctx: AuthContext = Depends(require_permission("user:update")),
) -> UserResponse:
    """Update name, email or status.

    Blocks self-deactivation so an operator cannot lock themselves out.
    """
    store = _store(request)
    old = _get_user_or_404(store, user_id)
    status = body.status.value if body.status else None
    if status and status != "active" and old.id == ctx.user.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
        )
    if body.email and store.email_taken(body.email, exclude_user_id=old.id):
        raise _email_exists()

    try:
        store.update_user(old.id, name=body.name, email=body.email, status=status)
    except IntegrityError as exc:
        raise _email_exists() from exc

    user = store.get_by_id(old.id)
    changes = {}
    for field in ("name", "email", "status"):
        before, after = getattr(old, field), getattr(user, field)
        if before != after:
            changes[field] = {"from": before, "to": after}
    _audit(request).record(
        ctx.user.id,
        "user_update",
        "user",
        {"updated_user": user.id, "changes": changes},
        request_origin(request),
        "success",
        "medium",
        resource_id=str(user.id),
    )
    return _respond(store, user)


@router.put("/users/{user_id}/role", response_model=UserResponse)
def assign_role(
    request: Request,
    user_id: int,
    body: AssignRoleRequest,
    ctx: AuthContext = Depends(require_permission("user:update")),
) -> UserResponse:
    """Replace the primary role. The role is dropped from the additional list if present."""
    store = _store(request)
    user = _get_user_or_404(store, user_id)
    new_role = store.get_role(body.role_id)
    if new_role is None:
        raise _invalid_role()
    old_role = store.get_role(user.role_id)

    store.set_primary_role(user.id, new_role.id)
    _audit(request).record(
        ctx.user.id,
        "user_role_change",
        "user",
        {
            "target_user": user.id,
            "from": old_role.name if old_role else None,
            "to": new_role.name,
        },
        request_origin(request),
        "success",
        "high",
        resource_id=str(user.id),
    )
    return _respond(store, store.get_by_id(user.id))


@router.put("/users/{user_id}/additional-roles", response_model=UserResponse)
def add_additional_role(
    request: Request,
    user_id: int,
    body: AssignRoleRequest,
    ctx: AuthContext = Depends(require_permission("user:update")),
) -> UserResponse:
    """Grant an extra role. Duplicates and the primary role are rejected."""
    store = _store(request)
    user = _get_user_or_404(store, user_id)
    role = store.get_role(body.role_id)
    if role is None:
        raise _invalid_role()
    if role.id == user.role_id:
        raise HTTPException(
            status_code=400,
            detail={"code": "role_already_primary", "message": "This role is already the primary role."},
        )
    if not store.add_additional_role(user.id, role.id):
        raise HTTPException(
            status_code=400,
            detail={"code": "role_already_assigned", "message": "This role is already assigned as additional role."},
        )

    _audit(request).record(
        ctx.user.id,
        "user_additional_role_add",
        "user",
        {"target_user": user.id, "role": role.name},
        request_origin(request),
        "success",
        "medium",
        resource_id=str(user.id),
    )
    return _respond(store, store.get_by_id(user.id))


@router.delete("/users/{user_id}/additional-roles/{role_id}", response_model=UserResponse)
def remove_additional_role(
    request: Request,
    user_id: int,
    role_id: int,
    ctx: AuthContext = Depends(require_permission("user:update")),
) -> UserResponse:
    store = _store(request)
    user = _get_user_or_404(store, user_id)
    if not store.remove_additional_role(user.id, role_id):
        raise HTTPException(
            status_code=400,
            detail={"code": "role_not_assigned", "message": "Role is not assigned as additional role."},
        )
    role = store.get_role(role_id)
    _audit(request).record(
        ctx.user.id,
        "user_additional_role_remove",
        "user",
        {"target_user": user.id, "role": role.name if role else role_id},
        request_origin(request),
        "success",
        "medium",
        resource_id=str(user.id),
    )
    return _respond(store, store.get_by_id(user.id))


@router.delete("/users/{user_id}", response_model=MessageResponse)
def delete_user(
    request: Request,
    user_id: int,
    ctx: AuthContext = Depends(require_permission("user:delete")),
) -> MessageResponse:
    store = _store(request)
    if user_id == ctx.user.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deletion", "message": "You cannot delete your own account."},
        )
    user = _get_user_or_404(store, user_id)
    role = store.get_role(user.role_id)
    store.delete_user(user.id)
    _audit(request).record(
        ctx.user.id,
        "user_delete",
        "user",
        {
            "deleted_user": user.id,
            "deleted_user_email": user.email,
            "deleted_user_role": role.name if role else None,
        },
        request_origin(request),
        "success",
        "high",
        resource_id=str(user.id),
    )
    return MessageResponse(message="User deleted.")
