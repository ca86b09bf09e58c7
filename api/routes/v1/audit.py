"""
api/routes/v1/audit.py -- Read-only views over the audit trail.

Routes:
  GET /api/v1/audit/logs              -- filtered, sorted, paginated        system:manage
  GET /api/v1/audit/security-events   -- security actions, failures, high+  system:manage
  GET /api/v1/audit/user/{user_id}    -- one principal's activity           system:manage or user:manage

Reads go straight to AuditStore and only see records the sink's writer has
already committed; a record emitted a moment ago may not be listed yet.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.models import AuditListResponse, AuditRecordResponse, Pagination, SortOrderEnum
from audit.store import AuditStore
from auth.dependencies import admin_only, admin_or_moderator
from auth.gate import AuthContext

router = APIRouter()


def _store(request: Request) -> AuditStore:
    return request.app.state.audit_store


@router.get("/audit/logs", response_model=AuditListResponse)
def audit_logs(
    request: Request,
    user_id: Optional[int] = None,
    action: Optional[str] = Query(default=None, max_length=50),
    resource: Optional[str] = Query(default=None, max_length=20),
    status: Optional[str] = Query(default=None, max_length=20),
    severity: Optional[str] = Query(default=None, max_length=20),
    ip_address: Optional[str] = Query(default=None, max_length=64),
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    sort_by: str = "created_at",
    sort_order: SortOrderEnum = SortOrderEnum.desc,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    ctx: AuthContext = Depends(admin_only),
) -> AuditListResponse:
    records, total = _store(request).list_records(
        user_id=user_id,
        action=action,
        resource=resource,
        status=status,
        severity=severity,
        ip_address=ip_address,
        date_from=date_from,
        date_to=date_to,
        sort_by=sort_by,
        sort_order=sort_order.value,
        page=page,
        limit=limit,
    )
    return AuditListResponse(
        records=[AuditRecordResponse.from_record(r) for r in records],
        pagination=Pagination.build(page, limit, total),
    )


@router.get("/audit/security-events", response_model=AuditListResponse)
def security_events(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=200),
    ctx: AuthContext = Depends(admin_only),
) -> AuditListResponse:
    records, total = _store(request).security_events(page=page, limit=limit)
    return AuditListResponse(
        records=[AuditRecordResponse.from_record(r) for r in records],
        pagination=Pagination.build(page, limit, total),
    )


@router.get("/audit/user/{user_id}", response_model=AuditListResponse)
def user_activity(
    request: Request,
    user_id: int,
    action: Optional[str] = Query(default=None, max_length=50),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=200),
    ctx: AuthContext = Depends(admin_or_moderator),
) -> AuditListResponse:
    """Activity of one principal.

    A caller whose primary role is the plain "user" role may only read their
    own activity, even if an additional role grants them user:manage.
    """
    role = request.app.state.user_store.get_role(ctx.user.role_id)
    if role is not None and role.name == "user" and user_id != ctx.user.id:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "You can only view your own activity."},
        )
    records, total = _store(request).user_activity(user_id, action=action, page=page, limit=limit)
    return AuditListResponse(
        records=[AuditRecordResponse.from_record(r) for r in records],
        pagination=Pagination.build(page, limit, total),
    )
