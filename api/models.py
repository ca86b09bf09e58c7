"""
API request and response models for AdminGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
audit/models.py, which own the internal domain representation. Route handlers
map between the two.

Separation of concerns: auth/ and audit/ models = domain truth; api/ models =
API contract.
"""

import re
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from audit.models import AuditRecord
from auth.models import Permission, Role, User
from auth.tokens import MAX_PASSWORD_BYTES

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
ROLE_NAME_PATTERN = r"^[a-z0-9_]+$"
COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"\d")


def _check_password_strength(value: str) -> str:
    """At least one lowercase letter, one uppercase letter and one digit.

    Also bounded by bcrypt's input limit, measured in UTF-8 bytes.
    """
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
    if not (_LOWER.search(value) and _UPPER.search(value) and _DIGIT.search(value)):
        raise ValueError(
            "Password must contain at least one lowercase letter, one uppercase letter, and one number"
        )
    return value


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class UserStatusEnum(str, Enum):
    active = "active"
    inactive = "inactive"
    suspended = "suspended"


class PermissionCategoryEnum(str, Enum):
    user = "user"
    role = "role"
    system = "system"
    content = "content"
    audit = "audit"
    settings = "settings"


class PermissionActionEnum(str, Enum):
    create = "create"
    read = "read"
    update = "update"
    delete = "delete"
    manage = "manage"
    view = "view"


class SortOrderEnum(str, Enum):
    asc = "asc"
    desc = "desc"


# ---------------------------------------------------------------------------
# Shared envelopes
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload.

    required is only set on 403 permission denials and names the permission
    (or list of permissions) the caller lacked.
    """

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    required: Optional[Union[str, list[str]]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class Pagination(BaseModel):
    """Page metadata shared by every list endpoint."""

    model_config = ConfigDict(frozen=True)

    current_page: int
    total_pages: int
    total: int
    has_next_page: bool
    has_prev_page: bool
    limit: int

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        total_pages = (total + limit - 1) // limit if limit else 0
        return cls(
            current_page=page,
            total_pages=total_pages,
            total=total,
            has_next_page=page < total_pages,
            has_prev_page=page > 1,
            limit=limit,
        )


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    role accepts a role id or a role name; omitted means the default role.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=2, max_length=50)
    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(min_length=6, max_length=128)
    role: Optional[Union[int, str]] = None

    @field_validator("password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        return _check_password_strength(value)

    @field_validator("role")
    @classmethod
    def role_reference(cls, value):
        if isinstance(value, str) and value and not re.fullmatch(ROLE_NAME_PATTERN, value):
            raise ValueError("Role must be a role id or role name (lowercase letters, numbers, underscores only)")
        return value


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(min_length=1, max_length=128)


class ProfileUpdate(BaseModel):
    """Request body for PUT /api/v1/auth/profile."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN, max_length=255)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=6, max_length=128)

    @field_validator("new_password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        return _check_password_strength(value)


class PermissionCheckRequest(BaseModel):
    """Request body for POST /api/v1/auth/permissions/check."""

    permissions: list[str] = Field(min_length=1, max_length=50)
    mode: Literal["all", "any"] = "all"


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class RoleSummary(BaseModel):
    """Role reference embedded in user responses."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    display_name: str
    level: int
    color: str

    @classmethod
    def from_role(cls, role: Role) -> "RoleSummary":
        return cls(id=role.id, name=role.name, display_name=role.display_name, level=role.level, color=role.color)


class UserResponse(BaseModel):
    """Public view of a principal. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    email: str
    status: str
    role: Optional[RoleSummary]
    additional_roles: list[RoleSummary] = Field(default_factory=list)
    last_login: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User, roles: dict[int, Role]) -> "UserResponse":
        """Map a User, resolving role ids through `roles` (id -> Role).

        Role ids missing from the mapping (deleted roles) are skipped.
        """
        primary = roles.get(user.role_id)
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            status=user.status,
            role=RoleSummary.from_role(primary) if primary else None,
            additional_roles=[RoleSummary.from_role(roles[r]) for r in user.additional_role_ids if r in roles],
            last_login=user.last_login.isoformat() if user.last_login else None,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class TokenResponse(BaseModel):
    """Response for login and register."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/profile.

    permissions is the snapshot carried by the presenting token, which can
    lag behind role changes made after it was issued.
    """

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    permissions: list[str]


class PermissionCheckResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    mode: str
    missing: list[str]
    token_permissions: list[str]
    live_permissions: list[str]


class UserCreate(BaseModel):
    """Request body for POST /api/v1/users."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=2, max_length=50)
    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(min_length=6, max_length=128)
    role_id: int
    additional_role_ids: list[int] = Field(default_factory=list, max_length=20)
    status: UserStatusEnum = UserStatusEnum.active

    @field_validator("password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        return _check_password_strength(value)


class UserUpdate(BaseModel):
    """Request body for PUT /api/v1/users/{id}."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN, max_length=255)
    status: Optional[UserStatusEnum] = None


class AssignRoleRequest(BaseModel):
    """Request body for PUT /users/{id}/role and PUT /users/{id}/additional-roles."""

    role_id: int


class UserListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    users: list[UserResponse]
    pagination: Pagination


class UserStatsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_users: int
    active_users: int
    inactive_users: int
    suspended_users: int
    role_distribution: list[dict[str, Any]]


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


class RoleCreate(BaseModel):
    """Request body for POST /api/v1/roles."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=2, max_length=50, pattern=ROLE_NAME_PATTERN)
    display_name: str = Field(min_length=2, max_length=100)
    description: str = Field(min_length=10, max_length=500)
    permission_ids: list[int] = Field(default_factory=list)
    level: int = Field(default=1, ge=1, le=100)
    color: str = Field(default="#6B7280", pattern=COLOR_PATTERN)
    icon: str = Field(default="user", min_length=1, max_length=50)


class RoleUpdate(BaseModel):
    """Request body for PUT /api/v1/roles/{id}. The role name is immutable."""

    model_config = ConfigDict(str_strip_whitespace=True)

    display_name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    description: Optional[str] = Field(default=None, min_length=10, max_length=500)
    permission_ids: Optional[list[int]] = None
    level: Optional[int] = Field(default=None, ge=1, le=100)
    color: Optional[str] = Field(default=None, pattern=COLOR_PATTERN)
    icon: Optional[str] = Field(default=None, min_length=1, max_length=50)
    is_active: Optional[bool] = None


class AssignPermissionsRequest(BaseModel):
    """Request body for PUT /api/v1/roles/{id}/permissions. Replaces the whole set."""

    permission_ids: list[int]


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    display_name: str
    description: str
    level: int
    permission_ids: list[int]
    permissions: list[str]
    is_system_role: bool
    is_active: bool
    color: str
    icon: str
    user_count: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_role(cls, role: Role, user_count: Optional[int] = None) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            display_name=role.display_name,
            description=role.description,
            level=role.level,
            permission_ids=role.permission_ids,
            permissions=role.permission_names,
            is_system_role=role.is_system_role,
            is_active=role.is_active,
            color=role.color,
            icon=role.icon,
            user_count=user_count,
            created_at=role.created_at,
            updated_at=role.updated_at,
        )


class RoleListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    roles: list[RoleResponse]
    pagination: Pagination


class RoleStatsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_roles: int
    active_roles: int
    system_roles: int
    average_level: float
    top_permissions: list[dict[str, Any]]


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


class PermissionCreate(BaseModel):
    """Request body for POST /api/v1/permissions. The name is derived as resource:action."""

    model_config = ConfigDict(str_strip_whitespace=True)

    display_name: str = Field(min_length=2, max_length=100)
    description: str = Field(min_length=10, max_length=500)
    category: PermissionCategoryEnum
    resource: str = Field(min_length=2, max_length=50, pattern=ROLE_NAME_PATTERN)
    action: PermissionActionEnum


class PermissionUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    display_name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    description: Optional[str] = Field(default=None, min_length=10, max_length=500)
    category: Optional[PermissionCategoryEnum] = None
    is_active: Optional[bool] = None


class PermissionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    display_name: str
    description: str
    category: str
    resource: str
    action: str
    is_active: bool
    created_at: Optional[str] = None

    @classmethod
    def from_permission(cls, permission: Permission) -> "PermissionResponse":
        return cls(
            id=permission.id,
            name=permission.name,
            display_name=permission.display_name,
            description=permission.description,
            category=permission.category,
            resource=permission.resource,
            action=permission.action,
            is_active=permission.is_active,
            created_at=permission.created_at,
        )


class PermissionListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    permissions: list[PermissionResponse]
    pagination: Pagination


class CategoryCount(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: str
    count: int


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class AuditRecordResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: Optional[int]
    action: str
    resource: str
    resource_id: Optional[str]
    details: dict[str, Any]
    ip_address: str
    user_agent: str
    status: str
    severity: str
    created_at: str

    @classmethod
    def from_record(cls, record: AuditRecord) -> "AuditRecordResponse":
        return cls(
            id=record.id,
            user_id=record.user_id,
            action=record.action,
            resource=record.resource,
            resource_id=record.resource_id,
            details=record.details,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            status=record.status,
            severity=record.severity,
            created_at=record.created_at,
        )


class AuditListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    records: list[AuditRecordResponse]
    pagination: Pagination
