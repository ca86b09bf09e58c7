"""
auth/models.py -- Domain dataclasses for authentication and authorization entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own the
domain shape; the store, resolver, guard and gate do the work.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

USER_STATUSES = ("active", "inactive", "suspended")
PERMISSION_ACTIONS = ("create", "read", "update", "delete", "manage", "view")
PERMISSION_CATEGORIES = ("user", "role", "system", "content", "audit", "settings")
REVOCATION_REASONS = ("logout", "force_logout", "security_breach", "password_change")

SUPER_ADMIN_LEVEL = 90


@dataclass
class User:
    """A principal: an account that can authenticate and act.

    email is stored lower-cased; the store compares case-insensitively.

    additional_role_ids keeps insertion order. The effective permission set is
    the union of the primary role and every additional role -- see
    auth/permissions.effective_permissions().

    login_attempts / lock_until belong to the lockout guard and are only
    mutated through the store's atomic counter methods.
    """

    name: str
    email: str
    role_id: int
    id: int | None = None
    hashed_password: str | None = None
    additional_role_ids: list[int] = field(default_factory=list)
    status: str = "active"  # "active" | "inactive" | "suspended"
    login_attempts: int = 0
    lock_until: datetime | None = None
    last_login: datetime | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Permission:
    """An atomic capability identified by resource + action.

    name defaults to "resource:action" (see auth/permissions.permission_name).
    The (resource, action) pair is unique.
    """

    resource: str
    action: str  # one of PERMISSION_ACTIONS
    name: str = ""
    display_name: str = ""
    description: str = ""
    category: str = "system"  # one of PERMISSION_CATEGORIES
    id: int | None = None
    is_active: bool = True
    created_at: str | None = None


@dataclass
class Role:
    """A named, levelled bundle of permissions.

    permission_names is filled by the store when the role is loaded so the
    resolver can work on plain data. System roles are immutable and cannot be
    deleted.
    """

    name: str
    display_name: str
    description: str = ""
    level: int = 1  # 1..100
    permission_ids: list[int] = field(default_factory=list)
    permission_names: list[str] = field(default_factory=list)
    is_system_role: bool = False
    is_active: bool = True
    color: str = "#6B7280"
    icon: str = "user"
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(frozen=True)
class TokenClaims:
    """Verified contents of a session token.

    permissions is the snapshot taken at issuance. It does not follow later
    role changes.
    """

    user_id: int
    email: str
    role: str
    permissions: frozenset[str]
    issued_at: datetime
    expires_at: datetime
    jti: str


@dataclass
class RevokedToken:
    """A revocation ledger entry. Pruned once expires_at has passed."""

    token: str
    user_id: int
    expires_at: datetime
    reason: str = "logout"  # one of REVOCATION_REASONS
    ip_address: str | None = None
    user_agent: str | None = None
    id: int | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class RequestOrigin:
    """Where a request came from. Recorded on revocations and audit records."""

    ip_address: str = "unknown"
    user_agent: str = "unknown"
