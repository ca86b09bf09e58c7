"""
audit/models.py -- Domain dataclass and vocabularies for the audit trail.

Records are immutable once written: the store only inserts, queries and
prunes by age. user_id is None for events that happen before anyone is
authenticated (e.g. a login attempt for an unknown email).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

ACTIONS = frozenset(
    {
        "login",
        "logout",
        "register",
        "password_change",
        "profile_update",
        "user_create",
        "user_update",
        "user_delete",
        "failed_login",
        "account_locked",
        "password_reset",
        "role_change",
        "status_change",
        "user_list_access",
        "user_profile_access",
        "user_stats_access",
        "access_denied",
        "access_granted",
        "role_create",
        "role_update",
        "role_delete",
        "role_permissions_update",
        "role_list_access",
        "permission_create",
        "permission_update",
        "permission_delete",
        "permission_list_access",
        "user_role_change",
        "user_additional_role_add",
        "user_additional_role_remove",
        "force_logout",
    }
)

RESOURCES = frozenset({"user", "auth", "system"})
STATUSES = frozenset({"success", "failure", "warning"})
SEVERITIES = frozenset({"low", "medium", "high", "critical"})

# Actions surfaced by the security events report regardless of status/severity.
SECURITY_ACTIONS = (
    "failed_login",
    "account_locked",
    "password_change",
    "role_change",
    "user_role_change",
    "status_change",
    "force_logout",
)

RETENTION_DAYS = 90


@dataclass(frozen=True)
class AuditRecord:
    action: str
    resource: str
    ip_address: str
    user_agent: str
    user_id: int | None = None
    resource_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    status: str = "success"  # "success" | "failure" | "warning"
    severity: str = "low"  # "low" | "medium" | "high" | "critical"
    created_at: str = ""  # ISO 8601, stamped by AuditSink.record()
    id: int | None = None
