"""
auth/seed.py -- Default permission catalogue, system roles and bootstrap accounts.

seed() is idempotent: permissions, roles and accounts that already exist
(by name / email) are left alone, so it is safe to re-run after an upgrade
adds entries. Pass reset=True to wipe the auth tables first.

The default accounts use well-known passwords and exist for local
development only. Change or delete them before exposing the service.
"""

from __future__ import annotations

import logging

from auth.models import Permission, Role, User
from auth.store import UserStore
from auth.tokens import hash_password

logger = logging.getLogger("admingate.auth")

# (resource, action, display_name, description)
DEFAULT_PERMISSIONS = (
    ("user", "create", "Create Users", "Create new user accounts"),
    ("user", "read", "View Users", "View user profiles and lists"),
    ("user", "update", "Update Users", "Update user information and settings"),
    ("user", "delete", "Delete Users", "Delete user accounts"),
    ("user", "manage", "Manage Users", "Full user management access"),
    ("role", "create", "Create Roles", "Create new roles"),
    ("role", "read", "View Roles", "View roles and permissions"),
    ("role", "update", "Update Roles", "Update role permissions and settings"),
    ("role", "delete", "Delete Roles", "Delete roles"),
    ("role", "manage", "Manage Roles", "Full role management access"),
    ("system", "manage", "System Management", "Full system administration access"),
    ("system", "view", "View System Stats", "View system statistics and health"),
    ("audit", "view", "View Audit Logs", "View audit logs and user activities"),
    ("audit", "manage", "Manage Audit Logs", "Full audit log management"),
    ("content", "create", "Create Content", "Create new content"),
    ("content", "read", "View Content", "View content"),
    ("content", "update", "Update Content", "Update existing content"),
    ("content", "delete", "Delete Content", "Delete content"),
    ("settings", "view", "View Settings", "View application settings"),
    ("settings", "manage", "Manage Settings", "Update application settings"),
)

_ALL = "*"

# name -> (display_name, description, level, color, icon, permission names)
DEFAULT_ROLES = {
    "super_admin": ("Super Administrator", "Full system access with all permissions", 100, "#DC2626", "crown", _ALL),
    "admin": (
        "Administrator",
        "Administrative access with most permissions",
        80,
        "#EF4444",
        "shield-alt",
        "-system:manage",
    ),
    "moderator": (
        "Moderator",
        "Content moderation and user management",
        50,
        "#F59E0B",
        "user-shield",
        ("user:read", "user:update", "content:create", "content:read", "content:update", "audit:view"),
    ),
    "editor": (
        "Editor",
        "Content creation and editing",
        30,
        "#10B981",
        "edit",
        ("content:create", "content:read", "content:update", "user:read"),
    ),
    "user": ("User", "Basic user access", 10, "#6B7280", "user", ("content:read",)),
}

# (name, email, password, role)
DEFAULT_ACCOUNTS = (
    ("Super Administrator", "superadmin@adminpanel.com", "SuperAdmin123!", "super_admin"),
    ("Administrator", "admin@adminpanel.com", "Admin123!", "admin"),
    ("Test Moderator", "moderator@adminpanel.com", "Moderator123!", "moderator"),
)


def _role_permission_ids(grant, by_name: dict[str, int]) -> list[int]:
    if grant == _ALL:
        return list(by_name.values())
    if isinstance(grant, str) and grant.startswith("-"):
        excluded = grant[1:]
        return [pid for name, pid in by_name.items() if name != excluded]
    return [by_name[name] for name in grant]


def seed(
    store: UserStore,
    with_accounts: bool = False,
    reset: bool = False,
    bcrypt_rounds: int = 12,
) -> dict[str, int]:
    """Create the default catalogue. Returns counts of rows created per kind."""
    if reset:
        logger.warning("Clearing all users, roles, permissions and revocations")
        store.clear_all()

    created = {"permissions": 0, "roles": 0, "accounts": 0}

    by_name: dict[str, int] = {}
    for resource, action, display_name, description in DEFAULT_PERMISSIONS:
        name = f"{resource}:{action}"
        existing = store.get_permission_by_name(name)
        if existing is not None:
            by_name[name] = existing.id
            continue
        by_name[name] = store.create_permission(
            Permission(
                resource=resource,
                action=action,
                name=name,
                display_name=display_name,
                description=description,
                category=resource,
            )
        )
        created["permissions"] += 1

    role_ids: dict[str, int] = {}
    for name, (display_name, description, level, color, icon, perms) in DEFAULT_ROLES.items():
        existing = store.get_role_by_name(name)
        if existing is not None:
            role_ids[name] = existing.id
            continue
        role_ids[name] = store.create_role(
            Role(
                name=name,
                display_name=display_name,
                description=description,
                level=level,
                permission_ids=_role_permission_ids(perms, by_name),
                is_system_role=True,
                color=color,
                icon=icon,
            )
        )
        created["roles"] += 1

    if with_accounts:
        for name, email, password, role in DEFAULT_ACCOUNTS:
            if store.email_taken(email):
                continue
            store.create_user(
                User(
                    name=name,
                    email=email,
                    hashed_password=hash_password(password, bcrypt_rounds),
                    role_id=role_ids[role],
                )
            )
            created["accounts"] += 1

    logger.info(
        "Seed complete: %d permissions, %d roles, %d accounts created",
        created["permissions"],
        created["roles"],
        created["accounts"],
    )
    return created
