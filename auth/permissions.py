"""
auth/permissions.py -- Permission resolver.

A principal's effective permission set is the union of the permission names
of its primary role and of every additional role, deduplicated. Order is
irrelevant, so the result is a frozenset.

effective_permissions() is a pure function over plain data: the caller
fetches the user, then composes roles explicitly through a role lookup.
Nothing here happens as a side effect of a store "find".

Two consumers:
  - token issuance freezes the result into the token's permissions claim;
  - the explicit live recheck (PermissionResolver.resolve) recomputes it from
    the current role graph.
The gate authorizes against the frozen snapshot.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from auth.models import Role, User

if TYPE_CHECKING:
    from auth.store import UserStore

RoleLookup = Callable[[int], "Role | None"]


def permission_name(resource: str, action: str) -> str:
    """Deterministic permission name: "resource:action", lower-cased."""
    return f"{resource.strip().lower()}:{action.strip().lower()}"


def effective_permissions(user: User, role_lookup: RoleLookup) -> frozenset[str]:
    """Union of the primary and additional roles' permission names.

    Role ids the lookup cannot resolve contribute nothing.
    """
    names: set[str] = set()
    for role_id in (user.role_id, *user.additional_role_ids):
        role = role_lookup(role_id)
        if role is not None:
            names.update(role.permission_names)
    return frozenset(names)


def has_permission(granted: Iterable[str], permission: str) -> bool:
    return permission in set(granted)


def has_any_permission(granted: Iterable[str], permissions: Iterable[str]) -> bool:
    granted = set(granted)
    return any(p in granted for p in permissions)


def has_all_permissions(granted: Iterable[str], permissions: Iterable[str]) -> bool:
    granted = set(granted)
    return all(p in granted for p in permissions)


def missing_permissions(granted: Iterable[str], permissions: Iterable[str]) -> list[str]:
    """Required names not present in granted, in the order they were required."""
    granted = set(granted)
    return [p for p in dict.fromkeys(permissions) if p not in granted]


class PermissionResolver:
    """Resolves a principal's roles and effective permissions against the live store."""

    def __init__(self, store: UserStore) -> None:
        self._store = store

    def roles_for(self, user: User) -> dict[int, Role]:
        """Primary and additional roles in one bulk load, keyed by id."""
        return self._store.get_roles([user.role_id, *user.additional_role_ids])

    def primary_role(self, user: User) -> Role | None:
        return self._store.get_role(user.role_id)

    def resolve(self, user: User) -> frozenset[str]:
        roles = self.roles_for(user)
        return effective_permissions(user, roles.get)
