"""
tests/test_permissions.py -- Unit tests for the permission resolver.

effective_permissions() is exercised on plain data; PermissionResolver is
exercised against the seeded default roles.
"""

from __future__ import annotations

from auth.models import Role, User
from auth.permissions import (
    PermissionResolver,
    effective_permissions,
    has_all_permissions,
    has_any_permission,
    has_permission,
    missing_permissions,
    permission_name,
)
from auth.store import UserStore
from conftest import make_user


def _role(role_id: int, *names: str) -> Role:
    return Role(id=role_id, name=f"r{role_id}", display_name=f"R{role_id}", permission_names=list(names))


class TestEffectivePermissions:
    def test_primary_only(self) -> None:
        roles = {1: _role(1, "content:read")}
        user = User(id=1, name="a", email="a@x.io", role_id=1)
        assert effective_permissions(user, roles.get) == frozenset({"content:read"})

    def test_union_is_deduplicated(self) -> None:
        roles = {
            1: _role(1, "content:read"),
            2: _role(2, "content:create", "content:read", "content:update", "user:read"),
        }
        user = User(id=1, name="a", email="a@x.io", role_id=1, additional_role_ids=[2])
        result = effective_permissions(user, roles.get)
        assert result == frozenset({"content:read", "content:create", "content:update", "user:read"})
        assert len(result) == 4

    def test_unknown_role_contributes_nothing(self) -> None:
        roles = {1: _role(1, "content:read")}
        user = User(id=1, name="a", email="a@x.io", role_id=1, additional_role_ids=[99])
        assert effective_permissions(user, roles.get) == frozenset({"content:read"})

    def test_no_roles_resolves_empty(self) -> None:
        user = User(id=1, name="a", email="a@x.io", role_id=42)
        assert effective_permissions(user, {}.get) == frozenset()


class TestPredicates:
    granted = frozenset({"user:read", "content:read"})

    def test_has_permission(self) -> None:
        assert has_permission(self.granted, "user:read")
        assert not has_permission(self.granted, "user:delete")

    def test_any_and_all(self) -> None:
        assert has_any_permission(self.granted, ["user:delete", "content:read"])
        assert not has_any_permission(self.granted, ["user:delete"])
        assert has_all_permissions(self.granted, ["user:read", "content:read"])
        assert not has_all_permissions(self.granted, ["user:read", "user:delete"])

    def test_missing_keeps_request_order(self) -> None:
        required = ["system:manage", "user:read", "audit:view", "system:manage"]
        assert missing_permissions(self.granted, required) == ["system:manage", "audit:view"]

    def test_permission_name(self) -> None:
        assert permission_name(" User ", "READ") == "user:read"


class TestResolver:
    def test_user_plus_editor(self, seeded_store: UserStore) -> None:
        uid = make_user(seeded_store, "combo@x.io", role="user", additional=("editor",))
        resolver = PermissionResolver(seeded_store)
        perms = resolver.resolve(seeded_store.get_by_id(uid))
        assert perms == frozenset({"content:read", "content:create", "content:update", "user:read"})

    def test_super_admin_has_every_default_permission(self, seeded_store: UserStore) -> None:
        uid = make_user(seeded_store, "root@x.io", role="super_admin")
        perms = PermissionResolver(seeded_store).resolve(seeded_store.get_by_id(uid))
        assert len(perms) == 20

    def test_admin_lacks_system_manage(self, seeded_store: UserStore) -> None:
        uid = make_user(seeded_store, "admin@x.io", role="admin")
        perms = PermissionResolver(seeded_store).resolve(seeded_store.get_by_id(uid))
        assert "system:manage" not in perms
        assert "user:delete" in perms

    def test_inactive_permission_excluded(self, seeded_store: UserStore) -> None:
        uid = make_user(seeded_store, "ed@x.io", role="editor")
        permission = seeded_store.get_permission_by_name("user:read")
        seeded_store.update_permission(permission.id, is_active=False)

        perms = PermissionResolver(seeded_store).resolve(seeded_store.get_by_id(uid))
        assert "user:read" not in perms
        assert "content:update" in perms

    def test_follows_role_changes(self, seeded_store: UserStore) -> None:
        uid = make_user(seeded_store, "mover@x.io", role="user")
        resolver = PermissionResolver(seeded_store)
        assert "audit:view" not in resolver.resolve(seeded_store.get_by_id(uid))

        seeded_store.set_primary_role(uid, seeded_store.get_role_by_name("moderator").id)
        assert "audit:view" in resolver.resolve(seeded_store.get_by_id(uid))

    def test_primary_role(self, seeded_store: UserStore) -> None:
        uid = make_user(seeded_store, "p@x.io", role="moderator", additional=("editor",))
        user = seeded_store.get_by_id(uid)
        resolver = PermissionResolver(seeded_store)
        assert resolver.primary_role(user).name == "moderator"
        assert {r.name for r in resolver.roles_for(user).values()} == {"moderator", "editor"}
