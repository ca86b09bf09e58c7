"""
tests/test_store.py -- Unit tests for UserStore persistence and the default seed.
"""

from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import Permission, Role, User
from auth.seed import DEFAULT_ACCOUNTS, DEFAULT_PERMISSIONS, DEFAULT_ROLES, seed
from auth.store import UserStore
from auth.tokens import verify_password
from conftest import make_user


class TestSeed:
    def test_defaults(self, user_store: UserStore) -> None:
        created = seed(user_store, bcrypt_rounds=4)
        assert created == {"permissions": 20, "roles": 5, "accounts": 0}
        assert len(DEFAULT_PERMISSIONS) == 20
        assert set(DEFAULT_ROLES) == {"super_admin", "admin", "moderator", "editor", "user"}

    def test_role_levels_and_grants(self, seeded_store: UserStore) -> None:
        levels = {name: seeded_store.get_role_by_name(name).level for name in DEFAULT_ROLES}
        assert levels == {"super_admin": 100, "admin": 80, "moderator": 50, "editor": 30, "user": 10}

        admin = seeded_store.get_role_by_name("admin")
        assert len(admin.permission_names) == 19
        assert "system:manage" not in admin.permission_names

        user = seeded_store.get_role_by_name("user")
        assert user.permission_names == ["content:read"]
        assert user.is_system_role

    def test_idempotent(self, seeded_store: UserStore) -> None:
        assert seed(seeded_store, bcrypt_rounds=4) == {"permissions": 0, "roles": 0, "accounts": 0}

    def test_with_accounts(self, seeded_store: UserStore) -> None:
        created = seed(seeded_store, with_accounts=True, bcrypt_rounds=4)
        assert created["accounts"] == len(DEFAULT_ACCOUNTS)

        _name, email, password, role = DEFAULT_ACCOUNTS[0]
        account = seeded_store.get_by_email(email)
        assert verify_password(password, account.hashed_password)
        assert seeded_store.get_role(account.role_id).name == role

    def test_reset(self, seeded_store: UserStore) -> None:
        make_user(seeded_store, "someone@x.io")
        seeded_store.create_role(Role(name="custom", display_name="Custom"))

        created = seed(seeded_store, reset=True, bcrypt_rounds=4)
        assert created["roles"] == 5
        assert not seeded_store.has_users()
        assert seeded_store.get_role_by_name("custom") is None


class TestUsers:
    def test_email_case_insensitive(self, seeded_store: UserStore) -> None:
        uid = make_user(seeded_store, "Mixed.Case@Example.COM")
        assert seeded_store.get_by_email("mixed.case@example.com").id == uid
        assert seeded_store.get_by_email("MIXED.CASE@EXAMPLE.COM").id == uid
        assert seeded_store.email_taken("mixed.CASE@example.com")
        assert not seeded_store.email_taken("mixed.case@example.com", exclude_user_id=uid)

    def test_duplicate_email_rejected(self, seeded_store: UserStore) -> None:
        make_user(seeded_store, "dup@x.io")
        with pytest.raises(IntegrityError):
            make_user(seeded_store, "DUP@x.io")

    def test_additional_roles(self, seeded_store: UserStore) -> None:
        editor = seeded_store.get_role_by_name("editor")
        moderator = seeded_store.get_role_by_name("moderator")
        uid = make_user(seeded_store, "multi@x.io", additional=("editor",))

        assert seeded_store.add_additional_role(uid, moderator.id)
        assert not seeded_store.add_additional_role(uid, editor.id)
        assert seeded_store.get_by_id(uid).additional_role_ids == [editor.id, moderator.id]

        assert seeded_store.remove_additional_role(uid, editor.id)
        assert not seeded_store.remove_additional_role(uid, editor.id)
        assert seeded_store.get_by_id(uid).additional_role_ids == [moderator.id]

    def test_primary_role_leaves_additional_list(self, seeded_store: UserStore) -> None:
        editor = seeded_store.get_role_by_name("editor")
        uid = make_user(seeded_store, "promote@x.io", additional=("editor",))

        seeded_store.set_primary_role(uid, editor.id)
        user = seeded_store.get_by_id(uid)
        assert user.role_id == editor.id
        assert user.additional_role_ids == []

    def test_create_skips_primary_in_additional(self, seeded_store: UserStore) -> None:
        uid = make_user(seeded_store, "same@x.io", role="editor", additional=("editor", "editor"))
        assert seeded_store.get_by_id(uid).additional_role_ids == []

    def test_list_and_filter(self, seeded_store: UserStore) -> None:
        make_user(seeded_store, "alice@x.io")
        make_user(seeded_store, "bob@x.io", status="suspended")
        make_user(seeded_store, "carol@x.io", role="editor")

        users, total = seeded_store.list_users()
        assert total == 3
        _users, total = seeded_store.list_users(status="suspended")
        assert total == 1
        _users, total = seeded_store.list_users(search="CAROL")
        assert total == 1
        _users, total = seeded_store.list_users(role_id=seeded_store.get_role_by_name("editor").id)
        assert total == 1
        page, total = seeded_store.list_users(sort_by="email", sort_order="asc", limit=2)
        assert total == 3
        assert [u.email for u in page] == ["alice@x.io", "bob@x.io"]

    def test_update_and_delete(self, seeded_store: UserStore) -> None:
        uid = make_user(seeded_store, "edit@x.io")
        assert seeded_store.update_user(uid, name="Edited", email="NEW@x.io")
        user = seeded_store.get_by_id(uid)
        assert user.name == "Edited"
        assert user.email == "new@x.io"

        assert seeded_store.delete_user(uid)
        assert seeded_store.get_by_id(uid) is None
        assert not seeded_store.update_user(uid, name="Ghost")

    def test_ids_not_reused_after_delete(self, seeded_store: UserStore) -> None:
        last = make_user(seeded_store, "last@x.io")
        seeded_store.delete_user(last)
        assert make_user(seeded_store, "next@x.io") > last

        role_id = seeded_store.create_role(Role(name="short_lived", display_name="Short Lived"))
        seeded_store.delete_role(role_id)
        assert seeded_store.create_role(Role(name="successor", display_name="Successor")) > role_id

    def test_stats(self, seeded_store: UserStore) -> None:
        make_user(seeded_store, "s1@x.io")
        make_user(seeded_store, "s2@x.io", status="inactive")
        stats = seeded_store.user_stats()
        assert stats["total_users"] == 2
        assert stats["active_users"] == 1
        assert stats["inactive_users"] == 1
        assert stats["role_distribution"][0]["count"] == 2


class TestRolesAndPermissions:
    def test_role_name_unique(self, seeded_store: UserStore) -> None:
        with pytest.raises(IntegrityError):
            seeded_store.create_role(Role(name="Editor", display_name="Dup"))

    def test_role_permissions_replace(self, seeded_store: UserStore) -> None:
        read = seeded_store.get_permission_by_name("content:read")
        delete = seeded_store.get_permission_by_name("content:delete")
        role_id = seeded_store.create_role(Role(name="reviewer", display_name="Reviewer", permission_ids=[read.id]))

        seeded_store.set_role_permissions(role_id, [delete.id, delete.id])
        role = seeded_store.get_role(role_id)
        assert role.permission_ids == [delete.id]
        assert role.permission_names == ["content:delete"]

    def test_count_users_with_role(self, seeded_store: UserStore) -> None:
        editor = seeded_store.get_role_by_name("editor")
        make_user(seeded_store, "e1@x.io", role="editor")
        make_user(seeded_store, "e2@x.io", additional=("editor",))
        make_user(seeded_store, "e3@x.io")
        assert seeded_store.count_users_with_role(editor.id) == 2

    def test_delete_role_unlinks(self, seeded_store: UserStore) -> None:
        role_id = seeded_store.create_role(Role(name="temp", display_name="Temp"))
        uid = make_user(seeded_store, "t@x.io")
        seeded_store.add_additional_role(uid, role_id)

        assert seeded_store.delete_role(role_id)
        assert seeded_store.get_role(role_id) is None
        assert seeded_store.get_by_id(uid).additional_role_ids == []

    def test_permission_resource_action_unique(self, seeded_store: UserStore) -> None:
        with pytest.raises(IntegrityError):
            seeded_store.create_permission(Permission(resource="user", action="read", name="user:read2"))

    def test_delete_permission_unlinks(self, seeded_store: UserStore) -> None:
        permission = seeded_store.get_permission_by_name("content:read")
        assert seeded_store.delete_permission(permission.id)
        assert "content:read" not in seeded_store.get_role_by_name("user").permission_names

    def test_categories(self, seeded_store: UserStore) -> None:
        counts = {c["category"]: c["count"] for c in seeded_store.permission_categories()}
        assert sum(counts.values()) == 20
        assert set(counts) <= {"user", "role", "system", "content", "audit", "settings"}

    def test_role_stats(self, seeded_store: UserStore) -> None:
        stats = seeded_store.role_stats()
        assert stats["total_roles"] == 5
        assert stats["system_roles"] == 5
        assert stats["top_permissions"][0]["role_count"] >= 4

    def test_ping(self, user_store: UserStore) -> None:
        assert user_store.ping() is True


class TestUserDataclass:
    def test_defaults(self) -> None:
        user = User(name="n", email="e@x.io", role_id=1)
        assert user.status == "active"
        assert user.additional_role_ids == []
        assert user.login_attempts == 0
