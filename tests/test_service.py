"""
tests/test_service.py -- Unit tests for the credential flows in AuthService.

Coverage:
  - register: default role, role by name / id, role ceiling, duplicate email
  - login: bad credentials are indistinguishable, lockout after five
    failures even with the right password, inactive accounts, audit trail
  - logout / force logout / password change revoke the presenting token
  - profile update records the changes
  - an audit store that rejects every write changes no result or status
"""

from __future__ import annotations

import pytest

from audit.sink import AuditSink
from audit.store import AuditStore
from auth.gate import TOKEN_BLACKLISTED, AuthorizationError, AuthorizationGate
from auth.lockout import LockoutGuard
from auth.models import RequestOrigin
from auth.revocation import RevocationLedger
from auth.service import AuthService, ServiceError
from auth.store import UserStore
from auth.tokens import TokenCodec, verify_password
from conftest import TEST_PASSWORD, FailingStore, make_user

ORIGIN = RequestOrigin("192.0.2.44", "pytest-service")


class ServiceHarness:
    def __init__(self, store: UserStore, sink: AuditSink, audit_store: AuditStore) -> None:
        self.store = store
        self.sink = sink
        self.audit_store = audit_store
        self.codec = TokenCodec(secret_key="service-test-secret-0123456789abcdef", expire_seconds=3600)
        self.ledger = RevocationLedger(store)
        self.service = AuthService(store, self.codec, self.ledger, LockoutGuard(store), sink, bcrypt_rounds=4)
        self.gate = AuthorizationGate(self.codec, store, self.ledger, sink)

    def records(self, action: str):
        self.sink.flush()
        records, _total = self.audit_store.list_records(action=action, sort_order="asc", limit=100)
        return records

    def error(self, fn, *args, **kwargs) -> ServiceError:
        with pytest.raises(ServiceError) as exc_info:
            fn(*args, **kwargs)
        return exc_info.value


@pytest.fixture
def svc(seeded_store: UserStore, audit_sink: AuditSink, audit_store: AuditStore) -> ServiceHarness:
    return ServiceHarness(seeded_store, audit_sink, audit_store)


class TestRegister:
    def test_default_role(self, svc: ServiceHarness) -> None:
        user, token = svc.service.register("New User", "New@X.io", "Abcdef1", origin=ORIGIN)
        assert user.email == "new@x.io"
        assert svc.store.get_role(user.role_id).name == "user"
        assert svc.codec.verify(token).permissions == frozenset({"content:read"})

        (record,) = svc.records("register")
        assert record.user_id == user.id
        assert record.details["role"] == "user"

    def test_role_by_name_and_id(self, svc: ServiceHarness) -> None:
        user_role = svc.store.get_role_by_name("user")
        by_name, _ = svc.service.register("A", "a@x.io", "Abcdef1", role="user")
        by_id, _ = svc.service.register("B", "b@x.io", "Abcdef1", role=user_role.id)
        by_digits, _ = svc.service.register("C", "c@x.io", "Abcdef1", role=str(user_role.id))
        assert by_name.role_id == by_id.role_id == by_digits.role_id == user_role.id

    def test_role_above_default_refused(self, svc: ServiceHarness) -> None:
        err = svc.error(svc.service.register, "Sneaky", "sneaky@x.io", "Abcdef1", role="super_admin")
        assert err.status_code == 403
        assert err.code == "role_not_allowed"
        assert svc.store.get_by_email("sneaky@x.io") is None

    def test_unknown_role(self, svc: ServiceHarness) -> None:
        err = svc.error(svc.service.register, "X", "x@x.io", "Abcdef1", role="wizard")
        assert err.status_code == 400
        assert err.code == "invalid_role"

    def test_duplicate_email(self, svc: ServiceHarness) -> None:
        make_user(svc.store, "taken@x.io")
        err = svc.error(svc.service.register, "Y", "TAKEN@x.io", "Abcdef1")
        assert err.status_code == 400
        assert err.code == "email_exists"

    def test_missing_default_role(self, user_store: UserStore, audit_sink: AuditSink, audit_store: AuditStore) -> None:
        bare = ServiceHarness(user_store, audit_sink, audit_store)
        err = bare.error(bare.service.register, "Z", "z@x.io", "Abcdef1")
        assert err.status_code == 500
        assert err.code == "default_role_missing"


class TestLogin:
    def test_success(self, svc: ServiceHarness) -> None:
        uid = make_user(svc.store, "ok@x.io", role="editor")
        user, token = svc.service.login("OK@x.io", TEST_PASSWORD, ORIGIN)
        assert user.id == uid
        assert user.last_login is not None
        assert "content:create" in svc.codec.verify(token).permissions

        (record,) = svc.records("login")
        assert record.user_id == uid
        assert record.ip_address == "192.0.2.44"

    def test_unknown_email_and_wrong_password_look_the_same(self, svc: ServiceHarness) -> None:
        make_user(svc.store, "real@x.io")
        unknown = svc.error(svc.service.login, "nobody@x.io", TEST_PASSWORD)
        wrong = svc.error(svc.service.login, "real@x.io", "Wrong1234")
        assert (unknown.status_code, unknown.code, unknown.message) == (wrong.status_code, wrong.code, wrong.message)
        assert unknown.status_code == 401

        records = svc.records("failed_login")
        assert [r.details["reason"] for r in records] == ["user_not_found", "invalid_password"]
        assert records[0].user_id is None

    def test_inactive_account(self, svc: ServiceHarness) -> None:
        make_user(svc.store, "off@x.io", status="inactive")
        err = svc.error(svc.service.login, "off@x.io", TEST_PASSWORD)
        assert err.status_code == 401
        assert err.code == "account_inactive"

    def test_lockout_after_five_failures(self, svc: ServiceHarness) -> None:
        uid = make_user(svc.store, "brute@x.io")
        for _ in range(5):
            assert svc.error(svc.service.login, "brute@x.io", "Wrong1234").status_code == 401

        err = svc.error(svc.service.login, "brute@x.io", TEST_PASSWORD)
        assert err.status_code == 423
        assert err.code == "ACCOUNT_LOCKED"
        assert svc.store.get_by_id(uid).login_attempts == 5

        (locked,) = svc.records("account_locked")
        assert locked.status == "warning"
        assert locked.severity == "critical"
        severities = [r.severity for r in svc.records("failed_login")]
        assert severities == ["medium", "medium", "medium", "high", "high", "medium"]

    def test_success_resets_counter(self, svc: ServiceHarness) -> None:
        uid = make_user(svc.store, "retry@x.io")
        for _ in range(3):
            svc.error(svc.service.login, "retry@x.io", "Wrong1234")
        svc.service.login("retry@x.io", TEST_PASSWORD)
        assert svc.store.get_by_id(uid).login_attempts == 0


class TestSessions:
    def _ctx(self, svc: ServiceHarness, email: str):
        make_user(svc.store, email)
        _user, token = svc.service.login(email, TEST_PASSWORD)
        return svc.gate.check(token)

    def test_logout_revokes_token(self, svc: ServiceHarness) -> None:
        ctx = self._ctx(svc, "bye@x.io")
        svc.service.logout(ctx, ORIGIN)

        with pytest.raises(AuthorizationError) as exc_info:
            svc.gate.check(ctx.token)
        assert exc_info.value.code == TOKEN_BLACKLISTED
        assert svc.store.get_revoked_token(ctx.token).reason == "logout"
        assert len(svc.records("logout")) == 1

    def test_logout_twice_is_harmless(self, svc: ServiceHarness) -> None:
        ctx = self._ctx(svc, "twice@x.io")
        svc.service.logout(ctx)
        svc.service.logout(ctx)
        assert svc.ledger.is_revoked(ctx.token)

    def test_force_logout(self, svc: ServiceHarness) -> None:
        ctx = self._ctx(svc, "force@x.io")
        svc.service.force_logout(ctx, ORIGIN)
        assert svc.store.get_revoked_token(ctx.token).reason == "force_logout"
        assert svc.records("force_logout")[0].severity == "medium"

    def test_change_password(self, svc: ServiceHarness) -> None:
        ctx = self._ctx(svc, "rotate@x.io")
        svc.service.change_password(ctx, TEST_PASSWORD, "N3wPassword", ORIGIN)

        user = svc.store.get_by_id(ctx.user.id)
        assert verify_password("N3wPassword", user.hashed_password)
        assert svc.store.get_revoked_token(ctx.token).reason == "password_change"
        svc.service.login("rotate@x.io", "N3wPassword")

    def test_change_password_wrong_current(self, svc: ServiceHarness) -> None:
        ctx = self._ctx(svc, "nope@x.io")
        err = svc.error(svc.service.change_password, ctx, "Wrong1234", "N3wPassword")
        assert err.status_code == 400
        assert err.code == "incorrect_password"
        assert not svc.ledger.is_revoked(ctx.token)
        (record,) = svc.records("password_change")
        assert record.status == "failure"


class TestProfile:
    def test_update_records_changes(self, svc: ServiceHarness) -> None:
        uid = make_user(svc.store, "me@x.io")
        _user, token = svc.service.login("me@x.io", TEST_PASSWORD)
        ctx = svc.gate.check(token)

        updated = svc.service.update_profile(ctx, name="Renamed", email="Me2@x.io")
        assert updated.name == "Renamed"
        assert updated.email == "me2@x.io"
        (record,) = svc.records("profile_update")
        assert record.user_id == uid
        assert record.details["changes"]["email"] == {"from": "me@x.io", "to": "me2@x.io"}

    def test_email_collision(self, svc: ServiceHarness) -> None:
        make_user(svc.store, "other@x.io")
        make_user(svc.store, "self@x.io")
        _user, token = svc.service.login("self@x.io", TEST_PASSWORD)
        err = svc.error(svc.service.update_profile, svc.gate.check(token), email="other@x.io")
        assert err.code == "email_exists"


class TestAuditOutage:
    """Every flow returns exactly what it would with a healthy audit store."""

    @pytest.fixture
    def dark(self, seeded_store: UserStore, audit_store: AuditStore):
        sink = AuditSink(FailingStore())
        sink.start()
        yield ServiceHarness(seeded_store, sink, audit_store)
        sink.close()

    def test_credential_flows_unaffected(self, dark: ServiceHarness) -> None:
        user, token = dark.service.register("Dark", "dark@x.io", "Abcdef1", origin=ORIGIN)
        assert dark.codec.verify(token).user_id == user.id

        wrong = dark.error(dark.service.login, "dark@x.io", "Wrong1234", ORIGIN)
        assert (wrong.status_code, wrong.code) == (401, "bad_credentials")

        same, token = dark.service.login("dark@x.io", "Abcdef1", ORIGIN)
        assert same.id == user.id
        assert dark.store.get_by_id(user.id).login_attempts == 0

        ctx = dark.gate.check(token, ORIGIN)
        dark.service.logout(ctx, ORIGIN)
        assert dark.ledger.is_revoked(token)

        assert dark.sink.flush()
        assert dark.sink.failed > 0
        assert dark.sink.written == 0

    def test_lockout_unaffected(self, dark: ServiceHarness) -> None:
        make_user(dark.store, "dark.brute@x.io")
        for _ in range(5):
            dark.error(dark.service.login, "dark.brute@x.io", "Wrong1234", ORIGIN)
        err = dark.error(dark.service.login, "dark.brute@x.io", TEST_PASSWORD, ORIGIN)
        assert (err.status_code, err.code) == (423, "ACCOUNT_LOCKED")
