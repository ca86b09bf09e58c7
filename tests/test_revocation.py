"""
tests/test_revocation.py -- Unit tests for the revocation ledger.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from auth.models import RequestOrigin
from auth.revocation import RevocationLedger
from auth.store import UserStore


class TestRevocationLedger:
    def test_revoke_then_lookup(self, user_store: UserStore) -> None:
        ledger = RevocationLedger(user_store)
        expires = datetime.now(timezone.utc) + timedelta(days=1)

        assert not ledger.is_revoked("tok-1")
        assert ledger.revoke("tok-1", 1, expires, "logout", RequestOrigin("10.0.0.1", "pytest"))
        assert ledger.is_revoked("tok-1")
        assert not ledger.is_revoked("tok-2")

        entry = user_store.get_revoked_token("tok-1")
        assert entry.reason == "logout"
        assert entry.ip_address == "10.0.0.1"
        assert entry.user_agent == "pytest"

    def test_revoke_is_idempotent(self, user_store: UserStore) -> None:
        ledger = RevocationLedger(user_store)
        expires = datetime.now(timezone.utc) + timedelta(days=1)

        assert ledger.revoke("tok-1", 1, expires) is True
        assert ledger.revoke("tok-1", 1, expires, "force_logout") is False
        assert ledger.is_revoked("tok-1")
        assert user_store.get_revoked_token("tok-1").reason == "logout"

    def test_unknown_reason_rejected(self, user_store: UserStore) -> None:
        ledger = RevocationLedger(user_store)
        with pytest.raises(ValueError):
            ledger.revoke("tok-1", 1, datetime.now(timezone.utc), "bored")
        assert not ledger.is_revoked("tok-1")

    @pytest.mark.parametrize("reason", ["logout", "force_logout", "security_breach", "password_change"])
    def test_every_known_reason_accepted(self, user_store: UserStore, reason: str) -> None:
        ledger = RevocationLedger(user_store)
        assert ledger.revoke(f"tok-{reason}", 1, datetime.now(timezone.utc) + timedelta(hours=1), reason)

    def test_purge_removes_only_expired(self, user_store: UserStore) -> None:
        ledger = RevocationLedger(user_store)
        now = datetime.now(timezone.utc)
        ledger.revoke("old", 1, now - timedelta(minutes=1))
        ledger.revoke("live", 1, now + timedelta(days=1))

        assert ledger.purge_expired(now) == 1
        assert not ledger.is_revoked("old")
        assert ledger.is_revoked("live")
        assert ledger.purge_expired(now) == 0
