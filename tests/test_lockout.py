"""
tests/test_lockout.py -- Unit tests for the lockout guard state machine.

Time is injected through the now= argument, so lock expiry is tested without
sleeping. The concurrency test runs real threads against a file database so
SQLite locking, not a shared in-memory cache, serializes the writers.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

from auth.lockout import LOCK_SECONDS, MAX_ATTEMPTS, LockoutGuard, is_locked
from auth.seed import seed
from auth.store import UserStore
from conftest import make_user


def _fail(guard: LockoutGuard, store: UserStore, uid: int, times: int, now: datetime):
    state = None
    for _ in range(times):
        state = guard.register_failure(store.get_by_id(uid), now)
    return state


class TestLockout:
    def test_defaults(self) -> None:
        assert MAX_ATTEMPTS == 5
        assert LOCK_SECONDS == 2 * 60 * 60

    def test_counts_failures_below_threshold(self, seeded_store: UserStore) -> None:
        uid = make_user(seeded_store, "a@x.io")
        guard = LockoutGuard(seeded_store)
        now = datetime.now(timezone.utc)

        state = _fail(guard, seeded_store, uid, 4, now)
        assert state.attempts == 4
        assert state.locked is False
        assert not is_locked(seeded_store.get_by_id(uid), now)

    def test_fifth_failure_locks_for_two_hours(self, seeded_store: UserStore) -> None:
        uid = make_user(seeded_store, "b@x.io")
        guard = LockoutGuard(seeded_store)
        now = datetime.now(timezone.utc)

        state = _fail(guard, seeded_store, uid, 5, now)
        assert state.attempts == 5
        assert state.locked is True

        user = seeded_store.get_by_id(uid)
        assert is_locked(user, now)
        assert user.lock_until - now >= timedelta(hours=2) - timedelta(seconds=1)

    def test_failures_while_locked_do_not_extend_lock(self, seeded_store: UserStore) -> None:
        uid = make_user(seeded_store, "c@x.io")
        guard = LockoutGuard(seeded_store)
        now = datetime.now(timezone.utc)
        _fail(guard, seeded_store, uid, 5, now)
        until = seeded_store.get_by_id(uid).lock_until

        state = guard.register_failure(seeded_store.get_by_id(uid), now + timedelta(minutes=10))
        assert state.locked is False
        assert state.attempts == 6
        assert seeded_store.get_by_id(uid).lock_until == until

    def test_failure_after_expiry_starts_fresh_cycle(self, seeded_store: UserStore) -> None:
        uid = make_user(seeded_store, "d@x.io")
        guard = LockoutGuard(seeded_store)
        now = datetime.now(timezone.utc)
        _fail(guard, seeded_store, uid, 5, now)

        later = now + timedelta(hours=2, minutes=1)
        state = guard.register_failure(seeded_store.get_by_id(uid), later)
        assert state.attempts == 1
        assert state.locked is False

        user = seeded_store.get_by_id(uid)
        assert user.lock_until is None
        assert user.login_attempts == 1

    def test_success_resets(self, seeded_store: UserStore) -> None:
        uid = make_user(seeded_store, "e@x.io")
        guard = LockoutGuard(seeded_store)
        now = datetime.now(timezone.utc)
        _fail(guard, seeded_store, uid, 3, now)

        guard.register_success(seeded_store.get_by_id(uid), now)
        user = seeded_store.get_by_id(uid)
        assert user.login_attempts == 0
        assert user.lock_until is None
        assert user.last_login is not None

    def test_custom_threshold(self, seeded_store: UserStore) -> None:
        uid = make_user(seeded_store, "f@x.io")
        guard = LockoutGuard(seeded_store, max_attempts=2, lock_seconds=60)
        now = datetime.now(timezone.utc)

        state = _fail(guard, seeded_store, uid, 2, now)
        assert state.locked is True
        assert state.lock_until == now + timedelta(seconds=60)
        assert not is_locked(seeded_store.get_by_id(uid), now + timedelta(seconds=61))


class TestConcurrentFailures:
    """Parallel failed logins against a file-backed database."""

    THREADS = 8
    PER_THREAD = 10

    def test_no_lost_updates_and_one_lock(self, tmp_path) -> None:
        store = UserStore(db_url=f"sqlite:///{tmp_path / 'lockout.db'}")
        try:
            seed(store, bcrypt_rounds=4)
            uid = make_user(store, "swarm@x.io")
            guard = LockoutGuard(store)
            # Every login read the row before any failure landed.
            snapshot = store.get_by_id(uid)
            barrier = threading.Barrier(self.THREADS)

            def hammer() -> list:
                barrier.wait()
                return [guard.register_failure(snapshot) for _ in range(self.PER_THREAD)]

            with ThreadPoolExecutor(max_workers=self.THREADS) as pool:
                futures = [pool.submit(hammer) for _ in range(self.THREADS)]
                states = [state for future in futures for state in future.result()]

            assert store.get_by_id(uid).login_attempts == self.THREADS * self.PER_THREAD
            assert sorted(s.attempts for s in states) == list(range(1, self.THREADS * self.PER_THREAD + 1))
            assert sum(1 for s in states if s.locked) == 1
            assert is_locked(store.get_by_id(uid))
        finally:
            store.close()
