"""
auth/lockout.py -- Brute-force defense state machine, one per principal.

States:
  Unlocked -- lock_until is None (or in the past), login_attempts >= 0
  Locked   -- lock_until > now

Transitions:
  failed password check
    - lock set and already expired: fresh cycle, counter = 1, lock cleared
    - otherwise: counter + 1; reaching max_attempts while not locked sets
      lock_until = now + lock_seconds
  successful password check
    - counter and lock cleared unconditionally, last_login stamped

The counter is incremented relative to its stored value and lock changes are
conditional updates (see auth/store.py), so concurrent failures for the same
principal do not lose updates.

Callers check is_locked() BEFORE comparing the password: a locked account is
rejected with the same signal whether or not the password is right, and no
bcrypt work is spent on it.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from auth.models import User

if TYPE_CHECKING:
    from auth.store import UserStore

logger = logging.getLogger("admingate.auth")

MAX_ATTEMPTS = 5
LOCK_SECONDS = 2 * 60 * 60


def is_locked(user: User, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    return user.lock_until is not None and user.lock_until > now


@dataclass(frozen=True)
class LockoutState:
    """Outcome of a failed attempt as seen by the caller."""

    attempts: int
    locked: bool  # True only if THIS call moved the account into Locked
    lock_until: datetime | None = None


class LockoutGuard:
    def __init__(self, store: UserStore, max_attempts: int = MAX_ATTEMPTS, lock_seconds: int = LOCK_SECONDS) -> None:
        self._store = store
        self.max_attempts = max_attempts
        self.lock_seconds = lock_seconds

    def register_failure(self, user: User, now: datetime | None = None) -> LockoutState:
        """Record one failed password check for user."""
        now = now or datetime.now(timezone.utc)

        if user.lock_until is not None and user.lock_until <= now:
            if self._store.restart_login_attempts(user.id, now):
                return LockoutState(attempts=1, locked=False)

        attempts = self._store.increment_login_attempts(user.id)
        if attempts >= self.max_attempts and not is_locked(user, now):
            until = now + timedelta(seconds=self.lock_seconds)
            if self._store.lock_account(user.id, until, now):
                logger.warning("Account %s locked until %s after %d failed attempts", user.id, until, attempts)
                return LockoutState(attempts=attempts, locked=True, lock_until=until)
        return LockoutState(attempts=attempts, locked=False)

    def register_success(self, user: User, now: datetime | None = None) -> None:
        """Reset to Unlocked and stamp the last successful authentication."""
        self._store.reset_login_attempts(user.id, now or datetime.now(timezone.utc))
