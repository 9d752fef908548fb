"""
identity/lockout.py -- Failed-login lockout state machine.

States:
  UNLOCKED  failed_attempts below the threshold, or a lock deadline that has
            already passed (stale, cleared lazily on the next check).
  LOCKED    locked_until set to a future time.

Transitions:
  record_failure   failed_attempts += 1; the attempt that reaches the
                   threshold arms locked_until = now + duration. The
                   increment is unconditional, so failures recorded while
                   already locked keep counting and re-arm the window.
  record_success   failed_attempts -> 0, locked_until -> NULL.
  is_locked        future deadline -> locked; elapsed deadline -> counters
                   reset and unlocked. No background sweep is needed.

The reserved super-admin account is not exempt.

All writes go through CredentialStore's single-statement updates, so the
increment, threshold check and lock arming happen atomically per row.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from identity.models import User
from identity.store import CredentialStore, from_iso, utc_now

logger = logging.getLogger("classroom.identity.lockout")

DEFAULT_THRESHOLD = 5
DEFAULT_LOCK_DURATION = timedelta(minutes=30)


@dataclass(frozen=True)
class LockoutResult:
    failed_attempts: int
    locked_until: str | None
    locked: bool


class LockoutPolicy:
    def __init__(
        self,
        store: CredentialStore,
        threshold: int = DEFAULT_THRESHOLD,
        lock_duration: timedelta = DEFAULT_LOCK_DURATION,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self.threshold = threshold
        self.lock_duration = lock_duration
        self._clock = clock

    def is_locked(self, user: User) -> bool:
        """Report whether the user is inside a lock window, clearing stale locks."""
        if not user.locked_until:
            return False
        now = self._clock()
        if from_iso(user.locked_until) > now:
            return True
        if self._store.clear_expired_lock(user.id, now):
            logger.info("Lock expired for account %s; failed attempts reset", user.account)
            user.failed_attempts = 0
            user.locked_until = None
            return False
        # Another request changed the row since it was read: trust the store.
        current = self._store.get_by_id(user.id)
        if current is None:
            return False
        user.failed_attempts = current.failed_attempts
        user.locked_until = current.locked_until
        return bool(current.locked_until) and from_iso(current.locked_until) > now

    def record_failure(self, user: User) -> LockoutResult:
        now = self._clock()
        outcome = self._store.record_failed_attempt(user.id, self.threshold, now + self.lock_duration)
        if outcome is None:
            # Row vanished between lookup and update (concurrent delete).
            return LockoutResult(failed_attempts=0, locked_until=None, locked=False)
        failed_attempts, locked_until = outcome
        user.failed_attempts = failed_attempts
        user.locked_until = locked_until
        locked = failed_attempts >= self.threshold
        if locked:
            logger.warning(
                "Account %s locked until %s after %d failed attempts",
                user.account,
                locked_until,
                failed_attempts,
            )
        else:
            logger.warning("Failed login for account %s (%d/%d)", user.account, failed_attempts, self.threshold)
        return LockoutResult(failed_attempts=failed_attempts, locked_until=locked_until, locked=locked)

    def record_success(self, user: User) -> None:
        self._store.reset_failed_attempts(user.id)
        user.failed_attempts = 0
        user.locked_until = None
