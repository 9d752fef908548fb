"""
identity/allocator.py -- Random 6-digit account number allocation.

The loop here only makes collisions unlikely. The authoritative guarantee is
UNIQUE(account) in the store: IdentityService retries allocation when an
insert loses that race.

Randomness comes from the secrets module. Account numbers are not secret, but
a predictable sequence would let anyone enumerate freshly registered accounts.
"""

from __future__ import annotations

import logging
import secrets
from typing import Protocol

from identity.errors import CapacityExhaustedError
from identity.models import ACCOUNT_LENGTH, RESERVED_ACCOUNT

logger = logging.getLogger("classroom.identity.allocator")

DEFAULT_MAX_ATTEMPTS = 100


class AccountLookup(Protocol):
    def account_exists(self, account: str) -> bool: ...


class AccountAllocator:
    """Draws unused account numbers from 000000-999999, never the reserved one."""

    def __init__(self, store: AccountLookup, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> None:
        self._store = store
        self._max_attempts = max_attempts
        self._space = 10**ACCOUNT_LENGTH

    def _draw(self) -> str:
        return str(secrets.randbelow(self._space)).zfill(ACCOUNT_LENGTH)

    def generate(self) -> str:
        """Return an account number that was unused at the time of the check.

        Raises CapacityExhaustedError after max_attempts draws that were all
        reserved or taken.
        """
        for _ in range(self._max_attempts):
            account = self._draw()
            if account == RESERVED_ACCOUNT:
                continue
            if not self._store.account_exists(account):
                return account
        logger.error("Account allocation exhausted after %d attempts", self._max_attempts)
        raise CapacityExhaustedError("No free account numbers are available. Contact an administrator.")
