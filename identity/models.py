"""
identity/models.py -- Domain dataclasses and enums for identity entities.

Pattern: Data class (pure data container, zero logic). The store does the
persistence work, the service does the business work.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

# Fixed super-administrator account. Seeded once by the store, excluded from
# allocation, and protected from role/status/delete mutations.
RESERVED_ACCOUNT = "000000"
ACCOUNT_LENGTH = 6


class Role(str, Enum):
    super_admin = "super_admin"
    admin = "admin"
    teacher = "teacher"
    student = "student"


class Status(str, Enum):
    active = "active"
    disabled = "disabled"


ADMIN_ROLES = frozenset({Role.super_admin, Role.admin})


@dataclass
class User:
    """A registered identity.

    account is the externally-facing 6-digit identifier; id is the internal
    row key and is None before the record is written.

    locked_until is an ISO 8601 UTC timestamp or None. A value in the past is
    stale: the lockout machine clears it lazily on the next lock check.
    """

    account: str
    username: str
    password_hash: str
    role: Role = Role.student
    status: Status = Status.active
    id: int | None = None
    email: str | None = None
    phone: str | None = None
    avatar: str | None = None
    failed_attempts: int = 0
    locked_until: str | None = None
    created_at: str = ""  # ISO 8601, set by store on insert
    updated_at: str = ""

    @property
    def is_reserved(self) -> bool:
        return self.account == RESERVED_ACCOUNT

    @property
    def is_active(self) -> bool:
        return self.status == Status.active


@dataclass
class RefreshToken:
    """A server-tracked refresh credential.

    Only the SHA-256 digest of the opaque token is persisted. The raw value is
    handed to the client once at login and is unrecoverable afterwards.
    """

    user_id: int
    token_hash: str
    expires_at: str
    id: int | None = None
    created_at: str = ""


@dataclass
class UserFilters:
    """Optional filters for the paginated admin user listing."""

    account: str | None = None
    keyword: str | None = None  # substring match on username
    role: Role | None = None
    status: Status | None = None


@dataclass
class UserPage:
    items: list[User]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return (self.total + self.page_size - 1) // self.page_size
