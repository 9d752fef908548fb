"""
identity/errors.py -- Error taxonomy for the identity core.

Every error the core raises is an IdentityError. The HTTP boundary maps
status_code straight onto the response and renders str(exc) as the error
message, so messages here are client-facing: they never include hashes,
tokens or SQL.

None of these are retried by the core. Retry policy belongs to the caller.
"""

from __future__ import annotations


class IdentityError(Exception):
    """Base class. status_code is the HTTP status the API layer returns."""

    status_code: int = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(IdentityError):
    """Malformed username, email, phone or password."""

    status_code = 400


class AuthenticationError(IdentityError):
    """Bad credentials or an unusable access token."""

    status_code = 401


class TokenError(AuthenticationError):
    """Access token rejected. reason is one of MISSING, MALFORMED, EXPIRED, INVALID."""

    MISSING = "missing"
    MALFORMED = "malformed"
    EXPIRED = "expired"
    INVALID = "invalid"

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class AuthorizationError(IdentityError):
    """Role-based denial, including protection of the reserved account."""

    status_code = 403


class NotFoundError(IdentityError):
    status_code = 404


class ConflictError(IdentityError):
    """Duplicate account, email or phone."""

    status_code = 409


class LockedError(IdentityError):
    """The account is inside its lockout window."""

    status_code = 423

    def __init__(self, message: str, locked_until: str | None = None) -> None:
        super().__init__(message)
        self.locked_until = locked_until


class CapacityExhaustedError(IdentityError):
    """The account allocator exceeded its retry bound."""

    status_code = 503
