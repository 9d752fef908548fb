"""
identity/tokens.py -- Password hashing, access tokens, and refresh token lifecycle.

Security design decisions:
  Passwords: bcrypt directly (no passlib wrapper). hash_password() is the
       primitive callers use before register(); verify_password() is used by
       authenticate() and change_password(). _DUMMY_HASH enables timing
       equalization so response time does not reveal whether an email is
       registered.

  Access tokens: python-jose HS256 JWTs carrying user_id, account, email and
       role. They are stateless: nothing server-side can revoke one before its
       exp claim. Expiry is checked against the injected clock rather than
       the wall clock so the whole core shares one notion of "now".

  Refresh tokens: secrets.token_urlsafe(48) (384 bits). Only the SHA-256
       digest is stored, so a leaked database cannot be replayed as sessions.
       A plain hash (not bcrypt) is enough for high-entropy random values and
       keeps lookup O(1) via the UNIQUE index.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from identity.errors import TokenError
from identity.models import RefreshToken, Role, User
from identity.store import CredentialStore, to_iso, utc_now

logger = logging.getLogger("classroom.identity.tokens")

ALGORITHM = "HS256"
DEFAULT_ACCESS_TTL = timedelta(hours=1)
DEFAULT_REFRESH_TTL = timedelta(days=7)

_REQUIRED_CLAIMS = ("sub", "user_id", "role", "exp")

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes. The API layer caps password
    length well below that.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Stored value is not a bcrypt hash.
        return False


# Computed once at import so the first login is not measurably slower.
_DUMMY_HASH: str = hash_password("classroom_timing_dummy")


def equalize_timing(plain: str) -> None:
    """Burn one bcrypt check against a dummy hash (unknown-user path)."""
    verify_password(plain, _DUMMY_HASH)


def hash_refresh_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Token lifecycle
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime in seconds
    token_type: str = "bearer"


@dataclass(frozen=True)
class AccessClaims:
    user_id: int
    account: str | None
    email: str | None
    role: Role


class TokenManager:
    """Issues, validates and revokes session credentials.

    Usage:
        tokens = TokenManager(store, secret_key=settings.secret_key)
        pair = tokens.issue(user)
        claims = tokens.validate_access(pair.access_token)
        tokens.revoke_all(user.id)
    """

    def __init__(
        self,
        store: CredentialStore,
        secret_key: str,
        access_ttl: timedelta = DEFAULT_ACCESS_TTL,
        refresh_ttl: timedelta = DEFAULT_REFRESH_TTL,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._secret_key = secret_key
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def create_access_token(self, user: User) -> str:
        now = self._clock()
        payload = {
            "sub": str(user.id),
            "user_id": user.id,
            "account": user.account,
            "email": user.email,
            "role": user.role.value,
            "iat": now,
            "exp": now + self.access_ttl,
        }
        return jwt.encode(payload, self._secret_key, algorithm=ALGORITHM)

    def issue(self, user: User) -> TokenPair:
        """Sign an access token and persist a new refresh token for the user.

        Earlier refresh tokens for the same user stay valid; each login is an
        independent session.
        """
        raw_refresh = secrets.token_urlsafe(48)
        expires_at = self._clock() + self.refresh_ttl
        self._store.create_refresh_token(
            RefreshToken(
                user_id=user.id,
                token_hash=hash_refresh_token(raw_refresh),
                expires_at=to_iso(expires_at),
            )
        )
        logger.info("Issued session tokens for account %s (refresh expires %s)", user.account, to_iso(expires_at))
        return TokenPair(
            access_token=self.create_access_token(user),
            refresh_token=raw_refresh,
            expires_in=int(self.access_ttl.total_seconds()),
        )

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def validate_access(self, token: str | None) -> AccessClaims:
        """Verify signature and expiry of an access token.

        Raises TokenError with reason MISSING, MALFORMED, EXPIRED or INVALID.
        Nothing is looked up in the store: a token stays valid until exp even
        after logout.
        """
        if not token:
            raise TokenError(TokenError.MISSING, "Access token is required")
        try:
            jwt.get_unverified_header(token)
        except JWTError as exc:
            raise TokenError(TokenError.MALFORMED, "Malformed access token") from exc
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[ALGORITHM],
                options={"verify_exp": False},
            )
        except ExpiredSignatureError as exc:
            raise TokenError(TokenError.EXPIRED, "Access token has expired") from exc
        except JWTError as exc:
            raise TokenError(TokenError.INVALID, "Invalid access token") from exc

        if any(claim not in payload for claim in _REQUIRED_CLAIMS):
            raise TokenError(TokenError.INVALID, "Invalid access token")
        try:
            role = Role(payload["role"])
            user_id = int(payload["user_id"])
            expires = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (TypeError, ValueError) as exc:
            raise TokenError(TokenError.INVALID, "Invalid access token") from exc
        if expires <= self._clock():
            raise TokenError(TokenError.EXPIRED, "Access token has expired")

        return AccessClaims(
            user_id=user_id,
            account=payload.get("account"),
            email=payload.get("email"),
            role=role,
        )

    def find_refresh_token(self, raw_token: str) -> RefreshToken | None:
        """Return the live row for a raw refresh token, or None if unknown or expired."""
        row = self._store.get_refresh_token(hash_refresh_token(raw_token))
        if row is None or row.expires_at <= to_iso(self._clock()):
            return None
        return row

    def list_sessions(self, user_id: int) -> list[RefreshToken]:
        return self._store.list_refresh_tokens(user_id)

    # ------------------------------------------------------------------
    # Revoke
    # ------------------------------------------------------------------

    def revoke_all(self, user_id: int) -> int:
        """Delete every refresh token the user owns. Returns 0 when none are left."""
        count = self._store.delete_refresh_tokens_for_user(user_id)
        logger.info("Revoked %d refresh token(s) for user %s", count, user_id)
        return count

    def revoke_one(self, raw_token: str) -> bool:
        return self._store.delete_refresh_token(hash_refresh_token(raw_token))

    def sweep_expired(self) -> int:
        """Delete refresh tokens past expiry. Meant for a periodic job, not per request."""
        count = self._store.delete_expired_refresh_tokens(self._clock())
        if count:
            logger.info("Swept %d expired refresh token(s)", count)
        return count
