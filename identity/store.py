"""
identity/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper.
CredentialStore is the repository; _row_to_user / _row_to_refresh_token are
the mappers. Service and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Uniqueness:
  UNIQUE(account), UNIQUE(email), UNIQUE(phone) and UNIQUE(token_hash) are
  real table constraints. Application-level existence checks only produce
  friendlier errors; two concurrent inserts that both pass the check are
  still resolved here, with the loser getting sqlalchemy.exc.IntegrityError.
  unique_violation() tells callers which column lost.

  NULL email/phone values never collide: every supported backend treats
  NULLs as distinct in UNIQUE constraints, which is exactly "unique if
  present".

Timestamps:
  Stored as ISO 8601 UTC strings with fixed microsecond precision (to_iso),
  so string comparison in SQL matches chronological order. The store takes an
  injectable clock for created_at / updated_at stamps.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    case,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from identity.models import RESERVED_ACCOUNT, RefreshToken, Role, Status, User, UserFilters, UserPage

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account", String(6), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("username", String(20), nullable=False, index=True),
    Column("email", String(100), unique=True),
    Column("phone", String(11), unique=True),
    Column("avatar", String(255)),
    Column("role", String(20), nullable=False, server_default=Role.student.value, index=True),
    Column("status", String(10), nullable=False, server_default=Status.active.value),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("expires_at", String(32), nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
)

# Columns update_user() accepts. account, id and the lockout counters are
# deliberately absent: account is immutable, lockout has its own atomic paths.
_MUTABLE_USER_FIELDS = frozenset({"username", "email", "phone", "avatar", "role", "status", "password_hash"})


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _configure_sqlite(dbapi_conn, connection_record) -> None:
    """Enable WAL journaling and foreign keys on every new SQLite connection.

    SQLite PRAGMAs are per-connection, so this runs from the pool's connect
    event rather than once at startup. foreign_keys=ON is what makes the
    refresh_tokens ON DELETE CASCADE take effect.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Render a datetime as a sortable ISO 8601 UTC string."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def unique_violation(exc: IntegrityError) -> str | None:
    """Return which unique column an IntegrityError violated, if recognizable.

    SQLite reports "UNIQUE constraint failed: users.email"; PostgreSQL reports
    the constraint name (users_email_key). Both contain table and column.
    """
    message = str(exc.orig).lower()
    for column in ("account", "email", "phone", "token_hash"):
        if f"users.{column}" in message or f"users_{column}" in message:
            return column
        if f"refresh_tokens.{column}" in message or f"refresh_tokens_{column}" in message:
            return column
    return None


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for User and RefreshToken rows.

    Usage:
        store = CredentialStore("sqlite:///identity.db")
        store.ensure_super_admin(hash_password("secret"))
        user = store.get_by_account("000000")
        store.close()
    """

    def __init__(self, db_url: str, clock: Callable[[], datetime] = utc_now) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _configure_sqlite)
        self._clock = clock
        _metadata.create_all(self.engine)

    def _now_iso(self) -> str:
        return to_iso(self._clock())

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    def ensure_super_admin(
        self, password_hash: str, email: str | None = None, username: str = "Super Admin"
    ) -> bool:
        """Seed the reserved super-admin row if it does not exist yet.

        email is the login identifier for the row; without one the
        super-admin cannot authenticate.

        Returns True if the row was created by this call. Safe to call on every
        startup: a concurrent seeder losing the UNIQUE(account) race is treated
        as "already present".
        """
        if self.account_exists(RESERVED_ACCOUNT):
            return False
        try:
            self.create_user(
                User(
                    account=RESERVED_ACCOUNT,
                    username=username,
                    password_hash=password_hash,
                    email=email or None,
                    role=Role.super_admin,
                )
            )
        except IntegrityError:
            return False
        return True

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if account, email or phone is
        already taken. Use unique_violation() to find out which.
        """
        now = self._now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    account=user.account,
                    password_hash=user.password_hash,
                    username=user.username,
                    email=user.email,
                    phone=user.phone,
                    avatar=user.avatar,
                    role=Role(user.role).value,
                    status=Status(user.status).value,
                    failed_attempts=0,
                    locked_until=None,
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        return self._get_one(_users.c.id == user_id)

    def get_by_account(self, account: str) -> User | None:
        return self._get_one(_users.c.account == account)

    def get_by_email(self, email: str) -> User | None:
        return self._get_one(_users.c.email == email)

    def get_by_phone(self, phone: str) -> User | None:
        return self._get_one(_users.c.phone == phone)

    def _get_one(self, clause) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(clause)).fetchone()
        return _row_to_user(row) if row is not None else None

    def account_exists(self, account: str) -> bool:
        return self._exists(_users.c.account == account)

    def username_exists(self, username: str, exclude_id: int | None = None) -> bool:
        clause = _users.c.username == username
        if exclude_id is not None:
            clause = clause & (_users.c.id != exclude_id)
        return self._exists(clause)

    def email_exists(self, email: str, exclude_id: int | None = None) -> bool:
        """True if another user holds this email. exclude_id skips the caller's own row."""
        clause = _users.c.email == email
        if exclude_id is not None:
            clause = clause & (_users.c.id != exclude_id)
        return self._exists(clause)

    def phone_exists(self, phone: str, exclude_id: int | None = None) -> bool:
        clause = _users.c.phone == phone
        if exclude_id is not None:
            clause = clause & (_users.c.id != exclude_id)
        return self._exists(clause)

    def _exists(self, clause) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(_users.c.id).where(clause).limit(1)).fetchone()
        return row is not None

    def list_users(self, page: int = 1, page_size: int = 20, filters: UserFilters | None = None) -> UserPage:
        """Return one page of users, newest first, plus the total match count."""
        page = max(page, 1)
        page_size = max(page_size, 1)
        conditions = []
        if filters is not None:
            if filters.account:
                conditions.append(_users.c.account == filters.account)
            if filters.keyword:
                conditions.append(_users.c.username.contains(filters.keyword, autoescape=True))
            if filters.role is not None:
                conditions.append(_users.c.role == Role(filters.role).value)
            if filters.status is not None:
                conditions.append(_users.c.status == Status(filters.status).value)

        count_query = select(func.count()).select_from(_users)
        rows_query = _users.select().order_by(_users.c.id.desc()).limit(page_size).offset((page - 1) * page_size)
        for condition in conditions:
            count_query = count_query.where(condition)
            rows_query = rows_query.where(condition)

        with self.engine.connect() as conn:
            total = conn.execute(count_query).scalar() or 0
            rows = conn.execute(rows_query).fetchall()
        return UserPage(items=[_row_to_user(r) for r in rows], total=total, page=page, page_size=page_size)

    def count_by_role(self, role: Role) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_users).where(_users.c.role == Role(role).value)
            ).scalar()
        return result or 0

    def update_user(self, user_id: int, **fields: Any) -> bool:
        """Update mutable fields on an existing user and stamp updated_at.

        Accepted fields: username, email, phone, avatar, role, status,
        password_hash. Unknown keys raise ValueError. Enum values are stored
        by their string value.

        Returns True if a row was updated, False if user_id was not found.
        Raises IntegrityError if the new email/phone is already taken.
        """
        unknown = set(fields) - _MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        if "status" in fields:
            fields["status"] = Status(fields["status"]).value
        fields["updated_at"] = self._now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def delete_user(self, user_id: int) -> bool:
        """Permanently delete a user and every refresh token they own.

        Both deletes run in one transaction. The explicit token delete mirrors
        the ON DELETE CASCADE so backends without enforced foreign keys still
        end up clean.
        """
        with self.engine.begin() as conn:
            conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Lockout counters (atomic read-modify-write)
    # ------------------------------------------------------------------

    def record_failed_attempt(self, user_id: int, threshold: int, lock_until: datetime) -> tuple[int, str | None] | None:
        """Increment failed_attempts and arm the lock in one statement.

        The UPDATE computes the new count and the lock deadline from the row's
        current value, so concurrent failures against the same account cannot
        lose an increment. The row is read back inside the same transaction.

        Returns (failed_attempts, locked_until) after the update, or None if
        the user does not exist.
        """
        new_count = _users.c.failed_attempts + 1
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    failed_attempts=new_count,
                    locked_until=case(
                        (new_count >= threshold, to_iso(lock_until)),
                        else_=_users.c.locked_until,
                    ),
                )
            )
            if result.rowcount == 0:
                return None
            row = conn.execute(
                select(_users.c.failed_attempts, _users.c.locked_until).where(_users.c.id == user_id)
            ).fetchone()
        return row.failed_attempts, row.locked_until

    def reset_failed_attempts(self, user_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(failed_attempts=0, locked_until=None)
            )
        return result.rowcount > 0

    def clear_expired_lock(self, user_id: int, now: datetime) -> bool:
        """Reset the counters only if the stored lock deadline has passed.

        The deadline comparison lives in the WHERE clause, so a failure that
        re-arms the lock between the caller's read and this write is not
        wiped out. Returns True if a stale lock was cleared.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where(
                    (_users.c.id == user_id)
                    & (_users.c.locked_until.is_not(None))
                    & (_users.c.locked_until <= to_iso(now))
                )
                .values(failed_attempts=0, locked_until=None)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, token: RefreshToken) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.insert().values(
                    user_id=token.user_id,
                    token_hash=token.token_hash,
                    expires_at=token.expires_at,
                    created_at=self._now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_refresh_token(self, token_hash: str) -> RefreshToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)
            ).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def list_refresh_tokens(self, user_id: int) -> list[RefreshToken]:
        """Return every refresh token row the user owns (newest first)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(_refresh_tokens.c.user_id == user_id)
                .order_by(_refresh_tokens.c.id.desc())
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def delete_refresh_tokens_for_user(self, user_id: int) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
        return result.rowcount

    def delete_refresh_token(self, token_hash: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.token_hash == token_hash))
        return result.rowcount > 0

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at < to_iso(now)))
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        account=row.account,
        username=row.username,
        password_hash=row.password_hash,
        email=row.email,
        phone=row.phone,
        avatar=row.avatar,
        role=Role(row.role),
        status=Status(row.status),
        failed_attempts=row.failed_attempts,
        locked_until=row.locked_until,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )
