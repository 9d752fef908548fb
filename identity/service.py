"""
identity/service.py -- Identity use cases: registration, login, profile,
password and administrative mutations.

IdentityService is constructed with its collaborators (store, allocator,
lockout policy, token manager) instead of resolving them from globals.
build_identity_service() wires the default set from plain constants.

Every public method either returns its result or raises an IdentityError
subclass (see identity/errors.py). Nothing is retried here except account
allocation, which loops when an insert loses the UNIQUE(account) race.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from identity.allocator import DEFAULT_MAX_ATTEMPTS, AccountAllocator
from identity.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    LockedError,
    NotFoundError,
    ValidationError,
)
from identity.lockout import DEFAULT_LOCK_DURATION, DEFAULT_THRESHOLD, LockoutPolicy
from identity.models import ADMIN_ROLES, Role, Status, User, UserFilters, UserPage
from identity.store import CredentialStore, unique_violation, utc_now
from identity.tokens import (
    DEFAULT_ACCESS_TTL,
    DEFAULT_REFRESH_TTL,
    TokenManager,
    TokenPair,
    equalize_timing,
    hash_password,
    verify_password,
)

logger = logging.getLogger("classroom.identity")

# ---------------------------------------------------------------------------
# Field rules
# ---------------------------------------------------------------------------

USERNAME_MIN_LENGTH = 2
USERNAME_MAX_LENGTH = 20
PASSWORD_MIN_LENGTH = 6
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
# 11 digits, leading 1, second digit 3-9 (mainland mobile numbering).
PHONE_PATTERN = re.compile(r"^1[3-9]\d{9}$")

# Insert attempts when UNIQUE(account) rejects a freshly allocated number.
_INSERT_ATTEMPTS = 3


def validate_username(username: str) -> None:
    if not USERNAME_MIN_LENGTH <= len(username) <= USERNAME_MAX_LENGTH:
        raise ValidationError(
            f"Username must be between {USERNAME_MIN_LENGTH} and {USERNAME_MAX_LENGTH} characters"
        )


def validate_email(email: str) -> None:
    if not EMAIL_PATTERN.match(email):
        raise ValidationError("Invalid email format")


def validate_phone(phone: str) -> None:
    if not PHONE_PATTERN.match(phone):
        raise ValidationError("Phone number must be 11 digits")


def validate_new_password(password: str) -> None:
    if len(password) < PASSWORD_MIN_LENGTH:
        raise ValidationError(f"New password must be at least {PASSWORD_MIN_LENGTH} characters")


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuthResult:
    tokens: TokenPair
    user: User

    @property
    def access_token(self) -> str:
        return self.tokens.access_token

    @property
    def refresh_token(self) -> str:
        return self.tokens.refresh_token


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class IdentityService:
    def __init__(
        self,
        store: CredentialStore,
        allocator: AccountAllocator,
        lockout: LockoutPolicy,
        tokens: TokenManager,
        default_reset_password: str = "123456",
    ) -> None:
        self.store = store
        self.allocator = allocator
        self.lockout = lockout
        self.tokens = tokens
        self._default_reset_password = default_reset_password

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        username: str,
        password_hash: str,
        email: str | None = None,
        phone: str | None = None,
    ) -> User:
        """Create a student account with a freshly allocated account number.

        password_hash must already be a bcrypt hash (see hash_password).
        """
        return self._create(username, password_hash, Role.student, email, phone)

    def create_user(
        self,
        actor: User,
        username: str,
        password_hash: str,
        role: Role = Role.student,
        email: str | None = None,
        phone: str | None = None,
    ) -> User:
        """Administrative account creation with an explicit role.

        Nobody can mint a second super-admin. Admins may create teacher and
        student accounts; only the super-admin may create admins.
        """
        self._require_admin(actor)
        role = Role(role)
        if role == Role.super_admin:
            raise AuthorizationError("Cannot create another super admin account")
        if role == Role.admin and actor.role != Role.super_admin:
            raise AuthorizationError("Only the super admin can create admin accounts")
        user = self._create(username, password_hash, role, email, phone)
        logger.info("Account %s (%s) created by %s", user.account, role.value, actor.account)
        return user

    def _create(
        self,
        username: str,
        password_hash: str,
        role: Role,
        email: str | None,
        phone: str | None,
    ) -> User:
        email = email or None
        phone = phone or None
        validate_username(username)
        if email is not None:
            validate_email(email)
        if phone is not None:
            validate_phone(phone)
        # Friendly early rejection. The UNIQUE constraints below are what
        # actually hold under concurrent registration.
        if email is not None and not self.is_email_available(email):
            raise ConflictError("Email is already in use")
        if phone is not None and not self.is_phone_available(phone):
            raise ConflictError("Phone number is already in use")

        for _ in range(_INSERT_ATTEMPTS):
            account = self.allocator.generate()
            candidate = User(
                account=account,
                username=username,
                password_hash=password_hash,
                role=role,
                email=email,
                phone=phone,
            )
            try:
                user_id = self.store.create_user(candidate)
            except IntegrityError as exc:
                field = unique_violation(exc)
                if field == "account":
                    logger.info("Account %s taken concurrently; allocating again", account)
                    continue
                raise _conflict_for(field) from exc
            logger.info("Registered account %s (%s)", account, role.value)
            return self._require_user(user_id)
        raise ConflictError("Could not allocate a unique account number, please retry")

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def authenticate(self, email: str, password: str) -> AuthResult:
        """Verify credentials and open a session.

        Order matters: the lock check runs before the password check, so a
        locked account answers LockedError even for the correct password.
        """
        user = self.store.get_by_email(email)
        if user is None:
            equalize_timing(password)
            raise AuthenticationError("Invalid email or password")

        if self.lockout.is_locked(user):
            raise LockedError("Account is locked due to too many failed login attempts", user.locked_until)

        if not verify_password(password, user.password_hash):
            result = self.lockout.record_failure(user)
            if result.locked:
                raise LockedError("Account is locked due to too many failed login attempts", result.locked_until)
            raise AuthenticationError("Invalid email or password")

        if not user.is_active:
            logger.warning("Login refused for disabled account %s", user.account)
            raise AuthenticationError("Account is disabled")

        self.lockout.record_success(user)
        pair = self.tokens.issue(user)
        logger.info("Login succeeded for account %s", user.account)
        return AuthResult(tokens=pair, user=user)

    def logout(self, user_id: int) -> int:
        """Revoke every refresh token of the caller. Idempotent."""
        return self.tokens.revoke_all(user_id)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_by_id(self, user_id: int) -> User | None:
        return self.store.get_by_id(user_id)

    def get_by_account(self, account: str) -> User | None:
        return self.store.get_by_account(account)

    def get_by_email(self, email: str) -> User | None:
        return self.store.get_by_email(email)

    def get_by_phone(self, phone: str) -> User | None:
        return self.store.get_by_phone(phone)

    def list_users(self, page: int = 1, page_size: int = 20, filters: UserFilters | None = None) -> UserPage:
        return self.store.list_users(page, page_size, filters)

    def count_by_role(self, role: Role) -> int:
        return self.store.count_by_role(role)

    def is_username_available(self, username: str, exclude_id: int | None = None) -> bool:
        return not self.store.username_exists(username, exclude_id)

    def is_email_available(self, email: str, exclude_id: int | None = None) -> bool:
        return not self.store.email_exists(email, exclude_id)

    def is_phone_available(self, phone: str, exclude_id: int | None = None) -> bool:
        return not self.store.phone_exists(phone, exclude_id)

    # ------------------------------------------------------------------
    # Self-service
    # ------------------------------------------------------------------

    def update_profile(
        self,
        user_id: int,
        username: str | None = None,
        email: str | None = None,
        phone: str | None = None,
        avatar: str | None = None,
    ) -> User:
        """Partial profile update. Only arguments that are not None change.

        An empty string for email or phone clears the field. Username, email
        and phone must not belong to another user; re-submitting the caller's
        own current values is always accepted.
        """
        self._require_user(user_id)
        updates: dict = {}

        if username is not None:
            validate_username(username)
            if not self.is_username_available(username, exclude_id=user_id):
                raise ConflictError("Username is already in use")
            updates["username"] = username

        if email is not None:
            if email:
                validate_email(email)
                if not self.is_email_available(email, exclude_id=user_id):
                    raise ConflictError("Email is already in use")
            updates["email"] = email or None

        if phone is not None:
            if phone:
                validate_phone(phone)
                if not self.is_phone_available(phone, exclude_id=user_id):
                    raise ConflictError("Phone number is already in use")
            updates["phone"] = phone or None

        if avatar is not None:
            updates["avatar"] = avatar

        if updates:
            try:
                self.store.update_user(user_id, **updates)
            except IntegrityError as exc:
                raise _conflict_for(unique_violation(exc)) from exc
        return self._require_user(user_id)

    def change_password(self, user_id: int, old_password: str, new_password: str) -> None:
        user = self._require_user(user_id)
        if not verify_password(old_password, user.password_hash):
            raise AuthenticationError("Incorrect old password")
        validate_new_password(new_password)
        self.store.update_user(user_id, password_hash=hash_password(new_password))
        logger.info("Password changed for account %s", user.account)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def reset_password(self, actor: User, user_id: int) -> None:
        """Set the target's password back to the configured default."""
        self._require_admin(actor)
        target = self._require_user(user_id)
        if target.is_reserved and not actor.is_reserved:
            self._deny(actor, "Cannot reset the super admin password")
        self._guard_admin_target(actor, target)
        self.store.update_user(user_id, password_hash=hash_password(self._default_reset_password))
        logger.info("Password of account %s reset by %s", target.account, actor.account)

    def update_role(self, actor: User, user_id: int, role: Role) -> User:
        self._require_admin(actor)
        target = self._require_user(user_id)
        role = Role(role)
        if target.is_reserved:
            self._deny(actor, "Cannot modify the super admin account")
        if role == Role.super_admin:
            self._deny(actor, "Cannot grant the super admin role")
        self._guard_admin_target(actor, target)
        if role == Role.admin and actor.role != Role.super_admin:
            self._deny(actor, "Only the super admin can grant the admin role")
        self.store.update_user(user_id, role=role)
        logger.info("Role of account %s set to %s by %s", target.account, role.value, actor.account)
        return self._require_user(user_id)

    def update_status(self, actor: User, user_id: int, status: Status) -> User:
        self._require_admin(actor)
        target = self._require_user(user_id)
        status = Status(status)
        if target.is_reserved:
            self._deny(actor, "Cannot change the status of the super admin account")
        self._guard_admin_target(actor, target)
        self.store.update_user(user_id, status=status)
        logger.info("Status of account %s set to %s by %s", target.account, status.value, actor.account)
        return self._require_user(user_id)

    def delete_user(self, actor: User, user_id: int) -> None:
        """Delete the target and, with it, every refresh token they own."""
        self._require_admin(actor)
        target = self._require_user(user_id)
        if target.is_reserved:
            self._deny(actor, "Cannot delete the super admin account")
        self._guard_admin_target(actor, target)
        self.store.delete_user(user_id)
        logger.info("Account %s deleted by %s", target.account, actor.account)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_user(self, user_id: int) -> User:
        user = self.store.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def _require_admin(self, actor: User) -> None:
        if actor.role not in ADMIN_ROLES:
            self._deny(actor, "Insufficient permissions")

    def _guard_admin_target(self, actor: User, target: User) -> None:
        """Admins may not act on admin accounts; only the super-admin manages admins."""
        if actor.role == Role.admin and target.role == Role.admin:
            self._deny(actor, "Admins cannot modify other admin accounts")

    @staticmethod
    def _deny(actor: User, message: str) -> None:
        logger.warning("Denied admin action by %s: %s", actor.account, message)
        raise AuthorizationError(message)


def _conflict_for(field: str | None) -> ConflictError:
    if field == "email":
        return ConflictError("Email is already in use")
    if field == "phone":
        return ConflictError("Phone number is already in use")
    if field == "account":
        return ConflictError("Account number is already in use")
    return ConflictError("User already exists")


def build_identity_service(
    store: CredentialStore,
    secret_key: str,
    *,
    clock: Callable[[], datetime] = utc_now,
    lockout_threshold: int = DEFAULT_THRESHOLD,
    lock_duration: timedelta = DEFAULT_LOCK_DURATION,
    access_ttl: timedelta = DEFAULT_ACCESS_TTL,
    refresh_ttl: timedelta = DEFAULT_REFRESH_TTL,
    account_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    default_reset_password: str = "123456",
) -> IdentityService:
    """Wire an IdentityService with the standard collaborators sharing one clock."""
    return IdentityService(
        store=store,
        allocator=AccountAllocator(store, max_attempts=account_max_attempts),
        lockout=LockoutPolicy(store, threshold=lockout_threshold, lock_duration=lock_duration, clock=clock),
        tokens=TokenManager(store, secret_key, access_ttl=access_ttl, refresh_ttl=refresh_ttl, clock=clock),
        default_reset_password=default_reset_password,
    )
