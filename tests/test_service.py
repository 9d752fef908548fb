"""Tests for identity/service.py -- the identity use cases end to end.

Covers:
- register(): allocated 6-digit account, default role, email/phone conflicts,
  retry when an insert loses the UNIQUE(account) race
- authenticate(): unknown user, 4x Unauthorized then Locked, correct
  password still Locked, lazy expiry, success reset, disabled accounts
- logout(): idempotent
- update_profile(): length/shape validation, uniqueness excluding self,
  and UNIQUE constraint races surfacing as ConflictError
- change_password(): old password check and minimum length
- availability checks for username, email and phone
- administrative mutations: reserved account protection, admins never act
  on other admins or grant the admin role, cascade of refresh tokens
"""

from __future__ import annotations

import re

import pytest

from identity.errors import (
    AuthenticationError,
    AuthorizationError,
    CapacityExhaustedError,
    ConflictError,
    LockedError,
    NotFoundError,
    ValidationError,
)
from identity.models import RESERVED_ACCOUNT, Role, Status, User, UserFilters
from identity.service import IdentityService
from identity.tokens import hash_password, verify_password

PASSWORD = "Secur3Pass!"
SUPER_ADMIN_EMAIL = "root@classroom.test"
SUPER_ADMIN_PASSWORD = "rootpass123"


@pytest.fixture(scope="module")
def password_hash() -> str:
    return hash_password(PASSWORD)


@pytest.fixture
def alice(service: IdentityService, password_hash: str) -> User:
    return service.register("Alice", password_hash, "alice@x.com")


@pytest.fixture
def admin(service: IdentityService, super_admin: User, password_hash: str) -> User:
    return service.create_user(super_admin, "Adam", password_hash, role=Role.admin, email="adam@x.com")


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    def test_register_allocates_account_and_default_role(self, service: IdentityService, password_hash: str) -> None:
        user = service.register("Alice", password_hash, "alice@x.com")
        assert re.fullmatch(r"\d{6}", user.account)
        assert user.account != RESERVED_ACCOUNT
        assert user.role == Role.student
        assert user.status == Status.active
        assert user.failed_attempts == 0
        assert user.locked_until is None
        assert service.get_by_account(user.account).id == user.id

    def test_accounts_are_distinct(self, service: IdentityService, password_hash: str) -> None:
        accounts = {service.register(f"User{n}", password_hash).account for n in range(25)}
        assert len(accounts) == 25

    def test_duplicate_email_conflicts(self, service: IdentityService, alice: User, password_hash: str) -> None:
        with pytest.raises(ConflictError):
            service.register("Alicia", password_hash, "alice@x.com")

    def test_duplicate_phone_conflicts(self, service: IdentityService, password_hash: str) -> None:
        service.register("Pat", password_hash, phone="13912345678")
        with pytest.raises(ConflictError):
            service.register("Pam", password_hash, phone="13912345678")

    def test_users_without_email_or_phone_coexist(self, service: IdentityService, password_hash: str) -> None:
        service.register("Anon", password_hash)
        service.register("Anon", password_hash)
        assert service.list_users().total == 2

    @pytest.mark.parametrize("username", ["A", "X" * 21])
    def test_invalid_username_rejected(self, service: IdentityService, password_hash: str, username: str) -> None:
        with pytest.raises(ValidationError):
            service.register(username, password_hash)

    def test_invalid_email_rejected(self, service: IdentityService, password_hash: str) -> None:
        with pytest.raises(ValidationError):
            service.register("Alice", password_hash, "not-an-email")

    def test_retries_when_insert_loses_account_race(self, store, service: IdentityService, password_hash) -> None:
        taken = service.register("First", password_hash).account

        class _Racy:
            # First draw passed the existence check before the other insert landed.
            def __init__(self) -> None:
                self.draws = iter([taken, "777777"])

            def generate(self) -> str:
                return next(self.draws)

        racy = IdentityService(store, _Racy(), service.lockout, service.tokens)
        user = racy.register("Second", password_hash)
        assert user.account == "777777"

    @pytest.mark.parametrize(
        "field, kwargs, message",
        [
            ("email", {"email": "race@x.com"}, "Email is already in use"),
            ("phone", {"phone": "13612345678"}, "Phone number is already in use"),
        ],
    )
    def test_email_or_phone_race_becomes_conflict(
        self, monkeypatch: pytest.MonkeyPatch, store, service: IdentityService, password_hash, field, kwargs, message
    ) -> None:
        service.register("First", password_hash, **kwargs)
        # The other registration committed after this request's pre-check ran.
        monkeypatch.setattr(store, f"{field}_exists", lambda *args, **kw: False)
        with pytest.raises(ConflictError, match=message):
            service.register("Second", password_hash, **kwargs)

    def test_profile_update_race_becomes_conflict(
        self, monkeypatch: pytest.MonkeyPatch, store, service: IdentityService, password_hash
    ) -> None:
        service.register("First", password_hash, "taken@x.com")
        second = service.register("Second", password_hash)
        monkeypatch.setattr(store, "email_exists", lambda *args, **kw: False)
        with pytest.raises(ConflictError, match="Email is already in use"):
            service.update_profile(second.id, email="taken@x.com")

    def test_capacity_exhaustion_propagates(self, store, service: IdentityService, password_hash) -> None:
        class _Full:
            def generate(self) -> str:
                raise CapacityExhaustedError("full")

        with pytest.raises(CapacityExhaustedError):
            IdentityService(store, _Full(), service.lockout, service.tokens).register("Late", password_hash)


class TestCreateUser:
    def test_super_admin_creates_admin(self, admin: User) -> None:
        assert admin.role == Role.admin

    def test_admin_cannot_create_admin(self, service: IdentityService, admin: User, password_hash: str) -> None:
        with pytest.raises(AuthorizationError):
            service.create_user(admin, "Eve", password_hash, role=Role.admin)

    def test_admin_creates_teacher(self, service: IdentityService, admin: User, password_hash: str) -> None:
        teacher = service.create_user(admin, "Tess", password_hash, role=Role.teacher)
        assert teacher.role == Role.teacher
        assert service.count_by_role(Role.teacher) == 1

    def test_nobody_creates_super_admin(self, service: IdentityService, super_admin: User, password_hash) -> None:
        with pytest.raises(AuthorizationError):
            service.create_user(super_admin, "Root2", password_hash, role=Role.super_admin)

    def test_student_cannot_create_users(self, service: IdentityService, alice: User, password_hash: str) -> None:
        with pytest.raises(AuthorizationError):
            service.create_user(alice, "Mallory", password_hash)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class TestAuthenticate:
    def test_success_issues_tokens(self, service: IdentityService, alice: User) -> None:
        result = service.authenticate("alice@x.com", PASSWORD)
        assert result.user.id == alice.id
        assert service.tokens.validate_access(result.access_token).user_id == alice.id
        assert service.tokens.find_refresh_token(result.refresh_token) is not None

    def test_unknown_email(self, service: IdentityService) -> None:
        with pytest.raises(AuthenticationError):
            service.authenticate("nobody@x.com", PASSWORD)

    def test_fifth_failure_locks_and_correct_password_stays_locked(
        self, service: IdentityService, alice: User
    ) -> None:
        for _ in range(4):
            with pytest.raises(AuthenticationError) as excinfo:
                service.authenticate("alice@x.com", "wrong-password")
            assert not isinstance(excinfo.value, LockedError)
        with pytest.raises(LockedError):
            service.authenticate("alice@x.com", "wrong-password")
        with pytest.raises(LockedError):
            service.authenticate("alice@x.com", PASSWORD)

    def test_lock_expires_lazily(self, service: IdentityService, alice: User, clock) -> None:
        for _ in range(5):
            with pytest.raises((AuthenticationError, LockedError)):
                service.authenticate("alice@x.com", "wrong-password")
        clock.advance(minutes=31)
        result = service.authenticate("alice@x.com", PASSWORD)
        assert result.user.failed_attempts == 0
        assert service.get_by_id(alice.id).locked_until is None

    def test_success_resets_failed_attempts(self, service: IdentityService, alice: User) -> None:
        for _ in range(3):
            with pytest.raises(AuthenticationError):
                service.authenticate("alice@x.com", "wrong-password")
        assert service.get_by_id(alice.id).failed_attempts == 3
        service.authenticate("alice@x.com", PASSWORD)
        row = service.get_by_id(alice.id)
        assert row.failed_attempts == 0
        assert row.locked_until is None

    def test_disabled_account_rejected(
        self, service: IdentityService, alice: User, super_admin: User
    ) -> None:
        service.update_status(super_admin, alice.id, Status.disabled)
        with pytest.raises(AuthenticationError):
            service.authenticate("alice@x.com", PASSWORD)

    def test_super_admin_is_not_exempt_from_lockout(
        self, service: IdentityService, store, super_admin: User
    ) -> None:
        for _ in range(4):
            with pytest.raises(AuthenticationError):
                service.authenticate(super_admin.email, "wrong-password")
        with pytest.raises(LockedError):
            service.authenticate(super_admin.email, "wrong-password")

    def test_seeded_super_admin_can_log_in(self, service: IdentityService, super_admin: User) -> None:
        assert super_admin.email == SUPER_ADMIN_EMAIL
        result = service.authenticate(SUPER_ADMIN_EMAIL, SUPER_ADMIN_PASSWORD)
        assert result.user.account == RESERVED_ACCOUNT
        assert service.tokens.validate_access(result.access_token).role == Role.super_admin

    def test_stale_read_cannot_wipe_a_rearmed_lock(
        self, monkeypatch: pytest.MonkeyPatch, service: IdentityService, store, alice: User, clock
    ) -> None:
        for _ in range(5):
            with pytest.raises((AuthenticationError, LockedError)):
                service.authenticate("alice@x.com", "wrong-password")
        clock.advance(minutes=31)
        stale = store.get_by_email("alice@x.com")
        # A concurrent failure re-arms the lock after this request read the row.
        service.lockout.record_failure(store.get_by_id(alice.id))
        monkeypatch.setattr(store, "get_by_email", lambda email: stale)
        with pytest.raises(LockedError):
            service.authenticate("alice@x.com", PASSWORD)
        assert store.get_by_id(alice.id).locked_until is not None


class TestLogout:
    def test_logout_is_idempotent(self, service: IdentityService, alice: User) -> None:
        service.authenticate("alice@x.com", PASSWORD)
        service.authenticate("alice@x.com", PASSWORD)
        assert service.logout(alice.id) == 2
        assert service.logout(alice.id) == 0


# ---------------------------------------------------------------------------
# Profile and password
# ---------------------------------------------------------------------------


class TestUpdateProfile:
    @pytest.mark.parametrize("username", ["A", "X" * 21])
    def test_rejects_bad_username_lengths(self, service: IdentityService, alice: User, username: str) -> None:
        with pytest.raises(ValidationError):
            service.update_profile(alice.id, username=username)

    @pytest.mark.parametrize("username", ["Al", "X" * 20])
    def test_accepts_boundary_username_lengths(self, service: IdentityService, alice: User, username: str) -> None:
        assert service.update_profile(alice.id, username=username).username == username

    def test_rejects_short_phone(self, service: IdentityService, alice: User) -> None:
        with pytest.raises(ValidationError):
            service.update_profile(alice.id, phone="138")

    def test_rejects_bad_leading_digits(self, service: IdentityService, alice: User) -> None:
        with pytest.raises(ValidationError):
            service.update_profile(alice.id, phone="12345678901")

    def test_accepts_valid_phone(self, service: IdentityService, alice: User) -> None:
        assert service.update_profile(alice.id, phone="13800138000").phone == "13800138000"

    def test_rejects_bad_email(self, service: IdentityService, alice: User) -> None:
        with pytest.raises(ValidationError):
            service.update_profile(alice.id, email="alice@nowhere")

    def test_rejects_other_users_email_and_phone(
        self, service: IdentityService, alice: User, password_hash: str
    ) -> None:
        service.register("Bob", password_hash, "bob@x.com", "13900139000")
        with pytest.raises(ConflictError):
            service.update_profile(alice.id, email="bob@x.com")
        with pytest.raises(ConflictError):
            service.update_profile(alice.id, phone="13900139000")

    def test_accepts_own_current_values(self, service: IdentityService, alice: User) -> None:
        service.update_profile(alice.id, phone="13800138000")
        updated = service.update_profile(alice.id, email="alice@x.com", phone="13800138000")
        assert updated.email == "alice@x.com"
        assert updated.phone == "13800138000"

    def test_partial_update_leaves_other_fields(self, service: IdentityService, alice: User) -> None:
        updated = service.update_profile(alice.id, avatar="/avatars/alice.png")
        assert updated.avatar == "/avatars/alice.png"
        assert updated.username == "Alice"
        assert updated.email == "alice@x.com"

    def test_empty_string_clears_email(self, service: IdentityService, alice: User) -> None:
        assert service.update_profile(alice.id, email="").email is None

    def test_rejects_other_users_username(
        self, service: IdentityService, alice: User, password_hash: str
    ) -> None:
        service.register("Bobby", password_hash)
        with pytest.raises(ConflictError, match="Username is already in use"):
            service.update_profile(alice.id, username="Bobby")

    def test_accepts_own_username(self, service: IdentityService, alice: User) -> None:
        assert service.update_profile(alice.id, username="Alice").username == "Alice"

    def test_unknown_user(self, service: IdentityService) -> None:
        with pytest.raises(NotFoundError):
            service.update_profile(424242, username="Ghost")


class TestAvailability:
    def test_email_availability_excludes_self(self, service: IdentityService, alice: User) -> None:
        assert not service.is_email_available("alice@x.com")
        assert service.is_email_available("alice@x.com", exclude_id=alice.id)
        assert service.is_email_available("fresh@x.com")

    def test_phone_availability(self, service: IdentityService, alice: User) -> None:
        service.update_profile(alice.id, phone="13800138000")
        assert not service.is_phone_available("13800138000")
        assert service.is_phone_available("13800138000", exclude_id=alice.id)
        assert service.is_phone_available("13900139000")

    def test_username_availability(self, service: IdentityService, alice: User) -> None:
        assert not service.is_username_available("Alice")
        assert service.is_username_available("Alice", exclude_id=alice.id)


class TestChangePassword:
    def test_change_password(self, service: IdentityService, alice: User) -> None:
        service.change_password(alice.id, PASSWORD, "n3wpass")
        assert verify_password("n3wpass", service.get_by_id(alice.id).password_hash)
        service.authenticate("alice@x.com", "n3wpass")

    def test_wrong_old_password(self, service: IdentityService, alice: User) -> None:
        with pytest.raises(AuthenticationError):
            service.change_password(alice.id, "not-it", "n3wpass")

    def test_new_password_too_short(self, service: IdentityService, alice: User) -> None:
        with pytest.raises(ValidationError):
            service.change_password(alice.id, PASSWORD, "12345")


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


class TestReservedAccountProtection:
    @pytest.mark.parametrize("actor_name", ["super_admin", "admin"])
    def test_no_role_change_status_change_or_delete(
        self, request: pytest.FixtureRequest, service: IdentityService, super_admin: User, actor_name: str
    ) -> None:
        actor = request.getfixturevalue(actor_name)
        with pytest.raises(AuthorizationError):
            service.update_role(actor, super_admin.id, Role.student)
        with pytest.raises(AuthorizationError):
            service.update_status(actor, super_admin.id, Status.disabled)
        with pytest.raises(AuthorizationError):
            service.delete_user(actor, super_admin.id)
        row = service.get_by_account(RESERVED_ACCOUNT)
        assert row.role == Role.super_admin
        assert row.status == Status.active

    def test_admin_cannot_reset_super_admin_password(
        self, service: IdentityService, admin: User, super_admin: User
    ) -> None:
        with pytest.raises(AuthorizationError):
            service.reset_password(admin, super_admin.id)


class TestAdminMutations:
    def test_update_role(self, service: IdentityService, admin: User, alice: User) -> None:
        assert service.update_role(admin, alice.id, Role.teacher).role == Role.teacher

    def test_cannot_grant_super_admin(self, service: IdentityService, super_admin: User, alice: User) -> None:
        with pytest.raises(AuthorizationError):
            service.update_role(super_admin, alice.id, Role.super_admin)

    def test_update_status(self, service: IdentityService, admin: User, alice: User) -> None:
        assert service.update_status(admin, alice.id, Status.disabled).status == Status.disabled
        assert service.update_status(admin, alice.id, Status.active).status == Status.active

    def test_student_actor_denied(self, service: IdentityService, alice: User, password_hash: str) -> None:
        bob = service.register("Bob", password_hash)
        with pytest.raises(AuthorizationError):
            service.update_role(alice, bob.id, Role.teacher)

    def test_admin_cannot_delete_admin(
        self, service: IdentityService, super_admin: User, admin: User, password_hash: str
    ) -> None:
        other = service.create_user(super_admin, "Ada", password_hash, role=Role.admin)
        with pytest.raises(AuthorizationError):
            service.delete_user(admin, other.id)
        service.delete_user(super_admin, other.id)
        assert service.get_by_id(other.id) is None

    def test_admin_cannot_demote_then_delete_admin(
        self, service: IdentityService, super_admin: User, admin: User, password_hash: str
    ) -> None:
        other = service.create_user(super_admin, "Ada", password_hash, role=Role.admin)
        with pytest.raises(AuthorizationError):
            service.update_role(admin, other.id, Role.student)
        with pytest.raises(AuthorizationError):
            service.delete_user(admin, other.id)
        row = service.get_by_id(other.id)
        assert row.role == Role.admin

    def test_admin_cannot_disable_admin(
        self, service: IdentityService, super_admin: User, admin: User, password_hash: str
    ) -> None:
        other = service.create_user(super_admin, "Ada", password_hash, role=Role.admin)
        with pytest.raises(AuthorizationError):
            service.update_status(admin, other.id, Status.disabled)
        assert service.get_by_id(other.id).status == Status.active

    def test_admin_cannot_promote_to_admin(self, service: IdentityService, admin: User, alice: User) -> None:
        with pytest.raises(AuthorizationError):
            service.update_role(admin, alice.id, Role.admin)
        assert service.get_by_id(alice.id).role == Role.student

    def test_super_admin_promotes_and_demotes_admin(
        self, service: IdentityService, super_admin: User, alice: User
    ) -> None:
        assert service.update_role(super_admin, alice.id, Role.admin).role == Role.admin
        assert service.update_role(super_admin, alice.id, Role.teacher).role == Role.teacher

    def test_admin_cannot_reset_admin_password(
        self, service: IdentityService, super_admin: User, admin: User, password_hash: str
    ) -> None:
        other = service.create_user(super_admin, "Ada", password_hash, role=Role.admin)
        with pytest.raises(AuthorizationError):
            service.reset_password(admin, other.id)
        assert verify_password(PASSWORD, service.get_by_id(other.id).password_hash)
        service.reset_password(super_admin, other.id)
        assert verify_password("123456", service.get_by_id(other.id).password_hash)

    def test_delete_removes_refresh_tokens(self, service: IdentityService, admin: User, alice: User) -> None:
        service.authenticate("alice@x.com", PASSWORD)
        service.authenticate("alice@x.com", PASSWORD)
        assert len(service.tokens.list_sessions(alice.id)) == 2
        service.delete_user(admin, alice.id)
        assert service.tokens.list_sessions(alice.id) == []
        assert service.get_by_id(alice.id) is None

    def test_delete_unknown_user(self, service: IdentityService, admin: User) -> None:
        with pytest.raises(NotFoundError):
            service.delete_user(admin, 424242)

    def test_reset_password(self, service: IdentityService, admin: User, alice: User) -> None:
        service.reset_password(admin, alice.id)
        assert verify_password("123456", service.get_by_id(alice.id).password_hash)

    def test_list_users_filters(self, service: IdentityService, admin: User, alice: User) -> None:
        page = service.list_users(filters=UserFilters(role=Role.student))
        assert [u.id for u in page.items] == [alice.id]
