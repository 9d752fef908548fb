"""
API request and response models for the identity REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are kept
separate from the dataclasses in identity/models.py, which own the internal
domain representation. Route handlers map between the two.

Every response uses one envelope:
  success: {"success": true, "data": ..., "message": ...}
  failure: {"success": false, "error": "<message>"}

Field-level rules (username length, email and phone shape) are enforced by
identity/service.py so that every caller, not just HTTP, gets them. The
constraints here only bound raw input size.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from identity.models import Role, Status, User

# bcrypt ignores bytes past 72, so longer passwords are refused outright.
_PASSWORD_MAX = 72


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class ErrorResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = False
    error: str


def ok(data: Any = None, message: Optional[str] = None) -> dict:
    """Build a success envelope. data and message are omitted when None."""
    body: dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    if message is not None:
        body["message"] = message
    return body


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=6, max_length=_PASSWORD_MAX)
    email: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=20)


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class ProfileUpdate(BaseModel):
    """Partial update -- omitted fields are left unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: Optional[str] = Field(default=None, max_length=100)
    email: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=20)
    avatar: Optional[str] = Field(default=None, max_length=255)


class PasswordChange(BaseModel):
    old_password: str = Field(min_length=1, max_length=_PASSWORD_MAX)
    new_password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class UserCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=6, max_length=_PASSWORD_MAX)
    role: Role = Role.student
    email: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=20)


class RoleUpdate(BaseModel):
    role: Role


class StatusUpdate(BaseModel):
    status: Status


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user. Never carries the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    account: str
    username: str
    email: Optional[str] = None
    phone: Optional[str] = None
    avatar: Optional[str] = None
    role: Role
    status: Status
    created_at: str
    updated_at: str

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            account=user.account,
            username=user.username,
            email=user.email,
            phone=user.phone,
            avatar=user.avatar,
            role=user.role,
            status=user.status,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class LoginData(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


class UserListData(BaseModel):
    model_config = ConfigDict(frozen=True)

    items: list[UserResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class HealthResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=lambda: {"app": "ok"})
