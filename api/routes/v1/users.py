"""
api/routes/v1/users.py -- Administrative user management (admin roles only).

Routes:
  GET    /api/v1/users                          -- paginated list with filters
  POST   /api/v1/users                          -- create user with explicit role (201)
  GET    /api/v1/users/by-account/{account}     -- lookup by 6-digit account
  GET    /api/v1/users/{id}                     -- lookup by id
  PATCH  /api/v1/users/{id}/role                -- change role
  PATCH  /api/v1/users/{id}/status              -- enable / disable
  POST   /api/v1/users/{id}/reset-password      -- reset to the configured default
  DELETE /api/v1/users/{id}                     -- delete user and their refresh tokens

The reserved 000000 account is protected inside IdentityService, not here,
so the rule holds for every caller of the service.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_service, require_admin
from api.models import RoleUpdate, StatusUpdate, UserCreate, UserListData, UserResponse, ok
from identity.errors import NotFoundError
from identity.models import Role, Status, User, UserFilters
from identity.service import IdentityService
from identity.tokens import hash_password

router = APIRouter()


def _user_data(user: User) -> dict:
    return UserResponse.from_user(user).model_dump(mode="json")


@router.get("/users")
def list_users(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    account: Optional[str] = Query(default=None, max_length=6),
    keyword: Optional[str] = Query(default=None, max_length=20),
    role: Optional[Role] = None,
    status: Optional[Status] = None,
    current_user: User = Depends(require_admin),
    service: IdentityService = Depends(get_service),
) -> dict:
    filters = UserFilters(account=account, keyword=keyword, role=role, status=status)
    result = service.list_users(page, page_size, filters)
    data = UserListData(
        items=[UserResponse.from_user(u) for u in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        total_pages=result.total_pages,
    )
    return ok(data.model_dump(mode="json"))


@router.post("/users", status_code=201)
def create_user(
    body: UserCreate,
    current_user: User = Depends(require_admin),
    service: IdentityService = Depends(get_service),
) -> dict:
    user = service.create_user(
        current_user,
        username=body.username,
        password_hash=hash_password(body.password),
        role=body.role,
        email=body.email,
        phone=body.phone,
    )
    return ok(_user_data(user), "User created successfully")


@router.get("/users/by-account/{account}")
def get_user_by_account(
    account: str,
    current_user: User = Depends(require_admin),
    service: IdentityService = Depends(get_service),
) -> dict:
    user = service.get_by_account(account)
    if user is None:
        raise NotFoundError("User not found")
    return ok(_user_data(user))


@router.get("/users/{user_id}")
def get_user(
    user_id: int,
    current_user: User = Depends(require_admin),
    service: IdentityService = Depends(get_service),
) -> dict:
    user = service.get_by_id(user_id)
    if user is None:
        raise NotFoundError("User not found")
    return ok(_user_data(user))


@router.patch("/users/{user_id}/role")
def update_role(
    user_id: int,
    body: RoleUpdate,
    current_user: User = Depends(require_admin),
    service: IdentityService = Depends(get_service),
) -> dict:
    user = service.update_role(current_user, user_id, body.role)
    return ok(_user_data(user), "Role updated successfully")


@router.patch("/users/{user_id}/status")
def update_status(
    user_id: int,
    body: StatusUpdate,
    current_user: User = Depends(require_admin),
    service: IdentityService = Depends(get_service),
) -> dict:
    user = service.update_status(current_user, user_id, body.status)
    return ok(_user_data(user), "Status updated successfully")


@router.post("/users/{user_id}/reset-password")
def reset_password(
    user_id: int,
    current_user: User = Depends(require_admin),
    service: IdentityService = Depends(get_service),
) -> dict:
    service.reset_password(current_user, user_id)
    return ok(message="Password reset successfully")


@router.delete("/users/{user_id}")
def delete_user(
    user_id: int,
    current_user: User = Depends(require_admin),
    service: IdentityService = Depends(get_service),
) -> dict:
    service.delete_user(current_user, user_id)
    return ok(message="User deleted successfully")
