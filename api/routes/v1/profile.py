"""
api/routes/v1/profile.py -- Self-service profile endpoints.

Routes:
  GET /api/v1/profile           -- current user's profile
  PUT /api/v1/profile           -- partial update (username, email, phone, avatar)
  PUT /api/v1/profile/password  -- change password (old password required)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from api.dependencies import get_current_user, get_service
from api.models import PasswordChange, ProfileUpdate, UserResponse, ok
from identity.models import User
from identity.service import IdentityService

router = APIRouter()


@router.get("/profile")
def get_profile(current_user: User = Depends(get_current_user)) -> dict:
    return ok(UserResponse.from_user(current_user).model_dump(mode="json"))


@router.put("/profile")
def update_profile(
    body: ProfileUpdate,
    current_user: User = Depends(get_current_user),
    service: IdentityService = Depends(get_service),
) -> dict:
    updated = service.update_profile(
        current_user.id,
        username=body.username,
        email=body.email,
        phone=body.phone,
        avatar=body.avatar,
    )
    return ok(UserResponse.from_user(updated).model_dump(mode="json"), "Profile updated successfully")


@router.put("/profile/password")
def change_password(
    body: PasswordChange,
    current_user: User = Depends(get_current_user),
    service: IdentityService = Depends(get_service),
) -> dict:
    service.change_password(current_user.id, body.old_password, body.new_password)
    return ok(message="Password changed successfully")
