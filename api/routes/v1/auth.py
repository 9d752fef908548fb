"""
api/routes/v1/auth.py -- Registration, login, logout and identity endpoints.

Routes:
  POST /api/v1/auth/register  -- self-registration; returns the new user (201)
  POST /api/v1/auth/login     -- email + password; returns access + refresh tokens
  POST /api/v1/auth/logout    -- revokes every refresh token of the caller
  GET  /api/v1/auth/me        -- current user (requires auth)
  GET  /api/v1/auth/sessions  -- caller's active refresh-token sessions

Security:
  Login failures for unknown email and wrong password share one message.
  A locked account answers 423 regardless of the password supplied.
  Cache-Control: no-store on login responses.
  Logout narrows the ability to mint new sessions; access tokens already
  issued stay valid until their exp claim.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from api.dependencies import get_current_user, get_service
from api.models import LoginData, LoginRequest, RegisterRequest, UserResponse, ok
from identity.models import User
from identity.service import IdentityService
from identity.tokens import hash_password

# Auth policy:
# - POST /auth/register, /auth/login: public
# - POST /auth/logout, GET /auth/me, GET /auth/sessions: requires auth
router = APIRouter()


@router.post("/auth/register", status_code=201)
def register(body: RegisterRequest, service: IdentityService = Depends(get_service)) -> dict:
    """Create a student account with an allocated 6-digit account number."""
    user = service.register(
        username=body.username,
        password_hash=hash_password(body.password),
        email=body.email,
        phone=body.phone,
    )
    return ok(UserResponse.from_user(user).model_dump(mode="json"), "User registered successfully")


@router.post("/auth/login")
def login(body: LoginRequest, service: IdentityService = Depends(get_service)) -> JSONResponse:
    result = service.authenticate(body.email, body.password)
    data = LoginData(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        token_type=result.tokens.token_type,
        expires_in=result.tokens.expires_in,
        user=UserResponse.from_user(result.user),
    )
    resp = JSONResponse(content=ok(data.model_dump(mode="json"), "Login successful"))
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout")
def logout(
    current_user: User = Depends(get_current_user),
    service: IdentityService = Depends(get_service),
) -> dict:
    """Revoke all refresh tokens for the caller. Repeated calls succeed with revoked=0."""
    revoked = service.logout(current_user.id)
    return ok({"revoked": revoked}, "Logged out successfully")


@router.get("/auth/me")
def me(current_user: User = Depends(get_current_user)) -> dict:
    return ok(UserResponse.from_user(current_user).model_dump(mode="json"))


@router.get("/auth/sessions")
def sessions(
    current_user: User = Depends(get_current_user),
    service: IdentityService = Depends(get_service),
) -> dict:
    """List the caller's refresh-token sessions. Token values are never returned."""
    rows = service.tokens.list_sessions(current_user.id)
    return ok([{"id": r.id, "created_at": r.created_at, "expires_at": r.expires_at} for r in rows])
