"""
api/dependencies.py -- FastAPI Depends() helpers for authentication.

The access token arrives as "Authorization: Bearer <token>". Validation is
signature + expiry only (see TokenManager.validate_access); the user row is
then loaded so that disabled or deleted accounts stop working immediately
for every route that needs a User, even while their token is still valid.

get_service() hands routes the IdentityService built in the lifespan.
get_current_user() raises TokenError/AuthenticationError (rendered as 401).
require_admin() additionally raises AuthorizationError (403).
"""

from __future__ import annotations

from fastapi import Depends, Request

from identity.errors import AuthenticationError, AuthorizationError
from identity.models import ADMIN_ROLES, User
from identity.service import IdentityService


def get_service(request: Request) -> IdentityService:
    return request.app.state.identity


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def get_current_user(request: Request, service: IdentityService = Depends(get_service)) -> User:
    """Require a valid access token for an existing, active user.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    claims = service.tokens.validate_access(bearer_token(request))
    user = service.get_by_id(claims.user_id)
    if user is None or not user.is_active:
        raise AuthenticationError("Authentication required")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role not in ADMIN_ROLES:
        raise AuthorizationError("Insufficient permissions")
    return user
