"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Requests authenticate with "Authorization: Bearer <access token>". The token
is verified statelessly by AuthService.validate_session(); the user record is
then loaded so deactivated accounts are refused even while their access token
is still inside its lifetime.

get_current_user() raises TokenError (rendered as 401 invalid_token by the
AuthError handler in api/main.py). require_admin() additionally raises HTTP
403 for non-admins.

Layer rule: no imports from api/, cache/, or mail/. This module may import
from fastapi because it is part of the dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import User
from auth.service import AuthService
from core.errors import TokenError, TokenMalformed, UserNotFound


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def bearer_token(request: Request) -> str:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise TokenMalformed("missing bearer token")
    return token.strip()


def get_current_user(request: Request) -> User:
    """Require a valid access token for an active user.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    service = get_auth_service(request)
    claims = service.validate_session(bearer_token(request))
    try:
        user = service.get_user(claims.subject)
    except UserNotFound as exc:
        raise TokenError(f"token subject {claims.subject} no longer exists") from exc
    if not user.is_active:
        raise TokenError(f"user {user.id} is inactive")
    return user


def require_admin(request: Request) -> User:
    """Require admin role. 401 if unauthenticated, 403 if not admin."""
    user = get_current_user(request)
    if user.role != "admin":
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return user
