"""
api/routes/v1/users.py -- Authenticated account endpoints.

Routes:
  GET    /api/v1/users/me                    -- current user profile
  PATCH  /api/v1/users/me                    -- update full_name / avatar_url
  DELETE /api/v1/users/me                    -- delete the account
  POST   /api/v1/users/me/password           -- change password (re-verifies the old one)
  POST   /api/v1/users/me/logout-all         -- revoke every refresh session
  GET    /api/v1/users/me/security-events    -- recent security history
  DELETE /api/v1/users/me/oauth/{provider}   -- unlink a provider
  DELETE /api/v1/users/{user_id}/lock        -- clear a lockout (admin only)

Auth policy: every route requires a Bearer access token (get_current_user);
the unlock route additionally requires the admin role (require_admin).
IDOR guard: /me routes only ever act on the token's own subject.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from api.models import ChangePasswordRequest, MessageResponse, SecurityEventResponse, UserResponse
from api.routes.v1.auth import client_info
from auth.dependencies import get_auth_service, get_current_user, require_admin
from auth.models import User
from auth.service import AuthService
from core.errors import OAuthLinkNotFound

router = APIRouter()


class ProfilePatch(BaseModel):
    full_name: str | None = Field(default=None, max_length=255)
    avatar_url: str | None = Field(default=None, max_length=2048)


def _me_response(service: AuthService, user: User) -> UserResponse:
    return UserResponse.from_user(user, service.get_linked_providers(user.id))


@router.get("/users/me", response_model=UserResponse)
def me(
    current_user: User = Depends(get_current_user), service: AuthService = Depends(get_auth_service)
) -> UserResponse:
    return _me_response(service, current_user)


@router.patch("/users/me", response_model=UserResponse)
def update_me(
    body: ProfilePatch,
    current_user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> UserResponse:
    """Update profile fields. Email and role are not editable here."""
    user = service.update_profile(current_user.id, **body.model_dump(exclude_none=True))
    return _me_response(service, user)


@router.delete("/users/me", response_model=MessageResponse)
def delete_me(
    current_user: User = Depends(get_current_user), service: AuthService = Depends(get_auth_service)
) -> MessageResponse:
    """Delete the account and end every session. Outstanding access tokens stop working too."""
    service.delete_account(current_user.id)
    return MessageResponse(message="Account deleted.")


@router.post("/users/me/password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Change the password. All refresh sessions, including this one, are revoked."""
    ip, ua = client_info(request)
    service.change_password(current_user.id, body.old_password, body.new_password, ip, ua)
    return MessageResponse(message="Password changed. Please sign in again.")


@router.post("/users/me/logout-all", response_model=MessageResponse)
def logout_all(
    current_user: User = Depends(get_current_user), service: AuthService = Depends(get_auth_service)
) -> MessageResponse:
    removed = service.invalidate_all_sessions(current_user.id)
    return MessageResponse(message=f"Signed out of {removed} session(s).")


@router.get("/users/me/security-events", response_model=list[SecurityEventResponse])
def security_events(
    limit: int = Query(default=50, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> list[SecurityEventResponse]:
    return [SecurityEventResponse.from_event(ev) for ev in service.get_security_events(current_user.id, limit)]


@router.delete("/users/me/oauth/{provider}", response_model=MessageResponse)
def unlink_provider(
    provider: str,
    current_user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Unlink a provider. Refused (400) if it is the only way to sign in."""
    if not service.unlink_oauth_account(current_user.id, provider):
        raise OAuthLinkNotFound(f"no {provider} link for user {current_user.id}")
    return MessageResponse(message=f"{provider} account unlinked.")


@router.delete("/users/{user_id}/lock", response_model=MessageResponse)
def unlock_user(
    user_id: str,
    admin: User = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    removed = service.unlock_account(user_id, actor_id=admin.id)
    return MessageResponse(message="Account unlocked." if removed else "Account was not locked.")
