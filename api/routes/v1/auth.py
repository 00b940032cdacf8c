"""
api/routes/v1/auth.py -- Public authentication endpoints.

Routes:
  POST /api/v1/auth/register                 -- create a password account
  POST /api/v1/auth/login                    -- email + password -> token pair
  POST /api/v1/auth/refresh                  -- rotate a refresh token
  POST /api/v1/auth/logout                   -- revoke one refresh session
  POST /api/v1/auth/verify-email             -- consume a verification token
  POST /api/v1/auth/resend-verification      -- mail a new verification link
  POST /api/v1/auth/forgot-password          -- mail a password reset link
  POST /api/v1/auth/reset-password           -- set a new password from a reset token
  GET  /api/v1/auth/providers                -- list enabled OAuth providers
  GET  /api/v1/auth/oauth/{provider}/login   -- redirect to the provider
  GET  /api/v1/auth/oauth/{provider}/callback -- finish OAuth, return a token pair

Security:
  Login throttling and lockout happen inside AuthService; handlers only pass
  the client address and User-Agent through.
  forgot-password and resend-verification always answer 202 with the same
  body so the response never reveals whether an email is registered. Both
  are additionally limited per IP by slowapi.
  Cache-Control: no-store on every response that carries tokens.

Handlers are sync (def): FastAPI runs them in its thread pool, which suits
the blocking bcrypt, SQLAlchemy and redis-py calls inside AuthService.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter
from api.models import (
    EmailRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    OAuthProviderInfo,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenResponse,
    UserResponse,
    VerifyEmailRequest,
)
from auth.dependencies import get_auth_service
from auth.models import TokenPair, User
from auth.oauth import enabled_providers, get_oauth_profile
from auth.service import AuthService
from core.config import get_settings
from core.errors import OAuthLoginFailed

logger = logging.getLogger("authgate.api")

# Auth policy: every route in this module is public. Authenticated
# account routes live in api/routes/v1/users.py.
router = APIRouter()

_ACCEPTED = "If the address belongs to an account, an email is on its way."


def client_info(request: Request) -> tuple[str, str]:
    """Return (ip_address, user_agent) for audit and lockout records."""
    ip = request.client.host if request.client else ""
    return ip, request.headers.get("User-Agent", "")


def _token_json(pair: TokenPair, user: User | None = None, status_code: int = 200) -> JSONResponse:
    if user is not None:
        body = LoginResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
            user=UserResponse.from_user(user),
        )
    else:
        body = TokenResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
        )
    resp = JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Password accounts
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(body: RegisterRequest, service: AuthService = Depends(get_auth_service)) -> UserResponse:
    """Create an account. A verification email is sent; login works before verification."""
    user = service.register(body.email, body.password, body.full_name)
    return UserResponse.from_user(user)


@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest, service: AuthService = Depends(get_auth_service)) -> JSONResponse:
    """Authenticate with email and password.

    Wrong email and wrong password produce the same 401 invalid_credentials.
    A locked account answers 423; too many attempts for one email answer 429.
    """
    ip, ua = client_info(request)
    user, pair = service.login(body.email, body.password, ip, ua)
    return _token_json(pair, user)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(body: RefreshRequest, service: AuthService = Depends(get_auth_service)) -> JSONResponse:
    """Exchange a refresh token for a new pair. The old refresh token stops working."""
    return _token_json(service.refresh(body.refresh_token))


@router.post("/auth/logout", response_model=MessageResponse)
def logout(body: RefreshRequest, service: AuthService = Depends(get_auth_service)) -> MessageResponse:
    """Revoke the session behind a refresh token. Always succeeds."""
    service.logout(body.refresh_token)
    return MessageResponse(message="Logged out.")


# ---------------------------------------------------------------------------
# Email verification and password reset
# ---------------------------------------------------------------------------


@router.post("/auth/verify-email", response_model=MessageResponse)
def verify_email(body: VerifyEmailRequest, service: AuthService = Depends(get_auth_service)) -> MessageResponse:
    if service.verify_email(body.token):
        return MessageResponse(message="Email verified.")
    return MessageResponse(message="Email already verified.")


@limiter.limit(get_settings().email_rate_limit)
@router.post("/auth/resend-verification", response_model=MessageResponse, status_code=202)
def resend_verification(
    request: Request, body: EmailRequest, service: AuthService = Depends(get_auth_service)
) -> MessageResponse:
    service.resend_verification(body.email)
    return MessageResponse(message=_ACCEPTED)


@limiter.limit(get_settings().email_rate_limit)
@router.post("/auth/forgot-password", response_model=MessageResponse, status_code=202)
def forgot_password(
    request: Request, body: EmailRequest, service: AuthService = Depends(get_auth_service)
) -> MessageResponse:
    ip, ua = client_info(request)
    service.send_password_reset_email(body.email, ip, ua)
    return MessageResponse(message=_ACCEPTED)


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(
    request: Request, body: ResetPasswordRequest, service: AuthService = Depends(get_auth_service)
) -> MessageResponse:
    """Set a new password. Every existing session is signed out."""
    ip, ua = client_info(request)
    service.reset_password(body.token, body.new_password, ip, ua)
    return MessageResponse(message="Password has been reset.")


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
def list_providers() -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers (empty when none are configured)."""
    return [OAuthProviderInfo(**p) for p in enabled_providers(get_settings())]


def _require_provider(provider: str) -> None:
    if provider not in {p["name"] for p in enabled_providers(get_settings())}:
        raise OAuthLoginFailed(f"provider {provider!r} is not enabled")


@router.get("/auth/oauth/{provider}/login")
async def oauth_login(request: Request, provider: str):
    """Redirect the browser to the provider's consent page."""
    _require_provider(provider)
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/oauth/{provider}/callback", response_model=LoginResponse, name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> JSONResponse:
    """Exchange the authorization code, then sign in (linking or creating the account)."""
    _require_provider(provider)
    client = request.app.state.oauth.create_client(provider)
    try:
        token = await client.authorize_access_token(request)
        profile = await get_oauth_profile(client, provider, token)
    except (OAuthError, ValueError) as exc:
        logger.warning("OAuth callback from %s rejected: %s", provider, exc)
        raise OAuthLoginFailed(str(exc)) from exc

    ip, ua = client_info(request)
    service: AuthService = request.app.state.auth_service
    user, pair = await run_in_threadpool(
        service.oauth_login,
        profile.provider,
        profile.provider_user_id,
        profile.email,
        profile.full_name,
        ip,
        ua,
        email_verified=profile.email_verified,
        avatar_url=profile.avatar_url,
    )
    return _token_json(pair, user)
