"""
auth/oauth.py -- Authlib OAuth provider registry and profile extraction.

build_oauth() registers only the providers with both a client ID and secret
configured; the /auth/providers endpoint lists them via enabled_providers().

Security notes:
  Email trust: the profile carries email_verified exactly as the provider
       reported it. AuthService only links a provider identity to an existing
       account by email when the provider vouches for that email; an
       unverified address could be a victim's address added by an attacker.

  OAuth state parameter (CSRF protection) is handled by authlib via Starlette
  SessionMiddleware. The session stores the state between the authorization
  redirect and the callback.

Supported providers:
  github -- Authorization code flow; static endpoints.
  google -- Authorization code flow; OIDC discovery.

Layer rule: no imports from api/, cache/, or mail/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from authlib.integrations.starlette_client import OAuth

from core.config import Settings

logger = logging.getLogger("authgate.auth.oauth")

_LABELS = {"github": "GitHub", "google": "Google"}


@dataclass(frozen=True)
class OAuthProfile:
    provider: str
    provider_user_id: str
    email: str
    email_verified: bool
    full_name: str = ""
    avatar_url: str = ""


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def build_oauth(settings: Settings) -> OAuth:
    """Return an authlib OAuth registry with every configured provider."""
    oauth = OAuth()

    if settings.github_client_id and settings.github_client_secret:
        oauth.register(
            name="github",
            client_id=settings.github_client_id,
            client_secret=settings.github_client_secret,
            access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://github.com/login/oauth/authorize",
            api_base_url="https://api.github.com/",
            client_kwargs={"scope": "read:user user:email"},
        )
        logger.info("GitHub OAuth provider registered")

    if settings.google_client_id and settings.google_client_secret:
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")

    return oauth


def enabled_providers(settings: Settings) -> list[dict]:
    """Return [{"name", "label"}] for every provider with credentials configured."""
    providers: list[dict] = []
    if settings.github_client_id and settings.github_client_secret:
        providers.append({"name": "github", "label": _LABELS["github"]})
    if settings.google_client_id and settings.google_client_secret:
        providers.append({"name": "google", "label": _LABELS["google"]})
    return providers


# ---------------------------------------------------------------------------
# Profile extraction -- provider-specific normalization
# ---------------------------------------------------------------------------


async def get_oauth_profile(client, provider: str, token: dict) -> OAuthProfile:
    """Normalize a provider token response into an OAuthProfile.

    Raises ValueError when the provider response lacks a stable subject id.
    The caller treats that as an OAuth login failure.
    """
    if provider == "github":
        return await _get_github_profile(client, token)
    if provider == "google":
        return _get_google_profile(token)
    raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _get_github_profile(client, token: dict) -> OAuthProfile:
    """GitHub needs two calls: GET /user for the numeric id and profile, then
    GET /user/emails for the primary address and its verified flag."""
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = resp.json()
    if "id" not in profile:
        raise ValueError("GitHub OAuth: user profile has no id")

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()
    email, verified = "", False
    for entry in emails_resp.json():
        if entry.get("primary"):
            email, verified = entry.get("email", ""), bool(entry.get("verified"))
            break

    return OAuthProfile(
        provider="github",
        provider_user_id=str(profile["id"]),
        email=email,
        email_verified=verified,
        full_name=profile.get("name") or profile.get("login") or "",
        avatar_url=profile.get("avatar_url") or "",
    )


def _get_google_profile(token: dict) -> OAuthProfile:
    """Google returns OIDC userinfo claims in the token response. A missing
    email_verified claim counts as unverified."""
    userinfo = token.get("userinfo")
    if not userinfo or not userinfo.get("sub"):
        raise ValueError("google OAuth: no userinfo/sub in token response")
    return OAuthProfile(
        provider="google",
        provider_user_id=str(userinfo["sub"]),
        email=userinfo.get("email", ""),
        email_verified=bool(userinfo.get("email_verified", False)),
        full_name=userinfo.get("name", ""),
        avatar_url=userinfo.get("picture", ""),
    )
