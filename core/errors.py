"""
core/errors.py -- Error taxonomy shared by auth/, cache/ and api/.

Every domain failure is an AuthError subclass carrying an HTTP status code, a
machine-readable code, and a public_message. The public pair is what clients
see; the exception's own message (str(exc)) is for logs only.

Enumeration safety: all token failures (expired, malformed, bad signature,
wrong type, revoked session) share the public code "invalid_token", and
InvalidCredentials never says which factor failed.

Layer rule: core/ imports nothing from the other packages.
"""

from __future__ import annotations

from datetime import datetime


class AuthError(Exception):
    """Base class for errors that map onto an HTTP error envelope."""

    status_code: int = 400
    code: str = "bad_request"
    public_message: str = "Invalid request."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.public_message)


class InvalidCredentials(AuthError):
    status_code = 401
    code = "invalid_credentials"
    public_message = "Invalid email or password."


class AccountLocked(AuthError):
    """Raised at the login gate while an AccountLock row is active."""

    status_code = 423
    code = "account_locked"
    public_message = "Account is temporarily locked. Try again later."

    def __init__(self, until: datetime | None = None, message: str | None = None) -> None:
        super().__init__(message)
        self.until = until


class RateLimitExceeded(AuthError):
    status_code = 429
    code = "rate_limited"
    public_message = "Too many requests."

    def __init__(self, retry_after: int = 60, message: str | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


# ---------------------------------------------------------------------------
# Token errors -- one public face, distinct types for logs and tests
# ---------------------------------------------------------------------------


class TokenError(AuthError):
    status_code = 401
    code = "invalid_token"
    public_message = "Invalid or expired token."


class TokenExpired(TokenError):
    pass


class TokenMalformed(TokenError):
    pass


class InvalidSignature(TokenError):
    pass


class WrongTokenType(TokenError):
    pass


class SessionNotFound(TokenError):
    """The refresh token verified but has no live session record (revoked or already rotated)."""


# ---------------------------------------------------------------------------
# Infrastructure and conflicts
# ---------------------------------------------------------------------------


class StoreUnavailable(AuthError):
    """A critical-path read or write against the credential store or cache failed."""

    status_code = 503
    code = "service_unavailable"
    public_message = "Service temporarily unavailable."


class EmailAlreadyExists(AuthError):
    status_code = 409
    code = "conflict"
    public_message = "An account with that email already exists."


class OAuthAccountConflict(AuthError):
    status_code = 409
    code = "oauth_conflict"
    public_message = "That provider account is already linked to another user."


class OAuthLoginFailed(AuthError):
    status_code = 401
    code = "oauth_failed"
    public_message = "OAuth login failed."


class UserNotFound(AuthError):
    status_code = 404
    code = "not_found"
    public_message = "User not found."


class LastLoginMethod(AuthError):
    """Unlinking would leave a password-less account with no way to sign in."""

    status_code = 400
    code = "last_login_method"
    public_message = "Set a password before removing your only sign-in method."


class OAuthLinkNotFound(AuthError):
    status_code = 404
    code = "not_found"
    public_message = "No linked account for that provider."
