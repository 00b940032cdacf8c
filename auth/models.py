"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store, lockout engine and service do the work.

User and OAuthAccount ids are uuid4 strings generated by the store on insert.
Audit rows (attempts, locks, events) use integer autoincrement ids, which also
break ordering ties between rows written in the same microsecond. Timestamps are
timezone-aware UTC datetimes in memory (ISO strings on disk, see core/clock.py).

Layer rule: no imports from api/, cache/, or mail/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class TokenType(str, Enum):
    access = "access"
    refresh = "refresh"
    verification = "verification"
    password_reset = "password_reset"


class SecurityEventType(str, Enum):
    login_success = "login_success"
    login_failed = "login_failed"
    new_device_login = "new_device_login"
    new_location_login = "new_location_login"

    account_created = "account_created"
    account_locked = "account_locked"
    account_unlocked = "account_unlocked"

    password_changed = "password_changed"
    password_reset = "password_reset"
    password_reset_requested = "password_reset_requested"

    email_verified = "email_verified"

    oauth_linked = "oauth_linked"
    oauth_unlinked = "oauth_unlinked"

    suspicious_activity = "suspicious_activity"
    admin_action = "admin_action"


@dataclass
class User:
    """An account holder.

    hashed_password is None for OAuth-only users (they have no local password
    and can only sign in through a linked provider).
    """

    email: str
    full_name: str = ""
    id: str | None = None
    hashed_password: str | None = None  # None = OAuth-only user
    avatar_url: str = ""
    email_verified: bool = False
    is_active: bool = True
    role: str = "user"  # "user" or "admin"
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_login: datetime | None = None


@dataclass
class OAuthAccount:
    """Link between a user and a provider identity. (provider, provider_user_id) is unique."""

    user_id: str
    provider: str  # "github", "google"
    provider_user_id: str
    id: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class TokenClaims:
    """Verified contents of a signed token. Immutable once issued."""

    id: str
    subject: str
    type: TokenType
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # access-token lifetime in seconds


@dataclass
class LoginAttempt:
    """Append-only audit row. user_id is None when the email matched no account."""

    user_id: str | None
    ip_address: str
    user_agent: str
    successful: bool
    location: str = ""
    id: int | None = None
    attempted_at: datetime | None = None


@dataclass
class AccountLock:
    """At most one row per user; the user is locked while unlock_at is in the future."""

    user_id: str
    locked_at: datetime
    unlock_at: datetime
    reason: str
    created_by: str = "system"
    id: int | None = None


@dataclass
class SecurityEvent:
    user_id: str
    event_type: SecurityEventType
    ip_address: str = ""
    user_agent: str = ""
    location: str = ""
    description: str = ""
    id: int | None = None
    created_at: datetime | None = None
