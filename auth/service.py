"""
auth/service.py -- AuthService: the login/session orchestrator.

Composes the credential store, cache/session store, token codec, rate
limiter, lockout engine and email notifier. Route handlers call this class and
nothing below it.

Sessions:
    A refresh session is the cache key "session:{user_id}:{sha256(refresh)}"
    holding the user id, with TTL = refresh-token lifetime. Refresh rotation
    consumes the key with an atomic pop, so a replayed refresh token succeeds
    at most once. "Log out everywhere" deletes "session:{user_id}:*".

Login order (each step runs only if the previous one passed):
    rate limit -> user lookup -> lock check -> password -> active flag ->
    recent-location snapshot -> record successful attempt -> issue tokens ->
    persist session -> best-effort housekeeping (counter reset, last_login,
    suspicious activity).

Failure policy:
    Critical reads/writes (user lookup, lock state, attempt audit, session
    write, session revocation) convert store errors into StoreUnavailable, so
    the request fails closed. Notifications, security events and housekeeping
    are logged and swallowed.

A throttled login for an account that is currently locked answers
AccountLocked rather than RateLimitExceeded.

Layer rule: no imports from api/. The cache and notifier are injected.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from auth.models import OAuthAccount, SecurityEvent, SecurityEventType, TokenClaims, TokenPair, TokenType, User
from auth.tokens import burn_password_check, hash_password, verify_password
from core.clock import Clock, utcnow
from core.config import Settings
from core.errors import (
    AccountLocked,
    InvalidCredentials,
    LastLoginMethod,
    OAuthAccountConflict,
    OAuthLoginFailed,
    RateLimitExceeded,
    SessionNotFound,
    StoreUnavailable,
    TokenError,
    UserNotFound,
)

logger = logging.getLogger("authgate.auth")


def normalize_email(email: str) -> str:
    return email.strip().lower()


def session_key(user_id: str, refresh_token: str) -> str:
    digest = hashlib.sha256(refresh_token.encode("utf-8")).hexdigest()
    return f"session:{user_id}:{digest}"


class AuthService:
    """Orchestrates registration, login, token rotation and account security.

    Usage:
        service = AuthService(store, cache, codec, limiter, lockout, mailer, settings)
        user, pair = service.login("a@example.com", "s3cret-pass", "203.0.113.7", "curl/8")
        pair = service.refresh(pair.refresh_token)
    """

    def __init__(
        self,
        store,
        cache,
        codec,
        limiter,
        lockout,
        notifier=None,
        settings: Settings | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.codec = codec
        self.limiter = limiter
        self.lockout = lockout
        self.notifier = notifier
        self.settings = settings if settings is not None else Settings()
        self.clock = clock

    # ------------------------------------------------------------------
    # Failure-policy helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _critical(self, op: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            logger.error("Store failure during %s: %s", op, exc)
            raise StoreUnavailable(f"{op} failed") from exc

    @contextmanager
    def _best_effort(self, op: str) -> Iterator[None]:
        try:
            yield
        except (SQLAlchemyError, StoreUnavailable):
            logger.warning("Best-effort step %s failed", op, exc_info=True)

    def _send(self, what: str, method: str, *args) -> None:
        if self.notifier is None:
            return
        try:
            getattr(self.notifier, method)(*args)
        except Exception:
            logger.warning("Failed to send %s", what, exc_info=True)

    def _raise_if_locked(self, email: str) -> None:
        """Surface an active lock ahead of the login throttle."""
        lock = None
        with self._best_effort("throttled lock check"):
            user = self.store.get_by_email(email)
            if user is not None:
                _, lock = self.lockout.is_account_locked(user.id)
        if lock is not None:
            raise AccountLocked(
                until=lock.unlock_at, message=f"user {lock.user_id} locked until {lock.unlock_at.isoformat()}"
            )

    def _location_snapshot(self, user_id: str) -> set[str] | None:
        known = None
        with self._best_effort("recent location scan"):
            known = self.lockout.recent_locations(user_id)
        return known

    def _ttl(self, seconds: int) -> timedelta:
        return timedelta(seconds=seconds)

    # ------------------------------------------------------------------
    # Token and session plumbing
    # ------------------------------------------------------------------

    def _issue_pair(self, user_id: str) -> TokenPair:
        s = self.settings
        return TokenPair(
            access_token=self.codec.issue(user_id, TokenType.access, self._ttl(s.access_token_ttl_seconds)),
            refresh_token=self.codec.issue(user_id, TokenType.refresh, self._ttl(s.refresh_token_ttl_seconds)),
            expires_in=s.access_token_ttl_seconds,
        )

    def _start_session(self, user_id: str) -> TokenPair:
        """Issue a pair and persist its refresh session. Raises StoreUnavailable
        if the session cannot be written; the pair is then discarded."""
        pair = self._issue_pair(user_id)
        self.cache.set(
            session_key(user_id, pair.refresh_token),
            user_id,
            ttl_seconds=self.settings.refresh_token_ttl_seconds,
        )
        return pair

    def _get_user(self, user_id: str) -> User:
        with self._critical("user lookup"):
            user = self.store.get_by_id(user_id)
        if user is None:
            raise UserNotFound(f"user {user_id} not found")
        return user

    def get_user(self, user_id: str) -> User:
        return self._get_user(user_id)

    def get_linked_providers(self, user_id: str) -> list[str]:
        with self._critical("oauth link read"):
            return [a.provider for a in self.store.get_oauth_accounts(user_id)]

    def update_profile(self, user_id: str, **fields) -> User:
        """Update display fields (full_name, avatar_url) and return the fresh user."""
        allowed = {k: v for k, v in fields.items() if k in ("full_name", "avatar_url") and v is not None}
        if allowed:
            with self._critical("profile update"):
                self.store.update_user(user_id, **allowed)
        return self._get_user(user_id)

    def delete_account(self, user_id: str) -> None:
        """Delete the user and everything stored for them, then end every session."""
        user = self._get_user(user_id)
        with self._critical("account delete"):
            self.store.delete_user(user.id)
        self.invalidate_all_sessions(user.id)
        logger.info("Account deleted: %s", user.id)

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, full_name: str = "") -> User:
        """Create a password account and send the verification email.

        Raises EmailAlreadyExists for a taken email.
        """
        user = User(email=normalize_email(email), full_name=full_name.strip(), hashed_password=hash_password(password))
        with self._critical("create user"):
            user = self.store.create_user(user)
        logger.info("User registered: %s", user.id)

        self.lockout.record_event(user.id, SecurityEventType.account_created, description="Account created")
        token = self.codec.issue(
            user.id, TokenType.verification, self._ttl(self.settings.verification_token_ttl_seconds)
        )
        self._send("verification email", "send_verification_email", user.email, user.full_name, token)
        self._send("welcome email", "send_welcome_email", user.email, user.full_name)
        return user

    def login(self, email: str, password: str, ip_address: str = "", user_agent: str = "") -> tuple[User, TokenPair]:
        """Authenticate with email + password and start a session.

        Raises RateLimitExceeded, InvalidCredentials, AccountLocked or
        StoreUnavailable. The error never reveals whether the email exists.
        """
        email = normalize_email(email)
        s = self.settings
        limit_key = f"login:{email}"
        if s.enable_rate_limiting and not self.limiter.check_and_increment(
            limit_key, s.auth_rate_limit, s.auth_rate_window_seconds
        ):
            logger.warning("Login rate limit exceeded for %s from %s", email, ip_address)
            self._raise_if_locked(email)
            raise RateLimitExceeded(retry_after=self.limiter.retry_after(limit_key) or s.auth_rate_window_seconds)

        with self._critical("user lookup"):
            user = self.store.get_by_email(email)

        if user is None:
            burn_password_check(password)
            with self._critical("login attempt audit"):
                self.lockout.record_login_attempt(None, email, ip_address, user_agent, False)
            raise InvalidCredentials(f"unknown email {email}")

        with self._critical("lock check"):
            locked, lock = self.lockout.is_account_locked(user.id)
        if locked:
            with self._critical("login attempt audit"):
                relock = self.lockout.record_login_attempt(
                    user.id, email, ip_address, user_agent, False, full_name=user.full_name
                )
            until = (relock or lock).unlock_at
            raise AccountLocked(until=until, message=f"user {user.id} locked until {until.isoformat()}")

        if user.hashed_password is None or not verify_password(password, user.hashed_password):
            if user.hashed_password is None:
                burn_password_check(password)
            with self._critical("login attempt audit"):
                self.lockout.record_login_attempt(
                    user.id, email, ip_address, user_agent, False, full_name=user.full_name
                )
            raise InvalidCredentials(f"bad password for user {user.id}")

        if not user.is_active:
            with self._critical("login attempt audit"):
                self.lockout.record_login_attempt(
                    user.id, email, ip_address, user_agent, False, full_name=user.full_name
                )
            raise InvalidCredentials(f"user {user.id} is inactive")

        known_locations = self._location_snapshot(user.id)
        with self._critical("login attempt audit"):
            self.lockout.record_login_attempt(
                user.id, email, ip_address, user_agent, True, full_name=user.full_name
            )

        pair = self._start_session(user.id)

        with self._best_effort("login counter reset"):
            self.limiter.reset(limit_key)
        with self._best_effort("last_login update"):
            self.store.update_last_login(user.id)
        with self._best_effort("suspicious activity check"):
            self.lockout.detect_suspicious_activity(
                user.id,
                email,
                ip_address,
                user_agent,
                SecurityEventType.login_success,
                full_name=user.full_name,
                known_locations=known_locations,
            )
        logger.info("Login succeeded for user %s from %s", user.id, ip_address)
        return user, pair

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate a refresh token: consume its session and start a new one."""
        claims = self.codec.verify(refresh_token, expected_type=TokenType.refresh)
        owner = self.cache.pop(session_key(claims.subject, refresh_token))
        if owner is None or owner != claims.subject:
            logger.warning("Refresh with revoked or reused token %s for user %s", claims.id, claims.subject)
            raise SessionNotFound(f"no session for refresh token {claims.id}")

        user = self._get_user(claims.subject)
        if not user.is_active:
            raise SessionNotFound(f"user {user.id} is inactive")
        return self._start_session(user.id)

    def logout(self, refresh_token: str) -> None:
        """Revoke one session. Invalid, expired or already revoked tokens are a no-op."""
        try:
            claims = self.codec.verify(refresh_token, expected_type=TokenType.refresh)
        except TokenError:
            return
        self.cache.delete(session_key(claims.subject, refresh_token))

    def validate_session(self, access_token: str) -> TokenClaims:
        return self.codec.verify(access_token, expected_type=TokenType.access)

    def invalidate_all_sessions(self, user_id: str) -> int:
        removed = self.cache.delete_pattern(f"session:{user_id}:*")
        logger.info("Invalidated %d sessions for user %s", removed, user_id)
        return removed

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def send_verification_email(self, user_id: str) -> bool:
        """Issue and mail a fresh verification token. False if already verified."""
        user = self._get_user(user_id)
        if user.email_verified:
            return False
        token = self.codec.issue(
            user.id, TokenType.verification, self._ttl(self.settings.verification_token_ttl_seconds)
        )
        self._send("verification email", "send_verification_email", user.email, user.full_name, token)
        return True

    def resend_verification(self, email: str) -> None:
        """Public variant keyed by email. Silent for unknown or verified addresses."""
        with self._critical("user lookup"):
            user = self.store.get_by_email(normalize_email(email))
        if user is not None:
            self.send_verification_email(user.id)

    def verify_email(self, token: str) -> bool:
        """Mark the token's user verified. Returns False if they already were."""
        claims = self.codec.verify(token, expected_type=TokenType.verification)
        user = self._get_user(claims.subject)
        if user.email_verified:
            return False
        with self._critical("verify email"):
            self.store.update_user(user.id, email_verified=True)
        self.lockout.record_event(user.id, SecurityEventType.email_verified, description="Email verified")
        logger.info("Email verified for user %s", user.id)
        return True

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def send_password_reset_email(self, email: str, ip_address: str = "", user_agent: str = "") -> None:
        """Mail a reset link. Returns silently for unknown emails."""
        with self._critical("user lookup"):
            user = self.store.get_by_email(normalize_email(email))
        if user is None or not user.is_active:
            return
        token = self.codec.issue(
            user.id, TokenType.password_reset, self._ttl(self.settings.password_reset_token_ttl_seconds)
        )
        self.lockout.record_event(
            user.id,
            SecurityEventType.password_reset_requested,
            ip_address=ip_address,
            user_agent=user_agent,
            description="Password reset requested",
        )
        self._send("password reset email", "send_password_reset_email", user.email, user.full_name, token)

    def reset_password(self, token: str, new_password: str, ip_address: str = "", user_agent: str = "") -> None:
        """Set a new password from a reset token, end every session and clear any lock.

        Each reset token works once: its id is burned in the cache on first use.
        """
        claims = self.codec.verify(token, expected_type=TokenType.password_reset)
        remaining = max(1, int((claims.expires_at - self.clock()).total_seconds()) + 1)
        if self.cache.increment(f"used-token:{claims.id}", remaining) > 1:
            raise SessionNotFound(f"password reset token {claims.id} already used")

        user = self._get_user(claims.subject)
        with self._critical("password update"):
            self.store.update_user(user.id, hashed_password=hash_password(new_password))
            unlocked = self.store.unlock_account(user.id)
        self.invalidate_all_sessions(user.id)

        if unlocked:
            self.lockout.record_event(
                user.id, SecurityEventType.account_unlocked, description="Account unlocked by password reset"
            )
        self.lockout.record_event(
            user.id,
            SecurityEventType.password_reset,
            ip_address=ip_address,
            user_agent=user_agent,
            description="Password reset",
        )
        self._send(
            "password changed email", "send_password_changed_email", user.email, user.full_name, ip_address, self.clock()
        )
        logger.info("Password reset for user %s", user.id)

    def change_password(
        self, user_id: str, old_password: str, new_password: str, ip_address: str = "", user_agent: str = ""
    ) -> None:
        """Change a password after re-verifying the current one; ends every session."""
        user = self._get_user(user_id)
        if user.hashed_password is None or not verify_password(old_password, user.hashed_password):
            raise InvalidCredentials(f"wrong current password for user {user.id}")
        with self._critical("password update"):
            self.store.update_user(user.id, hashed_password=hash_password(new_password))
        self.invalidate_all_sessions(user.id)
        self.lockout.notify_password_changed(user.id, user.email, ip_address, user_agent, full_name=user.full_name)
        logger.info("Password changed for user %s", user.id)

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def oauth_login(
        self,
        provider: str,
        provider_user_id: str,
        email: str,
        full_name: str = "",
        ip_address: str = "",
        user_agent: str = "",
        *,
        email_verified: bool = True,
        avatar_url: str = "",
    ) -> tuple[User, TokenPair]:
        """Sign in with a provider identity, linking or creating the account as needed.

        Resolution order: existing link -> existing user with the same
        provider-verified email (linked now) -> new OAuth-only user.
        """
        email = normalize_email(email or "")
        with self._critical("oauth lookup"):
            link = self.store.get_oauth_account(provider, provider_user_id)
            user = self.store.get_by_id(link.user_id) if link is not None else None
            if user is None and email and email_verified:
                user = self.store.get_by_email(email)
                if user is not None:
                    self._link(user, provider, provider_user_id)
                    if not user.email_verified:
                        self.store.update_user(user.id, email_verified=True)
                        user.email_verified = True

        if user is None:
            if not email:
                raise OAuthLoginFailed(f"{provider} returned no email for {provider_user_id}")
            with self._critical("oauth create user"):
                user = self.store.create_user(
                    User(
                        email=email,
                        full_name=full_name,
                        avatar_url=avatar_url,
                        email_verified=email_verified,
                    )
                )
                self._link(user, provider, provider_user_id)
            self.lockout.record_event(
                user.id, SecurityEventType.account_created, description=f"Account created via {provider}"
            )
            self._send("welcome email", "send_welcome_email", user.email, user.full_name)

        if not user.is_active:
            raise OAuthLoginFailed(f"user {user.id} is inactive")

        with self._critical("lock check"):
            locked, lock = self.lockout.is_account_locked(user.id)
        if locked:
            raise AccountLocked(until=lock.unlock_at)

        known_locations = self._location_snapshot(user.id)
        with self._critical("login attempt audit"):
            self.lockout.record_login_attempt(
                user.id, user.email, ip_address, user_agent, True, full_name=user.full_name
            )
        pair = self._start_session(user.id)

        with self._best_effort("last_login update"):
            self.store.update_last_login(user.id)
        with self._best_effort("suspicious activity check"):
            self.lockout.detect_suspicious_activity(
                user.id,
                user.email,
                ip_address,
                user_agent,
                SecurityEventType.login_success,
                full_name=user.full_name,
                known_locations=known_locations,
            )
        logger.info("OAuth login via %s for user %s", provider, user.id)
        return user, pair

    def _link(self, user: User, provider: str, provider_user_id: str) -> OAuthAccount:
        account = self.store.create_oauth_account(
            OAuthAccount(user_id=user.id, provider=provider, provider_user_id=provider_user_id)
        )
        self.lockout.record_event(user.id, SecurityEventType.oauth_linked, description=f"Linked {provider} account")
        return account

    def link_oauth_account(self, user_id: str, provider: str, provider_user_id: str) -> OAuthAccount:
        """Attach a provider identity to an existing user.

        Raises OAuthAccountConflict if the identity already belongs to someone else.
        """
        user = self._get_user(user_id)
        with self._critical("oauth link"):
            existing = self.store.get_oauth_account(provider, provider_user_id)
            if existing is not None:
                if existing.user_id != user.id:
                    raise OAuthAccountConflict(f"{provider}:{provider_user_id} belongs to user {existing.user_id}")
                return existing
            return self._link(user, provider, provider_user_id)

    def unlink_oauth_account(self, user_id: str, provider: str) -> bool:
        """Remove the user's link for `provider`. False if there was none.

        Raises LastLoginMethod when the user has no password and this is
        their only linked provider.
        """
        user = self._get_user(user_id)
        with self._critical("oauth unlink"):
            links = self.store.get_oauth_accounts(user.id)
            if not any(a.provider == provider for a in links):
                return False
            if user.hashed_password is None and len(links) <= 1:
                raise LastLoginMethod(f"user {user.id} would have no sign-in method")
            self.store.delete_oauth_account(user.id, provider)
        self.lockout.record_event(user.id, SecurityEventType.oauth_unlinked, description=f"Unlinked {provider} account")
        return True

    # ------------------------------------------------------------------
    # Admin and history
    # ------------------------------------------------------------------

    def unlock_account(self, user_id: str, actor_id: str) -> bool:
        user = self._get_user(user_id)
        with self._critical("unlock"):
            removed = self.lockout.unlock_account(user.id, actor=actor_id)
        self.lockout.record_event(
            user.id, SecurityEventType.admin_action, description=f"Unlock requested by admin {actor_id}"
        )
        return removed

    def get_security_events(self, user_id: str, limit: int = 50) -> list[SecurityEvent]:
        with self._critical("security event read"):
            return self.store.get_user_security_events(user_id, limit)

