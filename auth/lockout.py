"""
auth/lockout.py -- Login-attempt auditing, account lockout and security events.

LockoutEngine is the stateful half of brute-force protection (the rate
limiter in auth/limiter.py is the stateless half). Every login attempt is
written to the store first; the decisions below read back from it, so the
store is the single source of truth across worker processes.

Failed attempt (known user):
    Count failed attempts younger than `lockout_window` among the user's 10
    most recent. At or above `max_login_attempts` -> lock_account() upsert
    until now + lock_duration, record account_locked, email the user.
    A failed attempt while already locked re-applies the lock, so an attacker
    who keeps guessing keeps the account locked.

Successful attempt:
    Compare with the previous successful attempts among the last 5. An unseen
    location records new_location_login, otherwise an unseen user agent
    records new_device_login. Either one sends a login notification.

Suspicious activity:
    Three or more distinct locations among the user's last 10 events in the
    past 24 hours, with the current location not among them. Recorded and
    emailed; never locks the account.

Best-effort vs critical:
    Attempt writes, lock writes and lock reads propagate store errors (the
    caller fails closed). Security-event writes and notifications are logged
    and swallowed.

Layer rule: no imports from api/, cache/, or mail/. The notifier is injected.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError

from auth.models import AccountLock, LoginAttempt, SecurityEvent, SecurityEventType
from core.clock import Clock, utcnow

logger = logging.getLogger("authgate.auth.lockout")

_FAILURE_SCAN_LIMIT = 10
_SUCCESS_SCAN_LIMIT = 5
_SUSPICIOUS_SCAN_LIMIT = 10
_SUSPICIOUS_WINDOW = timedelta(hours=24)
_SUSPICIOUS_LOCATION_THRESHOLD = 3

LOCAL_NETWORK = "Local Network"
UNKNOWN_LOCATION = "Unknown location"


# ---------------------------------------------------------------------------
# Location and device description
# ---------------------------------------------------------------------------


@dataclass
class Location:
    country: str = ""
    region: str = ""
    city: str = ""


class GeoIPLookup(Protocol):
    def get_location(self, ip: str) -> Location: ...


class SimpleGeoIPLookup:
    """Placeholder lookup. Swap in a real GeoIP database reader in production."""

    def get_location(self, ip: str) -> Location:
        return Location(country="Unknown Country", region="Unknown Region", city="Unknown City")


def is_private_ip(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return addr.is_private or addr.is_loopback or addr.is_link_local


def resolve_location(ip: str, geoip: GeoIPLookup) -> str:
    """Human-readable location for an IP. Never raises."""
    if is_private_ip(ip):
        return LOCAL_NETWORK
    try:
        loc = geoip.get_location(ip)
    except Exception:
        logger.warning("GeoIP lookup failed for %s", ip, exc_info=True)
        return UNKNOWN_LOCATION
    if loc.city and loc.country:
        return f"{loc.city}, {loc.country}"
    if loc.country:
        return loc.country
    return UNKNOWN_LOCATION


def describe_device(user_agent: str) -> str:
    """Rough "Device (OS, Browser)" summary of a User-Agent header for emails."""
    ua = (user_agent or "").lower()

    if "iphone" in ua:
        device = "iPhone"
    elif "ipad" in ua:
        device = "iPad"
    elif "android" in ua:
        device = "Android Phone" if "mobile" in ua else "Android Tablet"
    elif "macintosh" in ua:
        device = "Mac"
    elif "windows" in ua:
        device = "Windows PC"
    elif "linux" in ua:
        device = "Linux PC"
    else:
        device = "Unknown Device"

    if "windows nt 10" in ua:
        os_name = "Windows 10"
    elif "windows nt 6.3" in ua:
        os_name = "Windows 8.1"
    elif "windows nt 6.2" in ua:
        os_name = "Windows 8"
    elif "windows nt 6.1" in ua:
        os_name = "Windows 7"
    elif "iphone" in ua or "ipad" in ua:
        os_name = "iOS"
    elif "mac os x" in ua:
        os_name = "macOS"
    elif "android" in ua:
        os_name = "Android"
    elif "linux" in ua:
        os_name = "Linux"
    else:
        os_name = "Unknown OS"

    if "edg" in ua:
        browser = "Edge"
    elif "opr" in ua or "opera" in ua:
        browser = "Opera"
    elif "chrome" in ua:
        browser = "Chrome"
    elif "firefox" in ua:
        browser = "Firefox"
    elif "safari" in ua:
        browser = "Safari"
    else:
        browser = "Unknown Browser"

    return f"{device} ({os_name}, {browser})"


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class LockoutEngine:
    """Records attempts, applies locks and emits security events.

    `store` is a UserStore (or anything with the same methods); `notifier` an
    EmailService or None to disable email.
    """

    def __init__(
        self,
        store,
        notifier=None,
        *,
        max_login_attempts: int = 5,
        lock_duration: timedelta = timedelta(minutes=30),
        lockout_window: timedelta = timedelta(hours=1),
        geoip: GeoIPLookup | None = None,
        clock: Clock = utcnow,
        login_notifications: bool = True,
        suspicious_activity_detection: bool = True,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.max_login_attempts = max_login_attempts
        self.lock_duration = lock_duration
        self.lockout_window = lockout_window
        self.geoip = geoip or SimpleGeoIPLookup()
        self.clock = clock
        self.login_notifications = login_notifications
        self.suspicious_activity_detection = suspicious_activity_detection

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    def record_login_attempt(
        self,
        user_id: str | None,
        email: str,
        ip_address: str,
        user_agent: str,
        successful: bool,
        *,
        full_name: str = "",
    ) -> AccountLock | None:
        """Audit one attempt, then run the success or failure analysis.

        Returns the AccountLock when this attempt caused (or extended) a lock.
        Store errors on the attempt write, the history read and the lock write
        propagate.
        """
        attempt = self.store.record_login_attempt(
            LoginAttempt(
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                successful=successful,
                location=resolve_location(ip_address, self.geoip),
                attempted_at=self.clock(),
            )
        )
        if user_id is None:
            return None
        if successful:
            self._handle_success(user_id, email, full_name, attempt)
            return None
        return self._handle_failure(user_id, email, full_name, attempt)

    def _handle_success(self, user_id: str, email: str, full_name: str, attempt: LoginAttempt) -> None:
        previous = [
            a
            for a in self.store.get_recent_login_attempts(user_id, _SUCCESS_SCAN_LIMIT)
            if a.id != attempt.id and a.successful
        ]
        new_location = all(a.location != attempt.location for a in previous)
        new_device = all(a.user_agent != attempt.user_agent for a in previous)
        if not (new_location or new_device):
            return

        event_type = SecurityEventType.new_location_login if new_location else SecurityEventType.new_device_login
        self.record_event(
            user_id,
            event_type,
            ip_address=attempt.ip_address,
            user_agent=attempt.user_agent,
            location=attempt.location,
            description=f"Login from {attempt.location}",
        )
        if self.login_notifications:
            self._notify(
                "login notification",
                "send_login_notification",
                email,
                full_name,
                attempt.ip_address,
                attempt.location,
                describe_device(attempt.user_agent),
                attempt.attempted_at,
            )

    def _handle_failure(self, user_id: str, email: str, full_name: str, attempt: LoginAttempt) -> AccountLock | None:
        cutoff = self.clock() - self.lockout_window
        failed = sum(
            1
            for a in self.store.get_recent_login_attempts(user_id, _FAILURE_SCAN_LIMIT)
            if not a.successful and a.attempted_at is not None and a.attempted_at > cutoff
        )
        if failed < self.max_login_attempts:
            return None

        unlock_at = self.clock() + self.lock_duration
        reason = f"Too many failed login attempts ({failed})"
        lock = self.store.lock_account(user_id, unlock_at, reason)
        logger.warning("Account %s locked until %s: %s", user_id, unlock_at.isoformat(), reason)

        self.record_event(
            user_id,
            SecurityEventType.account_locked,
            ip_address=attempt.ip_address,
            user_agent=attempt.user_agent,
            location=attempt.location,
            description=reason,
        )
        self._notify("account locked email", "send_account_locked_email", email, full_name, unlock_at, reason)
        return lock

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    def is_account_locked(self, user_id: str) -> tuple[bool, AccountLock | None]:
        """Return (locked, lock). Store errors propagate so the caller can fail closed."""
        lock = self.store.is_account_locked(user_id, self.clock())
        return lock is not None, lock

    def unlock_account(self, user_id: str, actor: str = "system") -> bool:
        removed = self.store.unlock_account(user_id)
        self.record_event(
            user_id,
            SecurityEventType.account_unlocked,
            description=f"Account unlocked by {actor}",
        )
        logger.info("Account %s unlocked by %s (lock present: %s)", user_id, actor, removed)
        return removed

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def record_event(
        self,
        user_id: str,
        event_type: SecurityEventType,
        *,
        ip_address: str = "",
        user_agent: str = "",
        location: str | None = None,
        description: str = "",
    ) -> SecurityEvent | None:
        """Best-effort security-event write. Returns None if the store failed."""
        if location is None:
            location = resolve_location(ip_address, self.geoip) if ip_address else ""
        try:
            return self.store.record_security_event(
                SecurityEvent(
                    user_id=user_id,
                    event_type=event_type,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    location=location,
                    description=description,
                    created_at=self.clock(),
                )
            )
        except SQLAlchemyError:
            logger.warning("Failed to record %s event for user %s", event_type.value, user_id, exc_info=True)
            return None

    def recent_locations(self, user_id: str) -> set[str]:
        """Distinct locations among the user's last 10 events in the past 24 hours.

        Login callers take this snapshot before recording the attempt, since
        a new-location login writes an event carrying the current location.
        """
        since = self.clock() - _SUSPICIOUS_WINDOW
        recent = self.store.get_user_security_events(user_id, _SUSPICIOUS_SCAN_LIMIT, since=since)
        return {ev.location for ev in recent if ev.location}

    def detect_suspicious_activity(
        self,
        user_id: str,
        email: str,
        ip_address: str,
        user_agent: str,
        activity: SecurityEventType,
        *,
        full_name: str = "",
        known_locations: set[str] | None = None,
    ) -> bool:
        """Record `activity` and flag it if it comes from a fourth-or-later location in 24h.

        `known_locations` is a recent_locations() snapshot taken before the
        activity was recorded; without one the store is scanned now.
        Returns True when the activity was flagged as suspicious.
        """
        if not self.suspicious_activity_detection:
            return False
        location = resolve_location(ip_address, self.geoip)
        seen = known_locations if known_locations is not None else self.recent_locations(user_id)
        suspicious = len(seen) >= _SUSPICIOUS_LOCATION_THRESHOLD and location not in seen

        self.record_event(
            user_id,
            activity,
            ip_address=ip_address,
            user_agent=user_agent,
            location=location,
            description=f"{activity.value} from {location}",
        )
        if not suspicious:
            return False

        logger.warning("Suspicious activity for user %s: %s from %s (%s)", user_id, activity.value, location, ip_address)
        self.record_event(
            user_id,
            SecurityEventType.suspicious_activity,
            ip_address=ip_address,
            user_agent=user_agent,
            location=location,
            description="Activity from multiple locations in a short time period",
        )
        self._notify(
            "suspicious activity email",
            "send_suspicious_activity_email",
            email,
            full_name,
            activity.value,
            ip_address,
            location,
            self.clock(),
        )
        return True

    def notify_password_changed(
        self, user_id: str, email: str, ip_address: str, user_agent: str, *, full_name: str = ""
    ) -> None:
        self.record_event(
            user_id,
            SecurityEventType.password_changed,
            ip_address=ip_address,
            user_agent=user_agent,
            description="Password changed",
        )
        self._notify(
            "password changed email", "send_password_changed_email", email, full_name, ip_address, self.clock()
        )

    def _notify(self, what: str, method: str, *args) -> None:
        if self.notifier is None:
            return
        try:
            getattr(self.notifier, method)(*args)
        except Exception:
            logger.warning("Failed to send %s", what, exc_info=True)
