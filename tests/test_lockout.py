"""Unit tests for auth/lockout.py -- the lockout state machine and security events.

Covers:
- 5 failed attempts inside the window lock the account and notify
- failures outside the window do not count
- unknown users are never locked
- a failed attempt while locked extends the single lock row
- locks lapse on their own at unlock_at; admin unlock clears them
- new-location and new-device logins are recorded and notified
- suspicious activity needs 3 prior locations and an unseen current one
- the location snapshot taken before a login keeps that login detectable
- notifications carry the user's name
- concurrent threshold failures on a file-backed store leave one lock row
- notifier and event-store failures never break the login path
- location and device helpers
"""

import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from conftest import MapGeoIP

from auth.lockout import (
    LOCAL_NETWORK,
    LockoutEngine,
    describe_device,
    resolve_location,
)
from auth.models import SecurityEventType, User
from auth.store import UserStore, _account_locks

CHROME_WIN = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36"
SAFARI_IPHONE = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 Version/17.0 Safari/604.1"


@pytest.fixture
def user(store):
    return store.create_user(User(email="carol@example.com", hashed_password="x"))


@pytest.fixture
def geoip():
    return MapGeoIP({"81.2.69.1": "Oslo", "81.2.69.2": "Lima", "81.2.69.3": "Pune", "81.2.69.4": "Kobe"})


@pytest.fixture
def engine(store, notifier, clock, geoip):
    return LockoutEngine(store, notifier, geoip=geoip, clock=clock)


def _fail(engine, user, n, ip="81.2.69.1"):
    lock = None
    for _ in range(n):
        lock = engine.record_login_attempt(user.id, user.email, ip, CHROME_WIN, False)
    return lock


def _event_types(store, user):
    return [e.event_type for e in store.get_user_security_events(user.id)]


# ---------------------------------------------------------------------------
# Lock transitions
# ---------------------------------------------------------------------------


def test_four_failures_do_not_lock(engine, user):
    assert _fail(engine, user, 4) is None
    assert engine.is_account_locked(user.id) == (False, None)


def test_fifth_failure_locks_and_notifies(engine, store, user, notifier, clock):
    lock = _fail(engine, user, 5)
    assert lock is not None
    assert lock.unlock_at == clock() + timedelta(minutes=30)
    assert lock.reason == "Too many failed login attempts (5)"

    locked, stored = engine.is_account_locked(user.id)
    assert locked is True
    assert stored.unlock_at == lock.unlock_at
    assert SecurityEventType.account_locked in _event_types(store, user)
    notifier.send_account_locked_email.assert_called_once()
    assert notifier.send_account_locked_email.call_args.args[0] == user.email


def test_failures_outside_window_do_not_count(engine, user, clock):
    _fail(engine, user, 4)
    clock.advance(hours=1, seconds=1)
    assert _fail(engine, user, 1) is None
    assert engine.is_account_locked(user.id)[0] is False


def test_unknown_user_is_never_locked(engine, store):
    for _ in range(10):
        assert engine.record_login_attempt(None, "ghost@example.com", "81.2.69.9", "", False) is None


def test_failure_while_locked_extends_lock(engine, store, user, clock):
    first = _fail(engine, user, 5)
    clock.advance(minutes=10)
    second = _fail(engine, user, 1)
    assert second.unlock_at == first.unlock_at + timedelta(minutes=10)
    assert store.get_account_lock(user.id).unlock_at == second.unlock_at
    assert store.get_account_lock(user.id).reason == "Too many failed login attempts (6)"


def test_lock_lapses_at_unlock_at(engine, user, clock):
    lock = _fail(engine, user, 5)
    clock.now = lock.unlock_at
    assert engine.is_account_locked(user.id)[0] is False


def test_admin_unlock(engine, store, user):
    _fail(engine, user, 5)
    assert engine.unlock_account(user.id, actor="admin-1") is True
    assert engine.is_account_locked(user.id)[0] is False
    events = store.get_user_security_events(user.id)
    assert events[0].event_type == SecurityEventType.account_unlocked
    assert "admin-1" in events[0].description


def test_custom_threshold(store, notifier, clock, user):
    engine = LockoutEngine(store, notifier, max_login_attempts=2, lock_duration=timedelta(minutes=5), clock=clock)
    assert engine.record_login_attempt(user.id, user.email, "81.2.69.1", "", False) is None
    lock = engine.record_login_attempt(user.id, user.email, "81.2.69.1", "", False)
    assert lock.unlock_at == clock() + timedelta(minutes=5)


# ---------------------------------------------------------------------------
# Successful logins
# ---------------------------------------------------------------------------


def test_first_success_is_new_location(engine, store, user, notifier):
    engine.record_login_attempt(user.id, user.email, "81.2.69.1", CHROME_WIN, True)
    assert _event_types(store, user) == [SecurityEventType.new_location_login]
    args = notifier.send_login_notification.call_args.args
    assert args[3] == "Oslo, Testland"
    assert args[4] == "Windows PC (Windows 10, Chrome)"


def test_same_location_and_device_is_quiet(engine, store, user, notifier):
    engine.record_login_attempt(user.id, user.email, "81.2.69.1", CHROME_WIN, True)
    notifier.reset_mock()
    engine.record_login_attempt(user.id, user.email, "81.2.69.1", CHROME_WIN, True)
    notifier.send_login_notification.assert_not_called()
    assert len(_event_types(store, user)) == 1


def test_new_device_same_location(engine, store, user, notifier):
    engine.record_login_attempt(user.id, user.email, "81.2.69.1", CHROME_WIN, True)
    engine.record_login_attempt(user.id, user.email, "81.2.69.1", SAFARI_IPHONE, True)
    assert _event_types(store, user)[0] == SecurityEventType.new_device_login
    assert notifier.send_login_notification.call_count == 2


def test_new_location_wins_over_new_device(engine, store, user):
    engine.record_login_attempt(user.id, user.email, "81.2.69.1", CHROME_WIN, True)
    engine.record_login_attempt(user.id, user.email, "81.2.69.2", SAFARI_IPHONE, True)
    assert _event_types(store, user)[0] == SecurityEventType.new_location_login


def test_login_notifications_can_be_disabled(store, notifier, clock, user):
    engine = LockoutEngine(store, notifier, clock=clock, login_notifications=False)
    engine.record_login_attempt(user.id, user.email, "81.2.69.1", CHROME_WIN, True)
    notifier.send_login_notification.assert_not_called()


# ---------------------------------------------------------------------------
# Suspicious activity
# ---------------------------------------------------------------------------


def _login_from(engine, user, ip):
    return engine.detect_suspicious_activity(user.id, user.email, ip, CHROME_WIN, SecurityEventType.login_success)


def test_fourth_location_in_a_day_is_suspicious(engine, store, user, notifier):
    assert _login_from(engine, user, "81.2.69.1") is False
    assert _login_from(engine, user, "81.2.69.2") is False
    assert _login_from(engine, user, "81.2.69.3") is False
    assert _login_from(engine, user, "81.2.69.4") is True
    assert _event_types(store, user)[0] == SecurityEventType.suspicious_activity
    notifier.send_suspicious_activity_email.assert_called_once()


def test_known_location_is_not_suspicious(engine, user):
    for ip in ("81.2.69.1", "81.2.69.2", "81.2.69.3"):
        _login_from(engine, user, ip)
    assert _login_from(engine, user, "81.2.69.2") is False


def test_old_locations_fall_out_of_window(engine, user, clock):
    for ip in ("81.2.69.1", "81.2.69.2", "81.2.69.3"):
        _login_from(engine, user, ip)
    clock.advance(hours=25)
    assert _login_from(engine, user, "81.2.69.4") is False


def test_suspicious_activity_never_locks(engine, user):
    for ip in ("81.2.69.1", "81.2.69.2", "81.2.69.3", "81.2.69.4"):
        _login_from(engine, user, ip)
    assert engine.is_account_locked(user.id)[0] is False


def test_snapshot_taken_before_the_login_keeps_fourth_location_suspicious(engine, store, user, notifier):
    for ip in ("81.2.69.1", "81.2.69.2", "81.2.69.3", "81.2.69.4"):
        known = engine.recent_locations(user.id)
        engine.record_login_attempt(user.id, user.email, ip, CHROME_WIN, True)
        flagged = engine.detect_suspicious_activity(
            user.id, user.email, ip, CHROME_WIN, SecurityEventType.login_success, known_locations=known
        )
    assert flagged is True
    assert _event_types(store, user).count(SecurityEventType.suspicious_activity) == 1
    notifier.send_suspicious_activity_email.assert_called_once()


def test_recent_locations_ignores_events_older_than_a_day(engine, user, clock):
    _login_from(engine, user, "81.2.69.1")
    clock.advance(hours=25)
    _login_from(engine, user, "81.2.69.2")
    assert engine.recent_locations(user.id) == {"Lima, Testland"}


# ---------------------------------------------------------------------------
# Recipient names
# ---------------------------------------------------------------------------


def test_notifications_greet_the_user_by_name(engine, user, notifier):
    engine.record_login_attempt(user.id, user.email, "81.2.69.1", CHROME_WIN, True, full_name="Carol")
    assert notifier.send_login_notification.call_args.args[1] == "Carol"

    for _ in range(5):
        engine.record_login_attempt(user.id, user.email, "81.2.69.1", CHROME_WIN, False, full_name="Carol")
    assert notifier.send_account_locked_email.call_args.args[1] == "Carol"

    engine.notify_password_changed(user.id, user.email, "81.2.69.1", CHROME_WIN, full_name="Carol")
    assert notifier.send_password_changed_email.call_args.args[1] == "Carol"


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


def test_concurrent_threshold_failures_leave_one_lock_row(tmp_path, clock, notifier):
    file_store = UserStore(f"sqlite:///{tmp_path / 'auth.db'}", clock=clock)
    try:
        target = file_store.create_user(User(email="dave@example.com", hashed_password="x"))
        engine = LockoutEngine(file_store, notifier, clock=clock)
        _fail(engine, target, 3)

        barrier = threading.Barrier(2)
        locks = []

        def fail_once():
            barrier.wait()
            locks.append(engine.record_login_attempt(target.id, target.email, "81.2.69.1", CHROME_WIN, False))

        threads = [threading.Thread(target=fail_once) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(locks) == 2
        assert any(lock is not None for lock in locks)
        with file_store.engine.connect() as conn:
            rows = conn.execute(
                select(func.count()).select_from(_account_locks).where(_account_locks.c.user_id == target.id)
            ).scalar()
        assert rows == 1
        assert engine.is_account_locked(target.id)[0] is True
    finally:
        file_store.close()


# ---------------------------------------------------------------------------
# Best-effort side effects
# ---------------------------------------------------------------------------


def test_notifier_failure_does_not_break_lock(engine, user, notifier):
    notifier.send_account_locked_email.side_effect = RuntimeError("smtp down")
    assert _fail(engine, user, 5) is not None
    assert engine.is_account_locked(user.id)[0] is True


def test_event_store_failure_is_swallowed(store, clock, user):
    broken = MagicMock(wraps=store)
    broken.record_security_event.side_effect = OperationalError("INSERT", {}, Exception("disk full"))
    engine = LockoutEngine(broken, None, clock=clock)
    assert engine.record_event(user.id, SecurityEventType.admin_action, description="x") is None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("ip", ["127.0.0.1", "10.1.2.3", "192.168.0.5", "::1"])
def test_private_addresses_are_local_network(ip, geoip):
    assert resolve_location(ip, geoip) == LOCAL_NETWORK


def test_geoip_failure_is_unknown_location():
    broken = MagicMock()
    broken.get_location.side_effect = RuntimeError("db missing")
    assert resolve_location("81.2.69.1", broken) == "Unknown location"


@pytest.mark.parametrize(
    "ua,expected",
    [
        (CHROME_WIN, "Windows PC (Windows 10, Chrome)"),
        (SAFARI_IPHONE, "iPhone (iOS, Safari)"),
        ("", "Unknown Device (Unknown OS, Unknown Browser)"),
    ],
)
def test_describe_device(ua, expected):
    assert describe_device(ua) == expected
