"""
core/clock.py -- UTC time helpers.

Components that make time-based decisions (token expiry, lock windows,
attempt counting) take a `clock` callable defaulting to utcnow(), so tests can
substitute an advanceable clock instead of sleeping.

Persisted timestamps use to_iso(): fixed-width ISO 8601 with microseconds and
an explicit +00:00 offset. Fixed width means string comparison in SQL agrees
with chronological order.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
