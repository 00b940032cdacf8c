"""
auth/limiter.py -- Fixed-window rate limiting.

Algorithm (both implementations):
    No window for the key, or the window has ended -> start a new window with
    count 1 and allow. Otherwise increment and allow iff count <= limit.
    Denied calls still count, so hammering a limited key never shortens the
    wait.

    MemoryRateLimiter -- {key: _Window} map under one threading.Lock. State is
        per-process; run_cleanup_loop() drops ended windows in the background.
    CacheRateLimiter  -- delegates to the cache's atomic increment() (Redis:
        Lua INCR + PEXPIRE on the first hit). Shared by every worker.

Keys are caller-defined strings: "ip:<addr>" for the general API throttle,
"login:<email>" for the login throttle.

Layer rule: no imports from api/ or mail/. The cache is injected, not imported.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger("authgate.auth.limiter")


class RateLimiter(Protocol):
    def check_and_increment(self, key: str, limit: int, window_seconds: int) -> bool: ...

    def reset(self, key: str) -> None: ...

    def retry_after(self, key: str) -> int: ...


# ---------------------------------------------------------------------------
# In-process limiter
# ---------------------------------------------------------------------------


@dataclass
class _Window:
    count: int
    reset_at: float


class MemoryRateLimiter:
    """Mutex-guarded fixed-window limiter. `clock` returns monotonic seconds."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def check_and_increment(self, key: str, limit: int, window_seconds: int) -> bool:
        with self._lock:
            now = self._clock()
            window = self._windows.get(key)
            if window is None or now > window.reset_at:
                self._windows[key] = _Window(count=1, reset_at=now + window_seconds)
                return True
            window.count += 1
            return window.count <= limit

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def retry_after(self, key: str) -> int:
        """Seconds until the key's current window ends (0 if there is none)."""
        with self._lock:
            window = self._windows.get(key)
            if window is None:
                return 0
            return max(0, math.ceil(window.reset_at - self._clock()))

    def cleanup(self) -> int:
        """Drop every window that has ended. Returns the number removed."""
        with self._lock:
            now = self._clock()
            ended = [k for k, w in self._windows.items() if now > w.reset_at]
            for k in ended:
                del self._windows[k]
        return len(ended)

    async def run_cleanup_loop(self, interval_seconds: float) -> None:
        """Call cleanup() every interval until cancelled (FastAPI lifespan task)."""
        while True:
            await asyncio.sleep(interval_seconds)
            removed = self.cleanup()
            if removed:
                logger.debug("Rate limiter cleanup removed %d expired windows", removed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)


# ---------------------------------------------------------------------------
# Cache-backed limiter
# ---------------------------------------------------------------------------


class CacheRateLimiter:
    """Fixed-window limiter on top of a cache store's atomic increment().

    The window starts at the first increment (the cache sets the key's TTL
    then) and ends when the key expires. Cache failures raise
    StoreUnavailable from the cache layer.
    """

    def __init__(self, cache, prefix: str = "ratelimit:") -> None:
        self._cache = cache
        self._prefix = prefix

    def check_and_increment(self, key: str, limit: int, window_seconds: int) -> bool:
        count = self._cache.increment(self._prefix + key, window_seconds)
        return count <= limit

    def reset(self, key: str) -> None:
        self._cache.reset_counter(self._prefix + key)

    def retry_after(self, key: str) -> int:
        return self._cache.ttl(self._prefix + key)
