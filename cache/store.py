"""
cache/store.py -- Key/value cache for refresh sessions and rate-limit counters.

Two implementations of one contract:

    MemoryCache -- single-process dict guarded by one lock. Default when no
                   REDIS_URL is configured (development, tests, one worker).
    RedisCache  -- redis-py client. Required as soon as more than one worker
                   process shares sessions or rate-limit windows.

Contract (both classes):
    increment(key, ttl_seconds) -> int   atomic; TTL set on the first increment only
    reset_counter(key)
    set(key, value, ttl_seconds)
    get(key) -> str | None
    ttl(key) -> int                       seconds left, 0 if missing
    delete(key) -> bool
    pop(key) -> str | None                atomic get-and-delete
    delete_pattern(pattern) -> int        glob-style pattern, e.g. "session:u1:*"
    purge_expired() -> int
    ping() / close()

Values are opaque strings; callers serialize.

Usage:
    cache = MemoryCache()
    cache.set("session:u1:abc", "u1", ttl_seconds=3600)
    cache.pop("session:u1:abc")          # "u1", and the key is gone
    cache.delete_pattern("session:u1:*")

Layer rule: no imports from api/, auth/, or mail/.
"""

from __future__ import annotations

import fnmatch
import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

import redis

from core.errors import StoreUnavailable

logger = logging.getLogger("authgate.cache")


# ---------------------------------------------------------------------------
# In-process implementation
# ---------------------------------------------------------------------------


@dataclass
class _Entry:
    value: str
    expires_at: float | None  # monotonic seconds; None = no expiry


class MemoryCache:
    """Thread-safe in-memory cache with per-key TTL.

    Expired entries are dropped lazily on access and in bulk by
    purge_expired(). `clock` is a monotonic seconds source (injectable for
    tests).
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._data: dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _live(self, key: str, now: float) -> _Entry | None:
        # Caller holds the lock.
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and now >= entry.expires_at:
            del self._data[key]
            return None
        return entry

    def increment(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None:
                self._data[key] = _Entry("1", now + ttl_seconds)
                return 1
            count = int(entry.value) + 1
            entry.value = str(count)
            return count

    def reset_counter(self, key: str) -> None:
        self.delete(key)

    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        with self._lock:
            expires_at = self._clock() + ttl_seconds if ttl_seconds else None
            self._data[key] = _Entry(value, expires_at)

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._live(key, self._clock())
            return entry.value if entry is not None else None

    def ttl(self, key: str) -> int:
        with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None or entry.expires_at is None:
                return 0
            return max(1, int(entry.expires_at - now + 0.999))

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def pop(self, key: str) -> str | None:
        with self._lock:
            entry = self._live(key, self._clock())
            if entry is None:
                return None
            del self._data[key]
            return entry.value

    def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            doomed = [k for k in self._data if fnmatch.fnmatchcase(k, pattern)]
            for k in doomed:
                del self._data[k]
            return len(doomed)

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._data.items() if e.expires_at is not None and now >= e.expires_at]
            for k in expired:
                del self._data[k]
            return len(expired)

    def ping(self) -> None:
        return None

    def close(self) -> None:
        with self._lock:
            self._data.clear()


# ---------------------------------------------------------------------------
# Redis implementation
# ---------------------------------------------------------------------------


class RedisCache:
    """redis-py backed cache. Every RedisError surfaces as StoreUnavailable.

    increment() runs INCR and a first-increment PEXPIRE in one Lua script, so
    a crash between the two commands can never leave a counter without a TTL.
    """

    _INCREMENT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
return count
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0) -> None:
        self.client = redis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment = self.client.register_script(self._INCREMENT_SCRIPT)

    @contextmanager
    def _guard(self, op: str) -> Iterator[None]:
        try:
            yield
        except redis.RedisError as exc:
            logger.error("Redis %s failed: %s", op, exc)
            raise StoreUnavailable(f"redis {op} failed") from exc

    def increment(self, key: str, ttl_seconds: int) -> int:
        with self._guard("increment"):
            return int(self._increment(keys=[key], args=[int(ttl_seconds * 1000)]))

    def reset_counter(self, key: str) -> None:
        self.delete(key)

    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        with self._guard("set"):
            self.client.set(key, value, ex=ttl_seconds or None)

    def get(self, key: str) -> str | None:
        with self._guard("get"):
            return self.client.get(key)

    def ttl(self, key: str) -> int:
        with self._guard("ttl"):
            remaining = self.client.ttl(key)
        # -2 = missing, -1 = no expiry
        return max(0, remaining)

    def delete(self, key: str) -> bool:
        with self._guard("delete"):
            return self.client.delete(key) > 0

    def pop(self, key: str) -> str | None:
        with self._guard("getdel"):
            return self.client.getdel(key)

    def delete_pattern(self, pattern: str) -> int:
        """SCAN + batched DEL. Not atomic across the whole keyspace; keys
        written after the scan passes them survive."""
        deleted = 0
        with self._guard("delete_pattern"):
            batch: list[str] = []
            for key in self.client.scan_iter(match=pattern, count=500):
                batch.append(key)
                if len(batch) >= 500:
                    deleted += self.client.delete(*batch)
                    batch = []
            if batch:
                deleted += self.client.delete(*batch)
        return deleted

    def purge_expired(self) -> int:
        # Redis expires keys itself.
        return 0

    def ping(self) -> None:
        with self._guard("ping"):
            self.client.ping()

    def close(self) -> None:
        self.client.close()
