"""Unit tests for cache/store.py -- MemoryCache and RedisCache error mapping.

Covers:
- set/get/ttl with expiry on an injected monotonic clock
- pop() returns the value once
- increment() sets the TTL on the first call only
- delete_pattern() only touches matching keys
- purge_expired() removes expired entries
- RedisCache maps redis errors to StoreUnavailable
"""

from unittest.mock import MagicMock, patch

import pytest
import redis

from cache.store import MemoryCache, RedisCache
from core.errors import StoreUnavailable


class Ticker:
    def __init__(self) -> None:
        self.t = 0.0

    def __call__(self) -> float:
        return self.t


@pytest.fixture
def ticker():
    return Ticker()


@pytest.fixture
def cache(ticker):
    return MemoryCache(clock=ticker)


def test_set_get_and_expiry(cache, ticker):
    cache.set("session:u1:abc", "u1", ttl_seconds=30)
    assert cache.get("session:u1:abc") == "u1"
    assert cache.ttl("session:u1:abc") == 30
    ticker.t += 30
    assert cache.get("session:u1:abc") is None
    assert cache.ttl("session:u1:abc") == 0


def test_set_without_ttl_never_expires(cache, ticker):
    cache.set("k", "v")
    ticker.t += 10**6
    assert cache.get("k") == "v"
    assert cache.ttl("k") == 0


def test_pop_is_single_use(cache):
    cache.set("k", "v", ttl_seconds=60)
    assert cache.pop("k") == "v"
    assert cache.pop("k") is None
    assert cache.get("k") is None


def test_increment_ttl_set_on_first_call_only(cache, ticker):
    assert cache.increment("ratelimit:k", 60) == 1
    ticker.t += 50
    assert cache.increment("ratelimit:k", 60) == 2
    # Second increment did not extend the window.
    ticker.t += 11
    assert cache.increment("ratelimit:k", 60) == 1


def test_delete_pattern_matches_only_prefix(cache):
    cache.set("session:u1:a", "u1", ttl_seconds=60)
    cache.set("session:u1:b", "u1", ttl_seconds=60)
    cache.set("session:u10:a", "u10", ttl_seconds=60)
    cache.set("session:u2:a", "u2", ttl_seconds=60)
    assert cache.delete_pattern("session:u1:*") == 2
    assert cache.get("session:u10:a") == "u10"
    assert cache.get("session:u2:a") == "u2"


def test_delete_reports_presence(cache):
    cache.set("k", "v")
    assert cache.delete("k") is True
    assert cache.delete("k") is False


def test_purge_expired(cache, ticker):
    cache.set("old", "1", ttl_seconds=5)
    cache.set("new", "1", ttl_seconds=500)
    cache.set("forever", "1")
    ticker.t += 6
    assert cache.purge_expired() == 1
    assert cache.get("new") == "1"
    assert cache.get("forever") == "1"


# ---------------------------------------------------------------------------
# RedisCache -- error mapping only; no server needed
# ---------------------------------------------------------------------------


@pytest.fixture
def redis_cache():
    client = MagicMock()
    with patch("cache.store.redis.Redis.from_url", return_value=client):
        rc = RedisCache("redis://localhost:6379/0")
    return rc, client


def test_redis_error_becomes_store_unavailable(redis_cache):
    rc, client = redis_cache
    client.get.side_effect = redis.ConnectionError("down")
    with pytest.raises(StoreUnavailable):
        rc.get("k")


def test_redis_pop_uses_getdel(redis_cache):
    rc, client = redis_cache
    client.getdel.return_value = "u1"
    assert rc.pop("session:u1:abc") == "u1"
    client.getdel.assert_called_once_with("session:u1:abc")


def test_redis_ttl_clamps_missing_keys(redis_cache):
    rc, client = redis_cache
    client.ttl.return_value = -2
    assert rc.ttl("missing") == 0


def test_redis_increment_runs_script_with_millisecond_ttl(redis_cache):
    rc, client = redis_cache
    client.register_script.return_value.return_value = 3
    assert rc.increment("ratelimit:k", 60) == 3
    rc._increment.assert_called_once_with(keys=["ratelimit:k"], args=[60000])
