"""
api/wiring.py -- Composition root: builds AuthService and its collaborators.

api/ is the only layer allowed to know every concrete class, so the object
graph is assembled here and handed to the app via app.state in the lifespan.
Tests call build_auth_service() with their own store, cache and clock.

Backend selection:
  REDIS_URL set   -> RedisCache sessions + CacheRateLimiter (shared by workers)
  REDIS_URL empty -> MemoryCache sessions + MemoryRateLimiter (one process)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from auth.limiter import CacheRateLimiter, MemoryRateLimiter
from auth.lockout import LockoutEngine
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import TokenCodec
from cache.store import MemoryCache, RedisCache
from core.clock import Clock, utcnow
from core.config import Settings
from mail.service import EmailService

logger = logging.getLogger("authgate.api")


@dataclass
class Services:
    auth: AuthService
    store: UserStore
    cache: MemoryCache | RedisCache
    limiter: MemoryRateLimiter | CacheRateLimiter


def build_cache(settings: Settings) -> MemoryCache | RedisCache:
    if settings.redis_url:
        logger.info("Using Redis for sessions and rate limits")
        return RedisCache(settings.redis_url, socket_timeout=settings.redis_socket_timeout)
    logger.info("REDIS_URL not set -- using in-process session cache and rate limiter")
    return MemoryCache()


def build_limiter(cache) -> MemoryRateLimiter | CacheRateLimiter:
    if isinstance(cache, MemoryCache):
        return MemoryRateLimiter()
    return CacheRateLimiter(cache)


def build_auth_service(
    settings: Settings,
    store: UserStore | None = None,
    cache=None,
    *,
    limiter=None,
    notifier=None,
    geoip=None,
    clock: Clock = utcnow,
) -> Services:
    """Assemble the full service graph. Anything not passed in is built from settings."""
    store = store if store is not None else UserStore(settings.database_url, clock=clock)
    cache = cache if cache is not None else build_cache(settings)
    limiter = limiter if limiter is not None else build_limiter(cache)
    notifier = notifier if notifier is not None else EmailService.from_settings(settings)

    codec = TokenCodec(
        settings.auth_private_key,
        settings.auth_public_key,
        algorithm=settings.token_algorithm,
        clock=clock,
    )
    lockout = LockoutEngine(
        store,
        notifier,
        max_login_attempts=settings.max_login_attempts,
        lock_duration=timedelta(seconds=settings.account_lock_duration_seconds),
        lockout_window=timedelta(seconds=settings.lockout_window_seconds),
        geoip=geoip,
        clock=clock,
        login_notifications=settings.enable_login_notifications,
        suspicious_activity_detection=settings.enable_suspicious_activity_detection,
    )
    service = AuthService(store, cache, codec, limiter, lockout, notifier, settings, clock=clock)
    return Services(auth=service, store=store, cache=cache, limiter=limiter)
