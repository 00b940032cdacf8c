"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and the route
modules (to apply per-route limits with @limiter.limit()).

slowapi covers the per-route limits on endpoints that send email
(forgot-password, resend-verification). The general per-IP throttle and the
per-email login throttle live in auth/limiter.py, because the login limit is
keyed by the submitted email and must be reset by AuthService on success.

A single shared instance ensures all routes share the same counter store.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=get_settings().redis_url or "memory://",
    enabled=get_settings().enable_rate_limiting,
)
