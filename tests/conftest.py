"""
tests/conftest.py -- Shared test fixtures for AuthGate unit and integration tests.

This module provides:
  - FakeClock / clock: an advanceable UTC clock so expiry and lock windows
    can be tested without sleeping
  - MapGeoIP: a GeoIP lookup that resolves each test IP to its own city
  - store, cache, notifier, settings: the collaborators AuthService needs
  - services / service: a fully wired service graph on those collaborators
  - api_client: TestClient on the real app with a patched lifespan

Design: the API fixture uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs sync route handlers in a thread pool, and
plain :memory: databases are per-connection. Unit fixtures stay on one
thread and can use plain :memory:.

DEBUG and EMAIL_RATE_LIMIT must be set before any application import:
get_settings() runs at import time in api/main.py and api/routes, and the
slowapi limit string is read when the route module is imported.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

# CRITICAL: set before any auth/core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("EMAIL_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from api.wiring import build_auth_service
from auth.lockout import Location
from auth.models import TokenType, User
from auth.store import UserStore
from auth.tokens import hash_password
from cache.store import MemoryCache
from core.config import Settings

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "admin-pass-123"


class FakeClock:
    """Callable UTC clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class MapGeoIP:
    """GeoIP stub mapping IPs to cities."""

    def __init__(self, cities: dict[str, str]) -> None:
        self.cities = cities

    def get_location(self, ip: str) -> Location:
        return Location(country="Testland", city=self.cities.get(ip, "Elsewhere"))


def make_settings(**overrides) -> Settings:
    """Test settings: throttles high enough that lockout tests are not rate limited."""
    values = {
        "debug": True,
        "global_rate_limit": 10_000,
        "auth_rate_limit": 100,
        "enable_login_notifications": True,
    }
    values.update(overrides)
    return Settings(**values)


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> Generator[UserStore, None, None]:
    s = UserStore("sqlite:///:memory:", clock=clock)
    yield s
    s.close()


@pytest.fixture
def cache() -> MemoryCache:
    return MemoryCache()


@pytest.fixture
def notifier() -> MagicMock:
    return MagicMock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def services(settings, store, cache, notifier, clock):
    return build_auth_service(settings, store, cache, notifier=notifier, clock=clock)


@pytest.fixture
def service(services):
    return services.auth


@pytest.fixture
def registered(service):
    """A registered password user: (user, password)."""
    password = "correct-horse-1"
    user = service.register("alice@example.com", password, "Alice")
    return user, password


# ---------------------------------------------------------------------------
# API fixture
# ---------------------------------------------------------------------------


def _patch_lifespan(services, settings: Settings):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built service graph into app.state so routes hit isolated
    stores. The OAuth registry is mocked to prevent network calls.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.auth_service = services.auth
        app.state.user_store = services.store
        app.state.cache = services.cache
        app.state.rate_limiter = services.limiter
        app.state.oauth = MagicMock()
        app.state.maintenance_tasks = [asyncio.create_task(asyncio.sleep(99999))]
        yield
        for task in app.state.maintenance_tasks:
            task.cancel()

    return test_lifespan


@pytest.fixture
def api_client() -> Generator[tuple[TestClient, str, object], None, None]:
    """Yield (client, admin_token, services) for API integration tests.

    Each test gets its own database, cache and notifier mock. The admin
    user is created directly in the store and its access token is issued
    with the same codec the app verifies with.
    """
    settings = make_settings()
    store = UserStore(f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")
    services = build_auth_service(settings, store, MemoryCache(), notifier=MagicMock())

    admin = store.create_user(
        User(
            email=ADMIN_EMAIL,
            full_name="Admin",
            hashed_password=hash_password(ADMIN_PASSWORD),
            email_verified=True,
            role="admin",
        )
    )
    token = services.auth.codec.issue(admin.id, TokenType.access, timedelta(hours=1))

    app.router.lifespan_context = _patch_lifespan(services, settings)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, services

    store.close()