"""
api/main.py -- FastAPI application entry point for AuthGate.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. log_requests          -- method, path, status, latency, client
  2. throttle_requests     -- general per-IP fixed-window throttle
  3. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  4. CORSMiddleware        -- adds CORS headers for allowed browser origins
  5. SlowAPIMiddleware     -- enforces per-route limits from api.limiter
  6. SessionMiddleware     -- OAuth state round-trip (authlib)

Lifespan builds the service graph (api/wiring.py), starts the background
maintenance loop for in-process state, and tears everything down on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded as SlowAPIRateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.concurrency import run_in_threadpool
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter as route_limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from api.wiring import build_auth_service
from auth.limiter import MemoryRateLimiter
from auth.oauth import build_oauth
from cache.store import MemoryCache
from core.config import get_settings
from core.errors import AuthError, RateLimitExceeded, StoreUnavailable

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authgate.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Background maintenance
# ---------------------------------------------------------------------------


async def _purge_loop(cache: MemoryCache, interval_seconds: float) -> None:
    """Drop expired in-process cache entries every interval until cancelled.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        removed = cache.purge_expired()
        if removed:
            logger.debug("Purged %d expired cache entries", removed)


def start_maintenance(app: FastAPI) -> list[asyncio.Task]:
    """Start cleanup loops for whichever in-process stores are in use."""
    tasks: list[asyncio.Task] = []
    limiter = app.state.rate_limiter
    if isinstance(limiter, MemoryRateLimiter):
        tasks.append(asyncio.create_task(limiter.run_cleanup_loop(settings.global_rate_window_seconds)))
    cache = app.state.cache
    if isinstance(cache, MemoryCache):
        tasks.append(asyncio.create_task(_purge_loop(cache, 10 * 60)))
    return tasks


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the service graph on startup; cancel loops and close stores on shutdown."""
    logger.info("AuthGate API starting up")
    services = build_auth_service(settings)
    app.state.settings = settings
    app.state.auth_service = services.auth
    app.state.user_store = services.store
    app.state.cache = services.cache
    app.state.rate_limiter = services.limiter
    app.state.oauth = build_oauth(settings)
    app.state.maintenance_tasks = start_maintenance(app)
    logger.info("Auth initialized (cache=%s)", type(services.cache).__name__)

    yield

    for task in app.state.maintenance_tasks:
        task.cancel()
    services.cache.close()
    services.store.close()
    logger.info("AuthGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AuthGate API",
    description="Email/password and OAuth authentication with refresh sessions, rate limiting and account lockout.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the existing stack, so the LAST one added is the
# outermost. Register innermost first: Session -> SlowAPI -> CORS -> TrustedHost.
# ---------------------------------------------------------------------------

# authlib stores the OAuth state value in the session between the
# authorization redirect and the callback.
app.add_middleware(SessionMiddleware, secret_key=settings.session_secret_key, https_only=not settings.debug)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = route_limiter


# ---------------------------------------------------------------------------
# General throttle
#
# Keyed by client IP. The health endpoint is exempt so load balancers and
# monitors are never throttled. A counter-store outage fails open here; the
# login path keeps its own limiter and lockout.
# Counter calls run in the threadpool; RedisCache is a blocking client.
# ---------------------------------------------------------------------------

_THROTTLE_EXEMPT = ("/api/v1/health",)


def _rate_limited_response(retry_after: int) -> JSONResponse:
    resp = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(code=RateLimitExceeded.code, message=RateLimitExceeded.public_message)
        ).model_dump(),
    )
    resp.headers["Retry-After"] = str(max(1, retry_after))
    return resp


@app.middleware("http")
async def throttle_requests(request: Request, call_next):
    limiter = getattr(request.app.state, "rate_limiter", None)
    cfg = getattr(request.app.state, "settings", settings)
    if limiter is None or not cfg.enable_rate_limiting or request.url.path in _THROTTLE_EXEMPT:
        return await call_next(request)

    key = f"ip:{request.client.host if request.client else 'unknown'}"
    try:
        allowed = await run_in_threadpool(
            limiter.check_and_increment, key, cfg.global_rate_limit, cfg.global_rate_window_seconds
        )
    except StoreUnavailable:
        logger.warning("Rate limiter store unavailable; allowing %s", key, exc_info=True)
        return await call_next(request)
    if not allowed:
        logger.warning("Global rate limit exceeded for %s on %s", key, request.url.path)
        retry_after = await run_in_threadpool(limiter.retry_after, key)
        return _rate_limited_response(retry_after or cfg.global_rate_window_seconds)
    return await call_next(request)


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Registered last, so it is the outermost layer and also times throttled
# responses.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every error leaves as {"error": {"code", "message", "detail"}}. Domain
# errors contribute only their public code and message.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render any domain error with its public code and message only.

    str(exc) carries internal detail (user ids, token ids, which check
    failed) and goes to the log, never to the client.
    """
    level = logging.WARNING if exc.status_code >= 500 or exc.status_code == 423 else logging.INFO
    logger.log(level, "%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.public_message)).model_dump(),
    )
    if isinstance(exc, RateLimitExceeded):
        response.headers["Retry-After"] = str(max(1, exc.retry_after))
    if exc.status_code in (401, 423):
        response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(SlowAPIRateLimitExceeded)
async def route_rate_limit_handler(request: Request, exc: SlowAPIRateLimitExceeded) -> JSONResponse:
    """429 for slowapi per-route limits, in the same envelope as the core limiter."""
    return _rate_limited_response(int(getattr(exc, "retry_after", 60)))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """422 for malformed bodies and query params (weak passwords, bad emails)."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str([{"loc": e.get("loc"), "msg": e.get("msg")} for e in exc.errors()]),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Envelope for HTTPException. A dict detail (require_admin) is passed through as-is."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail))).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors. The traceback goes to the log only."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(error=ErrorDetail(code="internal_error", message="An unexpected error occurred.")).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Lives on the app itself, outside the versioned routers, and is exempt from
# the general throttle.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness plus the reachability of the database and the cache."""
    components = {"app": "ok"}
    for name, component in (("database", request.app.state.user_store), ("cache", request.app.state.cache)):
        try:
            component.ping()
            components[name] = "ok"
        except Exception:
            logger.warning("Health check: %s unreachable", name, exc_info=True)
            components[name] = "error"
    status = "healthy" if all(v == "ok" for v in components.values()) else "degraded"
    return HealthResponse(status=status, version=VERSION, components=components)
