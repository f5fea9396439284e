"""
api/main.py -- FastAPI application entry point for chatgate.

Serves the refresh-token rotation endpoints and the real-time presence
channel of the chat backend.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. ProxyHeadersMiddleware -- only with TRUST_PROXY=true; rewrites
                               request.client from X-Forwarded-For
  2. TrustedHostMiddleware  -- rejects requests with unexpected Host headers
  3. CORSMiddleware         -- credentialed CORS for FRONTEND_URL
  4. SlowAPIMiddleware      -- enforces per-route rate limits from api.limiter

Lifespan handles startup (session store, session manager, presence registry
and broadcaster, purge task) and shutdown (cancel purge task, close channels,
close DB connection) symmetrically.
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
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.presence import router as presence_router
from api.routes.v1.sessions import router as sessions_router
from auth.errors import SessionError
from auth.sessions import SessionManager
from auth.store import SessionStore
from core.config import Settings, get_settings
from presence.broadcaster import PresenceBroadcaster
from presence.registry import PresenceRegistry

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("chatgate.api")

_settings = get_settings()

_VERSION = "0.1.0"


def install_proxy_headers(target: FastAPI, settings: Settings) -> None:
    """Mount ProxyHeadersMiddleware when TRUST_PROXY is set.

    Only peers listed in TRUSTED_PROXIES may supply X-Forwarded-For, and
    request.client.host becomes the rightmost hop that is not one of them.
    Session fingerprints and rate-limit keys both read that address.
    """
    if settings.trust_proxy:
        target.add_middleware(ProxyHeadersMiddleware, trusted_hosts=settings.trusted_proxies)


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval: int) -> None:
    """Delete expired refresh tokens every `interval` seconds.

    Tokens that are never rotated or logged out would otherwise stay in the
    table forever. The store call is blocking, so it runs in a worker thread.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval)
        removed = await asyncio.to_thread(app.state.session_store.purge_expired)
        if removed:
            logger.info("Purged %d expired refresh tokens", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Session store first -- the manager and the purge task use it.
      2. Presence registry before the broadcaster, which subscribes to it.
      3. Purge task last.
    """
    logger.info("chatgate starting up")
    app.state.session_store = SessionStore(_settings.database_url, timeout=_settings.store_timeout_seconds)
    app.state.sessions = SessionManager.from_settings(app.state.session_store, _settings)
    logger.info(
        "Sessions initialized (access TTL %ds, refresh TTL %ds)",
        _settings.access_token_ttl_seconds,
        _settings.refresh_token_ttl_seconds,
    )
    app.state.presence = PresenceRegistry()
    app.state.broadcaster = PresenceBroadcaster(app.state.presence)
    logger.info("Presence initialized")
    app.state.purge_task = None
    if _settings.session_purge_interval_seconds > 0:
        app.state.purge_task = asyncio.create_task(_purge_loop(app, _settings.session_purge_interval_seconds))

    yield

    # Shutdown
    if app.state.purge_task is not None:
        app.state.purge_task.cancel()
    app.state.broadcaster.close()
    app.state.presence.clear()
    app.state.session_store.close()
    logger.info("chatgate shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="chatgate",
    description="Refresh-token rotation and online presence for the chat backend.",
    version=_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the current stack, so the LAST middleware added is
# the OUTERMOST. Registered innermost-first: SlowAPI -> CORS -> TrustedHost
# -> ProxyHeaders.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[_settings.frontend_url],
    allow_credentials=True,  # cookies carry both credentials
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

install_proxy_headers(app, _settings)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
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

app.include_router(sessions_router, tags=["Sessions"])
app.include_router(presence_router, tags=["Presence"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(SessionError)
async def session_error_handler(request: Request, exc: SessionError) -> JSONResponse:
    """Return exc.status_code: 401 for every rotation failure, 503 for StoreUnavailable.

    The message distinguishes "No refresh token", "Invalid or expired refresh
    token" and "Suspicious login detected. Please login again." so the client
    can decide whether to show a security notice before the login page.
    """
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
    )
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and session store reachability."""
    database = "ok" if request.app.state.session_store.ping() else "error"
    return HealthResponse(version=_VERSION, components={"app": "ok", "database": database})
