"""
api/main.py -- FastAPI application entry point for authkeep.

Exposes SessionService over HTTP. The app owns no auth logic: routes map
requests to service calls, and the exception handlers below map the typed
errors from core.errors to status codes.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- coarse per-IP limit from api.limiter

Lifespan builds the service graph (DataAccess -> CredentialStore ->
TokenService -> SessionService), creates the schema, warms the pool and
starts the retention sweep task. Shutdown cancels the task and disposes the
engine, in that order.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import DatabaseHealth, ErrorDetail, ErrorResponse, HealthResponse, PoolStats
from api.routes.v1.auth import router as auth_router
from auth.session import build_session_service
from core.config import get_settings
from core.errors import (
    AuthenticationError,
    AuthKeepError,
    DataError,
    DuplicateError,
    LockedAccountError,
    RateLimitedError,
    TokenError,
    ValidationError,
)
from db.access import DataAccess

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authkeep.api")

# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI, interval: float) -> None:
    """Purge stale refresh tokens and old security events every `interval` seconds.

    The sweep itself is blocking database work, so it runs in a worker thread
    via asyncio.to_thread and shares the same connection pool as requests.
    A failure is logged and the next iteration tries again: a DataError as an
    error line (the data layer already logged its cause), anything else with
    its traceback.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(app.state.sessions.sweep)
        except DataError:
            logger.error("Retention sweep failed; retrying in %ss", interval)
        except Exception:
            logger.exception("Retention sweep crashed; retrying in %ss", interval)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build, publish and tear down the service graph.

    Startup order matters:
      1. DataAccess first -- everything else runs on its pool.
      2. Schema before warm-up, so the warmed connections see the tables.
      3. Sweep task last -- it references app.state.sessions.
    """
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level)
    logger.info("authkeep API starting up")

    data = DataAccess(settings)
    sessions = build_session_service(settings, data)
    sessions.store.create_schema()
    data.warm()
    app.state.settings = settings
    app.state.data = data
    app.state.sessions = sessions
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app, settings.sweep_interval_seconds))
    logger.info("Session service ready (database=%s)", data.engine.url.get_backend_name())

    yield

    app.state.sweep_task.cancel()
    with suppress(asyncio.CancelledError):
        await app.state.sweep_task
    data.close()
    logger.info("authkeep API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="authkeep API",
    description="Account registration, login, token rotation and revocation.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

_settings = get_settings()

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

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

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])

# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------

# Checked in order; the first matching class wins.
_STATUS_BY_ERROR: tuple[tuple[type[AuthKeepError], int], ...] = (
    (ValidationError, 400),
    (AuthenticationError, 401),
    (TokenError, 401),
    (DuplicateError, 409),
    (LockedAccountError, 423),
    (RateLimitedError, 429),
    (DataError, 503),
)


def _status_for(exc: AuthKeepError) -> int:
    for cls, status in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return status
    return 400


def _error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthKeepError)
async def authkeep_error_handler(request: Request, exc: AuthKeepError) -> JSONResponse:
    """Map a typed domain or data error to its status code.

    Only the error's public code and message are returned. For DataError the
    underlying cause was already logged by the data layer.
    """
    status_code = _status_for(exc)
    detail = exc.field if isinstance(exc, ValidationError) else None
    response = _error_response(status_code, exc.code, exc.message, detail)

    if isinstance(exc, (LockedAccountError, RateLimitedError)) and exc.retry_after > 0:
        response.headers["Retry-After"] = str(exc.retry_after)
    if status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    if isinstance(exc, DataError):
        logger.warning("Data layer unavailable on %s %s", request.method, request.url.path)
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when the coarse API limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.", str(exc.detail))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 when the request body has the wrong shape.

    Only field locations and messages are echoed, never the submitted values
    (they may be passwords).
    """
    fields = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', '')}" for err in exc.errors()
    )
    return _error_response(422, "validation_error", "Request validation failed.", fields)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. Exempt from the API limit --
# health checks from load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
@limiter.exempt
def health(request: Request) -> HealthResponse:
    """Return liveness plus data-access counters and pool occupancy."""
    data: DataAccess = request.app.state.data
    reachable = data.ping()
    stats = data.health()
    database = DatabaseHealth(
        status=stats["status"],
        reachable=reachable,
        total_queries=stats["total_queries"],
        error_count=stats["error_count"],
        retry_count=stats["retry_count"],
        pool=PoolStats(**{k: v for k, v in stats["pool"].items() if k != "class"}),
    )
    status = "ok" if reachable and stats["status"] == "ok" else "degraded"
    return HealthResponse(status=status, version=VERSION, database=database)
