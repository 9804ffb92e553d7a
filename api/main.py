"""
api/main.py -- FastAPI application entry point for authcore.

Exposes the authentication core over HTTP: login (password or one-time code),
logout, session introspection, password change, and the permission / audit
administration screens.

Run with:  uvicorn asgi:app --reload
           python main.py serve

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (settings, database, facade, reaper task) and
shutdown (cancel reaper task, close DB engine) symmetrically.
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

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from auth.database import Database
from auth.errors import StorageUnavailable
from auth.facade import build_auth_facade
from auth.models import IssuedOtp
from core.config import get_settings

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authcore.api")

# ---------------------------------------------------------------------------
# OTP delivery
# ---------------------------------------------------------------------------


def log_only_otp_sender(identifier: str, issued: IssuedOtp) -> None:
    """Default sender used until a real mail/SMS transport is wired in. Never logs the code."""
    logger.warning("No OTP sender configured; code for a login request was not delivered")


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Remove expired sessions and old OTP tokens every PURGE_INTERVAL_SECONDS.

    Expiry is enforced at validation time, so this loop only reclaims space.
    A failed pass is logged and retried on the next tick. CancelledError from
    task.cancel() during shutdown propagates out of asyncio.sleep and unwinds
    the coroutine cleanly.
    """
    settings = app.state.settings
    while True:
        await asyncio.sleep(settings.purge_interval_seconds)
        try:
            await asyncio.to_thread(app.state.auth.purge_expired, settings.otp_retention_seconds)
        except StorageUnavailable:
            logger.warning("Purge pass skipped: storage unavailable")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Settings first -- fails fast on a missing SECRET_KEY in production.
      2. Database second -- creates the schema if needed.
      3. Facade third -- every component shares the one Database.
      4. Purge task last -- references app.state.auth.
    """
    logger.info("authcore API starting up")
    settings = get_settings()
    app.state.settings = settings
    app.state.db = Database(settings.database_url, timeout=settings.storage_timeout_seconds)
    app.state.auth = build_auth_facade(settings, database=app.state.db)
    if not hasattr(app.state, "otp_sender"):
        app.state.otp_sender = log_only_otp_sender
    logger.info(
        "Auth core initialized (session TTL %ds, OTP TTL %ds)",
        settings.session_ttl_seconds,
        settings.otp_ttl_seconds,
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.db.close()
    logger.info("authcore API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="authcore API",
    description="Authentication, sessions, role permissions and audit trail.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
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
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every error leaves the API in the ErrorResponse envelope
# ({"error": {"code", "message", "detail"}}), whichever layer raised it.
# 401s carry WWW-Authenticate so Bearer clients know to re-authenticate.
# ---------------------------------------------------------------------------


def _error(
    status_code: int,
    code: str,
    message: str,
    detail: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    response = JSONResponse(status_code=status_code, content=body.model_dump())
    if status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    if status_code in (401, 403):
        response.headers["Cache-Control"] = "no-store"  # [M5]
    for name, value in (headers or {}).items():
        response.headers[name] = value
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 for login / OTP floods [H2]. The limit string goes in detail."""
    logger.warning("Rate limit hit on %s from %s", request.url.path, request.client.host if request.client else "?")
    retry_after = int(getattr(exc, "retry_after", 60))
    return _error(
        429,
        "rate_limited",
        "Too many attempts. Try again later.",
        str(exc.detail),
        headers={"Retry-After": str(retry_after)},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Routes and auth dependencies raise HTTPException(detail={"code", "message"}).

    A plain-string detail (framework 404/405) gets an http_<status> code.
    """
    if isinstance(exc.detail, dict):
        return _error(
            exc.status_code,
            str(exc.detail.get("code", f"http_{exc.status_code}")),
            str(exc.detail.get("message", "")),
            headers=exc.headers,
        )
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail), headers=exc.headers)


@app.exception_handler(StorageUnavailable)
async def storage_unavailable_handler(request: Request, exc: StorageUnavailable) -> JSONResponse:
    """503 when the database failed or timed out outside a fail-closed check."""
    logger.error("Storage unavailable on %s %s", request.method, request.url.path)
    return _error(503, "storage_unavailable", "Service temporarily unavailable. Try again shortly.")


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all. The exception (which may quote identifiers or SQL) is logged, never returned."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    db_ok = request.app.state.db.ping()
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=__version__,
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )
