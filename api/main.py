"""
api/main.py -- FastAPI application entry point for the Portfolio auth service.

Run with:      python main.py serve
               uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware        -- adds CORS headers for allowed browser origins
  2. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (settings, store, auth components) and shutdown
(close DB connection) symmetrically. Everything a route needs hangs off
app.state: settings, auth_store, token_issuer, auth_service.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import Envelope, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.results import ErrorCode, StoreError
from auth.service import AuthOrchestrator
from auth.store import SqlAuthStore
from core.config import get_settings

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("portfolio_auth.api")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Settings first -- raises on a missing SECRET_KEY outside debug mode,
         before anything touches the database.
      2. Store second -- creates tables on first run.
      3. Orchestrator last -- builds every auth component from settings.
    """
    settings = get_settings()
    logger.info("Portfolio auth API starting up (debug=%s)", settings.debug)
    store = SqlAuthStore(settings.database_url)
    service = AuthOrchestrator(settings, store)
    app.state.settings = settings
    app.state.auth_store = store
    app.state.auth_service = service
    app.state.token_issuer = service.tokens
    logger.info("Auth initialized")

    yield

    store.close()
    logger.info("Portfolio auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Portfolio Auth API",
    description="Account registration, password login, TOTP two-factor authentication and token refresh.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() calls are applied outermost-first from the caller's
# perspective. Register in the order you want the request to encounter them:
# CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching any route
# handler. Wall-clock time before and after call_next gives the latency.
# Paths are logged, query strings are not: confirm-email carries its token there.
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
# All handlers return the same envelope so API clients can parse errors
# uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, message: str, code: int | None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=Envelope.failure(message, code).to_json())


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 when a per-IP rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    internalCode stays null: 4029 is reserved for account lockout.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "Too many requests.", None)
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 / 4000 when the request body or query params fail validation."""
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"Invalid request: {location} {first.get('msg', '')}".strip() if location else "Invalid request."
    return _error(400, message, int(ErrorCode.VALIDATION))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return the envelope for all FastAPI/Starlette HTTP exceptions.

    Dependencies raise HTTPException with detail={"message", "internalCode"}.
    Plain string details (404 for unknown routes, 405, ...) get a null code.
    """
    if isinstance(exc.detail, dict):
        response = _error(exc.status_code, exc.detail.get("message", ""), exc.detail.get("internalCode"))
    else:
        response = _error(exc.status_code, str(exc.detail), None)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    """Storage failures outside the orchestrator (e.g. the auth dependency lookup)."""
    logger.exception("Storage failure on %s %s", request.method, request.url.path)
    return _error(500, "An internal error occurred.", int(ErrorCode.INTERNAL))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "An unexpected error occurred.", int(ErrorCode.INTERNAL))


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Return API liveness, version and database reachability."""
    try:
        database = "ok" if request.app.state.auth_store.ping() else "error"
    except StoreError:
        logger.warning("Health check: database unreachable")
        database = "error"
    status = "healthy" if database == "ok" else "degraded"
    body = HealthResponse(status=status, version=VERSION, components={"app": "ok", "database": database})
    return JSONResponse(status_code=200, content=Envelope.success(body).to_json())
