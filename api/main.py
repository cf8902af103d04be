"""
api/main.py -- FastAPI application for AuthFlow.

Run with:      uvicorn asgi:app --reload

Request path through the middleware stack (first to last):
  1. TrustedHostMiddleware -- Host header must match ALLOWED_HOSTS
  2. CORSMiddleware        -- answers OPTIONS preflight, adds CORS headers
  3. SlowAPIMiddleware     -- per-route limits declared with api.limiter
  4. SessionMiddleware     -- authlib keeps its OAuth state value here

Resources:
  The lifespan owns the ConnectionManager. It is built on startup, wrapped by
  UserStore and AuthService, published on app.state, and disposed on
  shutdown. Importing this module opens no database connection.

Error envelope:
  Every non-2xx body is {"error": {"code", "message", "detail"}}, rendered by
  api.models.error_response. Database failures of any kind become a generic
  500; the cause goes to the log only.
"""

from __future__ import annotations

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
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import HealthResponse, error_response
from api.routes.auth import router as auth_router
from api.routes.oauth import router as oauth_router
from auth.oauth import oauth as oauth_client
from auth.service import AuthService
from auth.store import UserStore
from core.config import get_settings
from db.connection import ConnectionManager
from db.errors import DatabaseError

APP_VERSION = "0.1.0"

_INTERNAL_ERROR_MESSAGE = "An unexpected error occurred."

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authflow.api")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the database stack on startup and drain the pool on shutdown.

    UserStore creates the schema through the manager, so the manager comes
    first and the service, which wraps the store, comes last.
    """
    logger.info("AuthFlow API starting (production=%s)", settings.production)
    db = ConnectionManager.from_settings(settings)
    app.state.db = db
    app.state.user_store = UserStore(db)
    app.state.auth_service = AuthService(app.state.user_store)
    app.state.oauth = oauth_client
    logger.info("Database pool ready (pool_size=%d, max_retries=%d)", settings.db_pool_size, settings.db_max_retries)

    yield

    db.dispose()
    logger.info("AuthFlow API stopped")


app = FastAPI(
    title="AuthFlow API",
    description="User registration, login and token issuance.",
    version=APP_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware
#
# The last add_middleware() call becomes the outermost layer, so layers are
# registered from the inside out.
# ---------------------------------------------------------------------------

app.add_middleware(SessionMiddleware, secret_key=settings.secret_key, https_only=settings.production)
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)
app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

# SlowAPIMiddleware finds the limiter on app.state.
app.state.limiter = limiter


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


app.include_router(auth_router, tags=["Auth"])
app.include_router(oauth_router, tags=["OAuth"])


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 with Retry-After set to the exceeded limit's window (60 for "10/minute")."""
    response = error_response(429, "rate_limited", "Too many requests.", detail=str(exc.detail))
    response.headers["Retry-After"] = str(exc.limit.limit.get_expiry())
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report a malformed body (bad JSON, wrong types, oversize strings) as 400.

    Missing and empty fields never land here; the request models accept
    them and AuthService reports them by name.
    """
    errors = exc.errors()
    field = ".".join(str(part) for part in errors[0]["loc"][1:]) if errors else ""
    return error_response(400, "validation_error", "Request validation failed.", detail=field or None)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Wrap HTTPException in the envelope. A dict detail is used as the error body as-is."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(DatabaseError)
async def database_error_handler(request: Request, exc: DatabaseError) -> JSONResponse:
    """Exhausted retries and permanent database errors become a generic 500."""
    logger.error("Database failure on %s %s: %r", request.method, request.url.path, exc, exc_info=exc)
    return error_response(500, "internal_error", _INTERNAL_ERROR_MESSAGE)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return error_response(500, "internal_error", _INTERNAL_ERROR_MESSAGE)


# ---------------------------------------------------------------------------
# Health
#
# Lives on the app, not a router, and carries no rate limit so load balancer
# probes are never throttled.
# ---------------------------------------------------------------------------


@app.get("/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Liveness, version and database reachability. Always 200; status says "degraded" if SELECT 1 fails."""
    db_ok = request.app.state.db.check()
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=APP_VERSION,
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )
