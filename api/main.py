"""
api/main.py -- FastAPI application entry point for accountd.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the database handle, the two engines and the access gate
from Settings, parks them on app.state, and disposes the engine on shutdown.
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

from account.dependencies import SESSION_HEADER, AccessGate
from account.engine import AuthenticationEngine
from account.errors import AccountError, FieldError, ValidationError
from account.password_reset import PasswordResetEngine
from account.store import AccountDatabase
from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse, ValidationErrorDetail
from api.routes.v1.account import router as account_router
from core.config import get_settings
from core.logging_config import configure_logging

_VERSION = "0.1.0"

logger = logging.getLogger("accountd.api")

_settings = get_settings()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build shared resources on startup and release them on shutdown."""
    configure_logging(_settings.log_level)
    logger.info("accountd API starting up")
    db = AccountDatabase(_settings.database_url)
    config = _settings.account_config()
    app.state.db = db
    app.state.auth_engine = AuthenticationEngine(db, config)
    app.state.reset_engine = PasswordResetEngine(db, config)
    app.state.access_gate = AccessGate(db)
    logger.info("Account store initialized")

    yield

    db.close()
    logger.info("accountd API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="accountd API",
    description="Account registration, sessions, role-gated access and OTP password reset.",
    version=_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", SESSION_HEADER],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
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


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(account_router)


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(exc: AccountError) -> JSONResponse:
    validation_errors = getattr(exc, "validation_errors", None)
    detail = ErrorDetail(
        code=exc.code,
        message=exc.message,
        # Internal detail is only for non-production eyes.
        debug_description=exc.debug_description if _settings.debug else None,
        validation_errors=(
            [ValidationErrorDetail.from_field_error(e) for e in validation_errors] if validation_errors else None
        ),
    )
    return JSONResponse(status_code=exc.status_code, content=ErrorResponse(error=detail).render())


@app.exception_handler(AccountError)
async def account_error_handler(request: Request, exc: AccountError) -> JSONResponse:
    """Render any domain error with its own status code and stable code."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.debug_description)
    return _error_response(exc)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render body/query schema failures as GBL0003 with per-field messages."""
    by_field: dict[str, list[str]] = {}
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query")]
        by_field.setdefault(".".join(loc) or "body", []).append(err.get("msg", "Invalid value."))
    return _error_response(ValidationError([FieldError(prop, msgs) for prop, msgs in by_field.items()]))


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    detail = ErrorDetail(
        code="rate_limited",
        message="Too many requests.",
        debug_description=str(exc.detail) if _settings.debug else None,
    )
    response = JSONResponse(status_code=429, content=ErrorResponse(error=detail).render())
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail))).render(),
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
            error=ErrorDetail(code="GBL9999", message="An unknown error has occured.")
        ).render(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and a database round-trip check."""
    db: AccountDatabase = request.app.state.db
    database = "ok" if db.ping() else "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=_VERSION,
        components={"app": "ok", "database": database},
    )
