"""
api/main.py -- FastAPI application entry point for authcore.

Thin transport adapter over the auth core: maps HTTP requests onto
AuthService / PasswordService calls and the core's error kinds onto status
codes. No authentication logic lives here.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the store, codec, ledgers and services once from Settings
and tears them down symmetrically. The expired-token purge task is optional
housekeeping; correctness never depends on it because every expiry is
checked lazily at use.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.errors import auth_error_response, error_response
from api.limiter import limiter
from api.models import HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from auth.email import EmailSender, build_email_sender
from auth.errors import AuthError
from auth.ledgers import PasswordResetLedger, RefreshTokenLedger
from auth.lockout import LockoutConfig, LockoutPolicy
from auth.service import AuthService, PasswordService
from auth.store import CredentialStore, SqlCredentialStore
from auth.tokens import TokenCodec, TokenConfig
from core.config import Settings, get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authcore.api")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_services(
    app: FastAPI,
    settings: Settings,
    store: CredentialStore,
    email_sender: EmailSender,
    clock: Callable[[], datetime] = _utcnow,
) -> None:
    """Build every auth component from Settings and attach it to app.state.

    Settings are read here and nowhere else: each component receives its own
    immutable config value, so nothing in auth/ reaches for a global.
    """
    codec = TokenCodec(TokenConfig.from_settings(settings))
    lockout = LockoutPolicy(store, LockoutConfig.from_settings(settings), clock=clock)
    refresh_ledger = RefreshTokenLedger(
        store, codec, lifetime=timedelta(days=settings.refresh_token_expire_days), clock=clock
    )
    reset_ledger = PasswordResetLedger(
        store, codec, lifetime=timedelta(seconds=settings.reset_token_expire_seconds), clock=clock
    )
    app.state.store = store
    app.state.codec = codec
    app.state.email_sender = email_sender
    app.state.auth_service = AuthService(store, codec, lockout, refresh_ledger, clock=clock)
    app.state.password_service = PasswordService(
        store, reset_ledger, refresh_ledger, email_sender, settings.reset_url_base, clock=clock
    )


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval_seconds: int) -> None:
    """Delete expired refresh and reset tokens every interval_seconds.

    A store error is logged and the loop carries on with the next round.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await asyncio.to_thread(app.state.store.purge_expired_tokens, _utcnow())
        except SQLAlchemyError:
            logger.exception("Expired-token purge failed; retrying in %ds", interval_seconds)
            continue
        if removed:
            logger.info("Purged %d expired token(s)", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.
    """
    settings = get_settings()
    logger.info("authcore API starting up")
    store = SqlCredentialStore(settings.database_url)
    wire_services(app, settings, store, build_email_sender(settings))
    logger.info("Auth core initialized")
    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.purge_interval_seconds))

    yield

    app.state.purge_task.cancel()
    app.state.store.close()
    logger.info("authcore API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="authcore API",
    description="Credential verification, session tokens, lockout and password reset.",
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
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
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

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every handler answers with the error_response() envelope, so clients parse
# one schema whatever the status code.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map auth core errors that escaped a route (e.g. from get_access_claims)."""
    return auth_error_response(exc)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 with Retry-After. Per-IP only; per-account lockout is separate."""
    retry_after = int(getattr(exc, "retry_after", 60))
    return error_response(
        429, "rate_limited", "Too many requests.", detail=str(exc), headers={"Retry-After": str(retry_after)}
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """422 naming the offending fields. Submitted values are not echoed back (they may be passwords)."""
    fields = sorted({".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()})
    return error_response(422, "validation_error", "Request validation failed.", detail=", ".join(fields))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Dependencies raise HTTPException with a {"code", "message"} dict as detail; pass it through."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail), headers=exc.headers)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """500 for anything unexpected. The traceback goes to the log only."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit -- health checks from load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and credential store status."""
    database = "ok" if request.app.state.store.ping() else "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
    )
