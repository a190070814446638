"""
api/main.py -- FastAPI application entry point for the CCM portal backend.

Exposes authentication, invitation, password management and the
submissions dashboard over HTTP for the admin front-end.

Install deps:  pip install -e .
Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for the front-end origin(s);
                              credentials allowed so the authToken cookie travels
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (stores, engines, mailer, purge task) and shutdown
(cancel purge task, close DB connections) symmetrically.
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
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.submissions import router as submissions_router
from api.routes.v1.users import router as users_router
from auth.errors import AuthError, OtpError, StoreUnavailable
from auth.invites import InvitationEngine
from auth.otp import OtpEngine
from auth.password_flows import PasswordFlows
from auth.store import CredentialStore
from core.config import get_settings
from core.mailer import GraphMailer
from submissions.store import SubmissionStore

_settings = get_settings()

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.DEBUG if _settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("ccm.api")

# ---------------------------------------------------------------------------
# Engine wiring
# ---------------------------------------------------------------------------


def build_services(app: FastAPI, credentials: CredentialStore, submissions: SubmissionStore, mailer) -> None:
    """Attach stores, engines and the mailer to app.state.

    Shared by the real lifespan and the test lifespan so both wire the engines
    identically.
    """
    otp = OtpEngine(credentials)
    app.state.credentials = credentials
    app.state.submissions = submissions
    app.state.mailer = mailer
    app.state.otp = otp
    app.state.invites = InvitationEngine(
        credentials,
        ttl_seconds=_settings.invite_expire_seconds,
        min_password_length=_settings.min_password_length,
    )
    app.state.password_flows = PasswordFlows(
        credentials,
        otp,
        min_password_length=_settings.min_password_length,
        otp_ttl_seconds=_settings.otp_expire_seconds,
        reset_ttl_seconds=_settings.password_reset_expire_seconds,
    )


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired OTP rows every PURGE_INTERVAL_SECONDS.

    Only housekeeping: verification re-checks expiry itself, so a skipped run
    never lets an expired code through. CancelledError from task.cancel()
    during shutdown propagates out of asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(_settings.purge_interval_seconds)
        try:
            await asyncio.to_thread(app.state.otp.purge_expired)
        except SQLAlchemyError:
            logger.exception("OTP purge failed")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Stores first -- create_all runs here, before any request arrives.
      2. Engines and mailer -- they hold references to the stores.
      3. Purge task last -- references app.state.otp.
    """
    logger.info("CCM API starting up")
    credentials = CredentialStore(_settings.auth_db_url) if _settings.auth_db_url else CredentialStore()
    submissions = SubmissionStore(_settings.submissions_db_url) if _settings.submissions_db_url else SubmissionStore()
    mailer = GraphMailer.from_settings(_settings)
    build_services(app, credentials, submissions, mailer)
    if not mailer.enabled:
        logger.warning("Mail is not configured -- invitations and codes will only be logged as skipped")
    logger.info("Stores initialized")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    mailer.close()
    submissions.close()
    credentials.close()
    logger.info("CCM API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="CCM Portal API",
    description="Authentication, invitations and submissions dashboard for the CCM admin portal.",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if _settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["Content-Type"],
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
app.include_router(users_router, prefix="/api/v1", tags=["Users & Invitations"])
app.include_router(submissions_router, prefix="/api/v1", tags=["Submissions"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope
#   {"success": false, "error": {"code", "message", "detail"}}
# so the front-end parses every failure the same way.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render any auth-domain failure with its own status code and stable code."""
    detail = exc.reason if isinstance(exc, OtpError) else None
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return _error(exc.status_code, exc.code, exc.message, detail)


@app.exception_handler(OperationalError)
async def store_unavailable_handler(request: Request, exc: OperationalError) -> JSONResponse:
    """Database unreachable or locked. Safe for the client to retry."""
    logger.exception("Store unavailable on %s %s", request.method, request.url.path)
    err = StoreUnavailable()
    return _error(err.status_code, err.code, err.message)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients exactly how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 when request body or query params fail validation.

    Only field locations and messages are echoed; input values are dropped so
    a rejected password never appears in a response.
    """
    fields = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', '')}" for err in exc.errors()
    )
    return _error(400, "validation_error", "Request validation failed.", fields)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail=ErrorDetail(...).model_dump().
    When detail is already a structured dict, use it directly as the error field.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
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
    """Return liveness plus a trivial credential-store query."""
    try:
        request.app.state.credentials.ping()
        database = "ok"
    except SQLAlchemyError:
        logger.warning("Health check: credential store query failed")
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database, "mail": "ok" if request.app.state.mailer.enabled else "disabled"},
    )
