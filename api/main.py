"""
api/main.py -- FastAPI application entry point for AdminGate.

Run with:      uvicorn api.main:app --reload
               python main.py seed --with-accounts   (first run)

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the component graph once and hangs it on app.state:

  user_store, audit_store  SQLAlchemy repositories
  audit                    AuditSink (background writer thread)
  codec                    TokenCodec
  ledger                   RevocationLedger
  lockout                  LockoutGuard
  gate                     AuthorizationGate  (used by auth/dependencies.py)
  auth_service             AuthService

Shutdown mirrors startup: cancel the purge task, drain the audit queue,
close the stores.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.audit import router as audit_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.permissions import router as permissions_router
from api.routes.v1.roles import router as roles_router
from api.routes.v1.users import router as users_router
from audit.sink import AuditSink
from audit.store import AuditStore
from auth.dependencies import get_current_user
from auth.gate import AuthorizationError, AuthorizationGate
from auth.lockout import LockoutGuard
from auth.models import User
from auth.revocation import RevocationLedger
from auth.service import AuthService, ServiceError
from auth.store import UserStore
from auth.tokens import TokenCodec
from core.config import Settings, get_settings

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("admingate.api")

# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------


def init_state(app: FastAPI, user_store: UserStore, audit_store: AuditStore, settings: Settings) -> None:
    """Build the component graph over the given stores and attach it to app.state.

    Shared by the real lifespan and the test lifespan so both run the same
    wiring against different databases.
    """
    audit = AuditSink(audit_store)
    audit.start()
    codec = TokenCodec.from_settings(settings)
    ledger = RevocationLedger(user_store)
    lockout = LockoutGuard(user_store, settings.lockout_max_attempts, settings.lockout_seconds)

    app.state.settings = settings
    app.state.user_store = user_store
    app.state.audit_store = audit_store
    app.state.audit = audit
    app.state.codec = codec
    app.state.ledger = ledger
    app.state.lockout = lockout
    app.state.gate = AuthorizationGate(codec, user_store, ledger, audit)
    app.state.auth_service = AuthService(
        user_store,
        codec,
        ledger,
        lockout,
        audit,
        bcrypt_rounds=settings.bcrypt_rounds,
        default_role=settings.default_role,
    )


def purge_once(app: FastAPI) -> tuple[int, int]:
    """Drop expired revocation entries and audit records past retention."""
    revoked = app.state.ledger.purge_expired()
    audited = app.state.audit_store.purge_older_than(app.state.settings.audit_retention_days)
    if revoked or audited:
        logger.info("Purged %d revocation entries and %d audit records", revoked, audited)
    return revoked, audited


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval: int) -> None:
    """Run purge_once every `interval` seconds until cancelled.

    The store calls are blocking, so each pass runs in a worker thread. A
    failing pass is logged and the loop carries on; CancelledError from
    shutdown propagates out of asyncio.sleep.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(purge_once, app)
        except Exception:
            logger.exception("Purge pass failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters: the stores first (create tables), then the sink
    and gate that depend on them, then the purge task that references them.
    """
    settings = get_settings()
    logger.info("AdminGate API starting up")
    user_store = UserStore(settings.database_url)
    audit_store = AuditStore(settings.database_url)
    init_state(app, user_store, audit_store, settings)
    if user_store.get_role_by_name(settings.default_role) is None:
        logger.warning(
            "Default role %r not found -- run `python main.py seed` before registering users",
            settings.default_role,
        )
    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.purge_interval_seconds))

    yield

    app.state.purge_task.cancel()
    app.state.audit.close()
    user_store.close()
    audit_store.close()
    logger.info("AdminGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AdminGate API",
    description="Token authentication, role-based authorization and an audit trail for admin panels.",
    version=VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by auth-protected routes below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack -- register in the order a request should meet them:
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
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(roles_router, prefix="/api/v1", tags=["Roles"])
app.include_router(permissions_router, prefix="/api/v1", tags=["Permissions"])
app.include_router(audit_router, prefix="/api/v1", tags=["Audit"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
def docs(user: User = Depends(get_current_user)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="AdminGate API")


@app.get("/redoc", include_in_schema=False)
def redoc(user: User = Depends(get_current_user)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="AdminGate API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, detail: ErrorDetail) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=detail).model_dump(exclude_none=True),
    )


@app.exception_handler(AuthorizationError)
async def authorization_error_handler(request: Request, exc: AuthorizationError) -> JSONResponse:
    """Gate denials: 401 / 403 / 423.

    Denials without a machine code (missing token, vanished or inactive
    principal) all report "unauthorized" so they are indistinguishable to
    the client.
    """
    return _error(
        exc.status_code,
        ErrorDetail(code=exc.code or "unauthorized", message=exc.message, required=exc.required),
    )


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    response = _error(exc.status_code, ErrorDetail(code=exc.code, message=exc.message))
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    slowapi stores the wait time on the exception as exc.retry_after (int seconds).
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, ErrorDetail(code="rate_limited", message="Too many requests.", detail=str(exc)))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(
        422,
        ErrorDetail(code="validation_error", message="Request validation failed.", detail=str(exc.errors())),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail={"code": ..., "message": ...}.
    A dict detail is used directly as the error field; str(dict) would give a
    Python repr, not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail)))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, ErrorDetail(code="internal_error", message="An unexpected error occurred."))


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is reachable regardless of router
# registration. No rate limit and no authentication.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and a database probe."""
    components = {"app": "ok"}
    try:
        request.app.state.user_store.ping()
        components["database"] = "ok"
    except Exception:
        logger.exception("Health check: database probe failed")
        components["database"] = "error"
    status = "healthy" if components["database"] == "ok" else "degraded"
    return HealthResponse(status=status, version=VERSION, components=components)
