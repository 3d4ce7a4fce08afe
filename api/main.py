"""
api/main.py -- FastAPI application entry point for ClinicConnect auth.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. log_requests          -- method, path, status, latency, client host
  4. rate_limit            -- applies the auth / api / sensitive policies

Lifespan handles startup (user store, audit logger, MFA service, session
store with in-memory failover, rate limiter, background sweep tasks) and
shutdown (cancel tasks, close stores) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.util import get_remote_address
from sqlalchemy.exc import SQLAlchemyError

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.audit import router as audit_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.mfa import router as mfa_router
from api.routes.v1.organizations import router as organizations_router
from api.routes.v1.users import router as users_router
from auth.audit import AuditLogger
from auth.dependencies import get_current_principal
from auth.errors import AuthError, RateLimited, StoreUnavailable
from auth.mfa import MFAService, MFAStore
from auth.models import Principal
from auth.sessions import open_session_store
from auth.store import UserStore
from core.config import get_settings
from ratelimit.store import build_limiter, build_policies

VERSION = "1.0.0"
HEALTH_PATH = "/api/v1/health"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("clinicconnect.api")

# ---------------------------------------------------------------------------
# Background tasks
# ---------------------------------------------------------------------------


async def _rate_limit_sweep_loop(app: FastAPI) -> None:
    """Drop rate-limit records idle longer than rate_limit_idle_seconds.

    Runs on its own timer, independent of request traffic. The memory store's
    sweep takes one key stripe at a time, so increments are never blocked for
    longer than a single record check.
    """
    settings = get_settings()
    while True:
        await asyncio.sleep(settings.rate_limit_sweep_seconds)
        app.state.rate_limiter.sweep(settings.rate_limit_idle_seconds)


async def _session_purge_loop(app: FastAPI) -> None:
    """Delete sessions past their sliding expiry that nobody has read since."""
    settings = get_settings()
    while True:
        await asyncio.sleep(settings.session_purge_seconds)
        removed = app.state.session_store.purge_expired()
        if removed:
            logger.info("Purged %d expired sessions", removed)


async def _stop_tasks(*tasks: asyncio.Task) -> None:
    """Cancel background tasks and wait for them to finish unwinding."""
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. User store first -- its engine is shared by the audit logger and MFA
         store, and a broken database URL should fail startup here.
      2. Audit logger before the MFA service, which writes through it.
      3. Session store -- opened separately so an unreachable session database
         degrades to the in-memory fallback instead of failing startup.
      4. Rate limiter and policies, then the background tasks that use them.
    """
    settings = get_settings()
    logger.info("ClinicConnect auth starting up (debug=%s)", settings.debug)

    app.state.user_store = UserStore(settings.database_url)
    engine = app.state.user_store.engine
    app.state.audit = AuditLogger(engine=engine)
    app.state.mfa_service = MFAService(MFAStore(engine=engine), audit=app.state.audit, settings=settings)
    app.state.session_store = open_session_store(settings)
    logger.info("Session store mode: %s", app.state.session_store.mode)
    app.state.rate_limiter = build_limiter(settings)
    app.state.rate_limit_policies = build_policies(settings)

    app.state.sweep_task = asyncio.create_task(_rate_limit_sweep_loop(app))
    app.state.purge_task = asyncio.create_task(_session_purge_loop(app))

    yield

    # Shutdown
    await _stop_tasks(app.state.sweep_task, app.state.purge_task)
    app.state.session_store.close()
    app.state.user_store.close()
    logger.info("ClinicConnect auth shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="ClinicConnect Auth API",
    description="Authentication, sessions, role-based access, MFA and audit for ClinicConnect.",
    version=VERSION,
    lifespan=lifespan,
    # Disable built-in /docs and /redoc so we can add auth protection.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


def _auth_error_response(exc: AuthError) -> JSONResponse:
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
    )
    for name, value in exc.headers.items():
        response.headers[name] = value
    return response


# ---------------------------------------------------------------------------
# Rate limiting middleware
#
# Policy selection by path:
#   api       -- every /api/ path except health
#   auth      -- POST /api/v1/auth/login
#   sensitive -- MFA mutations, organization assume/release, change-password,
#                user-management mutations
# Every throttled response carries the X-RateLimit-* headers of the policy
# with the fewest requests remaining.
# ---------------------------------------------------------------------------

_SENSITIVE_PREFIXES = (
    "/api/v1/mfa/",
    "/api/v1/organizations/assume",
    "/api/v1/auth/change-password",
)


def _policies_for(method: str, path: str) -> list[str]:
    if not path.startswith("/api/") or path == HEALTH_PATH:
        return []
    names = ["api"]
    if method == "POST" and path == "/api/v1/auth/login":
        names.append("auth")
    mutating = method in ("POST", "PATCH", "PUT", "DELETE")
    if mutating and (path.startswith(_SENSITIVE_PREFIXES) or path.startswith("/api/v1/auth/users")):
        names.append("sensitive")
    return names


@app.middleware("http")
async def rate_limit(request: Request, call_next):
    names = _policies_for(request.method, request.url.path)
    if not names:
        return await call_next(request)

    limiter = request.app.state.rate_limiter
    policies = request.app.state.rate_limit_policies
    client_ip = get_remote_address(request)
    tightest = None
    for name in names:
        policy = policies[name]
        result = limiter.check(policy.key(client_ip), policy.window_ms, policy.max_requests)
        if not result.allowed:
            logger.warning("Rate limit '%s' exceeded by %s on %s", name, client_ip, request.url.path)
            exc = RateLimited(
                policy.message,
                retry_after=result.retry_after(limiter.now_ms()),
                headers=result.headers(),
            )
            return _auth_error_response(exc)
        if tightest is None or result.remaining < tightest.remaining:
            tightest = result

    response = await call_next(request)
    for header, value in tightest.headers().items():
        response.headers[header] = value
    return response


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor / Chain of Responsibility. Every request passes through
# this coroutine before reaching any route handler. We capture wall-clock time
# before and after call_next so we can report latency on every response.
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
# Middleware stack
#
# Starlette wraps each newly added middleware around the ones added before
# it, so these two registered last become the outermost layers:
# TrustedHost -> CORS -> log_requests -> rate_limit -> routes.
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-MFA-Code"],
    max_age=3600,
)

app.add_middleware(
    TrustedHostMiddleware,
    # TestClient and local tooling use arbitrary Host headers in debug mode.
    allowed_hosts=["*"] if _settings.debug else _settings.allowed_hosts,
)


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(mfa_router, prefix="/api/v1", tags=["MFA"])
app.include_router(organizations_router, prefix="/api/v1", tags=["Organizations"])
app.include_router(audit_router, prefix="/api/v1", tags=["Audit"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
#
# /docs and /redoc are disabled on the FastAPI() constructor and replaced
# here with routes that require a session or bearer token.
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(principal: Principal = Depends(get_current_principal)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="ClinicConnect Auth API")


@app.get("/redoc", include_in_schema=False)
async def redoc(principal: Principal = Depends(get_current_principal)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="ClinicConnect Auth API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render every auth-core failure (401/403/400/409/429/503) in the shared envelope."""
    return _auth_error_response(exc)


@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """A durable store failed mid-request. Logged in full; the client sees 503."""
    logger.exception("Store failure on %s %s", request.method, request.url.path)
    return _auth_error_response(StoreUnavailable())


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

    Route handlers raise HTTPException with a {"code", "message"} dict as
    detail. When detail is already a structured dict, use it directly as the
    error field rather than stringifying it.
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

    The raw exception is written to the log only, never to the response body.
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
# regardless of router registration state. Not rate limited -- health checks
# from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get(HEALTH_PATH, include_in_schema=True, tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return liveness, database reachability and the session-store mode."""
    try:
        request.app.state.user_store.ping()
        database = "ok"
    except SQLAlchemyError:
        logger.exception("Health check: database ping failed")
        database = "error"
    session_mode = request.app.state.session_store.mode
    status = "healthy" if database == "ok" and session_mode == "durable" else "degraded"
    return HealthResponse(
        status=status,
        version=VERSION,
        components={"app": "ok", "database": database, "session_store": session_mode},
    )
