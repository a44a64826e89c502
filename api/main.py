"""
api/main.py -- FastAPI application entry point for the VAPT portal.

Exposes the portal workflow over HTTP: organizations sign up, security-team
members submit findings, admins review them, clients remediate, and
security-team members verify the fixes.

Run with:      python main.py serve
               uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan opens both stores on startup and closes them on shutdown.
"""

from __future__ import annotations

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
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse, SetupRequest, UserResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.dashboard import router as dashboard_router
from api.routes.v1.notifications import router as notifications_router
from api.routes.v1.organizations import router as organizations_router
from api.routes.v1.security_teams import router as security_teams_router
from api.routes.v1.verifications import router as verifications_router
from api.routes.v1.vulnerabilities import router as vulnerabilities_router
from auth.dependencies import get_current_user
from auth.models import APPROVED, SUPER_ADMIN, User
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import get_settings
from portal.store import PortalStore
from portal.workflow import Workflow, WorkflowError

API_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("vaptportal.api")


def build_stores() -> tuple[UserStore, PortalStore]:
    """Open the auth and portal stores from configured URLs (or the SQLite defaults)."""
    settings = get_settings()
    user_store = UserStore(settings.auth_db_url) if settings.auth_db_url else UserStore()
    portal_store = PortalStore(settings.portal_db_url) if settings.portal_db_url else PortalStore()
    return user_store, portal_store


# ---------------------------------------------------------------------------
# Lifespan -- startup / shutdown
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open stores on startup, close them on shutdown.

    Everything before yield runs on startup; everything after yield runs on
    shutdown, even if a request handler raised.
    """
    logger.info("VAPT portal API starting up")
    user_store, portal_store = build_stores()
    app.state.user_store = user_store
    app.state.portal_store = portal_store
    app.state.workflow = Workflow(portal_store, user_store)
    app.state.setup_required = not user_store.has_users()
    logger.info("Stores initialized (setup_required=%s)", app.state.setup_required)

    yield

    portal_store.close()
    user_store.close()
    logger.info("VAPT portal API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="VAPT Portal API",
    description="Vulnerability assessment and penetration testing workflow: submission, review, remediation, verification.",
    version=API_VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by auth-protected equivalents below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

_settings = get_settings()

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Setup gate middleware
#
# Until the first Super-admin exists, every request except health, setup and
# the docs receives 503 setup_required.
# ---------------------------------------------------------------------------

_SETUP_EXEMPT = ("/setup", "/api/v1/setup", "/api/v1/health", "/openapi.json")


@app.middleware("http")
async def setup_gate(request: Request, call_next):
    """Block the API with 503 while no users exist (first-run state).

    The setup_required flag is set in lifespan and cleared by POST /setup.
    It is an in-memory flag so the check costs nothing per request; POST
    /setup re-checks at the DB level.
    """
    if getattr(request.app.state, "setup_required", False) and request.url.path not in _SETUP_EXEMPT:
        return JSONResponse(
            status_code=503,
            content=ErrorResponse(
                error=ErrorDetail(
                    code="setup_required",
                    message="No accounts exist yet. POST /api/v1/setup to create the first Super-admin.",
                )
            ).model_dump(),
        )
    return await call_next(request)


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine; wall-clock time is captured
# around call_next so latency is reported on every response.
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
app.include_router(organizations_router, prefix="/api/v1", tags=["Organizations"])
app.include_router(security_teams_router, prefix="/api/v1", tags=["Security Teams"])
app.include_router(vulnerabilities_router, prefix="/api/v1", tags=["Vulnerabilities"])
app.include_router(verifications_router, prefix="/api/v1", tags=["Verifications"])
app.include_router(notifications_router, prefix="/api/v1", tags=["Notifications"])
app.include_router(dashboard_router, prefix="/api/v1", tags=["Dashboard"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: User = Depends(get_current_user)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="VAPT Portal API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: User = Depends(get_current_user)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="VAPT Portal API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    """Map domain errors from portal.workflow onto their HTTP status."""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=exc.code, message=exc.message, detail=exc.detail)
        ).model_dump(),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
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

    Route handlers raise HTTPException with detail={"code", "message"}. When
    detail is already a structured dict, use it directly as the error field
    rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=getattr(exc, "headers", None),
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
# Defined directly in main.py (not in a router) so it is always reachable.
# No rate limit -- health checks from load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and per-component status."""
    database = "ok"
    try:
        for engine in (request.app.state.user_store.engine, request.app.state.portal_store.engine):
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check database probe failed")
        database = "error"
    status = "healthy" if database == "ok" else "degraded"
    return HealthResponse(status=status, version=API_VERSION, components={"app": "ok", "database": database})


# ---------------------------------------------------------------------------
# First-run setup
# ---------------------------------------------------------------------------


@app.post("/api/v1/setup", status_code=201, response_model=UserResponse, tags=["Setup"])
def setup(request: Request, body: SetupRequest) -> UserResponse:
    """Create the first Super-admin account.

    has_users() is re-read from the DB here; if two first-run requests race,
    the loser hits the unique email index or the re-check and gets 409.
    """
    user_store: UserStore = request.app.state.user_store
    if user_store.has_users():
        request.app.state.setup_required = False
        raise HTTPException(
            status_code=409,
            detail={"code": "setup_complete", "message": "Setup already complete. Please log in."},
        )
    try:
        user_id = user_store.create_user(
            User(
                email=body.email,
                role=SUPER_ADMIN,
                full_name=body.full_name,
                hashed_password=hash_password(body.password),
                status=APPROVED,
            )
        )
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "setup_complete", "message": "Setup already complete. Please log in."},
        ) from exc
    request.app.state.setup_required = False
    logger.info("First Super-admin created (user_id=%d)", user_id)
    return UserResponse.from_domain(user_store.get_by_id(user_id))
