import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import CooldownActiveError, GuardianControlsError
from app.core.rate_limit import limiter
from app.core.redis_client import close_redis, get_redis
from app.database import get_db
from app.routers import activity, approvals, auth, children, household, portal_ws, step_up
from app.services.connection_manager import ConnectionManager
from app.services.identity_service import OneTimeCodeStore
from app.services.step_up import ChallengeRegistry, utcnow

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Step-up challenge sweep background task
# ---------------------------------------------------------------------------
async def _challenge_sweep_loop(registry: ChallengeRegistry) -> None:
    """Drop expired step-up challenges so their commands can never run."""
    while True:
        await asyncio.sleep(settings.STEP_UP_SWEEP_INTERVAL_SECONDS)
        try:
            await registry.sweep(utcnow())
        except Exception:
            logger.exception("Step-up sweep error")


# ---------------------------------------------------------------------------
# Lifespan context manager
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan: runs on startup and shutdown."""
    logger.info("%s started", settings.APP_NAME)
    sweep_task = asyncio.create_task(_challenge_sweep_loop(app.state.step_up))
    yield
    sweep_task.cancel()
    await close_redis()
    logger.info("%s shutting down", settings.APP_NAME)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------
app = FastAPI(
    title=settings.APP_NAME,
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    openapi_url="/openapi.json" if settings.DEBUG else None,
)

# App-owned engine state
app.state.step_up = ChallengeRegistry()
app.state.codes = OneTimeCodeStore()
app.state.connections = ConnectionManager()


MAX_BODY_SIZE = 1 * 1024 * 1024  # 1 MB, policy documents are small


# -- Middleware ---------------------------------------------------------------
@app.middleware("http")
async def limit_request_body(request: Request, call_next):
    """Reject requests with Content-Length exceeding the limit."""
    content_length = request.headers.get("content-length")
    if content_length and int(content_length) > MAX_BODY_SIZE:
        return JSONResponse(
            status_code=413,
            content={"detail": "Request body too large"},
        )
    return await call_next(request)


@app.middleware("http")
async def fix_redirect_scheme(request: Request, call_next):
    """Ensure redirects use https when behind a TLS-terminating reverse proxy."""
    if request.headers.get("x-forwarded-proto") == "https":
        request.scope["scheme"] = "https"
    return await call_next(request)


app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)

# -- Rate limiting ------------------------------------------------------------
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# -- Domain errors ------------------------------------------------------------
@app.exception_handler(GuardianControlsError)
async def guardian_error_handler(request: Request, exc: GuardianControlsError):
    headers = None
    if isinstance(exc, CooldownActiveError):
        headers = {"Retry-After": str(exc.retry_after)}
    logger.info("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------
@app.get("/health", tags=["health"])
async def health_check(db: AsyncSession = Depends(get_db)):
    """Health check with DB and Redis connectivity verification."""
    checks: dict[str, str] = {"db": "ok", "redis": "ok"}

    try:
        await db.execute(select(1))
    except Exception:
        logger.exception("Health check: database unreachable")
        checks["db"] = "error"

    try:
        redis = await get_redis()
        if redis is None:
            checks["redis"] = "unavailable"
        else:
            await redis.ping()
    except Exception:
        logger.exception("Health check: Redis ping failed")
        checks["redis"] = "error"

    # "unavailable" = optional service not configured; only "error" = degraded
    degraded = any(v == "error" for v in checks.values())
    return {
        "status": "degraded" if degraded else "ok",
        "app": settings.APP_NAME,
        "pending_challenges": len(app.state.step_up),
        **checks,
    }


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
app.include_router(auth.router, prefix=settings.API_V1_PREFIX)
app.include_router(household.router, prefix=settings.API_V1_PREFIX)
app.include_router(children.router, prefix=settings.API_V1_PREFIX)
app.include_router(approvals.router, prefix=settings.API_V1_PREFIX)
app.include_router(step_up.router, prefix=settings.API_V1_PREFIX)
app.include_router(activity.router, prefix=settings.API_V1_PREFIX)
app.include_router(portal_ws.router, prefix=settings.API_V1_PREFIX)
