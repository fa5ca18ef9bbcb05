"""
EventSwap Platform - FastAPI Application
Configures logging, CORS, security headers, rate limiting and the domain
error mapping; creates tables, seeds demo data and runs the background
sweeps on startup.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from eventswap.adapters.notification import drain_notifications
from eventswap.audit import drain_audit, register_audit_listeners
from eventswap.config import get_settings
from eventswap.database import Base, async_session, engine
from eventswap.dependencies import get_escrow_service, get_offer_service
from eventswap.exceptions import EventSwapError, NotAuthorized
from eventswap.middleware.rate_limit import limiter
from eventswap.middleware.security import SecurityHeadersMiddleware
from eventswap.routers.auth import router as auth_router
from eventswap.routers.disputes import disputes_router, messages_router
from eventswap.routers.listings import listings_router, offers_router
from eventswap.routers.transactions import router as transactions_router
from eventswap.routers.webhooks import router as webhooks_router
from eventswap.seed import seed_database
from eventswap.services.scheduler import SweepScheduler

# Ensure models are imported so Base.metadata knows about them
import eventswap.models  # noqa: F401

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
)
logger = logging.getLogger("eventswap")

KIND_STATUS = {
    "validation": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "state_conflict": status.HTTP_409_CONFLICT,
    "not_found": status.HTTP_404_NOT_FOUND,
    "resource_exhausted": status.HTTP_503_SERVICE_UNAVAILABLE,
    "external_dependency": status.HTTP_502_BAD_GATEWAY,
    "configuration": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def status_for(exc: EventSwapError) -> int:
    if isinstance(exc, NotAuthorized):
        return status.HTTP_403_FORBIDDEN
    return KIND_STATUS.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)


# ═══════════════════════════════════════════════════════
#  LIFESPAN - startup / shutdown
# ═══════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run on startup: create tables, audit, seed, sweeps. Cleanup on shutdown."""
    logger.info("🚀 Starting %s v%s…", settings.APP_NAME, settings.APP_VERSION)

    # Create all tables (safe if they already exist)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("✅ Database tables created / verified.")

    register_audit_listeners(async_session)

    if settings.SEED_DEMO_DATA:
        async with async_session() as session:
            await seed_database(session)

    scheduler = None
    if settings.SCHEDULER_ENABLED:
        scheduler = SweepScheduler(get_escrow_service(), get_offer_service(), settings)
        scheduler.start()

    yield  # ← app runs here

    if scheduler is not None:
        scheduler.shutdown()
    await get_escrow_service().drain()
    await drain_notifications()
    await drain_audit()
    await engine.dispose()
    logger.info("👋 %s shut down.", settings.APP_NAME)


# ═══════════════════════════════════════════════════════
#  APP FACTORY
# ═══════════════════════════════════════════════════════

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Escrow marketplace for transferring prepaid event reservations",
    lifespan=lifespan,
)


# ── CORS ──
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Security Headers ──
app.add_middleware(SecurityHeadersMiddleware)

# ── Rate Limiter ──
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# ── Domain errors ──
@app.exception_handler(EventSwapError)
async def eventswap_error_handler(request: Request, exc: EventSwapError):
    code = status_for(exc)
    if code >= 500:
        logger.error("❌ %s on %s %s: %s", exc.error_code, request.method, request.url.path, exc.message)
    elif isinstance(exc, NotAuthorized):
        logger.warning("Denied %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=code, content=exc.to_dict())


# ── Routers ──
app.include_router(auth_router)
app.include_router(listings_router)
app.include_router(offers_router)
app.include_router(transactions_router)
app.include_router(disputes_router)
app.include_router(messages_router)
app.include_router(webhooks_router)


# ═══════════════════════════════════════════════════════
#  HEALTH CHECK
# ═══════════════════════════════════════════════════════

@app.get("/api/health", tags=["Health"])
async def health_check():
    return {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
    }


# ═══════════════════════════════════════════════════════
#  RUN (for direct execution)
# ═══════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "eventswap.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
