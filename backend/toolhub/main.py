"""Toolhub Billing — FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from redis.asyncio import Redis

from toolhub.api.v1.internal import router as internal_router
from toolhub.api.v1.subscriptions import router as subscriptions_router
from toolhub.api.v1.webhooks import router as webhooks_router
from toolhub.billing.scheduler import build_scheduler, build_sweeper
from toolhub.config import settings

# Configure root logger so all toolhub.* loggers output to stderr (captured by Docker).
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler for startup and shutdown events."""
    # Startup: daily billing jobs
    redis = None
    scheduler = None
    if settings.scheduler_enabled:
        redis = Redis.from_url(settings.redis_url)
        scheduler = build_scheduler(build_sweeper(redis))
        scheduler.start()
        logger.info("Billing scheduler started")

    yield

    # Shutdown: stop jobs, then dispose connections
    if scheduler is not None:
        scheduler.shutdown(wait=False)
    if redis is not None:
        await redis.aclose()

    from toolhub.database import engine

    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Billing reconciliation core: Stripe webhooks, entitlements and dunning.",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Routers
app.include_router(webhooks_router)
app.include_router(internal_router)
app.include_router(subscriptions_router)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "service": settings.app_name}
