"""Library Graph Recommender API - FastAPI Application."""

import logging
from contextlib import asynccontextmanager
from datetime import timezone

from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from app.middleware import CorrelationIDMiddleware, CorrelationIdFilter

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] [%(correlation_id)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(CorrelationIdFilter())

# Suppress noisy loggers
logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("apscheduler").setLevel(logging.WARNING)

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import get_settings
from app.api.v1.router import api_router
from app.core.cache import get_cache
from app.core.engine import get_engine
from app.db.database import init_db, async_session
from app.ingestion.snapshot_loader import load_snapshot, rebuild_and_persist

logger = logging.getLogger(__name__)
settings = get_settings()

# 100 requests per minute per IP for general endpoints,
# recommendation endpoints have their own limits
limiter = Limiter(key_func=get_remote_address, default_limits=["100/minute"])

scheduler = AsyncIOScheduler(
    timezone=timezone.utc,
    job_defaults={
        # Run a missed rebuild when the host comes back instead of skipping it
        "misfire_grace_time": 60 * 60,
        "coalesce": True,
        "max_instances": 1,
    },
)


async def run_nightly_rebuild():
    """Rebuild the similarity graph from the current catalog."""
    try:
        report = await rebuild_and_persist(get_engine(), async_session, settings.embedding_model)
        deleted = await get_cache().drop_stale_versions(report.snapshot_version)
        logger.info(
            f"Nightly rebuild published v{report.snapshot_version} "
            f"({report.edge_count} edges, {deleted} cached responses dropped)"
        )
    except Exception as e:
        logger.error(f"Nightly graph rebuild failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    await init_db()

    engine = get_engine()
    try:
        snapshot = await load_snapshot(engine, async_session, settings.embedding_model)
        logger.info(f"Serving graph snapshot v{snapshot.version}")
    except Exception as e:
        # Endpoints answer 503 until an admin rebuild succeeds
        logger.error(f"Failed to load graph snapshot: {e}")

    if settings.rebuild_hour >= 0:
        scheduler.add_job(
            run_nightly_rebuild,
            CronTrigger(hour=settings.rebuild_hour, minute=0),
            id="nightly_graph_rebuild",
            replace_existing=True,
        )
        scheduler.start()
        app.state.scheduler = scheduler
        logger.info(f"Scheduler started - graph rebuild at {settings.rebuild_hour:02d}:00 UTC")

    yield

    logger.info("Shutting down application...")
    if scheduler.running:
        scheduler.shutdown()
    await get_cache().close()
    logger.info("Shutdown complete")


app = FastAPI(
    title=settings.app_name,
    description="Graph-based book recommendations for a personal library",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Correlation-ID"],
    expose_headers=["X-Correlation-ID"],
)

app.add_middleware(CorrelationIDMiddleware)

app.include_router(api_router, prefix="/api/v1")


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    engine = get_engine()
    return {
        "status": "healthy",
        "service": settings.app_name,
        "graph_ready": engine.store.is_ready(),
    }


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": settings.app_name,
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
    }
