"""Admin API endpoints for graph rebuilds and snapshot status."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import get_settings
from app.core.auth import require_admin
from app.core.cache import CacheService, get_cache
from app.core.engine import get_engine
from app.db import schemas
from app.db.database import async_session
from app.ingestion.snapshot_loader import rebuild_and_persist
from app.services.recommendation_service import RecommendationEngine

logger = logging.getLogger(__name__)
settings = get_settings()

router = APIRouter(dependencies=[Depends(require_admin)])


def get_session_factory() -> async_sessionmaker:
    return async_session


@router.post("/graph/rebuild", response_model=schemas.RebuildResponse)
async def rebuild_graph(
    engine: RecommendationEngine = Depends(get_engine),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    cache: CacheService = Depends(get_cache),
):
    """Recompute all edges from the current catalog and publish a new snapshot."""
    try:
        report = await rebuild_and_persist(engine, session_factory, settings.embedding_model)
    except Exception as e:
        logger.error(f"Graph rebuild failed: {e}")
        raise HTTPException(status_code=500, detail="Graph rebuild failed")

    deleted = await cache.drop_stale_versions(report.snapshot_version)
    logger.info(f"Rebuild published v{report.snapshot_version}, dropped {deleted} cached responses")
    return schemas.RebuildResponse(**report.to_dict())


@router.get("/graph/status", response_model=schemas.GraphStatusResponse)
async def graph_status(
    request: Request,
    engine: RecommendationEngine = Depends(get_engine),
):
    """Current snapshot stats and the next scheduled rebuild."""
    next_rebuild = None
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is not None:
        job = scheduler.get_job("nightly_graph_rebuild")
        if job and job.next_run_time:
            next_rebuild = job.next_run_time.isoformat()

    if not engine.store.is_ready():
        return schemas.GraphStatusResponse(
            ready=False,
            embedding_count=len(engine.vectors),
            next_rebuild=next_rebuild,
        )

    snapshot = engine.store.current()
    return schemas.GraphStatusResponse(
        ready=True,
        snapshot_version=snapshot.version,
        node_count=snapshot.graph.node_count,
        edge_count=snapshot.graph.edge_count,
        edges_by_type=snapshot.graph.edge_counts_by_type(),
        catalog_size=len(snapshot.catalog),
        embedding_count=len(engine.vectors),
        built_at=snapshot.built_at,
        next_rebuild=next_rebuild,
    )
