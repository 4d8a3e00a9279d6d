"""
Recommendation endpoints.

============================================================================
DATA SOURCE: IN-MEMORY GRAPH SNAPSHOT
============================================================================
Recommendations are computed from the published snapshot (catalog, vector
index, similarity graph). No SQL runs while serving these endpoints.

Engine calls are CPU-bound and run in a worker thread so the event loop
keeps serving other requests.
============================================================================
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.config import get_settings
from app.core.cache import CacheService, get_cache
from app.core.engine import get_engine
from app.core.exceptions import GraphSnapshotError, InvalidParameterError, UnknownItemError
from app.db import schemas
from app.services.recommendation_service import (
    RatedItem,
    RecommendationEngine,
    RecommendationResult,
)

logger = logging.getLogger(__name__)
settings = get_settings()

# Rate limiter for recommendation endpoints
limiter = Limiter(key_func=get_remote_address)

router = APIRouter()


def engine_http_error(e: Exception) -> HTTPException:
    """Map engine errors to HTTP errors."""
    if isinstance(e, UnknownItemError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, InvalidParameterError):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, GraphSnapshotError):
        return HTTPException(status_code=503, detail="Recommendation graph is not available")
    return HTTPException(status_code=500, detail="Recommendation failed")


def to_response(result: RecommendationResult) -> schemas.RecommendationsResponse:
    items = []
    for rec in result.items:
        item = rec.item
        items.append(schemas.RecommendationItem(
            book=schemas.BookSummary(
                id=item.id,
                title=item.title,
                author=item.author,
                series=item.series,
                series_index=item.series_index,
                rating=item.rating,
                tags=sorted(item.tags),
            ),
            score=round(rec.score, 6),
            reasons=[
                schemas.ReasonResponse(
                    kind=r.kind,
                    text=r.text,
                    weight=round(r.weight, 4),
                    similarity=r.similarity,
                    author=r.author,
                    series=r.series,
                    position=r.position,
                    tags=list(r.tags),
                    based_on=r.based_on,
                    previous=r.previous,
                )
                for r in rec.reasons
            ],
            path=list(rec.path),
            path_edges=[
                schemas.PathEdge(
                    source=e.source,
                    target=e.target,
                    edge_type=e.edge_type.value,
                    weight=round(e.weight, 4),
                )
                for e in rec.edges
            ],
        ))

    return schemas.RecommendationsResponse(
        recommendations=items,
        status=result.status.value,
        detail=result.detail,
        snapshot_version=result.snapshot_version,
        elapsed_ms=round(result.elapsed_ms, 1),
    )


@router.get("/items/{item_id}", response_model=schemas.RecommendationsResponse)
@limiter.limit("60/minute")
async def recommend_for_item(
    request: Request,
    item_id: int,
    limit: int = Query(default=20, ge=1, le=100, description="Number of recommendations"),
    deadline_ms: Optional[int] = Query(default=None, ge=1, le=60000, description="Time budget"),
    engine: RecommendationEngine = Depends(get_engine),
    cache: CacheService = Depends(get_cache),
):
    """
    Books similar to one book.

    Status values:
    - complete: full pipeline ran
    - partial: deadline hit, best-effort ranking
    - fallback: the book has no graph neighbors, same author/series books instead
    - empty: nothing related found
    """
    try:
        version = engine.store.current().version
    except GraphSnapshotError as e:
        raise engine_http_error(e)

    cache_key = CacheService.item_recommendations_key(version, item_id, limit)
    cached = await cache.get(cache_key)
    if cached:
        response = schemas.RecommendationsResponse(**cached)
        response.cached = True
        return response

    try:
        result = await asyncio.to_thread(
            engine.recommend_for, item_id, limit, (), deadline_ms
        )
    except (UnknownItemError, InvalidParameterError, GraphSnapshotError) as e:
        raise engine_http_error(e)

    response = to_response(result)
    # Partial results depend on timing, don't serve them to the next caller
    if result.status.value != "partial":
        await cache.set(cache_key, response.model_dump(mode="json"), ttl=settings.cache_ttl_seconds)
    return response


@router.post("/profile", response_model=schemas.RecommendationsResponse)
@limiter.limit("30/minute")
async def recommend_for_profile(
    request: Request,
    body: schemas.ProfileRecommendationsRequest,
    engine: RecommendationEngine = Depends(get_engine),
):
    """Personalized recommendations from a list of rated books."""
    rated = [RatedItem(item_id=r.id, rating=r.rating) for r in body.rated_items]
    try:
        result = await asyncio.to_thread(
            engine.recommend_for_profile, rated, body.limit, body.deadline_ms
        )
    except (InvalidParameterError, GraphSnapshotError) as e:
        raise engine_http_error(e)

    logger.info(
        f"Profile recommendations: {len(rated)} rated -> {len(result.items)} items ({result.status.value})"
    )
    return to_response(result)
