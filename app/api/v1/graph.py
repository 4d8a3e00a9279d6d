"""Neighborhood graph endpoint for the graph visualization."""

import asyncio

from fastapi import APIRouter, Depends, Query, Request

from app.api.v1.recommendations import engine_http_error, limiter
from app.config import get_settings
from app.core.cache import CacheService, get_cache
from app.core.engine import get_engine
from app.core.exceptions import GraphSnapshotError, InvalidParameterError, UnknownItemError
from app.db import schemas
from app.services.recommendation_service import RecommendationEngine

settings = get_settings()

router = APIRouter()


@router.get("/{center_id}", response_model=schemas.NeighborhoodGraphResponse)
@limiter.limit("60/minute")
async def get_neighborhood_graph(
    request: Request,
    center_id: int,
    depth: int = Query(default=2, description="Hops from the center (1-3)"),
    max_nodes: int = Query(default=50, description="Maximum nodes (1-200)"),
    engine: RecommendationEngine = Depends(get_engine),
    cache: CacheService = Depends(get_cache),
):
    """
    Nodes and edges around a book.

    Bounds are checked by the engine so the limits live in one place
    (settings.neighborhood_max_depth / neighborhood_max_nodes).
    """
    try:
        version = engine.store.current().version
    except GraphSnapshotError as e:
        raise engine_http_error(e)

    cache_key = CacheService.neighborhood_key(version, center_id, depth, max_nodes)
    cached = await cache.get(cache_key)
    if cached:
        return schemas.NeighborhoodGraphResponse(**cached)

    try:
        neighborhood = await asyncio.to_thread(
            engine.get_neighborhood_graph, center_id, depth, max_nodes
        )
    except (UnknownItemError, InvalidParameterError, GraphSnapshotError) as e:
        raise engine_http_error(e)

    response = schemas.NeighborhoodGraphResponse(
        center_id=neighborhood.center_id,
        nodes=[
            schemas.GraphNode(
                id=node.item.id,
                title=node.item.title,
                author=node.item.author,
                rating=node.item.rating,
                hops=node.hops,
                weight=round(node.weight, 4),
            )
            for node in neighborhood.nodes
        ],
        edges=[
            schemas.GraphEdgeResponse(
                source=edge.source,
                target=edge.target,
                weight=round(edge.weight, 4),
                edge_type=edge.edge_type.value,
            )
            for edge in neighborhood.edges
        ],
        truncated=neighborhood.truncated,
        snapshot_version=neighborhood.snapshot_version,
    )
    await cache.set(cache_key, response.model_dump(mode="json"), ttl=settings.cache_ttl_seconds)
    return response
