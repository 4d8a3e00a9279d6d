"""API v1 router - aggregates all endpoint routers."""

from fastapi import APIRouter

from app.api.v1 import recommendations, graph, admin

api_router = APIRouter()

api_router.include_router(recommendations.router, prefix="/recommendations", tags=["recommendations"])
api_router.include_router(graph.router, prefix="/graph", tags=["graph"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
