"""Pydantic schemas for API request/response validation."""

from datetime import datetime
from pydantic import BaseModel, Field


# ============ Book Schemas ============

class BookSummary(BaseModel):
    """Book metadata shown next to a recommendation."""
    id: int
    title: str
    author: str | None = None
    series: str | None = None
    series_index: float | None = None
    rating: int | None = None  # reader's own rating, 1-5
    tags: list[str] = []


# ============ Recommendation Schemas ============

class ReasonResponse(BaseModel):
    """Why a book was recommended."""
    kind: str  # similar_content, same_author, same_series, tag_overlap, readers_also_liked, next_in_series
    text: str
    weight: float
    similarity: float | None = None
    author: str | None = None
    series: str | None = None
    position: str | None = None  # next, previous, in series
    tags: list[str] = []
    based_on: str | None = None
    previous: str | None = None


class PathEdge(BaseModel):
    """One edge of the best path that reached a recommendation."""
    source: int
    target: int
    edge_type: str
    weight: float


class RecommendationItem(BaseModel):
    """Single recommendation with explanation."""
    book: BookSummary
    score: float
    reasons: list[ReasonResponse] = []
    path: list[int] = []
    path_edges: list[PathEdge] = []


class RecommendationsResponse(BaseModel):
    """Recommendations and how they were produced."""
    recommendations: list[RecommendationItem]
    status: str  # complete, partial, fallback, empty
    detail: str | None = None
    snapshot_version: int | None = None
    elapsed_ms: float = 0.0
    cached: bool = False


class RatedItemRequest(BaseModel):
    id: int
    rating: int = Field(ge=1, le=5)


class ProfileRecommendationsRequest(BaseModel):
    """Personalized recommendations from the reader's ratings."""
    rated_items: list[RatedItemRequest] = Field(default_factory=list, max_length=1000)
    limit: int = Field(default=20, ge=1, le=100)
    deadline_ms: int | None = Field(default=None, ge=1, le=60000)


# ============ Graph Schemas ============

class GraphNode(BaseModel):
    id: int
    title: str
    author: str | None = None
    rating: int | None = None
    hops: int = 0
    weight: float = 0.0


class GraphEdgeResponse(BaseModel):
    source: int
    target: int
    weight: float
    edge_type: str


class NeighborhoodGraphResponse(BaseModel):
    """Nodes and edges around a book, for visualization."""
    center_id: int
    nodes: list[GraphNode]
    edges: list[GraphEdgeResponse]
    truncated: bool = False
    snapshot_version: int | None = None


# ============ Admin Schemas ============

class RebuildResponse(BaseModel):
    snapshot_version: int
    node_count: int
    edge_count: int
    edges_by_type: dict[str, int]
    pairs_evaluated: int
    pruned_edges: int
    duration_ms: float
    built_at: datetime


class GraphStatusResponse(BaseModel):
    ready: bool
    snapshot_version: int | None = None
    node_count: int = 0
    edge_count: int = 0
    edges_by_type: dict[str, int] = {}
    catalog_size: int = 0
    embedding_count: int = 0
    built_at: datetime | None = None
    next_rebuild: str | None = None
