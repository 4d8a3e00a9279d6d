"""Process-wide recommendation engine instance."""

import logging

from app.config import get_settings
from app.services.recommendation_service import EngineConfig, RecommendationEngine
from app.services.similarity_graph import SnapshotStore
from app.services.vector_index import VectorIndex

logger = logging.getLogger(__name__)

_engine: RecommendationEngine | None = None


def get_engine() -> RecommendationEngine:
    """Get the singleton engine (empty until a snapshot is loaded at startup)."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = RecommendationEngine(
            store=SnapshotStore(),
            vectors=VectorIndex(dimension=settings.embedding_dim),
            config=EngineConfig.from_settings(settings),
        )
        logger.info("Recommendation engine created")
    return _engine
