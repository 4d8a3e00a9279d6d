import pytest

from app.services.catalog import Catalog, Item
from app.services.edge_fusion import EdgeType
from app.services.recommendation_service import EngineConfig, RecommendationEngine
from app.services.similarity_graph import GraphEdge, SimilarityGraph, SnapshotStore
from app.services.vector_index import VectorIndex

A, B, C, D, E = 1, 2, 3, 4, 5


def scenario_items() -> list[Item]:
    return [
        Item(id=A, title="Alpha", author="Ann Author", tags=frozenset({"space", "war"})),
        Item(id=B, title="Beta", author="Bob Writer", tags=frozenset({"space"})),
        Item(id=C, title="Gamma", author="Ann Author", series="Saga", series_index=1),
        Item(id=D, title="Delta", author="Dee Novelist", series="Saga", series_index=2),
        Item(id=E, title="Epsilon", author="Eve Solo"),
    ]


def scenario_edges() -> list[GraphEdge]:
    return [
        GraphEdge(A, B, EdgeType.CONTENT, 0.9),
        GraphEdge(A, C, EdgeType.AUTHOR, 0.85),
        GraphEdge(C, D, EdgeType.SERIES, 0.95),
    ]


@pytest.fixture
def catalog() -> Catalog:
    return Catalog(scenario_items())


@pytest.fixture
def graph() -> SimilarityGraph:
    return SimilarityGraph.from_edges(scenario_edges(), nodes=[A, B, C, D, E])


@pytest.fixture
def store(catalog, graph) -> SnapshotStore:
    store = SnapshotStore()
    store.publish(catalog, graph)
    return store


@pytest.fixture
def engine(store) -> RecommendationEngine:
    # No default deadline so slow CI machines never see partial results
    return RecommendationEngine(store, VectorIndex(), EngineConfig(default_deadline_ms=None))
