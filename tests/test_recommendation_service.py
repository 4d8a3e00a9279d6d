from dataclasses import replace

import pytest

from app.config import Settings
from app.core.exceptions import GraphSnapshotError, InvalidParameterError, UnknownItemError
from app.services import recommendation_service
from app.services.catalog import Catalog, Item
from app.services.edge_fusion import EdgeType
from app.services.explanation_service import SAME_AUTHOR, SAME_SERIES
from app.services.personalized_ranker import TransitionNormalization
from app.services.recommendation_service import (
    EngineConfig,
    RatedItem,
    RecommendationEngine,
    RecommendationStatus,
)
from app.services.similarity_graph import SimilarityGraph, SnapshotStore
from app.services.vector_index import VectorIndex

from conftest import A, B, C, D, E, scenario_edges, scenario_items
from test_graph_expander import CountdownDeadline


def _ids(result) -> list[int]:
    return [rec.item.id for rec in result.items]


def test_similar_books_follow_two_hops(engine):
    result = engine.recommend_for(A, limit=10)

    assert result.status == RecommendationStatus.COMPLETE
    assert set(_ids(result)) == {B, C, D}
    assert A not in _ids(result)
    assert result.snapshot_version == 1

    delta = next(rec for rec in result.items if rec.item.id == D)
    assert delta.path == (A, C, D)
    assert [e.edge_type for e in delta.edges] == [EdgeType.AUTHOR, EdgeType.SERIES]
    assert {r.kind for r in delta.reasons} == {SAME_SERIES, SAME_AUTHOR}


def test_scores_are_ranker_scores(engine):
    result = engine.recommend_for(A)
    assert all(rec.score > 0 for rec in result.items)


def test_limit_and_exclusions(engine):
    result = engine.recommend_for(A, limit=1, exclude=[B])
    assert len(result.items) == 1
    assert B not in _ids(result)


def test_unknown_item_raises(engine):
    with pytest.raises(UnknownItemError):
        engine.recommend_for(999)


@pytest.mark.parametrize("limit", [0, 101])
def test_limit_out_of_bounds_raises(engine, limit):
    with pytest.raises(InvalidParameterError):
        engine.recommend_for(A, limit=limit)


def test_non_positive_deadline_raises(engine):
    with pytest.raises(InvalidParameterError):
        engine.recommend_for(A, deadline_ms=0)


def test_no_snapshot_raises():
    engine = RecommendationEngine(SnapshotStore(), VectorIndex())
    with pytest.raises(GraphSnapshotError):
        engine.recommend_for(A)


def test_isolated_book_without_relatives_is_empty(engine):
    result = engine.recommend_for(E)
    assert result.status == RecommendationStatus.EMPTY
    assert result.items == []
    assert result.detail


def test_isolated_book_falls_back_to_same_author():
    catalog = Catalog(scenario_items() + [Item(id=6, title="Zeta", author="eve solo")])
    store = SnapshotStore()
    store.publish(catalog, SimilarityGraph.from_edges(scenario_edges(), nodes=catalog.ids()))
    engine = RecommendationEngine(store, VectorIndex(), EngineConfig(default_deadline_ms=None))

    result = engine.recommend_for(E)

    assert result.status == RecommendationStatus.FALLBACK
    assert _ids(result) == [6]
    assert result.items[0].score == pytest.approx(0.8)
    assert result.items[0].reasons[0].kind == SAME_AUTHOR


def test_isolated_book_with_embedding_seeds_from_neighbors(catalog, graph):
    store = SnapshotStore()
    store.publish(catalog, graph)
    vectors = VectorIndex(dimension=2)
    vectors.upsert(E, [1.0, 0.0])
    vectors.upsert(B, [0.9, 0.1])
    vectors.upsert(D, [0.0, 1.0])
    engine = RecommendationEngine(store, vectors, EngineConfig(default_deadline_ms=None))

    result = engine.recommend_for(E)

    assert result.status == RecommendationStatus.COMPLETE
    assert B in _ids(result)
    assert A in _ids(result)
    assert E not in _ids(result)


def test_books_the_reader_rated_are_not_recommended(graph):
    items = [replace(item, rating=5) if item.id == B else item for item in scenario_items()]
    store = SnapshotStore()
    store.publish(Catalog(items), graph)
    engine = RecommendationEngine(store, VectorIndex(), EngineConfig(default_deadline_ms=None))

    result = engine.recommend_for(A, limit=10)

    assert result.status == RecommendationStatus.COMPLETE
    assert set(_ids(result)) == {C, D}


def test_deadline_gives_partial_best_effort_result(engine, monkeypatch):
    # Expansion from A checks the deadline four times, then the ranker expires
    monkeypatch.setattr(recommendation_service, "Deadline", lambda budget: CountdownDeadline(4))

    result = engine.recommend_for(A)

    assert result.status == RecommendationStatus.PARTIAL
    assert _ids(result) == [B, C, D]
    assert result.detail


def test_profile_excludes_rated_and_skips_unknown_ids(engine):
    result = engine.recommend_for_profile([RatedItem(A, 5), RatedItem(999, 4)])

    assert result.status == RecommendationStatus.COMPLETE
    assert set(_ids(result)) == {B, C, D}


def test_profile_without_high_ratings_still_walks_from_rated_books(engine):
    result = engine.recommend_for_profile([RatedItem(D, 2)])
    assert D not in _ids(result)
    assert C in _ids(result)


def test_profile_of_unknown_books_is_empty(engine):
    result = engine.recommend_for_profile([RatedItem(999, 5)])
    assert result.status == RecommendationStatus.EMPTY
    assert result.items == []


def test_profile_suggests_next_in_series(engine):
    result = engine.recommend_for_profile([RatedItem(C, 5)])
    delta = next(rec for rec in result.items if rec.item.id == D)
    assert delta.reasons[0].kind == "next_in_series"
    assert delta.reasons[0].text == "Next after Gamma"


def test_neighborhood_includes_center_and_internal_edges(engine):
    one_hop = engine.get_neighborhood_graph(A, depth=1)
    assert {n.item.id for n in one_hop.nodes} == {A, B, C}
    assert len(one_hop.edges) == 2

    two_hops = engine.get_neighborhood_graph(A, depth=2)
    assert {n.item.id for n in two_hops.nodes} == {A, B, C, D}
    assert len(two_hops.edges) == 3
    assert two_hops.snapshot_version == 1


def test_neighborhood_respects_node_cap(engine):
    result = engine.get_neighborhood_graph(A, depth=2, max_nodes=2)
    assert [n.item.id for n in result.nodes] == [A, B]
    assert result.truncated
    assert len(result.edges) == 1


@pytest.mark.parametrize("depth,max_nodes", [(0, 10), (4, 10), (2, 0), (2, 201)])
def test_neighborhood_bounds(engine, depth, max_nodes):
    with pytest.raises(InvalidParameterError):
        engine.get_neighborhood_graph(A, depth=depth, max_nodes=max_nodes)


def test_neighborhood_unknown_center(engine):
    with pytest.raises(UnknownItemError):
        engine.get_neighborhood_graph(999)


def test_isolated_center_links_vector_neighbors(catalog, graph):
    store = SnapshotStore()
    store.publish(catalog, graph)
    vectors = VectorIndex(dimension=2)
    vectors.upsert(E, [1.0, 0.0])
    vectors.upsert(B, [0.9, 0.1])
    vectors.upsert(D, [0.0, 1.0])
    engine = RecommendationEngine(store, vectors, EngineConfig(default_deadline_ms=None))

    result = engine.get_neighborhood_graph(E, depth=2)

    node_ids = {n.item.id for n in result.nodes}
    assert {E, B} <= node_ids
    assert D not in node_ids
    link = next(e for e in result.edges if {e.source, e.target} == {E, B})
    assert link.edge_type == EdgeType.CONTENT
    assert link.weight == pytest.approx(vectors.similarity(E, B))
    # The stored graph is untouched
    assert store.current().graph.out_degree(E) == 0


def test_engine_config_from_settings():
    settings = Settings(
        max_hops=2,
        hop_min_weights=[0.8, 0.4],
        pagerank_normalization="weight_sum",
        mmr_lambda=0.5,
        default_deadline_ms=None,
    )
    config = EngineConfig.from_settings(settings)
    assert config.expansion.max_hops == 2
    assert config.expansion.min_weights == (0.8, 0.4)
    assert config.pagerank.normalization == TransitionNormalization.WEIGHT_SUM
    assert config.diversity.lambda_ == 0.5
    assert config.default_deadline_ms is None
