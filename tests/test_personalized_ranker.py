import numpy as np
import pytest

from app.core.deadline import Deadline
from app.core.exceptions import InvalidParameterError
from app.services.edge_fusion import EdgeType
from app.services.personalized_ranker import (
    PageRankConfig,
    TransitionNormalization,
    build_personalization,
    build_transition_matrix,
    personalized_pagerank,
)
from app.services.similarity_graph import GraphEdge, SimilarityGraph


class ExpiredDeadline(Deadline):
    def expired(self) -> bool:
        return True


def _triangle(weight: float) -> SimilarityGraph:
    return SimilarityGraph.from_edges([
        GraphEdge(1, 2, EdgeType.CONTENT, weight),
        GraphEdge(2, 3, EdgeType.CONTENT, weight),
        GraphEdge(1, 3, EdgeType.CONTENT, weight),
    ])


def _weighted_cycle() -> SimilarityGraph:
    return SimilarityGraph.from_edges([
        GraphEdge(1, 2, EdgeType.CONTENT, 0.9),
        GraphEdge(2, 3, EdgeType.AUTHOR, 0.85),
        GraphEdge(3, 4, EdgeType.SERIES, 0.5),
        GraphEdge(4, 1, EdgeType.TAG, 0.4),
    ])


def test_scores_are_non_negative(graph):
    result = personalized_pagerank(graph, seeds=[1], preferences=[4])
    assert all(score >= 0 for score in result.scores.values())
    assert result.iterations_run == 20
    assert not result.partial


@pytest.mark.parametrize("normalization", list(TransitionNormalization))
def test_uniform_personalization_sums_to_one_on_closed_unit_graph(normalization):
    config = PageRankConfig(normalization=normalization)
    result = personalized_pagerank(_triangle(1.0), config=config)
    assert sum(result.scores.values()) == pytest.approx(1.0, abs=1e-9)


def test_weight_sum_normalization_preserves_mass_with_fractional_weights():
    config = PageRankConfig(normalization=TransitionNormalization.WEIGHT_SUM)
    result = personalized_pagerank(_weighted_cycle(), config=config)
    assert sum(result.scores.values()) == pytest.approx(1.0, abs=1e-9)


def test_out_degree_normalization_leaks_mass_through_weak_edges():
    result = personalized_pagerank(_weighted_cycle())
    assert sum(result.scores.values()) < 1.0


def test_transition_columns_follow_normalization():
    graph = _weighted_cycle()
    nodes = graph.nodes
    by_degree = build_transition_matrix(graph, nodes, TransitionNormalization.OUT_DEGREE)
    by_weight = build_transition_matrix(graph, nodes, TransitionNormalization.WEIGHT_SUM)

    # Node 1 has edges of weight 0.9 (to 2) and 0.4 (to 4)
    assert by_degree[1, 0] == pytest.approx(0.9 / 2)
    assert by_weight[1, 0] == pytest.approx(0.9 / 1.3)
    assert list(np.asarray(by_weight.sum(axis=0)).ravel()) == pytest.approx([1.0, 1.0, 1.0, 1.0])


def test_personalization_splits_mass_between_seeds_and_preferences():
    p = build_personalization([1, 2, 3, 4], seeds=[1, 99], preferences=[3, 4], teleport_weight=0.3)
    # 99 is not in the node set and does not dilute the seed share
    assert list(p) == pytest.approx([0.7, 0.0, 0.15, 0.15])


def test_personalization_is_uniform_without_seeds_or_preferences():
    p = build_personalization([1, 2, 3, 4], seeds=[], preferences=[], teleport_weight=0.3)
    assert list(p) == pytest.approx([0.25] * 4)


def test_seed_neighborhood_outranks_far_nodes():
    graph = SimilarityGraph.from_edges([
        GraphEdge(i, i + 1, EdgeType.CONTENT, 0.9) for i in range(1, 6)
    ])
    result = personalized_pagerank(graph, seeds=[1])
    assert result.score(1) > result.score(3) > result.score(6)


def test_nodes_outside_the_ranked_set_score_zero(graph):
    result = personalized_pagerank(graph, seeds=[1], nodes=[1, 2])
    assert set(result.scores) == {1, 2}
    assert result.score(4) == 0.0


def test_expired_deadline_returns_partial_vector(graph):
    result = personalized_pagerank(graph, seeds=[1], deadline=ExpiredDeadline())
    assert result.partial
    assert result.iterations_run == 0
    assert len(result.scores) == graph.node_count


def test_empty_graph_gives_empty_scores():
    assert personalized_pagerank(SimilarityGraph.empty()).scores == {}


def test_invalid_config_is_rejected(graph):
    with pytest.raises(InvalidParameterError):
        personalized_pagerank(graph, config=PageRankConfig(alpha=1.0))
    with pytest.raises(InvalidParameterError):
        personalized_pagerank(graph, config=PageRankConfig(iterations=0))
