import pytest

from app.core.deadline import Deadline
from app.core.exceptions import InvalidParameterError
from app.services.edge_fusion import EdgeType
from app.services.graph_expander import ExpansionConfig, expand
from app.services.similarity_graph import GraphEdge, SimilarityGraph

from conftest import A, B, C, D


class CountdownDeadline(Deadline):
    """Expires after a fixed number of checks."""

    def __init__(self, checks: int):
        super().__init__(None)
        self.remaining_checks = checks

    def expired(self) -> bool:
        self.remaining_checks -= 1
        return self.remaining_checks < 0


def test_two_hop_scenario(graph):
    result = expand(graph, {A: 1.0}, ExpansionConfig(max_hops=2), exclude=[A])
    by_id = result.by_id()

    assert set(by_id) == {B, C, D}
    assert by_id[B].weight == pytest.approx(0.9)
    assert by_id[C].weight == pytest.approx(0.85)
    assert by_id[D].weight == pytest.approx(0.85 * 0.95 * 0.8)
    assert by_id[D].hops == 2
    assert by_id[D].path == (A, C, D)
    assert [e.edge_type for e in by_id[D].edges] == [EdgeType.AUTHOR, EdgeType.SERIES]
    assert [c.item_id for c in result.candidates] == [B, C, D]


def test_one_hop_stops_before_series_edge(graph):
    result = expand(graph, {A: 1.0}, ExpansionConfig(max_hops=1), exclude=[A])
    assert result.reached == {B, C}


def test_increasing_max_hops_never_shrinks_reach():
    # Chain 1-2-3-4-5 plus a shortcut 1-5
    edges = [GraphEdge(i, i + 1, EdgeType.CONTENT, 0.9) for i in range(1, 5)]
    edges.append(GraphEdge(1, 5, EdgeType.TAG, 0.75))
    graph = SimilarityGraph.from_edges(edges)

    previous: set[int] = set()
    for hops in range(1, 6):
        reached = expand(graph, {1: 1.0}, ExpansionConfig(max_hops=hops, min_weights=(0.7,))).reached
        assert previous <= reached
        previous = reached
    assert previous == {1, 2, 3, 4, 5}


def test_hop_threshold_blocks_weak_edges():
    graph = SimilarityGraph.from_edges([GraphEdge(1, 2, EdgeType.TAG, 0.65)])
    assert expand(graph, {1: 1.0}, ExpansionConfig(), exclude=[1]).candidates == []


def test_thresholds_past_the_list_reuse_the_last_one():
    config = ExpansionConfig(max_hops=5, min_weights=(0.7, 0.5))
    assert config.threshold(0) == 0.7
    assert config.threshold(4) == 0.5


def test_best_path_wins_over_first_path():
    # 1-3 directly is weak; 1-2-3 is stronger after decay
    graph = SimilarityGraph.from_edges([
        GraphEdge(1, 2, EdgeType.CONTENT, 1.0),
        GraphEdge(2, 3, EdgeType.CONTENT, 1.0),
        GraphEdge(1, 3, EdgeType.TAG, 0.75),
    ])
    config = ExpansionConfig(max_hops=2, min_weights=(0.7,), decay=1.0)
    candidate = expand(graph, {1: 1.0}, config, exclude=[1]).by_id()[3]
    assert candidate.weight == pytest.approx(1.0)
    assert candidate.path == (1, 2, 3)


def test_candidate_cap_truncates_lowest_weights():
    edges = [GraphEdge(0, i, EdgeType.CONTENT, 0.7 + i / 100) for i in range(1, 11)]
    graph = SimilarityGraph.from_edges(edges)
    result = expand(graph, {0: 1.0}, ExpansionConfig(max_candidates=3), exclude=[0])
    assert result.truncated
    assert result.reached == {10, 9, 8}


def test_seeds_are_candidates_unless_excluded(graph):
    result = expand(graph, {A: 1.0}, ExpansionConfig(max_hops=1))
    assert A in result.reached
    assert result.by_id()[A].hops == 0


def test_deadline_returns_partial_result(graph):
    # Allow the seed level (A) and one hop-1 entry, then expire
    result = expand(graph, {A: 1.0}, ExpansionConfig(max_hops=3), exclude=[A], deadline=CountdownDeadline(2))
    assert result.partial
    assert {B, C} <= result.reached


@pytest.mark.parametrize("config", [
    ExpansionConfig(max_hops=0),
    ExpansionConfig(max_hops=6),
    ExpansionConfig(min_weights=()),
    ExpansionConfig(decay=0.0),
    ExpansionConfig(max_candidates=0),
])
def test_invalid_parameters_are_rejected_before_work(graph, config):
    with pytest.raises(InvalidParameterError):
        expand(graph, {A: 1.0}, config)
