"""
Personalized PageRank over the similarity graph.

Random walk with restart biased toward the request:
- seed books (the queried book / profile neighbors) share (1 - teleport_weight)
- preference books (highly rated) share teleport_weight
- with neither, the restart is uniform 1/n

Power iteration runs a fixed number of rounds, no convergence check, so the
cost of a request is bounded by iterations * edges.

    score'(v) = alpha * sum_{u -> v} score(u) * w(u, v) / norm(u)
              + (1 - alpha) * personalization(v)

norm(u) is selected by TransitionNormalization:
- OUT_DEGREE (default): raw edge count of u. A node passes on
  mean(out weights) of its mass, so weak edges leak probability and the total
  stays at 1 only when every edge weight is 1.
- WEIGHT_SUM: summed edge weight of u. Columns are stochastic, so on a graph
  without dangling nodes the total mass is preserved.
Dangling nodes (no out edges) keep their mass out of the walk in both modes.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

import numpy as np
from scipy.sparse import csr_matrix

from app.core.deadline import Deadline
from app.core.exceptions import InvalidParameterError
from app.services.similarity_graph import SimilarityGraph

logger = logging.getLogger(__name__)


class TransitionNormalization(str, Enum):
    OUT_DEGREE = "out_degree"
    WEIGHT_SUM = "weight_sum"


@dataclass(frozen=True)
class PageRankConfig:
    alpha: float = 0.85  # damping
    teleport_weight: float = 0.3  # restart mass given to preference nodes
    iterations: int = 20
    normalization: TransitionNormalization = TransitionNormalization.OUT_DEGREE

    def validate(self) -> None:
        if not 0.0 <= self.alpha < 1.0:
            raise InvalidParameterError("alpha", self.alpha, "must be in [0, 1)")
        if not 0.0 <= self.teleport_weight <= 1.0:
            raise InvalidParameterError("teleport_weight", self.teleport_weight, "must be in [0, 1]")
        if self.iterations < 1:
            raise InvalidParameterError("iterations", self.iterations, "must be positive")


@dataclass
class RankResult:
    scores: dict[int, float] = field(default_factory=dict)
    iterations_run: int = 0
    partial: bool = False

    def score(self, node: int) -> float:
        """Score of a node; nodes outside the ranked set score 0."""
        return self.scores.get(node, 0.0)


def build_transition_matrix(
    graph: SimilarityGraph,
    nodes: list[int],
    normalization: TransitionNormalization = TransitionNormalization.OUT_DEGREE,
) -> csr_matrix:
    """
    Column-oriented transition matrix: M[v, u] = w(u, v) / norm(u).

    Only edges with both endpoints in nodes are used.
    """
    index = {node: i for i, node in enumerate(nodes)}
    rows: list[int] = []
    cols: list[int] = []
    data: list[float] = []

    for u in nodes:
        out = [e for e in graph.neighbors(u) if e.target in index]
        if not out:
            continue

        if normalization == TransitionNormalization.WEIGHT_SUM:
            norm = sum(e.weight for e in out)
        else:
            norm = float(len(out))
        if norm <= 0:
            continue

        col = index[u]
        for edge in out:
            rows.append(index[edge.target])
            cols.append(col)
            data.append(edge.weight / norm)

    n = len(nodes)
    # Parallel typed edges between the same pair are summed by csr construction
    return csr_matrix((data, (rows, cols)), shape=(n, n), dtype=np.float64)


def build_personalization(
    nodes: list[int],
    seeds: Iterable[int],
    preferences: Iterable[int],
    teleport_weight: float,
) -> np.ndarray:
    """
    Restart distribution over nodes.

    Seeds and preferences not in nodes are ignored before the shares are
    computed. A node that is both seed and preference gets both shares.
    """
    index = {node: i for i, node in enumerate(nodes)}
    seed_idx = sorted({index[s] for s in seeds if s in index})
    pref_idx = sorted({index[p] for p in preferences if p in index})
    n = len(nodes)
    p = np.zeros(n, dtype=np.float64)

    if not seed_idx and not pref_idx:
        if n:
            p.fill(1.0 / n)
        return p

    if seed_idx:
        p[seed_idx] += (1.0 - teleport_weight) / len(seed_idx)
    if pref_idx:
        p[pref_idx] += teleport_weight / len(pref_idx)
    return p


def personalized_pagerank(
    graph: SimilarityGraph,
    seeds: Iterable[int] = (),
    preferences: Iterable[int] = (),
    config: PageRankConfig = PageRankConfig(),
    nodes: Optional[Iterable[int]] = None,
    deadline: Optional[Deadline] = None,
) -> RankResult:
    """
    Score nodes by personalized PageRank.

    Args:
        graph: Graph (usually the subgraph of nodes reached by expansion)
        seeds: Seed ids
        preferences: Preference ids (e.g. books rated 4+)
        config: Damping, teleport split, iteration count, normalization
        nodes: Node set to rank, defaults to all graph nodes
        deadline: Checked before every iteration; on expiry the latest
            vector is returned with partial=True

    Returns:
        RankResult with a non-negative score per ranked node
    """
    config.validate()
    node_list = sorted(set(nodes)) if nodes is not None else graph.nodes
    n = len(node_list)
    if n == 0:
        return RankResult()

    transition = build_transition_matrix(graph, node_list, config.normalization)
    personalization = build_personalization(node_list, seeds, preferences, config.teleport_weight)
    restart = (1.0 - config.alpha) * personalization

    scores = np.full(n, 1.0 / n, dtype=np.float64)
    iterations_run = 0
    partial = False

    for _ in range(config.iterations):
        if deadline is not None and deadline.expired():
            partial = True
            break
        scores = config.alpha * (transition @ scores) + restart
        iterations_run += 1

    if partial:
        logger.warning(f"PageRank stopped after {iterations_run}/{config.iterations} iterations (deadline)")

    return RankResult(
        scores={node: float(scores[i]) for i, node in enumerate(node_list)},
        iterations_run=iterations_run,
        partial=partial,
    )
