"""
Multi-hop candidate expansion over the similarity graph.

Breadth-first walk from seed books. Following edge (u -> v) of weight w at
hop index h (0-based) is allowed when w >= min_weights[h], and gives v the
accumulated weight

    accumulated(u) * w * decay^h

Every candidate keeps the best accumulated weight over all paths reaching
it, together with that path (used later to explain the recommendation).

The walk is bounded by max_hops and by max_candidates. Each hop level is
processed heaviest-first, so when the candidate cap is hit the entries that
never get expanded are the lowest-weight ones.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional

from app.core.deadline import Deadline
from app.core.exceptions import InvalidParameterError
from app.services.similarity_graph import GraphEdge, SimilarityGraph

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExpansionConfig:
    """Traversal bounds. Defaults tuned for 'more like this' requests."""

    max_hops: int = 3
    min_weights: tuple[float, ...] = (0.70, 0.50, 0.60)
    decay: float = 0.8
    max_candidates: int = 500
    max_allowed_hops: int = 5

    def threshold(self, hop: int) -> float:
        """Minimum edge weight at a hop index; past the list, the last threshold applies."""
        if hop < len(self.min_weights):
            return self.min_weights[hop]
        return self.min_weights[-1]

    def validate(self) -> None:
        """Reject out-of-bounds parameters before any traversal starts."""
        if not 1 <= self.max_hops <= self.max_allowed_hops:
            raise InvalidParameterError(
                "max_hops", self.max_hops, f"must be between 1 and {self.max_allowed_hops}"
            )
        if not self.min_weights:
            raise InvalidParameterError("min_weights", self.min_weights, "at least one threshold required")
        if any(not 0.0 <= w <= 1.0 for w in self.min_weights):
            raise InvalidParameterError("min_weights", self.min_weights, "thresholds must be within [0, 1]")
        if not 0.0 < self.decay <= 1.0:
            raise InvalidParameterError("decay", self.decay, "must be in (0, 1]")
        if self.max_candidates < 1:
            raise InvalidParameterError("max_candidates", self.max_candidates, "must be positive")


@dataclass(frozen=True)
class Candidate:
    """A book reached by expansion, with its best path."""

    item_id: int
    weight: float
    path: tuple[int, ...]
    edges: tuple[GraphEdge, ...] = ()
    hops: int = 0

    @property
    def origin(self) -> int:
        return self.path[0]


@dataclass
class ExpansionResult:
    candidates: list[Candidate] = field(default_factory=list)
    partial: bool = False  # deadline hit before the walk finished
    truncated: bool = False  # candidate cap hit

    def by_id(self) -> dict[int, Candidate]:
        return {c.item_id: c for c in self.candidates}

    @property
    def reached(self) -> set[int]:
        return {c.item_id for c in self.candidates}


def expand(
    graph: SimilarityGraph,
    seeds: Mapping[int, float],
    config: ExpansionConfig = ExpansionConfig(),
    exclude: Iterable[int] = (),
    deadline: Optional[Deadline] = None,
) -> ExpansionResult:
    """
    Walk the graph from seed books.

    Args:
        graph: Snapshot graph
        seeds: Seed id -> starting weight (1.0 for the queried book,
            KNN similarity for profile seeds). Seeds are candidates at hop 0
            unless excluded.
        config: Hop bounds, thresholds and decay
        exclude: Ids never returned as candidates (still traversed through)
        deadline: Optional request deadline

    Returns:
        ExpansionResult with candidates sorted by weight desc, id asc

    Raises:
        InvalidParameterError: when config is out of bounds
    """
    config.validate()
    excluded = set(exclude)

    best: dict[int, Candidate] = {}
    for seed, weight in seeds.items():
        start = min(max(float(weight), 0.0), 1.0)
        existing = best.get(seed)
        if existing is None or start > existing.weight:
            best[seed] = Candidate(item_id=seed, weight=start, path=(seed,), hops=0)

    result_count = sum(1 for node in best if node not in excluded)
    result = ExpansionResult()
    frontier = list(best.values())

    for hop in range(config.max_hops):
        if not frontier:
            break

        frontier.sort(key=lambda c: (-c.weight, c.item_id))
        min_weight = config.threshold(hop)
        decay = config.decay ** hop
        next_level: dict[int, Candidate] = {}
        stop = False

        for entry in frontier:
            if deadline is not None and deadline.expired():
                result.partial = True
                stop = True
                break
            if result_count >= config.max_candidates:
                result.truncated = True
                stop = True
                break

            for edge in graph.neighbors(entry.item_id):
                # neighbors() is sorted heaviest-first
                if edge.weight < min_weight:
                    break

                target = edge.target
                if target in entry.path:
                    continue

                new_weight = entry.weight * edge.weight * decay
                current = best.get(target)
                if current is not None and new_weight <= current.weight:
                    continue

                is_new_result = current is None and target not in excluded
                if is_new_result and result_count >= config.max_candidates:
                    result.truncated = True
                    continue

                candidate = Candidate(
                    item_id=target,
                    weight=new_weight,
                    path=entry.path + (target,),
                    edges=entry.edges + (edge,),
                    hops=hop + 1,
                )
                best[target] = candidate
                next_level[target] = candidate
                if is_new_result:
                    result_count += 1

        if stop:
            break
        frontier = list(next_level.values())

    result.candidates = sorted(
        (c for node, c in best.items() if node not in excluded),
        key=lambda c: (-c.weight, c.item_id),
    )

    logger.debug(
        f"Expanded {len(seeds)} seeds to {len(result.candidates)} candidates "
        f"(partial={result.partial}, truncated={result.truncated})"
    )
    return result
