"""
Edge weight fusion.

Combines the signals that apply to a pair of books into a single weight:

    Signal        Included when                     Value               Weight
    content       both embeddings present           cosine similarity   0.40
    author        same author                       0.85                0.20
    series        same series                       0.95 adjacent/0.75  0.15
    tag           Jaccard(tags) > 0.20              Jaccard             0.15
    user          collaborative similarity > 0      supplied value      0.10

The combined weight is a weighted average normalized over the signals that
are present, so a pair with only an author match scores 0.85 and is not
dragged down by the missing embedding. No qualifying signal means no edge.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from app.services.catalog import Item

logger = logging.getLogger(__name__)


class EdgeType(str, Enum):
    """Relationship kinds between two books."""

    CONTENT = "content"
    AUTHOR = "author"
    SERIES = "series"
    TAG = "tag"
    USER = "user"


# Tie-break order for the primary type of a fused edge
PRIMARY_TYPE_ORDER = (
    EdgeType.CONTENT,
    EdgeType.SERIES,
    EdgeType.AUTHOR,
    EdgeType.TAG,
    EdgeType.USER,
)


@dataclass(frozen=True)
class FusionWeights:
    """Static signal weights and constant signal values."""

    content: float = 0.40
    author: float = 0.20
    series: float = 0.15
    tag: float = 0.15
    user: float = 0.10
    author_value: float = 0.85
    series_adjacent_value: float = 0.95
    series_value: float = 0.75
    tag_min_jaccard: float = 0.20

    def weight_for(self, edge_type: EdgeType) -> float:
        return {
            EdgeType.CONTENT: self.content,
            EdgeType.AUTHOR: self.author,
            EdgeType.SERIES: self.series,
            EdgeType.TAG: self.tag,
            EdgeType.USER: self.user,
        }[edge_type]


DEFAULT_WEIGHTS = FusionWeights()


@dataclass(frozen=True)
class FusedEdge:
    """Result of fusing the signals of one pair."""

    weight: float
    signals: dict[EdgeType, float] = field(default_factory=dict)
    primary_type: EdgeType = EdgeType.CONTENT


def jaccard(a: frozenset[str] | set[str], b: frozenset[str] | set[str]) -> float:
    """|A ∩ B| / |A ∪ B|, 0.0 when both sets are empty."""
    union = len(a | b)
    if union == 0:
        return 0.0
    return len(a & b) / union


def series_value(item_a: Item, item_b: Item, weights: FusionWeights = DEFAULT_WEIGHTS) -> float:
    """Series signal value: adjacent entries score higher. Unknown positions are not adjacent."""
    if item_a.series_index is not None and item_b.series_index is not None:
        if abs(item_a.series_index - item_b.series_index) <= 1.0:
            return weights.series_adjacent_value
    return weights.series_value


def collect_signals(
    item_a: Item,
    item_b: Item,
    content_similarity: Optional[float] = None,
    collaborative_similarity: Optional[float] = None,
    weights: FusionWeights = DEFAULT_WEIGHTS,
) -> dict[EdgeType, float]:
    """Evaluate every signal that applies to the pair. Absent signals are omitted."""
    signals: dict[EdgeType, float] = {}

    if content_similarity is not None:
        # Negative cosine means "unrelated" here, clamp so fused weight stays in [0, 1]
        signals[EdgeType.CONTENT] = min(max(float(content_similarity), 0.0), 1.0)

    if item_a.author_key and item_a.author_key == item_b.author_key:
        signals[EdgeType.AUTHOR] = weights.author_value

    if item_a.series_key and item_a.series_key == item_b.series_key:
        signals[EdgeType.SERIES] = series_value(item_a, item_b, weights)

    try:
        tag_sim = jaccard(frozenset(item_a.tags), frozenset(item_b.tags))
    except TypeError as e:
        # Malformed tag data only drops the tag signal for this pair
        logger.debug(f"Tag signal skipped for ({item_a.id}, {item_b.id}): {e}")
        tag_sim = 0.0
    if tag_sim > weights.tag_min_jaccard:
        signals[EdgeType.TAG] = tag_sim

    if collaborative_similarity is not None and collaborative_similarity > 0:
        signals[EdgeType.USER] = min(float(collaborative_similarity), 1.0)

    return signals


def combine(signals: dict[EdgeType, float], weights: FusionWeights = DEFAULT_WEIGHTS) -> Optional[float]:
    """Weighted average over present signals. None when no signal is present."""
    if not signals:
        return None

    total_weight = sum(weights.weight_for(t) for t in signals)
    if total_weight <= 0:
        return None

    combined = sum(value * weights.weight_for(t) for t, value in signals.items()) / total_weight
    return min(max(combined, 0.0), 1.0)


def primary_type(signals: dict[EdgeType, float], weights: FusionWeights = DEFAULT_WEIGHTS) -> EdgeType:
    """Signal with the largest weighted contribution."""
    return max(
        signals,
        key=lambda t: (signals[t] * weights.weight_for(t), -PRIMARY_TYPE_ORDER.index(t)),
    )


def fuse_signals(
    item_a: Item,
    item_b: Item,
    content_similarity: Optional[float] = None,
    collaborative_similarity: Optional[float] = None,
    weights: FusionWeights = DEFAULT_WEIGHTS,
) -> Optional[FusedEdge]:
    """
    Compute the fused edge between two books.

    Args:
        item_a, item_b: The pair (order does not matter)
        content_similarity: Embedding cosine similarity, None if either embedding is missing
        collaborative_similarity: Externally computed "readers also liked" similarity
        weights: Static signal weights

    Returns:
        FusedEdge, or None when no signal qualifies (absence, not a zero edge)
    """
    if item_a.id == item_b.id:
        return None

    signals = collect_signals(item_a, item_b, content_similarity, collaborative_similarity, weights)
    weight = combine(signals, weights)
    if weight is None:
        return None

    return FusedEdge(weight=weight, signals=signals, primary_type=primary_type(signals, weights))
