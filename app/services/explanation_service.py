"""
Generate explanations for recommendations.

Reads the edge evidence along the best path the expander recorded for a
candidate and turns it into structured reasons ("same author as ...",
"next in series", ...). Two reasons come from outside the graph and are only
emitted when the caller supplies the supporting fact in ExplanationContext.
"""

import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

from app.services.catalog import Catalog, Item
from app.services.edge_fusion import EdgeType
from app.services.graph_expander import Candidate
from app.services.similarity_graph import GraphEdge

logger = logging.getLogger(__name__)

SIMILAR_CONTENT = "similar_content"
SAME_AUTHOR = "same_author"
SAME_SERIES = "same_series"
TAG_OVERLAP = "tag_overlap"
READERS_ALSO_LIKED = "readers_also_liked"
NEXT_IN_SERIES = "next_in_series"


@dataclass(frozen=True)
class Reason:
    """A single reason for a recommendation."""

    kind: str
    weight: float  # contributing evidence, used for ordering
    similarity: Optional[float] = None
    author: Optional[str] = None
    series: Optional[str] = None
    position: Optional[str] = None  # "next", "previous", "in series"
    tags: tuple[str, ...] = ()
    based_on: Optional[str] = None
    previous: Optional[str] = None

    @property
    def text(self) -> str:
        if self.kind == SIMILAR_CONTENT:
            return f"Similar content ({self.similarity:.0%} match)"
        if self.kind == SAME_AUTHOR:
            return f"Also by {self.author}"
        if self.kind == SAME_SERIES:
            if self.position == "next":
                return f"Next book in {self.series}"
            if self.position == "previous":
                return f"Previous book in {self.series}"
            return f"Part of {self.series}"
        if self.kind == TAG_OVERLAP:
            return f"Shares tags: {', '.join(self.tags)}"
        if self.kind == READERS_ALSO_LIKED:
            return f"Readers who liked {self.based_on} also liked this"
        if self.kind == NEXT_IN_SERIES:
            return f"Next after {self.previous}"
        return self.kind


@dataclass
class ExplanationContext:
    """Facts synthesized outside the graph, keyed by recommended item id."""

    next_in_series: Mapping[int, str] = field(default_factory=dict)  # id -> previous title
    readers_also_liked: Mapping[int, str] = field(default_factory=dict)  # id -> based-on title


def series_position(source: Item, target: Item) -> str:
    """Where target sits in the series relative to source."""
    if source.series_index is not None and target.series_index is not None:
        if target.series_index == source.series_index + 1:
            return "next"
        if target.series_index == source.series_index - 1:
            return "previous"
    return "in series"


class ExplanationService:
    """Turn best-path evidence into ordered reasons."""

    def __init__(
        self,
        catalog: Catalog,
        content_min_similarity: float = 0.7,
        max_reasons: int = 4,
        readers_also_liked_weight: float = 0.5,
    ):
        self.catalog = catalog
        self.content_min_similarity = content_min_similarity
        self.max_reasons = max_reasons
        self.readers_also_liked_weight = readers_also_liked_weight

    def generate_explanations(
        self,
        candidate: Candidate,
        context: Optional[ExplanationContext] = None,
    ) -> list[Reason]:
        """
        Generate reasons for a candidate.

        Args:
            candidate: Expansion candidate with its best path
            context: Externally supplied facts (series order, co-readership)

        Returns:
            Reasons sorted by weight desc, at most max_reasons. Empty when
            nothing qualifies.
        """
        best: dict[str, Reason] = {}
        user_signal = 0.0

        for edge in candidate.edges:
            for reason in self._edge_reasons(edge):
                existing = best.get(reason.kind)
                if existing is None or reason.weight > existing.weight:
                    best[reason.kind] = reason
            user_signal = max(user_signal, edge.signal_values().get(EdgeType.USER, 0.0))

        if context is not None:
            previous = context.next_in_series.get(candidate.item_id)
            if previous:
                best[NEXT_IN_SERIES] = Reason(kind=NEXT_IN_SERIES, weight=1.0, previous=previous)

            based_on = context.readers_also_liked.get(candidate.item_id)
            if based_on:
                best[READERS_ALSO_LIKED] = Reason(
                    kind=READERS_ALSO_LIKED,
                    weight=user_signal or self.readers_also_liked_weight,
                    based_on=based_on,
                )

        reasons = sorted(best.values(), key=lambda r: (-r.weight, r.kind))
        if reasons:
            logger.debug(f"Generated {len(reasons)} reasons for {candidate.item_id}")
        return reasons[:self.max_reasons]

    def _edge_reasons(self, edge: GraphEdge) -> list[Reason]:
        source = self.catalog.get(edge.source)
        target = self.catalog.get(edge.target)
        if source is None or target is None:
            return []

        reasons = []
        for edge_type, value in edge.signal_values().items():
            if edge_type == EdgeType.CONTENT:
                if value >= self.content_min_similarity:
                    reasons.append(Reason(kind=SIMILAR_CONTENT, weight=value, similarity=value))
            elif edge_type == EdgeType.AUTHOR:
                reasons.append(Reason(kind=SAME_AUTHOR, weight=value, author=target.author or source.author))
            elif edge_type == EdgeType.SERIES:
                reasons.append(Reason(
                    kind=SAME_SERIES,
                    weight=value,
                    series=target.series or source.series,
                    position=series_position(source, target),
                ))
            elif edge_type == EdgeType.TAG:
                shared = tuple(sorted(source.tags & target.tags))
                if shared:
                    reasons.append(Reason(kind=TAG_OVERLAP, weight=value, tags=shared))
        return reasons

