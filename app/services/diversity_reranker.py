"""
Diversity reranking for recommendations.

Uses Maximal Marginal Relevance (MMR) to balance relevance with diversity,
so the final list is not five near-identical books by the same author.

    mmr(c) = lambda * relevance(c) - (1 - lambda) * max(sim(c, s) for s in selected)

relevance is the ranker score normalized by the best candidate score, plus
a bonus for the next unread entry of a series the reader already engaged
with. sim is embedding cosine similarity (0 when either side has no vector).
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from app.core.deadline import Deadline
from app.core.exceptions import InvalidParameterError
from app.services.catalog import Catalog
from app.services.vector_index import VectorIndex

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiversityConfig:
    lambda_: float = 0.7  # Higher = more relevance, lower = more diversity
    max_per_author: int = 2
    series_next_bonus: float = 0.20

    def validate(self) -> None:
        if not 0.0 <= self.lambda_ <= 1.0:
            raise InvalidParameterError("lambda_", self.lambda_, "must be in [0, 1]")
        if self.max_per_author < 1:
            raise InvalidParameterError("max_per_author", self.max_per_author, "must be positive")


@dataclass
class RerankedItem:
    """A candidate with its relevance and final MMR score."""

    item_id: int
    original_score: float
    relevance: float
    reranked_score: float = 0.0
    series_bonus: bool = False


@dataclass
class RerankResult:
    items: list[RerankedItem]
    partial: bool = False


class DiversityReranker:
    """
    Rerank candidates for diversity using MMR.

    Author keys come from the catalog; similarity between candidates comes
    from the vector index.
    """

    def __init__(self, catalog: Catalog, vectors: VectorIndex, config: DiversityConfig = DiversityConfig()):
        config.validate()
        self.catalog = catalog
        self.vectors = vectors
        self.config = config

    def rerank(
        self,
        scores: Mapping[int, float],
        top_k: int,
        exclude: Iterable[int] = (),
        series_next: Iterable[int] = (),
        deadline: Optional[Deadline] = None,
    ) -> RerankResult:
        """
        Select up to top_k candidates.

        Args:
            scores: Candidate id -> ranker score
            top_k: Number of items to return
            exclude: Ids already rated/read, removed before selection
            series_next: Ids that are the next entry of an engaged series
            deadline: Stops selection early; what was selected is returned

        Returns:
            RerankResult in selection order
        """
        if top_k < 1:
            raise InvalidParameterError("top_k", top_k, "must be positive")

        excluded = set(exclude)
        bonus_ids = set(series_next)
        items = self._build_items(scores, excluded, bonus_ids)
        if not items:
            return RerankResult(items=[])

        selected: list[RerankedItem] = []
        remaining = sorted(items, key=lambda i: (-i.relevance, i.item_id))
        author_counts: dict[str, int] = {}
        partial = False

        while len(selected) < top_k and remaining:
            if deadline is not None and deadline.expired():
                partial = True
                break

            best_item = None
            best_key = None

            for item in remaining:
                if not self._author_allowed(item.item_id, author_counts):
                    continue

                if not selected:
                    # First item: just use relevance
                    mmr_score = item.relevance
                else:
                    max_sim = max(self.vectors.similarity(item.item_id, sel.item_id) for sel in selected)
                    mmr_score = self.config.lambda_ * item.relevance - (1 - self.config.lambda_) * max_sim

                key = (mmr_score, item.relevance, -item.item_id)
                if best_key is None or key > best_key:
                    best_key = key
                    best_item = item

            if best_item is None:
                # Everything left is blocked by the author cap
                break

            best_item.reranked_score = best_key[0]
            selected.append(best_item)
            remaining.remove(best_item)
            author = self._author(best_item.item_id)
            if author:
                author_counts[author] = author_counts.get(author, 0) + 1

        if partial and not selected:
            selected = self._top_by_relevance(remaining, top_k)

        if partial:
            logger.warning(f"MMR selection stopped by deadline with {len(selected)}/{top_k} items")

        return RerankResult(items=selected, partial=partial)

    def _build_items(
        self,
        scores: Mapping[int, float],
        excluded: set[int],
        bonus_ids: set[int],
    ) -> list[RerankedItem]:
        candidates = {i: s for i, s in scores.items() if i not in excluded and i in self.catalog}
        if not candidates:
            return []

        # Normalize scores so relevance is on the same scale as cosine penalties
        max_score = max(candidates.values())
        if max_score <= 0:
            max_score = 1.0

        items = []
        for item_id, score in candidates.items():
            relevance = max(score, 0.0) / max_score
            bonus = item_id in bonus_ids
            if bonus:
                relevance += self.config.series_next_bonus
            items.append(RerankedItem(
                item_id=item_id,
                original_score=score,
                relevance=relevance,
                series_bonus=bonus,
            ))
        return items

    def _author(self, item_id: int) -> Optional[str]:
        item = self.catalog.get(item_id)
        return item.author_key if item else None

    def _author_allowed(self, item_id: int, author_counts: dict[str, int]) -> bool:
        author = self._author(item_id)
        if not author:
            return True
        return author_counts.get(author, 0) < self.config.max_per_author

    def _top_by_relevance(self, remaining: list[RerankedItem], top_k: int) -> list[RerankedItem]:
        """Relevance-only selection honoring the author cap (deadline fallback)."""
        picked: list[RerankedItem] = []
        author_counts: dict[str, int] = {}
        for item in sorted(remaining, key=lambda i: (-i.relevance, i.item_id)):
            if len(picked) >= top_k:
                break
            if not self._author_allowed(item.item_id, author_counts):
                continue
            item.reranked_score = item.relevance
            picked.append(item)
            author = self._author(item.item_id)
            if author:
                author_counts[author] = author_counts.get(author, 0) + 1
        return picked

