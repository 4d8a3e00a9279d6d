"""Recommendation engine service."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Mapping, Optional

from app.config import Settings
from app.core.deadline import Deadline
from app.core.exceptions import InvalidParameterError
from app.services.catalog import Catalog, Item
from app.services.diversity_reranker import DiversityConfig, DiversityReranker
from app.services.edge_fusion import EdgeType, FusionWeights, fuse_signals
from app.services.explanation_service import (
    SAME_AUTHOR,
    SAME_SERIES,
    ExplanationContext,
    ExplanationService,
    Reason,
    series_position,
)
from app.services.graph_expander import Candidate, ExpansionConfig, expand
from app.services.personalized_ranker import (
    PageRankConfig,
    TransitionNormalization,
    personalized_pagerank,
)
from app.services.similarity_graph import GraphEdge, GraphSnapshot, SimilarityGraph, SnapshotStore
from app.services.vector_index import VectorIndex

logger = logging.getLogger(__name__)

FALLBACK_SERIES_SCORE = 0.9
FALLBACK_AUTHOR_SCORE = 0.8


class RecommendationStatus(str, Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"  # deadline hit, best-effort ranking
    FALLBACK = "fallback"  # no graph candidates, same author/series suggestions
    EMPTY = "empty"


@dataclass(frozen=True)
class EngineConfig:
    """All engine tunables, grouped per pipeline stage."""

    fusion: FusionWeights = field(default_factory=FusionWeights)
    expansion: ExpansionConfig = field(default_factory=ExpansionConfig)
    pagerank: PageRankConfig = field(default_factory=PageRankConfig)
    diversity: DiversityConfig = field(default_factory=DiversityConfig)

    neighborhood_min_weight: float = 0.3
    neighborhood_max_depth: int = 3
    neighborhood_max_nodes: int = 200

    content_reason_min_similarity: float = 0.7
    max_reasons: int = 4

    default_limit: int = 20
    max_limit: int = 100
    seed_count: int = 10
    knn_seed_min_similarity: float = 0.3
    preference_min_rating: int = 4
    default_deadline_ms: Optional[int] = 2000

    min_edge_weight: float = 0.3
    max_edges_per_item: int = 50

    @classmethod
    def from_settings(cls, settings: Settings) -> "EngineConfig":
        return cls(
            fusion=FusionWeights(
                content=settings.content_weight,
                author=settings.author_weight,
                series=settings.series_weight,
                tag=settings.tag_weight,
                user=settings.user_weight,
                author_value=settings.author_value,
                series_adjacent_value=settings.series_adjacent_value,
                series_value=settings.series_value,
                tag_min_jaccard=settings.tag_min_jaccard,
            ),
            expansion=ExpansionConfig(
                max_hops=settings.max_hops,
                min_weights=tuple(settings.hop_min_weights),
                decay=settings.hop_decay,
                max_candidates=settings.max_candidates,
                max_allowed_hops=settings.max_allowed_hops,
            ),
            pagerank=PageRankConfig(
                alpha=settings.pagerank_alpha,
                teleport_weight=settings.pagerank_teleport_weight,
                iterations=settings.pagerank_iterations,
                normalization=TransitionNormalization(settings.pagerank_normalization),
            ),
            diversity=DiversityConfig(
                lambda_=settings.mmr_lambda,
                max_per_author=settings.max_per_author,
                series_next_bonus=settings.series_next_bonus,
            ),
            neighborhood_min_weight=settings.neighborhood_min_weight,
            neighborhood_max_depth=settings.neighborhood_max_depth,
            neighborhood_max_nodes=settings.neighborhood_max_nodes,
            content_reason_min_similarity=settings.content_reason_min_similarity,
            max_reasons=settings.max_reasons,
            default_limit=settings.default_limit,
            max_limit=settings.max_limit,
            seed_count=settings.seed_count,
            knn_seed_min_similarity=settings.knn_seed_min_similarity,
            preference_min_rating=settings.preference_min_rating,
            default_deadline_ms=settings.default_deadline_ms,
            min_edge_weight=settings.min_edge_weight,
            max_edges_per_item=settings.max_edges_per_item,
        )


@dataclass(frozen=True)
class RatedItem:
    item_id: int
    rating: int


@dataclass
class Recommendation:
    item: Item
    score: float
    reasons: list[Reason] = field(default_factory=list)
    path: tuple[int, ...] = ()
    edges: tuple[GraphEdge, ...] = ()  # best path evidence, in walk order


@dataclass
class RecommendationResult:
    items: list[Recommendation]
    status: RecommendationStatus
    detail: Optional[str] = None
    snapshot_version: Optional[int] = None
    elapsed_ms: float = 0.0


@dataclass
class NeighborhoodNode:
    item: Item
    hops: int
    weight: float


@dataclass
class NeighborhoodGraph:
    center_id: int
    nodes: list[NeighborhoodNode]
    edges: list[GraphEdge]
    truncated: bool = False
    snapshot_version: Optional[int] = None


class RecommendationEngine:
    """
    Graph recommendation pipeline.

    expand (multi-hop walk from seeds) -> rank (personalized PageRank over
    the reached subgraph) -> diversify (MMR) -> explain (best-path evidence).

    Requests read one snapshot from the store and use it until they return,
    so a concurrent rebuild never changes the graph under a running request.
    """

    def __init__(
        self,
        store: SnapshotStore,
        vectors: VectorIndex,
        config: Optional[EngineConfig] = None,
    ):
        self.store = store
        self.vectors = vectors
        self.config = config or EngineConfig()

    def recommend_for(
        self,
        item_id: int,
        limit: Optional[int] = None,
        exclude: Iterable[int] = (),
        deadline_ms: Optional[float] = None,
    ) -> RecommendationResult:
        """
        Recommend books similar to one book.

        Raises:
            UnknownItemError: item_id is not in the catalog
            InvalidParameterError: limit out of bounds
            GraphSnapshotError: no snapshot published
        """
        limit = self._check_limit(limit)
        deadline = self._deadline(deadline_ms)
        snapshot = self.store.current()
        item = snapshot.catalog.require(item_id)

        seeds = {item_id: 1.0}
        if snapshot.graph.out_degree(item_id) == 0 and item_id in self.vectors:
            # Isolated in the graph: start from its embedding neighbors instead
            for neighbor_id, similarity in self.vectors.knn_for_item(item_id, self.config.seed_count):
                if similarity >= self.config.knn_seed_min_similarity and neighbor_id in snapshot.catalog:
                    seeds[neighbor_id] = similarity
            logger.debug(f"Item {item_id} has no edges, seeded from {len(seeds) - 1} vector neighbors")

        # Books the reader already rated are never suggested back
        rated = {other.id for other in snapshot.catalog if other.rating is not None}
        excluded = {item_id, *exclude, *rated}
        preferences = snapshot.catalog.highly_rated(self.config.preference_min_rating)

        return self._run(
            snapshot,
            seeds=seeds,
            preferences=preferences,
            excluded=excluded,
            engaged=[item],
            limit=limit,
            deadline=deadline,
        )

    def recommend_for_profile(
        self,
        rated_items: Iterable[RatedItem],
        limit: Optional[int] = None,
        deadline_ms: Optional[float] = None,
    ) -> RecommendationResult:
        """
        Personalized recommendations from a reader's ratings.

        Rated books are never recommended back. Books rated at or above
        preference_min_rating bias the walk (restart mass and origins); the
        rating-weighted profile embedding picks additional seeds.
        """
        limit = self._check_limit(limit)
        deadline = self._deadline(deadline_ms)
        snapshot = self.store.current()
        catalog = snapshot.catalog

        ratings: dict[int, int] = {}
        for rated in rated_items:
            if rated.item_id not in catalog:
                logger.warning(f"Profile references unknown item {rated.item_id}, skipping")
                continue
            ratings[rated.item_id] = rated.rating

        if not ratings:
            return self._result([], RecommendationStatus.EMPTY, snapshot, deadline,
                                detail="Profile has no rated items in the catalog")

        preferences = sorted(i for i, r in ratings.items() if r >= self.config.preference_min_rating)
        origins = preferences or sorted(ratings)

        seeds: dict[int, float] = {i: 1.0 for i in origins}
        profile = self.vectors.average_vector(ratings, weights={i: float(r) for i, r in ratings.items()})
        if profile is None:
            logger.warning("No rated item has an embedding, profile seeds come from the graph only")
        else:
            for neighbor_id, similarity in self.vectors.knn(profile, self.config.seed_count, exclude=ratings):
                if similarity > 0 and neighbor_id in catalog:
                    seeds[neighbor_id] = similarity

        return self._run(
            snapshot,
            seeds=seeds,
            preferences=preferences,
            excluded=set(ratings),
            engaged=[catalog.require(i) for i in sorted(ratings)],
            limit=limit,
            deadline=deadline,
        )

    def get_neighborhood_graph(
        self,
        center_id: int,
        depth: int = 2,
        max_nodes: int = 50,
    ) -> NeighborhoodGraph:
        """
        Nodes and edges around a book, for visualization.

        Uses the same expansion as recommendations with the neighborhood
        threshold on every hop. The center itself is one of the nodes.
        A center with no stored edges is linked to its nearest embedding
        neighbors instead, with edges fused the same way a rebuild fuses them.
        """
        if not 1 <= depth <= self.config.neighborhood_max_depth:
            raise InvalidParameterError(
                "depth", depth, f"must be between 1 and {self.config.neighborhood_max_depth}"
            )
        if not 1 <= max_nodes <= self.config.neighborhood_max_nodes:
            raise InvalidParameterError(
                "max_nodes", max_nodes, f"must be between 1 and {self.config.neighborhood_max_nodes}"
            )

        snapshot = self.store.current()
        center = snapshot.catalog.require(center_id)

        graph = snapshot.graph
        if graph.out_degree(center_id) == 0 and center_id in self.vectors:
            vector_edges = self._vector_edges(snapshot.catalog, center, max_nodes)
            logger.debug(f"Item {center_id} has no edges, linked {len(vector_edges)} vector neighbors")
            graph = SimilarityGraph.from_edges([*graph.edges(), *vector_edges], nodes=graph.nodes)

        expansion = expand(
            graph,
            {center_id: 1.0},
            ExpansionConfig(
                max_hops=depth,
                min_weights=(self.config.neighborhood_min_weight,),
                decay=self.config.expansion.decay,
                max_candidates=max_nodes,
                max_allowed_hops=self.config.neighborhood_max_depth,
            ),
        )

        nodes = [
            NeighborhoodNode(item=snapshot.catalog.require(c.item_id), hops=c.hops, weight=c.weight)
            for c in expansion.candidates[:max_nodes]
            if c.item_id in snapshot.catalog
        ]
        node_ids = {n.item.id for n in nodes}
        edges = list(graph.subgraph(node_ids).edges())

        return NeighborhoodGraph(
            center_id=center_id,
            nodes=nodes,
            edges=edges,
            truncated=expansion.truncated,
            snapshot_version=snapshot.version,
        )

    def _vector_edges(self, catalog: Catalog, center: Item, k: int) -> list[GraphEdge]:
        edges = []
        for neighbor_id, similarity in self.vectors.knn_for_item(center.id, k):
            neighbor = catalog.get(neighbor_id)
            if neighbor is None or similarity < self.config.neighborhood_min_weight:
                continue
            fused = fuse_signals(center, neighbor, similarity, None, self.config.fusion)
            if fused is None or fused.weight < self.config.neighborhood_min_weight:
                continue
            edges.append(GraphEdge(
                source=center.id,
                target=neighbor_id,
                edge_type=fused.primary_type,
                weight=fused.weight,
                signals=dict(fused.signals),
            ))
        return edges

    def _run(
        self,
        snapshot: GraphSnapshot,
        seeds: Mapping[int, float],
        preferences: list[int],
        excluded: set[int],
        engaged: list[Item],
        limit: int,
        deadline: Deadline,
    ) -> RecommendationResult:
        catalog = snapshot.catalog
        graph = snapshot.graph

        expansion = expand(graph, seeds, self.config.expansion, exclude=excluded, deadline=deadline)
        candidates = {c.item_id: c for c in expansion.candidates if c.item_id in catalog}
        logger.debug(
            f"Expansion from {len(seeds)} seeds reached {len(candidates)} candidates "
            f"(snapshot v{snapshot.version})"
        )

        if not candidates:
            return self._fallback(snapshot, engaged, excluded, limit, deadline)

        # Rank over every node the walk touched, seeds included
        ranked_nodes = set(candidates) | set(seeds)
        ranking = personalized_pagerank(
            graph.subgraph(ranked_nodes),
            seeds=seeds.keys(),
            preferences=preferences,
            config=self.config.pagerank,
            deadline=deadline,
        )
        if ranking.iterations_run > 0:
            scores = {i: ranking.score(i) for i in candidates}
        else:
            scores = {i: c.weight for i, c in candidates.items()}

        next_in_series = self._next_in_series(catalog, engaged, excluded)
        reranker = DiversityReranker(catalog, self.vectors, self.config.diversity)
        reranked = reranker.rerank(
            scores,
            limit,
            exclude=excluded,
            series_next=next_in_series.keys(),
            deadline=deadline,
        )

        context = ExplanationContext(
            next_in_series=next_in_series,
            readers_also_liked=self._readers_also_liked(catalog, candidates.values()),
        )
        explainer = ExplanationService(
            catalog,
            content_min_similarity=self.config.content_reason_min_similarity,
            max_reasons=self.config.max_reasons,
        )

        items = []
        for selected in reranked.items:
            candidate = candidates[selected.item_id]
            items.append(Recommendation(
                item=catalog.require(selected.item_id),
                score=selected.original_score,
                reasons=explainer.generate_explanations(candidate, context),
                path=candidate.path,
                edges=candidate.edges,
            ))

        partial = expansion.partial or ranking.partial or reranked.partial
        status = RecommendationStatus.PARTIAL if partial else RecommendationStatus.COMPLETE
        detail = "Deadline exceeded, results are best-effort" if partial else None
        return self._result(items, status, snapshot, deadline, detail=detail)

    def _fallback(
        self,
        snapshot: GraphSnapshot,
        engaged: list[Item],
        excluded: set[int],
        limit: int,
        deadline: Deadline,
    ) -> RecommendationResult:
        """Same-series / same-author suggestions when the graph yields nothing."""
        catalog = snapshot.catalog
        picked: dict[int, Recommendation] = {}

        for origin in engaged:
            for other in catalog.by_series(origin.series):
                if other.id in excluded or other.id in picked:
                    continue
                picked[other.id] = Recommendation(
                    item=other,
                    score=FALLBACK_SERIES_SCORE,
                    reasons=[Reason(
                        kind=SAME_SERIES,
                        weight=FALLBACK_SERIES_SCORE,
                        series=other.series,
                        position=series_position(origin, other),
                    )],
                    path=(origin.id, other.id),
                )

        for origin in engaged:
            for other in catalog.by_author(origin.author):
                if other.id in excluded or other.id in picked:
                    continue
                picked[other.id] = Recommendation(
                    item=other,
                    score=FALLBACK_AUTHOR_SCORE,
                    reasons=[Reason(kind=SAME_AUTHOR, weight=FALLBACK_AUTHOR_SCORE, author=other.author)],
                    path=(origin.id, other.id),
                )

        items = sorted(picked.values(), key=lambda r: (-r.score, r.item.id))[:limit]
        if not items:
            logger.info(f"No candidates and no same-author/series books for {[i.id for i in engaged]}")
            return self._result([], RecommendationStatus.EMPTY, snapshot, deadline,
                                detail="No related books found in the graph or by author/series")

        logger.info(f"Graph had no candidates, returning {len(items)} author/series suggestions")
        return self._result(items, RecommendationStatus.FALLBACK, snapshot, deadline,
                            detail="No graph neighbors, showing same author/series books")

    def _next_in_series(self, catalog: Catalog, engaged: list[Item], excluded: set[int]) -> dict[int, str]:
        """Next unread entry of each engaged series -> title of the entry before it."""
        result: dict[int, str] = {}
        for origin in engaged:
            if origin.series_index is None:
                continue
            for other in catalog.by_series(origin.series):
                if other.id in excluded or other.series_index is None:
                    continue
                if other.series_index == origin.series_index + 1:
                    result.setdefault(other.id, origin.title)
        return result

    def _readers_also_liked(self, catalog: Catalog, candidates: Iterable[Candidate]) -> dict[int, str]:
        """Candidates reached through a co-readership signal -> title of the book it came from."""
        result: dict[int, str] = {}
        for candidate in candidates:
            for edge in candidate.edges:
                if EdgeType.USER in edge.signal_values():
                    source = catalog.get(edge.source)
                    if source is not None:
                        result[candidate.item_id] = source.title
        return result

    def _check_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.config.default_limit
        if not 1 <= limit <= self.config.max_limit:
            raise InvalidParameterError("limit", limit, f"must be between 1 and {self.config.max_limit}")
        return limit

    def _deadline(self, deadline_ms: Optional[float]) -> Deadline:
        budget = deadline_ms if deadline_ms is not None else self.config.default_deadline_ms
        if budget is not None and budget <= 0:
            raise InvalidParameterError("deadline_ms", budget, "must be positive")
        return Deadline(budget)

    def _result(
        self,
        items: list[Recommendation],
        status: RecommendationStatus,
        snapshot: GraphSnapshot,
        deadline: Deadline,
        detail: Optional[str] = None,
    ) -> RecommendationResult:
        elapsed_ms = deadline.elapsed_ms()
        if status == RecommendationStatus.PARTIAL:
            logger.warning(f"Returning partial result ({len(items)} items) after {elapsed_ms:.0f}ms")
        return RecommendationResult(
            items=items,
            status=status,
            detail=detail,
            snapshot_version=snapshot.version,
            elapsed_ms=elapsed_ms,
        )

