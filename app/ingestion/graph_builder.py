"""
Build the book similarity graph.

The rebuild is a batch job: fuse every qualifying pair of books into one
weighted edge, prune weak and excess edges, and publish the result as a new
snapshot. Requests keep using the previous snapshot until the swap.

Only pairs that share at least one signal source are evaluated:
- content similarity >= min_edge_weight (a content-only pair below that is
  pruned anyway, so skipping it changes nothing)
- same author / same series
- at least one shared tag
- an external co-readership score
"""

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import combinations
from typing import Iterable, Mapping, Optional

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import BookEdge, SystemMetadata
from app.services.catalog import Catalog
from app.services.edge_fusion import EdgeType, FusionWeights, fuse_signals
from app.services.similarity_graph import GraphEdge, SimilarityGraph, SnapshotStore
from app.services.vector_index import VectorIndex

logger = logging.getLogger(__name__)

Pair = tuple[int, int]


@dataclass
class RebuildReport:
    """Outcome of one rebuild."""

    snapshot_version: int
    node_count: int
    edge_count: int
    edges_by_type: dict[str, int] = field(default_factory=dict)
    pairs_evaluated: int = 0
    pruned_edges: int = 0
    duration_ms: float = 0.0
    built_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "snapshot_version": self.snapshot_version,
            "node_count": self.node_count,
            "edge_count": self.edge_count,
            "edges_by_type": self.edges_by_type,
            "pairs_evaluated": self.pairs_evaluated,
            "pruned_edges": self.pruned_edges,
            "duration_ms": round(self.duration_ms, 1),
            "built_at": self.built_at.isoformat(),
        }


def _pair(a: int, b: int) -> Pair:
    return (a, b) if a < b else (b, a)


def content_similarity_pairs(
    vectors: VectorIndex,
    ids: Iterable[int],
    min_similarity: float,
    batch_size: int = 500,
) -> dict[Pair, float]:
    """
    Cosine similarity of every embedded pair at or above min_similarity.

    Computed in row batches against the full matrix so memory stays at
    batch_size * n floats.
    """
    embedded = [i for i in sorted(set(ids)) if i in vectors]
    if len(embedded) < 2:
        return {}

    matrix = np.vstack([vectors.get(i) for i in embedded])
    result: dict[Pair, float] = {}

    for start in range(0, len(embedded), batch_size):
        block = cosine_similarity(matrix[start:start + batch_size], matrix)
        for local_idx, row in enumerate(block):
            global_idx = start + local_idx
            # Upper triangle only, each pair once
            hits = np.nonzero(row[global_idx + 1:] >= min_similarity)[0] + global_idx + 1
            for j in hits:
                result[(embedded[global_idx], embedded[int(j)])] = float(min(row[j], 1.0))

    return result


def candidate_pairs(
    catalog: Catalog,
    content: Mapping[Pair, float],
    cooccurrence: Mapping[Pair, float],
) -> set[Pair]:
    """Every pair sharing at least one signal source."""
    pairs: set[Pair] = set(content)
    pairs.update(_pair(a, b) for a, b in cooccurrence if a != b)

    by_author: dict[str, list[int]] = defaultdict(list)
    by_series: dict[str, list[int]] = defaultdict(list)
    by_tag: dict[str, list[int]] = defaultdict(list)
    for item in catalog:
        if item.author_key:
            by_author[item.author_key].append(item.id)
        if item.series_key:
            by_series[item.series_key].append(item.id)
        for tag in item.tags:
            by_tag[tag].append(item.id)

    for groups in (by_author, by_series, by_tag):
        for members in groups.values():
            pairs.update(_pair(a, b) for a, b in combinations(sorted(members), 2))

    return pairs


def prune_edges(edges: list[GraphEdge], max_edges_per_item: int) -> list[GraphEdge]:
    """
    Keep each node's top max_edges_per_item edges by weight.

    An edge survives when either endpoint keeps it, so pruning never
    isolates a node that still has strong edges of its own.
    """
    incident: dict[int, list[GraphEdge]] = defaultdict(list)
    for edge in edges:
        incident[edge.source].append(edge)
        incident[edge.target].append(edge)

    kept: set[tuple[int, int, EdgeType]] = set()
    for node, node_edges in incident.items():
        node_edges.sort(key=lambda e: (-e.weight, e.other(node)))
        for edge in node_edges[:max_edges_per_item]:
            kept.add((edge.source, edge.target, edge.edge_type))

    return [e for e in edges if (e.source, e.target, e.edge_type) in kept]


def build_edges(
    catalog: Catalog,
    vectors: VectorIndex,
    cooccurrence: Optional[Mapping[Pair, float]] = None,
    weights: FusionWeights = FusionWeights(),
    min_edge_weight: float = 0.3,
    max_edges_per_item: int = 50,
    now: Optional[datetime] = None,
) -> tuple[list[GraphEdge], int, int]:
    """
    Fuse all qualifying pairs into edges.

    Args:
        catalog: Books to connect
        vectors: Embeddings (books without one simply lack the content signal)
        cooccurrence: (book, book) -> collaborative similarity, either order
        weights: Fusion weights
        min_edge_weight: Edges below this weight are dropped
        max_edges_per_item: Per-node cap, see prune_edges
        now: Timestamp for computed_at

    Returns:
        (edges, pairs evaluated, edges pruned by the per-node cap)
    """
    now = now or datetime.now(timezone.utc)
    collaborative: dict[Pair, float] = {}
    for (a, b), score in (cooccurrence or {}).items():
        key = _pair(a, b)
        collaborative[key] = max(score, collaborative.get(key, 0.0))

    content = content_similarity_pairs(vectors, catalog.ids(), min_edge_weight)
    pairs = candidate_pairs(catalog, content, collaborative)

    edges: list[GraphEdge] = []
    for a, b in sorted(pairs):
        item_a = catalog.get(a)
        item_b = catalog.get(b)
        if item_a is None or item_b is None:
            continue

        content_sim = content.get((a, b))
        if content_sim is None and a in vectors and b in vectors:
            # Below the content threshold, still part of the fused average
            content_sim = vectors.similarity(a, b)

        fused = fuse_signals(item_a, item_b, content_sim, collaborative.get((a, b)), weights)
        if fused is None or fused.weight < min_edge_weight:
            continue

        edges.append(GraphEdge(
            source=a,
            target=b,
            edge_type=fused.primary_type,
            weight=fused.weight,
            computed_at=now,
            signals=dict(fused.signals),
        ))

    pruned = prune_edges(edges, max_edges_per_item)
    return pruned, len(pairs), len(edges) - len(pruned)


def rebuild_graph(
    catalog: Catalog,
    vectors: VectorIndex,
    store: SnapshotStore,
    cooccurrence: Optional[Mapping[Pair, float]] = None,
    weights: FusionWeights = FusionWeights(),
    min_edge_weight: float = 0.3,
    max_edges_per_item: int = 50,
) -> tuple[RebuildReport, list[GraphEdge]]:
    """
    Recompute all edges and publish a new snapshot.

    CPU-bound, run it off the event loop. Returns the report and the edges
    (for persistence).
    """
    logger.info("=" * 50)
    logger.info("REBUILDING SIMILARITY GRAPH")
    logger.info("=" * 50)
    logger.info(f"{len(catalog)} books, {len(vectors)} embeddings")

    started = time.monotonic()
    edges, pairs_evaluated, pruned = build_edges(
        catalog,
        vectors,
        cooccurrence=cooccurrence,
        weights=weights,
        min_edge_weight=min_edge_weight,
        max_edges_per_item=max_edges_per_item,
    )
    graph = SimilarityGraph.from_edges(edges, nodes=catalog.ids())
    snapshot = store.publish(catalog, graph)
    duration_ms = (time.monotonic() - started) * 1000

    report = RebuildReport(
        snapshot_version=snapshot.version,
        node_count=graph.node_count,
        edge_count=graph.edge_count,
        edges_by_type=graph.edge_counts_by_type(),
        pairs_evaluated=pairs_evaluated,
        pruned_edges=pruned,
        duration_ms=duration_ms,
        built_at=snapshot.built_at,
    )
    logger.info(
        f"Rebuild complete in {duration_ms:.0f}ms: {report.edge_count} edges "
        f"from {pairs_evaluated} candidate pairs ({pruned} pruned)"
    )
    return report, edges


async def persist_edges(db: AsyncSession, edges: list[GraphEdge], chunk_size: int = 5000) -> int:
    """
    Replace the stored edge set.

    Delete and insert run in one transaction, so a reader sees either the
    old edge set or the new one.
    """
    await db.execute(delete(BookEdge))
    for i in range(0, len(edges), chunk_size):
        chunk = edges[i:i + chunk_size]
        db.add_all([
            BookEdge(
                source_id=e.source,
                target_id=e.target,
                edge_type=e.edge_type.value,
                weight=e.weight,
                signals={t.value: v for t, v in e.signal_values().items()},
                computed_at=e.computed_at.replace(tzinfo=None),
            )
            for e in chunk
        ])
        await db.flush()
    await db.commit()
    logger.info(f"Persisted {len(edges)} edges")
    return len(edges)


async def load_edges(db: AsyncSession) -> list[GraphEdge]:
    """Load the stored edge set. Rows with an unknown edge type are skipped."""
    result = await db.execute(select(BookEdge))
    edges = []
    for row in result.scalars().all():
        try:
            edge_type = EdgeType(row.edge_type)
            signals = {EdgeType(t): float(v) for t, v in (row.signals or {}).items()}
        except ValueError:
            logger.warning(f"Skipping edge {row.source_id}-{row.target_id} with type {row.edge_type!r}")
            continue
        edges.append(GraphEdge(
            source=row.source_id,
            target=row.target_id,
            edge_type=edge_type,
            weight=row.weight,
            computed_at=row.computed_at.replace(tzinfo=timezone.utc),
            signals=signals,
        ))
    logger.info(f"Loaded {len(edges)} stored edges")
    return edges


async def save_rebuild_metadata(db: AsyncSession, report: RebuildReport) -> None:
    """Record the last rebuild in system_metadata."""
    values = {
        "graph_last_rebuild": report.built_at.isoformat(),
        "graph_edge_count": str(report.edge_count),
        "graph_rebuild_ms": f"{report.duration_ms:.0f}",
    }
    for key, value in values.items():
        existing = await db.get(SystemMetadata, key)
        if existing is None:
            db.add(SystemMetadata(key=key, value=value))
        else:
            existing.value = value
    await db.commit()
