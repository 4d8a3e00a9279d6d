"""
Immutable in-memory similarity graph and the snapshot store that publishes it.

Edges are undirected in meaning: an edge stored once as (source, target) is
visible from both endpoints. Adjacency is built once into tuples and never
modified; a rebuild produces a new graph and swaps the published snapshot.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Iterable, Iterator, Mapping, Optional

from app.core.exceptions import GraphSnapshotError
from app.services.catalog import Catalog
from app.services.edge_fusion import EdgeType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GraphEdge:
    """A typed, weighted relationship between two books."""

    source: int
    target: int
    edge_type: EdgeType
    weight: float
    computed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc), compare=False)
    # Per-signal values fused into this edge (single entry for typed edge sets)
    signals: Mapping[EdgeType, float] = field(default_factory=dict, compare=False)

    def other(self, node: int) -> int:
        """The endpoint opposite to node."""
        return self.target if node == self.source else self.source

    def oriented(self, node: int) -> "GraphEdge":
        """This edge as seen from node (node becomes source)."""
        if node == self.source:
            return self
        return GraphEdge(
            source=self.target,
            target=self.source,
            edge_type=self.edge_type,
            weight=self.weight,
            computed_at=self.computed_at,
            signals=self.signals,
        )

    def signal_values(self) -> Mapping[EdgeType, float]:
        """Signal breakdown, falling back to the edge's own type and weight."""
        return self.signals or {self.edge_type: self.weight}


def _edge_key(edge: GraphEdge) -> tuple[int, int, EdgeType]:
    a, b = sorted((edge.source, edge.target))
    return a, b, edge.edge_type


class SimilarityGraph:
    """
    Weighted multi-relation graph over book ids.

    Build with SimilarityGraph.from_edges(). Instances are never mutated.
    """

    def __init__(self, adjacency: Mapping[int, tuple[GraphEdge, ...]], edge_list: tuple[GraphEdge, ...]):
        self._adjacency = MappingProxyType(dict(adjacency))
        self._edges = edge_list

    @classmethod
    def from_edges(cls, edges: Iterable[GraphEdge], nodes: Iterable[int] = ()) -> "SimilarityGraph":
        """
        Build a graph from an edge set.

        Duplicate (pair, type) edges keep the heavier one. Self-loops and
        weights outside [0, 1] mean the edge set is corrupt.

        Args:
            edges: Edges, each stored once
            nodes: Extra node ids to include even without edges

        Raises:
            GraphSnapshotError: on self-loops or out-of-range weights
        """
        unique: dict[tuple[int, int, EdgeType], GraphEdge] = {}
        for edge in edges:
            if edge.source == edge.target:
                raise GraphSnapshotError(f"Self-loop on node {edge.source} ({edge.edge_type.value})")
            if not (0.0 <= edge.weight <= 1.0):
                raise GraphSnapshotError(
                    f"Edge {edge.source}-{edge.target} ({edge.edge_type.value}) has weight {edge.weight}"
                )
            key = _edge_key(edge)
            existing = unique.get(key)
            if existing is None or edge.weight > existing.weight:
                unique[key] = edge

        adjacency: dict[int, list[GraphEdge]] = {node: [] for node in nodes}
        for edge in unique.values():
            adjacency.setdefault(edge.source, []).append(edge)
            adjacency.setdefault(edge.target, []).append(edge.oriented(edge.target))

        # Deterministic neighbor order: heaviest first, then target id, then type
        frozen = {
            node: tuple(sorted(out, key=lambda e: (-e.weight, e.target, e.edge_type.value)))
            for node, out in adjacency.items()
        }
        edge_list = tuple(sorted(unique.values(), key=lambda e: (*_edge_key(e)[:2], e.edge_type.value)))
        return cls(frozen, edge_list)

    @classmethod
    def empty(cls) -> "SimilarityGraph":
        return cls({}, ())

    @property
    def nodes(self) -> list[int]:
        return sorted(self._adjacency)

    @property
    def node_count(self) -> int:
        return len(self._adjacency)

    @property
    def edge_count(self) -> int:
        return len(self._edges)

    def has_node(self, node: int) -> bool:
        return node in self._adjacency

    def neighbors(self, node: int, edge_type: Optional[EdgeType] = None) -> tuple[GraphEdge, ...]:
        """Outgoing edges of node (oriented so edge.source == node)."""
        out = self._adjacency.get(node, ())
        if edge_type is None:
            return out
        return tuple(e for e in out if e.edge_type == edge_type)

    def out_degree(self, node: int, edge_type: Optional[EdgeType] = None) -> int:
        return len(self.neighbors(node, edge_type))

    def edges_between(self, a: int, b: int) -> list[GraphEdge]:
        """All typed edges between a and b, oriented from a."""
        return [e for e in self._adjacency.get(a, ()) if e.target == b]

    def has_edge(self, a: int, b: int, edge_type: Optional[EdgeType] = None) -> bool:
        return any(
            edge_type is None or e.edge_type == edge_type
            for e in self.edges_between(a, b)
        )

    def edges(self) -> Iterator[GraphEdge]:
        """Each stored edge exactly once."""
        return iter(self._edges)

    def edge_counts_by_type(self) -> dict[str, int]:
        counts = {t.value: 0 for t in EdgeType}
        for edge in self._edges:
            counts[edge.edge_type.value] += 1
        return counts

    def subgraph(self, node_ids: Iterable[int]) -> "SimilarityGraph":
        """Induced subgraph over node_ids (nodes without edges are kept)."""
        keep = set(node_ids)
        edges = [e for e in self._edges if e.source in keep and e.target in keep]
        return SimilarityGraph.from_edges(edges, nodes=keep)


@dataclass(frozen=True)
class GraphSnapshot:
    """Everything one request needs, published atomically."""

    version: int
    catalog: Catalog
    graph: SimilarityGraph
    built_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SnapshotStore:
    """
    Holds the active snapshot.

    Readers call current() once per request and keep the returned object;
    publish() replaces the reference in one assignment so readers see either
    the old or the new snapshot, never a mix.
    """

    def __init__(self, snapshot: Optional[GraphSnapshot] = None):
        self._snapshot = snapshot
        self._publish_lock = threading.Lock()

    def current(self) -> GraphSnapshot:
        snapshot = self._snapshot
        if snapshot is None:
            raise GraphSnapshotError("No graph snapshot has been published")
        return snapshot

    def is_ready(self) -> bool:
        return self._snapshot is not None

    def next_version(self) -> int:
        snapshot = self._snapshot
        return 1 if snapshot is None else snapshot.version + 1

    def publish(self, catalog: Catalog, graph: SimilarityGraph) -> GraphSnapshot:
        """Publish a new snapshot and return it."""
        with self._publish_lock:
            snapshot = GraphSnapshot(version=self.next_version(), catalog=catalog, graph=graph)
            self._snapshot = snapshot

        logger.info(
            f"Published graph snapshot v{snapshot.version}: "
            f"{graph.node_count} nodes, {graph.edge_count} edges, {len(catalog)} catalog items"
        )
        return snapshot
