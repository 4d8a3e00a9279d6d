import asyncio

from app.ingestion import snapshot_loader
from app.services.edge_fusion import EdgeType
from app.services.recommendation_service import EngineConfig, RecommendationEngine
from app.services.similarity_graph import GraphEdge, SnapshotStore
from app.services.vector_index import VectorIndex

from conftest import A, B, C, D, scenario_edges


class FakeSession:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


def _engine() -> RecommendationEngine:
    return RecommendationEngine(SnapshotStore(), VectorIndex(dimension=2), EngineConfig(default_deadline_ms=None))


def _patch_loaders(monkeypatch, catalog, edges, embeddings=None):
    async def load_catalog(db):
        return catalog

    async def load_embeddings(db, model=None):
        return embeddings or {}

    async def load_edges(db):
        return edges

    async def load_cooccurrence(db):
        return {}

    monkeypatch.setattr(snapshot_loader, "load_catalog", load_catalog)
    monkeypatch.setattr(snapshot_loader, "load_embeddings", load_embeddings)
    monkeypatch.setattr(snapshot_loader, "load_edges", load_edges)
    monkeypatch.setattr(snapshot_loader, "load_cooccurrence", load_cooccurrence)


def test_stored_edges_are_published(monkeypatch, catalog):
    stale = GraphEdge(A, 999, EdgeType.CONTENT, 0.9)
    _patch_loaders(monkeypatch, catalog, scenario_edges() + [stale], embeddings={A: [1.0, 0.0], B: [0.0, 1.0]})
    engine = _engine()

    snapshot = asyncio.run(snapshot_loader.load_snapshot(engine, FakeSession))

    assert snapshot.version == 1
    assert snapshot.graph.edge_count == 3
    assert not snapshot.graph.has_node(999)
    assert len(engine.vectors) == 2


def _patch_persistence(monkeypatch) -> dict:
    persisted = {}

    async def persist_edges(db, edges):
        persisted["edges"] = edges
        return len(edges)

    async def save_rebuild_metadata(db, report):
        persisted["report"] = report

    monkeypatch.setattr(snapshot_loader, "persist_edges", persist_edges)
    monkeypatch.setattr(snapshot_loader, "save_rebuild_metadata", save_rebuild_metadata)
    return persisted


def test_missing_edges_trigger_rebuild(monkeypatch, catalog):
    _patch_loaders(monkeypatch, catalog, [])
    persisted = _patch_persistence(monkeypatch)
    engine = _engine()

    snapshot = asyncio.run(snapshot_loader.load_snapshot(engine, FakeSession))

    assert snapshot.graph.has_edge(C, D, EdgeType.SERIES)
    assert len(persisted["edges"]) == 3
    assert persisted["report"].snapshot_version == snapshot.version


def test_rebuild_picks_up_embeddings_written_since_startup(monkeypatch, catalog):
    engine = _engine()
    engine.vectors.upsert(999, [1.0, 0.0])
    _patch_loaders(monkeypatch, catalog, [], embeddings={A: [1.0, 0.0], B: [0.9, 0.1]})
    persisted = _patch_persistence(monkeypatch)

    report = asyncio.run(snapshot_loader.rebuild_and_persist(engine, FakeSession))

    assert engine.vectors.ids() == [A, B]
    assert report.snapshot_version == engine.store.current().version
    edge = next(e for e in persisted["edges"] if {e.source, e.target} == {A, B})
    assert EdgeType.CONTENT in edge.signal_values()
