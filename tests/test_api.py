import pytest
from fastapi.testclient import TestClient

from app.api.v1 import admin, recommendations
from app.core import auth
from app.core import engine as engine_module
from app.core.cache import get_cache, key_version
from app.core.engine import get_engine
from app.ingestion.graph_builder import rebuild_graph
from app.main import app
from app.services.recommendation_service import EngineConfig, RecommendationEngine
from app.services.similarity_graph import SnapshotStore
from app.services.vector_index import VectorIndex

from conftest import A, B, C, D


class FakeCache:
    """In-memory stand-in for the Redis cache."""

    def __init__(self):
        self.data = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ttl=None):
        self.data[key] = value
        return True

    async def drop_stale_versions(self, current_version):
        stale = [k for k in self.data if key_version(k) not in (None, current_version)]
        for key in stale:
            del self.data[key]
        return len(stale)


@pytest.fixture
def cache():
    return FakeCache()


@pytest.fixture
def client(engine, cache):
    recommendations.limiter.enabled = False
    app.dependency_overrides[get_engine] = lambda: engine
    app.dependency_overrides[get_cache] = lambda: cache
    # No context manager: lifespan (database, scheduler) stays off
    yield TestClient(app)
    app.dependency_overrides.clear()
    recommendations.limiter.enabled = True


def _ids(body) -> set[int]:
    return {rec["book"]["id"] for rec in body["recommendations"]}


def test_item_recommendations(client, cache):
    response = client.get(f"/api/v1/recommendations/items/{A}?limit=10")
    assert response.status_code == 200

    body = response.json()
    assert body["status"] == "complete"
    assert body["snapshot_version"] == 1
    assert _ids(body) == {B, C, D}
    assert body["cached"] is False

    delta = next(rec for rec in body["recommendations"] if rec["book"]["id"] == D)
    assert delta["path"] == [A, C, D]
    assert [e["edge_type"] for e in delta["path_edges"]] == ["author", "series"]
    assert delta["reasons"][0]["text"] == "Next book in Saga"
    assert "recs:v1:item:1:10" in cache.data


def test_item_recommendations_are_served_from_cache(client):
    client.get(f"/api/v1/recommendations/items/{A}")
    response = client.get(f"/api/v1/recommendations/items/{A}")
    assert response.json()["cached"] is True


def test_unknown_item_is_404(client):
    assert client.get("/api/v1/recommendations/items/999").status_code == 404


def test_limit_is_validated(client):
    assert client.get(f"/api/v1/recommendations/items/{A}?limit=0").status_code == 422
    assert client.get(f"/api/v1/recommendations/items/{A}?limit=101").status_code == 422


def test_missing_snapshot_is_503(client):
    app.dependency_overrides[get_engine] = lambda: RecommendationEngine(SnapshotStore(), VectorIndex())
    assert client.get(f"/api/v1/recommendations/items/{A}").status_code == 503
    assert client.get(f"/api/v1/graph/{A}").status_code == 503


def test_profile_recommendations(client):
    response = client.post(
        "/api/v1/recommendations/profile",
        json={"rated_items": [{"id": A, "rating": 5}, {"id": 999, "rating": 4}], "limit": 5},
    )
    assert response.status_code == 200
    assert _ids(response.json()) == {B, C, D}


def test_profile_rating_out_of_range_is_422(client):
    response = client.post("/api/v1/recommendations/profile", json={"rated_items": [{"id": A, "rating": 6}]})
    assert response.status_code == 422


def test_empty_profile(client):
    response = client.post("/api/v1/recommendations/profile", json={"rated_items": []})
    assert response.status_code == 200
    assert response.json()["status"] == "empty"


def test_neighborhood_graph(client, cache):
    response = client.get(f"/api/v1/graph/{A}?depth=1")
    assert response.status_code == 200

    body = response.json()
    assert body["center_id"] == A
    assert {n["id"] for n in body["nodes"]} == {A, B, C}
    assert len(body["edges"]) == 2
    assert "graph:v1:1:1:50" in cache.data


def test_neighborhood_bounds_are_422(client):
    assert client.get(f"/api/v1/graph/{A}?depth=4").status_code == 422
    assert client.get(f"/api/v1/graph/{A}?max_nodes=500").status_code == 422


def test_admin_requires_configured_key(client, monkeypatch):
    monkeypatch.setattr(auth.settings, "admin_api_key", None)
    assert client.get("/api/v1/admin/graph/status").status_code == 503


def test_admin_rejects_missing_or_wrong_key(client, monkeypatch):
    monkeypatch.setattr(auth.settings, "admin_api_key", "secret")
    assert client.get("/api/v1/admin/graph/status").status_code == 401
    response = client.get("/api/v1/admin/graph/status", headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401


def test_admin_graph_status(client, monkeypatch):
    monkeypatch.setattr(auth.settings, "admin_api_key", "secret")
    response = client.get("/api/v1/admin/graph/status", headers={"Authorization": "Bearer secret"})

    assert response.status_code == 200
    body = response.json()
    assert body["ready"] is True
    assert body["snapshot_version"] == 1
    assert body["edge_count"] == 3
    assert body["catalog_size"] == 5
    assert body["edges_by_type"]["author"] == 1


def test_admin_rebuild_publishes_and_flushes_cache(client, cache, engine, monkeypatch):
    monkeypatch.setattr(auth.settings, "admin_api_key", "secret")

    async def fake_rebuild(engine_arg, session_factory, embedding_model=None):
        report, _ = rebuild_graph(engine_arg.store.current().catalog, engine_arg.vectors, engine_arg.store)
        return report

    monkeypatch.setattr(admin, "rebuild_and_persist", fake_rebuild)
    cache.data["recs:v1:item:1:20"] = {"stale": True}
    cache.data["session:abc"] = {"kept": True}

    response = client.post("/api/v1/admin/graph/rebuild", headers={"Authorization": "Bearer secret"})

    assert response.status_code == 200
    assert response.json()["snapshot_version"] == 2
    assert engine.store.current().version == 2
    assert cache.data == {"session:abc": {"kept": True}}


def test_admin_rebuild_failure_is_500(client, monkeypatch):
    monkeypatch.setattr(auth.settings, "admin_api_key", "secret")

    async def failing_rebuild(engine_arg, session_factory, embedding_model=None):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(admin, "rebuild_and_persist", failing_rebuild)
    response = client.post("/api/v1/admin/graph/rebuild", headers={"Authorization": "Bearer secret"})
    assert response.status_code == 500


def test_correlation_id_is_echoed(client):
    response = client.get("/", headers={"X-Correlation-ID": "abc123"})
    assert response.status_code == 200
    assert response.headers["X-Correlation-ID"] == "abc123"


def test_engine_config_is_built_once(monkeypatch):
    monkeypatch.setattr(engine_module, "_engine", None)
    first = get_engine()
    assert first is get_engine()
    assert isinstance(first.config, EngineConfig)
    assert not first.store.is_ready()
