import asyncio
import fnmatch

from app.core.cache import CacheService, key_version


class FakeRedis:
    def __init__(self, keys):
        self.store = {key: "{}" for key in keys}

    async def scan_iter(self, match="*", count=None):
        for key in list(self.store):
            if fnmatch.fnmatchcase(key, match):
                yield key

    async def delete(self, *keys):
        return sum(self.store.pop(key, None) is not None for key in keys)


class BrokenRedis:
    async def scan_iter(self, match="*", count=None):
        raise ConnectionError("redis down")
        yield  # pragma: no cover


def _cache(client) -> CacheService:
    cache = CacheService("redis://unused")
    cache._redis = client
    return cache


def test_key_version():
    assert key_version(CacheService.item_recommendations_key(3, 42, 20)) == 3
    assert key_version(CacheService.neighborhood_key(12, 1, 2, 50)) == 12
    assert key_version("session:v1:abc") is None
    assert key_version("recs:latest:item:1") is None


def test_drop_stale_versions_keeps_current_and_foreign_keys():
    client = FakeRedis([
        "recs:v1:item:1:20",
        "graph:v1:1:2:50",
        "recs:v2:item:1:20",
        "graph:v2:1:2:50",
        "session:v1:abc",
    ])

    deleted = asyncio.run(_cache(client).drop_stale_versions(2))

    assert deleted == 2
    assert set(client.store) == {"recs:v2:item:1:20", "graph:v2:1:2:50", "session:v1:abc"}


def test_drop_stale_versions_with_redis_down_is_zero():
    assert asyncio.run(_cache(BrokenRedis()).drop_stale_versions(2)) == 0
