"""Redis caching layer for API responses.

Every key embeds the graph snapshot version it was computed from
(``recs:v3:item:42:20``), so a rebuild makes older entries unreachable
without touching them. drop_stale_versions() frees them afterwards.
Cache failures are logged and treated as misses.
"""

import json
import logging
import re
from typing import Any

import redis.asyncio as redis

from app.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

KEY_PREFIXES = ("recs", "graph")
_VERSIONED_KEY = re.compile(r"^(?:recs|graph):v(\d+):")


def key_version(key: str) -> int | None:
    """Snapshot version a cache key was built for, None for foreign keys."""
    match = _VERSIONED_KEY.match(key)
    return int(match.group(1)) if match else None


class CacheService:
    """Versioned JSON cache for recommendation and neighborhood responses."""

    def __init__(self, redis_url: str | None = None):
        self.redis_url = redis_url or settings.redis_url
        self._redis: redis.Redis | None = None

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        if self._redis:
            await self._redis.close()

    async def get(self, key: str) -> Any | None:
        try:
            client = await self._get_redis()
            value = await client.get(key)
        except Exception as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None
        return json.loads(value) if value else None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        try:
            client = await self._get_redis()
            await client.set(key, json.dumps(value), ex=ttl or None)
            return True
        except Exception as e:
            logger.warning(f"Cache write failed for {key}: {e}")
            return False

    async def drop_stale_versions(self, current_version: int) -> int:
        """
        Delete response keys built for any snapshot other than current_version.

        Returns the number of keys deleted (0 when Redis is unreachable).
        """
        deleted = 0
        try:
            client = await self._get_redis()
            for prefix in KEY_PREFIXES:
                stale = [
                    key async for key in client.scan_iter(match=f"{prefix}:v*", count=500)
                    if key_version(key) not in (None, current_version)
                ]
                if stale:
                    deleted += await client.delete(*stale)
        except Exception as e:
            logger.warning(f"Dropping cache entries older than v{current_version} failed: {e}")
        return deleted

    @staticmethod
    def item_recommendations_key(version: int, item_id: int, limit: int) -> str:
        return f"recs:v{version}:item:{item_id}:{limit}"

    @staticmethod
    def neighborhood_key(version: int, center_id: int, depth: int, max_nodes: int) -> str:
        return f"graph:v{version}:{center_id}:{depth}:{max_nodes}"


_cache: CacheService | None = None


def get_cache() -> CacheService:
    global _cache
    if _cache is None:
        _cache = CacheService()
    return _cache
