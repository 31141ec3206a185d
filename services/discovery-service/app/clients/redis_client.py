"""
Redis artifact cache.

Responsibilities:
  • Interest vector   — STRING (JSON) keyed by {prefix}:iv:{identity_id}
  • Follow set        — STRING (JSON list) keyed by {prefix}:follows:{identity_id}
  • Block set         — STRING (JSON list) keyed by {prefix}:blocks:{identity_id}
  • Seen records      — STRING (JSON map id → ISO ts) keyed by {prefix}:seen:{identity_id}
  • Recent topics     — STRING (JSON list) keyed by {prefix}:topics:{identity_id}
  • Identity profile  — STRING (JSON) keyed by {prefix}:profile:{identity_id}
  • Assembled pages   — {prefix}:page:{identity_id}:{weights}:{size}:{cursor}
  • Similar content   — {prefix}:similar:{post_id}:{requester_id}:{limit}

Every artifact carries its own TTL. Redis failures never fail a request:
reads degrade to a miss and writes / invalidations to a logged no-op.
"""
import json
import logging
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from app.schemas import InvalidationEvent
from app.telemetry import FeedMetrics

logger = logging.getLogger(__name__)

START = "start"


def build_redis(host: str, port: int) -> aioredis.Redis:
    return aioredis.Redis(host=host, port=port, decode_responses=True)


class FeedCache:
    def __init__(
        self,
        redis: aioredis.Redis,
        prefix: str = "discovery",
        metrics: Optional[FeedMetrics] = None,
    ) -> None:
        self._redis = redis
        self._prefix = prefix
        self._metrics = metrics

    # ─────────────────────── Key builders ─────────────────────────────────

    def key(self, artifact: str, *parts: object) -> str:
        return ":".join([self._prefix, artifact, *(str(p) for p in parts)])

    def interest_vector_key(self, identity_id: str) -> str:
        return self.key("iv", identity_id)

    def follows_key(self, identity_id: str) -> str:
        return self.key("follows", identity_id)

    def blocks_key(self, identity_id: str) -> str:
        return self.key("blocks", identity_id)

    def seen_key(self, identity_id: str) -> str:
        return self.key("seen", identity_id)

    def topics_key(self, identity_id: str) -> str:
        return self.key("topics", identity_id)

    def profile_key(self, identity_id: str) -> str:
        return self.key("profile", identity_id)

    def page_key(
        self,
        identity_id: str,
        weights_fingerprint: str,
        page_size: int,
        cursor: Optional[str],
    ) -> str:
        return self.key("page", identity_id, weights_fingerprint, page_size, cursor or START)

    def similar_key(self, post_id: str, requester_id: str, limit: int) -> str:
        return self.key("similar", post_id, requester_id, limit)

    def _artifact(self, key: str) -> str:
        return key[len(self._prefix) + 1:].split(":", 1)[0]

    # ─────────────────────── Get / set ────────────────────────────────────

    async def get(self, key: str) -> Optional[Any]:
        artifact = self._artifact(key)
        try:
            raw = await self._redis.get(key)
        except RedisError as exc:
            logger.warning("Cache read failed for %s: %s", key, exc)
            self._count(artifact, "error")
            return None
        if raw is None:
            self._count(artifact, "miss")
            return None
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding undecodable cache entry %s", key)
            self._count(artifact, "error")
            return None
        self._count(artifact, "hit")
        return value

    async def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self._redis.set(key, json.dumps(value), ex=ttl)
        except RedisError as exc:
            logger.warning("Cache write failed for %s: %s", key, exc)

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            await self._redis.delete(*keys)
        except RedisError as exc:
            logger.warning("Cache delete failed for %s: %s", keys, exc)

    async def invalidate(self, pattern: str) -> int:
        """Delete every key matching `pattern` (SCAN MATCH, never KEYS)."""
        deleted = 0
        try:
            batch: list[str] = []
            async for key in self._redis.scan_iter(match=pattern, count=500):
                batch.append(key)
                if len(batch) >= 500:
                    deleted += await self._redis.delete(*batch)
                    batch = []
            if batch:
                deleted += await self._redis.delete(*batch)
        except RedisError as exc:
            logger.warning("Cache invalidation failed for %s: %s", pattern, exc)
        return deleted

    async def invalidate_pages(self, identity_id: Optional[str] = None) -> int:
        return await self.invalidate(self.key("page", identity_id or "*", "*"))

    async def invalidate_similar(self, requester_id: Optional[str] = None) -> int:
        return await self.invalidate(self.key("similar", "*", requester_id or "*", "*"))

    def _count(self, artifact: str, result: str) -> None:
        if self._metrics is not None:
            self._metrics.cache_lookup(artifact, result)


class FeedInvalidator:
    """
    Maps collaborator mutation events onto the cache entries they stale.

      follow_changed   → actor's follow set and pages
      block_changed    → both parties' block sets, pages and similar lists
      post_created     → author's pages
      privacy_changed  → every page and similar list (anyone may have
                         the author's posts cached)
      post_saved       → saver's topic set and pages
      seen_recorded    → viewer's seen records and pages
    """

    def __init__(self, cache: FeedCache, metrics: Optional[FeedMetrics] = None) -> None:
        self._cache = cache
        self._metrics = metrics

    async def handle(self, event: InvalidationEvent) -> None:
        cache = self._cache
        actor = event.actor_id

        if event.type == "follow_changed":
            await cache.delete(cache.follows_key(actor))
            await cache.invalidate_pages(actor)
            await cache.invalidate_similar(actor)

        elif event.type == "block_changed":
            parties = [actor] + ([event.target_id] if event.target_id else [])
            await cache.delete(*[cache.blocks_key(p) for p in parties])
            for party in parties:
                await cache.invalidate_pages(party)
                await cache.invalidate_similar(party)

        elif event.type == "post_created":
            await cache.invalidate_pages(actor)

        elif event.type == "privacy_changed":
            await cache.invalidate_pages()
            await cache.invalidate_similar()

        elif event.type == "post_saved":
            await cache.delete(cache.topics_key(actor))
            await cache.invalidate_pages(actor)

        elif event.type == "seen_recorded":
            await cache.delete(cache.seen_key(actor))
            await cache.invalidate_pages(actor)

        if self._metrics is not None:
            self._metrics.invalidation_events_total.labels(type=event.type).inc()
        logger.info("Applied %s invalidation for %s", event.type, actor)
