"""
Redis cache for per-event check-in stats.

Best effort only: every Redis failure is logged and treated as a miss, so
stats fall back to a direct database read.
"""
import json
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog

from event_settlement.config import get_settings
from event_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class StatsCache:
    """Caches CheckInStats payloads keyed by event id."""

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        ttl_seconds: Optional[int] = None,
    ):
        """
        Initialize stats cache.

        Args:
            redis_client: Optional Redis client (creates one if not provided)
            ttl_seconds: Cache TTL (defaults to stats_cache_ttl_seconds)
        """
        self.settings = get_settings()
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds or self.settings.stats_cache_ttl_seconds

    def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    @staticmethod
    def _key(event_id: Any) -> str:
        return f"checkin:stats:{event_id}"

    async def get(self, event_id: Any) -> Optional[Dict[str, Any]]:
        try:
            cached = await self._ensure_redis().get(self._key(event_id))
        except Exception as e:
            metrics.record_stats_cache("error")
            logger.warning("stats_cache_get_error", error=str(e), event_id=str(event_id))
            return None

        if cached is None:
            metrics.record_stats_cache("miss")
            return None

        metrics.record_stats_cache("hit")
        return json.loads(cached)

    async def set(self, event_id: Any, stats: Dict[str, Any]) -> None:
        try:
            await self._ensure_redis().setex(self._key(event_id), self.ttl_seconds, json.dumps(stats))
        except Exception as e:
            logger.warning("stats_cache_set_error", error=str(e), event_id=str(event_id))

    async def invalidate(self, event_id: Any) -> None:
        try:
            await self._ensure_redis().delete(self._key(event_id))
        except Exception as e:
            logger.warning("stats_cache_invalidate_error", error=str(e), event_id=str(event_id))

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
