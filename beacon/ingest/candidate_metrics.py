"""Per-retailer candidate checker counters.

Every event goes to Prometheus and, when Redis is configured, to a daily hash
``urlcand:metrics:<slug>:<YYYYMMDD>`` so counts from several worker processes
add up in one place.
"""

import logging
from datetime import datetime
from typing import Optional

import redis.asyncio as redis

from beacon import metrics

logger = logging.getLogger(__name__)

CANDIDATE_EVENTS = ("requests", "blocked", "valid", "live", "invalid", "errors")
METRICS_KEY_PREFIX = "urlcand:metrics"
METRICS_TTL_SECONDS = 8 * 24 * 3600


def metrics_key(slug: str, day: Optional[datetime] = None) -> str:
    day = day or datetime.utcnow()
    return f"{METRICS_KEY_PREFIX}:{slug}:{day.strftime('%Y%m%d')}"


class CandidateMetrics:
    """Counts requests, blocked, valid, live, invalid and errors per retailer."""

    def __init__(self, redis_url: Optional[str] = None, redis_client=None):
        self.redis_url = redis_url
        self._redis = redis_client

    async def _get_redis(self) -> Optional[redis.Redis]:
        if self._redis is None and self.redis_url:
            self._redis = await redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        if self._redis is not None:
            await self._redis.close()
            self._redis = None

    async def record(self, slug: str, event: str) -> None:
        if event not in CANDIDATE_EVENTS:
            raise ValueError(f"Unknown candidate event: {event}")
        metrics.record_candidate_event(slug, event)

        try:
            client = await self._get_redis()
            if client is None:
                return
            key = metrics_key(slug)
            pipe = client.pipeline(transaction=False)
            pipe.hincrby(key, event, 1)
            pipe.expire(key, METRICS_TTL_SECONDS)
            await pipe.execute()
        except redis.RedisError as e:
            logger.debug(f"Could not record candidate metric {slug}/{event}: {e}")

    async def daily(self, slug: str, day: Optional[datetime] = None) -> dict[str, int]:
        """Counters for one retailer and day; missing events read as 0."""
        counts = {event: 0 for event in CANDIDATE_EVENTS}
        client = await self._get_redis()
        if client is None:
            return counts
        raw = await client.hgetall(metrics_key(slug, day))
        for event, value in raw.items():
            counts[event] = int(value)
        return counts
