"""Per-retailer request budget for candidate URL polling.

The budget is a requests-per-minute cap shared by every process polling the
same retailer, so the counter lives in Redis and is bumped with an atomic
INCR + EXPIRE pipeline. When the store is unreachable the request is allowed:
polling availability is preferred over strict budget enforcement.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from threading import Lock
from typing import Callable, Deque, Dict, Optional, Protocol

import redis.asyncio as redis

from beacon.config import settings
from beacon.ingest.config_resolver import DEFAULT_QPM, ConfigResolver

logger = logging.getLogger(__name__)

BUDGET_WINDOW_SECONDS = 60
BUDGET_KEY_PREFIX = "candqpm"


class CounterStore(Protocol):
    """Atomic increment-and-count over a fixed window."""

    async def hit(self, key: str, window_seconds: int) -> int:
        """Record one request and return the count inside the current window."""
        ...


class RedisCounterStore:
    """Window counter backed by Redis INCR/EXPIRE in a MULTI pipeline."""

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url or settings.redis_url
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = await redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        if self._redis:
            await self._redis.close()
            self._redis = None

    async def hit(self, key: str, window_seconds: int) -> int:
        client = await self._get_redis()
        rate_key = f"ratelimit:{key}"
        async with client.pipeline(transaction=True) as pipe:
            pipe.incr(rate_key)
            # Only the first hit of a window sets the expiry
            pipe.expire(rate_key, window_seconds, nx=True)
            results = await pipe.execute()
        return int(results[0] or 0)


class InMemoryCounterStore:
    """Process-wide sliding window counter for single-instance deployments."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = Lock()

    async def hit(self, key: str, window_seconds: int) -> int:
        now = self._clock()
        with self._lock:
            queue = self._hits.setdefault(key, deque())
            cutoff = now - window_seconds
            while queue and queue[0] <= cutoff:
                queue.popleft()
            queue.append(now)
            return len(queue)


class BudgetController:
    """Admission control for candidate fetches, one budget per retailer slug."""

    def __init__(
        self,
        counter_store: CounterStore,
        resolver: ConfigResolver,
        window_seconds: int = BUDGET_WINDOW_SECONDS,
    ):
        self.counter_store = counter_store
        self.resolver = resolver
        self.window_seconds = window_seconds

    async def budget_for(self, slug: str) -> int:
        """Effective requests-per-minute for a retailer; never raises."""
        try:
            return await self.resolver.requests_per_minute(slug)
        except Exception as e:
            logger.warning(f"Budget resolution failed for {slug}, using default: {e}")
            return DEFAULT_QPM

    async def try_consume(self, slug: str) -> bool:
        """
        Consume one request unit for a retailer.

        Args:
            slug: Retailer slug

        Returns:
            True if the request may proceed. Also True when the counter
            store is unreachable (fail-open).
        """
        try:
            qpm = await self.budget_for(slug)
            count = await self.counter_store.hit(f"{BUDGET_KEY_PREFIX}:{slug}", self.window_seconds)
        except Exception as e:
            logger.warning(f"Budget store unavailable for {slug}, allowing request: {e}")
            return True

        if count > qpm:
            logger.debug(f"Budget exhausted for {slug}: {count}/{qpm} in {self.window_seconds}s")
            return False
        return True
