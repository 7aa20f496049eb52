"""Retailer registry: retailer id -> slug lookup plus the seeded retailer profiles."""

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from beacon.config import Settings, settings as default_settings
from beacon.db.models import Retailer
from beacon.ingest.base import RateLimitConfig, RetailerProfile, RetryConfig

logger = logging.getLogger(__name__)

RetailerLoader = Callable[[], Awaitable[Iterable[tuple[str, str]]]]


class RetailerRegistry:
    """
    Memoizing retailer id -> slug lookup.

    The mapping is loaded once on first use and kept until ``invalidate()`` or
    ``refresh()``. Unknown ids resolve to None; a failed load is logged and
    leaves the cache empty so the next lookup retries.
    """

    def __init__(self, loader: RetailerLoader):
        self._loader = loader
        self._slugs: Optional[dict[str, str]] = None
        self._lock = asyncio.Lock()

    async def _ensure_loaded(self) -> dict[str, str]:
        async with self._lock:
            if self._slugs is None:
                rows = await self._loader()
                self._slugs = {str(rid): slug for rid, slug in rows}
                logger.debug(f"Loaded {len(self._slugs)} retailer slugs")
            return self._slugs

    async def slug_for(self, retailer_id: str) -> Optional[str]:
        try:
            slugs = await self._ensure_loaded()
        except Exception as e:
            logger.warning(f"Retailer slug lookup failed for {retailer_id}: {e}")
            return None
        return slugs.get(str(retailer_id))

    def invalidate(self) -> None:
        self._slugs = None

    async def refresh(self) -> int:
        """Reload the mapping now; returns the number of retailers."""
        self.invalidate()
        return len(await self._ensure_loaded())


def sqlalchemy_loader(session_factory: async_sessionmaker[AsyncSession]) -> RetailerLoader:
    """Loader reading ``retailers(id, slug)`` through SQLAlchemy."""

    async def load() -> list[tuple[str, str]]:
        async with session_factory() as session:
            result = await session.execute(select(Retailer.id, Retailer.slug))
            return [(row.id, row.slug) for row in result]

    return load


def default_profiles(config: Optional[Settings] = None) -> list[RetailerProfile]:
    """
    Seed retailer profiles.

    API and affiliate retailers are active only when their key is configured.
    """
    config = config or default_settings
    return [
        RetailerProfile(
            id="bestbuy",
            name="Best Buy",
            slug="best-buy",
            type="api",
            base_url="https://api.bestbuy.com/v1",
            api_key=config.best_buy_api_key or None,
            rate_limit=RateLimitConfig(requests_per_minute=5, requests_per_hour=100),
            timeout=10.0,
            retry=RetryConfig(max_retries=3, retry_delay=1.0),
            is_active=bool(config.best_buy_api_key),
        ),
        RetailerProfile(
            id="walmart",
            name="Walmart",
            slug="walmart",
            type="affiliate",
            base_url="https://api.walmartlabs.com/v1",
            api_key=config.walmart_api_key or None,
            rate_limit=RateLimitConfig(requests_per_minute=5, requests_per_hour=100),
            timeout=10.0,
            retry=RetryConfig(max_retries=3, retry_delay=1.0),
            is_active=bool(config.walmart_api_key),
        ),
        RetailerProfile(
            id="costco",
            name="Costco",
            slug="costco",
            type="scraping",
            base_url="https://www.costco.com",
            rate_limit=RateLimitConfig(requests_per_minute=2, requests_per_hour=50),
            timeout=15.0,
            retry=RetryConfig(max_retries=2, retry_delay=2.0),
        ),
        RetailerProfile(
            id="sams-club",
            name="Sam's Club",
            slug="sams-club",
            type="scraping",
            base_url="https://www.samsclub.com",
            rate_limit=RateLimitConfig(requests_per_minute=2, requests_per_hour=50),
            timeout=15.0,
            retry=RetryConfig(max_retries=2, retry_delay=2.0),
        ),
    ]
