"""Background tasks: URL candidate checks and retailer health checks."""

import logging
from typing import Optional

from beacon import metrics
from beacon.config import settings
from beacon.db.session import AsyncSessionLocal
from beacon.ingest.budget import BudgetController, RedisCounterStore
from beacon.ingest.candidate_checker import BatchResult, CandidateChecker
from beacon.ingest.candidate_metrics import CandidateMetrics
from beacon.ingest.config_resolver import ConfigResolver, RedisConfigStore
from beacon.ingest.fetchers.headless import PlaywrightRenderer
from beacon.ingest.http_fetcher import HttpFetcher
from beacon.ingest.integration import RetailerIntegrationService
from beacon.ingest.registry import RetailerRegistry, sqlalchemy_loader
from beacon.ingest.repository import SqlCandidateRepository
from beacon.notify.drop_signals import DropSignalPublisher

logger = logging.getLogger(__name__)


class TaskRunner:
    """
    Runner for background tasks.

    Wires the candidate checker and the retailer integration service to Redis,
    the database and the configured fetch provider.
    """

    def __init__(self):
        self.checker: Optional[CandidateChecker] = None
        self.integrations: Optional[RetailerIntegrationService] = None
        self.registry: Optional[RetailerRegistry] = None
        self._config_store: Optional[RedisConfigStore] = None
        self._counter_store: Optional[RedisCounterStore] = None
        self._fetcher: Optional[HttpFetcher] = None
        self._signals: Optional[DropSignalPublisher] = None
        self._candidate_metrics: Optional[CandidateMetrics] = None

    async def initialize(self):
        """Initialize task runner."""
        self._config_store = RedisConfigStore(settings.redis_url)
        self._counter_store = RedisCounterStore(settings.redis_url)
        resolver = ConfigResolver.from_store(self._config_store)
        self.registry = RetailerRegistry(sqlalchemy_loader(AsyncSessionLocal))
        self._fetcher = HttpFetcher(renderer=PlaywrightRenderer())
        self._signals = DropSignalPublisher(AsyncSessionLocal, redis_url=settings.redis_url)
        self._candidate_metrics = CandidateMetrics(redis_url=settings.redis_url)

        self.checker = CandidateChecker(
            repository=SqlCandidateRepository(AsyncSessionLocal),
            registry=self.registry,
            budget=BudgetController(self._counter_store, resolver),
            resolver=resolver,
            fetcher=self._fetcher,
            signals=self._signals,
            candidate_metrics=self._candidate_metrics,
        )
        self.integrations = RetailerIntegrationService()
        logger.info(
            f"Task runner initialized (fetch provider={self._fetcher.provider}, "
            f"retailers={len(self.integrations.adapters)})"
        )

    async def close(self):
        """Clean up resources."""
        if self.integrations:
            await self.integrations.close()
        if self._fetcher:
            await self._fetcher.close()
        for closable in (self._signals, self._candidate_metrics, self._config_store, self._counter_store):
            if closable:
                await closable.close()

    async def check_url_candidates(self) -> BatchResult:
        """Run one candidate batch; a failed batch is logged and reported empty."""
        if self.checker is None:
            raise RuntimeError("Task runner not initialized")
        try:
            result = await self.checker.check_batch(settings.url_candidate_batch_size)
        except Exception as e:
            logger.error(f"URL candidate batch failed: {e}", exc_info=True)
            metrics.record_batch_run(False)
            return BatchResult(checked=0, live_found=0)
        return result

    async def check_retailer_health(self):
        if self.integrations is None:
            raise RuntimeError("Task runner not initialized")
        return await self.integrations.run_health_check()

    async def refresh_retailers(self) -> int:
        """Reload the retailer id -> slug mapping."""
        if self.registry is None:
            raise RuntimeError("Task runner not initialized")
        count = await self.registry.refresh()
        logger.info(f"Retailer registry refreshed: {count} retailers")
        return count


task_runner = TaskRunner()
