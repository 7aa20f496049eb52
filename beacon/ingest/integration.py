"""Retailer integration service: one adapter per retailer, fanned out concurrently."""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Optional, Sequence

from beacon.ingest.adapters import create_adapter
from beacon.ingest.base import (
    AvailabilityRequest,
    AvailabilityResult,
    HealthStatus,
    RetailerAdapter,
    RetailerProfile,
)
from beacon.ingest.registry import default_profiles

logger = logging.getLogger(__name__)

RETAILER_WEBSITES = {
    "best-buy": "https://www.bestbuy.com",
    "walmart": "https://www.walmart.com",
    "costco": "https://www.costco.com",
    "sams-club": "https://www.samsclub.com",
}


class RetailerIntegrationService:
    """
    Owns the retailer adapters and queries them together.

    Retailers whose adapter cannot be built (e.g. missing API key) are logged
    and left out. Inactive retailers are kept but skipped by queries.
    """

    def __init__(
        self,
        profiles: Optional[Sequence[RetailerProfile]] = None,
        adapter_factory: Callable[[RetailerProfile], RetailerAdapter] = create_adapter,
    ):
        self.adapters: dict[str, RetailerAdapter] = {}
        self.profiles: dict[str, RetailerProfile] = {}
        for profile in profiles if profiles is not None else default_profiles():
            try:
                self.adapters[profile.id] = adapter_factory(profile)
            except ValueError as e:
                logger.error(f"Failed to initialize retailer {profile.name}: {e}")
                continue
            self.profiles[profile.id] = profile
            logger.info(f"Initialized retailer adapter: {profile.name}")

    async def close(self):
        for adapter in self.adapters.values():
            await adapter.close()

    def _targets(self, retailer_ids: Optional[Sequence[str]]) -> list[str]:
        ids = retailer_ids if retailer_ids is not None else list(self.adapters)
        return [rid for rid in ids if rid in self.adapters and self.profiles[rid].is_active]

    def list_retailers(self) -> list[dict[str, Any]]:
        return [
            {
                "id": p.id,
                "name": p.name,
                "slug": p.slug,
                "type": p.type,
                "is_active": p.is_active,
                "website": RETAILER_WEBSITES.get(p.slug, ""),
            }
            for p in self.profiles.values()
        ]

    async def check_availability(
        self,
        request: AvailabilityRequest,
        retailer_ids: Optional[Sequence[str]] = None,
    ) -> list[AvailabilityResult]:
        """
        Ask every active retailer about one product at once.

        Retailers that fail are logged and left out of the result.
        """
        targets = self._targets(retailer_ids)
        outcomes = await asyncio.gather(
            *(self.adapters[rid].check_availability(request) for rid in targets),
            return_exceptions=True,
        )
        results = []
        for rid, outcome in zip(targets, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Error checking availability for {rid}: {outcome!r}")
            else:
                results.append(outcome)
        if not results and targets:
            logger.warning(f"No successful availability checks for product {request.product_id}")
        return results

    async def search_products(
        self,
        query: str,
        retailer_ids: Optional[Sequence[str]] = None,
    ) -> list[AvailabilityResult]:
        targets = self._targets(retailer_ids)
        outcomes = await asyncio.gather(
            *(self.adapters[rid].search_products(query) for rid in targets),
            return_exceptions=True,
        )
        results: list[AvailabilityResult] = []
        for rid, outcome in zip(targets, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Error searching products for {rid}: {outcome!r}")
            else:
                results.extend(outcome)
        return results

    async def health(self) -> list[HealthStatus]:
        """Health of every retailer, active or not."""
        ids = list(self.adapters)
        outcomes = await asyncio.gather(
            *(self.adapters[rid].get_health_status() for rid in ids),
            return_exceptions=True,
        )
        statuses = []
        for rid, outcome in zip(ids, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Error getting health status for {rid}: {outcome!r}")
                outcome = HealthStatus(
                    retailer_id=rid,
                    is_healthy=False,
                    response_time=0.0,
                    success_rate=0.0,
                    last_checked=datetime.utcnow(),
                    errors=[f"Health check failed: {outcome}"],
                    circuit_breaker_state=self._limiter(rid).breaker.state.value,
                )
            statuses.append(outcome)
        return statuses

    def _limiter(self, retailer_id: str):
        return self.adapters[retailer_id].http.limiter

    def metrics(self) -> list[dict[str, Any]]:
        return [self._limiter(rid).metrics.snapshot() for rid in self.adapters]

    def set_status(self, retailer_id: str, is_active: bool) -> bool:
        """Enable or disable a retailer; enabling also closes its circuit."""
        profile = self.profiles.get(retailer_id)
        if profile is None:
            return False
        self.profiles[retailer_id] = replace(profile, is_active=is_active)
        if is_active:
            self._limiter(retailer_id).reset_circuit()
            logger.info(f"Enabled retailer: {profile.name}")
        else:
            logger.info(f"Disabled retailer: {profile.name}")
        return True

    def reset_circuit_breaker(self, retailer_id: str) -> bool:
        if retailer_id not in self.adapters:
            return False
        self._limiter(retailer_id).reset_circuit()
        logger.info(f"Reset circuit breaker for retailer: {self.profiles[retailer_id].name}")
        return True

    async def run_health_check(self) -> list[HealthStatus]:
        """Periodic job: check every retailer and log the unhealthy ones."""
        logger.info("Starting periodic retailer health check")
        statuses = await self.health()
        unhealthy = [s for s in statuses if not s.is_healthy]
        if unhealthy:
            logger.warning(
                "Unhealthy retailers: "
                + ", ".join(f"{s.retailer_id} ({'; '.join(s.errors)})" for s in unhealthy)
            )
        else:
            logger.info(f"All {len(statuses)} retailers healthy")
        return statuses
