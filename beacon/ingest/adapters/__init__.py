"""Retailer adapters keyed by retailer id."""

from typing import Optional

import httpx

from beacon.ingest.adapters.bestbuy import BestBuyAdapter
from beacon.ingest.adapters.costco import CostcoAdapter
from beacon.ingest.adapters.samsclub import SamsClubAdapter
from beacon.ingest.adapters.walmart import WalmartAdapter
from beacon.ingest.base import RetailerAdapter, RetailerProfile

ADAPTERS = {
    "bestbuy": BestBuyAdapter,
    "walmart": WalmartAdapter,
    "costco": CostcoAdapter,
    "sams-club": SamsClubAdapter,
}


def create_adapter(
    profile: RetailerProfile,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    **http_kwargs,
) -> RetailerAdapter:
    """
    Build the adapter for a retailer profile.

    Raises:
        ValueError: unknown retailer, or a required API key is missing
    """
    adapter_cls = ADAPTERS.get(profile.id)
    if adapter_cls is None:
        raise ValueError(f"Unknown retailer: {profile.id}")
    return adapter_cls(profile, transport=transport, **http_kwargs)


__all__ = [
    "ADAPTERS",
    "BestBuyAdapter",
    "CostcoAdapter",
    "SamsClubAdapter",
    "WalmartAdapter",
    "create_adapter",
]
