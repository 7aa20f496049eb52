"""Retailer integration contract and the value types it exchanges."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol, runtime_checkable

INTEGRATION_TYPES = ("api", "affiliate", "scraping")


@dataclass(frozen=True)
class RateLimitConfig:
    """Request caps for a retailer."""

    requests_per_minute: int = 5
    requests_per_hour: int = 100


@dataclass(frozen=True)
class RetryConfig:
    """Adapter-level retry policy (retry_delay in seconds, doubled per attempt)."""

    max_retries: int = 3
    retry_delay: float = 1.0


@dataclass
class RetailerProfile:
    """Static description of one retailer integration."""

    id: str
    name: str
    slug: str
    type: str  # api, affiliate, scraping
    base_url: str
    api_key: Optional[str] = None
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    timeout: float = 10.0
    retry: RetryConfig = field(default_factory=RetryConfig)
    headers: dict[str, str] = field(default_factory=dict)
    is_active: bool = True

    def __post_init__(self):
        if self.type not in INTEGRATION_TYPES:
            raise ValueError(f"Unknown integration type for {self.id}: {self.type}")

    @property
    def is_scraping(self) -> bool:
        return self.type == "scraping"


@dataclass
class AvailabilityRequest:
    """What to look up; adapters use whichever identifier they support."""

    product_id: str
    sku: Optional[str] = None
    upc: Optional[str] = None
    zip_code: Optional[str] = None
    radius_miles: Optional[int] = None


@dataclass
class StoreLocation:
    store_id: str
    store_name: str
    address: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    phone: Optional[str] = None
    distance_miles: Optional[float] = None
    in_stock: bool = False
    stock_level: Optional[int] = None
    price: Optional[float] = None


@dataclass
class AvailabilityResult:
    """Normalized availability answer from any retailer."""

    product_id: str
    retailer_id: str
    in_stock: bool
    availability_status: str
    product_url: str
    price: Optional[float] = None
    original_price: Optional[float] = None
    cart_url: Optional[str] = None
    stock_level: Optional[int] = None
    store_locations: list[StoreLocation] = field(default_factory=list)
    last_updated: datetime = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.last_updated is None:
            self.last_updated = datetime.utcnow()


@dataclass
class HealthStatus:
    retailer_id: str
    is_healthy: bool
    response_time: float  # ms
    success_rate: float  # percent
    last_checked: datetime
    errors: list[str] = field(default_factory=list)
    circuit_breaker_state: str = "CLOSED"


@runtime_checkable
class RetailerAdapter(Protocol):
    """Interface every retailer integration implements."""

    profile: RetailerProfile

    async def check_availability(self, request: AvailabilityRequest) -> AvailabilityResult:
        """Look up one product; raises RetailerError on failure."""
        ...

    async def search_products(self, query: str) -> list[AvailabilityResult]:
        """Search the retailer, returning trading-card products only."""
        ...

    async def get_health_status(self) -> HealthStatus:
        ...

    async def close(self) -> None:
        ...
