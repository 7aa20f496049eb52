"""Shared HTTP plumbing for retailer adapters.

Adapters compose an ``AdapterHttpSupport`` instead of inheriting from a base
class. The helper owns the httpx client, auth injection, the per-adapter rate
limit window and circuit breaker, metrics, retries and error classification;
adapters only choose endpoints and parse responses.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Sequence

import httpx

from beacon.config import settings
from beacon.ingest.base import HealthStatus, RetailerProfile
from beacon.ingest.errors import ErrorType, RetailerError, classify_exception, classify_status
from beacon.ingest.rate_limiter import AdapterRateLimiter, thresholds_for

logger = logging.getLogger(__name__)

# Minimum intervals between requests (seconds)
BASE_REQUEST_INTERVAL = 60.0
SCRAPING_MIN_INTERVAL = 2.0

API_USER_AGENT = "BoosterBeacon/1.0"
BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def default_headers(profile: RetailerProfile) -> dict[str, str]:
    """JSON headers for API retailers, browser-like headers for scraping ones."""
    headers = {
        "Accept": "application/json",
        "User-Agent": API_USER_AGENT,
    }
    if profile.is_scraping:
        headers.update({
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.5",
            "Accept-Encoding": "gzip, deflate, br",
            "DNT": "1",
            "Connection": "keep-alive",
            "Upgrade-Insecure-Requests": "1",
            "User-Agent": BROWSER_USER_AGENT,
        })
    headers.update(profile.headers)
    return headers


def apply_authentication(
    profile: RetailerProfile,
    params: dict[str, Any],
    headers: dict[str, str],
) -> None:
    """
    Inject the retailer's API key into a request in place.

    Best Buy takes a query parameter, Walmart a pair of custom headers,
    everyone else a bearer token. Without a key nothing is added.
    """
    if not profile.api_key:
        return
    if profile.id == "bestbuy":
        params["apikey"] = profile.api_key
    elif profile.id == "walmart":
        headers["WM_SVC.NAME"] = "Walmart Open API"
        headers["WM_CONSUMER.ID"] = profile.api_key
    else:
        headers["Authorization"] = f"Bearer {profile.api_key}"


def min_request_interval(profile: RetailerProfile) -> float:
    rpm = max(1, profile.rate_limit.requests_per_minute)
    interval = BASE_REQUEST_INTERVAL / rpm
    if profile.is_scraping:
        return max(interval, SCRAPING_MIN_INTERVAL)
    return interval


# ---------------------------------------------------------------------------
# Product helpers
# ---------------------------------------------------------------------------

POKEMON_KEYWORDS = (
    "pokemon", "pokémon", "tcg", "trading card", "booster",
    "elite trainer", "battle deck", "starter deck", "theme deck",
    "collection box", "tin", "premium collection",
)

EXCLUDE_KEYWORDS = (
    "video game", "plush", "figure", "toy", "clothing",
    "accessory", "keychain", "backpack", "lunch box",
)


@dataclass(frozen=True)
class TcgProductFilter:
    """Keyword matcher that keeps trading-card listings and drops merchandise."""

    keywords: Sequence[str] = POKEMON_KEYWORDS
    exclude_keywords: Sequence[str] = EXCLUDE_KEYWORDS

    def matches(self, name: str, additional_text: str = "") -> bool:
        """
        Keywords may appear in the name or the extra text (category path,
        brand, description). Exclusions apply to the name only: a category
        path like "Toys > Trading Cards" never rejects a listing.
        """
        text = f"{name} {additional_text}".lower()
        if not any(k in text for k in self.keywords):
            return False
        title = name.lower()
        return not any(k in title for k in self.exclude_keywords)


_PRICE_RE = re.compile(r"\$?\s*(\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?)")


def parse_price(price_text: Optional[str]) -> Optional[float]:
    """
    Parse the first price out of free text.

    Handles "$29.99", "29.99", "$29.99 - $39.99", "Member's Mark $1,299.00".
    Returns None if no number is present.
    """
    if not price_text:
        return None
    match = _PRICE_RE.search(price_text)
    if not match:
        return None
    try:
        return float(match.group(1).replace(",", ""))
    except ValueError:
        return None


def determine_availability_status(
    in_stock: bool,
    availability_text: Optional[str] = None,
    stock_level: Optional[int] = None,
) -> str:
    """Collapse retailer-specific stock hints into one availability status."""
    if not in_stock:
        return "out_of_stock"

    if availability_text:
        text = availability_text.lower()
        if "pre-order" in text or "preorder" in text:
            return "pre_order"
        if "limited" in text or "low stock" in text:
            return "low_stock"
        if "discontinued" in text:
            return "discontinued"

    if stock_level is not None and 0 < stock_level <= 5:
        return "low_stock"

    return "in_stock"


def build_cart_url(product_url: Optional[str], retailer_id: str) -> Optional[str]:
    """Direct add-to-cart link where the retailer supports one."""
    if not product_url:
        return None
    if retailer_id == "walmart":
        return f"{product_url}?athbdg=L1600"
    return None


# ---------------------------------------------------------------------------
# HTTP helper
# ---------------------------------------------------------------------------

@dataclass
class RequestOptions:
    params: dict[str, Any] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None


def _json_body(response: httpx.Response) -> Any:
    return response.json()


class AdapterHttpSupport:
    """Cross-cutting request handling shared by all retailer adapters."""

    def __init__(
        self,
        profile: RetailerProfile,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.profile = profile
        self._clock = clock
        self._sleep = sleep
        self._last_request_at: Optional[float] = None
        self.min_request_interval = min_request_interval(profile)
        self.limiter = AdapterRateLimiter(
            retailer_id=profile.id,
            requests_per_minute=profile.rate_limit.requests_per_minute,
            integration_type=profile.type,
            window_size=settings.circuit_breaker_window_size,
            min_samples=settings.circuit_breaker_min_samples,
            cooldown_seconds=settings.circuit_breaker_cooldown_seconds,
            clock=clock,
        )
        self.client = httpx.AsyncClient(
            base_url=profile.base_url,
            timeout=profile.timeout,
            headers=default_headers(profile),
            follow_redirects=True,
            transport=transport,
        )

    @property
    def metrics(self):
        return self.limiter.metrics

    async def close(self) -> None:
        await self.client.aclose()

    def error(
        self,
        message: str,
        error_type: ErrorType,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ) -> RetailerError:
        return RetailerError(message, self.profile.id, error_type, status_code, retryable)

    def update_metrics(self, success: bool, response_time_ms: float) -> None:
        self.limiter.update_metrics(success, response_time_ms)

    async def _polite_delay(self) -> None:
        if self._last_request_at is not None:
            elapsed = self._clock() - self._last_request_at
            if elapsed < self.min_request_interval:
                await self._sleep(self.min_request_interval - elapsed)
        self._last_request_at = self._clock()

    async def get(
        self,
        url: str,
        options: Optional[RequestOptions] = None,
        parse: Optional[Callable[[httpx.Response], Any]] = None,
    ) -> Any:
        """
        GET through the gate with the profile's retry policy.

        Retryable failures (network, 5xx, upstream 429) are retried up to
        ``retry.max_retries`` times with exponential back-off. Gate denials
        are never retried.

        Args:
            url: Path relative to the profile base URL
            options: Query params, headers, timeout
            parse: Optional body decoder; a ValueError from it fails the
                attempt with a PARSING error

        Returns:
            The response, or ``parse(response)`` when a decoder is given

        Raises:
            RetailerError: classified failure of the last attempt
        """
        options = options or RequestOptions()
        retry = self.profile.retry
        attempt = 0
        while True:
            try:
                return await self._send_once(url, options, parse)
            except RetailerError as e:
                if not e.retryable or attempt >= retry.max_retries:
                    raise
                delay = retry.retry_delay * (2 ** attempt)
                attempt += 1
                logger.info(
                    f"{self.profile.id} retry {attempt}/{retry.max_retries} for {url} "
                    f"after {e.error_type.value}, waiting {delay:.1f}s"
                )
                await self._sleep(delay)

    async def get_json(self, url: str, options: Optional[RequestOptions] = None) -> Any:
        """GET and decode a JSON body; non-JSON bodies raise RetailerError(PARSING)."""
        return await self.get(url, options, parse=_json_body)

    async def _send_once(
        self,
        url: str,
        options: RequestOptions,
        parse: Optional[Callable[[httpx.Response], Any]] = None,
    ) -> Any:
        denied_by = self.limiter.acquire()
        if denied_by == "circuit":
            raise self.error("Circuit breaker open", ErrorType.RATE_LIMIT, 429, False)
        if denied_by == "window":
            raise self.error("Rate limit exceeded", ErrorType.RATE_LIMIT, 429, False)

        await self._polite_delay()

        params = dict(options.params)
        headers = dict(options.headers)
        apply_authentication(self.profile, params, headers)

        start = self._clock()
        try:
            response = await self.client.get(
                url,
                params=params or None,
                headers=headers or None,
                timeout=options.timeout if options.timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.HTTPError as exc:
            self.update_metrics(False, (self._clock() - start) * 1000)
            logger.warning(f"HTTP request failed for {self.profile.id}: {url} ({exc!r})")
            raise classify_exception(exc, self.profile.id) from exc

        elapsed_ms = (self._clock() - start) * 1000
        if response.status_code >= 400:
            self.update_metrics(False, elapsed_ms)
            raise classify_status(response.status_code, self.profile.id, self.profile.type)

        if parse is None:
            self.update_metrics(True, elapsed_ms)
            return response

        try:
            body = parse(response)
        except ValueError as exc:
            self.update_metrics(False, elapsed_ms)
            logger.warning(f"Unparseable response from {self.profile.id}: {url} ({exc})")
            raise self.error(
                f"Invalid response body: {exc}", ErrorType.PARSING, response.status_code, False
            ) from exc
        self.update_metrics(True, elapsed_ms)
        return body

    async def health_status(
        self,
        check: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> HealthStatus:
        """
        Run a health-check request and judge health against the retailer-type thresholds.

        Args:
            check: Coroutine factory issuing the request; defaults to GET "/"
        """
        start = self._clock()
        errors: list[str] = []
        thresholds = thresholds_for(self.profile.type)
        try:
            await (check() if check else self.get("/"))
        except Exception as e:
            errors.append(f"Health check failed: {e}")
            return HealthStatus(
                retailer_id=self.profile.id,
                is_healthy=False,
                response_time=(self._clock() - start) * 1000,
                success_rate=self.metrics.success_rate,
                last_checked=datetime.utcnow(),
                errors=errors,
                circuit_breaker_state=self.limiter.breaker.state.value,
            )

        response_time = (self._clock() - start) * 1000
        success_rate = self.metrics.success_rate
        if success_rate < thresholds.success_rate:
            errors.append(f"Low success rate: {success_rate:.1f}%")
        if response_time > thresholds.response_time_ms:
            errors.append(f"High response time: {response_time:.0f}ms")

        return HealthStatus(
            retailer_id=self.profile.id,
            is_healthy=not errors,
            response_time=response_time,
            success_rate=success_rate,
            last_checked=datetime.utcnow(),
            errors=errors,
            circuit_breaker_state=self.limiter.breaker.state.value,
        )
