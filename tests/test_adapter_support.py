"""Tests for the shared adapter HTTP plumbing."""

import httpx
import pytest

from beacon.ingest.adapters.support import (
    AdapterHttpSupport,
    RequestOptions,
    TcgProductFilter,
    apply_authentication,
    build_cart_url,
    default_headers,
    determine_availability_status,
    min_request_interval,
    parse_price,
)
from beacon.ingest.base import RateLimitConfig, RetailerProfile, RetryConfig
from beacon.ingest.errors import ErrorType, RetailerError


def make_profile(**overrides):
    values = dict(
        id="bestbuy",
        name="Best Buy",
        slug="best-buy",
        type="api",
        base_url="https://api.example.test/v1",
        api_key="secret",
        rate_limit=RateLimitConfig(requests_per_minute=5),
        retry=RetryConfig(max_retries=2, retry_delay=0.5),
    )
    values.update(overrides)
    return RetailerProfile(**values)


class Recorder:
    """MockTransport handler that records requests and replays responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def make_support(profile, handler, sleeps=None):
    async def sleep(seconds):
        if sleeps is not None:
            sleeps.append(seconds)

    return AdapterHttpSupport(profile, transport=httpx.MockTransport(handler), sleep=sleep)


def test_authentication_by_retailer():
    params, headers = {}, {}
    apply_authentication(make_profile(), params, headers)
    assert params == {"apikey": "secret"}

    params, headers = {}, {}
    apply_authentication(make_profile(id="walmart", type="affiliate"), params, headers)
    assert headers["WM_CONSUMER.ID"] == "secret"
    assert params == {}

    params, headers = {}, {}
    apply_authentication(make_profile(id="other"), params, headers)
    assert headers["Authorization"] == "Bearer secret"

    params, headers = {}, {}
    apply_authentication(make_profile(api_key=None), params, headers)
    assert params == {} and headers == {}


def test_scraping_profile_gets_browser_headers():
    profile = make_profile(id="costco", type="scraping", api_key=None, headers={"X-Test": "1"})
    headers = default_headers(profile)
    assert "Mozilla" in headers["User-Agent"]
    assert headers["X-Test"] == "1"
    assert min_request_interval(profile) == 12.0
    assert min_request_interval(make_profile(rate_limit=RateLimitConfig(requests_per_minute=60))) == 1.0


@pytest.mark.asyncio
async def test_get_injects_api_key():
    recorder = Recorder(httpx.Response(200, json={"ok": True}))
    support = make_support(make_profile(), recorder)
    try:
        response = await support.get("/products", RequestOptions(params={"q": "pokemon"}))
    finally:
        await support.close()

    assert response.json() == {"ok": True}
    sent = recorder.requests[0]
    assert sent.url.params["apikey"] == "secret"
    assert sent.url.params["q"] == "pokemon"
    assert support.metrics.successful_requests == 1


@pytest.mark.asyncio
async def test_get_json_decodes_body():
    recorder = Recorder(httpx.Response(200, json={"products": []}))
    support = make_support(make_profile(), recorder)
    try:
        body = await support.get_json("/products")
    finally:
        await support.close()

    assert body == {"products": []}
    assert support.metrics.successful_requests == 1


@pytest.mark.asyncio
async def test_get_json_rejects_html_body():
    recorder = Recorder(httpx.Response(200, text="<html>maintenance</html>"))
    support = make_support(make_profile(), recorder)
    try:
        with pytest.raises(RetailerError) as excinfo:
            await support.get_json("/products")
    finally:
        await support.close()

    assert excinfo.value.error_type == ErrorType.PARSING
    assert excinfo.value.retryable is False
    assert len(recorder.requests) == 1
    assert support.metrics.failed_requests == 1
    assert support.metrics.successful_requests == 0


@pytest.mark.asyncio
async def test_retryable_errors_are_retried_with_backoff():
    sleeps = []
    recorder = Recorder(
        httpx.Response(503),
        httpx.Response(503),
        httpx.Response(200, json={}),
    )
    support = make_support(make_profile(), recorder, sleeps)
    try:
        await support.get("/products")
    finally:
        await support.close()

    assert len(recorder.requests) == 3
    # Back-off sleeps interleave with the polite delay between requests
    assert 0.5 in sleeps and 1.0 in sleeps


@pytest.mark.asyncio
async def test_retries_are_bounded():
    recorder = Recorder(httpx.Response(500))
    support = make_support(make_profile(), recorder, [])
    try:
        with pytest.raises(RetailerError) as excinfo:
            await support.get("/products")
    finally:
        await support.close()

    assert excinfo.value.error_type == ErrorType.SERVER_ERROR
    assert len(recorder.requests) == 3


@pytest.mark.asyncio
async def test_not_found_is_not_retried():
    recorder = Recorder(httpx.Response(404))
    support = make_support(make_profile(), recorder, [])
    try:
        with pytest.raises(RetailerError) as excinfo:
            await support.get("/products/1.json")
    finally:
        await support.close()

    assert excinfo.value.error_type == ErrorType.NOT_FOUND
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_network_errors_are_classified():
    recorder = Recorder(httpx.ConnectError("connection refused"))
    support = make_support(make_profile(retry=RetryConfig(max_retries=0)), recorder)
    try:
        with pytest.raises(RetailerError) as excinfo:
            await support.get("/products")
    finally:
        await support.close()

    assert excinfo.value.error_type == ErrorType.NETWORK
    assert support.metrics.failed_requests == 1


@pytest.mark.asyncio
async def test_gate_denial_makes_no_network_call():
    recorder = Recorder(httpx.Response(200, json={}))
    profile = make_profile(rate_limit=RateLimitConfig(requests_per_minute=1))
    support = make_support(profile, recorder)
    try:
        await support.get("/a")
        with pytest.raises(RetailerError) as excinfo:
            await support.get("/b")
    finally:
        await support.close()

    assert excinfo.value.error_type == ErrorType.RATE_LIMIT
    assert excinfo.value.retryable is False
    assert len(recorder.requests) == 1
    assert support.metrics.rate_limit_hits == 1


@pytest.mark.asyncio
async def test_health_status_reports_failures():
    recorder = Recorder(httpx.Response(500))
    support = make_support(make_profile(retry=RetryConfig(max_retries=0)), recorder)
    try:
        status = await support.health_status()
    finally:
        await support.close()

    assert status.is_healthy is False
    assert status.errors[0].startswith("Health check failed")
    assert status.circuit_breaker_state == "CLOSED"


def test_tcg_filter():
    product_filter = TcgProductFilter()
    assert product_filter.matches("Pokemon TCG: Scarlet & Violet Elite Trainer Box")
    assert product_filter.matches("Booster Bundle", "Trading Cards")
    assert product_filter.matches("Pokemon TCG: Booster Box", "Toys Trading Cards")
    assert not product_filter.matches("Pokemon Pikachu Plush")
    assert not product_filter.matches("Pokemon Scarlet Video Game")
    assert not product_filter.matches("USB-C Cable")


def test_parse_price():
    assert parse_price("$29.99") == 29.99
    assert parse_price("29.99") == 29.99
    assert parse_price("$29.99 - $39.99") == 29.99
    assert parse_price("Member's Mark $1,299.00") == 1299.0
    assert parse_price("Sold out") is None
    assert parse_price(None) is None


def test_availability_status_and_cart_url():
    assert determine_availability_status(False) == "out_of_stock"
    assert determine_availability_status(True, "Pre-Order now") == "pre_order"
    assert determine_availability_status(True, stock_level=3) == "low_stock"
    assert determine_availability_status(True, "Available") == "in_stock"
    assert build_cart_url("https://www.walmart.com/ip/1", "walmart") == "https://www.walmart.com/ip/1?athbdg=L1600"
    assert build_cart_url("https://www.bestbuy.com/site/1", "bestbuy") is None
