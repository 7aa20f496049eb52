"""Tests for the candidate HTTP fetcher and its providers."""

import json

import httpx
import pytest
from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

from beacon.config import Settings
from beacon.ingest.http_fetcher import FetchError, FetchOptions, HttpFetcher, error_code_for
from tests.conftest import no_sleep

UNLOCKER = "https://unlocker.example.test/request"


def make_fetcher(handler, provider="direct", renderer=None, **config):
    settings = Settings(
        unlocker_api_url=config.pop("unlocker_api_url", UNLOCKER),
        unlocker_api_token=config.pop("unlocker_api_token", "token"),
        proxy_max_retries=config.pop("proxy_max_retries", 2),
        **config,
    )
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpFetcher(provider=provider, client=client, renderer=renderer, config=settings, sleep=no_sleep)


class FakeRenderer:
    def __init__(self):
        self.calls = []

    async def render(self, url, timeout_ms, headers=None):
        self.calls.append((url, timeout_ms))
        return 200, "<html>rendered</html>", {}

    async def close(self):
        pass


class BrokenRenderer:
    def __init__(self, exc):
        self.exc = exc

    async def render(self, url, timeout_ms, headers=None):
        raise self.exc

    async def close(self):
        pass


def test_error_codes():
    assert error_code_for(httpx.ReadTimeout("slow")) == "ETIMEDOUT"
    assert error_code_for(httpx.ConnectError("[Errno -2] Name or service not known")) == "ENOTFOUND"
    assert error_code_for(httpx.ConnectError("Connection refused")) == "ECONNREFUSED"
    assert error_code_for(httpx.RemoteProtocolError("peer closed")) == "ECONNRESET"
    assert error_code_for(FetchError("EPROXY")) == "EPROXY"


def test_browser_error_codes():
    assert error_code_for(PlaywrightError("net::ERR_NAME_NOT_RESOLVED at https://x.test/")) == "ENOTFOUND"
    assert error_code_for(PlaywrightError("net::ERR_CONNECTION_RESET at https://x.test/")) == "ECONNRESET"
    assert error_code_for(PlaywrightError("net::ERR_CONNECTION_REFUSED")) == "ECONNREFUSED"
    assert error_code_for(PlaywrightTimeoutError("Timeout 12000ms exceeded")) == "ETIMEDOUT"
    assert error_code_for(PlaywrightError("Executable doesn't exist at /ms-playwright/chromium")) == "ERENDER"


def test_provider_aliases():
    assert make_fetcher(lambda r: httpx.Response(200), provider="brightdata").provider == "proxy"
    assert make_fetcher(lambda r: httpx.Response(200), provider="carrier-pigeon").provider == "direct"


@pytest.mark.asyncio
async def test_direct_returns_non_2xx_without_raising():
    fetcher = make_fetcher(lambda r: httpx.Response(404, text="gone"))
    response = await fetcher.get("https://shop.example.test/p/1")
    assert response.status == 404
    assert not response.ok
    assert response.body == "gone"


@pytest.mark.asyncio
async def test_direct_wraps_transport_errors():
    def handler(request):
        raise httpx.ConnectTimeout("timed out")

    fetcher = make_fetcher(handler)
    with pytest.raises(FetchError) as excinfo:
        await fetcher.get("https://shop.example.test/p/1")
    assert excinfo.value.code == "ETIMEDOUT"


@pytest.mark.asyncio
async def test_direct_render_uses_renderer():
    renderer = FakeRenderer()
    fetcher = make_fetcher(lambda r: httpx.Response(500), renderer=renderer)
    response = await fetcher.get("https://shop.example.test/p/1", FetchOptions(render=True, timeout_ms=12000))
    assert response.rendered
    assert response.body == "<html>rendered</html>"
    assert renderer.calls == [("https://shop.example.test/p/1", 12000)]


@pytest.mark.asyncio
async def test_renderer_failure_is_a_fetch_error():
    renderer = BrokenRenderer(PlaywrightError("Executable doesn't exist at /ms-playwright/chromium"))
    fetcher = make_fetcher(lambda r: httpx.Response(200), renderer=renderer)
    with pytest.raises(FetchError) as excinfo:
        await fetcher.get("https://shop.example.test/p/1", FetchOptions(render=True))
    assert excinfo.value.code == "ERENDER"


@pytest.mark.asyncio
async def test_unlocker_extracts_nested_content():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        assert request.headers["Authorization"] == "Bearer token"
        return httpx.Response(200, json={"solution": {"content": "<html>ok</html>"}})

    fetcher = make_fetcher(handler, provider="proxy")
    response = await fetcher.get("https://shop.example.test/p/1", FetchOptions(render=True))

    assert response.body == "<html>ok</html>"
    assert response.rendered
    assert seen[0]["url"] == "https://shop.example.test/p/1"
    assert seen[0]["render"] is True
    assert seen[0]["session"].startswith("bb_")


@pytest.mark.asyncio
async def test_unlocker_rotates_session_on_block_then_succeeds():
    sessions = []

    def handler(request):
        sessions.append(json.loads(request.content)["session"])
        if len(sessions) == 1:
            return httpx.Response(429)
        return httpx.Response(200, json={"content": "page"})

    fetcher = make_fetcher(handler, provider="proxy")
    response = await fetcher.get("https://shop.example.test/p/1")

    assert response.body == "page"
    assert len(sessions) == 2
    assert sessions[0] != sessions[1]


@pytest.mark.asyncio
async def test_unlocker_falls_back_to_direct_after_retries():
    unlocker_calls = []

    def handler(request):
        if str(request.url) == UNLOCKER:
            unlocker_calls.append(request)
            return httpx.Response(403)
        return httpx.Response(200, text="direct body")

    fetcher = make_fetcher(handler, provider="proxy", proxy_max_retries=1)
    response = await fetcher.get("https://shop.example.test/p/1")

    assert len(unlocker_calls) == 2
    assert response.body == "direct body"
    assert not response.rendered


@pytest.mark.asyncio
async def test_unconfigured_unlocker_degrades_to_direct():
    fetcher = make_fetcher(lambda r: httpx.Response(200, text="direct"), provider="proxy", unlocker_api_url="")
    response = await fetcher.get("https://shop.example.test/p/1")
    assert response.body == "direct"


@pytest.mark.asyncio
async def test_session_reuse_can_be_disabled():
    sessions = []

    def handler(request):
        sessions.append(json.loads(request.content)["session"])
        return httpx.Response(200, json={"content": "x"})

    fetcher = make_fetcher(handler, provider="proxy")
    await fetcher.get("https://shop.example.test/p/1")
    await fetcher.get("https://shop.example.test/p/2")
    await fetcher.get("https://shop.example.test/p/3", FetchOptions(use_session=False))

    assert sessions[0] == sessions[1]
    assert sessions[2] is None
