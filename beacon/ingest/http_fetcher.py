"""HTTP fetcher for candidate URLs with pluggable providers.

Providers:
- ``direct``: plain httpx GET; ``render=True`` uses a local headless browser
- ``proxy``: in-house unlocker gateway (POST url + render/session/country)
- ``browser``: remote browser API

A provider without its endpoint configured degrades to ``direct``. Non-2xx
responses are returned, not raised; only transport failures raise FetchError.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import httpx
from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

from beacon.config import Settings, settings as default_settings
from beacon.ingest.fetchers.headless import PlaywrightRenderer, RenderTimeout

logger = logging.getLogger(__name__)

PROVIDERS = ("direct", "proxy", "browser")

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)


class FetchError(Exception):
    """Transport-level fetch failure with a compact error code (ETIMEDOUT, ...)."""

    def __init__(self, code: str, message: str = ""):
        super().__init__(message or code)
        self.code = code


def error_code_for(exc: Exception) -> str:
    """Map a transport exception to a socket-style error code."""
    if isinstance(exc, FetchError):
        return exc.code
    if isinstance(exc, (httpx.TimeoutException, RenderTimeout, PlaywrightTimeoutError, asyncio.TimeoutError)):
        return "ETIMEDOUT"
    if isinstance(exc, httpx.ConnectError):
        text = str(exc).lower()
        if "name or service" in text or "getaddrinfo" in text or "nodename" in text or "resolve" in text:
            return "ENOTFOUND"
        return "ECONNREFUSED"
    if isinstance(exc, (httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError)):
        return "ECONNRESET"
    if isinstance(exc, httpx.ProxyError):
        return "EPROXY"
    if isinstance(exc, PlaywrightError):
        return _browser_error_code(str(exc))
    return type(exc).__name__


# Chromium net:: errors surfaced by Playwright navigation
BROWSER_NET_ERRORS = (
    ("ERR_NAME_NOT_RESOLVED", "ENOTFOUND"),
    ("ERR_CONNECTION_RESET", "ECONNRESET"),
    ("ERR_CONNECTION_CLOSED", "ECONNRESET"),
    ("ERR_CONNECTION_REFUSED", "ECONNREFUSED"),
    ("ERR_TIMED_OUT", "ETIMEDOUT"),
    ("ERR_PROXY_CONNECTION_FAILED", "EPROXY"),
)


def _browser_error_code(message: str) -> str:
    for marker, code in BROWSER_NET_ERRORS:
        if marker in message:
            return code
    return "ERENDER"


@dataclass
class FetchOptions:
    timeout_ms: int = 15000
    render: bool = False
    use_session: bool = True
    params: dict[str, Any] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    country: Optional[str] = None


@dataclass
class FetchResponse:
    status: int
    body: str
    headers: dict[str, str] = field(default_factory=dict)
    rendered: bool = False

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


@dataclass
class _StickySession:
    id: str
    expires_at: float


def _body_text(data: Any) -> str:
    if isinstance(data, str):
        return data
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return json.dumps(data)


class HttpFetcher:
    """Fetches candidate URLs through the configured provider."""

    def __init__(
        self,
        provider: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        renderer: Optional[PlaywrightRenderer] = None,
        config: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or default_settings
        raw = (provider or self.config.http_fetch_provider or "direct").lower()
        # Deprecated alias for the unlocker gateway
        if raw == "brightdata":
            raw = "proxy"
        self.provider = raw if raw in PROVIDERS else "direct"
        self.client = client or httpx.AsyncClient(follow_redirects=True)
        self.renderer = renderer
        self._clock = clock
        self._sleep = sleep
        self._session: Optional[_StickySession] = None

    async def close(self):
        await self.client.aclose()
        if self.renderer:
            await self.renderer.close()

    async def get(self, url: str, options: Optional[FetchOptions] = None) -> FetchResponse:
        """
        Fetch a URL.

        Raises:
            FetchError: timeout, connection reset, DNS failure and similar
        """
        options = options or FetchOptions()
        try:
            if self.provider == "proxy":
                return await self._fetch_via_unlocker(url, options)
            if self.provider == "browser":
                return await self._fetch_via_browser_api(url, options)
            return await self._fetch_direct(url, options)
        except FetchError:
            raise
        except (httpx.HTTPError, PlaywrightError, RenderTimeout, asyncio.TimeoutError) as e:
            raise FetchError(error_code_for(e), f"{url}: {e}") from e

    async def _fetch_direct(self, url: str, options: FetchOptions) -> FetchResponse:
        if options.render and self.renderer is not None:
            status, html, headers = await self.renderer.render(
                url, timeout_ms=options.timeout_ms, headers=options.headers
            )
            return FetchResponse(status=status, body=html, headers=headers, rendered=True)

        headers = {"User-Agent": DEFAULT_USER_AGENT, "Accept-Language": "en-US,en;q=0.8"}
        headers.update(options.headers)
        res = await self.client.get(
            url,
            params=options.params or None,
            headers=headers,
            timeout=options.timeout_ms / 1000.0,
        )
        return FetchResponse(status=res.status_code, body=res.text, headers=dict(res.headers))

    def _current_session(self, use_session: bool) -> Optional[str]:
        if not use_session:
            self._session = None
            return None
        now = self._clock()
        if self._session is None or self._session.expires_at <= now:
            self._rotate_session()
        return self._session.id

    def _rotate_session(self) -> None:
        ttl = self.config.proxy_session_ttl_ms / 1000.0
        self._session = _StickySession(id=f"bb_{secrets.token_hex(6)}", expires_at=self._clock() + ttl)

    async def _fetch_via_unlocker(self, url: str, options: FetchOptions) -> FetchResponse:
        endpoint = self.config.unlocker_api_url
        token = self.config.unlocker_api_token
        if not endpoint or not token:
            return await self._fetch_direct(url, options)

        session_id = self._current_session(options.use_session)
        max_retries = self.config.proxy_max_retries
        timeout = (options.timeout_ms or self.config.proxy_timeout_ms) / 1000.0
        request_headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

        attempt = 0
        while True:
            payload = {
                "url": url,
                "method": "GET",
                "params": options.params,
                "render": bool(options.render),
                "country": options.country or self.config.proxy_country,
                "session": session_id,
                "headers": {
                    "User-Agent": options.headers.get("User-Agent", DEFAULT_USER_AGENT),
                    "Accept-Language": options.headers.get("Accept-Language", "en-US,en;q=0.8"),
                },
            }
            status: Optional[int] = None
            try:
                res = await self.client.post(endpoint, json=payload, headers=request_headers, timeout=timeout)
                status = res.status_code
                if res.is_success:
                    return FetchResponse(
                        status=status,
                        body=_body_text(self._extract_content(res)),
                        headers=dict(res.headers),
                        rendered=bool(options.render),
                    )
                retryable = status in (403, 429)
            except httpx.TimeoutException:
                retryable = True

            if retryable and attempt < max_retries:
                # New exit node, then back off
                if options.use_session:
                    self._rotate_session()
                    session_id = self._session.id
                await self._sleep(0.25 * (2 ** attempt))
                attempt += 1
                continue

            if status is None or status in (403, 429):
                logger.info(f"Unlocker failed for {url} (status={status}), falling back to direct")
                return await self._fetch_direct(url, FetchOptions(
                    timeout_ms=options.timeout_ms,
                    render=False,
                    use_session=options.use_session,
                    params=options.params,
                    headers=options.headers,
                ))
            return FetchResponse(status=status, body=res.text, headers=dict(res.headers))

    @staticmethod
    def _extract_content(res: httpx.Response) -> Any:
        """Unlocker providers nest the page body differently."""
        try:
            data = res.json()
        except ValueError:
            return res.text
        if isinstance(data, dict):
            if data.get("content") is not None:
                return data["content"]
            solution = data.get("solution")
            if isinstance(solution, dict) and solution.get("content") is not None:
                return solution["content"]
            response = data.get("response")
            if isinstance(response, dict) and response.get("body") is not None:
                return response["body"]
        return data

    async def _fetch_via_browser_api(self, url: str, options: FetchOptions) -> FetchResponse:
        endpoint = self.config.browser_api_url
        token = self.config.browser_api_token
        if not endpoint or not token:
            return await self._fetch_direct(url, options)

        res = await self.client.post(
            endpoint,
            json={"url": url, "params": options.params},
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                **options.headers,
            },
            timeout=(options.timeout_ms or self.config.browser_api_timeout_ms) / 1000.0,
        )
        return FetchResponse(
            status=res.status_code,
            body=_body_text(self._extract_content(res)),
            headers=dict(res.headers),
            rendered=True,
        )
