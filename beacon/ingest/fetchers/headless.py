"""Local headless browser rendering for candidate pages."""

import asyncio
import logging
from typing import Optional

from playwright.async_api import Browser, async_playwright, TimeoutError as PlaywrightTimeoutError

from beacon.config import settings

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

STEALTH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-infobars",
    "--disable-extensions",
]


class RenderTimeout(Exception):
    """The page did not finish loading within the render timeout."""


class PlaywrightRenderer:
    """Renders a URL in headless Chromium and returns the final DOM."""

    def __init__(self, headless: bool = True):
        self.headless = headless
        self._playwright = None
        self._browser: Optional[Browser] = None
        self._init_lock = asyncio.Lock()

    async def _ensure_browser(self) -> Browser:
        async with self._init_lock:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            if self._browser is None:
                self._browser = await self._playwright.chromium.launch(
                    headless=self.headless,
                    args=STEALTH_ARGS,
                )
                logger.info("Launched headless browser for render mode")
        return self._browser

    async def render(
        self,
        url: str,
        timeout_ms: Optional[int] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> tuple[int, str, dict[str, str]]:
        """
        Load a page and wait for network idle.

        Args:
            url: Page to render
            timeout_ms: Navigation timeout (defaults to settings)
            headers: Extra request headers

        Returns:
            (status_code, html, response_headers)

        Raises:
            RenderTimeout: navigation timed out
        """
        timeout_ms = timeout_ms or settings.headless_browser_timeout * 1000
        browser = await self._ensure_browser()
        context = await browser.new_context(
            user_agent=USER_AGENT,
            locale="en-US",
            viewport={"width": 1366, "height": 768},
            extra_http_headers=headers or {},
        )
        try:
            page = await context.new_page()
            try:
                response = await page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
                try:
                    await page.wait_for_load_state("networkidle", timeout=timeout_ms)
                except PlaywrightTimeoutError:
                    # Long-polling pages never go idle; the DOM is still usable
                    logger.debug(f"Network never idled for {url}")
            except PlaywrightTimeoutError as e:
                raise RenderTimeout(f"Render timed out after {timeout_ms}ms: {url}") from e

            html = await page.content()
            status = response.status if response else 200
            response_headers = dict(response.headers) if response else {}
            return status, html, response_headers
        finally:
            await context.close()

    async def close(self):
        if self._browser:
            await self._browser.close()
            self._browser = None
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None
