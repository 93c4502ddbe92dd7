"""
JavaScript Renderer - Render client-side pages using Playwright.

Used when a page's raw HTML is an application shell or does not pass the
reader gate. After navigation the renderer waits (best effort) for a content
container with enough words, then polls the page's visible text length until
it stops changing.

Requires browser binaries: playwright install chromium
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from playwright.async_api import Browser, Page, TimeoutError as PlaywrightTimeout, async_playwright

from .extraction import CONTENT_SELECTORS
from .fetcher import DEFAULT_USER_AGENT
from .utils import DEFAULT_MIN_WORD_COUNT

logger = logging.getLogger(__name__)

RENDER_TIMEOUT_MS = 15000
CONTENT_WAIT_TIMEOUT_MS = 6000
RENDER_SETTLE_MS = 1200
TEXT_POLL_INTERVAL_MS = 300
TEXT_STABILITY_THRESHOLD = 24

CONTENT_READY_SCRIPT = """
([selector, minWords]) => {
    const el = document.querySelector(selector);
    if (!el) return false;
    const text = (el.innerText || '').trim();
    if (!text) return false;
    return text.split(/\\s+/).length >= minWords;
}
"""

BODY_TEXT_LENGTH_SCRIPT = "() => document.body ? document.body.innerText.length : 0"


@dataclass
class RenderResult:
    """Result of rendering a page with JavaScript."""
    url: str
    html: str
    final_url: str
    success: bool
    error: str | None = None


async def wait_for_text_stability(
    page: Any,
    timeout_ms: int = RENDER_TIMEOUT_MS,
    settle_ms: int = RENDER_SETTLE_MS,
    poll_ms: int = TEXT_POLL_INTERVAL_MS,
    threshold: int = TEXT_STABILITY_THRESHOLD,
) -> bool:
    """
    Poll the body text length until it changes by at most ``threshold``
    characters for ``settle_ms``. Returns True if the page settled.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_ms / 1000
    last_length = 0
    stable_for = 0

    while loop.time() < deadline:
        try:
            length = await page.evaluate(BODY_TEXT_LENGTH_SCRIPT)
        except Exception as e:
            logger.debug(f"Text length check failed: {e}")
            return False

        if abs(length - last_length) <= threshold:
            stable_for += poll_ms
        else:
            stable_for = 0
        last_length = length

        if stable_for >= settle_ms:
            return True

        await asyncio.sleep(poll_ms / 1000)

    return False


class JSRenderer:
    """
    Renders JavaScript-heavy pages using a headless Chromium.

    The browser is launched lazily and reused; each render gets its own
    context.
    """

    def __init__(self, timeout: int = RENDER_TIMEOUT_MS):
        """
        Initialize the JS renderer.

        Args:
            timeout: Navigation and settle timeout in milliseconds
        """
        self.timeout = timeout
        self._playwright = None
        self._browser: Optional["Browser"] = None
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        """Start the browser instance."""
        async with self._lock:
            if self._browser is None:
                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(
                    headless=True,
                    args=[
                        "--disable-gpu",
                        "--disable-dev-shm-usage",
                        "--disable-setuid-sandbox",
                        "--no-sandbox",
                    ]
                )
                logger.info("Started Playwright browser")

    async def stop(self) -> None:
        """Stop the browser instance."""
        async with self._lock:
            if self._browser:
                await self._browser.close()
                self._browser = None
            if self._playwright:
                await self._playwright.stop()
                self._playwright = None
                logger.info("Stopped Playwright browser")

    async def render(self, url: str) -> RenderResult:
        """Render a page and return the resulting HTML. Never raises."""
        try:
            if self._browser is None:
                await self.start()
        except Exception as e:
            logger.error(f"Could not start browser for {url}: {e}")
            return RenderResult(url=url, html="", final_url=url, success=False, error=str(e))

        context = None
        page: Optional["Page"] = None
        try:
            context = await self._browser.new_context(
                user_agent=DEFAULT_USER_AGENT,
                viewport={"width": 1280, "height": 720},
                java_script_enabled=True,
                locale="en-US",
            )
            page = await context.new_page()
            page.set_default_timeout(self.timeout)

            response = await page.goto(url, timeout=self.timeout, wait_until="domcontentloaded")
            if not response:
                return RenderResult(url=url, html="", final_url=url, success=False, error="No response received")

            await self._wait_for_content(page)
            await wait_for_text_stability(page, timeout_ms=self.timeout)

            html = await page.content()
            return RenderResult(url=url, html=html, final_url=page.url, success=True)

        except PlaywrightTimeout:
            logger.warning(f"Timeout rendering {url}")
            return RenderResult(url=url, html="", final_url=url, success=False, error="Page load timeout")
        except Exception as e:
            logger.error(f"Error rendering {url}: {e}")
            return RenderResult(url=url, html="", final_url=url, success=False, error=str(e))
        finally:
            if context:
                try:
                    await context.close()
                except Exception as e:
                    logger.debug(f"Error closing render context: {e}")

    async def _wait_for_content(self, page: "Page") -> None:
        """Wait for a content container with enough words. Best effort."""
        try:
            await page.wait_for_function(
                CONTENT_READY_SCRIPT,
                arg=[",".join(CONTENT_SELECTORS), DEFAULT_MIN_WORD_COUNT],
                timeout=min(CONTENT_WAIT_TIMEOUT_MS, self.timeout),
            )
        except PlaywrightTimeout:
            logger.debug(f"No content container appeared on {page.url}")
