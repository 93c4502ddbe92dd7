"""
Page fetching over HTTP.
"""

import asyncio
import logging

import aiohttp

from ..exceptions import ReaderFetchError

logger = logging.getLogger(__name__)

FETCH_TIMEOUT_SECONDS = 10

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/122.0.0.0 Safari/537.36"
)


class PageFetcher:
    """Fetches raw HTML with a bounded timeout."""

    def __init__(self, timeout: float = FETCH_TIMEOUT_SECONDS, user_agent: str | None = None):
        self.timeout = timeout
        self.headers = {
            "User-Agent": user_agent or DEFAULT_USER_AGENT,
            "Accept": "text/html,application/xhtml+xml",
            "Accept-Language": "en-US,en;q=0.9",
        }

    async def fetch_html(self, url: str) -> str:
        """
        Fetch a page and return its HTML.

        Raises:
            ReaderFetchError: On timeouts, network errors and non-2xx responses
        """
        try:
            async with aiohttp.ClientSession(headers=self.headers) as session:
                async with session.get(
                    url,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                    allow_redirects=True,
                ) as resp:
                    resp.raise_for_status()
                    return await resp.text(errors="replace")
        except aiohttp.ClientResponseError as e:
            raise ReaderFetchError(f"Reader fetch failed with {e.status}") from e
        except asyncio.TimeoutError as e:
            raise ReaderFetchError(f"Reader fetch timed out after {self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise ReaderFetchError(f"Reader fetch network error: {e}") from e
