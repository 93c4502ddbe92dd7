"""
Content reader - fetch, render if needed, extract and cache reader documents.
"""

import logging
from typing import TYPE_CHECKING

from ..exceptions import ReaderFetchError
from ..models import ReaderDocument
from ..storage import ReaderRepository
from .extraction import extract_reader
from .fetcher import PageFetcher
from .utils import looks_client_rendered, should_cache_reader
from .x_adapter import XReader, is_x_status_url

if TYPE_CHECKING:
    from .renderer import JSRenderer

logger = logging.getLogger(__name__)


class ContentReader:
    """Builds reader documents for saved URLs and caches the good ones."""

    def __init__(
        self,
        readers: ReaderRepository,
        fetcher: PageFetcher | None = None,
        renderer: "JSRenderer | None" = None,
        x_reader: XReader | None = None,
    ):
        self.readers = readers
        self.fetcher = fetcher or PageFetcher()
        self.renderer = renderer
        self.x_reader = x_reader

    async def build_reader_content(self, url: str, fallback_title: str | None = None) -> ReaderDocument | None:
        """
        Produce a reader document for url without touching the cache.

        X status links are read through the X API first. Client-rendered
        pages go to the renderer first when one is configured; otherwise the
        raw HTML is tried first and the renderer only runs if the result
        fails the gate.

        Raises:
            ReaderFetchError: If the raw page cannot be fetched
        """
        if self.x_reader is not None and is_x_status_url(url):
            x_document = await self.x_reader.build_reader(url, fallback_title)
            if should_cache_reader(x_document):
                return x_document
            logger.info(f"X reader unavailable for {url}, fetching the page")

        html = await self.fetcher.fetch_html(url)
        prefer_browser = self.renderer is not None and looks_client_rendered(html)

        reader = None if prefer_browser else extract_reader(html, url, fallback_title)

        if not should_cache_reader(reader) and self.renderer is not None:
            rendered_html = await self._render(url)
            if rendered_html:
                rendered = extract_reader(rendered_html, url, fallback_title)
                if should_cache_reader(rendered) or reader is None:
                    reader = rendered

        if reader is None and prefer_browser:
            reader = extract_reader(html, url, fallback_title)

        return reader

    async def _render(self, url: str) -> str | None:
        result = await self.renderer.render(url)
        if not result.success:
            logger.warning(f"Render failed for {url}: {result.error}")
            return None
        return result.html or None

    async def get_cached(self, item_id: str) -> ReaderDocument | None:
        """Cached document if it still passes the gate."""
        cached = await self.readers.get(item_id)
        return cached if should_cache_reader(cached) else None

    async def cache_reader(self, item_id: str, reader: ReaderDocument | None) -> bool:
        if not should_cache_reader(reader):
            return False
        await self.readers.save(item_id, reader)
        return True

    async def ensure_reader(
        self,
        item_id: str,
        url: str,
        title: str | None = None,
        force_refresh: bool = False,
    ) -> ReaderDocument | None:
        """
        Like fetch_and_cache_reader, but fetch failures propagate so job
        workers can decide whether to retry.

        With force_refresh the document is rebuilt; the cached one is kept
        and returned if the rebuild fails.

        Raises:
            ReaderFetchError: If the page cannot be fetched and nothing is cached
        """
        cached = await self.get_cached(item_id)
        if cached is not None and not force_refresh:
            return cached

        try:
            reader = await self.build_reader_content(url, title)
        except ReaderFetchError as e:
            if cached is None:
                raise
            logger.warning(f"Reader refresh failed for {item_id}, keeping cached copy: {e}")
            return cached

        if not await self.cache_reader(item_id, reader):
            return cached
        return reader

    async def fetch_and_cache_reader(
        self,
        item_id: str,
        url: str,
        title: str | None = None,
        force_refresh: bool = False,
    ) -> ReaderDocument | None:
        """
        Return a gated reader document for an item, building it when needed.

        A cached document that no longer passes the gate is deleted. Fetch and
        render failures are logged and yield None.
        """
        if not item_id or not url:
            return None

        cached = await self.readers.get(item_id)
        if cached is not None and cached.content_html:
            if should_cache_reader(cached) and not force_refresh:
                return cached
            if not should_cache_reader(cached):
                logger.info(f"Dropping cached reader for {item_id} that fails the content gate")
                await self.readers.delete(item_id)

        try:
            reader = await self.build_reader_content(url, title)
        except ReaderFetchError as e:
            logger.warning(f"Reader unavailable for {item_id} ({url}): {e}")
            return None

        if not await self.cache_reader(item_id, reader):
            return None
        return reader
