"""
Cover service - make sure every item ends up with a cover image.

Order of preference:
1. A cover already stored for the item
2. An image the reader declared for the page (e.g. a video thumbnail)
3. A generated portrait cover from the article text
"""

import asyncio
import base64
import logging

import aiohttp

from ..converters import now_iso
from ..exceptions import ConfigMissingError
from ..models import CoverImage, Item, ReaderDocument
from ..reader.utils import absolutize_url, derive_title_from_url
from ..storage import CoverRepository
from .generator import ImageGenerator, PartialCallback
from .prompts import build_cover_prompt, build_fallback_cover_prompt, build_snippet

logger = logging.getLogger(__name__)

EXTERNAL_COVER_TIMEOUT_SECONDS = 20
EXTERNAL_COVER_MAX_BYTES = 8 * 1024 * 1024


class ExternalCoverFetcher:
    """Downloads an image URL into a cover blob."""

    def __init__(
        self,
        timeout: float = EXTERNAL_COVER_TIMEOUT_SECONDS,
        max_bytes: int = EXTERNAL_COVER_MAX_BYTES,
    ):
        self.timeout = timeout
        self.max_bytes = max_bytes

    async def fetch(self, url: str) -> CoverImage | None:
        """Return the image as a cover, or None if it is not a usable image."""
        try:
            async with aiohttp.ClientSession(headers={"Accept": "image/*"}) as session:
                async with session.get(
                    url,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                    allow_redirects=True,
                ) as resp:
                    resp.raise_for_status()

                    content_type = (resp.headers.get("Content-Type") or "").split(";")[0].strip().lower()
                    if not content_type.startswith("image/"):
                        logger.info(f"External cover {url} is not an image ({content_type or 'no type'})")
                        return None

                    if resp.content_length and resp.content_length > self.max_bytes:
                        logger.info(f"External cover {url} too large ({resp.content_length} bytes)")
                        return None

                    body = bytearray()
                    async for chunk in resp.content.iter_chunked(64 * 1024):
                        body.extend(chunk)
                        if len(body) > self.max_bytes:
                            logger.info(f"External cover {url} exceeded {self.max_bytes} bytes")
                            return None

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"External cover fetch failed for {url}: {e}")
            return None

        if not body:
            return None

        return CoverImage(
            base64=base64.b64encode(bytes(body)).decode("ascii"),
            content_type=content_type,
            created_at=now_iso(),
        )


class CoverService:
    """Stores covers per item, importing or generating them as needed."""

    def __init__(
        self,
        covers: CoverRepository,
        generator: ImageGenerator | None = None,
        external_fetcher: ExternalCoverFetcher | None = None,
    ):
        self.covers = covers
        self.generator = generator
        self.external_fetcher = external_fetcher or ExternalCoverFetcher()

    async def ensure_cover_image(
        self,
        item: Item,
        reader: ReaderDocument | None,
        on_partial: PartialCallback | None = None,
    ) -> CoverImage | None:
        """
        Return the item's cover, creating and storing it if missing.

        Raises:
            ConfigMissingError: If generation is needed but no generator is configured
            UpstreamError: If the image API fails
        """
        existing = await self.covers.get(item.id)
        if existing is not None:
            return existing

        if reader is not None and reader.cover_image_url:
            image_url = absolutize_url(reader.cover_image_url, item.url)
            if image_url:
                imported = await self.external_fetcher.fetch(image_url)
                if imported is not None:
                    await self.covers.save(item.id, imported)
                    logger.info(f"Imported external cover for {item.id} from {image_url}")
                    return imported

        snippet = build_snippet(reader)
        if snippet is None:
            logger.info(f"Not enough text to generate a cover for {item.id}")
            return None

        if self.generator is None:
            raise ConfigMissingError("Cover generation API key not configured")

        title = (reader.title if reader else None) or item.title or derive_title_from_url(item.url)

        image = await self.generator.generate(build_cover_prompt(title, item.url, snippet), on_partial)
        if not image:
            logger.info(f"Cover prompt returned no image for {item.id}, retrying with fallback prompt")
            image = await self.generator.generate(build_fallback_cover_prompt(title, item.url, snippet), on_partial)
        if not image:
            return None

        cover = CoverImage(base64=image, content_type="image/png", created_at=now_iso())
        await self.covers.save(item.id, cover)
        logger.info(f"Generated cover for {item.id} with {self.generator.name}")
        return cover
