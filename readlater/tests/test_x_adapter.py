"""
Tests for reading X status links through the X API.
"""

from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from conftest import article_html
from readlater.exceptions import ReaderFetchError
from readlater.models import ReaderDocument
from readlater.reader import ContentReader, XReader, is_x_status_url
from readlater.reader.x_adapter import X_SITE_NAME, expand_tco_urls, parse_tweet_id, text_to_paragraphs
from readlater.storage import MemoryKeyValueStore, ReaderRepository

ARTICLE_URL = "https://x.com/raydalio/status/2022788750388998543"
NOTE_URL = "https://x.com/addyosmani/status/2005768629691019544"


def article_payload() -> dict:
    source_text = " ".join(f"token{i}" for i in range(80))
    return {
        "data": [
            {
                "id": "2022788750388998543",
                "author_id": "1",
                "text": "https://t.co/a",
                "article": {
                    "title": "Article title",
                    "preview_text": "Article preview",
                    "plain_text": source_text,
                    "cover_media": "3_cover",
                    "media_entities": ["3_inline_1"],
                },
            }
        ],
        "includes": {
            "users": [{"id": "1", "name": "Ray Dalio", "username": "RayDalio"}],
            "media": [
                {"media_key": "3_cover", "type": "photo", "url": "https://pbs.twimg.com/media/cover.jpg"},
                {"media_key": "3_inline_1", "type": "photo", "url": "https://pbs.twimg.com/media/inline-1.jpg"},
            ],
        },
    }


def note_payload() -> dict:
    return {
        "data": [
            {
                "id": "2005768629691019544",
                "author_id": "2",
                "text": "short text",
                "note_tweet": {
                    "text": "This is the full long-form note tweet text with enough words to parse cleanly.",
                    "entities": {"urls": []},
                },
            }
        ],
        "includes": {"users": [{"id": "2", "name": "Addy Osmani", "username": "addyosmani"}], "media": []},
    }


def json_transport(payload: dict, status: int = 200, requests: list | None = None) -> httpx.MockTransport:
    def handler(request):
        if requests is not None:
            requests.append(request)
        return httpx.Response(status, json=payload)

    return httpx.MockTransport(handler)


class TestStatusUrls:
    """Tests for recognising status links."""

    def test_x_and_twitter_hosts(self):
        assert is_x_status_url("https://x.com/user/status/123456789") is True
        assert is_x_status_url("https://twitter.com/user/status/123456789") is True
        assert is_x_status_url("https://mobile.twitter.com/user/status/123456789") is True
        assert is_x_status_url("https://example.com/user/status/123456789") is False

    def test_parse_tweet_id(self):
        assert parse_tweet_id("https://x.com/user/status/123456789?s=12") == "123456789"
        assert parse_tweet_id("https://x.com/home") is None
        assert parse_tweet_id(None) is None


class TestPayloadHelpers:

    def test_expand_tco_urls(self):
        entities = {"urls": [{"url": "https://t.co/abc", "expanded_url": "https://example.com/long"}]}
        assert expand_tco_urls("see https://t.co/abc", entities) == "see https://example.com/long"

    def test_paragraphs_escape_and_link(self):
        html = text_to_paragraphs("a <b> line\nnext https://example.com\n\nsecond")
        assert html == (
            '<p>a &lt;b&gt; line<br />next <a href="https://example.com" target="_blank" rel="noopener">'
            'https://example.com</a></p>\n<p>second</p>'
        )


class TestXReader:
    """Tests for building reader documents from the X API."""

    @pytest.mark.asyncio
    async def test_article_content_and_media(self):
        requests = []
        x_reader = XReader("test-token", transport=json_transport(article_payload(), requests=requests))

        reader = await x_reader.build_reader(ARTICLE_URL, ARTICLE_URL)

        assert reader is not None
        assert reader.title == "Article title"
        assert reader.site_name == X_SITE_NAME
        assert reader.byline == "Ray Dalio (@RayDalio)"
        assert reader.excerpt == "Article preview"
        assert reader.cover_image_url == "https://pbs.twimg.com/media/cover.jpg"
        assert '<img src="https://pbs.twimg.com/media/inline-1.jpg"' in reader.content_html
        assert "cover.jpg" not in reader.content_html
        assert reader.word_count == 80

        assert requests[0].headers["authorization"] == "Bearer test-token"
        assert requests[0].url.params["ids"] == "2022788750388998543"

    @pytest.mark.asyncio
    async def test_prefers_note_tweet_text(self):
        x_reader = XReader("test-token", transport=json_transport(note_payload()))

        reader = await x_reader.build_reader(NOTE_URL, NOTE_URL)

        assert reader is not None
        assert "This is the full long-form note tweet" in reader.content_html
        assert reader.cover_image_url is None
        assert reader.title.startswith("This is the full long-form note tweet")

    @pytest.mark.asyncio
    async def test_missing_token(self):
        assert await XReader("").build_reader("https://x.com/user/status/123") is None

    @pytest.mark.asyncio
    async def test_failed_response(self):
        x_reader = XReader("token", transport=json_transport({"error": "bad"}, status=500))
        assert await x_reader.build_reader("https://x.com/user/status/123") is None

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        x_reader = XReader("token", transport=httpx.MockTransport(handler))
        assert await x_reader.build_reader("https://x.com/user/status/123") is None

    @pytest.mark.asyncio
    async def test_mismatched_tweet(self):
        x_reader = XReader("token", transport=json_transport(note_payload()))
        assert await x_reader.build_reader("https://x.com/user/status/123") is None


class TestContentReaderWithX:
    """Tests for routing status links through the X reader."""

    @pytest.fixture
    def readers(self):
        return ReaderRepository(MemoryKeyValueStore())

    @pytest.fixture
    def fetcher(self):
        fetcher = Mock()
        fetcher.fetch_html = AsyncMock(return_value="<html><body><p>Something went wrong</p></body></html>")
        return fetcher

    @pytest.mark.asyncio
    async def test_status_link_skips_page_fetch(self, readers, fetcher):
        x_reader = XReader("test-token", transport=json_transport(article_payload()))
        reader = ContentReader(readers, fetcher=fetcher, x_reader=x_reader)

        result = await reader.fetch_and_cache_reader("item-1", ARTICLE_URL)

        assert result.title == "Article title"
        fetcher.fetch_html.assert_not_awaited()
        assert (await readers.get("item-1")).cover_image_url == "https://pbs.twimg.com/media/cover.jpg"

    @pytest.mark.asyncio
    async def test_falls_back_to_page_fetch(self, readers, fetcher):
        x_reader = Mock()
        x_reader.build_reader = AsyncMock(return_value=None)
        reader = ContentReader(readers, fetcher=fetcher, x_reader=x_reader)

        await reader.build_reader_content(ARTICLE_URL)

        fetcher.fetch_html.assert_awaited_once_with(ARTICLE_URL)

    @pytest.mark.asyncio
    async def test_other_links_ignore_x_reader(self, readers, fetcher):
        x_reader = Mock()
        x_reader.build_reader = AsyncMock()
        reader = ContentReader(readers, fetcher=fetcher, x_reader=x_reader)

        await reader.build_reader_content("https://example.com/post")

        x_reader.build_reader.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_forced_refresh_keeps_cached_copy_on_fetch_error(self, readers, fetcher):
        cached = ReaderDocument(title="Cached", content_html=article_html(80, "Cached"))
        await readers.save("item-1", cached)
        fetcher.fetch_html.side_effect = ReaderFetchError("Reader fetch failed with 403")
        reader = ContentReader(readers, fetcher=fetcher)

        result = await reader.ensure_reader("item-1", ARTICLE_URL, force_refresh=True)

        assert result.title == "Cached"
        fetcher.fetch_html.assert_awaited_once()
