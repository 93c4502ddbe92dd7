"""
Reader extraction - turn a page's HTML into a reader document.

Extraction is a chain of strategies. Each strategy is a plain function that
receives the parsed page and returns a document or None; the chain returns
the first document that passes the caching gate:

1. whole_document: readability extraction (trafilatura) over the full page
2. content_root: readability scoped to the best-scoring content container
3. sanitized_root: the content container itself, sanitized

When nothing passes, the sanitized container is returned if there is one,
else the whole-document result (possibly None).
"""

import logging
from dataclasses import dataclass
from functools import cached_property
from typing import Callable

import trafilatura
from bs4 import BeautifulSoup, Tag
from trafilatura.settings import use_config

from ..converters import now_iso
from ..models import ReaderDocument
from .media import get_youtube_info
from .sanitizer import sanitize_html
from .utils import (
    DEFAULT_MIN_WORD_COUNT,
    count_words,
    derive_title_from_url,
    extract_text_from_html,
    should_cache_reader,
)

logger = logging.getLogger(__name__)

CONTENT_SELECTORS = (
    "article",
    '[role="main"]',
    "main",
    '[itemprop="articleBody"]',
    ".post-content",
    ".post-body",
    ".entry-content",
    ".article-body",
    ".article-content",
    ".story-body",
    ".content__body",
    ".content-body",
    '[data-testid="post-content"]',
    '[data-test="post-content"]',
)

NOISE_TAGS = frozenset({"nav", "footer", "header", "aside"})

PARAGRAPH_WEIGHT = 20


@dataclass
class PageMetadata:
    title: str
    byline: str = ""
    excerpt: str = ""
    site_name: str = ""


@dataclass
class ParsedPage:
    """A fetched page shared by every strategy in the chain."""
    html: str
    url: str
    fallback_title: str | None = None

    @cached_property
    def soup(self) -> BeautifulSoup:
        return BeautifulSoup(self.html, "html.parser")

    @cached_property
    def metadata(self) -> PageMetadata:
        return extract_page_metadata(self.html, self.url, self.fallback_title, self.soup)

    @cached_property
    def content_root(self) -> Tag | None:
        return find_content_root(self.soup)


Strategy = Callable[[ParsedPage], ReaderDocument | None]


def _trafilatura_config():
    config = use_config()
    config.set("DEFAULT", "EXTRACTION_TIMEOUT", "0")
    return config


def extract_page_metadata(
    html: str,
    url: str,
    fallback_title: str | None = None,
    soup: BeautifulSoup | None = None,
) -> PageMetadata:
    """Title, byline, excerpt and site name; title falls back to <title>, then the URL host."""
    title = byline = excerpt = site_name = None

    try:
        metadata = trafilatura.extract_metadata(html, default_url=url)
    except Exception as e:
        logger.debug(f"Metadata extraction failed for {url}: {e}")
        metadata = None

    if metadata:
        title = metadata.title
        byline = metadata.author
        excerpt = metadata.description
        site_name = metadata.sitename

    if not title:
        soup = soup or BeautifulSoup(html, "html.parser")
        if title_tag := soup.find("title"):
            title = title_tag.get_text(strip=True)

    return PageMetadata(
        title=title or fallback_title or derive_title_from_url(url),
        byline=byline or "",
        excerpt=excerpt or "",
        site_name=site_name or "",
    )


def _readability(html: str, url: str, metadata: PageMetadata) -> ReaderDocument | None:
    try:
        content = trafilatura.extract(
            html,
            url=url,
            output_format="html",
            include_links=True,
            include_images=True,
            include_tables=True,
            favor_recall=True,
            config=_trafilatura_config(),
        )
    except Exception as e:
        logger.debug(f"Readability extraction failed for {url}: {e}")
        return None

    if not content:
        return None

    content_html = sanitize_html(content, url)
    if not content_html:
        return None

    return _build_document(metadata, content_html, url)


def _build_document(metadata: PageMetadata, content_html: str, url: str) -> ReaderDocument:
    youtube = get_youtube_info(url)
    return ReaderDocument(
        title=metadata.title,
        byline=metadata.byline,
        excerpt=metadata.excerpt,
        site_name=metadata.site_name,
        word_count=count_words(extract_text_from_html(content_html)),
        content_html=content_html,
        retrieved_at=now_iso(),
        cover_image_url=youtube.thumbnail_url if youtube else None,
    )


def _is_noise(node: Tag) -> bool:
    if node.name in NOISE_TAGS:
        return True
    return any(parent.name in NOISE_TAGS for parent in node.parents)


def _score(node: Tag) -> tuple[int, int, int]:
    words = count_words(node.get_text(separator=" "))
    paragraphs = len(node.find_all("p"))
    return words, paragraphs, words + paragraphs * PARAGRAPH_WEIGHT


def find_content_root(soup: BeautifulSoup) -> Tag | None:
    """
    Pick the container most likely to hold the article body.

    Known content selectors are scored by words + 20 per paragraph; the
    largest paragraph-bearing block is used when none of them match.
    """
    seen: set[int] = set()
    best, best_score = None, 0

    for selector in CONTENT_SELECTORS:
        for node in soup.select(selector):
            if id(node) in seen or _is_noise(node):
                continue
            seen.add(id(node))

            words, paragraphs, score = _score(node)
            if not words:
                continue
            if paragraphs == 0 and words < DEFAULT_MIN_WORD_COUNT:
                continue
            if score > best_score:
                best, best_score = node, score

    if best is not None:
        return best
    return _find_largest_text_block(soup)


def _find_largest_text_block(soup: BeautifulSoup) -> Tag | None:
    best, best_score = None, 0
    for node in soup.find_all(["article", "main", "section", "div"]):
        if _is_noise(node):
            continue
        words, paragraphs, score = _score(node)
        if paragraphs < 2 or not words:
            continue
        if score > best_score:
            best, best_score = node, score
    return best


# ─────────────────────────────────────────────────────────────
# Strategies
# ─────────────────────────────────────────────────────────────

def whole_document(page: ParsedPage) -> ReaderDocument | None:
    return _readability(page.html, page.url, page.metadata)


def content_root(page: ParsedPage) -> ReaderDocument | None:
    root = page.content_root
    if root is None:
        return None
    html = f"<!doctype html><html><body>{root}</body></html>"
    return _readability(html, page.url, page.metadata)


def sanitized_root(page: ParsedPage) -> ReaderDocument | None:
    root = page.content_root
    if root is None:
        return None
    if not count_words(root.get_text(separator=" ")):
        return None
    content_html = sanitize_html(root, page.url)
    if not content_html:
        return None
    return _build_document(page.metadata, content_html, page.url)


DEFAULT_STRATEGIES: tuple[Strategy, ...] = (whole_document, content_root, sanitized_root)


def extract_reader(
    html: str | None,
    url: str,
    fallback_title: str | None = None,
    strategies: tuple[Strategy, ...] = DEFAULT_STRATEGIES,
) -> ReaderDocument | None:
    """
    Run the strategy chain over html and return the best reader document.

    If no strategy passes the gate, the last strategy's document is returned
    when it produced one (the sanitized container), otherwise the first's.
    """
    if not html or not strategies:
        return None

    page = ParsedPage(html=html, url=url, fallback_title=fallback_title)
    documents: list[ReaderDocument | None] = []

    for strategy in strategies:
        document = strategy(page)
        if should_cache_reader(document):
            return document
        documents.append(document)

    if documents[-1] is not None:
        return documents[-1]
    return documents[0]
