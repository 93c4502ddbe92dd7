"""
Reader module - readable article content for saved links.
"""

from .extraction import DEFAULT_STRATEGIES, extract_reader, find_content_root
from .fetcher import PageFetcher
from .sanitizer import sanitize_html
from .service import ContentReader
from .utils import (
    DEFAULT_MIN_WORD_COUNT,
    count_words,
    derive_title_from_url,
    extract_text_from_html,
    looks_client_rendered,
    prefer_reader_title,
    should_cache_reader,
)
from .x_adapter import XReader, is_x_status_url

__all__ = [
    "ContentReader",
    "PageFetcher",
    "XReader",
    "is_x_status_url",
    "DEFAULT_STRATEGIES",
    "DEFAULT_MIN_WORD_COUNT",
    "extract_reader",
    "find_content_root",
    "sanitize_html",
    "count_words",
    "derive_title_from_url",
    "extract_text_from_html",
    "looks_client_rendered",
    "prefer_reader_title",
    "should_cache_reader",
]
