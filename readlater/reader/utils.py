"""
Reader helpers: word counting, the caching gate, URL resolution and titles.
"""

import re
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from ..models import ReaderDocument

DEFAULT_MIN_WORD_COUNT = 50

# Text of error pages that some sites (X/Twitter) serve with a 200
READER_PLACEHOLDER_MARKERS = (
    "something went wrong, but donâ€™t fret",
    "something went wrong, but don’t fret",
    "something went wrong, but don't fret",
    "privacy related extensions may cause issues on x.com",
)

CLIENT_RENDER_MARKERS = (
    "/_next/static",
    "__NUXT__",
    "data-reactroot",
    "data-hydration",
    "window.__APOLLO_STATE__",
    "window.__INITIAL_STATE__",
)

_WHITESPACE = re.compile(r"\s+")


def count_words(text: str | None) -> int:
    if not isinstance(text, str):
        return 0
    collapsed = _WHITESPACE.sub(" ", text).strip()
    if not collapsed:
        return 0
    return len(collapsed.split(" "))


def extract_text_from_html(html: str | None) -> str:
    """Visible text of an HTML fragment with whitespace collapsed."""
    if not isinstance(html, str) or not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.find_all(["script", "style"]):
        tag.decompose()
    text = soup.get_text(separator=" ")
    return _WHITESPACE.sub(" ", text).strip()


def should_cache_reader(reader: ReaderDocument | None, min_words: int = DEFAULT_MIN_WORD_COUNT) -> bool:
    """
    The gate every reader document must pass before it is cached or used.

    Requires HTML content, no known placeholder text, and at least
    ``min_words`` words of visible text.
    """
    if reader is None or not reader.content_html:
        return False

    text = extract_text_from_html(reader.content_html)
    if not text:
        return False

    lowered = text.lower()
    if any(marker in lowered for marker in READER_PLACEHOLDER_MARKERS):
        return False

    return count_words(text) >= min_words


def looks_client_rendered(html: str | None) -> bool:
    """Detect SPA shells whose article body only appears after hydration."""
    if not isinstance(html, str) or not html:
        return False
    haystack = html.lower()
    return any(marker.lower() in haystack for marker in CLIENT_RENDER_MARKERS)


def absolutize_url(value: str | None, base_url: str) -> str | None:
    """Resolve value against base_url; only http(s) results are kept."""
    if not value or not value.strip():
        return None
    try:
        resolved = urljoin(base_url, value.strip())
        parsed = urlparse(resolved)
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return resolved


def absolutize_srcset(value: str | None, base_url: str) -> str | None:
    if not value:
        return None

    parts = []
    for candidate in value.split(","):
        segments = candidate.strip().split()
        if not segments:
            continue
        url = absolutize_url(segments[0], base_url)
        if not url:
            continue
        parts.append(" ".join([url, *segments[1:]]))

    return ", ".join(parts) if parts else None


def derive_title_from_url(url: str | None) -> str:
    """Hostname without a leading www., used when nothing better exists."""
    if not url:
        return "Untitled"
    try:
        hostname = urlparse(url).hostname or ""
    except ValueError:
        return url
    return re.sub(r"^www\.", "", hostname) or url


def normalize_title(value: str | None) -> str:
    if not isinstance(value, str):
        return ""
    return _WHITESPACE.sub(" ", value).strip()


def prefer_reader_title(current_title: str | None, reader_title: str | None, url: str | None) -> str:
    """
    Pick between the saved title and the one found by the reader.

    The saved title wins unless it is empty, is just the URL-derived
    fallback, or is a single word that the reader title extends.
    """
    current = normalize_title(current_title)
    candidate = normalize_title(reader_title)

    if not candidate:
        return current
    if not current:
        return candidate
    if current.lower() == candidate.lower():
        return current

    fallback = normalize_title(derive_title_from_url(url or ""))
    if fallback and current.lower() == fallback.lower():
        return candidate

    if len(current.split(" ")) == 1 and len(candidate.split(" ")) > 1:
        if candidate.lower().startswith(current.lower()):
            return candidate

    return current
