"""
X (Twitter) status reader.

x.com serves an error page to plain fetches, so status links are read
through the X API v2 instead: long-form articles, note tweets and plain
tweets are turned into a reader document with their attached images.
"""

import html
import logging
import re
from urllib.parse import urlparse

import httpx

from ..converters import now_iso
from ..models import ReaderDocument
from .utils import count_words, derive_title_from_url, normalize_title

logger = logging.getLogger(__name__)

X_API_ENDPOINT = "https://api.x.com/2/tweets"
X_FETCH_TIMEOUT_SECONDS = 12
X_SITE_NAME = "X (formerly Twitter)"

TWEET_FIELDS = "created_at,author_id,text,note_tweet,entities,attachments,article,public_metrics"
EXPANSIONS = "author_id,attachments.media_keys,article.media_entities,article.cover_media"
USER_FIELDS = "name,username,profile_image_url"
MEDIA_FIELDS = "type,url,preview_image_url,width,height,alt_text,duration_ms"

STATUS_PATH = re.compile(r"/status/(\d+)", re.IGNORECASE)
URL_PATTERN = re.compile(r"https?://[^\s<]+")

TITLE_MAX_WORDS = 16
EXCERPT_MAX_WORDS = 36


def _normalize_host(hostname: str | None) -> str:
    host = (hostname or "").lower()
    host = re.sub(r"^www\.", "", host)
    return re.sub(r"^mobile\.", "", host)


def is_x_hostname(hostname: str | None) -> bool:
    host = _normalize_host(hostname)
    return host in ("x.com", "twitter.com") or host.endswith((".x.com", ".twitter.com"))


def parse_tweet_id(url: str | None) -> str | None:
    """Status id from an x.com or twitter.com status link."""
    if not isinstance(url, str):
        return None
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    if not is_x_hostname(parsed.hostname):
        return None
    match = STATUS_PATH.search(parsed.path)
    return match.group(1) if match else None


def is_x_status_url(url: str | None) -> bool:
    return parse_tweet_id(url) is not None


# ─────────────────────────────────────────────────────────────
# Payload helpers
# ─────────────────────────────────────────────────────────────

def expand_tco_urls(text: str | None, entities: dict | None) -> str:
    """Replace t.co short links with their expanded targets."""
    if not isinstance(text, str) or not text:
        return ""
    for entry in (entities or {}).get("urls") or []:
        short_url = entry.get("url")
        expanded = entry.get("unwound_url") or entry.get("expanded_url")
        if short_url and expanded:
            text = text.replace(short_url, expanded)
    return text


def get_source_text(tweet: dict) -> str:
    """Article text, then note tweet text, then the tweet text."""
    article = tweet.get("article") or {}
    article_text = (article.get("plain_text") or "").strip()
    if article_text:
        return article_text

    note = tweet.get("note_tweet") or {}
    note_text = expand_tco_urls(note.get("text"), note.get("entities")).strip()
    if note_text:
        return note_text

    return expand_tco_urls(tweet.get("text"), tweet.get("entities")).strip()


def _media_url(media: dict | None) -> str | None:
    if not isinstance(media, dict):
        return None
    return media.get("url") or media.get("preview_image_url")


def get_media_urls(tweet: dict, media_by_key: dict[str, dict], exclude: str | None = None) -> list[str]:
    """Article and attachment images in order, without duplicates."""
    keys = list((tweet.get("article") or {}).get("media_entities") or [])
    keys += list((tweet.get("attachments") or {}).get("media_keys") or [])

    urls = []
    for key in keys:
        url = _media_url(media_by_key.get(key))
        if url and url != exclude and url not in urls:
            urls.append(url)
    return urls


def _linkify(line: str) -> str:
    parts = []
    cursor = 0
    for match in URL_PATTERN.finditer(line):
        parts.append(html.escape(line[cursor:match.start()]))
        url = html.escape(match.group(0))
        parts.append(f'<a href="{url}" target="_blank" rel="noopener">{url}</a>')
        cursor = match.end()
    parts.append(html.escape(line[cursor:]))
    return "".join(parts)


def text_to_paragraphs(text: str) -> str:
    """Blank lines split paragraphs; single newlines become <br />."""
    paragraphs = []
    for section in re.split(r"\n{2,}", text or ""):
        lines = [_linkify(line.strip()) for line in section.strip().split("\n") if line.strip()]
        if lines:
            paragraphs.append(f"<p>{'<br />'.join(lines)}</p>")
    return "\n".join(paragraphs)


def build_x_content_html(text: str, image_urls: list[str]) -> str:
    figures = [
        f'<figure><img src="{html.escape(url)}" alt="" loading="lazy" decoding="async" /></figure>'
        for url in image_urls
    ]
    return "\n".join(part for part in [text_to_paragraphs(text), *figures] if part)


def _is_url_like_title(title: str | None, url: str) -> bool:
    current = normalize_title(title)
    if not current:
        return True
    if current.lower() == normalize_title(derive_title_from_url(url)).lower():
        return True
    return bool(re.match(r"^https?://", current, re.IGNORECASE))


def _truncate_words(text: str, max_words: int) -> str:
    words = normalize_title(text).split(" ")
    if len(words) <= max_words:
        return " ".join(words)
    return " ".join(words[:max_words]) + "..."


def derive_x_title(tweet: dict, user: dict | None, url: str, fallback_title: str | None, source_text: str) -> str:
    """Article title, a real saved title, the first line of text, then the author."""
    article_title = normalize_title((tweet.get("article") or {}).get("title"))
    if article_title:
        return article_title

    if not _is_url_like_title(fallback_title, url):
        return normalize_title(fallback_title)

    first_line = normalize_title(source_text.split("\n")[0])
    if first_line:
        return _truncate_words(first_line, TITLE_MAX_WORDS)

    author = normalize_title((user or {}).get("name") or (user or {}).get("username"))
    if author:
        return f"{author} on X"

    return normalize_title(fallback_title) or derive_title_from_url(url)


def format_byline(user: dict | None) -> str:
    if not user:
        return ""
    name = user.get("name")
    username = user.get("username")
    if name:
        return f"{name} (@{username})" if username else name
    return f"@{username}" if username else ""


def parse_x_payload(payload: dict, tweet_id: str, url: str, fallback_title: str | None = None) -> ReaderDocument | None:
    """Reader document from an X API v2 tweets lookup response."""
    data = payload.get("data") if isinstance(payload, dict) else None
    tweet = data[0] if isinstance(data, list) and data else None
    if not isinstance(tweet, dict) or str(tweet.get("id") or "") != tweet_id:
        return None

    includes = payload.get("includes") or {}
    users_by_id = {user.get("id"): user for user in includes.get("users") or [] if user.get("id")}
    media_by_key = {media.get("media_key"): media for media in includes.get("media") or [] if media.get("media_key")}
    user = users_by_id.get(tweet.get("author_id"))

    source_text = get_source_text(tweet)
    if not source_text:
        return None

    article = tweet.get("article") or {}
    cover_image_url = _media_url(media_by_key.get(article.get("cover_media")))
    image_urls = get_media_urls(tweet, media_by_key, exclude=cover_image_url)

    content_html = build_x_content_html(source_text, image_urls)
    if not content_html:
        return None

    return ReaderDocument(
        title=derive_x_title(tweet, user, url, fallback_title, source_text),
        content_html=content_html,
        byline=format_byline(user),
        excerpt=normalize_title(article.get("preview_text")) or _truncate_words(source_text, EXCERPT_MAX_WORDS),
        site_name=X_SITE_NAME,
        word_count=count_words(source_text),
        retrieved_at=now_iso(),
        cover_image_url=cover_image_url,
    )


# ─────────────────────────────────────────────────────────────
# API client
# ─────────────────────────────────────────────────────────────

class XReader:
    """Reads x.com status links through the X API v2."""

    def __init__(
        self,
        bearer_token: str,
        timeout: float = X_FETCH_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.bearer_token = (bearer_token or "").strip()
        self.timeout = timeout
        self._transport = transport

    async def build_reader(self, url: str, fallback_title: str | None = None) -> ReaderDocument | None:
        """
        Reader document for a status link, or None.

        Never raises: a missing token, network errors and bad responses are
        logged so the caller can fall back to fetching the page.
        """
        tweet_id = parse_tweet_id(url)
        if tweet_id is None:
            return None
        if not self.bearer_token:
            logger.warning(f"x_adapter_token_missing url={url}")
            return None

        params = {
            "ids": tweet_id,
            "tweet.fields": TWEET_FIELDS,
            "expansions": EXPANSIONS,
            "user.fields": USER_FIELDS,
            "media.fields": MEDIA_FIELDS,
        }
        headers = {"Authorization": f"Bearer {self.bearer_token}", "Accept": "application/json"}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(X_API_ENDPOINT, params=params, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"x_adapter_request_failed tweet={tweet_id} url={url}: {e}")
            return None

        if response.is_error:
            logger.warning(
                f"x_adapter_response_failed tweet={tweet_id} status={response.status_code} "
                f"response={response.text[:800]}"
            )
            return None

        try:
            payload = response.json()
        except ValueError:
            logger.warning(f"x_adapter_invalid_json tweet={tweet_id}")
            return None

        return parse_x_payload(payload, tweet_id, url, fallback_title)
