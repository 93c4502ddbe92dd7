"""
Cover prompts built from reader content.
"""

from dataclasses import dataclass

from ..models import ReaderDocument
from ..reader.utils import extract_text_from_html

MAX_SNIPPET_WORDS = 1000
MIN_SNIPPET_WORDS = 40
FALLBACK_EXCERPT_WORDS = 48


@dataclass
class Snippet:
    text: str
    word_count: int
    truncated: bool


def build_snippet(reader: ReaderDocument | None, max_words: int = MAX_SNIPPET_WORDS) -> Snippet | None:
    """First max_words words of the article, or None when it is too short for a cover."""
    if reader is None:
        return None
    words = extract_text_from_html(reader.content_html).split(" ")
    words = [word for word in words if word]
    if len(words) < MIN_SNIPPET_WORDS:
        return None
    truncated = len(words) > max_words
    kept = words[:max_words]
    return Snippet(text=" ".join(kept), word_count=len(kept), truncated=truncated)


def build_cover_prompt(title: str, url: str | None, snippet: Snippet) -> str:
    summary_line = (
        "The text below is the beginning snippet of the article. Infer the overall theme from it."
        if snippet.truncated
        else "The text below is the full article."
    )
    lines = [
        "Design a portrait book cover inspired by the article below.",
        f'Title: "{title}".',
        "Include only the title as text on the cover (no subtitle, byline, or logo).",
        "Make the typography large, clean, and high-contrast for readability on Kindle.",
        "Choose a single evocative visual motif that matches the article's theme.",
        f"Source: {url}" if url else "",
        summary_line,
        snippet.text,
    ]
    return "\n\n".join(line for line in lines if line)


def build_fallback_cover_prompt(title: str, url: str | None, snippet: Snippet | None) -> str:
    """Shorter, generic prompt used after the full prompt returns no image."""
    excerpt = " ".join(snippet.text.split(" ")[:FALLBACK_EXCERPT_WORDS]) if snippet else ""
    lines = [
        "Design a portrait book cover inspired by the topic below.",
        f'Title: "{title}".',
        "Include only the title as text on the cover (no subtitle, byline, or logo).",
        "Use bold composition and high contrast with clear, legible title typography.",
        f"Source: {url}" if url else "",
        f"Theme summary: {excerpt}" if excerpt else "Theme summary: Use an abstract visual tied to the title.",
    ]
    return "\n\n".join(line for line in lines if line)
