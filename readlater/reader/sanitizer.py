"""
HTML sanitizer for reader content.

Keeps a small allow-list of structural tags and attributes, unwraps anything
else, drops interactive and chrome elements entirely, and rewrites links and
images to absolute http(s) URLs.
"""

from bs4 import BeautifulSoup, Comment, Tag

from .utils import absolutize_srcset, absolutize_url

ALLOWED_TAGS = frozenset({
    "a", "abbr", "b", "blockquote", "br", "code", "del", "div", "em",
    "figure", "figcaption", "h1", "h2", "h3", "h4", "h5", "h6", "hr", "i",
    "img", "li", "ol", "p", "picture", "pre", "section", "small", "source",
    "span", "strong", "sub", "sup", "table", "tbody", "td", "th", "thead",
    "tr", "ul", "time", "article", "caption",
})

REMOVE_TAGS = frozenset({
    "script", "style", "iframe", "noscript", "form", "input", "button",
    "select", "textarea", "nav", "footer", "header", "aside", "svg",
    "canvas", "video", "audio", "object", "embed",
    # document-level elements when a full page is passed in
    "head", "title", "meta", "link", "template",
})

ALLOWED_ATTRS: dict[str, frozenset[str]] = {
    "a": frozenset({"href", "title", "rel", "target"}),
    "img": frozenset({"src", "alt", "title", "width", "height", "loading", "decoding", "srcset"}),
    "source": frozenset({"srcset", "type", "media", "sizes"}),
    "time": frozenset({"datetime"}),
}

LAZY_SRC_ATTRS = ("data-src", "data-original", "data-lazy-src")


def sanitize_html(html: str | Tag, base_url: str) -> str:
    """Return the sanitized inner HTML of a fragment (or of a parsed tag)."""
    source = html.decode_contents() if isinstance(html, Tag) else (html or "")
    soup = BeautifulSoup(f"<article>{source}</article>", "html.parser")
    root = soup.find("article")
    if root is None:
        return ""

    for comment in root.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()

    for tag in root.find_all(REMOVE_TAGS):
        if not tag.decomposed:
            tag.decompose()

    for tag in root.find_all(True):
        if tag.name not in ALLOWED_TAGS:
            tag.unwrap()
            continue
        _sanitize_attributes(tag, base_url)

    return root.decode_contents().strip()


def _sanitize_attributes(tag: Tag, base_url: str) -> None:
    name = tag.name

    if name == "img":
        _ensure_image_source(tag, base_url)

    if name == "a":
        href = absolutize_url(tag.get("href"), base_url)
        if href:
            tag["href"] = href
            tag["target"] = "_blank"
            tag["rel"] = "noopener"
        else:
            tag.attrs.pop("href", None)

    if name == "img":
        src = absolutize_url(tag.get("src"), base_url)
        if src:
            tag["src"] = src
            tag["loading"] = "lazy"
            tag["decoding"] = "async"
        else:
            tag.attrs.pop("src", None)

    if name in ("img", "source"):
        srcset = absolutize_srcset(tag.get("srcset"), base_url)
        if srcset:
            tag["srcset"] = srcset
        else:
            tag.attrs.pop("srcset", None)

    allowed = ALLOWED_ATTRS.get(name, frozenset())
    for attr in list(tag.attrs):
        lowered = attr.lower()
        if lowered.startswith("on") or lowered not in allowed:
            del tag.attrs[attr]


def _ensure_image_source(tag: Tag, base_url: str) -> None:
    """Backfill src from common lazy-loading attributes."""
    if tag.get("src"):
        return
    for attr in LAZY_SRC_ATTRS:
        candidate = tag.get(attr)
        if candidate:
            resolved = absolutize_url(candidate, base_url)
            if resolved:
                tag["src"] = resolved
            return
