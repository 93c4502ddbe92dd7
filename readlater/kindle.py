"""
Kindle delivery - send a reader document as an HTML attachment by email.

Amazon's Send-to-Kindle address converts attached HTML documents, so each
article is wrapped in a minimal standalone page and mailed through Resend.
"""

import base64
import html
import logging
import re
from dataclasses import dataclass

import httpx

from .exceptions import ConfigMissingError, UpstreamError
from .models import Item, ReaderDocument
from .reader.utils import derive_title_from_url

logger = logging.getLogger(__name__)

RESEND_ENDPOINT = "https://api.resend.com/emails"
RESEND_TIMEOUT_SECONDS = 10


def resolve_title(item: Item, reader: ReaderDocument | None) -> str:
    return (reader.title if reader else None) or item.title or derive_title_from_url(item.url)


def format_filename(title: str | None) -> str:
    """Slug used for the attachment name."""
    slug = re.sub(r"[^a-z0-9]+", "-", str(title or "").lower()).strip("-")
    return slug or "read-later"


def build_kindle_html(item: Item, reader: ReaderDocument | None) -> str:
    safe_title = html.escape(resolve_title(item, reader))
    source_url = item.url or ""
    safe_source = html.escape(source_url)

    byline = html.escape(reader.byline) if reader and reader.byline else ""
    site_name = html.escape(reader.site_name) if reader and reader.site_name else ""
    excerpt = html.escape(reader.excerpt) if reader and reader.excerpt else ""
    content_html = reader.content_html if reader else ""

    meta_line = " • ".join(part for part in (byline, site_name) if part)
    meta_html = f'<p class="meta">{meta_line}</p>' if meta_line else ""
    excerpt_html = f'<p class="excerpt">{excerpt}</p>' if excerpt else ""
    source_html = (
        f'<p class="source">Source: <a href="{safe_source}">{safe_source}</a></p>'
        if source_url else ""
    )
    body_html = (
        f"<article>{content_html}</article>"
        if content_html
        else f'<p>Read online: <a href="{safe_source}">{safe_source}</a></p>'
    )

    return f"""<!doctype html>
<html lang="en">
  <head>
    <meta charset="utf-8">
    <title>{safe_title}</title>
    <style>
      body {{ font-family: serif; line-height: 1.6; margin: 24px; }}
      h1 {{ font-size: 1.6rem; margin-bottom: 0.25rem; }}
      .meta {{ color: #666; margin-top: 0; }}
      .excerpt {{ color: #555; font-style: italic; }}
      .source {{ margin-top: 1rem; font-size: 0.9rem; }}
      img {{ max-width: 100%; }}
    </style>
  </head>
  <body>
    <h1>{safe_title}</h1>
    {meta_html}
    {excerpt_html}
    {source_html}
    {body_html}
  </body>
</html>"""


def build_kindle_attachment(item: Item, reader: ReaderDocument | None) -> dict:
    document = build_kindle_html(item, reader)
    return {
        "filename": f"{format_filename(resolve_title(item, reader))}.html",
        "content": base64.b64encode(document.encode("utf-8")).decode("ascii"),
        "contentType": "text/html; charset=utf-8",
    }


@dataclass
class KindleSettings:
    api_key: str
    to_email: str
    from_email: str

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.to_email and self.from_email)


class KindleSender:
    """Posts Kindle emails to the Resend API."""

    def __init__(self, settings: KindleSettings, timeout: float = RESEND_TIMEOUT_SECONDS, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self.timeout = timeout
        self._transport = transport

    async def send(self, item: Item, reader: ReaderDocument) -> dict:
        """
        Email the article to the configured Kindle address.

        Raises:
            ConfigMissingError: If Resend or the addresses are not configured
            UpstreamError: On timeouts, network errors and non-2xx responses
        """
        if not self.settings.configured:
            raise ConfigMissingError("Kindle send not configured")

        payload = {
            "from": self.settings.from_email,
            "to": self.settings.to_email,
            "subject": resolve_title(item, reader),
            "text": f"Sent from read-later: {item.url or ''}",
            "attachments": [build_kindle_attachment(item, reader)],
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    RESEND_ENDPOINT,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.settings.api_key}"},
                )
        except httpx.TimeoutException as e:
            raise UpstreamError("Resend request timed out") from e
        except httpx.TransportError as e:
            raise UpstreamError(f"Resend network error: {e}") from e

        if response.is_error:
            details = response.text[:200] if response.text else ""
            raise UpstreamError(
                f"Resend failed with {response.status_code} {details}".strip(),
                status=response.status_code,
            )

        logger.info(f"Sent {item.id} to Kindle")
        # Already accepted; the body is informational
        try:
            body = response.json()
        except ValueError:
            logger.debug(f"Resend returned a non-JSON body for {item.id}")
            return {}
        return body if isinstance(body, dict) else {}
