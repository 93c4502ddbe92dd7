"""
Push readiness - an item is ready to announce once it has both a cached
reader document and a cover.

Readiness is monotonic: after the first pending → ready transition the
status stays ready and readyAt is never rewritten.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .converters import now_iso
from .models import Item, READINESS_PENDING, READINESS_READY
from .push.channels import ensure_push_channels
from .reader import ContentReader
from .storage import ItemRepository

if TYPE_CHECKING:
    from .push.channels import ArticlePushService

logger = logging.getLogger(__name__)


def readiness_reason(reader_ready: bool, cover_ready: bool) -> str | None:
    if reader_ready and cover_ready:
        return None
    if not reader_ready and not cover_ready:
        return "waiting_for_reader_and_cover"
    if not reader_ready:
        return "waiting_for_reader"
    return "waiting_for_cover"


@dataclass
class ReadinessResult:
    ok: bool
    item: Item | None = None
    ready: bool = False
    reader_ready: bool = False
    cover_ready: bool = False
    reason: str | None = None


class ReadinessTracker:
    """Recomputes pushChannels.readiness from the reader cache and cover."""

    def __init__(self, items: ItemRepository, reader: ContentReader):
        self.items = items
        self.reader = reader

    async def update_article_push_readiness(self, item_id: str) -> ReadinessResult:
        item = await self.items.get(item_id)
        if item is None:
            return ReadinessResult(ok=False, reason="item_missing")

        reader_ready = await self.reader.get_cached(item_id) is not None
        now = now_iso()
        result = ReadinessResult(ok=True, reader_ready=reader_ready)

        def apply(current: Item) -> None:
            channels = ensure_push_channels(current, now)
            readiness = channels.readiness
            cover_ready = bool(current.cover and current.cover.updated_at)
            reason = readiness_reason(reader_ready, cover_ready)

            result.cover_ready = cover_ready
            if readiness.status == READINESS_READY:
                readiness.reason = None
                readiness.ready_at = readiness.ready_at or now
            elif reason is None:
                readiness.status = READINESS_READY
                readiness.ready_at = readiness.ready_at or now
                readiness.reason = None
            else:
                readiness.status = READINESS_PENDING
                readiness.reason = reason
            result.ready = readiness.status == READINESS_READY
            result.reason = readiness.reason

        updated = await self.items.update(item_id, apply)
        if updated is None:
            return ReadinessResult(ok=False, reason="item_missing")

        result.item = updated
        if result.ready:
            logger.debug(f"push_readiness_ready item={item_id} ready_at={updated.push_channels.readiness.ready_at}")
        else:
            logger.debug(f"push_readiness_pending item={item_id} reason={result.reason}")
        return result


async def refresh_push_readiness(
    tracker: ReadinessTracker,
    push: "ArticlePushService | None",
    item_id: str,
    source: str,
) -> ReadinessResult:
    """Recompute readiness and queue the iOS push once the item is ready."""
    result = await tracker.update_article_push_readiness(item_id)
    if result.ok and result.ready and push is not None:
        await push.maybe_queue_ios_push(item_id, source=source)
    return result
