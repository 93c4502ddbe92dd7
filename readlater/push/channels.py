"""
Per-item push channel bookkeeping and the article push trigger.

pushChannels on an item holds:
- readiness: whether reader and cover are both in place
- kindle:    mirror of the Kindle delivery status
- ios:       whether the "saved" notification was queued or sent
"""

import logging
import uuid
from dataclasses import dataclass
from urllib.parse import quote, urlparse

from ..converters import now_iso
from ..models import (
    CHANNEL_FAILED,
    CHANNEL_PENDING,
    CHANNEL_QUEUED,
    CHANNEL_SENT,
    CHANNEL_SKIPPED,
    CHANNEL_STATUSES,
    KINDLE_FAILED,
    KINDLE_NEEDS_CONTENT,
    KINDLE_SYNCED,
    KINDLE_UNSUPPORTED,
    READINESS_PENDING,
    READINESS_READY,
    ChannelState,
    IosChannelState,
    Item,
    KindleState,
    PushChannels,
    Readiness,
)
from ..storage import ItemRepository, MessageQueue

logger = logging.getLogger(__name__)

PUSH_REQUESTED_TYPE = "push.notification.requested"
PUSH_SOURCE = "read-later"
PUSH_THREAD_ID = "read-later"
PUSH_CATEGORY = "read-later"
PUSH_ALERT_TITLE = "Saved to Read Later"
DEFAULT_READINESS_REASON = "waiting_for_reader_and_cover"


def _normalize_channel(channel: ChannelState | None, cls: type[ChannelState], now: str) -> ChannelState:
    channel = channel if isinstance(channel, cls) else cls()
    if channel.status not in CHANNEL_STATUSES:
        channel.status = CHANNEL_PENDING
    channel.updated_at = channel.updated_at or now
    return channel


def ensure_push_channels(item: Item, now: str | None = None) -> PushChannels:
    """Create or repair item.push_channels in place and return it."""
    now = now or now_iso()
    channels = item.push_channels or PushChannels()

    readiness = channels.readiness if isinstance(channels.readiness, Readiness) else Readiness()
    if readiness.status == READINESS_READY:
        readiness.reason = None
    else:
        readiness.status = READINESS_PENDING
        readiness.reason = readiness.reason or DEFAULT_READINESS_REASON
    channels.readiness = readiness

    channels.kindle = _normalize_channel(channels.kindle, ChannelState, now)
    channels.ios = _normalize_channel(channels.ios, IosChannelState, now)

    item.push_channels = channels
    return channels


def kindle_channel_status(kindle_status: str | None) -> str:
    if kindle_status == KINDLE_SYNCED:
        return CHANNEL_SENT
    if kindle_status == KINDLE_FAILED:
        return CHANNEL_FAILED
    if kindle_status in (KINDLE_UNSUPPORTED, KINDLE_NEEDS_CONTENT):
        return CHANNEL_SKIPPED
    return CHANNEL_PENDING


def record_kindle_channel_state(item: Item, kindle: KindleState | None, now: str | None = None) -> None:
    """Mirror the Kindle job status into pushChannels.kindle."""
    now = now or now_iso()
    channels = ensure_push_channels(item, now)
    status = kindle_channel_status(kindle.status if kindle else None)
    channels.kindle = ChannelState(
        status=status,
        updated_at=now,
        last_error=((kindle.last_error if kindle else None) or "Kindle sync failed") if status == CHANNEL_FAILED else None,
    )


def item_domain(url: str | None) -> str:
    host = urlparse(url or "").hostname or ""
    return host[4:] if host.startswith("www.") else host


def build_cover_url(public_origin: str, item: Item) -> str | None:
    if not public_origin or not item.cover or not item.cover.updated_at:
        return None
    origin = public_origin.rstrip("/")
    return (
        f"{origin}/api/read-later/cover?id={quote(item.id, safe='')}"
        f"&v={quote(item.cover.updated_at, safe='')}"
    )


def build_ios_payload(item: Item, owner_id: str, event_id: str, public_origin: str) -> dict:
    """Queue message asking the push worker to announce a saved article."""
    cover_url = build_cover_url(public_origin, item)
    notification = {
        "alert": {
            "title": PUSH_ALERT_TITLE,
            "subtitle": item_domain(item.url) or "Read Later",
            "body": item.title or item.url,
        },
        "threadId": PUSH_THREAD_ID,
        "category": PUSH_CATEGORY,
    }
    if cover_url:
        notification["media"] = [{"type": "image", "url": cover_url, "purpose": "cover"}]

    return {
        "type": PUSH_REQUESTED_TYPE,
        "source": PUSH_SOURCE,
        "ownerId": owner_id,
        "itemId": item.id,
        "eventId": event_id,
        "savedAt": item.saved_at,
        "notification": notification,
        "data": {"channel": PUSH_SOURCE, "itemId": item.id, "url": item.url},
    }


@dataclass
class PushQueueResult:
    queued: bool = False
    reason: str | None = None
    item: Item | None = None
    event_id: str | None = None


class ArticlePushService:
    """Queues the one-time iOS notification for a push-ready item."""

    def __init__(
        self,
        items: ItemRepository,
        queue: MessageQueue | None,
        owner_id: str = "default",
        public_origin: str = "",
    ):
        self.items = items
        self.queue = queue
        self.owner_id = owner_id
        self.public_origin = public_origin

    async def maybe_queue_ios_push(self, item_id: str, source: str = "") -> PushQueueResult:
        """
        Queue the iOS push exactly once.

        The ios channel is claimed (queued + fresh eventId) before the
        message is sent, so concurrent callers cannot both queue it.
        """
        event_id = str(uuid.uuid4())
        now = now_iso()
        skip_reason: str | None = None

        def claim(current: Item) -> bool | None:
            nonlocal skip_reason
            channels = ensure_push_channels(current, now)
            if channels.readiness.status != READINESS_READY:
                skip_reason = "not_ready"
                return False
            if channels.ios.status in (CHANNEL_QUEUED, CHANNEL_SENT):
                skip_reason = "already_queued_or_sent"
                return False
            if self.queue is None:
                channels.ios = IosChannelState(
                    status=CHANNEL_FAILED,
                    updated_at=now,
                    last_error="Background queue unavailable for iOS push",
                )
                return
            channels.ios = IosChannelState(status=CHANNEL_QUEUED, updated_at=now, event_id=event_id)

        item = await self.items.update(item_id, claim)
        if item is None:
            return PushQueueResult(reason=skip_reason or "item_missing")

        if self.queue is None:
            logger.error(f"ios_push_queue_missing item={item_id} source={source}")
            return PushQueueResult(reason="queue_missing", item=item)

        try:
            await self.queue.send(build_ios_payload(item, self.owner_id, event_id, self.public_origin))
        except Exception as e:
            logger.error(f"ios_push_queue_failed item={item_id} event={event_id}: {e}")
            failed = await self._mark_failed(item_id, event_id, "Failed to enqueue iOS push")
            return PushQueueResult(reason="queue_failed", item=failed or item)

        logger.info(f"ios_push_queued item={item_id} event={event_id} source={source}")
        return PushQueueResult(queued=True, item=item, event_id=event_id)

    async def _mark_failed(self, item_id: str, event_id: str, message: str) -> Item | None:
        now = now_iso()

        def mark(current: Item) -> bool | None:
            channels = ensure_push_channels(current, now)
            if channels.ios.event_id != event_id:
                return False
            channels.ios = IosChannelState(status=CHANNEL_FAILED, updated_at=now, last_error=message)

        return await self.items.update(item_id, mark)
