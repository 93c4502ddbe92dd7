"""
Enrichment pipeline - wires storage, reader, covers, jobs and push together.

One ReadLaterPipeline is built per process (server or worker) from the
configured store and queues.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .config import Config, config as default_config
from .covers import CoverService, ImageGenerator, OpenAIImageGenerator
from .exceptions import ConfigMissingError, QueueUnavailableError
from .jobs import CoverSyncChannel, EnqueueResult, KindleSyncChannel, RetryableJob
from .kindle import KindleSender, KindleSettings
from .models import Item
from .push import (
    ApnsClient,
    ApnsCredentials,
    ArticlePushService,
    DeviceRegistry,
    PushDeliveryService,
)
from .readiness import ReadinessTracker
from .reader import ContentReader, XReader
from .storage import CoverRepository, ItemRepository, KeyValueStore, MessageQueue, ReaderRepository

if TYPE_CHECKING:
    from .reader.renderer import JSRenderer

logger = logging.getLogger(__name__)


@dataclass
class EnrichmentResult:
    cover: EnqueueResult
    kindle: EnqueueResult


@dataclass
class ReadLaterPipeline:
    items: ItemRepository
    readers: ReaderRepository
    covers: CoverRepository
    reader: ContentReader
    cover_service: CoverService
    readiness: ReadinessTracker
    article_push: ArticlePushService
    devices: DeviceRegistry
    cover_job: RetryableJob
    kindle_job: RetryableJob
    push_service: PushDeliveryService
    sync_queue: MessageQueue | None = None
    push_queue: MessageQueue | None = None

    async def start_enrichment(self, item_id: str, reason: str = "save") -> EnrichmentResult:
        """Queue cover generation and Kindle delivery for a newly saved item."""
        cover = await self.cover_job.enqueue(item_id, reason=reason)
        kindle = await self.kindle_job.enqueue(item_id, reason=reason)
        return EnrichmentResult(cover=cover, kindle=kindle)

    async def regenerate_cover(self, item_id: str) -> EnqueueResult:
        """Drop the stored cover and force a new cover job."""

        def clear_cover(current: Item) -> None:
            current.cover = None

        if await self.items.update(item_id, clear_cover) is None:
            return EnqueueResult(reason="item_missing")
        await self.covers.delete(item_id)
        logger.info(f"cover_regenerate_requested item={item_id}")
        return await self.cover_job.enqueue(item_id, reason="regenerate", force=True)

    async def request_kindle_sync(self, item_id: str) -> EnqueueResult:
        return await self.kindle_job.enqueue(item_id, reason="manual", force=True)

    async def queue_test_push(self, payload: dict) -> None:
        """
        Put a test notification on the push queue.

        Raises:
            QueueUnavailableError: If no push queue is configured or the send fails
        """
        if self.push_queue is None:
            raise QueueUnavailableError("Push queue not configured")
        try:
            await self.push_queue.send(payload)
        except Exception as e:
            logger.error(f"ios_test_push_queue_failed event={payload.get('eventId')}: {e}")
            raise QueueUnavailableError("Failed to queue test push") from e


def _build_generator(cfg: Config) -> ImageGenerator | None:
    try:
        return OpenAIImageGenerator(
            api_key=cfg.OPENAI_API_KEY,
            model=cfg.COVER_MODEL,
            image_model=cfg.COVER_IMAGE_MODEL,
            streaming=cfg.COVER_STREAMING,
        )
    except ConfigMissingError:
        logger.warning("OPENAI_API_KEY not set; cover generation disabled")
        return None


def build_pipeline(
    store: KeyValueStore,
    sync_queue: MessageQueue | None,
    push_queue: MessageQueue | None,
    cfg: Config = default_config,
    renderer: "JSRenderer | None" = None,
    generator: ImageGenerator | None = None,
    kindle_sender: KindleSender | None = None,
    apns_client: ApnsClient | None = None,
) -> ReadLaterPipeline:
    """Assemble the pipeline. Capabilities not passed in are built from cfg."""
    items = ItemRepository(store)
    readers = ReaderRepository(store)
    covers = CoverRepository(store)

    reader = ContentReader(readers, renderer=renderer, x_reader=XReader(cfg.X_API_BEARER_TOKEN))
    cover_service = CoverService(covers, generator=generator or _build_generator(cfg))
    readiness = ReadinessTracker(items, reader)
    article_push = ArticlePushService(
        items,
        push_queue,
        owner_id=cfg.READ_LATER_DEFAULT_OWNER_ID,
        public_origin=cfg.READ_LATER_PUBLIC_ORIGIN,
    )
    devices = DeviceRegistry(store, default_owner_id=cfg.READ_LATER_DEFAULT_OWNER_ID)

    sender = kindle_sender or KindleSender(
        KindleSettings(
            api_key=cfg.RESEND_API_KEY,
            to_email=cfg.KINDLE_TO_EMAIL,
            from_email=cfg.KINDLE_FROM_EMAIL,
        )
    )
    client = apns_client or ApnsClient(
        ApnsCredentials(cfg.APNS_TEAM_ID, cfg.APNS_KEY_ID, cfg.APNS_PRIVATE_KEY_P8),
        topic=cfg.APNS_TOPIC,
    )

    cover_job = RetryableJob(
        CoverSyncChannel(reader, covers, cover_service, readiness, push=article_push),
        items,
        sync_queue,
    )
    kindle_job = RetryableJob(
        KindleSyncChannel(reader, sender, readiness, cover_service=cover_service, push=article_push),
        items,
        sync_queue,
    )

    return ReadLaterPipeline(
        items=items,
        readers=readers,
        covers=covers,
        reader=reader,
        cover_service=cover_service,
        readiness=readiness,
        article_push=article_push,
        devices=devices,
        cover_job=cover_job,
        kindle_job=kindle_job,
        push_service=PushDeliveryService(items, devices, client, cfg.READ_LATER_DEFAULT_OWNER_ID),
        sync_queue=sync_queue,
        push_queue=push_queue,
    )
