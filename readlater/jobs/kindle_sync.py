"""
Kindle sync job - email each saved article to the reader's Kindle.
"""

import logging
from typing import TYPE_CHECKING

from ..covers import CoverService
from ..exceptions import ConfigMissingError, ContentUnavailableError, ReaderFetchError, UpstreamError
from ..kindle import KindleSender
from ..models import (
    KINDLE_FAILED,
    KINDLE_NEEDS_CONTENT,
    KINDLE_SYNCED,
    KINDLE_UNSUPPORTED,
    CoverInfo,
    Item,
    JobState,
    KindleState,
)
from ..push.channels import record_kindle_channel_state
from ..reader import ContentReader, prefer_reader_title
from ..readiness import ReadinessTracker, refresh_push_readiness
from .retryable import TRANSIENT_ERROR_PATTERN, JobChannel, JobOutcome, compact_error, is_transient_error

if TYPE_CHECKING:
    from ..push.channels import ArticlePushService

logger = logging.getLogger(__name__)

KINDLE_DEFAULT_MAX_ATTEMPTS = 3
KINDLE_MAX_ATTEMPTS_LIMIT = 5
KINDLE_RETRY_DELAYS = (30, 120)


def classify_kindle_error(error: BaseException | None) -> JobOutcome:
    if isinstance(error, ConfigMissingError):
        return JobOutcome(status=KINDLE_FAILED, error_code="kindle_config_missing", message=compact_error(error))
    if isinstance(error, ContentUnavailableError):
        return JobOutcome(status=KINDLE_NEEDS_CONTENT, error_code="reader_unavailable", message=compact_error(error))
    if isinstance(error, ReaderFetchError):
        return JobOutcome(
            status=KINDLE_FAILED,
            error_code="reader_fetch_failed",
            message=compact_error(error),
            retryable=is_transient_error(error),
        )

    message = str(error).strip() if error is not None else ""
    if (isinstance(error, UpstreamError) and is_transient_error(error)) or TRANSIENT_ERROR_PATTERN.search(message):
        return JobOutcome(
            status=KINDLE_FAILED,
            error_code="kindle_send_upstream",
            message=compact_error(error),
            retryable=True,
        )
    return JobOutcome(status=KINDLE_FAILED, error_code="kindle_send_failed", message=compact_error(error))


class KindleSyncChannel(JobChannel):
    name = "kindle_sync"
    state_attr = "kindle"
    state_class = KindleState
    token_attr = "sync_version"
    token_field = "syncVersion"
    message_type = None
    error_prefix = "sync"
    default_max_attempts = KINDLE_DEFAULT_MAX_ATTEMPTS
    max_attempts_limit = KINDLE_MAX_ATTEMPTS_LIMIT
    retry_delays = KINDLE_RETRY_DELAYS
    success_status = KINDLE_SYNCED
    failure_status = KINDLE_FAILED
    preserved_fields = ("last_synced_at",)

    def __init__(
        self,
        reader: ContentReader,
        sender: KindleSender,
        readiness: ReadinessTracker,
        cover_service: CoverService | None = None,
        push: "ArticlePushService | None" = None,
    ):
        self.reader = reader
        self.sender = sender
        self.readiness = readiness
        self.cover_service = cover_service
        self.push = push

    async def is_satisfied(self, item: Item) -> bool:
        kindle = item.kindle
        if kindle is None:
            return False
        if kindle.status == KINDLE_UNSUPPORTED:
            return True
        return kindle.status == KINDLE_SYNCED and bool(item.cover and item.cover.updated_at)

    async def run(self, item: Item) -> JobOutcome:
        if not item.url.startswith(("http://", "https://")):
            return JobOutcome(
                status=KINDLE_UNSUPPORTED,
                error_code="kindle_unsupported_url",
                message="Only http(s) links can be sent to Kindle",
            )

        reader = await self.reader.ensure_reader(item.id, item.url, item.title)
        if reader is None:
            raise ContentUnavailableError("Could not parse article content")

        cover = None
        if self.cover_service is not None:
            try:
                cover = await self.cover_service.ensure_cover_image(item, reader)
            except Exception as e:
                logger.warning(f"kindle_sync_cover_failed item={item.id}: {e}")

        await self.sender.send(item, reader)

        reader_title = reader.title
        cover_updated_at = cover.created_at if cover is not None else None

        def apply(current: Item) -> None:
            current.title = prefer_reader_title(current.title, reader_title, current.url)
            if cover_updated_at and not (current.cover and current.cover.updated_at):
                current.cover = CoverInfo(updated_at=cover_updated_at)

        return JobOutcome(status=KINDLE_SYNCED, succeeded=True, apply=apply)

    def classify_error(self, error: Exception) -> JobOutcome:
        return classify_kindle_error(error)

    def on_processing(self, state: JobState, now: str) -> None:
        state.last_attempt_at = now

    def on_terminal(self, item: Item, state: JobState, outcome: JobOutcome, now: str) -> None:
        if outcome.succeeded:
            state.last_synced_at = now
        record_kindle_channel_state(item, state, now)

    async def after_terminal(self, item: Item, outcome: JobOutcome) -> None:
        await refresh_push_readiness(self.readiness, self.push, item.id, source=self.name)
