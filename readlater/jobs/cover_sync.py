"""
Cover sync job - make sure a saved item gets a cover image.
"""

import logging
from typing import TYPE_CHECKING

from ..converters import now_iso
from ..covers import CoverService
from ..exceptions import ConfigMissingError, ContentUnavailableError, ReaderFetchError, UpstreamError
from ..models import COVER_FAILED, COVER_SUCCEEDED, CoverInfo, CoverSyncState, Item, JobState
from ..reader import ContentReader, is_x_status_url, prefer_reader_title
from ..readiness import ReadinessTracker, refresh_push_readiness
from ..storage import CoverRepository
from .retryable import TRANSIENT_ERROR_PATTERN, JobChannel, JobOutcome, compact_error, is_transient_error

if TYPE_CHECKING:
    from ..push.channels import ArticlePushService

logger = logging.getLogger(__name__)

COVER_SYNC_MESSAGE_TYPE = "cover-sync"
COVER_DEFAULT_MAX_ATTEMPTS = 2
COVER_MAX_ATTEMPTS_LIMIT = 4
COVER_RETRY_DELAYS = (20, 60, 150)


def classify_cover_error(error: BaseException | None) -> JobOutcome:
    """Map a cover failure to an error code and retry decision."""
    if isinstance(error, ReaderFetchError):
        return JobOutcome(
            status=COVER_FAILED,
            error_code="reader_fetch_failed",
            message=compact_error(error),
            retryable=is_transient_error(error),
        )
    if isinstance(error, ContentUnavailableError):
        return JobOutcome(status=COVER_FAILED, error_code="reader_unavailable", message=compact_error(error))

    message = str(error).strip() if error is not None else ""
    if not message:
        return JobOutcome(status=COVER_FAILED, error_code="cover_generation_failed", message="Unknown error")

    lowered = message.lower()
    if isinstance(error, ConfigMissingError) or "api key" in lowered or "not configured" in lowered:
        return JobOutcome(status=COVER_FAILED, error_code="cover_api_key_missing", message=compact_error(error))
    if (isinstance(error, UpstreamError) and is_transient_error(error)) or TRANSIENT_ERROR_PATTERN.search(message):
        return JobOutcome(
            status=COVER_FAILED,
            error_code="cover_generation_upstream",
            message=compact_error(error),
            retryable=True,
        )
    if "reader" in lowered and "unavailable" in lowered:
        return JobOutcome(status=COVER_FAILED, error_code="reader_unavailable", message=compact_error(error))
    return JobOutcome(status=COVER_FAILED, error_code="cover_generation_failed", message=compact_error(error))


class CoverSyncChannel(JobChannel):
    name = "cover_sync"
    state_attr = "cover_sync"
    state_class = CoverSyncState
    token_attr = "job_id"
    token_field = "jobId"
    message_type = COVER_SYNC_MESSAGE_TYPE
    error_prefix = "cover"
    default_max_attempts = COVER_DEFAULT_MAX_ATTEMPTS
    max_attempts_limit = COVER_MAX_ATTEMPTS_LIMIT
    retry_delays = COVER_RETRY_DELAYS
    success_status = COVER_SUCCEEDED
    failure_status = COVER_FAILED

    def __init__(
        self,
        reader: ContentReader,
        covers: CoverRepository,
        cover_service: CoverService,
        readiness: ReadinessTracker,
        push: "ArticlePushService | None" = None,
    ):
        self.reader = reader
        self.covers = covers
        self.cover_service = cover_service
        self.readiness = readiness
        self.push = push

    async def is_satisfied(self, item: Item) -> bool:
        if not item.cover or not item.cover.updated_at:
            return False
        return await self.covers.get(item.id) is not None

    async def run(self, item: Item) -> JobOutcome:
        if self.cover_service.generator is None:
            raise ConfigMissingError("Cover generation API key not configured")

        # X status links are always re-read
        reader = await self.reader.ensure_reader(
            item.id, item.url, item.title, force_refresh=is_x_status_url(item.url)
        )
        if reader is None:
            raise ContentUnavailableError("Could not parse article content")

        cover = await self.cover_service.ensure_cover_image(item, reader)
        if cover is None:
            return JobOutcome(
                status=COVER_FAILED,
                error_code="cover_missing_result",
                message="Cover generation returned no image",
                retryable=True,
            )

        updated_at = cover.created_at or now_iso()
        reader_title = reader.title

        def apply(current: Item) -> None:
            current.cover = CoverInfo(updated_at=updated_at)
            current.title = prefer_reader_title(current.title, reader_title, current.url)

        return JobOutcome(status=COVER_SUCCEEDED, succeeded=True, apply=apply)

    def classify_error(self, error: Exception) -> JobOutcome:
        return classify_cover_error(error)

    def on_processing(self, state: JobState, now: str) -> None:
        state.started_at = state.started_at or now
        state.completed_at = None

    def on_terminal(self, item: Item, state: JobState, outcome: JobOutcome, now: str) -> None:
        state.completed_at = now

    async def after_terminal(self, item: Item, outcome: JobOutcome) -> None:
        if not outcome.succeeded:
            return
        await refresh_push_readiness(self.readiness, self.push, item.id, source=self.name)
