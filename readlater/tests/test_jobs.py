"""
Tests for retryable cover and Kindle jobs.
"""

from unittest.mock import AsyncMock, Mock

import pytest

from conftest import PNG_BASE64, PUBLIC_ORIGIN, article_html
from readlater.exceptions import (
    ConfigMissingError,
    ContentUnavailableError,
    ReaderFetchError,
    UpstreamError,
)
from readlater.jobs import (
    RetryableJob,
    classify_cover_error,
    classify_kindle_error,
    compact_error,
    is_transient_error,
)
from readlater.models import CoverImage, CoverInfo, CoverSyncState, Item, ReaderDocument


def make_item(item_id: str = "item-1", url: str = "https://www.example.com/post", title: str = "example.com") -> Item:
    return Item(id=item_id, url=url, title=title, saved_at="2024-05-01T10:00:00.000Z")


def make_reader(words: int = 80) -> ReaderDocument:
    return ReaderDocument(title="The Real Title", content_html=article_html(words, "The Real Title"))


async def save_item(pipeline, item: Item, with_reader: bool = True) -> Item:
    await pipeline.items.save(item)
    if with_reader:
        await pipeline.readers.save(item.id, make_reader())
    return item


class TestErrorHelpers:
    """Tests for error compaction and transient detection."""

    def test_compact_error_truncates(self):
        assert len(compact_error(Exception("x" * 1000))) == 320

    def test_compact_error_defaults(self):
        assert compact_error(None) == "Unknown error"
        assert compact_error(ValueError()) == "ValueError"

    def test_upstream_status(self):
        """5xx, 429 and unknown statuses are transient; other 4xx are not."""
        assert is_transient_error(UpstreamError("x", status=503)) is True
        assert is_transient_error(UpstreamError("x", status=429)) is True
        assert is_transient_error(UpstreamError("x")) is True
        assert is_transient_error(UpstreamError("x", status=400)) is False

    def test_message_patterns(self):
        assert is_transient_error(Exception("Request timed out")) is True
        assert is_transient_error(Exception("connection reset by peer")) is True
        assert is_transient_error(Exception("failed with 502")) is True
        assert is_transient_error(Exception("Invalid prompt")) is False


class TestCoverErrorClassification:
    """Tests for cover error codes."""

    def test_missing_message(self):
        outcome = classify_cover_error(None)
        assert outcome.error_code == "cover_generation_failed"
        assert outcome.message == "Unknown error"
        assert outcome.retryable is False

    def test_api_key_missing(self):
        assert classify_cover_error(ConfigMissingError("OpenAI API key not configured")).error_code == "cover_api_key_missing"
        assert classify_cover_error(Exception("api key rejected")).error_code == "cover_api_key_missing"

    def test_upstream_is_retryable(self):
        outcome = classify_cover_error(UpstreamError("OpenAI image request failed with 503: busy", status=503))
        assert outcome.error_code == "cover_generation_upstream"
        assert outcome.retryable is True

    def test_reader_errors(self):
        assert classify_cover_error(ContentUnavailableError("Could not parse")).error_code == "reader_unavailable"
        assert classify_cover_error(Exception("Reader unavailable for item")).error_code == "reader_unavailable"

        fetch = classify_cover_error(ReaderFetchError("Reader fetch timed out after 10s"))
        assert fetch.error_code == "reader_fetch_failed"
        assert fetch.retryable is True

    def test_permanent_failure(self):
        outcome = classify_cover_error(UpstreamError("Content policy violation", status=400))
        assert outcome.error_code == "cover_generation_failed"
        assert outcome.retryable is False


class TestKindleErrorClassification:
    """Tests for Kindle error codes."""

    def test_config_missing(self):
        assert classify_kindle_error(ConfigMissingError("Kindle send not configured")).error_code == "kindle_config_missing"

    def test_content_unavailable_needs_content(self):
        outcome = classify_kindle_error(ContentUnavailableError("Could not parse article content"))
        assert outcome.status == "needs-content"
        assert outcome.error_code == "reader_unavailable"

    def test_upstream(self):
        outcome = classify_kindle_error(UpstreamError("Resend failed with 502", status=502))
        assert outcome.error_code == "kindle_send_upstream"
        assert outcome.retryable is True

    def test_send_failed(self):
        outcome = classify_kindle_error(UpstreamError("Resend failed with 422 invalid address", status=422))
        assert outcome.error_code == "kindle_send_failed"
        assert outcome.retryable is False


class TestCoverJob:
    """Tests for the cover sync job lifecycle."""

    @pytest.mark.asyncio
    async def test_enqueue_persists_pending_and_sends(self, pipeline, sync_queue):
        """Enqueue writes a pending state and sends attempt 1."""
        await save_item(pipeline, make_item())

        result = await pipeline.cover_job.enqueue("item-1", reason="save")

        assert result.queued is True
        state = (await pipeline.items.get("item-1")).cover_sync
        assert state.status == "pending"
        assert state.attempt == 0
        assert state.max_attempts == 2
        assert state.queued_at == state.next_retry_at

        body = sync_queue.sent[0].body
        assert body["type"] == "cover-sync"
        assert body["itemId"] == "item-1"
        assert body["jobId"] == state.job_id
        assert body["attempt"] == 1
        assert body["maxAttempts"] == 2
        assert body["reason"] == "save"

    @pytest.mark.asyncio
    async def test_success_sets_cover_and_queues_push(self, pipeline, sync_queue, push_queue):
        """A successful attempt stores the cover, adopts the title and queues the push."""
        await save_item(pipeline, make_item())
        await pipeline.cover_job.enqueue("item-1")

        await pipeline.cover_job.process(sync_queue.sent[0].body)

        item = await pipeline.items.get("item-1")
        assert item.cover_sync.status == "succeeded"
        assert item.cover_sync.attempt == 1
        assert item.cover_sync.completed_at is not None
        assert item.cover_sync.last_error is None
        assert item.cover.updated_at is not None
        assert item.title == "The Real Title"
        assert (await pipeline.covers.get("item-1")).base64 == PNG_BASE64

        assert item.push_channels.readiness.status == "ready"
        assert item.push_channels.ios.status == "queued"
        assert len(push_queue.sent) == 1
        media = push_queue.sent[0].body["notification"]["media"][0]
        assert media["url"].startswith(f"{PUBLIC_ORIGIN}/api/read-later/cover?id=item-1&v=")

    @pytest.mark.asyncio
    async def test_transient_failures_exhaust_attempts(self, pipeline, sync_queue, generator):
        """pending → retrying → failed, with no message after the last attempt."""
        generator.results = [
            UpstreamError("OpenAI image request failed with 503: busy", status=503),
            UpstreamError("OpenAI image request failed with 503: busy", status=503),
        ]
        await save_item(pipeline, make_item())
        await pipeline.cover_job.enqueue("item-1")

        await pipeline.cover_job.process(sync_queue.sent[0].body)

        state = (await pipeline.items.get("item-1")).cover_sync
        assert state.status == "retrying"
        assert state.attempt == 1
        assert state.error_code == "cover_generation_upstream"
        assert state.next_retry_at is not None
        retry = sync_queue.sent[1]
        assert retry.delay_seconds == 20
        assert retry.body["attempt"] == 2
        assert retry.body["reason"] == "retry"
        assert retry.body["queuedAt"] == sync_queue.sent[0].body["queuedAt"]

        await pipeline.cover_job.process(retry.body)

        state = (await pipeline.items.get("item-1")).cover_sync
        assert state.status == "failed"
        assert state.attempt == 2
        assert state.error_code == "cover_generation_upstream"
        assert state.next_retry_at is None
        assert len(sync_queue.sent) == 2

    @pytest.mark.asyncio
    async def test_missing_generator_fails_without_retry(self, pipeline, sync_queue):
        """Missing API key is a terminal failure on the first attempt."""
        pipeline.cover_service.generator = None
        await save_item(pipeline, make_item())
        await pipeline.cover_job.enqueue("item-1")

        await pipeline.cover_job.process(sync_queue.sent[0].body)

        state = (await pipeline.items.get("item-1")).cover_sync
        assert state.status == "failed"
        assert state.error_code == "cover_api_key_missing"
        assert state.retryable is False
        assert len(sync_queue.sent) == 1

    @pytest.mark.asyncio
    async def test_unparseable_article(self, pipeline, sync_queue):
        """No reader content fails with reader_unavailable."""
        await save_item(pipeline, make_item(), with_reader=False)
        pipeline.reader.ensure_reader = AsyncMock(return_value=None)
        await pipeline.cover_job.enqueue("item-1")

        await pipeline.cover_job.process(sync_queue.sent[0].body)

        state = (await pipeline.items.get("item-1")).cover_sync
        assert state.status == "failed"
        assert state.error_code == "reader_unavailable"

    @pytest.mark.asyncio
    async def test_already_satisfied_is_skipped(self, pipeline, sync_queue):
        """An item with a stored cover is not re-queued unless forced."""
        item = make_item()
        item.cover = CoverInfo(updated_at="2024-05-01T10:00:00.000Z")
        await save_item(pipeline, item)
        await pipeline.covers.save("item-1", CoverImage(base64=PNG_BASE64))

        skipped = await pipeline.cover_job.enqueue("item-1")
        forced = await pipeline.cover_job.enqueue("item-1", force=True)

        assert skipped.skipped is True
        assert skipped.reason == "already_satisfied"
        assert forced.queued is True
        assert len(sync_queue.sent) == 1

    @pytest.mark.asyncio
    async def test_active_job_blocks_enqueue(self, pipeline, sync_queue):
        """A fresh active job reports in_progress, even when forced."""
        await save_item(pipeline, make_item())
        await pipeline.cover_job.enqueue("item-1")

        again = await pipeline.cover_job.enqueue("item-1", force=True)

        assert again.in_progress is True
        assert len(sync_queue.sent) == 1

    @pytest.mark.asyncio
    async def test_stale_active_job_is_replaced(self, pipeline, sync_queue):
        """An active job untouched past the stale window gets a new token."""
        item = make_item()
        item.cover_sync = CoverSyncState(
            status="processing",
            job_id="old-job",
            queued_at="2020-01-01T00:00:00.000Z",
            updated_at="2020-01-01T00:00:00.000Z",
        )
        await save_item(pipeline, item)

        result = await pipeline.cover_job.enqueue("item-1")

        assert result.queued is True
        assert (await pipeline.items.get("item-1")).cover_sync.job_id != "old-job"

    @pytest.mark.asyncio
    async def test_stale_token_is_ignored(self, pipeline, sync_queue, generator):
        """A message whose token is no longer current changes nothing."""
        await save_item(pipeline, make_item())
        await pipeline.cover_job.enqueue("item-1")
        message = dict(sync_queue.sent[0].body, jobId="superseded")

        await pipeline.cover_job.process(message)

        state = (await pipeline.items.get("item-1")).cover_sync
        assert state.status == "pending"
        assert generator.prompts == []

    @pytest.mark.asyncio
    async def test_redelivery_after_success_is_ignored(self, pipeline, sync_queue, generator):
        """A finished job is not run again when its message is redelivered."""
        await save_item(pipeline, make_item())
        await pipeline.cover_job.enqueue("item-1")
        message = sync_queue.sent[0].body

        await pipeline.cover_job.process(message)
        await pipeline.cover_job.process(message)

        assert len(generator.prompts) == 1
        assert (await pipeline.items.get("item-1")).cover_sync.status == "succeeded"

    @pytest.mark.asyncio
    async def test_attempt_never_goes_backwards(self, pipeline, sync_queue, generator):
        """A late message with a lower attempt continues from the stored attempt."""
        generator.results = [UpstreamError("OpenAI image request failed with 503: busy", status=503)]
        await save_item(pipeline, make_item())
        await pipeline.cover_job.enqueue("item-1")
        first = sync_queue.sent[0].body

        def mark_retried(current):
            current.cover_sync.status = "retrying"
            current.cover_sync.attempt = 2

        await pipeline.items.update("item-1", mark_retried)
        await pipeline.cover_job.process(first)

        state = (await pipeline.items.get("item-1")).cover_sync
        assert state.attempt == 2
        assert state.status == "failed"
        assert len(sync_queue.sent) == 1

    @pytest.mark.asyncio
    async def test_attempt_clamped_to_limit(self, pipeline, sync_queue):
        await save_item(pipeline, make_item())
        await pipeline.cover_job.enqueue("item-1")
        message = dict(sync_queue.sent[0].body, attempt=9, maxAttempts=99)

        await pipeline.cover_job.process(message)

        state = (await pipeline.items.get("item-1")).cover_sync
        assert state.max_attempts == 4
        assert state.attempt == 4

    @pytest.mark.asyncio
    async def test_invalid_messages_are_dropped(self, pipeline, generator):
        await pipeline.cover_job.process({"type": "cover-sync", "itemId": "item-1"})
        await pipeline.cover_job.process("not json")
        await pipeline.cover_job.process({"itemId": "missing", "jobId": "x"})
        assert generator.prompts == []

    @pytest.mark.asyncio
    async def test_queue_missing_marks_failed(self, pipeline):
        """Without a queue the job is written as failed immediately."""
        await save_item(pipeline, make_item())
        job = RetryableJob(pipeline.cover_job.channel, pipeline.items, None)

        result = await job.enqueue("item-1")

        assert result.queue_missing is True
        state = (await pipeline.items.get("item-1")).cover_sync
        assert state.status == "failed"
        assert state.error_code == "cover_queue_unavailable"

    @pytest.mark.asyncio
    async def test_queue_send_failure_marks_failed(self, pipeline):
        await save_item(pipeline, make_item())
        queue = Mock()
        queue.send = AsyncMock(side_effect=RuntimeError("queue down"))
        job = RetryableJob(pipeline.cover_job.channel, pipeline.items, queue)

        result = await job.enqueue("item-1")

        assert result.queue_failed is True
        assert (await pipeline.items.get("item-1")).cover_sync.error_code == "cover_queue_failed"

    @pytest.mark.asyncio
    async def test_retry_send_failure_marks_failed(self, pipeline, sync_queue, generator):
        """A retry that cannot be queued ends the job instead of leaving it retrying."""
        generator.results = [UpstreamError("OpenAI image request failed with 503: busy", status=503)]
        await save_item(pipeline, make_item())
        await pipeline.cover_job.enqueue("item-1")
        first = sync_queue.sent[0].body
        sync_queue.send = AsyncMock(side_effect=RuntimeError("queue down"))

        await pipeline.cover_job.process(first)

        state = (await pipeline.items.get("item-1")).cover_sync
        assert state.status == "failed"
        assert state.error_code == "cover_retry_queue_failed"
        assert state.retryable is False
        assert state.attempt == 1
        assert len(sync_queue.sent) == 1

    @pytest.mark.asyncio
    async def test_retry_without_queue_marks_failed(self, pipeline, sync_queue, generator):
        generator.results = [UpstreamError("OpenAI image request failed with 503: busy", status=503)]
        await save_item(pipeline, make_item())
        await pipeline.cover_job.enqueue("item-1")
        pipeline.cover_job.queue = None

        await pipeline.cover_job.process(sync_queue.sent[0].body)

        state = (await pipeline.items.get("item-1")).cover_sync
        assert state.status == "failed"
        assert state.error_code == "cover_queue_unavailable"
        assert state.retryable is False
        assert len(sync_queue.sent) == 1

    @pytest.mark.asyncio
    async def test_x_status_reader_is_refreshed(self, pipeline, sync_queue):
        """X status links are re-read even when a document is cached."""
        url = "https://x.com/user/status/123"
        await save_item(pipeline, make_item(url=url, title="x.com"))
        x_reader = Mock()
        x_reader.build_reader = AsyncMock(return_value=make_reader(120))
        pipeline.reader.x_reader = x_reader
        await pipeline.cover_job.enqueue("item-1")

        await pipeline.cover_job.process(sync_queue.sent[0].body)

        x_reader.build_reader.assert_awaited_once_with(url, "x.com")
        assert (await pipeline.items.get("item-1")).cover_sync.status == "succeeded"
        assert (await pipeline.readers.get("item-1")).content_html == make_reader(120).content_html

    @pytest.mark.asyncio
    async def test_missing_item(self, pipeline):
        result = await pipeline.cover_job.enqueue("nope")
        assert result.reason == "item_missing"
        assert result.queued is False

    @pytest.mark.asyncio
    async def test_max_attempts_clamped_on_enqueue(self, pipeline, sync_queue):
        await save_item(pipeline, make_item())
        await pipeline.cover_job.enqueue("item-1", max_attempts=10)
        assert sync_queue.sent[0].body["maxAttempts"] == 4


class TestKindleJob:
    """Tests for the Kindle delivery job."""

    @pytest.mark.asyncio
    async def test_message_has_sync_version_and_no_type(self, pipeline, sync_queue):
        await save_item(pipeline, make_item())

        await pipeline.kindle_job.enqueue("item-1")

        body = sync_queue.sent[0].body
        assert "type" not in body
        assert body["syncVersion"] == (await pipeline.items.get("item-1")).kindle.sync_version
        assert body["maxAttempts"] == 3

    @pytest.mark.asyncio
    async def test_success(self, pipeline, sync_queue, kindle_sender):
        """Synced items record the send, mirror the channel and gain a cover."""
        await save_item(pipeline, make_item())
        await pipeline.kindle_job.enqueue("item-1")

        await pipeline.kindle_job.process(sync_queue.sent[0].body)

        item = await pipeline.items.get("item-1")
        assert item.kindle.status == "synced"
        assert item.kindle.last_synced_at is not None
        assert item.kindle.last_attempt_at is not None
        assert item.push_channels.kindle.status == "sent"
        assert item.cover.updated_at is not None
        assert item.title == "The Real Title"
        kindle_sender.send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_transient_send_failure_retries(self, pipeline, sync_queue, kindle_sender):
        kindle_sender.send.side_effect = UpstreamError("Resend failed with 502", status=502)
        await save_item(pipeline, make_item())
        await pipeline.kindle_job.enqueue("item-1")

        await pipeline.kindle_job.process(sync_queue.sent[0].body)

        item = await pipeline.items.get("item-1")
        assert item.kindle.status == "retrying"
        assert item.kindle.error_code == "kindle_send_upstream"
        assert sync_queue.sent[1].delay_seconds == 30
        assert sync_queue.sent[1].body["syncVersion"] == item.kindle.sync_version

    @pytest.mark.asyncio
    async def test_retry_send_failure_marks_failed(self, pipeline, sync_queue, kindle_sender):
        kindle_sender.send.side_effect = UpstreamError("Resend failed with 502", status=502)
        await save_item(pipeline, make_item())
        await pipeline.kindle_job.enqueue("item-1")
        first = sync_queue.sent[0].body
        sync_queue.send = AsyncMock(side_effect=RuntimeError("queue down"))

        await pipeline.kindle_job.process(first)

        item = await pipeline.items.get("item-1")
        assert item.kindle.status == "failed"
        assert item.kindle.error_code == "sync_retry_queue_failed"
        assert item.kindle.retryable is False
        assert item.push_channels.kindle.status == "failed"
        assert len(sync_queue.sent) == 1

    @pytest.mark.asyncio
    async def test_retry_without_queue_marks_failed(self, pipeline, sync_queue, kindle_sender):
        kindle_sender.send.side_effect = UpstreamError("Resend failed with 502", status=502)
        await save_item(pipeline, make_item())
        await pipeline.kindle_job.enqueue("item-1")
        pipeline.kindle_job.queue = None

        await pipeline.kindle_job.process(sync_queue.sent[0].body)

        item = await pipeline.items.get("item-1")
        assert item.kindle.status == "failed"
        assert item.kindle.error_code == "sync_queue_unavailable"
        assert item.kindle.retryable is False

    @pytest.mark.asyncio
    async def test_permanent_fetch_failure(self, pipeline, sync_queue):
        """A 404 fails immediately and marks the Kindle channel failed."""
        await save_item(pipeline, make_item(), with_reader=False)
        pipeline.reader.ensure_reader = AsyncMock(side_effect=ReaderFetchError("Reader fetch failed with 404"))
        await pipeline.kindle_job.enqueue("item-1")

        await pipeline.kindle_job.process(sync_queue.sent[0].body)

        item = await pipeline.items.get("item-1")
        assert item.kindle.status == "failed"
        assert item.kindle.error_code == "reader_fetch_failed"
        assert item.push_channels.kindle.status == "failed"
        assert item.push_channels.kindle.last_error == "Reader fetch failed with 404"
        assert len(sync_queue.sent) == 1

    @pytest.mark.asyncio
    async def test_needs_content(self, pipeline, sync_queue, kindle_sender):
        await save_item(pipeline, make_item(), with_reader=False)
        pipeline.reader.ensure_reader = AsyncMock(return_value=None)
        await pipeline.kindle_job.enqueue("item-1")

        await pipeline.kindle_job.process(sync_queue.sent[0].body)

        item = await pipeline.items.get("item-1")
        assert item.kindle.status == "needs-content"
        assert item.push_channels.kindle.status == "skipped"
        kindle_sender.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unsupported_url(self, pipeline, sync_queue, kindle_sender):
        """Non-http links are marked unsupported and never re-queued."""
        await save_item(pipeline, make_item(url="file:///Users/me/notes.txt"))
        await pipeline.kindle_job.enqueue("item-1")

        await pipeline.kindle_job.process(sync_queue.sent[0].body)

        item = await pipeline.items.get("item-1")
        assert item.kindle.status == "unsupported"
        assert item.push_channels.kindle.status == "skipped"
        kindle_sender.send.assert_not_awaited()

        again = await pipeline.kindle_job.enqueue("item-1")
        assert again.skipped is True

    @pytest.mark.asyncio
    async def test_cover_failure_does_not_block_send(self, pipeline, sync_queue, kindle_sender, generator):
        generator.results = [UpstreamError("OpenAI image request failed with 500", status=500)]
        await save_item(pipeline, make_item())
        await pipeline.kindle_job.enqueue("item-1")

        await pipeline.kindle_job.process(sync_queue.sent[0].body)

        item = await pipeline.items.get("item-1")
        assert item.kindle.status == "synced"
        assert item.cover is None
        kindle_sender.send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_last_synced_at_survives_new_job(self, pipeline, sync_queue):
        """A forced resend keeps the previous lastSyncedAt until it succeeds."""
        await save_item(pipeline, make_item())
        await pipeline.kindle_job.enqueue("item-1")
        await pipeline.kindle_job.process(sync_queue.sent[0].body)
        synced_at = (await pipeline.items.get("item-1")).kindle.last_synced_at

        await pipeline.request_kindle_sync("item-1")

        state = (await pipeline.items.get("item-1")).kindle
        assert state.status == "pending"
        assert state.last_synced_at == synced_at


class TestPipeline:
    """Tests for pipeline entry points."""

    @pytest.mark.asyncio
    async def test_start_enrichment_queues_both_jobs(self, pipeline, sync_queue):
        await save_item(pipeline, make_item())

        result = await pipeline.start_enrichment("item-1")

        assert result.cover.queued is True
        assert result.kindle.queued is True
        assert len(sync_queue.sent) == 2

    @pytest.mark.asyncio
    async def test_regenerate_cover_drops_existing(self, pipeline, sync_queue):
        item = make_item()
        item.cover = CoverInfo(updated_at="2024-05-01T10:00:00.000Z")
        await save_item(pipeline, item)
        await pipeline.covers.save("item-1", CoverImage(base64=PNG_BASE64))

        result = await pipeline.regenerate_cover("item-1")

        assert result.queued is True
        assert (await pipeline.items.get("item-1")).cover is None
        assert await pipeline.covers.get("item-1") is None
        assert sync_queue.sent[0].body["reason"] == "regenerate"

    @pytest.mark.asyncio
    async def test_regenerate_missing_item(self, pipeline):
        assert (await pipeline.regenerate_cover("nope")).reason == "item_missing"
