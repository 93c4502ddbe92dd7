"""
Retryable background jobs on top of an at-least-once queue.

A job channel (cover generation, Kindle delivery) describes *what* runs and
where its state lives on the item; RetryableJob implements *how* it runs:

- enqueue: persist a pending state with a fresh token, then send attempt 1
- process: validate the token, mark processing, run the work, classify
  failures, then either schedule a delayed retry message or write the
  terminal state
- every state write is a conditional read-modify-write that re-checks the
  token, so a superseded job can never overwrite a newer one

Retries are delayed queue messages, never in-process sleeps.
"""

import asyncio
import logging
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, fields
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from ..converters import add_seconds, now_iso, parse_iso
from ..exceptions import UpstreamError
from ..models import ACTIVE_JOB_STATUSES, Item, JobState
from ..storage import ItemRepository, MessageQueue, parse_message_body

logger = logging.getLogger(__name__)

ERROR_MESSAGE_LIMIT = 320
STALE_ACTIVE_SECONDS = 5 * 60

TRANSIENT_ERROR_PATTERN = re.compile(
    r"(abort|timeout|timed out|network|connection reset| 5\d\d\b| 429\b)",
    re.IGNORECASE,
)


def compact_error(error: Any) -> str:
    """Single-line error text capped for storage on the item."""
    if error is None:
        return "Unknown error"
    message = str(error).strip() or type(error).__name__
    return message[:ERROR_MESSAGE_LIMIT]


def is_transient_error(error: BaseException) -> bool:
    """Timeouts, network failures, 5xx and 429 responses are worth retrying."""
    if isinstance(error, UpstreamError):
        if error.status is None:
            return True
        return error.status >= 500 or error.status == 429
    if isinstance(error, (asyncio.TimeoutError, ConnectionError)):
        return True
    return bool(TRANSIENT_ERROR_PATTERN.search(compact_error(error)))


def _to_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass
class JobOutcome:
    """Result of one attempt, either returned by the work or classified from an error."""
    status: str
    succeeded: bool = False
    error_code: str | None = None
    message: str | None = None
    retryable: bool = False
    # Item changes written together with the terminal state
    apply: Callable[[Item], None] | None = None


@dataclass
class EnqueueResult:
    queued: bool = False
    skipped: bool = False
    in_progress: bool = False
    queue_missing: bool = False
    queue_failed: bool = False
    item: Item | None = None
    reason: str | None = None


class JobChannel(ABC):
    """
    Describes one kind of retryable job.

    Subclasses set the class attributes and implement the unit of work and
    error classification. Hooks default to no-ops.
    """

    name: str                      # log event prefix, e.g. "cover_sync"
    state_attr: str                # Item attribute holding the JobState
    state_class: type[JobState]
    token_attr: str                # JobState attribute holding the job token
    token_field: str               # message field carrying the token
    message_type: str | None = None
    error_prefix: str              # queue error codes: {prefix}_queue_unavailable, ...
    default_max_attempts: int
    max_attempts_limit: int
    retry_delays: tuple[int, ...]
    success_status: str
    failure_status: str = "failed"
    # State fields carried over when a new job replaces an old one
    preserved_fields: tuple[str, ...] = ()

    @abstractmethod
    async def is_satisfied(self, item: Item) -> bool:
        """True when the job's goal is already met and enqueue can be skipped."""
        pass

    @abstractmethod
    async def run(self, item: Item) -> JobOutcome:
        """Perform one attempt. May raise; errors go through classify_error."""
        pass

    @abstractmethod
    def classify_error(self, error: Exception) -> JobOutcome:
        pass

    def on_processing(self, state: JobState, now: str) -> None:
        pass

    def on_terminal(self, item: Item, state: JobState, outcome: JobOutcome, now: str) -> None:
        pass

    async def after_terminal(self, item: Item, outcome: JobOutcome) -> None:
        pass


class RetryableJob:
    """Runs a JobChannel's work through the queue with bounded retries."""

    def __init__(
        self,
        channel: JobChannel,
        items: ItemRepository,
        queue: MessageQueue | None,
        stale_after_seconds: int = STALE_ACTIVE_SECONDS,
    ):
        self.channel = channel
        self.items = items
        self.queue = queue
        self.stale_after_seconds = stale_after_seconds

    @property
    def name(self) -> str:
        return self.channel.name

    # ─────────────────────────────────────────────────────────────
    # State helpers
    # ─────────────────────────────────────────────────────────────

    def clamp_attempts(self, value: Any) -> int:
        parsed = _to_int(value, 0)
        if parsed < 1:
            return self.channel.default_max_attempts
        return min(parsed, self.channel.max_attempts_limit)

    def retry_delay(self, attempt: int) -> int:
        delays = self.channel.retry_delays
        if attempt <= 0:
            return delays[0]
        return delays[min(attempt - 1, len(delays) - 1)]

    def get_state(self, item: Item) -> JobState | None:
        return getattr(item, self.channel.state_attr)

    def _set_state(self, item: Item, state: JobState) -> None:
        setattr(item, self.channel.state_attr, state)

    def get_token(self, item: Item) -> str | None:
        state = self.get_state(item)
        return getattr(state, self.channel.token_attr) if state else None

    def is_current(self, item: Item, token: str) -> bool:
        return bool(token) and self.get_token(item) == token

    @staticmethod
    def is_active(state: JobState | None) -> bool:
        return state is not None and state.status in ACTIVE_JOB_STATUSES

    def is_stale(self, state: JobState | None, now: datetime | None = None) -> bool:
        """Active state that has not been touched for the stale window."""
        if not self.is_active(state):
            return False
        updated = parse_iso(state.updated_at or state.queued_at)
        if updated is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now - updated > timedelta(seconds=self.stale_after_seconds)

    def _new_state(self, previous: JobState | None, token: str, max_attempts: int, now: str) -> JobState:
        state = self.channel.state_class(
            status="pending",
            attempt=0,
            max_attempts=max_attempts,
            queued_at=now,
            next_retry_at=now,
            retryable=True,
            updated_at=now,
        )
        setattr(state, self.channel.token_attr, token)
        if previous is not None:
            for name in self.channel.preserved_fields:
                setattr(state, name, getattr(previous, name, None))
        return state

    def _copy_state(self, item: Item) -> JobState:
        state = self.get_state(item)
        copied = self.channel.state_class()
        if state is not None:
            for f in fields(state):
                setattr(copied, f.name, getattr(state, f.name))
        return copied

    def build_message(
        self,
        item_id: str,
        token: str,
        attempt: int,
        max_attempts: int,
        reason: str,
        queued_at: str,
    ) -> dict:
        body: dict[str, Any] = {}
        if self.channel.message_type:
            body["type"] = self.channel.message_type
        body.update({
            "itemId": item_id,
            self.channel.token_field: token,
            "attempt": attempt,
            "maxAttempts": max_attempts,
            "reason": reason,
            "queuedAt": queued_at,
        })
        return body

    # ─────────────────────────────────────────────────────────────
    # Enqueue
    # ─────────────────────────────────────────────────────────────

    async def enqueue(
        self,
        item_id: str,
        reason: str = "manual",
        force: bool = False,
        max_attempts: Any = None,
    ) -> EnqueueResult:
        """Queue a new job for the item unless one is running or the goal is met."""
        item = await self.items.get(item_id)
        if item is None:
            logger.warning(f"{self.name}_item_missing item={item_id}")
            return EnqueueResult(reason="item_missing")

        state = self.get_state(item)
        if self.is_active(state):
            if not self.is_stale(state):
                logger.info(f"{self.name}_in_progress item={item_id} status={state.status}")
                return EnqueueResult(in_progress=True, item=item, reason="in_progress")
            logger.warning(
                f"{self.name}_stale_active_requeue item={item_id} "
                f"status={state.status} updated_at={state.updated_at}"
            )

        if not force and await self.channel.is_satisfied(item):
            logger.info(f"{self.name}_skipped item={item_id} reason=already_satisfied")
            return EnqueueResult(skipped=True, item=item, reason="already_satisfied")

        seen_token = self.get_token(item)
        token = str(uuid.uuid4())
        limit = self.clamp_attempts(max_attempts)
        now = now_iso()

        def mark_pending(current: Item) -> bool | None:
            # Another enqueue won the race
            if self.get_token(current) != seen_token:
                return False
            self._set_state(current, self._new_state(self.get_state(current), token, limit, now))

        updated = await self.items.update(item_id, mark_pending)
        if updated is None:
            latest = await self.items.get(item_id)
            if latest is None:
                return EnqueueResult(reason="item_missing")
            logger.info(f"{self.name}_in_progress item={item_id} reason=concurrent_enqueue")
            return EnqueueResult(in_progress=True, item=latest, reason="in_progress")

        if self.queue is None:
            logger.error(f"{self.name}_queue_missing item={item_id} reason={reason}")
            failed = await self._write_terminal(
                item_id, token, 0, limit,
                self._queue_failure(f"{self.channel.error_prefix}_queue_unavailable", "Background queue is not configured"),
            )
            return EnqueueResult(queue_missing=True, item=failed or updated, reason="queue_missing")

        try:
            await self.queue.send(self.build_message(item_id, token, 1, limit, reason, now))
        except Exception as e:
            logger.error(f"{self.name}_queue_failed item={item_id} reason={reason} job={token}: {e}")
            failed = await self._write_terminal(
                item_id, token, 0, limit,
                self._queue_failure(f"{self.channel.error_prefix}_queue_failed", "Failed to queue background job"),
            )
            return EnqueueResult(queue_failed=True, item=failed or updated, reason="queue_failed")

        logger.info(f"{self.name}_queued item={item_id} job={token} attempt=1/{limit} reason={reason}")
        return EnqueueResult(queued=True, item=updated)

    def _queue_failure(self, error_code: str, message: str) -> JobOutcome:
        return JobOutcome(
            status=self.channel.failure_status,
            error_code=error_code,
            message=message,
            retryable=False,
        )

    # ─────────────────────────────────────────────────────────────
    # Processing
    # ─────────────────────────────────────────────────────────────

    async def process(self, message: Any) -> None:
        """Handle one queue message. Stale or malformed messages are dropped."""
        payload = parse_message_body(message)
        item_id = str(payload.get("itemId") or "").strip() if payload else ""
        token = str(payload.get(self.channel.token_field) or "").strip() if payload else ""

        if not item_id or not token:
            logger.warning(f"{self.name}_invalid_message")
            return

        limit = self.clamp_attempts(payload.get("maxAttempts"))
        attempt = min(max(1, _to_int(payload.get("attempt"), 1)), limit)
        queued_at = payload.get("queuedAt") if isinstance(payload.get("queuedAt"), str) else now_iso()

        item = await self.items.get(item_id)
        if item is None:
            logger.warning(f"{self.name}_item_missing item={item_id}")
            return

        if not self.is_current(item, token):
            logger.info(f"{self.name}_stale_message item={item_id} job={token} current={self.get_token(item)}")
            return

        now = now_iso()
        effective_attempt = attempt

        def mark_processing(current: Item) -> bool | None:
            nonlocal effective_attempt
            if not self.is_current(current, token):
                return False
            state = self._copy_state(current)
            # Redelivery of a job that already finished
            if not self.is_active(state):
                return False
            effective_attempt = min(max(attempt, state.attempt or 0), limit)
            state.status = "processing"
            state.attempt = effective_attempt
            state.max_attempts = limit
            state.queued_at = state.queued_at or queued_at
            state.next_retry_at = None
            state.last_error = None
            state.error_code = None
            state.retryable = True
            state.updated_at = now
            self.channel.on_processing(state, now)
            self._set_state(current, state)

        item = await self.items.update(item_id, mark_processing)
        if item is None:
            logger.info(f"{self.name}_stale_message item={item_id} job={token}")
            return

        logger.info(f"{self.name}_attempt_started item={item_id} job={token} attempt={effective_attempt}/{limit}")

        try:
            outcome = await self.channel.run(item)
        except Exception as e:
            outcome = self.channel.classify_error(e)
            logger.warning(
                f"{self.name}_attempt_failed item={item_id} job={token} attempt={effective_attempt}/{limit} "
                f"code={outcome.error_code} retryable={outcome.retryable}: {outcome.message}"
            )

        if not outcome.succeeded and outcome.retryable and effective_attempt < limit:
            await self._schedule_retry(item_id, token, effective_attempt, limit, outcome)
            return

        finished = await self._write_terminal(item_id, token, effective_attempt, limit, outcome)
        if finished is None:
            logger.info(f"{self.name}_stale_message item={item_id} job={token}")
            return

        if outcome.succeeded:
            logger.info(f"{self.name}_complete item={item_id} job={token} attempt={effective_attempt}/{limit}")
        else:
            logger.warning(
                f"{self.name}_failed item={item_id} job={token} attempt={effective_attempt}/{limit} "
                f"status={outcome.status} code={outcome.error_code}"
            )

        await self.channel.after_terminal(finished, outcome)

    async def _schedule_retry(
        self,
        item_id: str,
        token: str,
        attempt: int,
        limit: int,
        outcome: JobOutcome,
    ) -> None:
        delay = self.retry_delay(attempt)
        now = now_iso()
        next_retry_at = add_seconds(now, delay)
        queued_at = now

        def mark_retrying(current: Item) -> bool | None:
            nonlocal queued_at
            if not self.is_current(current, token):
                return False
            state = self._copy_state(current)
            state.status = "retrying"
            state.attempt = attempt
            state.max_attempts = limit
            state.next_retry_at = next_retry_at
            state.last_error = outcome.message
            state.error_code = outcome.error_code
            state.retryable = True
            state.updated_at = now
            queued_at = state.queued_at or now
            self._set_state(current, state)

        item = await self.items.update(item_id, mark_retrying)
        if item is None:
            logger.info(f"{self.name}_stale_message item={item_id} job={token}")
            return

        if self.queue is None:
            logger.error(f"{self.name}_retry_queue_missing item={item_id} job={token}")
            await self._write_terminal(
                item_id, token, attempt, limit,
                self._queue_failure(f"{self.channel.error_prefix}_queue_unavailable", "Retry queue unavailable"),
            )
            return

        try:
            await self.queue.send(
                self.build_message(item_id, token, attempt + 1, limit, "retry", queued_at),
                delay_seconds=delay,
            )
        except Exception as e:
            logger.error(f"{self.name}_retry_queue_failed item={item_id} job={token}: {e}")
            await self._write_terminal(
                item_id, token, attempt, limit,
                self._queue_failure(f"{self.channel.error_prefix}_retry_queue_failed", "Failed to queue retry"),
            )
            return

        logger.info(
            f"{self.name}_retry_scheduled item={item_id} job={token} "
            f"next_attempt={attempt + 1}/{limit} delay={delay}s code={outcome.error_code}"
        )

    async def _write_terminal(
        self,
        item_id: str,
        token: str,
        attempt: int,
        limit: int,
        outcome: JobOutcome,
    ) -> Item | None:
        now = now_iso()

        def mark_terminal(current: Item) -> bool | None:
            if not self.is_current(current, token):
                return False
            state = self._copy_state(current)
            state.status = outcome.status
            state.attempt = attempt
            state.max_attempts = limit
            state.next_retry_at = None
            state.last_error = None if outcome.succeeded else outcome.message
            state.error_code = None if outcome.succeeded else outcome.error_code
            state.retryable = False if outcome.succeeded else outcome.retryable
            state.updated_at = now
            if outcome.apply is not None:
                outcome.apply(current)
            self.channel.on_terminal(current, state, outcome, now)
            self._set_state(current, state)

        return await self.items.update(item_id, mark_terminal)

    async def process_batch(self, messages: list[Any]) -> None:
        """Process messages one at a time; one failure never stops the rest."""
        for message in messages:
            try:
                await self.process(message)
            except Exception as e:
                logger.exception(f"{self.name}_worker_failed: {e}")
