"""
Queue workers.

Background consumers that poll a queue and hand each batch to the pipeline:
- sync queue: "cover-sync" messages go to the cover job, the rest to Kindle
- push queue: article and test notifications go to the push service

Run standalone with:
    python -m readlater.worker --queue sync
"""

import argparse
import asyncio
import logging
from typing import Any, Awaitable, Callable

from .config import config, setup_logging
from .jobs import COVER_SYNC_MESSAGE_TYPE
from .pipeline import ReadLaterPipeline, build_pipeline
from .storage import MessageQueue, QueueMessage, SqliteKeyValueStore, SqliteQueue, parse_message_body

logger = logging.getLogger(__name__)

BatchHandler = Callable[[list[QueueMessage]], Awaitable[Any]]

QUEUE_NAMES = ("sync", "push")


async def dispatch_sync_batch(pipeline: ReadLaterPipeline, messages: list[Any]) -> None:
    """Split a sync batch between the cover and Kindle jobs."""
    cover_messages = []
    kindle_messages = []
    for message in messages:
        body = parse_message_body(message)
        if body is not None and body.get("type") == COVER_SYNC_MESSAGE_TYPE:
            cover_messages.append(message)
        else:
            kindle_messages.append(message)

    if cover_messages:
        await pipeline.cover_job.process_batch(cover_messages)
    if kindle_messages:
        await pipeline.kindle_job.process_batch(kindle_messages)


def handler_for(pipeline: ReadLaterPipeline, queue_name: str) -> BatchHandler:
    if queue_name == "sync":
        return lambda messages: dispatch_sync_batch(pipeline, messages)
    if queue_name == "push":
        return pipeline.push_service.process_batch
    raise ValueError(f"Unknown queue: {queue_name}")


class QueueConsumer:
    """
    Background consumer for one queue.

    Receives up to batch_size messages, processes them and acknowledges them.
    A batch that raises is left unacknowledged and is redelivered after the
    queue's visibility timeout.
    """

    def __init__(
        self,
        name: str,
        queue: MessageQueue,
        handler: BatchHandler,
        interval_seconds: float = 1.0,
        batch_size: int = 10,
    ):
        self.name = name
        self.queue = queue
        self.handler = handler
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the polling loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(f"Queue consumer '{self.name}' started (interval: {self.interval_seconds}s)")

    async def stop(self):
        """Stop the polling loop."""
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info(f"Queue consumer '{self.name}' stopped")

    async def poll_once(self) -> int:
        """Receive and process one batch. Returns the number of messages handled."""
        messages = await self.queue.receive(self.batch_size)
        if not messages:
            return 0

        await self.handler(messages)
        for message in messages:
            await self.queue.ack(message)

        logger.debug(f"Queue '{self.name}': processed {len(messages)} messages")
        return len(messages)

    async def _poll_loop(self):
        while self._running:
            handled = 0
            try:
                handled = await self.poll_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Error in queue consumer '{self.name}': {e}")

            # Drain without waiting while messages keep coming
            if handled < self.batch_size:
                await asyncio.sleep(self.interval_seconds)


# Global consumers (started by server.py when RUN_QUEUE_WORKERS is set)
queue_consumers: list[QueueConsumer] = []


async def start_queue_consumers(pipeline: ReadLaterPipeline):
    """Start in-process consumers for every configured queue."""
    queues = {"sync": pipeline.sync_queue, "push": pipeline.push_queue}
    for name in QUEUE_NAMES:
        queue = queues[name]
        if queue is None:
            logger.warning(f"Queue '{name}' not configured, consumer not started")
            continue
        consumer = QueueConsumer(
            name,
            queue,
            handler_for(pipeline, name),
            interval_seconds=config.WORKER_POLL_INTERVAL,
            batch_size=config.WORKER_BATCH_SIZE,
        )
        await consumer.start()
        queue_consumers.append(consumer)


async def stop_queue_consumers():
    """Stop all in-process consumers."""
    while queue_consumers:
        await queue_consumers.pop().stop()


async def run_worker(queue_name: str, once: bool = False) -> None:
    """Poll one queue until cancelled (or for a single batch with once=True)."""
    store = SqliteKeyValueStore(config.DB_PATH)
    sync_queue = SqliteQueue(config.DB_PATH, "sync")
    push_queue = SqliteQueue(config.DB_PATH, "push")

    renderer = None
    if queue_name == "sync" and config.ENABLE_JS_RENDER:
        try:
            from .reader.renderer import JSRenderer
            renderer = JSRenderer(timeout=config.JS_RENDER_TIMEOUT)
            await renderer.start()
        except Exception as e:
            logger.warning(f"JS renderer unavailable, continuing without it: {e}")
            renderer = None

    pipeline = build_pipeline(store, sync_queue, push_queue, renderer=renderer)
    queue = sync_queue if queue_name == "sync" else push_queue
    consumer = QueueConsumer(
        queue_name,
        queue,
        handler_for(pipeline, queue_name),
        interval_seconds=config.WORKER_POLL_INTERVAL,
        batch_size=config.WORKER_BATCH_SIZE,
    )

    try:
        if once:
            handled = await consumer.poll_once()
            logger.info(f"Queue '{queue_name}': handled {handled} messages")
            return

        await consumer.start()
        while consumer.running:
            await asyncio.sleep(3600)
    finally:
        await consumer.stop()
        if renderer is not None:
            await renderer.stop()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Read-later queue worker")
    parser.add_argument("--queue", choices=QUEUE_NAMES, required=True, help="Queue to consume")
    parser.add_argument("--once", action="store_true", help="Process a single batch and exit")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    args = parser.parse_args(argv)

    setup_logging(args.log_level)

    try:
        asyncio.run(run_worker(args.queue, once=args.once))
    except KeyboardInterrupt:
        logger.info("Worker interrupted, shutting down")


if __name__ == "__main__":
    main()
