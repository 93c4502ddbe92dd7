"""
Pytest fixtures for read-later tests.
"""

import asyncio
import base64
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest
from fastapi.testclient import TestClient

from readlater.config import Config, config, state
from readlater.covers import ImageGenerator
from readlater.models import CoverImage, Item, ReaderDocument
from readlater.pipeline import build_pipeline
from readlater.push.apns import ApnsClient, ApnsResponse
from readlater.server import app
from readlater.storage import MemoryKeyValueStore, MemoryQueue

PNG_BASE64 = base64.b64encode(b"\x89PNG\r\n\x1a\nfake-image").decode("ascii")
PUBLIC_ORIGIN = "https://read.example.com"


def article_html(words: int = 80, title: str = "A Test Article") -> str:
    """Reader-sized HTML fragment with the given number of words."""
    body = " ".join(f"word{i}" for i in range(words))
    return f"<h2>{title}</h2><p>{body}</p>"


class StubImageGenerator(ImageGenerator):
    """Generator returning queued results (base64 strings, None, or exceptions)."""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.prompts: list[str] = []

    @property
    def name(self) -> str:
        return "stub"

    async def generate(self, prompt, on_partial=None):
        self.prompts.append(prompt)
        result = self.results.pop(0) if self.results else PNG_BASE64
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def store():
    """Fresh in-memory key-value store."""
    return MemoryKeyValueStore()


@pytest.fixture
def sync_queue():
    return MemoryQueue()


@pytest.fixture
def push_queue():
    return MemoryQueue()


@pytest.fixture
def generator():
    return StubImageGenerator()


@pytest.fixture
def kindle_sender():
    """Kindle sender that always succeeds."""
    sender = Mock()
    sender.send = AsyncMock(return_value={"id": "email_123"})
    return sender


@pytest.fixture
def apns_client():
    """APNs client that accepts every notification."""
    client = Mock(spec=ApnsClient)
    client.auth_token = Mock(return_value="provider-token")
    client.open_session = MagicMock()
    client.send = AsyncMock(return_value=ApnsResponse(ok=True, status=200))
    return client


@pytest.fixture
def test_config():
    cfg = Config()
    cfg.READ_LATER_DEFAULT_OWNER_ID = "default"
    cfg.READ_LATER_PUBLIC_ORIGIN = PUBLIC_ORIGIN
    cfg.APNS_TOPIC = ""
    cfg.X_API_BEARER_TOKEN = ""
    return cfg


@pytest.fixture
def pipeline(store, sync_queue, push_queue, generator, kindle_sender, apns_client, test_config):
    """Pipeline over in-memory storage with stubbed external services."""
    return build_pipeline(
        store,
        sync_queue,
        push_queue,
        cfg=test_config,
        generator=generator,
        kindle_sender=kindle_sender,
        apns_client=apns_client,
    )


@pytest.fixture
def seed(pipeline):
    """Store an item, optionally with a cached reader document and a cover blob."""

    def _seed(item: Item, reader: ReaderDocument | None = None, cover: CoverImage | None = None) -> Item:
        async def write():
            await pipeline.items.save(item)
            if reader is not None:
                await pipeline.readers.save(item.id, reader)
            if cover is not None:
                await pipeline.covers.save(item.id, cover)

        asyncio.run(write())
        return item

    return _seed


@pytest.fixture
def client(pipeline, store, sync_queue, push_queue):
    """Create a test client wired to the in-memory pipeline."""
    # Store original state
    original_store = state.store
    original_sync_queue = state.sync_queue
    original_push_queue = state.push_queue
    original_pipeline = state.pipeline
    original_auth_key = config.AUTH_API_KEY

    # Set up test state
    state.store = store
    state.sync_queue = sync_queue
    state.push_queue = push_queue
    state.pipeline = pipeline
    config.AUTH_API_KEY = ""

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client

    # Restore original state
    state.store = original_store
    state.sync_queue = original_sync_queue
    state.push_queue = original_push_queue
    state.pipeline = original_pipeline
    config.AUTH_API_KEY = original_auth_key
