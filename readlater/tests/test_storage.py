"""
Tests for the key-value store, queues and repositories.
"""

import pytest

from readlater.exceptions import VersionConflictError
from readlater.models import CoverInfo, Item, KindleState, PushChannels
from readlater.storage import (
    ItemRepository,
    MemoryKeyValueStore,
    MemoryQueue,
    SqliteKeyValueStore,
    SqliteQueue,
    parse_message_body,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture(params=["memory", "sqlite"])
def kv_store(request, tmp_path):
    """Each key-value backend."""
    if request.param == "memory":
        return MemoryKeyValueStore()
    return SqliteKeyValueStore(tmp_path / "kv.db")


class TestKeyValueStore:
    """Tests shared by every key-value backend."""

    @pytest.mark.asyncio
    async def test_missing_key(self, kv_store):
        assert await kv_store.get_with_version("nope") == (None, 0)

    @pytest.mark.asyncio
    async def test_put_increments_version(self, kv_store):
        """Each write bumps the version."""
        assert await kv_store.put("k", {"a": 1}) == 1
        assert await kv_store.put("k", {"a": 2}) == 2
        assert await kv_store.get_with_version("k") == ({"a": 2}, 2)

    @pytest.mark.asyncio
    async def test_conditional_put(self, kv_store):
        """if_version must match the stored version."""
        await kv_store.put("k", {"a": 1})

        assert await kv_store.put("k", {"a": 2}, if_version=1) == 2
        with pytest.raises(VersionConflictError):
            await kv_store.put("k", {"a": 3}, if_version=1)

    @pytest.mark.asyncio
    async def test_create_only(self, kv_store):
        """if_version=0 only succeeds for new keys."""
        assert await kv_store.put("k", "first", if_version=0) == 1
        with pytest.raises(VersionConflictError):
            await kv_store.put("k", "second", if_version=0)

    @pytest.mark.asyncio
    async def test_list_keys_by_prefix(self, kv_store):
        """Prefix matching is exact and case-sensitive."""
        await kv_store.put("item:b", 1)
        await kv_store.put("item:a", 1)
        await kv_store.put("ITEM:c", 1)
        await kv_store.put("reader:a", 1)

        assert await kv_store.list_keys("item:") == ["item:a", "item:b"]

    @pytest.mark.asyncio
    async def test_delete(self, kv_store):
        await kv_store.put("k", 1)
        await kv_store.delete("k")
        await kv_store.delete("missing")
        assert await kv_store.get("k") is None


class TestMemoryQueue:
    """Tests for the in-process queue."""

    @pytest.mark.asyncio
    async def test_delayed_message_not_visible(self):
        """Delayed messages appear only after their delay."""
        clock = FakeClock()
        queue = MemoryQueue(clock=clock)
        await queue.send({"n": 1}, delay_seconds=20)

        assert await queue.receive() == []
        clock.now += 21
        messages = await queue.receive()
        assert [m.body for m in messages] == [{"n": 1}]

    @pytest.mark.asyncio
    async def test_unacked_message_is_redelivered(self):
        """Messages come back after the visibility timeout unless acked."""
        clock = FakeClock()
        queue = MemoryQueue(visibility_timeout=30, clock=clock)
        await queue.send({"n": 1})

        first = await queue.receive()
        assert await queue.receive() == []

        clock.now += 31
        second = await queue.receive()
        assert second[0].id == first[0].id
        assert second[0].receive_count == 2

        await queue.ack(second[0])
        clock.now += 31
        assert await queue.receive() == []
        assert queue.size == 0

    @pytest.mark.asyncio
    async def test_records_sent_messages(self):
        queue = MemoryQueue()
        await queue.send({"n": 1}, delay_seconds=5)
        assert queue.sent[0].body == {"n": 1}
        assert queue.sent[0].delay_seconds == 5


class TestSqliteQueue:
    """Tests for the persistent queue."""

    @pytest.mark.asyncio
    async def test_send_receive_ack(self, tmp_path):
        queue = SqliteQueue(tmp_path / "queue.db", "sync")
        await queue.send({"itemId": "a"})

        messages = await queue.receive()
        assert [m.body for m in messages] == [{"itemId": "a"}]
        assert messages[0].receive_count == 1

        # Invisible while being processed
        assert await queue.receive() == []

        await queue.ack(messages[0])
        assert await queue.receive() == []

    @pytest.mark.asyncio
    async def test_queues_are_separate(self, tmp_path):
        """Named queues sharing a database do not see each other's messages."""
        sync = SqliteQueue(tmp_path / "queue.db", "sync")
        push = SqliteQueue(tmp_path / "queue.db", "push")
        await sync.send({"q": "sync"})

        assert await push.receive() == []
        assert len(await sync.receive()) == 1

    @pytest.mark.asyncio
    async def test_delay(self, tmp_path):
        queue = SqliteQueue(tmp_path / "queue.db", "sync")
        await queue.send({"n": 1}, delay_seconds=60)
        assert await queue.receive() == []


class TestParseMessageBody:
    """Tests for queue body parsing."""

    def test_accepts_dict_and_json(self):
        assert parse_message_body({"a": 1}) == {"a": 1}
        assert parse_message_body('{"a": 1}') == {"a": 1}

    def test_rejects_invalid(self):
        assert parse_message_body("not json") is None
        assert parse_message_body("[1, 2]") is None
        assert parse_message_body(None) is None


class TestItemRepository:
    """Tests for item persistence and conditional updates."""

    @pytest.fixture
    def items(self):
        return ItemRepository(MemoryKeyValueStore())

    @pytest.mark.asyncio
    async def test_round_trip_keeps_unknown_fields(self, items):
        """Fields owned by other endpoints survive a read-modify-write."""
        await items.store.put(
            "item:a",
            {"id": "a", "url": "https://example.com", "title": "T", "tags": ["x"], "kindle": {"status": "synced"}},
        )

        item = await items.get("a")
        assert isinstance(item.kindle, KindleState)
        assert item.kindle.status == "synced"
        assert item.extra == {"tags": ["x"]}

        item.title = "New"
        await items.save(item)
        stored = await items.store.get("item:a")
        assert stored["tags"] == ["x"]
        assert stored["title"] == "New"

    @pytest.mark.asyncio
    async def test_camel_case_documents(self, items):
        """Nested state is stored with camelCase keys."""
        item = Item(id="a", url="https://example.com", cover=CoverInfo(updated_at="2024-01-01T00:00:00.000Z"))
        item.push_channels = PushChannels()
        await items.save(item)

        stored = await items.store.get("item:a")
        assert stored["cover"] == {"updatedAt": "2024-01-01T00:00:00.000Z"}
        assert stored["pushChannels"]["readiness"]["status"] == "pending"

        loaded = await items.get("a")
        assert loaded.push_channels.readiness.status == "pending"

    @pytest.mark.asyncio
    async def test_update_missing_item(self, items):
        assert await items.update("missing", lambda item: None) is None

    @pytest.mark.asyncio
    async def test_update_abandoned_by_mutator(self, items):
        """Returning False from the mutator skips the write."""
        await items.save(Item(id="a", url="https://example.com", title="Old"))

        def mutate(item):
            item.title = "New"
            return False

        assert await items.update("a", mutate) is None
        assert (await items.get("a")).title == "Old"

    @pytest.mark.asyncio
    async def test_update_retries_on_conflict(self, items):
        """A concurrent write causes the mutator to run again on fresh data."""
        await items.save(Item(id="a", url="https://example.com", title="Old"))
        calls = []

        def mutate(item):
            calls.append(item.title)
            if len(calls) == 1:
                # Simulate a concurrent writer between read and write
                items.store._data["item:a"] = (items.store._data["item:a"][0].replace("Old", "Other"), 99)
            item.title = item.title + "!"

        updated = await items.update("a", mutate)

        assert calls == ["Old", "Other"]
        assert updated.title == "Other!"
        assert (await items.get("a")).title == "Other!"

    @pytest.mark.asyncio
    async def test_update_gives_up_after_max_attempts(self):
        """Persistent conflicts surface as VersionConflictError."""
        items = ItemRepository(MemoryKeyValueStore(), max_update_attempts=2)
        await items.save(Item(id="a", url="https://example.com"))

        def mutate(item):
            raw, version = items.store._data["item:a"]
            items.store._data["item:a"] = (raw, version + 1)

        with pytest.raises(VersionConflictError):
            await items.update("a", mutate)
