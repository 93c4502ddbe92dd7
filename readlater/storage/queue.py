"""
Message queues with delayed delivery.

Delivery is at-least-once: a received message stays invisible for a
visibility timeout and is redelivered unless acknowledged. Consumers must be
idempotent.
"""

import json
import sqlite3
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator


@dataclass
class QueueMessage:
    """A message handed to a consumer."""
    id: str
    body: Any
    receive_count: int = 1


def parse_message_body(message: Any) -> dict | None:
    """Accept a queue message, a dict body or a JSON string body."""
    body = getattr(message, "body", message)
    if isinstance(body, (str, bytes)):
        try:
            body = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None
    return body if isinstance(body, dict) else None


class MessageQueue(ABC):
    """Abstract base class for queue backends."""

    @abstractmethod
    async def send(self, body: Any, delay_seconds: int = 0) -> None:
        """Enqueue a JSON-serializable body, optionally delayed."""
        pass

    @abstractmethod
    async def receive(self, max_messages: int = 10) -> list[QueueMessage]:
        """Receive up to max_messages visible messages."""
        pass

    @abstractmethod
    async def ack(self, message: QueueMessage) -> None:
        """Acknowledge (delete) a received message."""
        pass


@dataclass
class _PendingMessage:
    id: str
    raw: str
    visible_at: float
    receive_count: int = 0


@dataclass
class SentMessage:
    body: Any
    delay_seconds: int = 0


class MemoryQueue(MessageQueue):
    """In-process queue. ``sent`` records every send for inspection."""

    def __init__(self, visibility_timeout: float = 30.0, clock=time.monotonic):
        self.visibility_timeout = visibility_timeout
        self._clock = clock
        self._messages: dict[str, _PendingMessage] = {}
        self.sent: list[SentMessage] = []

    async def send(self, body: Any, delay_seconds: int = 0) -> None:
        raw = json.dumps(body)
        message_id = uuid.uuid4().hex
        self._messages[message_id] = _PendingMessage(
            id=message_id,
            raw=raw,
            visible_at=self._clock() + max(0, delay_seconds),
        )
        self.sent.append(SentMessage(body=json.loads(raw), delay_seconds=delay_seconds))

    async def receive(self, max_messages: int = 10) -> list[QueueMessage]:
        now = self._clock()
        visible = sorted(
            (m for m in self._messages.values() if m.visible_at <= now),
            key=lambda m: m.visible_at,
        )[:max_messages]

        received = []
        for message in visible:
            message.receive_count += 1
            message.visible_at = now + self.visibility_timeout
            received.append(
                QueueMessage(id=message.id, body=json.loads(message.raw), receive_count=message.receive_count)
            )
        return received

    async def ack(self, message: QueueMessage) -> None:
        self._messages.pop(message.id, None)

    @property
    def size(self) -> int:
        return len(self._messages)


class SqliteQueue(MessageQueue):
    """Persistent queue stored in SQLite, one logical queue per name."""

    def __init__(self, db_path: Path, name: str, visibility_timeout: float = 300.0):
        self.db_path = Path(db_path)
        self.name = name
        self.visibility_timeout = visibility_timeout
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @contextmanager
    def conn(self) -> Iterator[sqlite3.Connection]:
        """Get database connection with row factory."""
        connection = sqlite3.connect(self.db_path)
        connection.row_factory = sqlite3.Row
        try:
            yield connection
            connection.commit()
        finally:
            connection.close()

    def _init_schema(self):
        with self.conn() as connection:
            connection.executescript("""
                CREATE TABLE IF NOT EXISTS queue_messages (
                    id TEXT PRIMARY KEY,
                    queue TEXT NOT NULL,
                    body TEXT NOT NULL,
                    visible_at REAL NOT NULL,
                    receive_count INTEGER NOT NULL DEFAULT 0,
                    created_at REAL NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_queue_visible ON queue_messages(queue, visible_at);
            """)

    async def send(self, body: Any, delay_seconds: int = 0) -> None:
        now = time.time()
        with self.conn() as connection:
            connection.execute(
                """
                INSERT INTO queue_messages (id, queue, body, visible_at, receive_count, created_at)
                VALUES (?, ?, ?, ?, 0, ?)
                """,
                (uuid.uuid4().hex, self.name, json.dumps(body), now + max(0, delay_seconds), now),
            )

    async def receive(self, max_messages: int = 10) -> list[QueueMessage]:
        now = time.time()
        received = []
        with self.conn() as connection:
            rows = connection.execute(
                """
                SELECT id, body, receive_count FROM queue_messages
                WHERE queue = ? AND visible_at <= ?
                ORDER BY visible_at
                LIMIT ?
                """,
                (self.name, now, max_messages),
            ).fetchall()

            for row in rows:
                connection.execute(
                    """
                    UPDATE queue_messages SET visible_at = ?, receive_count = receive_count + 1
                    WHERE id = ?
                    """,
                    (now + self.visibility_timeout, row["id"]),
                )
                try:
                    body = json.loads(row["body"])
                except json.JSONDecodeError:
                    body = row["body"]
                received.append(
                    QueueMessage(id=row["id"], body=body, receive_count=row["receive_count"] + 1)
                )
        return received

    async def ack(self, message: QueueMessage) -> None:
        with self.conn() as connection:
            connection.execute("DELETE FROM queue_messages WHERE id = ?", (message.id,))
