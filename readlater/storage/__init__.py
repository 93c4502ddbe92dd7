"""
Storage layer: versioned key-value store, delayed queues and typed repositories.
"""

from .kv import KeyValueStore, MemoryKeyValueStore, SqliteKeyValueStore
from .queue import MessageQueue, MemoryQueue, QueueMessage, SqliteQueue, parse_message_body
from .repositories import (
    COVER_PREFIX,
    ITEM_PREFIX,
    READER_PREFIX,
    CoverRepository,
    ItemRepository,
    ReaderRepository,
)

__all__ = [
    "KeyValueStore",
    "MemoryKeyValueStore",
    "SqliteKeyValueStore",
    "MessageQueue",
    "MemoryQueue",
    "QueueMessage",
    "SqliteQueue",
    "parse_message_body",
    "ItemRepository",
    "ReaderRepository",
    "CoverRepository",
    "ITEM_PREFIX",
    "READER_PREFIX",
    "COVER_PREFIX",
]
