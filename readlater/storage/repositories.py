"""
Typed repositories over the key-value store.

Key layout:
- item:{id}     saved item with per-channel state
- reader:{id}   cached reader document
- cover:{id}    generated or imported cover image
"""

import logging
from typing import Callable

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random

from ..exceptions import VersionConflictError
from ..models import CoverImage, Item, ReaderDocument
from .kv import KeyValueStore

logger = logging.getLogger(__name__)

ITEM_PREFIX = "item:"
READER_PREFIX = "reader:"
COVER_PREFIX = "cover:"

# Mutators return False to abandon the write (e.g. the job token went stale)
ItemMutator = Callable[[Item], bool | None]


class ItemRepository:
    """Loads and saves items, with conditional read-modify-write updates."""

    def __init__(self, store: KeyValueStore, max_update_attempts: int = 5):
        self.store = store
        self.max_update_attempts = max_update_attempts

    @staticmethod
    def key(item_id: str) -> str:
        return f"{ITEM_PREFIX}{item_id}"

    async def get(self, item_id: str) -> Item | None:
        return Item.from_dict(await self.store.get(self.key(item_id)))

    async def save(self, item: Item) -> None:
        """Unconditional write (last writer wins)."""
        await self.store.put(self.key(item.id), item.to_dict())

    async def delete(self, item_id: str) -> None:
        await self.store.delete(self.key(item_id))

    async def update(self, item_id: str, mutate: ItemMutator) -> Item | None:
        """
        Apply ``mutate`` to the latest stored item and write it back atomically.

        The item is re-read and ``mutate`` re-applied whenever a concurrent
        writer wins the race. Returns the written item, or None when the item
        is missing or the mutator abandoned the write.
        """
        key = self.key(item_id)
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_update_attempts),
            wait=wait_random(0, 0.05),
            retry=retry_if_exception_type(VersionConflictError),
            reraise=True,
        ):
            with attempt:
                data, version = await self.store.get_with_version(key)
                item = Item.from_dict(data)
                if item is None:
                    return None
                if mutate(item) is False:
                    return None
                await self.store.put(key, item.to_dict(), if_version=version)
                if attempt.retry_state.attempt_number > 1:
                    logger.debug(
                        f"Item {item_id} written after {attempt.retry_state.attempt_number} attempts"
                    )
                return item
        return None


class ReaderRepository:
    """Reader documents cached per item."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    @staticmethod
    def key(item_id: str) -> str:
        return f"{READER_PREFIX}{item_id}"

    async def get(self, item_id: str) -> ReaderDocument | None:
        return ReaderDocument.from_dict(await self.store.get(self.key(item_id)))

    async def save(self, item_id: str, reader: ReaderDocument) -> None:
        await self.store.put(self.key(item_id), reader.to_dict())

    async def delete(self, item_id: str) -> None:
        await self.store.delete(self.key(item_id))


class CoverRepository:
    """Cover images stored as base64 blobs."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    @staticmethod
    def key(item_id: str) -> str:
        return f"{COVER_PREFIX}{item_id}"

    async def get(self, item_id: str) -> CoverImage | None:
        return CoverImage.from_dict(await self.store.get(self.key(item_id)))

    async def save(self, item_id: str, cover: CoverImage) -> None:
        await self.store.put(self.key(item_id), cover.to_dict())

    async def delete(self, item_id: str) -> None:
        await self.store.delete(self.key(item_id))
