"""
Key-value storage with pluggable backends.

Provides:
- MemoryKeyValueStore: In-process store for tests and single-process runs
- SqliteKeyValueStore: Persistent store backed by a SQLite table

Values are JSON documents. Every key carries a version counter so callers can
make conditional writes (compare-and-swap) with ``put(..., if_version=...)``.
A version of 0 means "the key must not exist yet".
"""

import json
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from ..exceptions import VersionConflictError


class KeyValueStore(ABC):
    """Abstract base class for key-value backends."""

    @abstractmethod
    async def get_with_version(self, key: str) -> tuple[Any | None, int]:
        """Return the decoded value and its version (0 when missing)."""
        pass

    @abstractmethod
    async def put(self, key: str, value: Any, if_version: int | None = None) -> int:
        """
        Store a JSON-serializable value and return the new version.

        Raises VersionConflictError when ``if_version`` is given and does not
        match the stored version.
        """
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete a key. Missing keys are ignored."""
        pass

    @abstractmethod
    async def list_keys(self, prefix: str) -> list[str]:
        """List keys starting with prefix, sorted."""
        pass

    async def get(self, key: str) -> Any | None:
        value, _ = await self.get_with_version(key)
        return value


class MemoryKeyValueStore(KeyValueStore):
    """In-memory store. Values are kept serialized so callers never share objects."""

    def __init__(self):
        self._data: dict[str, tuple[str, int]] = {}

    async def get_with_version(self, key: str) -> tuple[Any | None, int]:
        entry = self._data.get(key)
        if entry is None:
            return None, 0
        raw, version = entry
        return json.loads(raw), version

    async def put(self, key: str, value: Any, if_version: int | None = None) -> int:
        current = self._data.get(key)
        current_version = current[1] if current else 0
        if if_version is not None and if_version != current_version:
            raise VersionConflictError(
                f"Version conflict on {key}: expected {if_version}, found {current_version}"
            )
        version = current_version + 1
        self._data[key] = (json.dumps(value), version)
        return version

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def list_keys(self, prefix: str) -> list[str]:
        return sorted(key for key in self._data if key.startswith(prefix))

    @property
    def size(self) -> int:
        return len(self._data)


class SqliteKeyValueStore(KeyValueStore):
    """Persistent store in a single SQLite table."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
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
                CREATE TABLE IF NOT EXISTS kv_entries (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1,
                    updated_at TIMESTAMP
                );
            """)

    async def get_with_version(self, key: str) -> tuple[Any | None, int]:
        with self.conn() as connection:
            row = connection.execute(
                "SELECT value, version FROM kv_entries WHERE key = ?", (key,)
            ).fetchone()
        if row is None:
            return None, 0
        try:
            return json.loads(row["value"]), row["version"]
        except json.JSONDecodeError:
            # Corrupted row; treat as absent but keep its version for CAS
            return None, row["version"]

    async def put(self, key: str, value: Any, if_version: int | None = None) -> int:
        raw = json.dumps(value)
        now = datetime.now().isoformat()

        with self.conn() as connection:
            if if_version is None:
                connection.execute(
                    """
                    INSERT INTO kv_entries (key, value, version, updated_at)
                    VALUES (?, ?, 1, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        version = kv_entries.version + 1,
                        updated_at = excluded.updated_at
                    """,
                    (key, raw, now),
                )
            elif if_version == 0:
                try:
                    connection.execute(
                        "INSERT INTO kv_entries (key, value, version, updated_at) VALUES (?, ?, 1, ?)",
                        (key, raw, now),
                    )
                except sqlite3.IntegrityError:
                    raise VersionConflictError(f"Version conflict on {key}: key already exists")
            else:
                cursor = connection.execute(
                    """
                    UPDATE kv_entries SET value = ?, version = version + 1, updated_at = ?
                    WHERE key = ? AND version = ?
                    """,
                    (raw, now, key, if_version),
                )
                if cursor.rowcount == 0:
                    raise VersionConflictError(
                        f"Version conflict on {key}: expected {if_version}"
                    )

            row = connection.execute(
                "SELECT version FROM kv_entries WHERE key = ?", (key,)
            ).fetchone()
        return row["version"]

    async def delete(self, key: str) -> None:
        with self.conn() as connection:
            connection.execute("DELETE FROM kv_entries WHERE key = ?", (key,))

    async def list_keys(self, prefix: str) -> list[str]:
        # LIKE is case-insensitive in SQLite, so compare the prefix exactly
        with self.conn() as connection:
            rows = connection.execute(
                "SELECT key FROM kv_entries WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            ).fetchall()
        return [row["key"] for row in rows]
