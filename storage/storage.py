"""Key-value storage backends.

Values are opaque strings (JSON in practice). Keys are enumerable by
prefix so that cache sweeps can find every entry they own.
"""

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when the underlying storage cannot complete an operation."""


class StorageQuotaExceededError(StorageError):
    """Raised when a new key is written into a full storage."""


class KeyValueStorage:
    """Interface for string key-value storage enumerable by key prefix.

    Subclasses implement the five primitive operations; writes of a new
    key into a storage holding ``max_items`` items must raise
    StorageQuotaExceededError, while overwriting an existing key never does.
    """

    max_items: Optional[int] = None

    def keys(self, prefix: str = "") -> List[str]:
        raise NotImplementedError

    def get_item(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set_item(self, key: str, value: str) -> None:
        raise NotImplementedError

    def remove_item(self, key: str) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError

    def __len__(self) -> int:
        return len(self.keys())

    def __contains__(self, key: str) -> bool:
        return self.get_item(key) is not None


class MemoryStorage(KeyValueStorage):
    """Dictionary-backed storage.

    Example:
        >>> storage = MemoryStorage(max_items=2)
        >>> storage.set_item("search_cache_a", "{}")
        >>> storage.keys("search_cache_")
        ['search_cache_a']
    """

    def __init__(self, max_items: Optional[int] = None):
        self.max_items = max_items
        self._data: Dict[str, str] = {}
        self._lock = threading.RLock()

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return [key for key in self._data if key.startswith(prefix)]

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            if (
                self.max_items is not None
                and key not in self._data
                and len(self._data) >= self.max_items
            ):
                raise StorageQuotaExceededError(
                    f"Storage is full ({self.max_items} items), cannot add '{key}'"
                )
            self._data[key] = value

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class SqliteStorage(KeyValueStorage):
    """SQLite-backed storage in a single ``kv_store`` table.

    Every operation opens a short-lived connection, so one instance can be
    shared freely between the request path and the maintenance sweeps.

    Example:
        >>> storage = SqliteStorage("./.cache/search_cache.db")
        >>> storage.set_item("conv_cache_conv_1_x", '{"cachedAt": 0}')
        >>> storage.get_item("conv_cache_conv_1_x")
        '{"cachedAt": 0}'
    """

    def __init__(self, db_path: str, max_items: Optional[int] = None):
        """Initialize the storage and create its schema.

        Args:
            db_path: Path to the SQLite database file (parent directories
                are created)
            max_items: Optional maximum number of stored keys

        Raises:
            StorageError: If the database cannot be initialized
        """
        self.db_path = Path(db_path)
        self.max_items = max_items
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = None
        try:
            conn = sqlite3.connect(str(self.db_path))
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            if conn:
                conn.rollback()
            logger.error("Storage error on %s: %s", self.db_path, e)
            raise StorageError(str(e)) from e
        finally:
            if conn:
                conn.close()

    def _init_db(self) -> None:
        with self._connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                )
            """)
        logger.info("Key-value storage initialized at %s", self.db_path)

    def keys(self, prefix: str = "") -> List[str]:
        with self._connection() as conn:
            # substr() rather than LIKE: "_" is a LIKE wildcard and every
            # cache prefix contains it
            rows = conn.execute(
                "SELECT key FROM kv_store WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            ).fetchall()
        return [row[0] for row in rows]

    def get_item(self, key: str) -> Optional[str]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT value FROM kv_store WHERE key = ?", (key,)
            ).fetchone()
        return row[0] if row else None

    def set_item(self, key: str, value: str) -> None:
        with self._connection() as conn:
            if self.max_items is not None:
                exists = conn.execute(
                    "SELECT 1 FROM kv_store WHERE key = ?", (key,)
                ).fetchone()
                (count,) = conn.execute("SELECT COUNT(*) FROM kv_store").fetchone()
                if not exists and count >= self.max_items:
                    raise StorageQuotaExceededError(
                        f"Storage is full ({self.max_items} items), cannot add '{key}'"
                    )
            conn.execute(
                "INSERT OR REPLACE INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, int(time.time())),
            )

    def remove_item(self, key: str) -> None:
        with self._connection() as conn:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))

    def clear(self) -> None:
        with self._connection() as conn:
            conn.execute("DELETE FROM kv_store")
        logger.info("Cleared all stored items in %s", self.db_path)

    def __len__(self) -> int:
        with self._connection() as conn:
            (count,) = conn.execute("SELECT COUNT(*) FROM kv_store").fetchone()
        return count
