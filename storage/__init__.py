"""Persisted key-value storage for search caches and conversations.

Provides a small storage interface enumerable by key prefix, with an
in-memory implementation for tests and short-lived processes and a
SQLite-backed implementation that survives restarts.
"""

from storage.storage import (
    KeyValueStorage,
    MemoryStorage,
    SqliteStorage,
    StorageError,
    StorageQuotaExceededError,
)

__all__ = [
    "KeyValueStorage",
    "MemoryStorage",
    "SqliteStorage",
    "StorageError",
    "StorageQuotaExceededError",
]
