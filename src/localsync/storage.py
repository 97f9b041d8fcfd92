"""
Local key-value storage for the synchronization engine.

This module provides the durable local tier: a DuckDB-backed store that
survives process restarts, and an in-memory store for session-only use.
Both enforce an optional byte quota and raise StorageQuotaError when a
write would exceed it.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import duckdb

from .sync.exceptions import StorageQuotaError
from .sync.interfaces import KeyValueStore

logger = logging.getLogger(__name__)


def _entry_size(key: str, value: str) -> int:
    return len(key.encode("utf-8")) + len(value.encode("utf-8"))


class _QuotaTracker:
    """Tracks per-key sizes so quota checks do not rescan the store."""

    def __init__(self, quota_bytes: Optional[int]):
        self.quota_bytes = quota_bytes
        self._sizes: Dict[str, int] = {}
        self._total = 0

    @property
    def total(self) -> int:
        return self._total

    def check(self, key: str, value: str) -> None:
        if self.quota_bytes is None:
            return
        required = self._total - self._sizes.get(key, 0) + _entry_size(key, value)
        if required > self.quota_bytes:
            raise StorageQuotaError(key, required, self.quota_bytes)

    def record(self, key: str, value: str) -> None:
        size = _entry_size(key, value)
        self._total += size - self._sizes.get(key, 0)
        self._sizes[key] = size

    def forget(self, key: str) -> None:
        self._total -= self._sizes.pop(key, 0)


class MemoryKeyValueStore(KeyValueStore):
    """Session-only key-value store."""

    def __init__(self, quota_bytes: Optional[int] = None):
        self._data: Dict[str, str] = {}
        self._quota = _QuotaTracker(quota_bytes)

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._quota.check(key, value)
        self._data[key] = value
        self._quota.record(key, value)

    def remove(self, key: str) -> None:
        self._data.pop(key, None)
        self._quota.forget(key)

    def keys(self) -> List[str]:
        return list(self._data.keys())

    def usage_bytes(self) -> int:
        return self._quota.total


class DuckDBKeyValueStore(KeyValueStore):
    """
    Durable key-value store backed by a DuckDB database file.

    This class handles the connection lifecycle, schema creation and
    the key-value operations. It can be used as a context manager or
    opened and closed explicitly.
    """

    def __init__(self, db_path: Path, quota_bytes: Optional[int] = None):
        """
        Initialize the store.

        Args:
            db_path: Path to the DuckDB database file (or ":memory:")
            quota_bytes: Optional capacity limit in bytes
        """
        self.db_path = db_path
        self.conn: Optional[duckdb.DuckDBPyConnection] = None
        self._quota = _QuotaTracker(quota_bytes)

    def __enter__(self) -> 'DuckDBKeyValueStore':
        """
        Context manager entry: open database connection and create schema.

        Returns:
            Self for use in with statement
        """
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit: close database connection."""
        try:
            self.close()
        except Exception as e:
            logger.warning(f"Error while closing key-value store: {e}", exc_info=True)

    def open(self) -> None:
        """
        Open the database connection, create the schema and load key sizes.

        Raises:
            Exception: If database connection or schema creation fails
        """
        if self.conn is not None:
            return
        try:
            self.conn = duckdb.connect(str(self.db_path))
            logger.info(f"Opened key-value store at {self.db_path}")
            self._create_schema()
            self._load_sizes()
        except Exception as e:
            logger.error(f"Failed to open key-value store at {self.db_path}: {e}", exc_info=True)
            raise

    def _require_connection(self) -> duckdb.DuckDBPyConnection:
        if self.conn is None:
            raise RuntimeError("Key-value store is not open")
        return self.conn

    def _create_schema(self) -> None:
        """Create the kv_store table if it doesn't exist."""
        conn = self._require_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key VARCHAR NOT NULL PRIMARY KEY,
                value VARCHAR NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        """)
        logger.debug("Key-value schema created or verified")

    def _load_sizes(self) -> None:
        conn = self._require_connection()
        for key, value in conn.execute("SELECT key, value FROM kv_store").fetchall():
            self._quota.record(key, value)

    def get(self, key: str) -> Optional[str]:
        conn = self._require_connection()
        result = conn.execute("SELECT value FROM kv_store WHERE key = ?", [key]).fetchone()
        if result is None:
            return None
        return result[0]

    def set(self, key: str, value: str) -> None:
        """
        Insert or replace the value stored under a key.

        Raises:
            StorageQuotaError: If the write would exceed the quota
            RuntimeError: If the store is not open
        """
        conn = self._require_connection()
        self._quota.check(key, value)
        try:
            conn.execute(
                "INSERT OR REPLACE INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)",
                [key, value, datetime.now()]
            )
            conn.commit()
        except Exception as e:
            logger.error(f"Failed to write key {key}: {e}", exc_info=True)
            raise
        self._quota.record(key, value)

    def remove(self, key: str) -> None:
        conn = self._require_connection()
        conn.execute("DELETE FROM kv_store WHERE key = ?", [key])
        conn.commit()
        self._quota.forget(key)

    def keys(self) -> List[str]:
        conn = self._require_connection()
        return [row[0] for row in conn.execute("SELECT key FROM kv_store ORDER BY key").fetchall()]

    def usage_bytes(self) -> int:
        return self._quota.total

    def close(self) -> None:
        """Close the database connection."""
        if self.conn is not None:
            try:
                self.conn.close()
                logger.debug("Key-value store closed")
            except Exception as e:
                logger.warning(f"Error closing key-value store: {e}", exc_info=True)
            finally:
                self.conn = None


def open_store(storage_path: Optional[str], quota_bytes: Optional[int] = None) -> KeyValueStore:
    """Open the configured local store.

    Args:
        storage_path: DuckDB file path, or None for a session-only store
        quota_bytes: Optional capacity limit in bytes

    Returns:
        An open key-value store
    """
    if storage_path is None:
        return MemoryKeyValueStore(quota_bytes)
    store = DuckDBKeyValueStore(Path(storage_path), quota_bytes)
    store.open()
    return store


def iter_prefixed(store: KeyValueStore, prefix: str) -> Iterable[str]:
    """Yield the keys of a store that start with a prefix."""
    for key in store.keys():
        if key.startswith(prefix):
            yield key
