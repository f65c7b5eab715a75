"""
Extension Caches

TTL caches owned by the coordinator and passed explicitly to the services
that need them (version manifests, disable flags, catalog responses).
"""

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

_MISSING = object()


def utc_now_ms() -> int:
    """Get current UTC timestamp in milliseconds."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


class ExtensionCache(ABC):
    """Key/value cache interface with per-entry TTL."""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a cached value.

        Args:
            key: Cache key
            default: Returned when the key is missing or expired

        Returns:
            Cached value or default
        """
        pass

    @abstractmethod
    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None):
        """
        Cache a value.

        Args:
            key: Cache key
            value: Value to cache
            ttl_seconds: Time-to-live in seconds, None for no expiry
        """
        pass

    @abstractmethod
    def _delete(self, key: Optional[str]):
        """Delete one key, or every key when key is None."""
        pass

    def has(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def remember(self, key: str, ttl_seconds: Optional[int], factory: Callable[[], Any]) -> Any:
        """Return the cached value for key, computing and storing it on a miss."""
        value = self.get(key, _MISSING)
        if value is _MISSING:
            value = factory()
            self.set(key, value, ttl_seconds)
        return value

    def invalidate(self, key: str):
        """
        Invalidate cache entry.

        Args:
            key: Cache key to invalidate
        """
        self._delete(key)

    def clear(self):
        """Drop every entry."""
        self._delete(None)


class MemoryCache(ExtensionCache):
    """Per-process cache kept in a dictionary."""

    def __init__(self):
        self._entries: Dict[str, Tuple[Any, Optional[int]]] = {}

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is not None:
            value, expires_at = entry
            if expires_at is None or expires_at > utc_now_ms():
                return value
            del self._entries[key]
        return default

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None):
        expires_at = utc_now_ms() + ttl_seconds * 1000 if ttl_seconds is not None else None
        self._entries[key] = (value, expires_at)

    def _delete(self, key: Optional[str]):
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)


class SQLiteCache(ExtensionCache):
    """SQLite-backed cache, shared across processes using the same database."""

    def __init__(self, db_path: Path, table: str = "extension_cache"):
        """
        Initialize SQLite cache.

        Args:
            db_path: Path to SQLite database file
            table: Cache table name
        """
        self.db_path = Path(db_path)
        self.table = table
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self):
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    expires_at INTEGER
                )
            """)
            conn.commit()

    def get(self, key: str, default: Any = None) -> Any:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                f"SELECT value FROM {self.table} "
                "WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)",
                (key, utc_now_ms())
            ).fetchone()

        if row:
            logger.debug(f"Cache hit: {key}")
            return json.loads(row[0])

        logger.debug(f"Cache miss: {key}")
        return default

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None):
        expires_at = utc_now_ms() + ttl_seconds * 1000 if ttl_seconds is not None else None
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO {self.table} (key, value, expires_at) VALUES (?, ?, ?)",
                (key, json.dumps(value), expires_at)
            )
            conn.commit()
        logger.debug(f"Cached: {key} (TTL: {ttl_seconds}s)")

    def _delete(self, key: Optional[str]):
        with sqlite3.connect(self.db_path) as conn:
            if key is None:
                conn.execute(f"DELETE FROM {self.table}")
            else:
                conn.execute(f"DELETE FROM {self.table} WHERE key = ?", (key,))
            conn.commit()

    def cleanup_expired(self) -> int:
        """Remove expired entries and return how many were deleted."""
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                f"DELETE FROM {self.table} WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (utc_now_ms(),)
            )
            conn.commit()
            return cursor.rowcount
