"""Migration ledger: installed versions and applied-change history per extension"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional

from extensionos.core.extensions.cache import ExtensionCache, MemoryCache
from extensionos.core.extensions.exceptions import LedgerError
from extensionos.core.extensions.models import HistoryEntry, HistoryType, LedgerRecord

logger = logging.getLogger(__name__)

NOT_INSTALLED = "0"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class MigrationLedger:
    """Persistent record of which versions and scripts have been applied"""

    def __init__(
        self,
        db_path: Optional[Path] = None,
        version_cache: Optional[ExtensionCache] = None,
        history_cache: Optional[ExtensionCache] = None
    ):
        """
        Initialize ledger

        Args:
            db_path: Database file path (defaults to the configured ledger database)
            version_cache: Cache for installed versions
            history_cache: Cache for history rows
        """
        if db_path is None:
            from extensionos.store import get_db_path
            db_path = get_db_path()

        self.db_path = Path(db_path)
        self.version_cache = version_cache or MemoryCache()
        self.history_cache = history_cache or MemoryCache()
        self._tx_conn: Optional[sqlite3.Connection] = None

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection with row factory"""
        from extensionos.store import get_db
        return get_db(self.db_path)

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        if self._tx_conn is not None:
            yield self._tx_conn
            return

        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise LedgerError(f"Ledger operation failed: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator["MigrationLedger"]:
        """
        Group ledger writes so they commit or roll back together

        Nested calls join the outer transaction.
        """
        if self._tx_conn is not None:
            yield self
            return

        conn = self._get_connection()
        self._tx_conn = conn
        try:
            yield self
            conn.commit()
        except Exception as e:
            conn.rollback()
            # Cached reads may reflect rolled back writes
            self.invalidate()
            if isinstance(e, sqlite3.Error):
                raise LedgerError(f"Ledger transaction failed: {e}") from e
            raise
        finally:
            self._tx_conn = None
            conn.close()

    def invalidate(self, code: Optional[str] = None) -> None:
        """Drop cached versions and history for one code, or for all codes"""
        if code is None:
            self.version_cache.clear()
            self.history_cache.clear()
        else:
            self.version_cache.invalidate(code)
            self.history_cache.invalidate(code)

    # ------------------------------------------------------------------
    # Version records
    # ------------------------------------------------------------------

    def _row_to_record(self, row: sqlite3.Row) -> LedgerRecord:
        return LedgerRecord(
            code=row["code"],
            version=row["version"],
            is_disabled=bool(row["is_disabled"]),
            is_frozen=bool(row["is_frozen"]),
            created_at=row["created_at"],
        )

    def get_record(self, code: str) -> Optional[LedgerRecord]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM extension_versions WHERE code = ?", (code,)
            ).fetchone()
        return self._row_to_record(row) if row else None

    def list_records(self) -> List[LedgerRecord]:
        with self._connection() as conn:
            rows = conn.execute("SELECT * FROM extension_versions ORDER BY code").fetchall()
        return [self._row_to_record(row) for row in rows]

    def get_version(self, code: str) -> str:
        """Installed version of code, '0' when it has no record"""
        def load() -> str:
            record = self.get_record(code)
            return record.version if record else NOT_INSTALLED

        return self.version_cache.remember(code, None, load)

    def is_installed(self, code: str) -> bool:
        return self.get_version(code) != NOT_INSTALLED

    def set_version(self, code: str, version: Optional[str]) -> None:
        """
        Record the installed version of code

        None deletes the record. An existing record is always rewritten,
        which refreshes created_at even when the version is unchanged.
        """
        with self._connection() as conn:
            exists = conn.execute(
                "SELECT 1 FROM extension_versions WHERE code = ?", (code,)
            ).fetchone() is not None

            if version is None:
                if exists:
                    conn.execute("DELETE FROM extension_versions WHERE code = ?", (code,))
            elif exists:
                conn.execute(
                    "UPDATE extension_versions SET version = ?, created_at = ? WHERE code = ?",
                    (version, _now(), code)
                )
            else:
                conn.execute(
                    "INSERT INTO extension_versions (code, version, created_at) VALUES (?, ?, ?)",
                    (code, version, _now())
                )

        self.version_cache.invalidate(code)
        logger.debug(f"Ledger version of {code} set to {version}")

    def _set_flag(self, code: str, column: str, value: bool) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                f"UPDATE extension_versions SET {column} = ? WHERE code = ?",
                (int(value), code)
            )
            updated = cursor.rowcount > 0
        if not updated:
            logger.debug(f"No ledger record for {code}, {column} not stored")
        return updated

    def set_disabled(self, code: str, disabled: bool) -> bool:
        """Persist the user-disabled state; False when code has no record"""
        return self._set_flag(code, "is_disabled", disabled)

    def set_frozen(self, code: str, frozen: bool) -> bool:
        """Persist the frozen state; False when code has no record"""
        return self._set_flag(code, "is_frozen", frozen)

    def is_frozen(self, code: str) -> bool:
        record = self.get_record(code)
        return bool(record and record.is_frozen)

    def disabled_codes(self) -> List[str]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT code FROM extension_versions WHERE is_disabled = 1 ORDER BY code"
            ).fetchall()
        return [row["code"] for row in rows]

    def frozen_codes(self) -> List[str]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT code FROM extension_versions WHERE is_frozen = 1 ORDER BY code"
            ).fetchall()
        return [row["code"] for row in rows]

    def rename(self, old_code: str, new_code: str) -> bool:
        """Move the version record of old_code to new_code, replacing any existing one"""
        with self._connection() as conn:
            if conn.execute(
                "SELECT 1 FROM extension_versions WHERE code = ?", (old_code,)
            ).fetchone() is None:
                return False
            conn.execute("DELETE FROM extension_versions WHERE code = ?", (new_code,))
            conn.execute(
                "UPDATE extension_versions SET code = ? WHERE code = ?", (new_code, old_code)
            )
        self.invalidate(old_code)
        self.invalidate(new_code)
        return True

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def _row_to_history(self, row: sqlite3.Row) -> HistoryEntry:
        return HistoryEntry(
            id=row["id"],
            code=row["code"],
            type=HistoryType(row["type"]),
            version=row["version"],
            detail=row["detail"],
            created_at=row["created_at"],
        )

    def append_history(
        self,
        code: str,
        type: HistoryType,
        version: str,
        detail: Optional[str] = None
    ) -> int:
        """Append a history row and return its id"""
        with self._connection() as conn:
            cursor = conn.execute(
                "INSERT INTO extension_history (code, type, version, detail, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (code, HistoryType(type).value, version, detail, _now())
            )
            entry_id = cursor.lastrowid
        self.history_cache.invalidate(code)
        return entry_id

    def get_history(self, code: str) -> List[HistoryEntry]:
        """History rows of code in insertion order"""
        def load() -> List[HistoryEntry]:
            with self._connection() as conn:
                rows = conn.execute(
                    "SELECT * FROM extension_history WHERE code = ? ORDER BY id",
                    (code,)
                ).fetchall()
            return [self._row_to_history(row) for row in rows]

        return list(self.history_cache.remember(code, None, load))

    def get_last_history(self, code: str) -> Optional[HistoryEntry]:
        history = self.get_history(code)
        return history[-1] if history else None

    def count_history(self, code: str) -> int:
        return len(self.get_history(code))

    def has_history(self, code: str, version: str, script: Optional[str] = None) -> bool:
        """
        Check whether a version (or one of its scripts) was applied

        Args:
            code: Extension code
            version: Manifest version
            script: Script detail; None checks for a comment row instead

        Returns:
            True if a matching history row exists
        """
        for entry in self.get_history(code):
            if entry.version != version:
                continue
            if script is None and entry.type == HistoryType.COMMENT:
                return True
            if script is not None and entry.type == HistoryType.SCRIPT and entry.detail == script:
                return True
        return False

    def delete_history_entry(self, code: str, entry_id: int) -> None:
        with self._connection() as conn:
            conn.execute(
                "DELETE FROM extension_history WHERE id = ? AND code = ?", (entry_id, code)
            )
        self.history_cache.invalidate(code)

    def delete_history(self, code: str) -> int:
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM extension_history WHERE code = ?", (code,))
            deleted = cursor.rowcount
        self.history_cache.invalidate(code)
        return deleted

    def purge(self, code: str) -> bool:
        """
        Delete every ledger row of code

        Returns:
            True if a version record or history rows existed
        """
        with self._connection() as conn:
            versions = conn.execute(
                "DELETE FROM extension_versions WHERE code = ?", (code,)
            ).rowcount
            history = conn.execute(
                "DELETE FROM extension_history WHERE code = ?", (code,)
            ).rowcount
        self.invalidate(code)

        if versions or history:
            logger.info(f"Purged ledger rows of {code}")
            return True
        return False

    def drop_storage(self) -> None:
        """Drop ledger tables; they are recreated on next access"""
        from extensionos.store import Migrator, forget_migrations

        conn = self._get_connection()
        try:
            conn.execute("DROP TABLE IF EXISTS extension_history")
            conn.execute("DROP TABLE IF EXISTS extension_versions")
            conn.commit()
            Migrator(self.db_path).reset(conn)
        except sqlite3.Error as e:
            raise LedgerError(f"Failed to drop ledger storage: {e}") from e
        finally:
            conn.close()

        forget_migrations(self.db_path)
        self.invalidate()
        logger.info(f"Dropped ledger storage in {self.db_path}")
