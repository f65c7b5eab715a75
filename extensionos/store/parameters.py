"""System parameter storage (JSON values keyed by 'group.item')"""

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

CORE_BUILD = "core.build"
CORE_HASH = "core.hash"
CORE_MODIFIED = "core.modified"
UPDATE_COUNT = "update.count"
UPDATE_RETRY = "update.retry"
THEME_HISTORY = "theme.history"
PROJECT_ID = "project.id"
PROJECT_NAME = "project.name"
PROJECT_OWNER = "project.owner"


class ParameterStore:
    """Key/value store backed by the system_parameters table"""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    def _get_connection(self) -> sqlite3.Connection:
        from extensionos.store import get_db
        return get_db(self.db_path)

    def get(self, key: str, default: Any = None) -> Any:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT value FROM system_parameters WHERE key = ?", (key,)
            ).fetchone()
        finally:
            conn.close()

        if row is None or row["value"] is None:
            return default
        return json.loads(row["value"])

    def set(self, key: str, value: Any) -> None:
        conn = self._get_connection()
        try:
            conn.execute(
                "INSERT OR REPLACE INTO system_parameters (key, value) VALUES (?, ?)",
                (key, json.dumps(value))
            )
            conn.commit()
        finally:
            conn.close()
        logger.debug(f"Parameter {key} set")

    def forget(self, key: str) -> None:
        conn = self._get_connection()
        try:
            conn.execute("DELETE FROM system_parameters WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()
