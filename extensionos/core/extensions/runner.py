"""Migration script runners"""

import hashlib
import importlib.util
import logging
import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class MigrationRunner(ABC):
    """Executes the up or down direction of one migration script"""

    @abstractmethod
    def up(self, path: Path) -> None:
        """Apply the script at path"""
        pass

    @abstractmethod
    def down(self, path: Path) -> None:
        """Reverse the script at path"""
        pass


class PythonScriptRunner(MigrationRunner):
    """
    Runs Python migration units against the application database

    A unit defines module level ``up(conn)`` / ``down(conn)`` functions,
    or a ``Migration`` class with those methods. Each call runs on its own
    connection, committed on success and rolled back on error.
    """

    def __init__(self, db_path: Optional[Path] = None):
        """
        Args:
            db_path: Application database (defaults to the configured one)
        """
        if db_path is None:
            from extensionos.core.config import get_config
            db_path = get_config().app_db
        self.db_path = Path(db_path)

    def _get_connection(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    def _load(self, path: Path, direction: str) -> Callable[[sqlite3.Connection], None]:
        if path.suffix.lower() != ".py":
            raise ValueError(f"Unsupported migration script type: {path.name}")

        digest = hashlib.md5(str(path.resolve()).encode("utf-8")).hexdigest()[:12]
        spec = importlib.util.spec_from_file_location(f"extensionos_migration_{digest}", path)
        if not spec or not spec.loader:
            raise ImportError(f"Failed to load migration script: {path}")

        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)

        migration_class = getattr(module, "Migration", None)
        if migration_class is not None:
            handler = getattr(migration_class(), direction, None)
        else:
            handler = getattr(module, direction, None)

        if handler is None:
            raise AttributeError(f"Migration script {path.name} does not define {direction}()")
        return handler

    def _run(self, path: Path, direction: str) -> None:
        handler = self._load(path, direction)
        logger.debug(f"Running {direction}() of {path}")

        conn = self._get_connection()
        try:
            handler(conn)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def up(self, path: Path) -> None:
        self._run(path, "up")

    def down(self, path: Path) -> None:
        self._run(path, "down")
