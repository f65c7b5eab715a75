"""Store module - SQLite database management"""

import logging
import sqlite3
from pathlib import Path
from typing import Optional, Set

from .migrator import MigrationError, Migrator, auto_migrate, get_migration_status
from .parameters import ParameterStore

logger = logging.getLogger(__name__)

__all__ = [
    "get_db",
    "get_db_path",
    "init_db",
    "ensure_migrations",
    "forget_migrations",
    "get_migration_status",
    "MigrationError",
    "Migrator",
    "ParameterStore",
]

# Databases already migrated in this process
_migrated: Set[str] = set()


def get_db_path() -> Path:
    """Get the ledger database path from configuration"""
    from extensionos.core.config import get_config
    return get_config().ledger_db


def ensure_migrations(db_path: Path, force: bool = False) -> int:
    """
    Apply pending schema migrations once per process

    Args:
        db_path: Database file path
        force: Run the migrator even if it already ran for this path

    Returns:
        Number of migrations applied
    """
    key = str(Path(db_path).resolve())
    if key in _migrated and not force:
        return 0
    applied = auto_migrate(Path(db_path))
    _migrated.add(key)
    return applied


def forget_migrations(db_path: Path) -> None:
    """Make the next ensure_migrations() call run the migrator again"""
    _migrated.discard(str(Path(db_path).resolve()))


def get_db(db_path: Optional[Path] = None) -> sqlite3.Connection:
    """
    Get database connection

    Pending migrations are applied before the connection is returned.
    """
    db_path = Path(db_path) if db_path is not None else get_db_path()
    ensure_migrations(db_path)

    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA busy_timeout=5000")
    return conn


def init_db(db_path: Optional[Path] = None) -> Path:
    """
    Initialize the database and apply every migration

    Returns:
        Path to the database file
    """
    db_path = Path(db_path) if db_path is not None else get_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    applied = ensure_migrations(db_path, force=True)
    logger.info(f"Database ready at {db_path} ({applied} migrations applied)")
    return db_path
