"""Database Migration System

Detects and applies schema files that have not been applied yet.
Migration files are named schema_vXX.sql (XX is a two digit version).

Each file runs in its own transaction and is recorded in the
schema_version table once applied.
"""

import logging
import re
import sqlite3
from pathlib import Path
from typing import List, Tuple

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / 'migrations'


class MigrationError(Exception):
    """Schema migration failed"""
    pass


class Migrator:
    """Applies numbered schema files to a SQLite database"""

    def __init__(self, db_path: Path, migrations_dir: Path = MIGRATIONS_DIR):
        """
        Initialize migrator

        Args:
            db_path: Database file path
            migrations_dir: Directory holding schema_vXX.sql files
        """
        self.db_path = Path(db_path)
        self.migrations_dir = migrations_dir

    def _ensure_version_table(self, conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        conn.commit()

    def get_current_version(self, conn: sqlite3.Connection) -> int:
        """
        Get current schema version

        Returns:
            Highest applied version, 0 when nothing was applied
        """
        try:
            row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        except sqlite3.OperationalError:
            return 0
        return int(row[0]) if row and row[0] is not None else 0

    def get_available_migrations(self) -> List[Tuple[int, Path]]:
        """
        List migration files

        Returns:
            (version, path) tuples sorted by version
        """
        migrations = []
        pattern = re.compile(r'schema_v(\d+)(?:_[a-z_]+)?\.sql')

        for sql_file in self.migrations_dir.glob('schema_v*.sql'):
            match = pattern.match(sql_file.name)
            if match:
                migrations.append((int(match.group(1)), sql_file))

        migrations.sort(key=lambda x: x[0])
        return migrations

    def get_pending_migrations(self, conn: sqlite3.Connection) -> List[Tuple[int, Path]]:
        current_version = self.get_current_version(conn)
        all_migrations = self.get_available_migrations()
        pending = [(v, p) for v, p in all_migrations if v > current_version]

        logger.debug(
            f"Current version: v{current_version:02d}, "
            f"Available migrations: {len(all_migrations)}, "
            f"Pending: {len(pending)}"
        )
        return pending

    def execute_migration(
        self,
        conn: sqlite3.Connection,
        version: int,
        migration_file: Path
    ) -> None:
        """
        Execute a single migration file

        Raises:
            MigrationError: If the migration fails
        """
        logger.info(f"Executing migration v{version:02d}: {migration_file.name}")

        try:
            migration_sql = migration_file.read_text(encoding='utf-8')
            conn.executescript(migration_sql)
            conn.execute(
                "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
                (version,)
            )
            conn.commit()
            logger.info(f"Migration v{version:02d} completed successfully")

        except Exception as e:
            conn.rollback()
            error_msg = f"Migration v{version:02d} failed: {e}"
            logger.error(error_msg, exc_info=True)
            raise MigrationError(error_msg) from e

    def migrate(self) -> int:
        """
        Apply all pending migrations

        Returns:
            Number of migrations applied

        Raises:
            MigrationError: If a migration fails
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path))

        try:
            self._ensure_version_table(conn)
            pending_migrations = self.get_pending_migrations(conn)

            if not pending_migrations:
                return 0

            for version, migration_file in pending_migrations:
                self.execute_migration(conn, version, migration_file)

            logger.info(f"Successfully applied {len(pending_migrations)} migrations")
            return len(pending_migrations)

        finally:
            conn.close()

    def reset(self, conn: sqlite3.Connection) -> None:
        """Forget applied versions so the next migrate() recreates dropped tables"""
        self._ensure_version_table(conn)
        conn.execute("DELETE FROM schema_version")
        conn.commit()

    def status(self) -> dict:
        """
        Get migration status

        Returns:
            {
                "current_version": int,
                "latest_version": int,
                "pending_count": int,
                "applied_migrations": List[str],
                "pending_migrations": List[str]
            }
        """
        if not self.db_path.exists():
            return {
                "current_version": 0,
                "latest_version": 0,
                "pending_count": 0,
                "applied_migrations": [],
                "pending_migrations": [],
                "error": "Database not found"
            }

        conn = sqlite3.connect(str(self.db_path))

        try:
            self._ensure_version_table(conn)
            current_version = self.get_current_version(conn)
            all_migrations = self.get_available_migrations()
            pending_migrations = self.get_pending_migrations(conn)

            latest_version = all_migrations[-1][0] if all_migrations else 0

            return {
                "current_version": current_version,
                "latest_version": latest_version,
                "pending_count": len(pending_migrations),
                "applied_migrations": [f"v{v:02d}" for v, _ in all_migrations if v <= current_version],
                "pending_migrations": [f"v{v:02d}" for v, _ in pending_migrations]
            }

        finally:
            conn.close()


def auto_migrate(db_path: Path) -> int:
    """Apply pending schema migrations to db_path"""
    return Migrator(db_path).migrate()


def get_migration_status(db_path: Path) -> dict:
    return Migrator(db_path).status()
