import sqlite3
from pathlib import Path

import pytest

from extensionos.store import ensure_migrations, forget_migrations, get_db, init_db
from extensionos.store.migrator import MIGRATIONS_DIR, MigrationError, Migrator


def _tables(db_path: Path) -> set:
    with sqlite3.connect(db_path) as conn:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    return {row[0] for row in rows}


def test_migrate_creates_schema_once(tmp_path: Path) -> None:
    db_path = tmp_path / "storage" / "extensions.sqlite"
    migrator = Migrator(db_path)

    assert migrator.migrate() == 1
    assert migrator.migrate() == 0
    assert {"extension_versions", "extension_history", "system_parameters", "extension_cache"} <= _tables(db_path)


def test_status_reports_versions(tmp_path: Path) -> None:
    db_path = tmp_path / "extensions.sqlite"
    migrator = Migrator(db_path)

    assert migrator.status()["error"] == "Database not found"

    migrator.migrate()
    status = migrator.status()
    assert status["current_version"] == 1
    assert status["latest_version"] == 1
    assert status["pending_count"] == 0
    assert status["applied_migrations"] == ["v01"]


def test_available_migrations_are_sorted(tmp_path: Path) -> None:
    migrations_dir = tmp_path / "migrations"
    migrations_dir.mkdir()
    for name in ("schema_v10_late.sql", "schema_v02.sql", "notes.sql"):
        (migrations_dir / name).write_text("SELECT 1;", encoding="utf-8")

    available = Migrator(tmp_path / "db.sqlite", migrations_dir).get_available_migrations()

    assert [version for version, _ in available] == [2, 10]


def test_failed_migration_is_not_recorded(tmp_path: Path) -> None:
    migrations_dir = tmp_path / "migrations"
    migrations_dir.mkdir()
    (migrations_dir / "schema_v01.sql").write_text((MIGRATIONS_DIR / "schema_v01.sql").read_text(encoding="utf-8"), encoding="utf-8")
    (migrations_dir / "schema_v02.sql").write_text("CREATE TABLE broken (;", encoding="utf-8")
    migrator = Migrator(tmp_path / "db.sqlite", migrations_dir)

    with pytest.raises(MigrationError):
        migrator.migrate()

    assert migrator.status()["current_version"] == 1
    assert migrator.status()["pending_migrations"] == ["v02"]


def test_reset_lets_dropped_tables_come_back(tmp_path: Path) -> None:
    db_path = tmp_path / "extensions.sqlite"
    init_db(db_path)

    conn = sqlite3.connect(db_path)
    try:
        conn.execute("DROP TABLE extension_history")
        Migrator(db_path).reset(conn)
    finally:
        conn.close()
    forget_migrations(db_path)

    assert ensure_migrations(db_path) == 1
    assert "extension_history" in _tables(db_path)


def test_get_db_returns_row_connections(tmp_path: Path) -> None:
    conn = get_db(tmp_path / "extensions.sqlite")
    try:
        conn.execute("INSERT INTO system_parameters (key, value) VALUES ('a', '1')")
        row = conn.execute("SELECT key, value FROM system_parameters").fetchone()
    finally:
        conn.close()

    assert row["key"] == "a"
    assert row["value"] == "1"
