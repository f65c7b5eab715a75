import sqlite3
from pathlib import Path

import pytest

from extensionos.core.extensions.exceptions import LedgerError
from extensionos.core.extensions.ledger import NOT_INSTALLED, MigrationLedger
from extensionos.core.extensions.models import HistoryType


def _ledger(tmp_path: Path) -> MigrationLedger:
    return MigrationLedger(tmp_path / "ledger.sqlite")


def test_unknown_code_reports_not_installed(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)

    assert ledger.get_version("Acme.Blog") == NOT_INSTALLED
    assert not ledger.is_installed("Acme.Blog")
    assert ledger.get_record("Acme.Blog") is None


def test_set_version_inserts_updates_and_deletes(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)

    ledger.set_version("Acme.Blog", "1.0.0")
    assert ledger.get_version("Acme.Blog") == "1.0.0"

    ledger.set_version("Acme.Blog", "1.1.0")
    assert ledger.get_version("Acme.Blog") == "1.1.0"
    assert len(ledger.list_records()) == 1

    ledger.set_version("Acme.Blog", None)
    assert ledger.get_version("Acme.Blog") == NOT_INSTALLED
    assert ledger.list_records() == []


def test_history_keeps_insertion_order(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)

    first = ledger.append_history("Acme.Blog", HistoryType.COMMENT, "1.0.0", "First")
    ledger.append_history("Acme.Blog", HistoryType.SCRIPT, "1.0.0", "create_posts.py")
    ledger.append_history("Acme.Blog", HistoryType.COMMENT, "1.1.0", "Second")

    history = ledger.get_history("Acme.Blog")
    assert [(h.version, h.detail) for h in history] == [
        ("1.0.0", "First"),
        ("1.0.0", "create_posts.py"),
        ("1.1.0", "Second"),
    ]
    assert history[0].id == first
    assert ledger.get_last_history("Acme.Blog").detail == "Second"
    assert ledger.count_history("Acme.Blog") == 3


def test_has_history_distinguishes_comments_and_scripts(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)
    ledger.append_history("Acme.Blog", HistoryType.SCRIPT, "1.0.0", "create_posts.py")

    assert ledger.has_history("Acme.Blog", "1.0.0", "create_posts.py")
    assert not ledger.has_history("Acme.Blog", "1.0.0")
    assert not ledger.has_history("Acme.Blog", "1.1.0", "create_posts.py")


def test_history_cache_is_refreshed_after_writes(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)
    entry_id = ledger.append_history("Acme.Blog", HistoryType.COMMENT, "1.0.0", "First")
    assert ledger.count_history("Acme.Blog") == 1

    ledger.delete_history_entry("Acme.Blog", entry_id)
    assert ledger.count_history("Acme.Blog") == 0


def test_cached_lookups_match_stored_code_exactly(tmp_path: Path) -> None:
    _ledger(tmp_path).set_version("Acme.Blog", "1.0.0")
    ledger = _ledger(tmp_path)

    assert ledger.get_version("acme.blog") == NOT_INSTALLED
    assert ledger.get_version("Acme.Blog") == "1.0.0"

    ledger.append_history("Acme.Blog", HistoryType.COMMENT, "1.0.0", "First")
    assert ledger.get_history("acme.blog") == []
    assert [h.detail for h in ledger.get_history("Acme.Blog")] == ["First"]


def test_flags_require_a_record(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)

    assert ledger.set_disabled("Acme.Blog", True) is False

    ledger.set_version("Acme.Blog", "1.0.0")
    assert ledger.set_disabled("Acme.Blog", True) is True
    assert ledger.set_frozen("Acme.Blog", True) is True

    assert ledger.disabled_codes() == ["Acme.Blog"]
    assert ledger.frozen_codes() == ["Acme.Blog"]
    assert ledger.is_frozen("Acme.Blog")


def test_transaction_rolls_back_every_write(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)

    with pytest.raises(RuntimeError):
        with ledger.transaction():
            ledger.append_history("Acme.Blog", HistoryType.COMMENT, "1.0.0", "First")
            ledger.set_version("Acme.Blog", "1.0.0")
            raise RuntimeError("boom")

    assert ledger.get_version("Acme.Blog") == NOT_INSTALLED
    assert ledger.get_history("Acme.Blog") == []


def test_storage_errors_are_wrapped(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)
    assert ledger.get_version("Acme.Blog") == NOT_INSTALLED

    conn = sqlite3.connect(str(ledger.db_path))
    conn.execute("DROP TABLE extension_history")
    conn.commit()
    conn.close()

    with pytest.raises(LedgerError):
        ledger.append_history("Acme.Blog", HistoryType.COMMENT, "1.0.0", "First")


def test_rename_moves_record(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)
    ledger.set_version("Old.Blog", "1.2.0")

    assert ledger.rename("Old.Blog", "Acme.Blog")
    assert ledger.get_version("Acme.Blog") == "1.2.0"
    assert ledger.get_version("Old.Blog") == NOT_INSTALLED
    assert not ledger.rename("Missing.Code", "Acme.Blog")


def test_purge_and_drop_storage(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path)
    ledger.set_version("Acme.Blog", "1.0.0")
    ledger.append_history("Acme.Blog", HistoryType.COMMENT, "1.0.0", "First")

    assert ledger.purge("Acme.Blog")
    assert not ledger.purge("Acme.Blog")

    ledger.set_version("Acme.Blog", "1.0.0")
    ledger.drop_storage()
    assert ledger.get_version("Acme.Blog") == NOT_INSTALLED
