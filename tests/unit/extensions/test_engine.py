from pathlib import Path
from typing import Iterable, List, Optional, Tuple

import pytest

from extensionos.core.extensions.engine import MigrationEngine, format_version_message
from extensionos.core.extensions.exceptions import ScriptExecutionError, TargetVersionNotFoundError
from extensionos.core.extensions.ledger import NOT_INSTALLED, MigrationLedger
from extensionos.core.extensions.models import Extension, ExtensionKind, HistoryType, MigrationStatus
from extensionos.core.extensions.runner import MigrationRunner


class RecordingRunner(MigrationRunner):
    """Records script calls instead of running them"""

    def __init__(self, fail_on: Optional[Iterable[Tuple[str, str]]] = None):
        self.calls: List[Tuple[str, str]] = []
        self.fail_on = set(fail_on or ())

    def _record(self, direction: str, path: Path) -> None:
        self.calls.append((direction, path.name))
        if (direction, path.name) in self.fail_on:
            raise RuntimeError(f"{path.name} exploded")

    def up(self, path: Path) -> None:
        self._record("up", path)

    def down(self, path: Path) -> None:
        self._record("down", path)


def _plugin(tmp_path: Path, version_yaml: str, scripts: Iterable[str] = ()) -> Extension:
    directory = tmp_path / "plugins" / "acme" / "blog"
    updates = directory / "updates"
    updates.mkdir(parents=True)
    (updates / "version.yaml").write_text(version_yaml, encoding="utf-8")
    for script in scripts:
        (updates / script).write_text("def up(conn):\n    pass\n", encoding="utf-8")
    return Extension(identifier="Acme.Blog", kind=ExtensionKind.PLUGIN, path=directory)


def _engine(tmp_path: Path, runner: Optional[RecordingRunner] = None) -> MigrationEngine:
    ledger = MigrationLedger(tmp_path / "ledger.sqlite")
    return MigrationEngine(ledger, runner or RecordingRunner())


BLOG_VERSIONS = (
    "1.0.0:\n"
    "  - First version\n"
    "  - create_posts.py\n"
    "1.1.0: Second version\n"
)


def test_format_version_message_pads_and_truncates() -> None:
    assert format_version_message("1.0.1", ["First"]) == "1.0.1:    First"
    assert format_version_message("1.0.1", []) == "1.0.1:    "

    long = format_version_message("1.0.0", ["a" * 130])
    assert long.endswith("a" * 120 + "...")


def test_apply_up_to_applies_every_version_in_order(tmp_path: Path) -> None:
    extension = _plugin(tmp_path, BLOG_VERSIONS, scripts=["create_posts.py"])
    runner = RecordingRunner()
    engine = _engine(tmp_path, runner)

    result = engine.apply_up_to(extension)

    assert result.status == MigrationStatus.MIGRATED
    assert result.applied == ["1.0.0", "1.1.0"]
    assert result.from_version == NOT_INSTALLED
    assert result.to_version == "1.1.0"
    assert runner.calls == [("up", "create_posts.py")]
    assert engine.current_version(extension) == "1.1.0"
    assert engine.current_version_note(extension) == "Second version"


def test_reapplying_is_idempotent(tmp_path: Path) -> None:
    extension = _plugin(tmp_path, BLOG_VERSIONS, scripts=["create_posts.py"])
    runner = RecordingRunner()
    engine = _engine(tmp_path, runner)

    engine.apply_up_to(extension)
    history = engine.ledger.count_history(extension.identifier)

    result = engine.apply_up_to(extension)

    assert result.status == MigrationStatus.UP_TO_DATE
    assert result.applied == []
    assert runner.calls == [("up", "create_posts.py")]
    assert engine.ledger.count_history(extension.identifier) == history


def test_apply_up_to_target_version(tmp_path: Path) -> None:
    extension = _plugin(tmp_path, BLOG_VERSIONS, scripts=["create_posts.py"])
    engine = _engine(tmp_path)

    result = engine.apply_up_to(extension, "1.0.0")
    assert result.applied == ["1.0.0"]
    assert engine.current_version(extension) == "1.0.0"
    assert [e.version for e in engine.list_new_versions(extension)] == ["1.1.0"]

    with pytest.raises(TargetVersionNotFoundError):
        engine.apply_up_to(extension, "9.0.0")


def test_empty_manifest_is_reported(tmp_path: Path) -> None:
    extension = Extension(identifier="Acme.Empty", kind=ExtensionKind.MODULE, path=tmp_path)
    engine = _engine(tmp_path)

    assert engine.apply_up_to(extension).status == MigrationStatus.NO_MANIFEST
    assert engine.revert_to(extension) is False


def test_missing_script_is_skipped(tmp_path: Path) -> None:
    extension = _plugin(tmp_path, BLOG_VERSIONS)
    runner = RecordingRunner()
    engine = _engine(tmp_path, runner)

    engine.apply_up_to(extension)

    assert runner.calls == []
    assert engine.current_version(extension) == "1.1.0"
    assert not engine.ledger.has_history(extension.identifier, "1.0.0", "create_posts.py")


def test_partial_failure_keeps_completed_versions(tmp_path: Path) -> None:
    extension = _plugin(
        tmp_path,
        "1.0.0: First version\n1.1.0:\n  - Second version\n  - broken.py\n",
        scripts=["broken.py"],
    )
    engine = _engine(tmp_path, RecordingRunner(fail_on=[("up", "broken.py")]))

    with pytest.raises(ScriptExecutionError) as exc_info:
        engine.apply_up_to(extension)

    assert isinstance(exc_info.value.__cause__, RuntimeError)
    assert exc_info.value.version == "1.1.0"
    assert engine.current_version(extension) == "1.0.0"
    assert not engine.has_version(extension, "1.1.0")


def test_round_trip_returns_to_not_installed(tmp_path: Path) -> None:
    extension = _plugin(tmp_path, BLOG_VERSIONS, scripts=["create_posts.py"])
    runner = RecordingRunner()
    engine = _engine(tmp_path, runner)

    engine.apply_up_to(extension)
    assert engine.revert_to(extension) is True

    assert engine.current_version(extension) == NOT_INSTALLED
    assert engine.ledger.get_history(extension.identifier) == []
    assert runner.calls == [("up", "create_posts.py"), ("down", "create_posts.py")]


def test_revert_keeps_stop_version_when_not_inclusive(tmp_path: Path) -> None:
    extension = _plugin(tmp_path, BLOG_VERSIONS, scripts=["create_posts.py"])
    engine = _engine(tmp_path)
    engine.apply_up_to(extension)
    assert engine.ledger.count_history(extension.identifier) == 3

    engine.revert_to(extension, "1.0.0", stop_at_or_before=False)

    assert engine.current_version(extension) == "1.0.0"
    assert [h.version for h in engine.ledger.get_history(extension.identifier)] == ["1.0.0", "1.0.0"]


def test_revert_removes_stop_version_when_inclusive(tmp_path: Path) -> None:
    extension = _plugin(tmp_path, BLOG_VERSIONS, scripts=["create_posts.py"])
    engine = _engine(tmp_path)
    engine.apply_up_to(extension)

    engine.revert_to(extension, "1.0.0", stop_at_or_before=True)

    assert engine.current_version(extension) == NOT_INSTALLED
    assert engine.ledger.count_history(extension.identifier) == 0


def test_failed_revert_leaves_last_remaining_version(tmp_path: Path) -> None:
    extension = _plugin(
        tmp_path,
        "1.0.0:\n  - First\n  - a.py\n1.1.0:\n  - Second\n  - b.py\n",
        scripts=["a.py", "b.py"],
    )
    engine = _engine(tmp_path, RecordingRunner(fail_on=[("down", "a.py")]))
    engine.apply_up_to(extension)

    with pytest.raises(ScriptExecutionError):
        engine.revert_to(extension)

    assert engine.current_version(extension) == "1.0.0"
    assert engine.ledger.get_last_history(extension.identifier).detail == "a.py"


def test_replace_extension_inherits_history_without_running_scripts(tmp_path: Path) -> None:
    extension = _plugin(
        tmp_path,
        "1.0.0:\n  - First\n  - create_posts.py\n1.1.0: Second\n1.2.0: Third\n",
        scripts=["create_posts.py"],
    )
    runner = RecordingRunner()
    engine = _engine(tmp_path, runner)
    engine.ledger.set_version("Old.Blog", "1.1.0")
    engine.ledger.append_history("Old.Blog", HistoryType.COMMENT, "1.1.0", "Old comment")

    assert not engine.replace_extension(extension, "Old.Blog", "<1.0")
    assert engine.replace_extension(extension, "Old.Blog", ">=1.0")

    assert runner.calls == []
    assert engine.current_version(extension) == "1.1.0"
    assert engine.ledger.has_history(extension.identifier, "1.0.0", "create_posts.py")
    assert engine.ledger.get_history("Old.Blog") == []
    assert engine.ledger.get_version("Old.Blog") == NOT_INSTALLED


def test_purge_removes_rows_of_missing_extension(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.ledger.set_version("Gone.Plugin", "1.0.0")

    assert engine.purge("Gone.Plugin")
    assert engine.ledger.get_version("Gone.Plugin") == NOT_INSTALLED
