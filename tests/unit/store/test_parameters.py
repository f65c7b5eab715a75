from pathlib import Path

from extensionos.store.parameters import THEME_HISTORY, UPDATE_COUNT, ParameterStore


def test_missing_parameter_returns_default(tmp_path: Path) -> None:
    store = ParameterStore(tmp_path / "extensions.sqlite")

    assert store.get(UPDATE_COUNT) is None
    assert store.get(UPDATE_COUNT, 0) == 0


def test_values_are_stored_as_json(tmp_path: Path) -> None:
    store = ParameterStore(tmp_path / "extensions.sqlite")

    store.set(UPDATE_COUNT, 3)
    store.set(THEME_HISTORY, {"demo": "demo"})
    store.set("core.modified", False)

    assert store.get(UPDATE_COUNT) == 3
    assert store.get(THEME_HISTORY) == {"demo": "demo"}
    assert store.get("core.modified") is False
    assert ParameterStore(tmp_path / "extensions.sqlite").get(UPDATE_COUNT) == 3


def test_set_replaces_and_forget_removes(tmp_path: Path) -> None:
    store = ParameterStore(tmp_path / "extensions.sqlite")

    store.set(UPDATE_COUNT, 1)
    store.set(UPDATE_COUNT, 2)
    assert store.get(UPDATE_COUNT) == 2

    store.forget(UPDATE_COUNT)
    assert store.get(UPDATE_COUNT, "gone") == "gone"
