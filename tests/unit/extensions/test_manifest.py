from pathlib import Path

import pytest

from extensionos.core.extensions.exceptions import InvalidManifestError
from extensionos.core.extensions.manifest import VersionFileReader, classify_descriptor
from extensionos.core.extensions.models import Extension, ExtensionKind, HistoryType


def _plugin(tmp_path: Path, version_yaml: str) -> Extension:
    directory = tmp_path / "acme" / "blog"
    (directory / "updates").mkdir(parents=True)
    (directory / "updates" / "version.yaml").write_text(version_yaml, encoding="utf-8")
    return Extension(identifier="Acme.Blog", kind=ExtensionKind.PLUGIN, path=directory)


def test_classify_descriptor_scripts_and_comments() -> None:
    assert classify_descriptor("create_posts_table.py").type == HistoryType.SCRIPT
    assert classify_descriptor("v1.0.1/seed_posts.php").is_script
    assert classify_descriptor("Create the posts table").type == HistoryType.COMMENT
    assert classify_descriptor("Fixes a bug in seed.py handling").type == HistoryType.COMMENT


def test_parse_keeps_raw_keys_and_sorts_by_precedence() -> None:
    reader = VersionFileReader()
    manifest = reader.parse(
        "Acme.Blog",
        "1.10: Tenth minor\n"
        "1.9: Ninth minor\n"
        "1.0.0:\n"
        "  - First version\n"
        "  - create_posts_table.py\n",
    )

    assert manifest.versions == ["1.0.0", "1.9", "1.10"]
    first = manifest.get("1.0.0")
    assert first.comments == ["First version"]
    assert first.scripts == ["create_posts_table.py"]
    assert manifest.latest == "1.10"


def test_load_sorts_prefixed_and_multi_digit_versions(tmp_path: Path) -> None:
    extension = _plugin(
        tmp_path,
        "10.0.0: Tenth major\n"
        "2.0.0: Second major\n"
        "v1.0.0: First version\n",
    )

    manifest = VersionFileReader().load(extension)

    assert manifest.versions == ["1.0.0", "2.0.0", "10.0.0"]
    assert manifest.get("1.0.0").comments == ["First version"]
    assert manifest.latest == "10.0.0"


def test_load_classifies_script_paths_in_any_case(tmp_path: Path) -> None:
    extension = _plugin(
        tmp_path,
        "1.0.0:\n"
        "  - Fixes an issue\n"
        "  - b2.php\n"
        "  - updates/b2.php\n"
        "  - b2.PHP\n",
    )

    entry = VersionFileReader().load(extension).get("1.0.0")

    assert entry.scripts == ["b2.php", "updates/b2.php", "b2.PHP"]
    assert entry.comments == ["Fixes an issue"]


def test_parse_accepts_null_versions_and_empty_files() -> None:
    reader = VersionFileReader()

    manifest = reader.parse("Acme.Blog", "1.0.0:\n1.0.1: Second\n")
    assert manifest.get("1.0.0").descriptors == ()
    assert reader.parse("Acme.Blog", "").is_empty


def test_parse_rejects_duplicate_versions_with_line_number() -> None:
    reader = VersionFileReader()

    with pytest.raises(InvalidManifestError) as exc_info:
        reader.parse("Acme.Blog", "1.0: First\n1.0.0: Again\n")

    assert "line 2" in str(exc_info.value)
    assert exc_info.value.extension == "Acme.Blog"


def test_parse_rejects_non_version_keys() -> None:
    with pytest.raises(InvalidManifestError) as exc_info:
        VersionFileReader().parse("Acme.Blog", "1.0.0: First\nnotes: Something\n")

    assert "line 2" in str(exc_info.value)


def test_parse_rejects_nested_values() -> None:
    with pytest.raises(InvalidManifestError):
        VersionFileReader().parse("Acme.Blog", "1.0.0:\n  key: value\n")


def test_entries_after_unknown_version_returns_everything() -> None:
    manifest = VersionFileReader().parse("Acme.Blog", "1.0.0: A\n1.1.0: B\n")

    assert [e.version for e in manifest.entries_after("1.0.0")] == ["1.1.0"]
    assert [e.version for e in manifest.entries_after("0")] == ["1.0.0", "1.1.0"]
    assert [e.version for e in manifest.entries_after("9.9.9")] == ["1.0.0", "1.1.0"]
    assert [e.version for e in manifest.entries_up_to("1.0.0")] == ["1.0.0"]


def test_load_is_cached_until_invalidated(tmp_path: Path) -> None:
    extension = _plugin(tmp_path, "1.0.0: First\n")
    reader = VersionFileReader()

    assert reader.load(extension).versions == ["1.0.0"]

    extension.version_file.write_text("1.0.0: First\n1.1.0: Second\n", encoding="utf-8")
    assert reader.load(extension).versions == ["1.0.0"]

    reader.invalidate("acme.blog")
    assert reader.load(extension).versions == ["1.0.0", "1.1.0"]


def test_missing_version_file_yields_empty_manifest(tmp_path: Path) -> None:
    extension = Extension(identifier="Acme.Empty", kind=ExtensionKind.PLUGIN, path=tmp_path)
    reader = VersionFileReader()

    assert not reader.has_manifest(extension)
    assert reader.load(extension).is_empty
