import pytest

from extensionos.core.extensions.versions import (
    compare_versions,
    is_newer,
    is_valid_version,
    normalize_version,
    satisfies,
    sort_versions,
)


def test_sort_versions_uses_semantic_precedence() -> None:
    assert sort_versions(["10.0.0", "1.0.0", "2.0.0", "1.5.0"]) == [
        "1.0.0",
        "1.5.0",
        "2.0.0",
        "10.0.0",
    ]


def test_short_versions_compare_equal_to_full_form() -> None:
    assert compare_versions("1.0", "1.0.0") == 0
    assert compare_versions("v1.2.3", "1.2.3") == 0
    assert is_newer("1.10", "1.9")


def test_normalize_version_strips_prefix_and_whitespace() -> None:
    assert normalize_version(" v1.2.3 ") == "1.2.3"
    assert normalize_version("V2") == "2"


def test_is_valid_version() -> None:
    assert is_valid_version("1.0.0")
    assert is_valid_version("1.0")
    assert not is_valid_version("first")
    assert not is_valid_version("")


def test_satisfies_comparison_clauses() -> None:
    assert satisfies("1.2.3", ">=1.0 <2.0")
    assert satisfies("1.2.3", ">= 1.0, < 2.0")
    assert not satisfies("2.0.0", ">=1.0 <2.0")
    assert satisfies("1.2.3", "!=1.2.4")
    assert satisfies("1.2.3", "1.2.3")


def test_satisfies_caret_and_tilde_ranges() -> None:
    assert satisfies("1.9.0", "^1.2")
    assert not satisfies("2.0.0", "^1.2")
    assert satisfies("0.2.9", "^0.2.3")
    assert not satisfies("0.3.0", "^0.2.3")
    assert satisfies("1.2.9", "~1.2.3")
    assert not satisfies("1.3.0", "~1.2.3")
    assert satisfies("1.9.0", "~1.2")


def test_satisfies_wildcards_and_alternatives() -> None:
    assert satisfies("1.5.0", "1.*")
    assert not satisfies("1.5.0", "2.*")
    assert satisfies("1.5.2", "1.5.*")
    assert satisfies("1.2.3", "<1.0 || >=1.2")
    assert not satisfies("1.1.0", "<1.0 || >=1.2")
    assert satisfies("0.0.1", "*")
    assert satisfies("0.0.1", None)


def test_satisfies_rejects_unparseable_input() -> None:
    with pytest.raises(ValueError):
        satisfies("abc", ">=1.0")
    with pytest.raises(ValueError):
        satisfies("1.0.0", ">=")
