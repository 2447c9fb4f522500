from __future__ import annotations

from j_dep_core.versions import compare_versions, version_key


def test_numeric_ordering() -> None:
    assert compare_versions("1.10", "1.9") == 1
    assert compare_versions("1.0", "1.0.0") == 0
    assert compare_versions("2", "10") == -1


def test_qualifier_ordering() -> None:
    ordered = ["1.0-alpha-1", "1.0-beta", "1.0-M2", "1.0-RC1", "1.0-SNAPSHOT", "1.0", "1.0-sp1", "1.0.1"]
    assert sorted(reversed(ordered), key=version_key) == ordered


def test_release_aliases() -> None:
    assert compare_versions("1.0.Final", "1.0") == 0
    assert compare_versions("1.0-GA", "1.0") == 0
