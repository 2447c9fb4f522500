"""Maven-style version ordering, used by the highest-version conflict policy."""

from __future__ import annotations

import re
from functools import cmp_to_key

_TOKEN_RE = re.compile(r"\d+|[A-Za-z]+")

# Ordered from oldest to newest; "" is a plain release.
_QUALIFIERS = ("alpha", "beta", "milestone", "rc", "snapshot", "", "sp")
_ALIASES = {
    "a": "alpha",
    "b": "beta",
    "m": "milestone",
    "cr": "rc",
    "ga": "",
    "final": "",
    "release": "",
}

_RELEASE_RANK = _QUALIFIERS.index("")


def _item(token: str) -> tuple[int, int, str]:
    if token.isdigit():
        return (2, int(token), "")
    qualifier = _ALIASES.get(token.lower(), token.lower())
    if qualifier in _QUALIFIERS:
        return (1, _QUALIFIERS.index(qualifier), "")
    # Unknown qualifiers sort after the known ones, lexically among themselves.
    return (1, len(_QUALIFIERS), qualifier)


def _items(version: str) -> list[tuple[int, int, str]]:
    return [_item(t) for t in _TOKEN_RE.findall(version)]


def _padding(other: tuple[int, int, str]) -> tuple[int, int, str]:
    if other[0] == 2:
        return (2, 0, "")
    return (1, _RELEASE_RANK, "")


def compare_versions(a: str, b: str) -> int:
    """Return -1, 0 or 1 as `a` is older than, equal to or newer than `b`.

    Examples:
        1.0 == 1.0.0, 1.0-alpha < 1.0-rc1 < 1.0 < 1.0-sp1 < 1.0.1
    """
    left = _items(a)
    right = _items(b)
    for i in range(max(len(left), len(right))):
        x = left[i] if i < len(left) else _padding(right[i])
        y = right[i] if i < len(right) else _padding(left[i])
        if x != y:
            return -1 if x < y else 1
    return 0


version_key = cmp_to_key(compare_versions)
