"""Merge strategies for assembling many contributors into one archive path.

A strategy is a pure function of the candidate bytes (in insertion order) and
their "own" flags, returning one of `Write`, `Discard`, `Fail` or `Relocate`.
"""

from __future__ import annotations

import fnmatch
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Union

from j_dep_core.checksum import content_equals

if TYPE_CHECKING:
    from j_dep_core.assembly import AssemblySource


@dataclass(frozen=True)
class Write:
    data: bytes


@dataclass(frozen=True)
class Discard:
    pass


@dataclass(frozen=True)
class Fail:
    reason: str


@dataclass(frozen=True)
class Relocate:
    """Keep candidate `keep` (if any) at the path and move `relocate` elsewhere."""

    keep: int | None
    relocate: tuple[int, ...]


MergeOutcome = Union[Write, Discard, Fail, Relocate]
MergeStrategy = Callable[[Sequence[bytes], Sequence[bool]], MergeOutcome]

# (source, original path, attempt starting at 1) -> new path, or None to drop the source
RenameFunction = Callable[["AssemblySource", str, int], Union[str, None]]

_LINE_ENDINGS = ("\r\n", "\n", "\r")
_LINE_SPLIT_RE = re.compile(r"\r\n|\n|\r")


def first(candidates: Sequence[bytes], own: Sequence[bool]) -> MergeOutcome:
    if not candidates:
        return Discard()
    return Write(candidates[0])


def last(candidates: Sequence[bytes], own: Sequence[bool]) -> MergeOutcome:
    if not candidates:
        return Discard()
    return Write(candidates[-1])


def single_own(candidates: Sequence[bytes], own: Sequence[bool]) -> MergeOutcome:
    owned = [data for data, is_own in zip(candidates, own) if is_own]
    if len(owned) != 1:
        return Fail(f"expected exactly one own candidate, found {len(owned)} of {len(candidates)}")
    return Write(owned[0])


def single_or_error(candidates: Sequence[bytes], own: Sequence[bool]) -> MergeOutcome:
    if len(candidates) != 1:
        return Fail(f"expected exactly one candidate, found {len(candidates)}")
    return Write(candidates[0])


def concatenate(candidates: Sequence[bytes], own: Sequence[bool]) -> MergeOutcome:
    return Write(b"".join(candidates))


def _merge_lines(candidates: Sequence[bytes], unique: bool) -> bytes:
    lines: list[str] = []
    seen: set[str] = set()
    line_ending: str | None = None
    inconsistent = False

    for data in candidates:
        text = data.decode("utf-8", errors="surrogateescape")
        file_lines = _LINE_SPLIT_RE.split(text)
        if not inconsistent and len(file_lines) > 1:
            for ending in _LINE_ENDINGS:
                if ending in text:
                    if line_ending is None:
                        line_ending = ending
                    elif line_ending != ending:
                        inconsistent = True
                    break
        if file_lines[-1] == "":
            file_lines.pop()
        for line in file_lines:
            if unique:
                if line in seen:
                    continue
                seen.add(line)
            lines.append(line)

    ending = line_ending or "\n"
    return "".join(line + ending for line in lines).encode("utf-8", errors="surrogateescape")


def lines(candidates: Sequence[bytes], own: Sequence[bool]) -> MergeOutcome:
    """Concatenate text lines of every candidate; one line ending after each line."""
    return Write(_merge_lines(candidates, unique=False))


def unique_lines(candidates: Sequence[bytes], own: Sequence[bool]) -> MergeOutcome:
    """Like `lines`, keeping only the first occurrence of each line."""
    return Write(_merge_lines(candidates, unique=True))


def discard(candidates: Sequence[bytes], own: Sequence[bool]) -> MergeOutcome:
    return Discard()


def deduplicate(candidates: Sequence[bytes], own: Sequence[bool]) -> MergeOutcome:
    if not candidates:
        return Discard()
    for i, data in enumerate(candidates[1:], start=2):
        if not content_equals(candidates[0], data):
            return Fail(f"candidate {i} differs from candidate 1")
    return Write(candidates[0])


def rename(candidates: Sequence[bytes], own: Sequence[bool]) -> MergeOutcome:
    keep = next((i for i, is_own in enumerate(own) if is_own), None)
    return Relocate(keep=keep, relocate=tuple(i for i in range(len(candidates)) if i != keep))


STRATEGIES: dict[str, MergeStrategy] = {
    "first": first,
    "last": last,
    "single_own": single_own,
    "single_or_error": single_or_error,
    "concatenate": concatenate,
    "lines": lines,
    "unique_lines": unique_lines,
    "discard": discard,
    "deduplicate": deduplicate,
    "rename": rename,
}


def strategy_by_name(name: str) -> MergeStrategy:
    """Look up a built-in strategy; accepts `unique-lines` as well as `unique_lines`."""
    key = name.strip().lower().replace("-", "_")
    try:
        return STRATEGIES[key]
    except KeyError:
        raise ValueError(f"Unknown merge strategy {name!r}, expected one of {', '.join(STRATEGIES)}") from None


def strategy_name(strategy: MergeStrategy) -> str:
    return getattr(strategy, "__name__", repr(strategy))


PathPattern = Union[str, "re.Pattern[str]", Callable[[str], bool]]


@dataclass(frozen=True)
class StrategyRule:
    """Applies `strategy` to paths matching `pattern` (glob, compiled regex or predicate).

    Globs and regexes match the whole path, ignoring case. A `duplicates_only`
    rule is skipped for paths with a single candidate.
    """

    pattern: PathPattern
    strategy: MergeStrategy
    duplicates_only: bool = False

    def matches(self, path: str) -> bool:
        pattern = self.pattern
        if isinstance(pattern, str):
            return fnmatch.fnmatchcase(path.lower(), pattern.lower())
        if isinstance(pattern, re.Pattern):
            return re.fullmatch(pattern.pattern, path, pattern.flags | re.IGNORECASE) is not None
        return bool(pattern(path))


class StrategyTable:
    """Ordered rules plus a default; the first applicable rule wins."""

    def __init__(self, rules: Sequence[StrategyRule] = (), default: MergeStrategy = deduplicate):
        self.rules = list(rules)
        self.default = default

    def choose(self, path: str, count: int) -> MergeStrategy | None:
        """Strategy for a group of `count` candidates, or None to write a lone candidate as-is."""
        for rule in self.rules:
            if rule.duplicates_only and count < 2:
                continue
            if rule.matches(path):
                return rule.strategy
        if count < 2:
            return None
        return self.default


def _split_name(path: str) -> tuple[str, str, str]:
    """Split into (directory prefix, stem, extension with dot) on the last path segment."""
    directory, _, name = path.rpartition("/")
    prefix = directory + "/" if directory else ""
    dot = name.rfind(".")
    if dot <= 0:
        return prefix, name, ""
    return prefix, name[:dot], name[dot:]


def _extension(path: str) -> str | None:
    _, _, ext = _split_name(path)
    return ext[1:].lower() if ext else None


_TEXT_EXTENSIONS = (None, "txt", "md", "markdown")


def is_readme(path: str) -> bool:
    name = path.rpartition("/")[2].lower()
    return ("readme" in name or "about" in name) and _extension(path) in _TEXT_EXTENSIONS


def is_license_file(path: str) -> bool:
    name = path.rpartition("/")[2].lower()
    markers = ("license", "licence", "notice", "copying")
    return any(m in name for m in markers) and _extension(path) in _TEXT_EXTENSIONS


def is_system_junk(path: str) -> bool:
    return path.rpartition("/")[2].lower() in (".ds_store", "thumbs.db")


def suffix_renamer(source: AssemblySource, path: str, n: int) -> str | None:
    """``dir/name.ext`` becomes ``dir/name_<n>.ext``."""
    prefix, stem, ext = _split_name(path)
    return f"{prefix}{stem}_{n}{ext}"


_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._-]+")


def _origin_stem(source: AssemblySource) -> str:
    if source.archive is not None:
        return PurePosixPath(source.archive.name).stem
    stem = _UNSAFE_RE.sub("-", source.origin).strip("-")
    return stem or "unknown"


def origin_renamer(source: AssemblySource, path: str, n: int) -> str | None:
    """``dir/name.ext`` becomes ``dir/name_<origin>.ext``, then ``dir/name_<origin>_<n>.ext``."""
    prefix, stem, ext = _split_name(path)
    injected = _origin_stem(source)
    if n > 1:
        injected += f"_{n}"
    return f"{prefix}{stem}_{injected}{ext}"


_SIGNATURE_RE = re.compile(r"META-INF/[^/]+\.(SF|DSA|RSA|EC)")


def jar_strategy_table() -> StrategyTable:
    """Rules for flattening jars into one, after sbt-assembly's defaults."""
    return StrategyTable(
        [
            StrategyRule(is_system_junk, discard),
            StrategyRule(_SIGNATURE_RE, discard),
            StrategyRule("META-INF/INDEX.LIST", discard),
            StrategyRule("META-INF/DEPENDENCIES", discard),
            StrategyRule(is_readme, rename, duplicates_only=True),
            StrategyRule(is_license_file, rename, duplicates_only=True),
            StrategyRule("META-INF/MANIFEST.MF", rename, duplicates_only=True),
            StrategyRule(re.compile(r"META-INF/services/.+"), unique_lines, duplicates_only=True),
            StrategyRule(re.compile(r"META-INF/.+"), single_own, duplicates_only=True),
        ],
        default=deduplicate,
    )


def no_conflict_strategy_table() -> StrategyTable:
    """Every duplicate path must be byte-identical."""
    return StrategyTable([], default=deduplicate)
