"""Collect contributor files and merge them into one deterministic archive."""

from __future__ import annotations

import functools
import logging
import os
import tempfile
import threading
import zipfile
import zlib
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from j_dep_core.exceptions import ArchiveWriteError, AssemblyConflictError, AssemblyInputError, MergeConflict
from j_dep_core.merge import (
    Discard,
    Fail,
    Relocate,
    RenameFunction,
    StrategyTable,
    Write,
    jar_strategy_table,
    origin_renamer,
    strategy_name,
)
from j_dep_core.models import ResolvedArtifact

if TYPE_CHECKING:
    from j_dep_core.resolver import CancellationToken

logger = logging.getLogger(__name__)

# Makes a jar directly executable by prepending it with this launcher.
PREPEND_SCRIPT_EXEC_JAR = b'#!/usr/bin/env sh\nexec java -jar "$0" "$@"\n'

# Earliest timestamp a zip entry can carry; used for every entry.
FIXED_DATE_TIME = (1980, 1, 1, 0, 0, 0)

MAX_RENAME_ATTEMPTS = 1000

ARCHIVE_SUFFIXES = (".jar", ".zip", ".war")

# (path, source, bytes) -> bytes to write, or None to leave the entry out
MapFilter = Callable[[str, "AssemblySource | None", bytes], "bytes | None"]


def normalize_path(path: str) -> str:
    return path.replace("\\", "/").lstrip("/")


@dataclass(frozen=True)
class AssemblySource:
    """One contributor to an output path. `read()` loads its bytes on demand."""

    path: str
    origin: str
    own: bool
    provider: Callable[[], bytes] = field(repr=False, compare=False)
    archive: Path | None = None

    def read(self) -> bytes:
        return self.provider()

    def __str__(self) -> str:
        return self.origin


@dataclass(frozen=True)
class MergeGroup:
    path: str
    sources: tuple[AssemblySource, ...]


def _read_entry(archive: zipfile.ZipFile, lock: threading.Lock, name: str) -> bytes:
    try:
        with lock:
            return archive.read(name)
    except (zipfile.BadZipFile, zlib.error, OSError) as exc:
        raise AssemblyInputError(f"Cannot read {name} from {archive.filename}: {exc}") from exc


class Assembly:
    """Ordered collection of sources, grouped by normalised output path.

    Archives opened for extraction stay open until `close()`.
    """

    def __init__(self) -> None:
        self._sources: dict[str, list[AssemblySource]] = {}
        self._archives: list[zipfile.ZipFile] = []

    def __enter__(self) -> Assembly:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        for archive in self._archives:
            archive.close()
        self._archives.clear()

    def add(self, source: AssemblySource) -> None:
        path = normalize_path(source.path)
        if not path:
            raise ValueError(f"Empty output path from {source.origin}")
        if path != source.path:
            source = AssemblySource(path, source.origin, source.own, source.provider, source.archive)
        self._sources.setdefault(path, []).append(source)

    def add_bytes(self, path: str, data: bytes, own: bool = True, origin: str | None = None) -> None:
        self.add(AssemblySource(path, origin or f"<bytes {path}>", own, lambda: data))

    def add_file(self, file: Path | str, path: str | None = None, own: bool = True) -> None:
        file = Path(file)
        self.add(AssemblySource(path or file.name, str(file), own, file.read_bytes))

    def add_directory(self, root: Path | str, own: bool = True) -> None:
        """Add every file under `root` at its path relative to `root`."""
        root = Path(root)
        for file in sorted(p for p in root.rglob("*") if p.is_file()):
            relative = file.relative_to(root).as_posix()
            self.add(AssemblySource(relative, str(file), own, file.read_bytes))

    def add_archive(
        self,
        file: Path | str,
        own: bool = False,
        extract: bool = True,
        origin: str | None = None,
    ) -> None:
        """Add a zip's entries (when extracting) or the zip itself as a single file."""
        file = Path(file)
        if not extract:
            self.add(AssemblySource(file.name, origin or str(file), own, file.read_bytes, archive=file))
            return

        try:
            archive = zipfile.ZipFile(file)
        except (zipfile.BadZipFile, OSError) as exc:
            raise AssemblyInputError(f"Cannot open archive {file}: {exc}") from exc
        self._archives.append(archive)
        lock = threading.Lock()
        for info in archive.infolist():
            if info.is_dir():
                continue
            path = normalize_path(info.filename)
            self.add(
                AssemblySource(
                    path,
                    f"{origin or file}?{path}",
                    own,
                    functools.partial(_read_entry, archive, lock, info.filename),
                    archive=file,
                )
            )

    def add_artifacts(self, artifacts: Iterable[ResolvedArtifact], extract: bool = True) -> None:
        """Add resolved dependencies as foreign sources; jars are flattened when `extract` is set."""
        for artifact in artifacts:
            is_archive = artifact.path.suffix.lower() in ARCHIVE_SUFFIXES
            self.add_archive(
                artifact.path,
                own=False,
                extract=extract and is_archive,
                origin=str(artifact.coordinate),
            )

    def groups(self) -> list[MergeGroup]:
        return [MergeGroup(path, tuple(sources)) for path, sources in self._sources.items()]

    def __len__(self) -> int:
        return sum(len(s) for s in self._sources.values())


class AssemblyEngine:
    """Applies a StrategyTable to merge groups; all-or-nothing."""

    def __init__(
        self,
        table: StrategyTable | None = None,
        rename: RenameFunction = origin_renamer,
        max_workers: int = 4,
    ):
        self.table = table or jar_strategy_table()
        self.rename = rename
        self.max_workers = max(1, max_workers)

    def _load(self, groups: Sequence[MergeGroup], cancel: CancellationToken | None) -> list[list[bytes]]:
        def _read(source: AssemblySource) -> bytes:
            if cancel is not None:
                cancel.raise_if_cancelled()
            return source.read()

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="j-dep-assembly") as pool:
            futures = [[pool.submit(_read, s) for s in group.sources] for group in groups]
            return [[f.result() for f in group_futures] for group_futures in futures]

    def _relocate(self, source: AssemblySource, path: str, taken: set[str]) -> str | None | bool:
        """New free path, None to drop the source, or False when no free path was produced."""
        previous = None
        for n in range(1, MAX_RENAME_ATTEMPTS + 1):
            candidate = self.rename(source, path, n)
            if candidate is None:
                return None
            candidate = normalize_path(candidate)
            if candidate and candidate != path and candidate not in taken:
                return candidate
            if candidate == previous:
                break
            previous = candidate
        return False

    def merge(
        self,
        groups: Sequence[MergeGroup],
        cancel: CancellationToken | None = None,
    ) -> dict[str, bytes]:
        """Decide the bytes of every output path.

        Raises:
            AssemblyConflictError: Listing every failed group and rename collision.
        """
        groups = list(groups)
        loaded = self._load(groups, cancel)

        entries: dict[str, bytes] = {}
        conflicts: list[MergeConflict] = []
        relocations: list[tuple[MergeGroup, list[bytes], tuple[int, ...]]] = []

        for group, blobs in zip(groups, loaded):
            strategy = self.table.choose(group.path, len(blobs))
            if strategy is None:
                entries[group.path] = blobs[0]
                continue
            name = strategy_name(strategy)
            outcome = strategy(blobs, [s.own for s in group.sources])
            if isinstance(outcome, Write):
                if len(blobs) > 1:
                    logger.debug("Merged %d candidates at %s with %s", len(blobs), group.path, name)
                entries[group.path] = outcome.data
            elif isinstance(outcome, Discard):
                logger.debug("Discarding %d candidate(s) at %s", len(blobs), group.path)
            elif isinstance(outcome, Fail):
                conflicts.append(
                    MergeConflict(group.path, name, outcome.reason, [s.origin for s in group.sources])
                )
            elif isinstance(outcome, Relocate):
                if outcome.keep is not None:
                    entries[group.path] = blobs[outcome.keep]
                relocations.append((group, blobs, outcome.relocate))
            else:
                raise TypeError(f"Strategy {name} returned {outcome!r}")

        taken = set(entries)
        for group, blobs, indices in relocations:
            for i in indices:
                source = group.sources[i]
                new_path = self._relocate(source, group.path, taken)
                if new_path is None:
                    logger.debug("Rename dropped %s at %s", source.origin, group.path)
                elif new_path is False:
                    conflicts.append(
                        MergeConflict(
                            group.path,
                            "rename",
                            f"no free path to move {source.origin} to",
                            [s.origin for s in group.sources],
                        )
                    )
                else:
                    logger.debug("Moving %s from %s to %s", source.origin, group.path, new_path)
                    taken.add(new_path)
                    entries[new_path] = blobs[i]

        if conflicts:
            for conflict in conflicts:
                logger.error(
                    "Merge conflict at %s (%s): %s; contributors: %s",
                    conflict.path,
                    conflict.strategy,
                    conflict.reason,
                    ", ".join(conflict.contributors),
                )
            raise AssemblyConflictError(conflicts)
        return entries


def write_archive(
    entries: dict[str, bytes],
    output: Path | str,
    compress: bool = True,
    prepend: bytes = b"",
    cancel: CancellationToken | None = None,
) -> Path:
    """Write entries sorted by path to a temp file next to `output`, then rename it into place.

    Raises:
        ArchiveWriteError: If the archive cannot be written; nothing is left at `output`.
    """
    output = Path(output)
    method = zipfile.ZIP_DEFLATED if compress else zipfile.ZIP_STORED
    try:
        output.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=output.parent, prefix=f".{output.name}.", suffix=".tmp")
    except OSError as exc:
        raise ArchiveWriteError(f"Cannot create {output}: {exc}") from exc

    try:
        with os.fdopen(fd, "wb") as raw:
            raw.write(prepend)
            with zipfile.ZipFile(raw, "w") as archive:
                for path in sorted(entries):
                    if cancel is not None:
                        cancel.raise_if_cancelled()
                    info = zipfile.ZipInfo(path, date_time=FIXED_DATE_TIME)
                    info.compress_type = method
                    info.external_attr = 0o644 << 16
                    archive.writestr(info, entries[path])
        os.chmod(tmp_path, 0o755 if prepend else 0o644)
        os.replace(tmp_path, output)
    except OSError as exc:
        _remove_quietly(tmp_path)
        raise ArchiveWriteError(f"Cannot write {output}: {exc}") from exc
    except BaseException:
        _remove_quietly(tmp_path)
        raise
    logger.debug("Wrote %d entries to %s", len(entries), output)
    return output


def _remove_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


def assemble(
    assembly: Assembly,
    output: Path | str,
    table: StrategyTable | None = None,
    rename: RenameFunction = origin_renamer,
    compress: bool = True,
    prepend: bytes = b"",
    cancel: CancellationToken | None = None,
    map_filter: MapFilter | None = None,
    max_workers: int = 4,
) -> Path:
    """Merge an Assembly with `table` (jar rules by default) and write it to `output`."""
    engine = AssemblyEngine(table, rename, max_workers)
    entries = engine.merge(assembly.groups(), cancel)
    if map_filter is not None:
        sources = {g.path: g.sources[0] for g in assembly.groups() if len(g.sources) == 1}
        filtered: dict[str, bytes] = {}
        for path, data in entries.items():
            kept = map_filter(path, sources.get(path), data)
            if kept is None:
                logger.debug("Filtered out %s", path)
                continue
            filtered[path] = kept
        entries = filtered
    return write_archive(entries, output, compress=compress, prepend=prepend, cancel=cancel)
