"""On-disk artifact store shared by resolver runs and processes.

Layout under the store root::

    <root>/<repository name>/<artifact path>            artifact bytes
    <root>/<repository name>/<artifact path>.sha1       sidecars written on store
    <root>/<repository name>/<artifact path>.sha256
    <root>/<repository name>/snapshot-metadata.json     snapshot cache document
    <root>/<repository name>/.lock                      advisory lock file

The snapshot cache document is read-modify-written under the lock. Every file
is written to a temp file in its target directory and moved into place with
os.replace, so readers never observe partial content.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from j_dep_core.checksum import (
    STORE_ALGORITHMS,
    Checksum,
    ChecksumAlgorithm,
    digest,
    digests,
    file_digest,
    format_checksum_file,
    parse_checksum_file,
)
from j_dep_core.exceptions import ChecksumMismatchError
from j_dep_core.models import Coordinate, SnapshotMetadata

try:
    import fcntl

    HAVE_FCNTL = True
except ImportError:
    HAVE_FCNTL = False

try:
    import msvcrt

    HAVE_MSVCRT = True
except ImportError:
    HAVE_MSVCRT = False

logger = logging.getLogger(__name__)

SNAPSHOT_CACHE_FILE = "snapshot-metadata.json"
LOCK_FILE = ".lock"


class SnapshotCacheDocument(BaseModel):
    """Per-repository snapshot state persisted between runs."""

    metadata: dict[str, SnapshotMetadata] = Field(default_factory=dict)
    fetched: dict[str, float] = Field(default_factory=dict)


def snapshot_key(coordinate: Coordinate) -> str:
    """Key of a coordinate in the snapshot cache (classifier and type do not matter)."""
    return f"{coordinate.group}:{coordinate.name}:{coordinate.version}"


def write_atomic(path: Path, data: bytes) -> None:
    """Write bytes to `path` via a temp file in the same directory and os.replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise


class _DirectoryLock:
    """Exclusive advisory lock on `<dir>/.lock` (fcntl on POSIX, msvcrt on Windows)."""

    def __init__(self, directory: Path):
        self.lock_path = directory / LOCK_FILE
        self.lock_file = None

    def __enter__(self):
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_file = open(self.lock_path, "a+b")
        if HAVE_FCNTL:
            fcntl.flock(self.lock_file.fileno(), fcntl.LOCK_EX)
        elif HAVE_MSVCRT:
            self.lock_file.seek(0)
            msvcrt.locking(self.lock_file.fileno(), msvcrt.LK_LOCK, 1)
        else:
            logger.warning("File locking not available on this platform")
        return self

    def __exit__(self, _exc_type, _exc_val, _exc_tb):
        if self.lock_file:
            if HAVE_FCNTL:
                fcntl.flock(self.lock_file.fileno(), fcntl.LOCK_UN)
            elif HAVE_MSVCRT:
                self.lock_file.seek(0)
                msvcrt.locking(self.lock_file.fileno(), msvcrt.LK_UNLCK, 1)
            self.lock_file.close()
            self.lock_file = None


class ArtifactStore:
    """Artifact files, checksum sidecars and snapshot metadata keyed by repository.

    The store is the only state that outlives a resolution run. It is safe to
    share between threads of one process and between processes.
    """

    def __init__(self, root: Path | str):
        self.root = Path(root).expanduser()
        self._guard = threading.Lock()
        self._thread_locks: dict[str, threading.Lock] = {}

    def repository_dir(self, repository: str) -> Path:
        return self.root / repository

    def path_for(self, repository: str, relative_path: str) -> Path:
        return self.repository_dir(repository) / relative_path

    def get(self, repository: str, relative_path: str) -> Path | None:
        path = self.path_for(repository, relative_path)
        return path if path.is_file() else None

    @contextmanager
    def locked(self, repository: str) -> Iterator[Path]:
        """Hold the repository's directory lock, within and across processes.

        flock is per open file, so threads of this process also serialize on
        an in-process lock before taking it. Not reentrant.
        """
        with self._guard:
            thread_lock = self._thread_locks.setdefault(repository, threading.Lock())
        directory = self.repository_dir(repository)
        with thread_lock, _DirectoryLock(directory):
            yield directory

    def put(self, repository: str, relative_path: str, data: bytes) -> tuple[Path, Checksum]:
        """Store verified bytes with fresh `.sha1` and `.sha256` sidecars.

        Returns:
            The stored path and the SHA-256 checksum of the bytes.
        """
        path = self.path_for(repository, relative_path)
        computed = digests(data, STORE_ALGORITHMS)
        write_atomic(path, data)
        for algorithm, checksum in computed.items():
            sidecar = path.with_name(path.name + algorithm.suffix)
            write_atomic(sidecar, format_checksum_file(checksum).encode("ascii"))
        logger.debug("Stored %s in %s", relative_path, repository)
        sha256 = computed.get(ChecksumAlgorithm.SHA256)
        return path, sha256 if sha256 is not None else digest(data)

    def verify_cached(self, path: Path) -> Checksum:
        """Check a stored file against every sidecar present next to it.

        Raises:
            ChecksumMismatchError: If any sidecar disagrees with the file.

        Returns:
            The SHA-256 checksum of the file.
        """
        for algorithm in STORE_ALGORITHMS:
            sidecar = path.with_name(path.name + algorithm.suffix)
            if not sidecar.is_file():
                continue
            expected = parse_checksum_file(sidecar.read_text(encoding="ascii", errors="replace"))
            actual = file_digest(path, algorithm)
            if expected != actual.hex_digest:
                raise ChecksumMismatchError(
                    f"{path} does not match {sidecar.name}: expected {expected}, got {actual.hex_digest}"
                )
        return file_digest(path, ChecksumAlgorithm.SHA256)

    def _document_path(self, repository: str) -> Path:
        return self.repository_dir(repository) / SNAPSHOT_CACHE_FILE

    def _read_document(self, repository: str) -> SnapshotCacheDocument:
        path = self._document_path(repository)
        if not path.is_file():
            return SnapshotCacheDocument()
        try:
            return SnapshotCacheDocument.model_validate_json(path.read_bytes())
        except (OSError, ValidationError) as exc:
            logger.warning("Ignoring unreadable snapshot cache %s: %s", path, exc)
            return SnapshotCacheDocument()

    def _write_document(self, repository: str, document: SnapshotCacheDocument) -> None:
        write_atomic(self._document_path(repository), document.model_dump_json(indent=2).encode("utf-8"))

    def load_snapshot_metadata(self, repository: str, coordinate: Coordinate) -> SnapshotMetadata | None:
        with self.locked(repository):
            return self._read_document(repository).metadata.get(snapshot_key(coordinate))

    def save_snapshot_metadata(self, repository: str, coordinate: Coordinate, metadata: SnapshotMetadata) -> None:
        with self.locked(repository):
            document = self._read_document(repository)
            document.metadata[snapshot_key(coordinate)] = metadata
            self._write_document(repository, document)

    def fetched_at(self, repository: str, relative_path: str) -> float | None:
        """When a mutable (non-unique snapshot) file was last downloaded, or None."""
        with self.locked(repository):
            return self._read_document(repository).fetched.get(relative_path)

    def mark_fetched(self, repository: str, relative_path: str, when: float) -> None:
        with self.locked(repository):
            document = self._read_document(repository)
            document.fetched[relative_path] = when
            self._write_document(repository, document)
