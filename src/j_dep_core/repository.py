"""Maven repository access: locations, snapshot metadata, downloads and verification.

Every transport problem (connection errors, non-200 responses, malformed
metadata) is reported as "not found at this repository" so callers can fall
through to the next repository. Only cancellation propagates.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

import requests
from pydantic import BaseModel, ConfigDict

from j_dep_core.cache import ArtifactStore, snapshot_key
from j_dep_core.checksum import VERIFY_ALGORITHMS, Checksum, digest, parse_checksum_file, verify
from j_dep_core.exceptions import ChecksumMismatchError, PomParseError
from j_dep_core.models import Coordinate, Repository, SnapshotMetadata
from j_dep_core.parser import parse_snapshot_metadata

if TYPE_CHECKING:
    from j_dep_core.resolver import CancellationToken

logger = logging.getLogger(__name__)

USER_AGENT = "j-dep-core"
METADATA_FILE = "maven-metadata.xml"
CHUNK_SIZE = 64 * 1024


class FetchStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    CHECKSUM_MISMATCH = "checksum_mismatch"


class FetchResult(BaseModel):
    """Outcome of fetching one file from one repository."""

    model_config = ConfigDict(frozen=True)

    status: FetchStatus
    path: Path | None = None
    checksum: Checksum | None = None
    repository: str | None = None
    detail: str = ""

    @property
    def found(self) -> bool:
        return self.status is FetchStatus.FOUND

    @classmethod
    def not_found(cls, repository: Repository, detail: str) -> FetchResult:
        return cls(status=FetchStatus.NOT_FOUND, repository=repository.name, detail=detail)


class SnapshotPins:
    """Snapshot builds decided during one run; the first decision sticks."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pins: dict[tuple[str, str], SnapshotMetadata] = {}

    def get(self, repository: Repository, coordinate: Coordinate) -> SnapshotMetadata | None:
        with self._lock:
            return self._pins.get((repository.name, snapshot_key(coordinate)))

    def setdefault(
        self, repository: Repository, coordinate: Coordinate, metadata: SnapshotMetadata
    ) -> SnapshotMetadata:
        with self._lock:
            return self._pins.setdefault((repository.name, snapshot_key(coordinate)), metadata)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pins)


def repository_chain(repositories: Iterable[Repository]) -> list[Repository]:
    """Order in which repositories are tried: each cache repository right before its owner."""
    chain: list[Repository] = []
    seen: set[str] = set()
    for repository in repositories:
        for candidate in (repository.cache, repository):
            if candidate is None or candidate.name in seen:
                continue
            seen.add(candidate.name)
            chain.append(candidate)
    return chain


def _version_dir(coordinate: Coordinate) -> str:
    return f"{coordinate.group.replace('.', '/')}/{coordinate.name}/{coordinate.version}"


def artifact_path(coordinate: Coordinate, snapshot_version: str | None = None) -> str:
    """Repository-relative path of an artifact file.

    For a unique snapshot, `snapshot_version` is ``<timestamp>-<build>`` and
    replaces the ``SNAPSHOT`` part of the file name (the directory keeps it).
    """
    file_version = coordinate.version
    if snapshot_version and coordinate.is_snapshot:
        file_version = coordinate.version[: -len("SNAPSHOT")] + snapshot_version
    file_name = f"{coordinate.name}-{file_version}"
    if coordinate.classifier:
        file_name += f"-{coordinate.classifier}"
    return f"{_version_dir(coordinate)}/{file_name}.{coordinate.extension}"


def metadata_path(coordinate: Coordinate) -> str:
    return f"{_version_dir(coordinate)}/{METADATA_FILE}"


def location(repository: Repository, relative_path: str) -> str | Path:
    """URL (remote) or filesystem path (local) of a repository-relative path."""
    local = repository.local_path
    if local is not None:
        return local / relative_path
    return repository.url.rstrip("/") + "/" + relative_path


class RepositoryClient:
    """Fetches artifacts and snapshot metadata, storing remote files in an ArtifactStore."""

    def __init__(
        self,
        store: ArtifactStore,
        *,
        offline: bool = False,
        session: requests.Session | None = None,
        timeout: float = 30.0,
        retries: int = 2,
        max_concurrent_downloads: int = 8,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.offline = offline
        self.timeout = timeout
        self.retries = max(0, retries)
        self.clock = clock
        self._semaphore = threading.BoundedSemaphore(max(1, max_concurrent_downloads))
        self._owns_session = session is None
        if session is None:
            session = requests.Session()
            session.headers.update({"User-Agent": USER_AGENT})
        self.session = session

    def close(self) -> None:
        if self._owns_session:
            self.session.close()

    def __enter__(self) -> RepositoryClient:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def download(self, url: str, cancel: CancellationToken | None = None) -> bytes | None:
        """Stream `url` into memory. None for non-200 responses, transport errors and offline mode."""
        if self.offline:
            logger.debug("Offline, not downloading %s", url)
            return None
        with self._semaphore:
            if cancel is not None:
                cancel.raise_if_cancelled()
            logger.debug("GET %s", url)
            try:
                with self.session.get(url, stream=True, timeout=self.timeout) as response:
                    if response.status_code != 200:
                        logger.debug("GET %s returned %s", url, response.status_code)
                        return None
                    chunks = []
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if cancel is not None:
                            cancel.raise_if_cancelled()
                        if chunk:
                            chunks.append(chunk)
                    return b"".join(chunks)
            except requests.RequestException as exc:
                logger.debug("GET %s failed: %s", url, exc)
                return None

    def fetch_snapshot_metadata(
        self,
        coordinate: Coordinate,
        repository: Repository,
        cancel: CancellationToken | None = None,
    ) -> SnapshotMetadata | None:
        """Latest snapshot build of `coordinate` in `repository`, honouring the update delay.

        Local repositories are read directly; a missing document there means a
        non-unique snapshot. Remote results are cached in the store.
        """
        relative = metadata_path(coordinate)
        now = self.clock()

        if repository.is_local:
            path = location(repository, relative)
            if not path.is_file():
                return SnapshotMetadata(last_checked=now)
            try:
                parsed = parse_snapshot_metadata(path.read_bytes(), str(path))
            except (OSError, PomParseError) as exc:
                logger.warning("Unreadable snapshot metadata %s: %s", path, exc)
                return None
            return parsed.model_copy(update={"last_checked": now})

        cached = self.store.load_snapshot_metadata(repository.name, coordinate)
        if self.offline:
            if cached is None:
                logger.debug("Offline and no cached snapshot metadata for %s in %s", coordinate, repository.name)
            return cached
        if cached is not None and now - cached.last_checked < repository.snapshot_update_delay:
            logger.debug("Using cached snapshot metadata for %s in %s", coordinate, repository.name)
            return cached

        url = location(repository, relative)
        metadata = None
        data = self.download(url, cancel)
        if data is not None:
            try:
                metadata = parse_snapshot_metadata(data, url).model_copy(update={"last_checked": now})
            except PomParseError as exc:
                logger.warning("Malformed snapshot metadata at %s: %s", url, exc)

        if metadata is None:
            if cached is not None:
                logger.warning(
                    "Could not refresh snapshot metadata for %s in %s, using cached copy",
                    coordinate,
                    repository.name,
                )
            return cached

        self.store.save_snapshot_metadata(repository.name, coordinate, metadata)
        return metadata

    def snapshot_metadata(
        self,
        coordinate: Coordinate,
        repository: Repository,
        pins: SnapshotPins | None = None,
        cancel: CancellationToken | None = None,
    ) -> SnapshotMetadata | None:
        """Like fetch_snapshot_metadata, but pinned for the rest of the run once decided."""
        if pins is not None:
            pinned = pins.get(repository, coordinate)
            if pinned is not None:
                return pinned
        metadata = self.fetch_snapshot_metadata(coordinate, repository, cancel)
        if metadata is not None and pins is not None:
            metadata = pins.setdefault(repository, coordinate, metadata)
        return metadata

    def resolve_artifact_location(
        self,
        coordinate: Coordinate,
        repository: Repository,
        pins: SnapshotPins | None = None,
        cancel: CancellationToken | None = None,
    ) -> str | Path | None:
        """URL or path of the artifact file, or None when snapshot metadata is unavailable."""
        if not coordinate.is_snapshot:
            return location(repository, artifact_path(coordinate))
        metadata = self.snapshot_metadata(coordinate, repository, pins, cancel)
        if metadata is None:
            return None
        return location(repository, artifact_path(coordinate, metadata.snapshot_version))

    def fetch(
        self,
        coordinate: Coordinate,
        repository: Repository,
        pins: SnapshotPins | None = None,
        cancel: CancellationToken | None = None,
    ) -> FetchResult:
        """Produce a verified local file for `coordinate` from `repository`."""
        if not repository.accepts(coordinate):
            kind = "snapshots" if coordinate.is_snapshot else "releases"
            logger.debug("Skipping %s for %s, it does not serve %s", repository.name, coordinate, kind)
            return FetchResult.not_found(repository, f"{repository.name} does not serve {kind}")

        snapshot_version = None
        mutable = False
        if coordinate.is_snapshot:
            metadata = self.snapshot_metadata(coordinate, repository, pins, cancel)
            if metadata is None:
                return FetchResult.not_found(repository, "no snapshot metadata")
            snapshot_version = metadata.snapshot_version
            mutable = snapshot_version is None

        relative = artifact_path(coordinate, snapshot_version)
        if repository.is_local:
            return self._fetch_local(repository, relative)
        return self._fetch_remote(repository, relative, mutable, cancel)

    def _fetch_local(self, repository: Repository, relative: str) -> FetchResult:
        path = location(repository, relative)
        if not path.is_file():
            return FetchResult.not_found(repository, f"{relative} not in {repository.name}")
        try:
            data = path.read_bytes()
            sidecars = []
            for algorithm in VERIFY_ALGORITHMS:
                sidecar = path.with_name(path.name + algorithm.suffix)
                if sidecar.is_file():
                    sidecars.append((algorithm, sidecar.name, sidecar.read_text(encoding="ascii", errors="replace")))
        except OSError as exc:
            logger.warning("Cannot read %s in %s: %s", relative, repository.name, exc)
            return FetchResult.not_found(repository, f"{relative} unreadable in {repository.name}")

        for algorithm, sidecar_name, expected in sidecars:
            if verify(data, expected, algorithm):
                break
            if not repository.tolerate_checksum_mismatch:
                logger.warning("Checksum mismatch for %s against %s", path, sidecar_name)
                return FetchResult(
                    status=FetchStatus.CHECKSUM_MISMATCH,
                    repository=repository.name,
                    detail=f"{path} does not match {sidecar_name}",
                )
            logger.warning("Checksum mismatch for %s against %s, using it anyway", path, sidecar_name)
            break
        return FetchResult(status=FetchStatus.FOUND, path=path, checksum=digest(data), repository=repository.name)

    def _stored(self, repository: Repository, relative: str) -> FetchResult | None:
        stored = self.store.get(repository.name, relative)
        if stored is None:
            return None
        try:
            checksum = self.store.verify_cached(stored)
        except ChecksumMismatchError as exc:
            logger.warning("Ignoring corrupt store entry: %s", exc)
            return None
        return FetchResult(status=FetchStatus.FOUND, path=stored, checksum=checksum, repository=repository.name)

    def _fresh(self, repository: Repository, relative: str) -> bool:
        fetched = self.store.fetched_at(repository.name, relative)
        return fetched is not None and self.clock() - fetched < repository.snapshot_update_delay

    def _verify_remote(self, url: str, data: bytes, cancel: CancellationToken | None) -> bool | None:
        """Check `data` against the strongest sidecar the repository serves; None if it serves none."""
        for algorithm in VERIFY_ALGORITHMS:
            body = self.download(url + algorithm.suffix, cancel)
            if body is None:
                continue
            text = body.decode("ascii", errors="replace")
            if parse_checksum_file(text) is None:
                logger.warning("Malformed %s sidecar for %s", algorithm.value, url)
                continue
            return verify(data, text, algorithm)
        logger.warning("No checksum sidecar for %s, accepting it unverified", url)
        return None

    def _fetch_remote(
        self,
        repository: Repository,
        relative: str,
        mutable: bool,
        cancel: CancellationToken | None,
    ) -> FetchResult:
        stored = None
        if not mutable or self.offline or self._fresh(repository, relative):
            stored = self._stored(repository, relative)
            if stored is not None:
                logger.debug("Store hit for %s in %s", relative, repository.name)
                return stored
        if self.offline:
            return FetchResult.not_found(repository, f"{relative} not in store (offline)")

        url = location(repository, relative)
        data = None
        mismatch = False
        for attempt in range(1, self.retries + 2):
            data = self.download(url, cancel)
            if data is None:
                break
            mismatch = self._verify_remote(url, data, cancel) is False
            if not mismatch:
                break
            logger.warning("Checksum mismatch for %s (attempt %d of %d)", url, attempt, self.retries + 1)

        if data is not None and mismatch and repository.tolerate_checksum_mismatch:
            logger.warning("Accepting %s despite checksum mismatch", url)
            mismatch = False

        if data is None or mismatch:
            if mutable:
                stale = self._stored(repository, relative)
                if stale is not None:
                    logger.warning("Could not refresh %s from %s, using stored copy", relative, repository.name)
                    return stale
            if mismatch:
                return FetchResult(
                    status=FetchStatus.CHECKSUM_MISMATCH,
                    repository=repository.name,
                    detail=f"checksum mismatch for {url}",
                )
            return FetchResult.not_found(repository, f"{url} not found")

        path, checksum = self.store.put(repository.name, relative, data)
        if mutable:
            self.store.mark_fetched(repository.name, relative, self.clock())
        logger.info("Downloaded %s from %s", relative, repository.name)
        return FetchResult(status=FetchStatus.FOUND, path=path, checksum=checksum, repository=repository.name)
