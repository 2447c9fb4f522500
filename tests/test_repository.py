from __future__ import annotations

from pathlib import Path

import pytest

from fakes import FakeClock, FakeSession, LocalRepo, RemoteRepo, snapshot_metadata_xml
from j_dep_core.cache import ArtifactStore
from j_dep_core.checksum import ChecksumAlgorithm
from j_dep_core.exceptions import ResolutionCancelledError
from j_dep_core.models import SNAPSHOT_ALWAYS, Coordinate, Repository
from j_dep_core.repository import (
    FetchStatus,
    RepositoryClient,
    SnapshotPins,
    artifact_path,
    metadata_path,
    repository_chain,
)
from j_dep_core.resolver import CancellationToken

SNAPSHOT = "org.acme:lib:1.0-SNAPSHOT"


def _client(store: ArtifactStore, session: FakeSession, clock: FakeClock, **kwargs) -> RepositoryClient:
    return RepositoryClient(store, session=session, clock=clock, **kwargs)


def test_artifact_and_metadata_paths() -> None:
    assert artifact_path(Coordinate.parse("org.acme:lib:1.0")) == "org/acme/lib/1.0/lib-1.0.jar"
    assert artifact_path(Coordinate.parse("org.acme:lib:1.0:sources")) == "org/acme/lib/1.0/lib-1.0-sources.jar"
    assert artifact_path(Coordinate.parse("org.acme:lib:1.0@pom")) == "org/acme/lib/1.0/lib-1.0.pom"
    assert (
        artifact_path(Coordinate.parse(SNAPSHOT), "20240102.030405-7")
        == "org/acme/lib/1.0-SNAPSHOT/lib-1.0-20240102.030405-7.jar"
    )
    assert artifact_path(Coordinate.parse(SNAPSHOT)) == "org/acme/lib/1.0-SNAPSHOT/lib-1.0-SNAPSHOT.jar"
    assert metadata_path(Coordinate.parse(SNAPSHOT)) == "org/acme/lib/1.0-SNAPSHOT/maven-metadata.xml"


def test_repository_chain_puts_cache_first() -> None:
    mirror = Repository(name="mirror", url="https://mirror")
    central = Repository(name="central", url="https://central", cache=mirror)
    other = Repository(name="other", url="https://other", cache=mirror)

    assert [r.name for r in repository_chain([other, central])] == ["mirror", "other", "central"]


def test_fetch_release_and_reuse_store(
    store: ArtifactStore, session: FakeSession, clock: FakeClock, remote: RemoteRepo, remote_repository: Repository
) -> None:
    coordinate = remote.publish("org.acme:lib:1.0", jar=b"JAR")
    client = _client(store, session, clock)

    first = client.fetch(coordinate, remote_repository)
    assert first.status is FetchStatus.FOUND
    assert first.path.read_bytes() == b"JAR"
    assert first.repository == "remote"
    assert (first.path.parent / "lib-1.0.jar.sha256").is_file()

    second = client.fetch(coordinate, remote_repository)
    assert second.path == first.path
    assert session.count("lib-1.0.jar") == 1


def test_missing_artifact_is_not_found(
    store: ArtifactStore, session: FakeSession, clock: FakeClock, remote_repository: Repository
) -> None:
    result = _client(store, session, clock).fetch(Coordinate.parse("org.acme:missing:1.0"), remote_repository)
    assert result.status is FetchStatus.NOT_FOUND
    assert not result.found


def test_transport_errors_are_not_found(
    store: ArtifactStore, session: FakeSession, clock: FakeClock, remote: RemoteRepo, remote_repository: Repository
) -> None:
    coordinate = remote.publish("org.acme:lib:1.0")
    session.broken.add(remote.url(artifact_path(coordinate)))

    result = _client(store, session, clock).fetch(coordinate, remote_repository)
    assert result.status is FetchStatus.NOT_FOUND


def test_checksum_mismatch_is_retried_then_reported(
    store: ArtifactStore, session: FakeSession, clock: FakeClock, remote: RemoteRepo, remote_repository: Repository
) -> None:
    coordinate = remote.publish("org.acme:lib:1.0", jar=b"JAR")
    relative = artifact_path(coordinate)
    session.files[remote.url(relative + ".sha1")] = b"0" * 40

    result = _client(store, session, clock, retries=2).fetch(coordinate, remote_repository)

    assert result.status is FetchStatus.CHECKSUM_MISMATCH
    assert session.count("lib-1.0.jar") == 3
    assert store.get("remote", relative) is None


def test_checksum_mismatch_tolerated_when_configured(
    store: ArtifactStore, session: FakeSession, clock: FakeClock, remote: RemoteRepo
) -> None:
    coordinate = remote.publish("org.acme:lib:1.0", jar=b"JAR")
    session.files[remote.url(artifact_path(coordinate) + ".sha1")] = b"0" * 40
    lenient = Repository(name="lenient", url=remote.base_url, tolerate_checksum_mismatch=True)

    result = _client(store, session, clock, retries=0).fetch(coordinate, lenient)

    assert result.status is FetchStatus.FOUND
    assert result.path.read_bytes() == b"JAR"


def test_missing_sidecars_accept_file(
    store: ArtifactStore, session: FakeSession, clock: FakeClock, remote: RemoteRepo, remote_repository: Repository
) -> None:
    coordinate = Coordinate.parse("org.acme:plain:1.0")
    remote.put(artifact_path(coordinate), b"unsigned", sidecar=None)

    result = _client(store, session, clock).fetch(coordinate, remote_repository)

    assert result.status is FetchStatus.FOUND
    assert session.count(".sha256") == 1
    assert session.count(".md5") == 1


def test_sha256_sidecar_preferred(
    store: ArtifactStore, session: FakeSession, clock: FakeClock, remote: RemoteRepo, remote_repository: Repository
) -> None:
    coordinate = Coordinate.parse("org.acme:strong:1.0")
    remote.put(artifact_path(coordinate), b"data", sidecar=ChecksumAlgorithm.SHA256)

    result = _client(store, session, clock).fetch(coordinate, remote_repository)

    assert result.found
    assert session.count(".sha1") == 0


def test_offline_uses_store_only(
    store: ArtifactStore, session: FakeSession, clock: FakeClock, remote: RemoteRepo, remote_repository: Repository
) -> None:
    cached = remote.publish("org.acme:lib:1.0")
    uncached = remote.publish("org.acme:other:1.0")
    _client(store, session, clock).fetch(cached, remote_repository)
    calls_before = sum(session.calls.values())

    offline = _client(store, session, clock, offline=True)

    assert offline.fetch(cached, remote_repository).found
    assert offline.fetch(uncached, remote_repository).status is FetchStatus.NOT_FOUND
    assert offline.download(remote.url("anything")) is None
    assert sum(session.calls.values()) == calls_before


def test_local_repository_used_in_place(
    store: ArtifactStore, session: FakeSession, clock: FakeClock, local: LocalRepo, local_repository: Repository
) -> None:
    coordinate = local.publish("org.acme:lib:1.0", jar=b"LOCAL")
    client = _client(store, session, clock, offline=True)

    result = client.fetch(coordinate, local_repository)

    assert result.found
    assert result.path == local.root / artifact_path(coordinate)
    assert not (store.root / "local").exists()


def test_local_sidecar_mismatch(
    store: ArtifactStore, session: FakeSession, clock: FakeClock, local: LocalRepo, local_repository: Repository
) -> None:
    coordinate = local.publish("org.acme:lib:1.0", jar=b"LOCAL")
    local.put(artifact_path(coordinate) + ".sha1", b"0" * 40)

    result = _client(store, session, clock).fetch(coordinate, local_repository)

    assert result.status is FetchStatus.CHECKSUM_MISMATCH


def test_unreadable_local_file_is_not_found(
    store: ArtifactStore,
    session: FakeSession,
    clock: FakeClock,
    local: LocalRepo,
    local_repository: Repository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    coordinate = local.publish("org.acme:lib:1.0", jar=b"LOCAL")
    unreadable = local.root / artifact_path(coordinate)
    read_bytes = Path.read_bytes

    def _read_bytes(self: Path) -> bytes:
        if self == unreadable:
            raise PermissionError(13, "Permission denied", str(self))
        return read_bytes(self)

    monkeypatch.setattr(Path, "read_bytes", _read_bytes)

    result = _client(store, session, clock).fetch(coordinate, local_repository)

    assert result.status is FetchStatus.NOT_FOUND
    assert "unreadable" in result.detail


def test_local_snapshot_without_metadata_is_non_unique(
    store: ArtifactStore, session: FakeSession, clock: FakeClock, local: LocalRepo, local_repository: Repository
) -> None:
    coordinate = local.publish(SNAPSHOT, jar=b"installed")

    client = _client(store, session, clock)
    assert client.resolve_artifact_location(coordinate, local_repository) == local.root / artifact_path(coordinate)
    assert client.fetch(coordinate, local_repository).path.read_bytes() == b"installed"


def test_unique_snapshot_location_uses_metadata(
    store: ArtifactStore, session: FakeSession, clock: FakeClock, remote: RemoteRepo, remote_repository: Repository
) -> None:
    remote.publish_snapshot_metadata(SNAPSHOT, "20240102.030405", 7)
    client = _client(store, session, clock)

    location = client.resolve_artifact_location(Coordinate.parse(SNAPSHOT), remote_repository)

    assert location == remote.url("org/acme/lib/1.0-SNAPSHOT/lib-1.0-20240102.030405-7.jar")


def test_remote_snapshot_without_metadata_is_unavailable(
    store: ArtifactStore, session: FakeSession, clock: FakeClock, remote_repository: Repository
) -> None:
    client = _client(store, session, clock)
    coordinate = Coordinate.parse(SNAPSHOT)

    assert client.fetch_snapshot_metadata(coordinate, remote_repository) is None
    assert client.resolve_artifact_location(coordinate, remote_repository) is None
    assert client.fetch(coordinate, remote_repository).status is FetchStatus.NOT_FOUND


def test_snapshot_metadata_delay(
    store: ArtifactStore, session: FakeSession, clock: FakeClock, remote: RemoteRepo, remote_repository: Repository
) -> None:
    coordinate = Coordinate.parse(SNAPSHOT)
    remote.publish_snapshot_metadata(SNAPSHOT, "20240101.000000", 1)
    client = _client(store, session, clock)
    assert client.fetch_snapshot_metadata(coordinate, remote_repository).build_number == 1

    remote.publish_snapshot_metadata(SNAPSHOT, "20240102.000000", 2)
    clock.advance(60)
    assert client.fetch_snapshot_metadata(coordinate, remote_repository).build_number == 1

    clock.advance(remote_repository.snapshot_update_delay)
    assert client.fetch_snapshot_metadata(coordinate, remote_repository).build_number == 2


def test_snapshot_metadata_delay_zero_always_fetches(
    store: ArtifactStore, session: FakeSession, clock: FakeClock, remote: RemoteRepo
) -> None:
    coordinate = Coordinate.parse(SNAPSHOT)
    eager = Repository(name="eager", url=remote.base_url, snapshot_update_delay=SNAPSHOT_ALWAYS)
    client = _client(store, session, clock)

    remote.publish_snapshot_metadata(SNAPSHOT, "20240101.000000", 1)
    assert client.fetch_snapshot_metadata(coordinate, eager).build_number == 1
    remote.publish_snapshot_metadata(SNAPSHOT, "20240102.000000", 2)
    assert client.fetch_snapshot_metadata(coordinate, eager).build_number == 2


def test_snapshot_metadata_offline_and_stale_fallback(
    store: ArtifactStore, session: FakeSession, clock: FakeClock, remote: RemoteRepo
) -> None:
    coordinate = Coordinate.parse(SNAPSHOT)
    eager = Repository(name="eager", url=remote.base_url, snapshot_update_delay=SNAPSHOT_ALWAYS)
    remote.publish_snapshot_metadata(SNAPSHOT, "20240101.000000", 1)
    _client(store, session, clock).fetch_snapshot_metadata(coordinate, eager)

    offline = _client(store, session, clock, offline=True)
    clock.advance(10 * 86400)
    assert offline.fetch_snapshot_metadata(coordinate, eager).build_number == 1

    session.files[remote.url(metadata_path(coordinate))] = b"<metadata><versioning>"
    assert _client(store, session, clock).fetch_snapshot_metadata(coordinate, eager).build_number == 1

    assert offline.fetch_snapshot_metadata(Coordinate.parse("org.acme:never:1-SNAPSHOT"), eager) is None


def test_snapshot_pins_hold_for_a_run(
    store: ArtifactStore, session: FakeSession, clock: FakeClock, remote: RemoteRepo
) -> None:
    coordinate = Coordinate.parse(SNAPSHOT)
    eager = Repository(name="eager", url=remote.base_url, snapshot_update_delay=SNAPSHOT_ALWAYS)
    client = _client(store, session, clock)
    pins = SnapshotPins()

    remote.publish_snapshot_metadata(SNAPSHOT, "20240101.000000", 1)
    assert client.snapshot_metadata(coordinate, eager, pins).build_number == 1
    remote.publish_snapshot_metadata(SNAPSHOT, "20240102.000000", 2)
    assert client.snapshot_metadata(coordinate, eager, pins).build_number == 1
    assert client.snapshot_metadata(coordinate, eager).build_number == 2
    assert len(pins) == 1


def test_non_unique_snapshot_refetched_after_delay(
    store: ArtifactStore, session: FakeSession, clock: FakeClock, remote: RemoteRepo, remote_repository: Repository
) -> None:
    coordinate = Coordinate.parse(SNAPSHOT)
    session.files[remote.url(metadata_path(coordinate))] = (
        b"<metadata><versioning><snapshot><localCopy>true</localCopy></snapshot></versioning></metadata>"
    )
    remote.put(artifact_path(coordinate), b"v1")
    client = _client(store, session, clock)

    assert client.fetch(coordinate, remote_repository).path.read_bytes() == b"v1"

    remote.put(artifact_path(coordinate), b"v2")
    clock.advance(60)
    assert client.fetch(coordinate, remote_repository).path.read_bytes() == b"v1"

    clock.advance(remote_repository.snapshot_update_delay)
    assert client.fetch(coordinate, remote_repository).path.read_bytes() == b"v2"

    # a failed re-check falls back to the stored copy
    session.broken.add(remote.url(artifact_path(coordinate)))
    clock.advance(remote_repository.snapshot_update_delay)
    assert client.fetch(coordinate, remote_repository).path.read_bytes() == b"v2"


def test_download_cancellation(
    store: ArtifactStore, session: FakeSession, clock: FakeClock, remote: RemoteRepo
) -> None:
    remote.put("big.bin", b"x" * (200 * 1024), sidecar=None)
    token = CancellationToken()
    session.chunk_hook = token.cancel
    client = _client(store, session, clock)

    with pytest.raises(ResolutionCancelledError):
        client.download(remote.url("big.bin"), cancel=token)


def test_closes_only_its_own_session(store: ArtifactStore, session: FakeSession, clock: FakeClock) -> None:
    with _client(store, session, clock):
        pass
    assert not session.closed


def test_snapshot_metadata_document_in_store(
    store: ArtifactStore, session: FakeSession, clock: FakeClock, remote: RemoteRepo, remote_repository: Repository
) -> None:
    remote.session.files[remote.url(metadata_path(Coordinate.parse(SNAPSHOT)))] = snapshot_metadata_xml("1", 1)
    _client(store, session, clock).fetch_snapshot_metadata(Coordinate.parse(SNAPSHOT), remote_repository)

    cached = store.load_snapshot_metadata("remote", Coordinate.parse(SNAPSHOT))
    assert cached is not None
    assert cached.last_checked == clock.now
