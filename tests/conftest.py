"""Pytest configuration and fixtures for j-dep-core tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from fakes import FakeClock, FakeSession, LocalRepo, RemoteRepo
from j_dep_core.cache import ArtifactStore
from j_dep_core.models import SNAPSHOT_DAILY, Repository


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Keep JDEP_* settings of the developer's shell out of the tests."""
    for name in (
        "JDEP_CACHE_DIR",
        "JDEP_OFFLINE",
        "JDEP_MAX_DOWNLOADS",
        "JDEP_WORKERS",
        "JDEP_HTTP_TIMEOUT",
        "JDEP_DOWNLOAD_RETRIES",
        "JDEP_CONFLICT_POLICY",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path) -> ArtifactStore:
    return ArtifactStore(tmp_path / "store")


@pytest.fixture
def remote(session: FakeSession) -> RemoteRepo:
    return RemoteRepo(session)


@pytest.fixture
def remote_repository(remote: RemoteRepo) -> Repository:
    return Repository(name="remote", url=remote.base_url, snapshot_update_delay=SNAPSHOT_DAILY)


@pytest.fixture
def local(tmp_path: Path) -> LocalRepo:
    return LocalRepo(tmp_path / "m2")


@pytest.fixture
def local_repository(local: LocalRepo) -> Repository:
    return Repository(name="local", url=local.root.as_uri())
