from __future__ import annotations

from pathlib import Path

import pytest

from j_dep_core.config import DEFAULT_CACHE_DIR, ResolverConfig, parse_repository
from j_dep_core.exceptions import ConfigurationError
from j_dep_core.resolver import ConflictPolicy


def test_defaults() -> None:
    config = ResolverConfig.from_env()
    config.validate()

    assert config.cache_dir == DEFAULT_CACHE_DIR.expanduser()
    assert not config.offline
    assert config.policy is ConflictPolicy.NEAREST


def test_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("JDEP_CACHE_DIR", str(tmp_path))
    monkeypatch.setenv("JDEP_OFFLINE", "yes")
    monkeypatch.setenv("JDEP_MAX_DOWNLOADS", "2")
    monkeypatch.setenv("JDEP_CONFLICT_POLICY", "Highest")

    config = ResolverConfig.from_env()
    config.validate()

    assert config.cache_dir == tmp_path
    assert config.offline
    assert config.max_downloads == 2
    assert config.policy is ConflictPolicy.HIGHEST


@pytest.mark.parametrize(
    ("name", "value"),
    [("JDEP_OFFLINE", "maybe"), ("JDEP_WORKERS", "many"), ("JDEP_HTTP_TIMEOUT", "soon")],
)
def test_bad_env_values(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ConfigurationError):
        ResolverConfig.from_env()


def test_validate_rejects_out_of_range() -> None:
    with pytest.raises(ConfigurationError):
        ResolverConfig(workers=0).validate()
    with pytest.raises(ConfigurationError):
        ResolverConfig(conflict_policy="newest").validate()


def test_parse_repository() -> None:
    repo = parse_repository(" corp = https://maven.corp/releases ")
    assert repo.name == "corp"
    assert repo.url == "https://maven.corp/releases"
    for text in ("corp", "=https://x", "corp="):
        with pytest.raises(ConfigurationError):
            parse_repository(text)
