"""Resolver configuration module.

Configuration is read from environment variables; command-line options
override individual fields.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from j_dep_core.exceptions import ConfigurationError
from j_dep_core.models import Repository
from j_dep_core.resolver import ConflictPolicy

DEFAULT_CACHE_DIR = Path("~/.cache/j-dep-core")
MAVEN_CENTRAL = Repository(name="central", url="https://repo.maven.apache.org/maven2/", snapshots=False)

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off", "")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None


@dataclass
class ResolverConfig:
    """Resolver configuration container.

    Attributes:
        cache_dir: Root of the on-disk artifact store
        offline: Never touch the network; only the store and local repositories are used
        max_downloads: Concurrent download limit
        workers: Resolver thread pool size
        http_timeout: HTTP timeout in seconds
        download_retries: Extra attempts after a checksum mismatch
        conflict_policy: "nearest" or "highest"
    """

    cache_dir: Path = DEFAULT_CACHE_DIR
    offline: bool = False
    max_downloads: int = 8
    workers: int = 8
    http_timeout: float = 30.0
    download_retries: int = 2
    conflict_policy: str = ConflictPolicy.NEAREST.value

    @classmethod
    def from_env(cls) -> "ResolverConfig":
        """Create configuration from environment variables.

        Environment variables:
            JDEP_CACHE_DIR: store root (default: "~/.cache/j-dep-core")
            JDEP_OFFLINE: offline mode (default: false)
            JDEP_MAX_DOWNLOADS: concurrent download limit (default: 8)
            JDEP_WORKERS: resolver threads (default: 8)
            JDEP_HTTP_TIMEOUT: HTTP timeout in seconds (default: 30)
            JDEP_DOWNLOAD_RETRIES: retries after a checksum mismatch (default: 2)
            JDEP_CONFLICT_POLICY: "nearest" or "highest" (default: "nearest")

        Raises:
            ConfigurationError: If a variable cannot be converted.
        """
        return cls(
            cache_dir=Path(os.getenv("JDEP_CACHE_DIR") or DEFAULT_CACHE_DIR).expanduser(),
            offline=_env_bool("JDEP_OFFLINE", False),
            max_downloads=_env_int("JDEP_MAX_DOWNLOADS", 8),
            workers=_env_int("JDEP_WORKERS", 8),
            http_timeout=_env_float("JDEP_HTTP_TIMEOUT", 30.0),
            download_retries=_env_int("JDEP_DOWNLOAD_RETRIES", 2),
            conflict_policy=os.getenv("JDEP_CONFLICT_POLICY", ConflictPolicy.NEAREST.value).strip().lower(),
        )

    def validate(self) -> None:
        """Validate the configuration.

        Raises:
            ConfigurationError: If a value is out of range.
        """
        if self.max_downloads < 1:
            raise ConfigurationError("JDEP_MAX_DOWNLOADS must be at least 1")
        if self.workers < 1:
            raise ConfigurationError("JDEP_WORKERS must be at least 1")
        if self.http_timeout <= 0:
            raise ConfigurationError("JDEP_HTTP_TIMEOUT must be positive")
        if self.download_retries < 0:
            raise ConfigurationError("JDEP_DOWNLOAD_RETRIES must not be negative")
        if self.conflict_policy not in {p.value for p in ConflictPolicy}:
            raise ConfigurationError(
                f"Unsupported conflict policy: {self.conflict_policy} (expected nearest or highest)"
            )

    @property
    def policy(self) -> ConflictPolicy:
        return ConflictPolicy(self.conflict_policy)


def parse_repository(text: str) -> Repository:
    """Parse ``name=url`` as given on the command line.

    Raises:
        ConfigurationError: If the text has no name or no url.
    """
    name, sep, url = text.partition("=")
    if not sep or not name.strip() or not url.strip():
        raise ConfigurationError(f"Invalid repository {text!r}, expected name=url")
    return Repository(name=name.strip(), url=url.strip())
