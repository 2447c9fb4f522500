"""Pydantic models for coordinates, dependencies, repositories and resolution output."""

from __future__ import annotations

import fnmatch
from enum import Enum
from functools import total_ordering
from pathlib import Path
from urllib.parse import unquote, urlparse

from pydantic import BaseModel, ConfigDict, Field

from j_dep_core.checksum import Checksum
from j_dep_core.exceptions import UnresolvedDependenciesError


UNKNOWN_VERSION = "Unknown"
SNAPSHOT_SUFFIX = "-SNAPSHOT"
DEFAULT_TYPE = "jar"

SNAPSHOT_ALWAYS = 0
SNAPSHOT_DAILY = 24 * 60 * 60
SNAPSHOT_NEVER = 100 * 365 * SNAPSHOT_DAILY

# https://maven.apache.org/ref/3.6.1/maven-core/artifact-handlers.html
TYPE_TO_EXTENSION: dict[str, str] = {
    "bundle": "jar",
    "ejb": "jar",
    "ejb-client": "jar",
    "test-jar": "jar",
    "maven-plugin": "jar",
    "java-source": "jar",
    "javadoc": "jar",
}


class Scope(str, Enum):
    """Classpath scope of a dependency edge."""

    COMPILE = "compile"
    RUNTIME = "runtime"
    PROVIDED = "provided"
    TEST = "test"

    @classmethod
    def parse(cls, value: str | None) -> Scope | None:
        if value is None:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


# Scopes whose own dependencies are followed.
TRANSITIVE_SCOPES = frozenset({Scope.COMPILE, Scope.RUNTIME})

# Which artifact scopes make up the classpath requested for a scope.
CLASSPATH_SCOPES: dict[Scope, tuple[Scope, ...]] = {
    Scope.COMPILE: (Scope.COMPILE, Scope.PROVIDED),
    Scope.RUNTIME: (Scope.COMPILE, Scope.RUNTIME),
    Scope.PROVIDED: (Scope.PROVIDED,),
    Scope.TEST: (Scope.COMPILE, Scope.RUNTIME, Scope.PROVIDED, Scope.TEST),
}


@total_ordering
class Coordinate(BaseModel):
    """Maven coordinates (group, name, version, classifier, type)."""

    model_config = ConfigDict(frozen=True)

    group: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    version: str = Field(default=UNKNOWN_VERSION, min_length=1)
    classifier: str = ""
    type: str = DEFAULT_TYPE

    @classmethod
    def parse(cls, text: str) -> Coordinate:
        """Parse ``group:name:version[:classifier][@type]``.

        Raises:
            ValueError: If the text does not have 3 or 4 colon separated parts.
        """
        body, _, type_ = text.strip().partition("@")
        parts = body.split(":")
        if len(parts) not in (3, 4) or not all(parts[:3]):
            raise ValueError(f"Invalid coordinate {text!r}, expected group:name:version[:classifier]")
        classifier = parts[3] if len(parts) == 4 else ""
        return cls(
            group=parts[0],
            name=parts[1],
            version=parts[2],
            classifier=classifier,
            type=type_ or DEFAULT_TYPE,
        )

    def compact(self) -> str:
        """Return a compact string representation.

        Returns:
            A string like `group:name:version[:classifier]`, with `@type` when
            the type is not the default.
        """
        text = f"{self.group}:{self.name}:{self.version}"
        if self.classifier:
            text += f":{self.classifier}"
        if self.type != DEFAULT_TYPE:
            text += f"@{self.type}"
        return text

    def __str__(self) -> str:
        return self.compact()

    def sort_key(self) -> tuple[str, str, str, str, str]:
        return (self.group, self.name, self.version, self.classifier, self.type)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Coordinate):
            return NotImplemented
        return self.sort_key() < other.sort_key()

    @property
    def is_snapshot(self) -> bool:
        return self.version.endswith(SNAPSHOT_SUFFIX)

    @property
    def module_key(self) -> tuple[str, str, str, str]:
        """Identity used for version conflict mediation (everything but the version)."""
        return (self.group, self.name, self.classifier, self.type)

    @property
    def extension(self) -> str:
        return TYPE_TO_EXTENSION.get(self.type, self.type)

    def pom(self) -> Coordinate:
        return Coordinate(group=self.group, name=self.name, version=self.version, type="pom")

    def with_version(self, version: str) -> Coordinate:
        if version == self.version:
            return self
        return self.model_copy(update={"version": version})


class Exclusion(BaseModel):
    """A (group, name) pattern; `*` and other shell wildcards are allowed."""

    model_config = ConfigDict(frozen=True)

    group: str = "*"
    name: str = "*"

    @classmethod
    def parse(cls, text: str) -> Exclusion:
        group, _, name = text.strip().partition(":")
        return cls(group=group or "*", name=name or "*")

    def matches(self, coordinate: Coordinate) -> bool:
        return fnmatch.fnmatchcase(coordinate.group, self.group) and fnmatch.fnmatchcase(
            coordinate.name, self.name
        )

    def __str__(self) -> str:
        return f"{self.group}:{self.name}"


class Dependency(BaseModel):
    """A requested edge to a coordinate."""

    model_config = ConfigDict(frozen=True)

    coordinate: Coordinate
    scope: Scope = Scope.COMPILE
    exclusions: frozenset[Exclusion] = frozenset()
    optional: bool = False

    def excludes(self, coordinate: Coordinate) -> Exclusion | None:
        for rule in sorted(self.exclusions, key=str):
            if rule.matches(coordinate):
                return rule
        return None

    def label(self) -> str:
        """Return a user-facing label for the dependency.

        Returns:
            A formatted string including the coordinate and scope when not compile.
        """
        parts: list[str] = [self.coordinate.compact()]
        if self.scope is not Scope.COMPILE:
            parts.append(f"(scope={self.scope.value})")
        if self.optional:
            parts.append("(optional)")
        if self.exclusions:
            parts.append("(excludes " + ", ".join(sorted(str(e) for e in self.exclusions)) + ")")
        return " ".join(parts)


class Repository(BaseModel):
    """A Maven layout repository, remote (http/https) or local (file:// or a path)."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)
    releases: bool = True
    snapshots: bool = True
    cache: Repository | None = None
    snapshot_update_delay: int = Field(default=SNAPSHOT_DAILY, ge=0)
    tolerate_checksum_mismatch: bool = False

    @property
    def is_local(self) -> bool:
        scheme = urlparse(self.url).scheme.lower()
        # Single letter schemes are Windows drive letters.
        return scheme in ("", "file") or len(scheme) == 1

    @property
    def local_path(self) -> Path | None:
        if not self.is_local:
            return None
        parsed = urlparse(self.url)
        if parsed.scheme.lower() == "file":
            return Path(unquote(parsed.path))
        return Path(self.url)

    def accepts(self, coordinate: Coordinate) -> bool:
        return self.snapshots if coordinate.is_snapshot else self.releases

    def __str__(self) -> str:
        text = f"{self.name} at {self.url}"
        if self.cache is not None:
            text += f" (cached by {self.cache.name})"
        return text


class SnapshotMetadata(BaseModel):
    """Latest snapshot build known for one coordinate in one repository."""

    model_config = ConfigDict(frozen=True)

    timestamp: str | None = None
    build_number: int | None = None
    last_checked: float = 0.0

    @property
    def unique(self) -> bool:
        return self.timestamp is not None and self.build_number is not None

    @property
    def snapshot_version(self) -> str | None:
        """`timestamp-buildNumber` for unique snapshots, None for non-unique ones."""
        if not self.unique:
            return None
        return f"{self.timestamp}-{self.build_number}"


@total_ordering
class ResolvedArtifact(BaseModel):
    """A coordinate backed by a verified local file."""

    model_config = ConfigDict(frozen=True)

    coordinate: Coordinate
    path: Path
    repository: str
    checksum: Checksum

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, ResolvedArtifact):
            return NotImplemented
        return (self.coordinate.sort_key(), str(self.path)) < (other.coordinate.sort_key(), str(other.path))


class UnresolvedDependency(BaseModel):
    model_config = ConfigDict(frozen=True)

    coordinate: Coordinate
    reason: str
    required_by: Coordinate | None = None


class VersionConflict(BaseModel):
    """A version that lost mediation against the selected one."""

    model_config = ConfigDict(frozen=True)

    requested: Coordinate
    selected: Coordinate
    required_by: Coordinate | None = None


class ResolvedEdge(BaseModel):
    """An accepted edge of the resolved graph; `parent` is None for declared roots."""

    model_config = ConfigDict(frozen=True)

    parent: Coordinate | None
    child: Coordinate
    scope: Scope


class ResolutionResult(BaseModel):
    """Flat output of one resolution run."""

    model_config = ConfigDict(frozen=True)

    artifacts: dict[Scope, frozenset[ResolvedArtifact]] = Field(default_factory=dict)
    unresolved: tuple[UnresolvedDependency, ...] = ()
    conflicts: tuple[VersionConflict, ...] = ()
    edges: tuple[ResolvedEdge, ...] = ()

    @property
    def complete(self) -> bool:
        return not self.unresolved

    def scope_artifacts(self, scope: Scope) -> list[ResolvedArtifact]:
        return sorted(self.artifacts.get(scope, frozenset()))

    def classpath_artifacts(self, scope: Scope) -> list[ResolvedArtifact]:
        seen: dict[Coordinate, ResolvedArtifact] = {}
        for member in CLASSPATH_SCOPES[scope]:
            for artifact in self.artifacts.get(member, frozenset()):
                seen.setdefault(artifact.coordinate, artifact)
        return sorted(seen.values())

    def classpath(self, scope: Scope) -> list[Path]:
        """Paths making up the classpath for `scope`, in coordinate order."""
        return [a.path for a in self.classpath_artifacts(scope)]

    def raise_for_unresolved(self) -> None:
        if self.unresolved:
            raise UnresolvedDependenciesError(self.unresolved)
