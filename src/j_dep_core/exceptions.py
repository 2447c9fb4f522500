"""Custom exceptions for j-dep-core."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from j_dep_core.models import UnresolvedDependency


class JDepError(Exception):
    """Base exception for j-dep-core."""


class ConfigurationError(JDepError):
    """Raised when settings are invalid or incomplete."""


class PomNotFoundError(JDepError):
    """Raised when a pom.xml file cannot be found."""


class PomParseError(JDepError):
    """Raised when a pom.xml (or maven-metadata.xml) file cannot be parsed."""


class PomModelError(JDepError):
    """Raised when required Maven model fields are missing or invalid."""


class ChecksumMismatchError(JDepError):
    """Raised when stored bytes no longer match their recorded digest."""


class ResolutionCancelledError(JDepError):
    """Raised when a resolution or assembly run is cancelled mid-flight."""


class UnresolvedDependenciesError(JDepError):
    """Raised when one or more coordinates could not be resolved anywhere."""

    def __init__(self, unresolved: Sequence[UnresolvedDependency]) -> None:
        self.unresolved = tuple(unresolved)
        lines = [f"{len(self.unresolved)} dependency(ies) could not be resolved:"]
        for item in self.unresolved:
            line = f"  - {item.coordinate}: {item.reason}"
            if item.required_by is not None:
                line += f" (required by {item.required_by})"
            lines.append(line)
        super().__init__("\n".join(lines))


class MergeConflict:
    """One assembly path whose merge strategy refused the candidates."""

    __slots__ = ("path", "strategy", "reason", "contributors")

    def __init__(self, path: str, strategy: str, reason: str, contributors: Sequence[str]) -> None:
        self.path = path
        self.strategy = strategy
        self.reason = reason
        self.contributors = tuple(contributors)

    def __repr__(self) -> str:
        return f"MergeConflict(path={self.path!r}, strategy={self.strategy!r}, reason={self.reason!r})"


class AssemblyConflictError(JDepError):
    """Raised when any merge group fails; lists every conflicting path."""

    def __init__(self, conflicts: Sequence[MergeConflict]) -> None:
        self.conflicts = tuple(conflicts)
        lines = [f"Assembly failed, {len(self.conflicts)} conflicting path(s):"]
        for conflict in self.conflicts:
            lines.append(f"  - {conflict.path} [{conflict.strategy}]: {conflict.reason}")
            for i, origin in enumerate(conflict.contributors, start=1):
                lines.append(f"      {i}) {origin}")
        super().__init__("\n".join(lines))


class ArchiveWriteError(JDepError):
    """Raised when the output archive cannot be written."""


class AssemblyInputError(JDepError):
    """Raised when a contributor archive cannot be opened or read."""
