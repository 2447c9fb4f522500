"""Transitive dependency resolution over a chain of Maven repositories.

A `DependencyResolver` holds configuration only. Each call to `resolve`
creates a `ResolutionRun` that owns every piece of in-memory state for that
run (single-flight tables, snapshot pins, worker pool) and is discarded
afterwards; the artifact store is the only thing that persists.

The walk is breadth-first. Every level is fetched in parallel and then
processed sequentially in declaration order, so the output does not depend on
thread scheduling.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Hashable, Iterable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

import requests

from j_dep_core.cache import ArtifactStore
from j_dep_core.exceptions import (
    ConfigurationError,
    PomModelError,
    PomNotFoundError,
    PomParseError,
    ResolutionCancelledError,
)
from j_dep_core.models import (
    TRANSITIVE_SCOPES,
    UNKNOWN_VERSION,
    Coordinate,
    Dependency,
    Exclusion,
    Repository,
    ResolutionResult,
    ResolvedArtifact,
    ResolvedEdge,
    Scope,
    UnresolvedDependency,
    VersionConflict,
)
from j_dep_core.parser import (
    PomDependency,
    PomModel,
    apply_management,
    combine_management,
    effective_dependencies,
    import_entries,
    interpolate,
    managed_entries,
    merge_parent,
    parse_pom,
)
from j_dep_core.repository import FetchResult, FetchStatus, RepositoryClient, SnapshotPins, repository_chain
from j_dep_core.versions import compare_versions

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Rewrites each transitive dependency before it is followed, e.g. to ask for sources jars.
DependencyMapper = Callable[[Dependency], Dependency]


class ConflictPolicy(str, Enum):
    """How competing versions of one module are settled."""

    NEAREST = "nearest"
    HIGHEST = "highest"


class CancellationToken:
    """Cooperative cancellation flag shared by a run and its callers."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ResolutionCancelledError("Resolution was cancelled")


class SingleFlight:
    """Run a computation at most once per key; concurrent and later callers share the outcome.

    Exceptions are shared too: every caller of a failed key sees the same
    exception object.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._futures: dict[Hashable, Future] = {}

    def do(self, key: Hashable, fn: Callable[[], T]) -> T:
        with self._lock:
            future = self._futures.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._futures[key] = future
        if not owner:
            return future.result()
        try:
            result = fn()
        except BaseException as exc:
            future.set_exception(exc)
            raise
        future.set_result(result)
        return result

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._futures

    def __len__(self) -> int:
        with self._lock:
            return len(self._futures)


def propagate_scope(parent: Scope, child: Scope) -> Scope | None:
    """Effective scope of a transitive dependency, or None when it is not followed.

    compile+compile is compile; any runtime on either side gives runtime.
    Provided and test edges never propagate, on either side.
    """
    if parent not in TRANSITIVE_SCOPES or child not in TRANSITIVE_SCOPES:
        return None
    if Scope.RUNTIME in (parent, child):
        return Scope.RUNTIME
    return Scope.COMPILE


@dataclass(frozen=True)
class NodeResolution:
    """What one run learned about one coordinate."""

    coordinate: Coordinate
    artifact: ResolvedArtifact | None
    dependencies: tuple[Dependency, ...] = ()
    management: tuple[PomDependency, ...] = ()
    pom_only: bool = False
    reason: str = ""


@dataclass(frozen=True)
class _PomFetch:
    result: FetchResult
    model: PomModel | None = None


@dataclass
class _Pending:
    dependency: Dependency
    parent: Coordinate | None
    depth: int
    exclusions: frozenset[Exclusion]
    management: tuple[PomDependency, ...] = ()


@dataclass
class _Node:
    resolution: NodeResolution
    depth: int
    scopes: set[Scope] = field(default_factory=set)
    expanded: set[Scope] = field(default_factory=set)


class ResolutionRun:
    """State of one resolution: single-flights, snapshot pins and the worker pool."""

    def __init__(
        self,
        client: RepositoryClient,
        chain: Sequence[Repository],
        *,
        max_workers: int = 8,
        cancel: CancellationToken | None = None,
    ):
        self.client = client
        self.chain = list(chain)
        self.cancel = cancel or CancellationToken()
        self.pins = SnapshotPins()
        self.nodes = SingleFlight()
        self.poms = SingleFlight()
        self.pool = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="j-dep-resolve")

    def close(self) -> None:
        self.pool.shutdown(wait=True, cancel_futures=True)

    def __enter__(self) -> ResolutionRun:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def resolve_coordinate(self, coordinate: Coordinate) -> ResolvedArtifact | None:
        """The run's artifact for `coordinate`; repeated calls return the same object."""
        return self.resolve_node(coordinate).artifact

    def resolve_node(self, coordinate: Coordinate) -> NodeResolution:
        return self.nodes.do(coordinate, lambda: self._resolve_node(coordinate))

    def _fetch_pom(self, coordinate: Coordinate, repository: Repository) -> _PomFetch:
        def _load() -> _PomFetch:
            result = self.client.fetch(coordinate, repository, self.pins, self.cancel)
            if not result.found:
                return _PomFetch(result)
            try:
                model = parse_pom(result.path.read_bytes(), f"{coordinate} in {repository.name}")
            except (OSError, PomParseError, PomModelError) as exc:
                logger.warning("Unusable POM %s from %s: %s", coordinate, repository.name, exc)
                return _PomFetch(FetchResult.not_found(repository, f"unusable POM: {exc}"))
            return _PomFetch(result, model)

        return self.poms.do((coordinate, repository.name), _load)

    def _pom_from_chain(self, coordinate: Coordinate) -> PomModel | None:
        for repository in self.chain:
            if not repository.accepts(coordinate):
                continue
            fetched = self._fetch_pom(coordinate, repository)
            if fetched.model is not None:
                return fetched.model
        return None

    def effective_pom(self, raw: PomModel, seen: frozenset[Coordinate] = frozenset()) -> PomModel:
        """Merge parents, interpolate, and fold in imported dependencyManagement.

        Raises:
            PomModelError: On parent or import cycles.
            PomNotFoundError: When a parent POM is missing from every repository.
        """
        visited = set(seen) | {raw.coordinate()}
        model = raw
        parent = raw.parent
        while parent is not None:
            parent_coordinate = parent.coordinate()
            if parent_coordinate in visited:
                raise PomModelError(f"Parent cycle through {parent_coordinate}")
            visited.add(parent_coordinate)
            parent_model = self._pom_from_chain(parent_coordinate)
            if parent_model is None:
                raise PomNotFoundError(f"Parent POM {parent_coordinate} not found")
            model = merge_parent(model, parent_model)
            parent = parent_model.parent

        model = interpolate(model)

        for bom in import_entries(model):
            if bom in visited:
                raise PomModelError(f"Import cycle through {bom}")
            bom_model = self._pom_from_chain(bom)
            if bom_model is None:
                logger.warning("Imported POM %s not found, ignoring its dependencyManagement", bom)
                continue
            imported = self.effective_pom(bom_model, frozenset(visited | {bom}))
            managed = [d for d in imported.dependency_management if d.scope != "import"]
            model = model.model_copy(update={"dependency_management": model.dependency_management + managed})
        return model

    def _resolve_node(self, coordinate: Coordinate) -> NodeResolution:
        self.cancel.raise_if_cancelled()
        if coordinate.version == UNKNOWN_VERSION:
            return NodeResolution(coordinate, None, reason="version could not be determined")

        reasons: list[str] = []
        mismatch = False
        for repository in self.chain:
            if not repository.accepts(coordinate):
                continue
            pom_fetch = self._fetch_pom(coordinate.pom(), repository)
            if pom_fetch.model is None:
                mismatch = mismatch or pom_fetch.result.status is FetchStatus.CHECKSUM_MISMATCH
                reasons.append(pom_fetch.result.detail)
                continue
            try:
                pom = self.effective_pom(pom_fetch.model)
            except (PomNotFoundError, PomModelError) as exc:
                logger.warning("Cannot use POM of %s from %s: %s", coordinate, repository.name, exc)
                reasons.append(str(exc))
                continue

            pom_only = pom.packaging == "pom" and coordinate.type == "jar" and not coordinate.classifier
            if pom_only or coordinate.type == "pom":
                result = pom_fetch.result
            else:
                result = self.client.fetch(coordinate, repository, self.pins, self.cancel)
                if not result.found:
                    mismatch = mismatch or result.status is FetchStatus.CHECKSUM_MISMATCH
                    reasons.append(result.detail)
                    continue

            artifact = ResolvedArtifact(
                coordinate=coordinate,
                path=result.path,
                repository=repository.name,
                checksum=result.checksum,
            )
            logger.debug("Resolved %s from %s", coordinate, repository.name)
            return NodeResolution(
                coordinate,
                artifact,
                dependencies=tuple(effective_dependencies(pom)),
                management=tuple(managed_entries(pom)),
                pom_only=pom_only,
            )

        if mismatch:
            reason = "checksum mismatch in every repository that has it"
        elif not self.chain:
            reason = "no repositories configured"
        else:
            reason = "not found in " + ", ".join(r.name for r in self.chain if r.accepts(coordinate))
            if not any(r.accepts(coordinate) for r in self.chain):
                reason = "no repository serves " + ("snapshots" if coordinate.is_snapshot else "releases")
        logger.debug("Unresolved %s: %s", coordinate, "; ".join(r for r in reasons if r))
        return NodeResolution(coordinate, None, reason=reason)

    def resolve_level(self, coordinates: Iterable[Coordinate]) -> dict[Coordinate, NodeResolution]:
        """Resolve distinct coordinates on the pool, returning results in input order."""
        futures: dict[Coordinate, Future] = {}
        for coordinate in coordinates:
            if coordinate not in futures:
                futures[coordinate] = self.pool.submit(self.resolve_node, coordinate)
        return {coordinate: future.result() for coordinate, future in futures.items()}


class _Walk:
    """One breadth-first pass over the graph with a fixed set of version pins."""

    def __init__(
        self,
        run: ResolutionRun,
        policy: ConflictPolicy,
        pins: dict[tuple, str],
        mapper: DependencyMapper | None = None,
    ):
        self.run = run
        self.policy = policy
        self.mapper = mapper
        self.pins = pins
        self.pins_changed = False
        self.selected: dict[tuple, Coordinate] = {}
        self.nodes: dict[Coordinate, _Node] = {}
        self.unresolved: dict[Coordinate, UnresolvedDependency] = {}
        self.conflicts: dict[tuple, VersionConflict] = {}
        self.edges: dict[ResolvedEdge, None] = {}

    def _conflict(self, requested: Coordinate, selected: Coordinate, parent: Coordinate | None) -> None:
        logger.debug("Version conflict: %s requested by %s, %s selected", requested, parent or "root", selected)
        self.conflicts.setdefault((requested, selected, parent), VersionConflict(
            requested=requested, selected=selected, required_by=parent
        ))

    def _mediate(self, pending: _Pending) -> Coordinate | None:
        """Decide whether an edge is followed; returns the coordinate to use."""
        requested = pending.dependency.coordinate
        key = requested.module_key
        if requested.version == UNKNOWN_VERSION:
            return requested
        coordinate = requested
        pinned = self.pins.get(key)
        if pinned is not None and compare_versions(requested.version, pinned) < 0:
            coordinate = requested.with_version(pinned)
            self._conflict(requested, coordinate, pending.parent)

        current = self.selected.get(key)
        if current is None:
            self.selected[key] = coordinate
            return coordinate
        if current == coordinate:
            return coordinate

        if (
            self.policy is ConflictPolicy.HIGHEST
            and coordinate.version != UNKNOWN_VERSION
            and compare_versions(coordinate.version, current.version) > 0
        ):
            logger.debug("Pinning %s to %s over %s", ":".join(key[:2]), coordinate.version, current.version)
            self.pins[key] = coordinate.version
            self.pins_changed = True
            return None
        self._conflict(coordinate, current, pending.parent)
        return None

    def run_walk(self, roots: Sequence[Dependency]) -> None:
        frontier = [_Pending(dep, None, 0, dep.exclusions) for dep in roots]
        while frontier:
            self.run.cancel.raise_if_cancelled()
            accepted: list[tuple[_Pending, Coordinate]] = []
            for pending in frontier:
                coordinate = self._mediate(pending)
                if coordinate is not None:
                    accepted.append((pending, coordinate))

            resolutions = self.run.resolve_level(c for _, c in accepted if c not in self.unresolved)

            next_frontier: list[_Pending] = []
            for pending, coordinate in accepted:
                if coordinate in self.unresolved:
                    continue
                resolution = resolutions[coordinate]
                if resolution.artifact is None:
                    self.unresolved[coordinate] = UnresolvedDependency(
                        coordinate=coordinate, reason=resolution.reason, required_by=pending.parent
                    )
                    continue
                next_frontier.extend(self._accept(pending, coordinate, resolution))
            frontier = next_frontier

    def _accept(self, pending: _Pending, coordinate: Coordinate, resolution: NodeResolution) -> list[_Pending]:
        scope = pending.dependency.scope
        node = self.nodes.get(coordinate)
        if node is None:
            node = self.nodes[coordinate] = _Node(resolution, pending.depth)
        if scope not in node.scopes:
            logger.debug("%s is in scope %s", coordinate, scope.value)
            node.scopes.add(scope)
        self.edges.setdefault(ResolvedEdge(parent=pending.parent, child=coordinate, scope=scope), None)

        if scope not in TRANSITIVE_SCOPES or scope in node.expanded:
            return []
        node.expanded.add(scope)

        # Management of the requesting POMs is applied first and travels further down.
        management = combine_management(pending.management, resolution.management)
        children = []
        for dep in resolution.dependencies:
            dep = apply_management(dep, pending.management)
            if dep.optional:
                logger.debug("Skipping optional %s of %s", dep.coordinate, coordinate)
                continue
            child_scope = propagate_scope(scope, dep.scope)
            if child_scope is None:
                continue
            rule = next((e for e in sorted(pending.exclusions, key=str) if e.matches(dep.coordinate)), None)
            if rule is not None:
                logger.debug("Excluding %s below %s (%s)", dep.coordinate, coordinate, rule)
                continue
            child = dep.model_copy(update={"scope": child_scope})
            if self.mapper is not None:
                mapped = self.mapper(child)
                if mapped != child:
                    logger.debug("Mapped %s to %s", child.label(), mapped.label())
                    child = mapped
            children.append(
                _Pending(
                    child,
                    coordinate,
                    pending.depth + 1,
                    pending.exclusions | child.exclusions,
                    management,
                )
            )
        return children

    def result(self) -> ResolutionResult:
        by_scope: dict[Scope, set[ResolvedArtifact]] = {scope: set() for scope in Scope}
        for node in self.nodes.values():
            if node.resolution.pom_only:
                continue
            for scope in node.scopes:
                by_scope[scope].add(node.resolution.artifact)
        return ResolutionResult(
            artifacts={scope: frozenset(members) for scope, members in by_scope.items()},
            unresolved=tuple(self.unresolved.values()),
            conflicts=tuple(self.conflicts.values()),
            edges=tuple(self.edges),
        )


class DependencyResolver:
    """Resolves Dependencies against an ordered list of Repositories.

    Example:
        >>> resolver = DependencyResolver([central], ArtifactStore("~/.cache/j-dep-core"))
        >>> result = resolver.resolve([Dependency(coordinate=Coordinate.parse("g:a:1.0"))])
        >>> result.raise_for_unresolved()
        >>> result.classpath(Scope.RUNTIME)
    """

    def __init__(
        self,
        repositories: Sequence[Repository],
        store: ArtifactStore,
        *,
        offline: bool = False,
        policy: ConflictPolicy = ConflictPolicy.NEAREST,
        mapper: DependencyMapper | None = None,
        max_workers: int = 8,
        max_concurrent_downloads: int = 8,
        timeout: float = 30.0,
        retries: int = 2,
        client: RepositoryClient | None = None,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.repositories = list(repositories)
        self.chain = repository_chain(self.repositories)
        self._check_names()
        self.store = store
        self.policy = ConflictPolicy(policy)
        self.mapper = mapper
        self.max_workers = max_workers
        self.client = client or RepositoryClient(
            store,
            offline=offline,
            session=session,
            timeout=timeout,
            retries=retries,
            max_concurrent_downloads=max_concurrent_downloads,
            clock=clock,
        )

    def _check_names(self) -> None:
        by_name: dict[str, Repository] = {}
        for repository in self.repositories:
            for candidate in (repository.cache, repository):
                if candidate is None:
                    continue
                other = by_name.setdefault(candidate.name, candidate)
                if other != candidate:
                    raise ConfigurationError(f"Duplicate repository name {candidate.name!r}")

    @property
    def offline(self) -> bool:
        return self.client.offline

    def open_run(self, cancel: CancellationToken | None = None) -> ResolutionRun:
        return ResolutionRun(self.client, self.chain, max_workers=self.max_workers, cancel=cancel)

    def resolve(
        self,
        dependencies: Sequence[Dependency],
        cancel: CancellationToken | None = None,
    ) -> ResolutionResult:
        """Compute the transitive closure of `dependencies`.

        Raises:
            ResolutionCancelledError: If `cancel` is triggered during the run.
        """
        pins: dict[tuple, str] = {}
        with self.open_run(cancel) as run:
            while True:
                walk = _Walk(run, self.policy, pins, self.mapper)
                walk.run_walk(dependencies)
                if not walk.pins_changed:
                    break
                logger.debug("Higher versions pinned, walking again")
        result = walk.result()
        logger.debug(
            "Resolved %d artifact(s), %d unresolved, %d conflict(s)",
            len({a for members in result.artifacts.values() for a in members}),
            len(result.unresolved),
            len(result.conflicts),
        )
        return result


def resolve(
    dependencies: Sequence[Dependency],
    repositories: Sequence[Repository],
    store: ArtifactStore,
    **kwargs: Any,
) -> ResolutionResult:
    """Convenience wrapper creating a resolver for a single call."""
    resolver = DependencyResolver(repositories, store, **kwargs)
    try:
        return resolver.resolve(dependencies)
    finally:
        resolver.client.close()
