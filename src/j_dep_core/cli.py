"""Typer CLI entry point for j-dep-core."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from j_dep_core.assembly import PREPEND_SCRIPT_EXEC_JAR, Assembly, assemble as assemble_archive
from j_dep_core.cache import ArtifactStore
from j_dep_core.config import MAVEN_CENTRAL, ResolverConfig, parse_repository
from j_dep_core.exceptions import JDepError
from j_dep_core.graph import build_graph, dependency_path, reverse_dependencies
from j_dep_core.merge import jar_strategy_table
from j_dep_core.models import Coordinate, Dependency, ResolutionResult, Scope
from j_dep_core.resolver import DependencyResolver
from j_dep_core.visualize import build_artifact_table, build_dependency_tree, format_path

app = typer.Typer(add_completion=False, help="Resolve Maven dependencies and assemble fat jars.")
console = Console()

RepoOption = Annotated[
    Optional[list[str]],
    typer.Option("--repo", help="Repository as name=url (repeatable). Defaults to Maven Central."),
]
CacheDirOption = Annotated[Optional[Path], typer.Option("--cache-dir", help="Artifact store root.")]
OfflineOption = Annotated[bool, typer.Option("--offline", help="Only use the store and local repositories.")]
ScopeOption = Annotated[str, typer.Option("--scope", help="Scope of the declared coordinates.")]
PolicyOption = Annotated[Optional[str], typer.Option("--policy", help="Conflict policy: nearest or highest.")]
VerboseOption = Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging.")]


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _resolve(
    coordinates: list[str],
    repos: list[str] | None,
    cache_dir: Path | None,
    offline: bool,
    scope: str,
    policy: str | None,
    verbose: bool,
) -> ResolutionResult:
    _setup_logging(verbose)
    config = ResolverConfig.from_env()
    if cache_dir is not None:
        config.cache_dir = cache_dir
    if offline:
        config.offline = True
    if policy is not None:
        config.conflict_policy = policy.strip().lower()
    config.validate()

    parsed_scope = Scope.parse(scope)
    if parsed_scope is None:
        raise typer.BadParameter(f"Unknown scope {scope!r}", param_hint="--scope")
    try:
        dependencies = [Dependency(coordinate=Coordinate.parse(c), scope=parsed_scope) for c in coordinates]
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from None

    repositories = [parse_repository(r) for r in repos] if repos else [MAVEN_CENTRAL]
    resolver = DependencyResolver(
        repositories,
        ArtifactStore(config.cache_dir),
        offline=config.offline,
        policy=config.policy,
        max_workers=config.workers,
        max_concurrent_downloads=config.max_downloads,
        timeout=config.http_timeout,
        retries=config.download_retries,
    )
    try:
        return resolver.resolve(dependencies)
    finally:
        resolver.client.close()


def _fail(exc: Exception) -> None:
    console.print(f"[bold red]Error:[/bold red] {exc}")
    raise typer.Exit(code=1) from None


@app.command()
def resolve(
    coordinates: Annotated[list[str], typer.Argument(help="Coordinates group:name:version[:classifier].")],
    repo: RepoOption = None,
    cache_dir: CacheDirOption = None,
    offline: OfflineOption = False,
    scope: ScopeOption = "compile",
    policy: PolicyOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Resolve coordinates and print the artifacts per scope."""
    try:
        result = _resolve(coordinates, repo, cache_dir, offline, scope, policy, verbose)
        console.print(build_artifact_table(result))
        for conflict in result.conflicts:
            console.print(f"[yellow]Conflict:[/yellow] {conflict.requested} lost to {conflict.selected}")
        result.raise_for_unresolved()
    except JDepError as exc:
        _fail(exc)


@app.command()
def tree(
    coordinates: Annotated[list[str], typer.Argument(help="Coordinates group:name:version[:classifier].")],
    repo: RepoOption = None,
    cache_dir: CacheDirOption = None,
    offline: OfflineOption = False,
    scope: ScopeOption = "compile",
    policy: PolicyOption = None,
    verbose: VerboseOption = False,
    depth: Annotated[Optional[int], typer.Option("--depth", help="Maximum depth to show.")] = None,
) -> None:
    """Print the resolved dependency tree."""
    try:
        result = _resolve(coordinates, repo, cache_dir, offline, scope, policy, verbose)
        console.print(build_dependency_tree(result, title=", ".join(coordinates), depth=depth))
        if not result.complete:
            raise typer.Exit(code=1)
    except JDepError as exc:
        _fail(exc)


@app.command()
def why(
    coordinates: Annotated[list[str], typer.Argument(help="Coordinates group:name:version[:classifier].")],
    target: Annotated[str, typer.Option("--target", help="Target GAV: groupId:artifactId:version")],
    repo: RepoOption = None,
    cache_dir: CacheDirOption = None,
    offline: OfflineOption = False,
    scope: ScopeOption = "compile",
    policy: PolicyOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Show how TARGET ends up in the graph (shortest path and direct dependents)."""
    try:
        result = _resolve(coordinates, repo, cache_dir, offline, scope, policy, verbose)
        g = build_graph(result)
        path = dependency_path(g, target)
        if path is None:
            console.print(f"[dim]{target} is not part of the resolved graph.[/dim]")
            raise typer.Exit(code=1)
        console.print(format_path(path[1:]))

        table = Table(title=f"Reverse dependencies (who depends on {target})")
        table.add_column("#", style="dim", width=6)
        table.add_column("Dependent (predecessor)")
        for i, gav in enumerate(reverse_dependencies(g, target), start=1):
            table.add_row(str(i), gav)
        console.print(table)
    except JDepError as exc:
        _fail(exc)


@app.command()
def assemble(
    coordinates: Annotated[list[str], typer.Argument(help="Coordinates group:name:version[:classifier].")],
    out: Annotated[Path, typer.Option("--out", help="Output archive path.")],
    own: Annotated[
        Optional[list[Path]],
        typer.Option("--own", help="Own build output: a directory, jar or file (repeatable)."),
    ] = None,
    repo: RepoOption = None,
    cache_dir: CacheDirOption = None,
    offline: OfflineOption = False,
    policy: PolicyOption = None,
    verbose: VerboseOption = False,
    no_compress: Annotated[bool, typer.Option("--no-compress", help="Store entries uncompressed.")] = False,
    executable: Annotated[bool, typer.Option("--exec", help="Prepend a launcher script.")] = False,
) -> None:
    """Resolve the runtime classpath and merge it with own outputs into one jar."""
    try:
        result = _resolve(coordinates, repo, cache_dir, offline, "compile", policy, verbose)
        result.raise_for_unresolved()
        with Assembly() as assembly:
            for path in own or []:
                if path.is_dir():
                    assembly.add_directory(path, own=True)
                elif path.suffix.lower() == ".jar":
                    assembly.add_archive(path, own=True)
                else:
                    assembly.add_file(path, own=True)
            assembly.add_artifacts(result.classpath_artifacts(Scope.RUNTIME))
            written = assemble_archive(
                assembly,
                out,
                table=jar_strategy_table(),
                compress=not no_compress,
                prepend=PREPEND_SCRIPT_EXEC_JAR if executable else b"",
            )
        console.print(f"[green]Wrote[/green] {written}")
    except JDepError as exc:
        _fail(exc)


def main() -> None:
    """Console-script entry point."""
    app()
