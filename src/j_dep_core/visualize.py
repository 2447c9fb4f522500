"""Rich rendering utilities for resolution results."""

from __future__ import annotations

from rich.table import Table
from rich.tree import Tree

from j_dep_core.graph import ROOT, build_graph, nodes_within_depth
from j_dep_core.models import ResolutionResult, Scope


def build_dependency_tree(result: ResolutionResult, *, title: str = "dependencies", depth: int | None = None) -> Tree:
    """Build a Rich Tree of the resolved graph.

    A node met again below another parent is shown once more but not expanded.

    Args:
        result: Output of a resolution run.
        title: Label of the tree root.
        depth: Maximum depth to render, None for the full graph.

    Returns:
        A Rich Tree object for rendering.
    """
    g = build_graph(result)
    visible = nodes_within_depth(g, ROOT, depth=depth)
    root = Tree(f"[bold]{title}[/bold]")
    if g.out_degree(ROOT) == 0:
        root.add("[dim]No dependencies resolved[/dim]")

    expanded: set[str] = set()

    def _add(branch: Tree, node: str, level: int) -> None:
        for child in sorted(g.successors(node)):
            if child not in visible:
                continue
            label = child
            scope = g.edges[node, child]["scope"]
            if scope != Scope.COMPILE.value:
                label += f" [dim]({scope})[/dim]"
            if child in expanded:
                branch.add(label + " [dim](*)[/dim]")
                continue
            expanded.add(child)
            sub = branch.add(label)
            if depth is None or level + 1 < depth:
                _add(sub, child, level + 1)

    _add(root, ROOT, 0)

    if result.conflicts:
        conflicts = root.add("[yellow]version conflicts[/yellow]")
        for c in result.conflicts:
            by = f" required by {c.required_by}" if c.required_by is not None else ""
            conflicts.add(f"{c.requested} -> {c.selected.version}{by}")
    if result.unresolved:
        unresolved = root.add("[red]unresolved[/red]")
        for u in result.unresolved:
            unresolved.add(f"{u.coordinate}: {u.reason}")
    return root


def build_artifact_table(result: ResolutionResult, scopes: list[Scope] | None = None) -> Table:
    """Table of resolved artifacts per scope."""
    table = Table(title="Resolved artifacts")
    table.add_column("Scope", style="cyan")
    table.add_column("Coordinate")
    table.add_column("Repository", style="dim")
    table.add_column("Path", style="dim")
    for scope in scopes or list(Scope):
        for artifact in result.scope_artifacts(scope):
            table.add_row(scope.value, artifact.coordinate.compact(), artifact.repository, str(artifact.path))
    return table


def format_path(path: list[str]) -> str:
    return " -> ".join(path)
