from __future__ import annotations

from collections import deque

import networkx as nx

from j_dep_core.models import ResolutionResult

# Node standing for the caller; declared dependencies hang off it.
ROOT = "<root>"


def build_graph(result: ResolutionResult, root: str = ROOT) -> nx.DiGraph:
    """Build a directed graph where A -> B means A depends on B.

    Nodes are compact coordinates. Edges carry the set of scopes they were
    accepted in (`scopes`) and a comma-joined `scope` label.
    """
    g = nx.DiGraph()
    g.add_node(root)
    for edge in result.edges:
        a = root if edge.parent is None else edge.parent.compact()
        b = edge.child.compact()
        g.add_node(a)
        g.add_node(b)
        if g.has_edge(a, b):
            g.edges[a, b]["scopes"].add(edge.scope.value)
        else:
            g.add_edge(a, b, scopes={edge.scope.value})
    for a, b in g.edges:
        g.edges[a, b]["scope"] = ", ".join(sorted(g.edges[a, b]["scopes"]))
    return g


def reverse_dependencies(g: nx.DiGraph, target_gav: str) -> list[str]:
    """Return predecessors of target_gav (who depends on it)."""
    if target_gav not in g:
        return []
    return sorted(str(n) for n in g.predecessors(target_gav))


def dependency_path(g: nx.DiGraph, target_gav: str, root: str = ROOT) -> list[str] | None:
    """Shortest chain from `root` to `target_gav`, both ends included; None if unreachable."""
    if target_gav not in g or root not in g:
        return None
    try:
        return [str(n) for n in nx.shortest_path(g, root, target_gav)]
    except nx.NetworkXNoPath:
        return None


def nodes_within_depth(g: nx.DiGraph, root: str = ROOT, *, depth: int | None = None) -> set[str]:
    """Return nodes within BFS depth from root; `depth=None` means all reachable nodes."""
    if root not in g:
        return set()
    if depth is None:
        return {root, *(str(n) for n in nx.descendants(g, root))}

    q: deque[tuple[str, int]] = deque([(root, 0)])
    seen: set[str] = {root}
    while q:
        node, dist = q.popleft()
        if dist >= depth:
            continue
        for nb in g.successors(node):
            nb_str = str(nb)
            if nb_str in seen:
                continue
            seen.add(nb_str)
            q.append((nb_str, dist + 1))
    return seen
