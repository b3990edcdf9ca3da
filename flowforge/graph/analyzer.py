"""
Graph Analyzer - dependency levels and cycle diagnosis.

Levels come from in-degree-decrement layering: level 0 holds every node
without incoming edges, and a node joins the first level in which all of
its dependencies already sit in strictly earlier levels. Members of a level
are mutually independent and may run concurrently.

When some nodes never reach in-degree zero they are stuck on a cycle; a
depth-first search over just those nodes recovers the literal cycle path
for the error message.
"""

import logging
from collections.abc import Iterable, Sequence

from flowforge.graph.edge import Edge
from flowforge.graph.errors import CycleError
from flowforge.graph.node import Node

logger = logging.getLogger(__name__)


def _adjacency(
    node_ids: Sequence[str], edges: Iterable[Edge]
) -> tuple[dict[str, list[str]], dict[str, int]]:
    adjacency: dict[str, list[str]] = {node_id: [] for node_id in node_ids}
    in_degree: dict[str, int] = {node_id: 0 for node_id in node_ids}

    for edge in edges:
        # Edges to or from unknown nodes are a structural problem reported elsewhere
        if edge.source not in adjacency or edge.target not in adjacency:
            continue
        adjacency[edge.source].append(edge.target)
        in_degree[edge.target] += 1

    return adjacency, in_degree


def levels(nodes: Sequence[Node], edges: Sequence[Edge]) -> list[list[str]]:
    """
    Group nodes into dependency levels.

    Args:
        nodes: Nodes in play
        edges: Edges between them

    Returns:
        Node ID lists, one per level, in execution order. Within a level,
        IDs follow the order of ``nodes``.

    Raises:
        CycleError: If any nodes form a circular dependency
    """
    node_ids = [node.id for node in nodes]
    order = {node_id: index for index, node_id in enumerate(node_ids)}
    adjacency, in_degree = _adjacency(node_ids, edges)

    current = [node_id for node_id in node_ids if in_degree[node_id] == 0]
    result: list[list[str]] = []
    placed = 0

    while current:
        result.append(current)
        placed += len(current)

        next_level: list[str] = []
        for node_id in current:
            for target in adjacency[node_id]:
                in_degree[target] -= 1
                if in_degree[target] == 0:
                    next_level.append(target)

        current = sorted(next_level, key=order.__getitem__)

    if placed != len(node_ids):
        stuck = [node_id for node_id in node_ids if in_degree[node_id] > 0]
        path = find_cycle_path(stuck, adjacency)
        logger.debug(f"Cycle detected among {len(stuck)} node(s): {' -> '.join(path)}")
        raise CycleError(path)

    return result


def find_cycle_path(stuck: Sequence[str], adjacency: dict[str, list[str]]) -> list[str]:
    """
    Find one cycle among nodes that never reached in-degree zero.

    Returns:
        The cycle as a node path whose first and last entries are the same
        node, e.g. ``["A", "B", "C", "A"]``. Falls back to the stuck node
        IDs when no cycle is found (which does not happen for a stuck set
        produced by ``levels``).
    """
    if not stuck:
        return []

    candidates = set(stuck)
    visited: set[str] = set()

    for start in stuck:
        if start in visited:
            continue

        path: list[str] = []
        on_path: dict[str, int] = {}
        # Iterative DFS: (node, iterator over its successors)
        stack = [(start, iter(adjacency.get(start, [])))]
        path.append(start)
        on_path[start] = 0
        visited.add(start)

        while stack:
            node_id, successors = stack[-1]
            advanced = False
            for target in successors:
                if target not in candidates:
                    continue
                if target in on_path:
                    return path[on_path[target] :] + [target]
                if target in visited:
                    continue
                visited.add(target)
                on_path[target] = len(path)
                path.append(target)
                stack.append((target, iter(adjacency.get(target, []))))
                advanced = True
                break
            if not advanced:
                stack.pop()
                on_path.pop(path.pop())

    return list(stuck)


def dependencies(node_id: str, edges: Iterable[Edge]) -> list[str]:
    """Source node IDs of every edge entering ``node_id``."""
    return [edge.source for edge in edges if edge.target == node_id]


def dependents(node_id: str, edges: Iterable[Edge]) -> list[str]:
    """Target node IDs of every edge leaving ``node_id``."""
    return [edge.target for edge in edges if edge.source == node_id]


def descendants(node_id: str, edges: Sequence[Edge]) -> set[str]:
    """Every node reachable from ``node_id`` by following edges forward."""
    found: set[str] = set()
    to_visit = dependents(node_id, edges)
    while to_visit:
        current = to_visit.pop()
        if current in found:
            continue
        found.add(current)
        to_visit.extend(dependents(current, edges))
    return found
