"""
Topological planner.

``plan`` turns a graph and a set of target nodes into the deterministic
execution order of one pipeline run: the targets plus all their transitive
ancestors, ordered with Kahn's algorithm and a lexicographic tie-break.
"""

from __future__ import annotations

import heapq
from collections.abc import Iterable

from deltaflow.core.graph import Graph, find_cycle
from deltaflow.exceptions import CyclicDependencyError, UnknownNodeReferenceError


def induced_subgraph(graph: Graph, targets: Iterable[str] | None = None) -> dict[str, set[str]]:
    """
    Successor mapping of the nodes needed to build ``targets``.

    The targets plus every transitive ancestor; the whole graph when no
    targets are given.

    Raises:
        UnknownNodeReferenceError: a target is not a node of ``graph``
    """
    targets = list(targets or [])
    for name in targets:
        if name not in graph:
            raise UnknownNodeReferenceError(name)

    if targets:
        selected = set(targets) | graph.ancestors(targets)
    else:
        selected = set(graph.node_names)

    return {name: {succ for succ in graph.dependents(name) if succ in selected} for name in selected}


def topological_order(adjacency: dict[str, set[str]]) -> list[str]:
    """
    Kahn's algorithm over a successor mapping.

    When several nodes are ready at once the lexicographically smallest name
    goes first, so the same graph always yields the same order.

    Raises:
        CyclicDependencyError: some nodes never reach zero in-degree
    """
    in_degree = {name: 0 for name in adjacency}
    for successors in adjacency.values():
        for succ in successors:
            in_degree[succ] += 1

    ready = [name for name, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)
    order: list[str] = []

    while ready:
        name = heapq.heappop(ready)
        order.append(name)
        for succ in adjacency[name]:
            in_degree[succ] -= 1
            if in_degree[succ] == 0:
                heapq.heappush(ready, succ)

    if len(order) != len(adjacency):
        remaining = {name: adjacency[name] & (set(adjacency) - set(order)) for name in adjacency if name not in order}
        raise CyclicDependencyError(find_cycle(remaining) or remaining)

    return order


def plan(graph: Graph, targets: Iterable[str] | None = None) -> list[str]:
    """
    Ordered node names for one pipeline run.

    The position in the returned list is the action's ``execution_order``.

    Example:
        >>> graph = build_graph(["raw", "staged", "report"], [("raw", "staged"), ("staged", "report")])
        >>> plan(graph, ["report"])
        ['raw', 'staged', 'report']
    """
    return topological_order(induced_subgraph(graph, targets))


def execution_levels(graph: Graph, targets: Iterable[str] | None = None) -> list[list[str]]:
    """
    Group the plan into layers of mutually independent nodes.

    A node's level is one more than the highest level among its upstream
    nodes; source nodes are level 0. Nodes within a level are sorted.
    """
    adjacency = induced_subgraph(graph, targets)
    level: dict[str, int] = {}
    for name in topological_order(adjacency):
        upstream = [level[dep] for dep in graph.dependencies(name) if dep in adjacency]
        level[name] = max(upstream) + 1 if upstream else 0

    layers: list[list[str]] = [[] for _ in range(max(level.values(), default=-1) + 1)]
    for name in sorted(level):
        layers[level[name]].append(name)
    return layers
