"""
Dependency graph model and validation.

A Graph is an immutable snapshot of nodes and ``from_node -> to_node`` edges,
where ``to_node`` depends on the output of ``from_node``. Nodes and edges are
kept in flat tuples; lookups go through name -> index tables.
"""

from __future__ import annotations

import json
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from deltaflow.exceptions import (
    CyclicDependencyError,
    DuplicateNodeError,
    UnknownNodeReferenceError,
)

# Three-color marking for cycle detection
_UNVISITED, _IN_PROGRESS, _DONE = 0, 1, 2


@dataclass(frozen=True)
class NodeDecl:
    """Declaration of one data asset / transformation target."""

    name: str
    config: dict[str, Any] | None = None


@dataclass(frozen=True)
class Node:
    """A node as stored in a Graph snapshot."""

    name: str
    config: dict[str, Any] | None = None
    id: int | None = None
    last_updated_at: datetime | None = None


@dataclass(frozen=True)
class Edge:
    """``to_node`` depends on ``from_node``."""

    from_node: str
    to_node: str

    def as_tuple(self) -> tuple[str, str]:
        return (self.from_node, self.to_node)


@dataclass(frozen=True)
class Graph:
    """
    Immutable node/edge snapshot.

    ``id`` and ``created_at`` are assigned when the graph is persisted; a
    graph built in memory only has neither.
    """

    nodes: tuple[Node, ...]
    edges: tuple[Edge, ...]
    id: int | None = None
    created_at: datetime | None = None

    _index: dict[str, int] = field(init=False, repr=False, compare=False)
    _successors: dict[str, tuple[str, ...]] = field(init=False, repr=False, compare=False)
    _predecessors: dict[str, tuple[str, ...]] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        index = {node.name: i for i, node in enumerate(self.nodes)}
        successors: dict[str, list[str]] = {node.name: [] for node in self.nodes}
        predecessors: dict[str, list[str]] = {node.name: [] for node in self.nodes}
        for edge in self.edges:
            successors[edge.from_node].append(edge.to_node)
            predecessors[edge.to_node].append(edge.from_node)
        object.__setattr__(self, "_index", index)
        object.__setattr__(self, "_successors", {k: tuple(sorted(v)) for k, v in successors.items()})
        object.__setattr__(self, "_predecessors", {k: tuple(sorted(v)) for k, v in predecessors.items()})

    def __contains__(self, name: object) -> bool:
        return name in self._index

    def __len__(self) -> int:
        return len(self.nodes)

    @property
    def node_names(self) -> list[str]:
        return [node.name for node in self.nodes]

    def get_node(self, name: str) -> Node:
        """Return the node called ``name``."""
        try:
            return self.nodes[self._index[name]]
        except KeyError:
            raise UnknownNodeReferenceError(name) from None

    def dependencies(self, name: str) -> tuple[str, ...]:
        """Direct upstream nodes of ``name`` (sorted)."""
        self.get_node(name)
        return self._predecessors[name]

    def dependents(self, name: str) -> tuple[str, ...]:
        """Direct downstream nodes of ``name`` (sorted)."""
        self.get_node(name)
        return self._successors[name]

    def adjacency(self) -> dict[str, set[str]]:
        """Mapping of node name to its successor set."""
        return {name: set(succ) for name, succ in self._successors.items()}

    def edge_set(self) -> set[tuple[str, str]]:
        return {edge.as_tuple() for edge in self.edges}

    def ancestors(self, names: Iterable[str]) -> set[str]:
        """All transitive upstream nodes of ``names`` (excluding the names themselves)."""
        return self._walk(names, self._predecessors)

    def descendants(self, names: Iterable[str]) -> set[str]:
        """All transitive downstream nodes of ``names`` (excluding the names themselves)."""
        return self._walk(names, self._successors)

    def _walk(self, names: Iterable[str], neighbours: dict[str, tuple[str, ...]]) -> set[str]:
        start = list(names)
        for name in start:
            self.get_node(name)
        seen: set[str] = set()
        queue = deque(start)
        while queue:
            current = queue.popleft()
            for nxt in neighbours[current]:
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)
        return seen - set(start)


def normalize_node_decls(node_decls: Iterable[Any]) -> list[NodeDecl]:
    """
    Accept node declarations in the forms callers commonly have at hand.

    Each item may be a NodeDecl, a Node, a bare name, a ``(name, config)``
    pair, or a mapping with ``name`` and optional ``config``.
    """
    decls = []
    for item in node_decls:
        if isinstance(item, NodeDecl):
            decls.append(item)
        elif isinstance(item, Node):
            decls.append(NodeDecl(item.name, item.config))
        elif isinstance(item, str):
            decls.append(NodeDecl(item))
        elif isinstance(item, Mapping):
            decls.append(NodeDecl(item["name"], item.get("config")))
        elif isinstance(item, tuple) and len(item) == 2:
            decls.append(NodeDecl(item[0], item[1]))
        else:
            raise TypeError(f"Unsupported node declaration: {item!r}")
    return decls


def normalize_edge_decls(edge_decls: Iterable[Any]) -> list[Edge]:
    """Accept Edge objects, ``(from, to)`` pairs or ``{"from": .., "to": ..}`` mappings."""
    edges = []
    for item in edge_decls:
        if isinstance(item, Edge):
            edges.append(item)
        elif isinstance(item, Mapping):
            edges.append(Edge(item["from"], item["to"]))
        elif isinstance(item, (tuple, list)) and len(item) == 2:
            edges.append(Edge(item[0], item[1]))
        else:
            raise TypeError(f"Unsupported edge declaration: {item!r}")
    return edges


def find_cycle(adjacency: Mapping[str, Iterable[str]]) -> list[str] | None:
    """
    Find one cycle in a successor mapping.

    Depth-first traversal with three-color marking: reaching a node that is
    still in progress is a back-edge, and the nodes on the stack from that
    node onwards form the cycle.

    Returns:
        The cycle's nodes in traversal order, or None if the graph is acyclic
    """
    color = {name: _UNVISITED for name in adjacency}

    for root in sorted(adjacency):
        if color[root] != _UNVISITED:
            continue
        color[root] = _IN_PROGRESS
        path = [root]
        stack = [iter(sorted(adjacency[root]))]
        while stack:
            for nxt in stack[-1]:
                state = color.get(nxt, _DONE)
                if state == _IN_PROGRESS:
                    return path[path.index(nxt):]
                if state == _UNVISITED:
                    color[nxt] = _IN_PROGRESS
                    path.append(nxt)
                    stack.append(iter(sorted(adjacency[nxt])))
                    break
            else:
                color[path.pop()] = _DONE
                stack.pop()
    return None


def validate_declarations(node_decls: Iterable[Any], edge_decls: Iterable[Any]) -> tuple[list[NodeDecl], list[Edge]]:
    """
    Validate declarations and return them normalized.

    Raises:
        DuplicateNodeError: a node name is declared twice
        UnknownNodeReferenceError: an edge endpoint is not a declared node
        CyclicDependencyError: the edges form a cycle
    """
    nodes = normalize_node_decls(node_decls)
    edges = normalize_edge_decls(edge_decls)

    seen: set[str] = set()
    for node in nodes:
        if node.name in seen:
            raise DuplicateNodeError(node.name)
        seen.add(node.name)

    adjacency: dict[str, set[str]] = {node.name: set() for node in nodes}
    unique_edges: list[Edge] = []
    for edge in edges:
        for endpoint in (edge.from_node, edge.to_node):
            if endpoint not in adjacency:
                raise UnknownNodeReferenceError(endpoint, edge=edge.as_tuple())
        if edge.to_node in adjacency[edge.from_node]:
            continue
        adjacency[edge.from_node].add(edge.to_node)
        unique_edges.append(edge)

    cycle = find_cycle(adjacency)
    if cycle is not None:
        raise CyclicDependencyError(cycle)

    return nodes, unique_edges


def build_graph(node_decls: Iterable[Any], edge_decls: Iterable[Any]) -> Graph:
    """Validate declarations and build an in-memory (unpersisted) Graph."""
    nodes, edges = validate_declarations(node_decls, edge_decls)
    return Graph(
        nodes=tuple(Node(name=decl.name, config=decl.config) for decl in nodes),
        edges=tuple(edges),
    )


def declarations_from_config(config: Any) -> tuple[list[NodeDecl], list[Edge]]:
    """
    Turn the ``nodes`` config section into node and edge declarations.

    Example::

        nodes:
          raw: {}
          staged:
            depends_on: [raw]
            config: {sql: "SELECT * FROM raw"}
    """
    data = config.data if hasattr(config, "data") else config
    section = data.get("nodes") or {}
    nodes: list[NodeDecl] = []
    edges: list[Edge] = []
    for name in sorted(section):
        spec = section[name] or {}
        depends_on = spec.get("depends_on") or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        if name in depends_on:
            raise CyclicDependencyError([name])
        nodes.append(NodeDecl(name=name, config=spec.get("config")))
        edges.extend(Edge(dep, name) for dep in depends_on)
    return nodes, edges


def config_fingerprint(config: dict[str, Any] | None) -> str | None:
    """Canonical JSON form of a node config payload (None stays None)."""
    if config is None:
        return None
    return json.dumps(config, sort_keys=True, separators=(",", ":"), default=str)


# --- Change detection & impact analysis ---------------------------------------


@dataclass
class GraphChanges:
    """Difference between two graph snapshots."""

    added_nodes: list[str] = field(default_factory=list)
    removed_nodes: list[str] = field(default_factory=list)
    added_edges: list[tuple[str, str]] = field(default_factory=list)
    removed_edges: list[tuple[str, str]] = field(default_factory=list)
    changed_config: list[str] = field(default_factory=list)

    def has_changes(self) -> bool:
        return bool(
            self.added_nodes or self.removed_nodes or self.added_edges or self.removed_edges or self.changed_config
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "added_nodes": self.added_nodes,
            "removed_nodes": self.removed_nodes,
            "added_edges": [list(e) for e in self.added_edges],
            "removed_edges": [list(e) for e in self.removed_edges],
            "changed_config": self.changed_config,
        }


def diff_graphs(previous: Graph | None, current: Graph) -> GraphChanges:
    """
    Compare two snapshots.

    With no previous graph everything in ``current`` counts as added.
    """
    if previous is None:
        return GraphChanges(
            added_nodes=sorted(current.node_names),
            added_edges=sorted(current.edge_set()),
        )

    old_nodes = set(previous.node_names)
    new_nodes = set(current.node_names)
    old_edges = previous.edge_set()
    new_edges = current.edge_set()

    changed_config = sorted(
        name
        for name in old_nodes & new_nodes
        if config_fingerprint(previous.get_node(name).config) != config_fingerprint(current.get_node(name).config)
    )

    return GraphChanges(
        added_nodes=sorted(new_nodes - old_nodes),
        removed_nodes=sorted(old_nodes - new_nodes),
        added_edges=sorted(new_edges - old_edges),
        removed_edges=sorted(old_edges - new_edges),
        changed_config=changed_config,
    )


def affected_nodes(graph: Graph, changes: GraphChanges) -> list[str]:
    """
    Nodes of ``graph`` whose output may differ because of ``changes``.

    Added, removed and reconfigured nodes, the targets of added/removed
    edges, and everything downstream of those.
    """
    seeds = set(changes.added_nodes) | set(changes.removed_nodes) | set(changes.changed_config)
    seeds.update(to for _, to in changes.added_edges)
    seeds.update(to for _, to in changes.removed_edges)

    present = {name for name in seeds if name in graph}
    affected = present | graph.descendants(present)
    # Removed nodes are reported even though they no longer exist in ``graph``
    affected |= seeds - present
    return sorted(affected)
