"""
Graph Store and Graph Builder.

Graphs are validated in memory first and only then persisted, so an invalid
declaration set never leaves a partial graph behind. Persisted graphs are
never overwritten; a declaration change creates a new snapshot.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from deltaflow.core.graph import Graph, GraphChanges, NodeDecl, build_graph, diff_graphs
from deltaflow.core.state import StateStore
from deltaflow.utils.logging import get_logger

logger = get_logger("deltaflow.graph_store")


class GraphStore:
    """Builds, persists and retrieves immutable graph snapshots."""

    def __init__(self, store: StateStore):
        self.store = store

    def build(self, node_decls: Iterable[Any], edge_decls: Iterable[Any]) -> Graph:
        """
        Validate declarations and persist a new graph snapshot.

        Raises:
            DuplicateNodeError, UnknownNodeReferenceError, CyclicDependencyError
        """
        return self._persist(build_graph(node_decls, edge_decls))

    def get(self, graph_id: int) -> Graph:
        return self.store.get_graph(graph_id)

    def latest(self) -> Graph | None:
        return self.store.latest_graph()

    def save_if_changed(self, node_decls: Iterable[Any], edge_decls: Iterable[Any]) -> Graph:
        """
        Reuse the latest graph when declarations match it, else persist a new one.

        Validation always runs, so invalid declarations fail even when an
        older valid graph exists.
        """
        candidate = build_graph(node_decls, edge_decls)
        latest = self.latest()
        if latest is not None and not diff_graphs(latest, candidate).has_changes():
            logger.debug(f"Declarations unchanged, reusing graph {latest.id}")
            return latest
        return self._persist(candidate)

    def changes_between(self, previous_id: int | None, current: Graph) -> GraphChanges:
        """Changes from a stored graph (or from nothing) to ``current``."""
        if previous_id is None:
            return diff_graphs(None, current)
        if previous_id == current.id:
            return GraphChanges()
        return diff_graphs(self.get(previous_id), current)

    def _persist(self, candidate: Graph) -> Graph:
        graph = self.store.create_graph(
            [NodeDecl(name=node.name, config=node.config) for node in candidate.nodes],
            list(candidate.edges),
        )
        logger.info(f"Created graph {graph.id} ({len(graph.nodes)} nodes, {len(graph.edges)} edges)")
        return graph
