"""
Testing utilities for Deltaflow pipelines.

Lets tests drive the Run Coordinator without a real transformation engine.

Usage:
    from deltaflow.testing import ScriptedEngine, build_test_graph
    from deltaflow.core.engine import Failure

    engine = ScriptedEngine({"staged": [Failure.permanent("bad input")]})
    store = MemoryStateStore()
    graph = build_test_graph(store, ["raw", "staged", "report"], [("raw", "staged"), ("staged", "report")])
    coordinator = RunCoordinator(store, engine, retry_policy=NO_RETRY_POLICY)
    result = await coordinator.run_pipeline(coordinator.create_pipeline(graph.id).id)
    assert result.failed == ["staged", "report"]
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from deltaflow.core.engine import ExecutionOutcome, ExecutionRequest, Success, coerce_outcome
from deltaflow.core.graph import Graph
from deltaflow.core.graph_store import GraphStore
from deltaflow.core.pipeline import ActionStatus
from deltaflow.core.state import MemoryStateStore, StateStore
from deltaflow.exceptions import StoreUnavailableError


@dataclass
class ScriptedEngine:
    """
    Engine whose results are scripted per node.

    ``script`` maps a node name to a list of results consumed one per call:
    an ExecutionOutcome, an exception instance (raised), or anything
    ``coerce_outcome`` accepts. Once a node's list is exhausted (or for nodes
    not in the script) ``default`` is returned.

    ``delays`` makes a node's execution take that many seconds; ``gates``
    blocks a node until the given event is set.
    """

    script: dict[str, list[Any]] = field(default_factory=dict)
    default: Any = field(default_factory=Success)
    delays: dict[str, float] = field(default_factory=dict)
    gates: dict[str, asyncio.Event] = field(default_factory=dict)
    requests: list[ExecutionRequest] = field(default_factory=list)
    running: int = 0
    max_running: int = 0

    def calls(self, node_name: str) -> list[ExecutionRequest]:
        """Requests received for ``node_name``, in order."""
        return [r for r in self.requests if r.node_name == node_name]

    @property
    def executed(self) -> list[str]:
        """Node names in the order their executions started."""
        return [r.node_name for r in self.requests]

    async def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        self.requests.append(request)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            gate = self.gates.get(request.node_name)
            if gate is not None:
                await gate.wait()
            delay = self.delays.get(request.node_name)
            if delay:
                await asyncio.sleep(delay)

            queue = self.script.get(request.node_name)
            result = queue.pop(0) if queue else self.default
            if isinstance(result, BaseException):
                raise result
            return coerce_outcome(result)
        finally:
            self.running -= 1


def artifact_paths(node_name: str, run: int = 1) -> Success:
    """A Success with one insert/update/delete artifact per kind, for assertions."""
    return Success(
        insert_path=f"deltas/{node_name}/{run}/insert.parquet",
        update_path=f"deltas/{node_name}/{run}/update.parquet",
        delete_path=f"deltas/{node_name}/{run}/delete.parquet",
    )


def build_test_graph(store: StateStore, nodes: Iterable[Any], edges: Iterable[Any] = ()) -> Graph:
    """Validate and persist a graph in ``store``."""
    return GraphStore(store).build(nodes, edges)


class FlakyStateStore(MemoryStateStore):
    """
    In-memory store that becomes unavailable on demand.

    ``fail_on`` names an ``(node_name, target_status)`` transition; the first
    compare-and-set attempting it raises StoreUnavailableError without
    writing anything. ``fail_delta_for`` names a node whose first delta
    write raises the same way, after the status change of an atomic
    completion was already applied in memory. Setting ``available = False``
    fails every call that writes.
    """

    def __init__(
        self,
        fail_on: tuple[str, ActionStatus] | None = None,
        fail_delta_for: str | None = None,
    ):
        super().__init__()
        self.fail_on = fail_on
        self.fail_delta_for = fail_delta_for
        self.available = True

    def _check_available(self) -> None:
        if not self.available:
            raise StoreUnavailableError("State store is unavailable")

    def compare_and_set_action(self, action_id, expected, status, **fields):
        self._check_available()
        if self.fail_on is not None:
            action = self.get_action(action_id)
            if (action.table_name, ActionStatus(status)) == self.fail_on:
                self.fail_on = None
                raise StoreUnavailableError(
                    f"State store went away while moving {action.table_name} to {status}"
                )
        return super().compare_and_set_action(action_id, expected, status, **fields)

    def insert_delta(self, action_id, insert_path, update_path, delete_path):
        self._check_available()
        if self.fail_delta_for is not None and self.get_action(action_id).table_name == self.fail_delta_for:
            self.fail_delta_for = None
            raise StoreUnavailableError(f"State store went away while recording the delta of action {action_id}")
        return super().insert_delta(action_id, insert_path, update_path, delete_path)

    def update_pipeline(self, pipeline_id, status, **kwargs):
        self._check_available()
        return super().update_pipeline(pipeline_id, status, **kwargs)
