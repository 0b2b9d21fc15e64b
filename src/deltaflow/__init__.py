"""
Deltaflow - incremental execution core for data pipelines.

Builds dependency graphs of data-producing nodes, plans deterministic
pipeline runs, tracks every action's status and records the delta each
completed action produced.
"""

from deltaflow.core.api import create_state_store, resume, run
from deltaflow.core.coordinator import ActionOutcome, RunCoordinator, RunResult
from deltaflow.core.delta import Delta, DeltaLedger
from deltaflow.core.engine import (
    ExecutionMode,
    ExecutionRequest,
    Failure,
    FailureKind,
    FunctionEngine,
    Success,
    TransformationEngine,
)
from deltaflow.core.graph import Edge, Graph, GraphChanges, Node, NodeDecl, affected_nodes, build_graph, diff_graphs
from deltaflow.core.graph_store import GraphStore
from deltaflow.core.pipeline import ActionStatus, Pipeline, PipelineAction, PipelineStatus, SkipReason
from deltaflow.core.retry import RetryPolicy
from deltaflow.core.scheduler import execution_levels, plan
from deltaflow.core.state import DuckDBStateStore, MemoryStateStore, StateStore
from deltaflow.core.state_machine import StateMachine

__version__ = "0.1.0"

__all__ = [
    "run",
    "resume",
    "create_state_store",
    "RunCoordinator",
    "RunResult",
    "ActionOutcome",
    "Delta",
    "DeltaLedger",
    "ExecutionMode",
    "ExecutionRequest",
    "Failure",
    "FailureKind",
    "FunctionEngine",
    "Success",
    "TransformationEngine",
    "Edge",
    "Graph",
    "GraphChanges",
    "Node",
    "NodeDecl",
    "affected_nodes",
    "build_graph",
    "diff_graphs",
    "GraphStore",
    "ActionStatus",
    "Pipeline",
    "PipelineAction",
    "PipelineStatus",
    "SkipReason",
    "RetryPolicy",
    "execution_levels",
    "plan",
    "DuckDBStateStore",
    "MemoryStateStore",
    "StateStore",
    "StateMachine",
]
