"""
Deltaflow exception hierarchy.

All domain-specific exceptions inherit from DeltaflowError, making it easy
to catch any framework error with a single base class while still allowing
fine-grained handling when needed.

Hierarchy::

    DeltaflowError
    ├── ConfigurationError          - config loading, parsing, validation
    ├── GraphError                  - declaration validation (never retried)
    │   ├── UnknownNodeReferenceError - edge or target names an undeclared node
    │   ├── DuplicateNodeError      - node name declared twice
    │   └── CyclicDependencyError   - dependency cycle detected
    ├── ExecutionError              - per-action execution failures
    │   ├── InvalidTransitionError  - illegal status transition
    │   ├── UpstreamFailedError     - upstream action not COMPLETED/SKIPPED
    │   ├── TransientError          - retryable engine failure
    │   └── PermanentError          - non-retryable engine failure
    ├── DeltaError                  - delta ledger misuse
    │   └── DeltaAlreadyRecordedError
    ├── NotFoundError               - graph/pipeline/action lookup
    └── StateStoreError             - state database read/write
        └── StoreUnavailableError   - backend unreachable, run left resumable
"""

from __future__ import annotations

from collections.abc import Iterable


class DeltaflowError(Exception):
    """Base exception for all Deltaflow errors."""

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


# --- Configuration -----------------------------------------------------------


class ConfigurationError(DeltaflowError):
    """Raised when configuration loading, parsing, or validation fails."""


# --- Graph validation --------------------------------------------------------


class GraphError(DeltaflowError):
    """Raised when node/edge declarations do not form a valid graph."""


class UnknownNodeReferenceError(GraphError):
    """Raised when an edge or planning target names an undeclared node."""

    def __init__(self, name: str, *, edge: tuple[str, str] | None = None) -> None:
        if edge is not None:
            message = f"Edge {edge[0]!r} -> {edge[1]!r} references unknown node {name!r}"
        else:
            message = f"Unknown node {name!r}"
        super().__init__(message, details={"node": name, "edge": edge})
        self.node_name = name
        self.edge = edge


class DuplicateNodeError(GraphError):
    """Raised when the same node name is declared more than once."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Node {name!r} is declared more than once", details={"node": name})
        self.node_name = name


class CyclicDependencyError(GraphError):
    """Raised when the dependency edges contain a cycle."""

    def __init__(self, nodes: Iterable[str]) -> None:
        names = sorted(set(nodes))
        super().__init__(
            f"Cyclic dependency between nodes: {', '.join(names)}",
            details={"nodes": names},
        )
        self.nodes = names


# --- Execution ---------------------------------------------------------------


class ExecutionError(DeltaflowError):
    """Raised when an action cannot be executed."""


class InvalidTransitionError(ExecutionError):
    """Raised when a status change is not allowed from the current status."""

    def __init__(self, subject: str, current: str, target: str) -> None:
        super().__init__(
            f"{subject}: cannot transition from {current} to {target}",
            details={"subject": subject, "from": current, "to": target},
        )
        self.subject = subject
        self.current = current
        self.target = target


class UpstreamFailedError(ExecutionError):
    """Raised when an action is started while an upstream action is not done."""

    def __init__(self, action: str, upstream: str, upstream_status: str) -> None:
        super().__init__(
            f"Action {action!r} cannot start: upstream {upstream!r} is {upstream_status}",
            details={"action": action, "upstream": upstream, "upstream_status": upstream_status},
        )
        self.action = action
        self.upstream = upstream
        self.upstream_status = upstream_status


class TransientError(ExecutionError):
    """Raised by a transformation engine for failures worth retrying."""


class PermanentError(ExecutionError):
    """Raised by a transformation engine for failures that must not be retried."""


# --- Delta ledger ------------------------------------------------------------


class DeltaError(DeltaflowError):
    """Raised when the delta ledger is used outside its contract."""


class DeltaAlreadyRecordedError(DeltaError):
    """Raised when a second delta is recorded for the same action."""

    def __init__(self, action_id: int) -> None:
        super().__init__(f"Action {action_id} already has a delta", details={"action_id": action_id})
        self.action_id = action_id


# --- Lookup ------------------------------------------------------------------


class NotFoundError(DeltaflowError):
    """Raised when a graph, pipeline or action does not exist."""

    def __init__(self, kind: str, key: object) -> None:
        super().__init__(f"{kind} not found: {key}", details={"kind": kind, "key": key})
        self.kind = kind
        self.key = key


# --- State store -------------------------------------------------------------


class StateStoreError(DeltaflowError):
    """Raised when the state database cannot be read or written."""


class StoreUnavailableError(StateStoreError):
    """Raised when the state backend fails mid-operation.

    Every status transition is a single atomic write, so a run aborted with
    this error can be resumed by re-reading the persisted statuses.
    """
