"""
Pipeline and PipelineAction records and their status rules.

Statuses are plain strings on the wire (``PENDING``, ``RUNNING``...), so the
enums are StrEnums and compare equal to what the store returns.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


class ActionStatus(StrEnum):
    """PipelineAction execution status."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class PipelineStatus(StrEnum):
    """Pipeline execution status (aggregated from its actions)."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class SkipReason(StrEnum):
    """Why an action was SKIPPED."""

    CANCELLED = "cancelled"
    UNCHANGED = "unchanged"


TERMINAL_STATUSES = frozenset({ActionStatus.COMPLETED, ActionStatus.FAILED, ActionStatus.SKIPPED})

# Upstream statuses that let a downstream action start
SATISFIED_STATUSES = frozenset({ActionStatus.COMPLETED, ActionStatus.SKIPPED})

# PENDING -> FAILED happens when an upstream failed.
# RUNNING -> PENDING is only used to reset actions left behind by a crash.
ACTION_TRANSITIONS: dict[ActionStatus, frozenset[ActionStatus]] = {
    ActionStatus.PENDING: frozenset({ActionStatus.RUNNING, ActionStatus.SKIPPED, ActionStatus.FAILED}),
    ActionStatus.RUNNING: frozenset({ActionStatus.COMPLETED, ActionStatus.FAILED, ActionStatus.PENDING}),
    ActionStatus.COMPLETED: frozenset(),
    ActionStatus.FAILED: frozenset(),
    ActionStatus.SKIPPED: frozenset(),
}


def can_transition(current: ActionStatus | str, target: ActionStatus | str) -> bool:
    """Whether an action may move from ``current`` to ``target``."""
    return ActionStatus(target) in ACTION_TRANSITIONS[ActionStatus(current)]


def is_terminal(status: ActionStatus | str) -> bool:
    return ActionStatus(status) in TERMINAL_STATUSES


@dataclass(frozen=True)
class PipelineAction:
    """One unit of work in a pipeline: materialize ``table_name``."""

    id: int
    pipeline_id: int
    table_name: str
    execution_order: int
    status: ActionStatus = ActionStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    skipped_reason: str | None = None
    attempts: int = 0

    @property
    def node_name(self) -> str:
        return self.table_name

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)


@dataclass(frozen=True)
class Pipeline:
    """One planned run over a specific graph."""

    id: int
    graph_id: int
    status: PipelineStatus = PipelineStatus.PENDING
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    target_nodes: tuple[str, ...] = ()
    force: bool = False


@dataclass
class PipelineView:
    """A pipeline together with its actions in execution order."""

    pipeline: Pipeline
    actions: list[PipelineAction] = field(default_factory=list)

    def action_for(self, node_name: str) -> PipelineAction | None:
        for action in self.actions:
            if action.table_name == node_name:
                return action
        return None

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in ActionStatus}
        for action in self.actions:
            counts[ActionStatus(action.status).value] += 1
        return counts


def aggregate_pipeline_status(statuses: Iterable[ActionStatus | str]) -> PipelineStatus:
    """
    Derive a pipeline's status from its actions' statuses.

    - PENDING while no action has left PENDING
    - RUNNING while some actions are terminal/running and others are not
    - COMPLETED when every action is COMPLETED or SKIPPED (also for no actions)
    - FAILED when every action is terminal and at least one FAILED
    """
    statuses = [ActionStatus(s) for s in statuses]
    if not statuses:
        return PipelineStatus.COMPLETED
    if all(s in TERMINAL_STATUSES for s in statuses):
        if ActionStatus.FAILED in statuses:
            return PipelineStatus.FAILED
        return PipelineStatus.COMPLETED
    if all(s == ActionStatus.PENDING for s in statuses):
        return PipelineStatus.PENDING
    return PipelineStatus.RUNNING
