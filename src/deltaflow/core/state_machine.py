"""
Execution state machine for pipelines and their actions.

Every action transition is one compare-and-set in the store:

    PENDING -> RUNNING -> COMPLETED | FAILED
    PENDING -> SKIPPED | FAILED (upstream failed)
    RUNNING -> PENDING (crash reset on resume only)

The pipeline's own status is re-derived from its actions after each change.
"""

from __future__ import annotations

from collections.abc import Iterable

from deltaflow.core.delta import Delta, DeltaLedger
from deltaflow.core.engine import Success
from deltaflow.core.graph import Graph
from deltaflow.core.pipeline import (
    SATISFIED_STATUSES,
    ActionStatus,
    Pipeline,
    PipelineAction,
    PipelineStatus,
    PipelineView,
    SkipReason,
    aggregate_pipeline_status,
    can_transition,
)
from deltaflow.core.state import StateStore, utcnow
from deltaflow.exceptions import InvalidTransitionError, UpstreamFailedError
from deltaflow.utils.logging import get_logger

logger = get_logger("deltaflow.state_machine")


def upstream_failure_message(upstream: str) -> str:
    return f"Upstream task {upstream} failed"


class StateMachine:
    """Applies status transitions to persisted pipelines and actions."""

    def __init__(self, store: StateStore, ledger: DeltaLedger | None = None):
        self.store = store
        self.ledger = ledger or DeltaLedger(store)
        self._graphs: dict[int, Graph] = {}

    # --- lookups ---

    def graph_for(self, pipeline: Pipeline) -> Graph:
        """Graph snapshot a pipeline runs over (cached, graphs are immutable)."""
        if pipeline.graph_id not in self._graphs:
            self._graphs[pipeline.graph_id] = self.store.get_graph(pipeline.graph_id)
        return self._graphs[pipeline.graph_id]

    def describe(self, pipeline_id: int) -> PipelineView:
        """The pipeline with its actions in execution order."""
        return PipelineView(self.store.get_pipeline(pipeline_id), self.store.get_actions(pipeline_id))

    def upstream_actions(self, action: PipelineAction) -> list[PipelineAction]:
        """Actions of the same pipeline whose nodes ``action``'s node depends on."""
        pipeline = self.store.get_pipeline(action.pipeline_id)
        dependencies = set(self.graph_for(pipeline).dependencies(action.table_name))
        return [a for a in self.store.get_actions(action.pipeline_id) if a.table_name in dependencies]

    # --- transitions ---

    def _transition(
        self, action_id: int, sources: Iterable[ActionStatus], target: ActionStatus, **fields
    ) -> PipelineAction:
        sources = set(sources)
        current = self.store.get_action(action_id)
        if current.status not in sources or not can_transition(current.status, target):
            raise InvalidTransitionError(f"Action {current.table_name!r}", str(current.status), str(target))
        updated = self.store.compare_and_set_action(action_id, sources, target, **fields)
        if updated is None:
            # Lost a race with another writer
            latest = self.store.get_action(action_id)
            raise InvalidTransitionError(f"Action {latest.table_name!r}", str(latest.status), str(target))
        logger.debug(f"Action {updated.table_name} ({action_id}): {current.status} -> {target}")
        return updated

    def start_action(self, action_id: int) -> PipelineAction:
        """
        PENDING -> RUNNING.

        Every upstream action must be COMPLETED or SKIPPED. Otherwise the
        action is marked FAILED and UpstreamFailedError is raised.
        """
        action = self.store.get_action(action_id)
        if action.status != ActionStatus.PENDING:
            raise InvalidTransitionError(f"Action {action.table_name!r}", str(action.status), str(ActionStatus.RUNNING))

        for upstream in self.upstream_actions(action):
            if upstream.status not in SATISFIED_STATUSES:
                self.fail_blocked(action_id, upstream.table_name)
                raise UpstreamFailedError(action.table_name, upstream.table_name, str(upstream.status))

        started = self._transition(action_id, {ActionStatus.PENDING}, ActionStatus.RUNNING, started_at=utcnow())
        pipeline = self.store.get_pipeline(action.pipeline_id)
        if pipeline.status == PipelineStatus.PENDING:
            self.store.update_pipeline(pipeline.id, PipelineStatus.RUNNING, started_at=started.started_at)
        return started

    def record_attempt(self, action_id: int, attempts: int) -> PipelineAction:
        """Persist the number of attempts made so far on a RUNNING action."""
        updated = self.store.compare_and_set_action(
            action_id, {ActionStatus.RUNNING}, ActionStatus.RUNNING, attempts=attempts
        )
        if updated is None:
            current = self.store.get_action(action_id)
            raise InvalidTransitionError(f"Action {current.table_name!r}", str(current.status), str(ActionStatus.RUNNING))
        return updated

    def complete_action(self, action_id: int, result: Success | None = None) -> tuple[PipelineAction, Delta]:
        """
        RUNNING -> COMPLETED together with the action's single delta.

        The target node's ``last_updated_at`` is stamped in the same write,
        so a store failure leaves the action RUNNING with no delta.
        """
        result = result or Success()
        current = self.store.get_action(action_id)
        if current.status != ActionStatus.RUNNING:
            raise InvalidTransitionError(
                f"Action {current.table_name!r}", str(current.status), str(ActionStatus.COMPLETED)
            )
        written = self.ledger.record_completion(
            action_id, utcnow(), result.insert_path, result.update_path, result.delete_path
        )
        if written is None:
            latest = self.store.get_action(action_id)
            raise InvalidTransitionError(
                f"Action {latest.table_name!r}", str(latest.status), str(ActionStatus.COMPLETED)
            )
        completed, delta = written
        logger.debug(f"Action {completed.table_name} ({action_id}): {current.status} -> {completed.status}")
        return completed, delta

    def fail_action(self, action_id: int, message: str) -> PipelineAction:
        """RUNNING -> FAILED with an error message."""
        failed = self._transition(
            action_id, {ActionStatus.RUNNING}, ActionStatus.FAILED, completed_at=utcnow(), error_message=message
        )
        logger.debug(f"Action {failed.table_name} failed: {message}")
        return failed

    def fail_blocked(self, action_id: int, upstream: str) -> PipelineAction:
        """PENDING -> FAILED because ``upstream`` did not complete."""
        return self._transition(
            action_id,
            {ActionStatus.PENDING},
            ActionStatus.FAILED,
            completed_at=utcnow(),
            error_message=upstream_failure_message(upstream),
        )

    def skip_action(self, action_id: int, reason: SkipReason | str) -> PipelineAction | None:
        """
        PENDING -> SKIPPED.

        Returns None when the action already left PENDING (e.g. it started
        before a cancellation got to it).
        """
        action = self.store.compare_and_set_action(
            action_id, {ActionStatus.PENDING}, ActionStatus.SKIPPED, completed_at=utcnow(), skipped_reason=str(reason)
        )
        if action is not None:
            logger.debug(f"Action {action.table_name} ({action_id}): PENDING -> SKIPPED ({reason})")
        return action

    def reset_crashed(self, pipeline_id: int) -> list[PipelineAction]:
        """RUNNING -> PENDING for actions no live execution owns any more."""
        reset = []
        for action in self.store.get_actions(pipeline_id):
            if action.status == ActionStatus.RUNNING:
                updated = self._transition(action.id, {ActionStatus.RUNNING}, ActionStatus.PENDING, started_at=None)
                logger.warning(f"Action {action.table_name} was left RUNNING, reset to PENDING")
                reset.append(updated)
        return reset

    def refresh_pipeline_status(self, pipeline_id: int) -> Pipeline:
        """Store the status aggregated from the pipeline's actions."""
        pipeline = self.store.get_pipeline(pipeline_id)
        status = aggregate_pipeline_status(a.status for a in self.store.get_actions(pipeline_id))
        if status == pipeline.status:
            return pipeline

        now = utcnow()
        if status in (PipelineStatus.COMPLETED, PipelineStatus.FAILED):
            return self.store.update_pipeline(
                pipeline_id, status, started_at=pipeline.started_at or now, completed_at=now
            )
        if status == PipelineStatus.RUNNING:
            return self.store.update_pipeline(
                pipeline_id, status, started_at=pipeline.started_at or now, completed_at=None
            )
        return self.store.update_pipeline(pipeline_id, status)
