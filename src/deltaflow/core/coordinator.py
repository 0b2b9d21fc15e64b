"""
Run Coordinator - drives one pipeline run end to end.

Each PENDING action gets its own asyncio task that waits for the tasks of its
upstream nodes, so independent branches run concurrently (bounded by
``max_concurrency``) while the dependency order is always respected.
A single action failing never aborts the run; its downstream actions are
marked FAILED instead. Store failures abort the run and leave it resumable.

Store calls are synchronous and run on the event loop thread, so every
transition briefly pauses the other branches. Only engine work overlaps;
engines must keep blocking work off the loop (``FunctionEngine`` uses a
thread pool).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime

from deltaflow.config.settings import ExecutionSettings
from deltaflow.core.delta import Delta, DeltaLedger
from deltaflow.core.engine import (
    ExecutionMode,
    ExecutionOutcome,
    ExecutionRequest,
    Failure,
    Success,
    TransformationEngine,
    coerce_outcome,
)
from deltaflow.core.graph import Graph, affected_nodes
from deltaflow.core.graph_store import GraphStore
from deltaflow.core.pipeline import (
    SATISFIED_STATUSES,
    ActionStatus,
    Pipeline,
    PipelineAction,
    PipelineStatus,
    PipelineView,
    SkipReason,
)
from deltaflow.core.retry import DEFAULT_RETRY_POLICY, RetryManager, RetryPolicy
from deltaflow.core.scheduler import plan
from deltaflow.core.state import StateStore
from deltaflow.core.state_machine import StateMachine
from deltaflow.exceptions import (
    ExecutionError,
    InvalidTransitionError,
    NotFoundError,
    StateStoreError,
    UpstreamFailedError,
)
from deltaflow.utils.logging import get_logger

logger = get_logger("deltaflow.coordinator")


@dataclass
class ActionOutcome:
    """Final state of one action as seen after a run."""

    action_id: int
    node_name: str
    execution_order: int
    status: ActionStatus
    attempts: int = 0
    error_message: str | None = None
    skipped_reason: str | None = None
    mode: ExecutionMode | None = None
    delta: Delta | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    # Nodes whose own failure caused this action to fail (itself, if it failed on its own)
    root_causes: tuple[str, ...] = ()


@dataclass
class RunResult:
    """Aggregate outcome of a pipeline run."""

    pipeline_id: int
    graph_id: int
    status: PipelineStatus
    actions: list[ActionOutcome] = field(default_factory=list)
    # Nodes started by this invocation (empty for a no-op resume)
    executed: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == PipelineStatus.COMPLETED

    @property
    def cancelled(self) -> bool:
        return any(a.skipped_reason == SkipReason.CANCELLED for a in self.actions)

    def outcome_for(self, node_name: str) -> ActionOutcome:
        for outcome in self.actions:
            if outcome.node_name == node_name:
                return outcome
        raise KeyError(node_name)

    def nodes_with_status(self, status: ActionStatus) -> list[str]:
        return [a.node_name for a in self.actions if a.status == status]

    @property
    def completed(self) -> list[str]:
        return self.nodes_with_status(ActionStatus.COMPLETED)

    @property
    def failed(self) -> list[str]:
        return self.nodes_with_status(ActionStatus.FAILED)

    @property
    def skipped(self) -> list[str]:
        return self.nodes_with_status(ActionStatus.SKIPPED)

    def root_causes(self) -> dict[str, list[str]]:
        """Each root-cause node mapped to the downstream nodes its failure took down."""
        causes: dict[str, list[str]] = {}
        for outcome in self.actions:
            if outcome.status != ActionStatus.FAILED:
                continue
            for root in outcome.root_causes:
                downstream = causes.setdefault(root, [])
                if root != outcome.node_name:
                    downstream.append(outcome.node_name)
        return causes

    def format_report(self) -> str:
        """Plain-text summary of the run."""
        counts = {status: len(self.nodes_with_status(status)) for status in ActionStatus}
        lines = [
            f"Pipeline {self.pipeline_id} {self.status} (graph {self.graph_id}): "
            f"{counts[ActionStatus.COMPLETED]} completed, {counts[ActionStatus.FAILED]} failed, "
            f"{counts[ActionStatus.SKIPPED]} skipped"
        ]
        for outcome in self.actions:
            line = f"  [{outcome.execution_order}] {outcome.node_name}: {outcome.status}"
            if outcome.skipped_reason:
                line += f" ({outcome.skipped_reason})"
            if outcome.status == ActionStatus.FAILED and outcome.error_message:
                line += f" - {outcome.error_message}"
            lines.append(line)

        for root, downstream in self.root_causes().items():
            message = self.outcome_for(root).error_message or "unknown error"
            lines.append(f"Root cause: {root} failed: {message}")
            if downstream:
                lines.append(f"  downstream failed: {', '.join(downstream)}")
        return "\n".join(lines)


@dataclass
class _RunContext:
    """Per-invocation bookkeeping for run_pipeline."""

    pipeline: Pipeline
    graph: Graph
    action_ids: dict[str, int]
    events: dict[str, asyncio.Event]
    semaphore: asyncio.Semaphore
    modes: dict[str, ExecutionMode] = field(default_factory=dict)
    executed: list[str] = field(default_factory=list)
    # prior graph id -> nodes affected by graph changes since then
    affected_since: dict[int, set[str]] = field(default_factory=dict)


class RunCoordinator:
    """
    Plans pipelines and runs them against a transformation engine.

    Args:
        store: Persisted state store
        engine: External transformation engine
        settings: Concurrency, timeout and skip settings
        retry_policy: Retry policy for transient failures
        retry_manager: Retry loop implementation (injectable for tests)
    """

    def __init__(
        self,
        store: StateStore,
        engine: TransformationEngine,
        *,
        settings: ExecutionSettings | None = None,
        retry_policy: RetryPolicy | None = None,
        retry_manager: RetryManager | None = None,
    ):
        self.store = store
        self.engine = engine
        self.settings = settings or ExecutionSettings()
        self.retry_policy = retry_policy or DEFAULT_RETRY_POLICY
        self.retry_manager = retry_manager or RetryManager()
        self.graphs = GraphStore(store)
        self.ledger = DeltaLedger(store)
        self.state = StateMachine(store, self.ledger)
        self._active: set[int] = set()

    # ------------------------------------------------------------------
    # Planning & inspection
    # ------------------------------------------------------------------

    def create_pipeline(
        self, graph_id: int | None = None, targets: list[str] | None = None, force: bool = False
    ) -> Pipeline:
        """
        Create a pipeline over a graph (the latest one by default) and plan its actions.

        Raises:
            NotFoundError: no such graph, or no graph at all
            UnknownNodeReferenceError: a target is not a node of the graph
        """
        graph = self.graphs.get(graph_id) if graph_id is not None else self.graphs.latest()
        if graph is None:
            raise NotFoundError("Graph", "latest")

        targets = list(targets or [])
        order = plan(graph, targets)
        pipeline = self.store.create_pipeline(graph.id, order, target_nodes=targets, force=force)
        logger.info(
            f"Planned pipeline {pipeline.id} over graph {graph.id}: {len(order)} action(s)"
            + (" (forced)" if force else "")
        )
        return pipeline

    def describe(self, pipeline_id: int) -> PipelineView:
        """The pipeline with its actions in execution order."""
        return self.state.describe(pipeline_id)

    def cancel(self, pipeline_id: int) -> list[PipelineAction]:
        """
        Mark every not-yet-started action SKIPPED (reason ``cancelled``).

        In-flight actions are left to finish or fail on their own.
        """
        skipped = []
        for action in self.store.get_actions(pipeline_id):
            if action.status == ActionStatus.PENDING:
                updated = self.state.skip_action(action.id, SkipReason.CANCELLED)
                if updated is not None:
                    skipped.append(updated)
        logger.info(f"Cancelled pipeline {pipeline_id}: {len(skipped)} pending action(s) skipped")
        if pipeline_id not in self._active:
            self.state.refresh_pipeline_status(pipeline_id)
        return skipped

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    async def run_pipeline(self, pipeline_id: int) -> RunResult:
        """
        Run (or resume) a pipeline.

        Actions already COMPLETED or SKIPPED are left untouched; actions left
        RUNNING by a crashed process are reset to PENDING and run again.

        Raises:
            CyclicDependencyError: the stored graph no longer plans
            StoreUnavailableError: the state store failed mid-run
        """
        if pipeline_id in self._active:
            raise ExecutionError(f"Pipeline {pipeline_id} is already running", details={"pipeline_id": pipeline_id})

        pipeline = self.store.get_pipeline(pipeline_id)
        graph = self.state.graph_for(pipeline)
        order = plan(graph, list(pipeline.target_nodes) or None)

        actions = self.store.get_actions(pipeline_id)
        if [a.table_name for a in actions] != order:
            raise StateStoreError(
                f"Stored actions of pipeline {pipeline_id} do not match its plan",
                details={"stored": [a.table_name for a in actions], "planned": order},
            )

        self._active.add(pipeline_id)
        try:
            self.state.reset_crashed(pipeline_id)
            actions = self.store.get_actions(pipeline_id)
            pending = [a for a in actions if a.status == ActionStatus.PENDING]

            run = _RunContext(
                pipeline=pipeline,
                graph=graph,
                action_ids={a.table_name: a.id for a in actions},
                events={a.table_name: asyncio.Event() for a in actions},
                semaphore=asyncio.Semaphore(self.settings.max_concurrency),
            )
            for action in actions:
                if action.status != ActionStatus.PENDING:
                    run.events[action.table_name].set()

            if pending:
                logger.info(f"Running pipeline {pipeline_id}: {len(pending)} of {len(actions)} action(s) pending")
                await self._run_tasks(run, pending)
            else:
                logger.debug(f"Pipeline {pipeline_id} has no pending actions")

            self.state.refresh_pipeline_status(pipeline_id)
        finally:
            self._active.discard(pipeline_id)

        result = self.build_result(pipeline_id, modes=run.modes, executed=run.executed)
        log = logger.info if result.succeeded else logger.error
        log(
            f"Pipeline {pipeline_id} {result.status}: {len(result.completed)} completed, "
            f"{len(result.failed)} failed, {len(result.skipped)} skipped"
        )
        return result

    async def _run_tasks(self, run: _RunContext, pending: list[PipelineAction]) -> None:
        tasks = [
            asyncio.create_task(self._drive(run, action), name=f"deltaflow:{action.table_name}")
            for action in pending
        ]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _drive(self, run: _RunContext, action: PipelineAction) -> None:
        name = action.table_name
        for upstream in run.graph.dependencies(name):
            if upstream in run.events:
                await run.events[upstream].wait()
        await self._process(run, action)
        # Not set when _process raised: downstream tasks stay parked until the run is torn down
        run.events[name].set()

    async def _process(self, run: _RunContext, action: PipelineAction) -> None:
        name = action.table_name
        if self.store.get_action(action.id).status != ActionStatus.PENDING:
            # Cancelled while waiting for upstream
            return

        upstream = {dep: self.store.get_action(run.action_ids[dep]) for dep in run.graph.dependencies(name)}
        if any(a.status not in SATISFIED_STATUSES for a in upstream.values()):
            try:
                self.state.start_action(action.id)
            except UpstreamFailedError as e:
                logger.error(f"{name} not started: {e.message}")
            return

        if self._unchanged(run, name, upstream):
            if self.state.skip_action(action.id, SkipReason.UNCHANGED) is not None:
                logger.info(f"{name} skipped: inputs unchanged since last run")
            return

        async with run.semaphore:
            try:
                running = self.state.start_action(action.id)
            except InvalidTransitionError:
                # Cancelled while waiting for a slot
                return
            run.executed.append(name)
            await self._execute(run, running, upstream)

    def _prior_completion(self, run: _RunContext, name: str) -> tuple[PipelineAction | None, bool]:
        """Most recent earlier completion of ``name`` and whether graph changes affect it since."""
        prior = self.store.latest_completed_action(name, exclude_pipeline_id=run.pipeline.id)
        if prior is None:
            return None, True
        prior_graph_id = self.store.get_pipeline(prior.pipeline_id).graph_id
        if prior_graph_id == run.graph.id:
            return prior, False
        if prior_graph_id not in run.affected_since:
            changes = self.graphs.changes_between(prior_graph_id, run.graph)
            run.affected_since[prior_graph_id] = set(affected_nodes(run.graph, changes))
        return prior, name in run.affected_since[prior_graph_id]

    def _unchanged(self, run: _RunContext, name: str, upstream: dict[str, PipelineAction]) -> bool:
        """
        Whether ``name`` can be skipped because nothing it reads changed.

        Needs an earlier completion unaffected by graph changes, and every
        upstream action SKIPPED or COMPLETED with an empty delta.
        """
        if not self.settings.skip_unchanged or run.pipeline.force or not upstream:
            return False
        for action in upstream.values():
            if action.status == ActionStatus.SKIPPED:
                continue
            delta = self.ledger.get_delta(action.id)
            if delta is None or not delta.is_empty:
                return False
        prior, affected = self._prior_completion(run, name)
        return prior is not None and not affected

    def _choose_mode(self, run: _RunContext, name: str, upstream_deltas: dict[str, Delta | None]) -> ExecutionMode:
        if run.pipeline.force:
            return ExecutionMode.FULL
        if any(delta is None for delta in upstream_deltas.values()):
            return ExecutionMode.FULL
        prior, affected = self._prior_completion(run, name)
        if prior is None or affected or self.ledger.get_delta(prior.id) is None:
            return ExecutionMode.FULL
        return ExecutionMode.INCREMENTAL

    async def _execute(self, run: _RunContext, action: PipelineAction, upstream: dict[str, PipelineAction]) -> None:
        name = action.table_name
        node = run.graph.get_node(name)
        upstream_deltas = {dep: self.ledger.latest_delta(dep) for dep in upstream}
        mode = self._choose_mode(run, name, upstream_deltas)
        run.modes[name] = mode
        timeout = self.settings.action_timeout

        async def attempt(number: int) -> ExecutionOutcome:
            request = ExecutionRequest(
                node_name=name,
                config=node.config,
                upstream_deltas=upstream_deltas,
                mode=mode,
                attempt=number,
                pipeline_id=run.pipeline.id,
                action_id=action.id,
            )
            if timeout is None:
                result = await self.engine.execute(request)
            else:
                try:
                    result = await asyncio.wait_for(self.engine.execute(request), timeout)
                except TimeoutError:
                    return Failure.transient(f"Timed out after {timeout}s")
            try:
                return coerce_outcome(result)
            except TypeError as e:
                return Failure.permanent(str(e))

        logger.debug(f"Executing {name} in {mode} mode")
        outcome, retry_state = await self.retry_manager.execute(
            attempt,
            policy=self.retry_policy,
            action_name=name,
            on_retry=lambda number: self.state.record_attempt(action.id, number),
        )
        self.state.record_attempt(action.id, retry_state.total_attempts)

        if isinstance(outcome, Success):
            self.state.complete_action(action.id, outcome)
            logger.info(f"{name} completed ({mode})")
        else:
            self.state.fail_action(action.id, outcome.message)

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def build_result(
        self,
        pipeline_id: int,
        *,
        modes: dict[str, ExecutionMode] | None = None,
        executed: list[str] | None = None,
    ) -> RunResult:
        """Assemble a RunResult from the stored state of a pipeline."""
        pipeline = self.store.get_pipeline(pipeline_id)
        graph = self.state.graph_for(pipeline)
        actions = self.store.get_actions(pipeline_id)
        modes = modes or {}

        root_causes: dict[str, tuple[str, ...]] = {}
        statuses = {a.table_name: a.status for a in actions}
        for action in actions:
            if action.status != ActionStatus.FAILED:
                continue
            inherited = sorted(
                {
                    root
                    for dep in graph.dependencies(action.table_name)
                    if statuses.get(dep) == ActionStatus.FAILED
                    for root in root_causes[dep]
                }
            )
            root_causes[action.table_name] = tuple(inherited) or (action.table_name,)

        outcomes = [
            ActionOutcome(
                action_id=a.id,
                node_name=a.table_name,
                execution_order=a.execution_order,
                status=a.status,
                attempts=a.attempts,
                error_message=a.error_message,
                skipped_reason=a.skipped_reason,
                mode=modes.get(a.table_name),
                delta=self.ledger.get_delta(a.id) if a.status == ActionStatus.COMPLETED else None,
                started_at=a.started_at,
                completed_at=a.completed_at,
                root_causes=root_causes.get(a.table_name, ()),
            )
            for a in actions
        ]
        return RunResult(
            pipeline_id=pipeline.id,
            graph_id=pipeline.graph_id,
            status=pipeline.status,
            actions=outcomes,
            executed=list(executed or []),
            started_at=pipeline.started_at,
            completed_at=pipeline.completed_at,
        )
