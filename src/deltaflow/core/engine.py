"""
Transformation engine contract.

The execution core never touches data. It hands each action to a
TransformationEngine and records the artifact paths the engine reports.
Engines either return an ExecutionOutcome or raise; raised exceptions are
classified by ``classify_exception``.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from deltaflow.core.delta import Delta
from deltaflow.exceptions import PermanentError, TransientError


class ExecutionMode(StrEnum):
    """Whether an action recomputes its node or consumes upstream deltas."""

    FULL = "full"
    INCREMENTAL = "incremental"


class FailureKind(StrEnum):
    """Classification of an engine failure, drives retry decisions."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


@dataclass(frozen=True)
class ExecutionRequest:
    """Everything an engine needs to materialize one node."""

    node_name: str
    config: dict[str, Any] | None
    upstream_deltas: Mapping[str, Delta | None]
    mode: ExecutionMode = ExecutionMode.FULL
    attempt: int = 0
    pipeline_id: int | None = None
    action_id: int | None = None


@dataclass(frozen=True)
class Success:
    """Engine finished; paths are opaque artifact locations ("" means no rows)."""

    insert_path: str = ""
    update_path: str = ""
    delete_path: str = ""


@dataclass(frozen=True)
class Failure:
    """Engine failed."""

    kind: FailureKind
    message: str

    @property
    def is_transient(self) -> bool:
        return self.kind == FailureKind.TRANSIENT

    @classmethod
    def transient(cls, message: str) -> Failure:
        return cls(FailureKind.TRANSIENT, message)

    @classmethod
    def permanent(cls, message: str) -> Failure:
        return cls(FailureKind.PERMANENT, message)


ExecutionOutcome = Success | Failure


@runtime_checkable
class TransformationEngine(Protocol):
    """External collaborator that actually reads and writes data."""

    async def execute(self, request: ExecutionRequest) -> ExecutionOutcome: ...


def classify_exception(exc: BaseException, retryable: tuple[type[BaseException], ...] = ()) -> Failure:
    """
    Turn an exception raised by an engine into a Failure.

    TransientError, TimeoutError and anything in ``retryable`` are transient;
    PermanentError and every other exception are permanent.
    """
    message = str(exc) or type(exc).__name__
    if isinstance(exc, PermanentError):
        return Failure(FailureKind.PERMANENT, message)
    if isinstance(exc, (TransientError, TimeoutError)) or (retryable and isinstance(exc, retryable)):
        return Failure(FailureKind.TRANSIENT, message)
    return Failure(FailureKind.PERMANENT, f"{type(exc).__name__}: {message}")


def coerce_outcome(result: Any) -> ExecutionOutcome:
    """
    Normalize what a transformation function returned.

    Accepts an outcome, None (no artifacts), a mapping with
    ``insert``/``update``/``delete`` (or ``*_path``) keys, or an
    ``(insert, update, delete)`` tuple.
    """
    if isinstance(result, (Success, Failure)):
        return result
    if result is None:
        return Success()
    if isinstance(result, Mapping):
        return Success(
            insert_path=str(result.get("insert_path", result.get("insert", "")) or ""),
            update_path=str(result.get("update_path", result.get("update", "")) or ""),
            delete_path=str(result.get("delete_path", result.get("delete", "")) or ""),
        )
    if isinstance(result, (tuple, list)) and len(result) == 3:
        insert, update, delete = result
        return Success(insert or "", update or "", delete or "")
    raise TypeError(f"Transformation returned unsupported result: {result!r}")


@dataclass
class FunctionEngine:
    """
    Engine backed by plain Python callables, one per node.

    Sync callables run in a thread pool so they never block the event loop;
    async callables are awaited directly. A callable receives the
    ExecutionRequest and returns anything ``coerce_outcome`` accepts.

    Example:
        >>> engine = FunctionEngine({"raw": load_raw, "report": build_report})
        >>> engine.register("staged", stage)
    """

    functions: dict[str, Callable[[ExecutionRequest], Any]] = field(default_factory=dict)
    default: Callable[[ExecutionRequest], Any] | None = None
    max_workers: int | None = None
    _executor: ThreadPoolExecutor | None = field(default=None, init=False, repr=False)

    def register(self, node_name: str, func: Callable[[ExecutionRequest], Any]) -> None:
        self.functions[node_name] = func

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="deltaflow-engine")
        return self._executor

    async def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        func = self.functions.get(request.node_name, self.default)
        if func is None:
            return Failure.permanent(f"No transformation registered for node '{request.node_name}'")

        if inspect.iscoroutinefunction(func):
            result = await func(request)
        else:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(self._get_executor(), func, request)
        return coerce_outcome(result)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
