"""
Tests for the transformation engine contract and FunctionEngine.
"""

import asyncio
import threading

import pytest

from deltaflow.core.engine import (
    ExecutionMode,
    ExecutionRequest,
    Failure,
    FailureKind,
    FunctionEngine,
    Success,
    TransformationEngine,
    classify_exception,
    coerce_outcome,
)
from deltaflow.exceptions import PermanentError, TransientError
from deltaflow.testing import ScriptedEngine


def request(name="staged", **kwargs):
    return ExecutionRequest(node_name=name, config=None, upstream_deltas={}, **kwargs)


class TestClassifyException:
    """Exceptions raised by engines map to failure kinds."""

    def test_transient_error(self):
        failure = classify_exception(TransientError("warehouse busy"))
        assert failure == Failure(FailureKind.TRANSIENT, "warehouse busy")

    def test_timeout_is_transient(self):
        assert classify_exception(TimeoutError()).is_transient

    def test_permanent_error(self):
        failure = classify_exception(PermanentError("bad column"))
        assert failure == Failure.permanent("bad column")

    def test_other_exceptions_are_permanent(self):
        failure = classify_exception(ValueError("nope"))
        assert failure.kind == FailureKind.PERMANENT
        assert failure.message == "ValueError: nope"

    def test_retryable_types(self):
        assert classify_exception(ConnectionError("reset"), (ConnectionError,)).is_transient
        assert not classify_exception(ConnectionError("reset")).is_transient


class TestCoerceOutcome:
    """Normalizing transformation return values."""

    def test_none_is_empty_success(self):
        assert coerce_outcome(None) == Success()

    def test_outcomes_pass_through(self):
        failure = Failure.transient("x")
        assert coerce_outcome(failure) is failure

    def test_mapping(self):
        assert coerce_outcome({"insert": "i.parquet", "delete_path": "d.parquet"}) == Success(
            insert_path="i.parquet", delete_path="d.parquet"
        )

    def test_tuple(self):
        assert coerce_outcome(("i", None, "d")) == Success("i", "", "d")

    def test_unsupported(self):
        with pytest.raises(TypeError, match="unsupported result"):
            coerce_outcome(42)


class TestFunctionEngine:
    """FunctionEngine dispatches to per-node callables."""

    def test_satisfies_protocol(self):
        assert isinstance(FunctionEngine(), TransformationEngine)
        assert isinstance(ScriptedEngine(), TransformationEngine)

    @pytest.mark.asyncio
    async def test_sync_function_runs_in_thread(self):
        threads = []

        def stage(req):
            threads.append(threading.current_thread().name)
            return {"insert": f"{req.node_name}.parquet"}

        engine = FunctionEngine({"staged": stage})
        try:
            outcome = await engine.execute(request(mode=ExecutionMode.INCREMENTAL))
        finally:
            engine.close()
        assert outcome == Success(insert_path="staged.parquet")
        assert threads[0].startswith("deltaflow-engine")

    @pytest.mark.asyncio
    async def test_async_function(self):
        async def stage(req):
            await asyncio.sleep(0)
            return Failure.transient(f"attempt {req.attempt}")

        engine = FunctionEngine()
        engine.register("staged", stage)
        outcome = await engine.execute(request(attempt=2))
        assert outcome == Failure.transient("attempt 2")

    @pytest.mark.asyncio
    async def test_default_function(self):
        engine = FunctionEngine(default=lambda req: None)
        try:
            assert await engine.execute(request("anything")) == Success()
        finally:
            engine.close()

    @pytest.mark.asyncio
    async def test_missing_function_is_permanent_failure(self):
        outcome = await FunctionEngine().execute(request("report"))
        assert outcome.kind == FailureKind.PERMANENT
        assert "report" in outcome.message

    @pytest.mark.asyncio
    async def test_exceptions_propagate(self):
        def stage(req):
            raise TransientError("flaky")

        engine = FunctionEngine({"staged": stage})
        try:
            with pytest.raises(TransientError):
                await engine.execute(request())
        finally:
            engine.close()
