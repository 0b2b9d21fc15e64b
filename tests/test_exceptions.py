"""
Tests for the exception hierarchy.
"""

import pytest

from deltaflow.exceptions import (
    ConfigurationError,
    CyclicDependencyError,
    DeltaAlreadyRecordedError,
    DeltaError,
    DeltaflowError,
    DuplicateNodeError,
    ExecutionError,
    GraphError,
    InvalidTransitionError,
    NotFoundError,
    PermanentError,
    StateStoreError,
    StoreUnavailableError,
    TransientError,
    UnknownNodeReferenceError,
    UpstreamFailedError,
)


class TestHierarchy:
    """Verify all exceptions inherit from DeltaflowError."""

    @pytest.mark.parametrize(
        "exc_class",
        [
            ConfigurationError,
            GraphError,
            UnknownNodeReferenceError,
            DuplicateNodeError,
            CyclicDependencyError,
            ExecutionError,
            InvalidTransitionError,
            UpstreamFailedError,
            TransientError,
            PermanentError,
            DeltaError,
            DeltaAlreadyRecordedError,
            NotFoundError,
            StateStoreError,
            StoreUnavailableError,
        ],
    )
    def test_inherits_from_deltaflow_error(self, exc_class):
        assert issubclass(exc_class, DeltaflowError)

    @pytest.mark.parametrize("exc_class", [UnknownNodeReferenceError, DuplicateNodeError, CyclicDependencyError])
    def test_validation_errors_are_graph_errors(self, exc_class):
        assert issubclass(exc_class, GraphError)

    @pytest.mark.parametrize("exc_class", [InvalidTransitionError, UpstreamFailedError, TransientError, PermanentError])
    def test_execution_errors(self, exc_class):
        assert issubclass(exc_class, ExecutionError)

    def test_store_unavailable_inherits_state_store(self):
        assert issubclass(StoreUnavailableError, StateStoreError)


class TestExceptionMessages:
    """Test exception constructors and details."""

    def test_deltaflow_error(self):
        e = DeltaflowError("boom", details={"key": "val"})
        assert str(e) == "boom"
        assert e.message == "boom"
        assert e.details == {"key": "val"}

    def test_details_default_to_empty_dict(self):
        assert ConfigurationError("bad").details == {}

    def test_unknown_node_reference_with_edge(self):
        e = UnknownNodeReferenceError("ghost", edge=("raw", "ghost"))
        assert "ghost" in str(e)
        assert "'raw' -> 'ghost'" in str(e)
        assert e.node_name == "ghost"
        assert e.edge == ("raw", "ghost")
        assert e.details["edge"] == ("raw", "ghost")

    def test_unknown_node_reference_without_edge(self):
        e = UnknownNodeReferenceError("ghost")
        assert str(e) == "Unknown node 'ghost'"
        assert e.edge is None

    def test_duplicate_node(self):
        e = DuplicateNodeError("raw")
        assert "raw" in str(e)
        assert e.node_name == "raw"

    def test_cyclic_dependency_sorts_and_dedupes(self):
        e = CyclicDependencyError(["c", "a", "b", "a"])
        assert e.nodes == ["a", "b", "c"]
        assert str(e) == "Cyclic dependency between nodes: a, b, c"

    def test_invalid_transition(self):
        e = InvalidTransitionError("Action 'raw'", "COMPLETED", "RUNNING")
        assert "COMPLETED" in str(e)
        assert "RUNNING" in str(e)
        assert e.details == {"subject": "Action 'raw'", "from": "COMPLETED", "to": "RUNNING"}

    def test_upstream_failed(self):
        e = UpstreamFailedError("report", "staged", "FAILED")
        assert e.action == "report"
        assert e.upstream == "staged"
        assert e.upstream_status == "FAILED"
        assert "staged" in str(e)

    def test_delta_already_recorded(self):
        e = DeltaAlreadyRecordedError(7)
        assert e.action_id == 7
        assert "7" in str(e)

    def test_not_found(self):
        e = NotFoundError("Pipeline", 42)
        assert str(e) == "Pipeline not found: 42"
        assert e.kind == "Pipeline"
        assert e.key == 42

    def test_catchable_with_base(self):
        """All exceptions can be caught with DeltaflowError."""
        with pytest.raises(DeltaflowError):
            raise ConfigurationError("bad config")

        with pytest.raises(DeltaflowError):
            raise StoreUnavailableError("gone")
