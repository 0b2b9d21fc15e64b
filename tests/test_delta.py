"""
Tests for the delta ledger.
"""

import pytest

from deltaflow.core.delta import Delta, DeltaLedger
from deltaflow.core.graph import NodeDecl
from deltaflow.core.pipeline import ActionStatus
from deltaflow.core.state import utcnow
from deltaflow.exceptions import DeltaAlreadyRecordedError, DeltaError, NotFoundError


def _completed_action(store, graph_id, node="raw"):
    pipeline = store.create_pipeline(graph_id, [node])
    action = store.get_actions(pipeline.id)[0]
    store.compare_and_set_action(action.id, {ActionStatus.PENDING}, ActionStatus.RUNNING)
    return store.compare_and_set_action(
        action.id, {ActionStatus.RUNNING}, ActionStatus.COMPLETED, completed_at=utcnow()
    )


@pytest.fixture
def graph(store):
    return store.create_graph([NodeDecl("raw"), NodeDecl("staged")], [])


class TestDelta:
    """Delta record helpers."""

    def test_is_empty(self):
        assert Delta(1, 1, "", "", "", None).is_empty
        assert not Delta(1, 1, "", "u.parquet", "", None).is_empty


class TestDeltaLedger:
    """Recording and looking up deltas."""

    def test_record_delta(self, store, graph):
        action = _completed_action(store, graph.id)
        delta = DeltaLedger(store).record_delta(action.id, "ins", "upd", "del")
        assert (delta.insert_path, delta.update_path, delta.delete_path) == ("ins", "upd", "del")
        assert DeltaLedger(store).get_delta(action.id) == delta

    def test_none_paths_become_empty(self, store, graph):
        action = _completed_action(store, graph.id)
        delta = DeltaLedger(store).record_delta(action.id, None, None, None)
        assert delta.is_empty

    def test_rejects_action_not_completed(self, store, graph):
        pipeline = store.create_pipeline(graph.id, ["raw"])
        action = store.get_actions(pipeline.id)[0]
        with pytest.raises(DeltaError, match="PENDING"):
            DeltaLedger(store).record_delta(action.id, "ins")
        assert store.get_delta(action.id) is None

    def test_rejects_second_delta(self, store, graph):
        action = _completed_action(store, graph.id)
        ledger = DeltaLedger(store)
        ledger.record_delta(action.id, "first")
        with pytest.raises(DeltaAlreadyRecordedError):
            ledger.record_delta(action.id, "second")
        assert ledger.get_delta(action.id).insert_path == "first"

    def test_unknown_action(self, store):
        with pytest.raises(NotFoundError):
            DeltaLedger(store).record_delta(404)

    def test_latest_delta_and_history(self, store, graph):
        ledger = DeltaLedger(store)
        assert ledger.latest_delta("raw") is None

        first = _completed_action(store, graph.id)
        ledger.record_delta(first.id, "raw-1")
        second = _completed_action(store, graph.id)
        ledger.record_delta(second.id, "raw-2")
        other = _completed_action(store, graph.id, "staged")
        ledger.record_delta(other.id, "staged-1")

        assert ledger.latest_delta("raw").insert_path == "raw-2"
        assert [d.insert_path for d in ledger.history("raw")] == ["raw-1", "raw-2"]
        assert [d.insert_path for d in ledger.history("staged")] == ["staged-1"]
