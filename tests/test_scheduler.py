"""
Tests for the topological planner.
"""

import pytest

from deltaflow.core.graph import build_graph
from deltaflow.core.scheduler import execution_levels, induced_subgraph, plan, topological_order
from deltaflow.exceptions import CyclicDependencyError, UnknownNodeReferenceError

DIAMOND_EDGES = [("a", "b"), ("a", "c"), ("b", "d"), ("c", "d")]


@pytest.fixture
def chain():
    return build_graph(["raw", "staged", "report"], [("raw", "staged"), ("staged", "report")])


@pytest.fixture
def diamond():
    return build_graph(["d", "c", "b", "a"], DIAMOND_EDGES)


class TestPlan:
    """Tests for plan()."""

    def test_chain_for_report(self, chain):
        """Ancestors of the target are planned before it."""
        assert plan(chain, ["report"]) == ["raw", "staged", "report"]

    def test_chain_intermediate_target(self, chain):
        assert plan(chain, ["staged"]) == ["raw", "staged"]

    def test_empty_targets_plans_everything(self, chain):
        assert plan(chain, []) == ["raw", "staged", "report"]
        assert plan(chain) == ["raw", "staged", "report"]

    def test_lexicographic_tie_break(self):
        graph = build_graph(["zeta", "alpha", "mid"], [])
        assert plan(graph) == ["alpha", "mid", "zeta"]

    def test_diamond(self, diamond):
        assert plan(diamond) == ["a", "b", "c", "d"]

    def test_tie_break_prefers_ready_small_names(self):
        # "b" becomes ready only after "z"; "c" is ready from the start
        graph = build_graph(["z", "b", "c"], [("z", "b")])
        assert plan(graph) == ["c", "z", "b"]

    def test_deterministic(self, diamond):
        assert plan(diamond, ["d"]) == plan(diamond, ["d"])

    def test_unrelated_branch_excluded(self):
        graph = build_graph(["a", "b", "x", "y"], [("a", "b"), ("x", "y")])
        assert plan(graph, ["b"]) == ["a", "b"]

    def test_multiple_targets(self):
        graph = build_graph(["a", "b", "x", "y"], [("a", "b"), ("x", "y")])
        assert plan(graph, ["y", "b"]) == ["a", "b", "x", "y"]

    def test_unknown_target(self, chain):
        with pytest.raises(UnknownNodeReferenceError, match="ghost"):
            plan(chain, ["ghost"])

    def test_edges_respected_on_wide_graph(self):
        names = [f"n{i:02d}" for i in range(30)]
        edges = [(names[i], names[j]) for i in range(30) for j in range(i + 1, 30) if (i * 7 + j) % 5 == 0]
        graph = build_graph(list(reversed(names)), edges)
        order = plan(graph)
        position = {name: i for i, name in enumerate(order)}
        assert len(order) == 30
        for upstream, downstream in edges:
            assert position[upstream] < position[downstream]

    def test_empty_graph(self):
        assert plan(build_graph([], [])) == []


class TestInducedSubgraph:
    """Tests for induced_subgraph()."""

    def test_restricts_successors(self, diamond):
        assert induced_subgraph(diamond, ["b"]) == {"a": {"b"}, "b": set()}

    def test_full_graph(self, diamond):
        assert induced_subgraph(diamond)["a"] == {"b", "c"}


class TestTopologicalOrder:
    """Tests for the Kahn's algorithm core."""

    def test_cycle_detected(self):
        with pytest.raises(CyclicDependencyError) as exc_info:
            topological_order({"src": {"a"}, "a": {"b"}, "b": {"a"}})
        assert exc_info.value.nodes == ["a", "b"]


class TestExecutionLevels:
    """Tests for execution_levels()."""

    def test_diamond_levels(self, diamond):
        assert execution_levels(diamond) == [["a"], ["b", "c"], ["d"]]

    def test_level_is_longest_path(self):
        graph = build_graph(["a", "b", "c"], [("a", "b"), ("b", "c"), ("a", "c")])
        assert execution_levels(graph) == [["a"], ["b"], ["c"]]

    def test_levels_for_targets(self, diamond):
        assert execution_levels(diamond, ["c"]) == [["a"], ["c"]]

    def test_independent_sources(self):
        graph = build_graph(["y", "x"], [])
        assert execution_levels(graph) == [["x", "y"]]

    def test_empty(self):
        assert execution_levels(build_graph([], [])) == []
