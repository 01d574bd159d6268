"""Tests for DependencyResolver."""

import pytest

from services.flow.errors import FlowErrorType, FlowExecutionError
from services.flow.graph import Connection, WorkflowGraph, WorkflowNode
from services.flow.resolver import DependencyResolver

from conftest import build_graph


class TestDependencies:
    """Tests for dependency and downstream queries."""

    def test_dependencies_and_downstream(self):
        resolver = DependencyResolver(build_graph("A->M", "B->M", "C->M", "M->X", "M->Y"))

        assert resolver.get_dependencies("M") == {"A", "B", "C"}
        assert resolver.get_dependencies("A") == set()
        assert resolver.get_downstream_nodes("M") == {"X", "Y"}

    def test_downstream_is_port_aware_when_ports_given(self):
        resolver = DependencyResolver(build_graph(
            ("IF", "yes", "true", "main"), ("IF", "no", "false", "main"),
        ))

        assert resolver.get_downstream_nodes("IF") == {"yes", "no"}
        assert resolver.get_downstream_nodes("IF", fired_ports={"true"}) == {"yes"}

    def test_downstream_closure(self):
        resolver = DependencyResolver(build_graph("T->N1", "N1->N2", "T->N3", "X->N2"))

        assert resolver.get_downstream_closure("T") == {"N1", "N2", "N3"}
        assert resolver.get_downstream_closure("N2") == set()

    def test_has_live_input(self):
        resolver = DependencyResolver(build_graph(("IF", "yes", "true", "main")))

        assert resolver.has_live_input("yes", {"IF": frozenset({"true"})})
        assert not resolver.has_live_input("yes", {"IF": frozenset({"false"})})
        assert not resolver.has_live_input("yes", {})


class TestExecutableNodes:
    """Tests for the fan-in join rule."""

    def test_join_waits_for_every_branch(self):
        resolver = DependencyResolver(build_graph("A->M", "B->M", "C->M"))
        nodes = ["A", "B", "C", "M"]

        assert resolver.get_executable_nodes(nodes, set()) == {"A", "B", "C"}
        assert "M" not in resolver.get_executable_nodes(nodes, {"A", "C"})
        assert resolver.get_executable_nodes(nodes, {"A", "B", "C"}) == {"M"}

    def test_finished_and_disabled_excluded(self):
        resolver = DependencyResolver(build_graph("A->B", "A->C", disabled=["C"]))

        executable = resolver.get_executable_nodes(["A", "B", "C"], {"A"}, finished_nodes={"B"})

        assert executable == set()


class TestCycleDetection:
    """Tests for detect_circular_dependencies."""

    def test_dag_has_no_cycles(self):
        resolver = DependencyResolver(build_graph("A->B", "A->C", "B->D", "C->D"))
        assert resolver.detect_circular_dependencies() == []

    def test_three_node_cycle_reported_once(self):
        resolver = DependencyResolver(build_graph("A->B", "B->C", "C->A"))

        cycles = resolver.detect_circular_dependencies()

        assert len(cycles) == 1
        assert set(cycles[0].cycle) == {"A", "B", "C"}
        assert cycles[0].severity == "error"

    def test_self_loop_is_cycle_of_length_one(self):
        graph = WorkflowGraph([WorkflowNode(id="A")], [Connection("A", "A")])

        cycles = DependencyResolver(graph).detect_circular_dependencies()

        assert [c.cycle for c in cycles] == [["A"]]

    def test_disjoint_cycles(self):
        resolver = DependencyResolver(build_graph("A->B", "B->A", "C->D", "D->E", "E->C", "X->Y"))

        cycles = resolver.detect_circular_dependencies()

        assert sorted(sorted(c.cycle) for c in cycles) == [["A", "B"], ["C", "D", "E"]]

    def test_scope_ignores_cycles_outside(self):
        resolver = DependencyResolver(build_graph("T->N", "A->B", "B->A"))
        assert resolver.detect_circular_dependencies(["T", "N"]) == []


class TestValidation:
    """Tests for validate_execution_path and validate_execution_safety."""

    def test_two_node_cycle_invalid(self):
        result = DependencyResolver(build_graph("A->B", "B->A")).validate_execution_path()

        assert not result.is_valid
        assert len(result.circular_dependencies) == 1
        assert result.circular_dependencies[0].cycle == ["A", "B"]

    def test_orphans_are_warnings(self):
        graph = build_graph("T->N", nodes=["lonely"], triggers=["T"])

        result = DependencyResolver(graph).validate_execution_path()

        assert result.is_valid
        assert result.orphaned_nodes == ["lonely"]
        assert result.unreachable_nodes == ["lonely"]
        assert result.warnings

    def test_single_node_is_not_orphaned(self):
        graph = build_graph(nodes=["only"])
        assert DependencyResolver(graph).validate_execution_path().orphaned_nodes == []

    def test_disconnected_trigger_not_orphaned(self):
        graph = build_graph("T1->N", nodes=["T2"], triggers=["T1", "T2"])
        assert DependencyResolver(graph).validate_execution_path().orphaned_nodes == []

    def test_missing_reference_is_error(self):
        graph = WorkflowGraph([WorkflowNode(id="a")], [Connection("a", "ghost")])

        result = DependencyResolver(graph).validate_execution_path()

        assert not result.is_valid
        assert result.missing_references[0]["missing"] == ["ghost"]

    def test_safety_raises_missing_before_cycle(self):
        graph = WorkflowGraph(
            [WorkflowNode(id="a"), WorkflowNode(id="b")],
            [Connection("a", "b"), Connection("b", "a"), Connection("a", "ghost")],
        )

        with pytest.raises(FlowExecutionError) as exc_info:
            DependencyResolver(graph).validate_execution_safety()

        assert exc_info.value.error_type == FlowErrorType.MISSING_DEPENDENCY

    def test_safety_reports_cycle_path(self):
        resolver = DependencyResolver(build_graph("A->B", "B->C", "C->A"))

        with pytest.raises(FlowExecutionError) as exc_info:
            resolver.validate_execution_safety()

        error = exc_info.value
        assert error.error_type == FlowErrorType.CIRCULAR_DEPENDENCY
        assert set(error.affected_nodes) == {"A", "B", "C"}
        assert error.suggested_resolution


class TestExecutionLayers:
    """Tests for Kahn layering."""

    def test_diamond_layers(self):
        resolver = DependencyResolver(build_graph("A->B", "A->C", "B->D", "C->D"))
        assert resolver.get_execution_layers() == [["A"], ["B", "C"], ["D"]]

    def test_cycle_leftovers_in_last_layer(self):
        resolver = DependencyResolver(build_graph("S->A", "A->B", "B->A"))
        assert resolver.get_execution_layers() == [["S"], ["A", "B"]]
