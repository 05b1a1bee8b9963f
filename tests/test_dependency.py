"""Tests for dependency graph construction."""

from __future__ import annotations

from typing import Any

import pytest

from stackctl.dependency import (
    CycleError,
    DanglingReferenceError,
    DuplicateResourceError,
    ValidationError,
    build_graph,
    topological_order,
)
from stackctl.models import ResourceNode


def _node(name: str, kind: str = "Network", refs: list[str] | None = None, **extra: Any) -> ResourceNode:
    properties = {f"to_{ref.replace('-', '_')}": {"ref": ref} for ref in refs or []}
    return ResourceNode.model_validate({"name": name, "kind": kind, "properties": properties, **extra})


class TestTopologicalOrder:
    """Tests for the ordering primitive."""

    def test_dependencies_come_first(self) -> None:
        """Test a simple chain."""
        order = topological_order(["c", "b", "a"], {"c": ["b"], "b": ["a"]})

        assert order == ["a", "b", "c"]

    def test_ties_broken_by_declaration_order(self) -> None:
        """Test that names ready together keep their declared order."""
        names = ["service", "database", "network", "cache"]
        edges = {"service": ["database"], "database": ["network"]}

        assert topological_order(names, edges) == ["network", "database", "service", "cache"]

    def test_unknown_edges_ignored(self) -> None:
        """Test that edges to names outside the set do not block."""
        assert topological_order(["a", "b"], {"b": ["a", "gone"]}) == ["a", "b"]

    def test_cycle_members_exclude_downstream_nodes(self) -> None:
        """Test that nodes merely depending on a cycle are not reported."""
        with pytest.raises(CycleError) as exc_info:
            topological_order(["a", "b", "c"], {"a": ["b"], "b": ["a"], "c": ["a"]})

        assert exc_info.value.nodes == ["a", "b"]


class TestBuildGraph:
    """Tests for build_graph."""

    def test_builds_valid_order(self) -> None:
        """Test that every node follows its dependencies."""
        nodes = [
            _node("user-service", "ComputeService", ["db-proxy", "network"]),
            _node("db-proxy", "Proxy", ["database", "network"]),
            _node("database", "Database", ["network"]),
            _node("network"),
            _node("http-api", "Gateway", ["user-service"]),
        ]

        graph = build_graph(nodes)

        position = {name: i for i, name in enumerate(graph.order)}
        for node in nodes:
            for dep in node.references():
                assert position[dep] < position[node.name]
        assert graph.order == ["network", "database", "db-proxy", "user-service", "http-api"]

    def test_order_is_deterministic(self) -> None:
        """Test that the same declarations always give the same order."""
        nodes = [_node("b"), _node("a"), _node("c", refs=["a"]), _node("d", refs=["b"])]

        orders = {tuple(build_graph(nodes).order) for _ in range(5)}

        assert orders == {("b", "a", "c", "d")}

    def test_cycle_raises(self) -> None:
        """Test that A -> B -> A is rejected, naming both nodes."""
        nodes = [_node("a", refs=["b"]), _node("b", refs=["a"])]

        with pytest.raises(CycleError) as exc_info:
            build_graph(nodes)

        assert exc_info.value.nodes == ["a", "b"]
        assert "a" in str(exc_info.value) and "b" in str(exc_info.value)

    def test_cycle_through_depends_on(self) -> None:
        """Test that explicit dependsOn edges take part in cycle detection."""
        nodes = [_node("a", dependsOn=["b"]), _node("b", refs=["a"])]

        with pytest.raises(CycleError):
            build_graph(nodes)

    def test_dangling_reference_raises(self) -> None:
        """Test that a reference to an undeclared node is rejected."""
        nodes = [_node("network"), _node("db-proxy", "Proxy", ["database"])]

        with pytest.raises(DanglingReferenceError) as exc_info:
            build_graph(nodes)

        assert exc_info.value.node == "db-proxy"
        assert exc_info.value.target == "database"
        assert isinstance(exc_info.value, ValidationError)

    def test_duplicate_names_rejected(self) -> None:
        """Test that two nodes cannot share a name."""
        with pytest.raises(DuplicateResourceError, match="network"):
            build_graph([_node("network"), _node("network")])

    def test_empty_graph(self) -> None:
        """Test that an empty stack is a valid graph."""
        graph = build_graph([])

        assert len(graph) == 0
        assert graph.order == []


class TestDependencyGraph:
    """Tests for DependencyGraph queries."""

    @pytest.fixture
    def graph(self):
        return build_graph(
            [
                _node("network"),
                _node("database", "Database", ["network"]),
                _node("db-proxy", "Proxy", ["database"]),
                _node("cache", "Database", ["network"]),
                _node("user-service", "ComputeService", ["db-proxy"]),
            ]
        )

    def test_dependencies_and_dependents(self, graph) -> None:
        """Test direct edges in both directions."""
        assert graph.dependencies("db-proxy") == ["database"]
        assert graph.dependents("network") == ["database", "cache"]

    def test_descendants(self, graph) -> None:
        """Test transitive dependents."""
        assert graph.descendants("database") == {"db-proxy", "user-service"}
        assert graph.descendants("user-service") == set()

    def test_ready(self, graph) -> None:
        """Test the readiness query."""
        assert graph.ready(set()) == ["network"]
        assert graph.ready({"network"}) == ["database", "cache"]
        assert graph.ready({"network", "database", "cache"}) == ["db-proxy"]

    def test_iteration_in_topological_order(self, graph) -> None:
        """Test that iterating yields nodes in order."""
        assert [node.name for node in graph] == graph.order
        assert "cache" in graph
        assert "queue" not in graph
