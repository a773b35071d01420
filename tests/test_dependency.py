"""Tests for resource dependency ordering."""

from __future__ import annotations

import pytest

from bootstrapper.dependency import (
    CyclicDependencyError,
    DependencyGraph,
    DependencyNode,
    UnknownDependencyError,
    order_resources,
)
from bootstrapper.models import HelmReleaseSpec, ManagedResource, ResourceKind


def release(name: str, *depends_on: str) -> ManagedResource:
    return ManagedResource(
        name=name,
        kind=ResourceKind.HELM_RELEASE,
        depends_on=list(depends_on),
        desired_spec=HelmReleaseSpec(chart=f"./{name}"),
    )


class TestDependencyNode:
    """Tests for DependencyNode dataclass."""

    def test_default_values(self) -> None:
        """Test default node values."""
        node = DependencyNode(name="mysql")
        assert node.depends_on == []
        assert node.position == 0


class TestDependencyGraph:
    """Tests for DependencyGraph."""

    def test_add_node_keeps_position(self) -> None:
        """Test that nodes record registry order."""
        graph = DependencyGraph()
        graph.add_node("namespace")
        graph.add_node("mysql", ["namespace"])

        assert graph.nodes["namespace"].position == 0
        assert graph.nodes["mysql"].position == 1
        assert graph.nodes["mysql"].depends_on == ["namespace"]

    def test_topological_sort_respects_dependencies(self) -> None:
        """Test that dependencies come first."""
        graph = DependencyGraph()
        graph.add_node("root-app", ["argocd", "app"])
        graph.add_node("app", ["mysql"])
        graph.add_node("mysql")
        graph.add_node("argocd")

        order = graph.topological_sort()

        assert order.index("mysql") < order.index("app")
        assert order.index("app") < order.index("root-app")
        assert order.index("argocd") < order.index("root-app")

    def test_ties_keep_registry_order(self) -> None:
        """Test that independent nodes keep insertion order."""
        graph = DependencyGraph()
        for name in ("zeta", "alpha", "mid"):
            graph.add_node(name)

        assert graph.topological_sort() == ["zeta", "alpha", "mid"]

    def test_ready_nodes_sorted_by_position(self) -> None:
        """Test that ready nodes run in registry order, wherever they were unblocked."""
        graph = DependencyGraph()
        graph.add_node("namespace")
        graph.add_node("a", ["namespace"])
        graph.add_node("b", ["namespace"])
        graph.add_node("c", ["a"])
        graph.add_node("d", ["namespace"])

        assert graph.topological_sort() == ["namespace", "a", "b", "c", "d"]

    def test_cycle_detected(self) -> None:
        """Test that cycles raise CyclicDependencyError."""
        graph = DependencyGraph()
        graph.add_node("a", ["b"])
        graph.add_node("b", ["c"])
        graph.add_node("c", ["a"])

        with pytest.raises(CyclicDependencyError) as exc_info:
            graph.validate()

        assert "Circular dependency" in str(exc_info.value)

    def test_external_dependencies_allowed_without_known(self) -> None:
        """Test that references outside the graph are ignored for ordering."""
        graph = DependencyGraph()
        graph.add_node("root-app", ["argocd"])

        graph.validate()
        assert graph.external_dependencies() == {"argocd"}
        assert graph.topological_sort() == ["root-app"]

    def test_unknown_dependency_rejected(self) -> None:
        """Test that dangling references fail when the known set is given."""
        graph = DependencyGraph()
        graph.add_node("app", ["mysql"])

        with pytest.raises(UnknownDependencyError) as exc_info:
            graph.validate(known=())

        assert "mysql" in str(exc_info.value)

    def test_unsatisfied_dependencies(self) -> None:
        """Test reporting of dependencies not yet satisfied."""
        graph = DependencyGraph()
        graph.add_node("root-app", ["argocd", "app", "user-management"])

        missing = graph.unsatisfied_dependencies("root-app", {"app"})
        assert missing == ["argocd", "user-management"]


class TestOrderResources:
    """Tests for order_resources()."""

    def test_orders_descriptors(self) -> None:
        """Test ordering of resource descriptors."""
        resources = [release("app", "mysql"), release("mysql"), release("other")]

        ordered = order_resources(resources)

        assert [r.name for r in ordered] == ["mysql", "app", "other"]

    def test_cycle_raises(self) -> None:
        """Test that a cycle among descriptors raises."""
        with pytest.raises(CyclicDependencyError):
            order_resources([release("a", "b"), release("b", "a")])
