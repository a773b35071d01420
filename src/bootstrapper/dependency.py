"""Resource dependency ordering and validation.

This module implements dependency management for a reconciliation pass:
1. Dependency graph construction from `dependsOn` declarations
2. Stable topological sorting for execution order
3. Cycle and dangling-reference detection before any action runs
4. Blocking checks against outcomes already reached

Ordering is stable: among resources whose dependencies are equally
satisfied, registry order wins, so the default registry runs in the
order it is written.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from .models import ManagedResource

logger = logging.getLogger(__name__)


class DependencyError(Exception):
    """Raised when dependency validation fails."""

    pass


class CyclicDependencyError(DependencyError):
    """Raised when a dependency cycle is detected."""

    pass


class UnknownDependencyError(DependencyError):
    """Raised when a resource depends on a name that is not registered."""

    pass


@dataclass
class DependencyNode:
    """A node in the dependency graph."""

    name: str
    depends_on: list[str] = field(default_factory=list)
    position: int = 0  # Registry order, used to break ties


@dataclass
class DependencyGraph:
    """Directed acyclic graph of resource dependencies.

    Dependencies on names outside the graph are kept on the node but do
    not take part in ordering; a later pass may depend on resources that
    an earlier pass already satisfied.
    """

    nodes: dict[str, DependencyNode] = field(default_factory=dict)

    @classmethod
    def from_resources(cls, resources: Iterable[ManagedResource]) -> DependencyGraph:
        graph = cls()
        for resource in resources:
            graph.add_node(resource.name, resource.depends_on)
        return graph

    def add_node(self, name: str, depends_on: list[str] | None = None) -> None:
        """Add a node to the dependency graph.

        Args:
            name: Resource name.
            depends_on: Names this resource depends on.
        """
        if name in self.nodes:
            if depends_on:
                self.nodes[name].depends_on = list(depends_on)
            return

        self.nodes[name] = DependencyNode(
            name=name,
            depends_on=list(depends_on or []),
            position=len(self.nodes),
        )

    def external_dependencies(self) -> set[str]:
        """Names depended on that are not nodes of this graph."""
        return {
            dep for node in self.nodes.values() for dep in node.depends_on if dep not in self.nodes
        }

    def validate(self, known: Iterable[str] | None = None) -> None:
        """Validate the dependency graph.

        Args:
            known: Names that may be referenced from outside the graph. When
                given, any other external reference is an error.

        Raises:
            UnknownDependencyError: If a dependency names an unknown resource.
            CyclicDependencyError: If a cycle is detected.
        """
        if known is not None:
            dangling = self.external_dependencies() - set(known)
            if dangling:
                raise UnknownDependencyError(
                    f"Unknown dependencies referenced: {sorted(dangling)}"
                )

        # Kahn's algorithm for cycle detection
        in_degree: dict[str, int] = {name: 0 for name in self.nodes}
        dependents: dict[str, list[str]] = {name: [] for name in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep in self.nodes:
                    in_degree[node.name] += 1
                    dependents[dep].append(node.name)

        queue = [name for name, degree in in_degree.items() if degree == 0]
        processed = 0

        while queue:
            current = queue.pop(0)
            processed += 1
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if processed != len(self.nodes):
            cycle_nodes = [name for name, degree in in_degree.items() if degree > 0]
            raise CyclicDependencyError(f"Circular dependency detected involving: {cycle_nodes}")

    def topological_sort(self) -> list[str]:
        """Return names in dependency order (dependencies first).

        Returns:
            Names in execution order, ties broken by registry position.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.validate()

        dependents: dict[str, list[str]] = {name: [] for name in self.nodes}
        in_degree: dict[str, int] = {name: 0 for name in self.nodes}

        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep in dependents:
                    dependents[dep].append(node.name)
                    in_degree[node.name] += 1

        result: list[str] = []
        queue = [name for name, degree in in_degree.items() if degree == 0]

        while queue:
            # Registry order among ready nodes keeps the sort stable
            queue.sort(key=lambda name: self.nodes[name].position)
            current = queue.pop(0)
            result.append(current)

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        return result

    def unsatisfied_dependencies(self, name: str, satisfied: set[str]) -> list[str]:
        """Dependencies of a node that have not reached a satisfied outcome.

        Args:
            name: Node to check.
            satisfied: Names already satisfied, in this or an earlier pass.

        Returns:
            Unsatisfied dependency names in declaration order.
        """
        return [dep for dep in self.nodes[name].depends_on if dep not in satisfied]


def order_resources(resources: Iterable[ManagedResource]) -> list[ManagedResource]:
    """Sort resources so every resource follows its dependencies.

    Raises:
        CyclicDependencyError: If the resources form a cycle.
    """
    by_name = {resource.name: resource for resource in resources}
    graph = DependencyGraph.from_resources(by_name.values())
    order = graph.topological_sort()
    logger.debug("Resolved reconciliation order", extra={"order": order})
    return [by_name[name] for name in order]
