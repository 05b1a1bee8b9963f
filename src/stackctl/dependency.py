"""Resource dependency graph construction and validation.

This module turns declared resources into a validated dependency graph:
1. Reference resolution (every reference must name a declared resource)
2. Cycle detection to prevent deadlocks during apply
3. Deterministic topological ordering for planning and execution

DESIGN:
- Resources declare dependencies through `{ref: <name>}` property values
  and an optional `dependsOn` list
- Ties between resources that become ready together are broken by
  declaration order, so the same stack file always yields the same order

EXAMPLE STACK:
```yaml
resources:
  - name: network
    kind: Network
  - name: db-proxy
    kind: Proxy
    properties:
      vpc: {ref: network}
```
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field

from .models import ResourceNode

logger = logging.getLogger(__name__)


class ValidationError(Exception):
    """Raised when the desired state cannot form a valid graph."""

    pass


class DuplicateResourceError(ValidationError):
    """Raised when two resources share a name."""

    def __init__(self, name: str) -> None:
        self.node = name
        super().__init__(f"Resource '{name}' is declared more than once")


class DanglingReferenceError(ValidationError):
    """Raised when a resource references a name that is not declared."""

    def __init__(self, node: str, target: str) -> None:
        self.node = node
        self.target = target
        super().__init__(
            f"Resource '{node}' references '{target}', which is not declared in the stack"
        )


class CycleError(ValidationError):
    """Raised when a dependency cycle is detected."""

    def __init__(self, nodes: list[str]) -> None:
        self.nodes = nodes
        super().__init__(f"Circular dependency detected involving: {nodes}")


def topological_order(names: Sequence[str], edges: Mapping[str, Sequence[str]]) -> list[str]:
    """Order names so every name follows all names it depends on.

    Kahn's algorithm. Among names that are ready at the same time, the one
    listed first in `names` wins. Edges to names outside `names` are ignored.

    Args:
        names: All names, in declaration order.
        edges: name -> names it depends on.

    Returns:
        Names in dependency order (dependencies first).

    Raises:
        CycleError: If a cycle is detected.
    """
    index = {name: i for i, name in enumerate(names)}
    in_degree: dict[str, int] = {name: 0 for name in names}
    dependents: dict[str, list[str]] = {name: [] for name in names}

    for name in names:
        for dep in dict.fromkeys(edges.get(name, ())):
            if dep in index:
                in_degree[name] += 1
                dependents[dep].append(name)

    ready = [index[name] for name in names if in_degree[name] == 0]
    heapq.heapify(ready)
    result: list[str] = []

    while ready:
        current = names[heapq.heappop(ready)]
        result.append(current)
        for dependent in dependents[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(ready, index[dependent])

    if len(result) != len(names):
        raise CycleError(_cycle_members(names, edges, set(result)))

    return result


def _cycle_members(
    names: Sequence[str], edges: Mapping[str, Sequence[str]], processed: set[str]
) -> list[str]:
    """Narrow unprocessed names down to those on (or between) cycles.

    Kahn's leftovers also include names that merely depend on a cycle;
    those have no dependents among the leftovers and are peeled off.
    """
    remaining = [name for name in names if name not in processed]
    changed = True
    while changed:
        changed = False
        depended_on = {
            dep for name in remaining for dep in edges.get(name, ()) if dep in remaining
        }
        kept = [name for name in remaining if name in depended_on]
        if len(kept) != len(remaining):
            remaining = kept
            changed = True
    return remaining


@dataclass
class DependencyGraph:
    """Validated directed acyclic graph of declared resources.

    Built once per reconciliation pass by `build_graph`; exclusively owns
    its nodes.
    """

    nodes: dict[str, ResourceNode] = field(default_factory=dict)
    order: list[str] = field(default_factory=list)
    _dependencies: dict[str, list[str]] = field(default_factory=dict, repr=False)
    _dependents: dict[str, list[str]] = field(default_factory=dict, repr=False)

    def __contains__(self, name: object) -> bool:
        return name in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[ResourceNode]:
        """Iterate nodes in topological order."""
        return (self.nodes[name] for name in self.order)

    def get(self, name: str) -> ResourceNode:
        return self.nodes[name]

    def dependencies(self, name: str) -> list[str]:
        """Names the given resource depends on."""
        return list(self._dependencies.get(name, []))

    def dependents(self, name: str) -> list[str]:
        """Names that depend directly on the given resource (topological order)."""
        return list(self._dependents.get(name, []))

    def descendants(self, name: str) -> set[str]:
        """All names that depend on the given resource, directly or transitively.

        Public helper for callers inspecting the graph, e.g. to see what a
        change to one resource can affect. Planning does not use it.
        """
        found: set[str] = set()
        stack = list(self._dependents.get(name, []))
        while stack:
            current = stack.pop()
            if current not in found:
                found.add(current)
                stack.extend(self._dependents.get(current, []))
        return found

    def ready(self, satisfied: set[str]) -> list[str]:
        """Get names whose dependencies are all satisfied.

        Public helper for callers that apply the graph node by node. The
        executor schedules plan operations with its own ready queue, since
        plans also carry deletes that are not graph nodes.

        Args:
            satisfied: Names already applied.

        Returns:
            Names that can be applied now, in topological order.
        """
        return [
            name
            for name in self.order
            if name not in satisfied
            and all(dep in satisfied for dep in self._dependencies[name])
        ]


def build_graph(nodes: Iterable[ResourceNode]) -> DependencyGraph:
    """Assemble declared resources into a validated dependency graph.

    Args:
        nodes: Resource declarations, in declaration order.

    Returns:
        The dependency graph with a deterministic topological order.

    Raises:
        DuplicateResourceError: If two resources share a name.
        DanglingReferenceError: If a reference names an undeclared resource.
        CycleError: If the references form a cycle.
    """
    declared: dict[str, ResourceNode] = {}
    for node in nodes:
        if node.name in declared:
            raise DuplicateResourceError(node.name)
        declared[node.name] = node

    dependencies: dict[str, list[str]] = {}
    for node in declared.values():
        refs = node.references()
        for target in refs:
            if target not in declared:
                raise DanglingReferenceError(node.name, target)
        dependencies[node.name] = refs

    names = list(declared)
    order = topological_order(names, dependencies)

    position = {name: i for i, name in enumerate(order)}
    dependents: dict[str, list[str]] = {name: [] for name in names}
    for name in order:
        for dep in dependencies[name]:
            dependents[dep].append(name)
    for dep_list in dependents.values():
        dep_list.sort(key=position.__getitem__)

    logger.debug(
        "Dependency graph built",
        extra={"resource_count": len(names), "order": order},
    )

    return DependencyGraph(
        nodes=declared,
        order=order,
        _dependencies=dependencies,
        _dependents=dependents,
    )
