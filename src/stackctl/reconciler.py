"""State reconciliation: desired graph + last-applied snapshot -> plan.

The reconciler is pure: it never calls a provider. References are compared
in their declared form (`{ref: network}`), so a plan can be computed from the
stack file and the snapshot alone.

PLAN ORDER:
1. Create / Update / NoOp for every declared resource, in topological order
2. Delete for orphaned tombstones
3. Delete for removed resources and for the old half of replacements, in
   reverse topological order of the edges recorded in the snapshot

REPLACEMENT:
A change to an identity property (see models.REPLACEMENT_PROPERTIES) cannot
be applied in place. The resource is created anew at its normal position,
dependents that reference it are updated to point at the new resource, and
only then is the old resource deleted.
Every replacement bumps the resource generation, and the new resource is
created under the physical name `<name>-<generation>`. Providers that derive
ids from the name therefore hand out a new id, never the one being deleted.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from .dependency import CycleError, DependencyGraph, topological_order
from .diff import PropertyChange, compute_diff
from .models import ResourceKind, ResourceNode
from .snapshot import SnapshotEntry, StateSnapshot, Tombstone

logger = logging.getLogger(__name__)


class OperationType(str, Enum):
    """Plan operation types."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NO_OP = "no-op"


@dataclass(frozen=True)
class PlanOperation:
    """A single step of a plan.

    Attributes:
        id: Unique id within the plan (e.g. "update:db-proxy").
        type: Operation type.
        node: Resource name.
        kind: Resource kind.
        position: Index in plan order.
        changes: Property changes (Update, and Create when replacing).
        provider_id: Provider identifier of the existing resource (Update/Delete/NoOp).
        replacement: True for both halves of a replacement.
        reason: Human-readable explanation.
        depends_on: Ids of operations that must succeed first.
        generation: Replacement count of the resource the operation acts on.
    """

    id: str
    type: OperationType
    node: str
    kind: ResourceKind
    position: int = 0
    changes: tuple[PropertyChange, ...] = ()
    provider_id: str | None = None
    replacement: bool = False
    reason: str = ""
    depends_on: tuple[str, ...] = ()
    generation: int = 0

    @property
    def is_change(self) -> bool:
        return self.type != OperationType.NO_OP

    @property
    def physical_name(self) -> str:
        return physical_name(self.node, self.generation)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "node": self.node,
            "kind": self.kind.value,
            "position": self.position,
            "changes": [change.to_dict() for change in self.changes],
            "providerId": self.provider_id,
            "replacement": self.replacement,
            "reason": self.reason,
            "dependsOn": list(self.depends_on),
            "physicalName": self.physical_name,
        }


@dataclass
class Plan:
    """Ordered operations moving the snapshot toward the desired graph."""

    operations: list[PlanOperation] = field(default_factory=list)
    stack: str = ""
    snapshot_serial: int = 0

    def __iter__(self):
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self.operations)

    @property
    def has_changes(self) -> bool:
        return any(op.is_change for op in self.operations)

    @property
    def changes(self) -> list[PlanOperation]:
        return [op for op in self.operations if op.is_change]

    def counts(self) -> dict[str, int]:
        """Operation counts by type (replacements counted once, as `replace`)."""
        counter: Counter[str] = Counter()
        for op in self.operations:
            if op.replacement:
                if op.type == OperationType.CREATE:
                    counter["replace"] += 1
                continue
            counter[op.type.value] += 1
        return {key: counter.get(key, 0) for key in ("create", "update", "replace", "delete", "no-op")}

    def get(self, op_id: str) -> PlanOperation:
        for op in self.operations:
            if op.id == op_id:
                return op
        raise KeyError(op_id)

    def for_node(self, node: str) -> list[PlanOperation]:
        return [op for op in self.operations if op.node == node]

    def to_dict(self) -> dict[str, Any]:
        return {
            "stack": self.stack,
            "snapshotSerial": self.snapshot_serial,
            "summary": self.counts(),
            "operations": [op.to_dict() for op in self.operations],
        }


def physical_name(name: str, generation: int) -> str:
    """Name a resource is created under; replacements get a numbered suffix."""
    return name if generation == 0 else f"{name}-{generation}"


def _op_id(op_type: OperationType, node: str) -> str:
    return f"{op_type.value}:{node}"


def _tombstone_op_id(tomb: Tombstone) -> str:
    return f"{OperationType.DELETE.value}:{tomb.name}@{tomb.provider_id}"


def _next_generation(name: str, snapshot: StateSnapshot) -> int:
    """Generation for a new resource named `name`, above any still tracked."""
    generations = [tomb.generation for tomb in snapshot.tombstones if tomb.name == name]
    entry = snapshot.get(name)
    if entry is not None:
        generations.append(entry.generation)
    return max(generations) + 1 if generations else 0


class Reconciler:
    """Computes the plan for one reconciliation pass."""

    def compute_plan(
        self,
        graph: DependencyGraph,
        snapshot: StateSnapshot,
        stack: str = "",
    ) -> Plan:
        """Diff the desired graph against the snapshot.

        Args:
            graph: Validated desired-state graph.
            snapshot: Last committed state.
            stack: Stack name, for reporting.

        Returns:
            Deterministic plan; all NoOp when nothing changed.
        """
        forward: dict[str, PlanOperation] = {}
        replaced: list[str] = []

        for node in graph:
            op = self._classify(
                node, snapshot.get(node.name), _next_generation(node.name, snapshot)
            )
            if op.replacement:
                replaced.append(node.name)
            forward[node.name] = op

        self._force_dependent_updates(graph, snapshot, forward, set(replaced))

        # Wire forward dependencies now that op ids are final
        for name, op in forward.items():
            forward[name] = replace(
                op,
                depends_on=tuple(forward[dep].id for dep in graph.dependencies(name)),
            )

        operations = [forward[name] for name in graph.order]
        operations.extend(self._tombstone_deletes(snapshot))
        operations.extend(self._resource_deletes(graph, snapshot, forward, replaced))

        operations = [replace(op, position=i) for i, op in enumerate(operations)]
        plan = Plan(operations=operations, stack=stack, snapshot_serial=snapshot.serial)

        logger.info(
            "Plan computed",
            extra={"stack": stack, "snapshot_serial": snapshot.serial, **plan.counts()},
        )
        return plan

    def _classify(
        self,
        node: ResourceNode,
        entry: SnapshotEntry | None,
        next_generation: int,
    ) -> PlanOperation:
        if entry is None:
            return PlanOperation(
                id=_op_id(OperationType.CREATE, node.name),
                type=OperationType.CREATE,
                node=node.name,
                kind=node.kind,
                reason="not in snapshot",
                generation=next_generation,
            )

        changes = compute_diff(node.canonical_properties(), entry.properties, node.generated)

        if entry.kind != node.kind:
            return PlanOperation(
                id=_op_id(OperationType.CREATE, node.name),
                type=OperationType.CREATE,
                node=node.name,
                kind=node.kind,
                changes=tuple(changes),
                replacement=True,
                reason=f"kind changed from {entry.kind.value} to {node.kind.value}",
                generation=next_generation,
            )

        forcing = sorted(
            change.key for change in changes if change.key in node.replacement_keys()
        )
        if forcing:
            return PlanOperation(
                id=_op_id(OperationType.CREATE, node.name),
                type=OperationType.CREATE,
                node=node.name,
                kind=node.kind,
                changes=tuple(changes),
                replacement=True,
                reason=f"{', '.join(forcing)} requires replacement",
                generation=next_generation,
            )

        if changes:
            return PlanOperation(
                id=_op_id(OperationType.UPDATE, node.name),
                type=OperationType.UPDATE,
                node=node.name,
                kind=node.kind,
                changes=tuple(changes),
                provider_id=entry.provider_id,
                reason=f"{len(changes)} propert{'y' if len(changes) == 1 else 'ies'} changed",
                generation=entry.generation,
            )

        return PlanOperation(
            id=_op_id(OperationType.NO_OP, node.name),
            type=OperationType.NO_OP,
            node=node.name,
            kind=node.kind,
            provider_id=entry.provider_id,
            reason="up to date",
            generation=entry.generation,
        )

    def _force_dependent_updates(
        self,
        graph: DependencyGraph,
        snapshot: StateSnapshot,
        forward: dict[str, PlanOperation],
        replaced: set[str],
    ) -> None:
        """Turn NoOps/Updates of resources referencing a replaced resource into
        Updates that re-resolve the reference."""
        if not replaced:
            return

        for name in graph.order:
            op = forward[name]
            if op.type not in (OperationType.NO_OP, OperationType.UPDATE):
                continue

            node = graph.get(name)
            entry = snapshot.get(name)
            replaced_deps = [dep for dep in graph.dependencies(name) if dep in replaced]
            if not replaced_deps or entry is None:
                continue

            keys: list[str] = []
            for dep in replaced_deps:
                for key in node.references_to(dep):
                    if key not in keys:
                        keys.append(key)
            if not keys:
                continue

            existing = {change.key for change in op.changes}
            canonical = node.canonical_properties()
            extra = tuple(
                PropertyChange(key=key, before=entry.properties.get(key), after=canonical[key])
                for key in keys
                if key not in existing
            )
            forward[name] = replace(
                op,
                id=_op_id(OperationType.UPDATE, name),
                type=OperationType.UPDATE,
                changes=op.changes + extra,
                reason=f"dependency replaced: {', '.join(replaced_deps)}",
            )

    def _tombstone_deletes(self, snapshot: StateSnapshot) -> list[PlanOperation]:
        """Deletes for orphaned resources, dependents before their dependencies.

        A tombstone records the names its resource depended on when it was
        still tracked. Deleting one waits for the deletes of every tombstone
        that depended on it.
        """
        tombstones = snapshot.tombstones
        if not tombstones:
            return []

        names = list(dict.fromkeys(tomb.name for tomb in tombstones))
        edges: dict[str, list[str]] = {name: [] for name in names}
        for tomb in tombstones:
            for dep in tomb.depends_on:
                if dep in edges and dep != tomb.name and dep not in edges[tomb.name]:
                    edges[tomb.name].append(dep)
        try:
            order = topological_order(names, edges)
        except CycleError:
            logger.warning(
                "Tombstone dependency edges form a cycle, deleting in snapshot order",
                extra={"tombstones": names},
            )
            order = list(reversed(names))
        rank = {name: i for i, name in enumerate(order)}

        deletes: list[PlanOperation] = []
        for tomb in sorted(tombstones, key=lambda t: -rank[t.name]):
            deletes.append(
                PlanOperation(
                    id=_tombstone_op_id(tomb),
                    type=OperationType.DELETE,
                    node=tomb.name,
                    kind=tomb.kind,
                    provider_id=tomb.provider_id,
                    reason=tomb.reason or "orphaned resource",
                    generation=tomb.generation,
                    depends_on=tuple(
                        _tombstone_op_id(other)
                        for other in tombstones
                        if other.name != tomb.name and tomb.name in other.depends_on
                    ),
                )
            )
        return deletes

    def _resource_deletes(
        self,
        graph: DependencyGraph,
        snapshot: StateSnapshot,
        forward: dict[str, PlanOperation],
        replaced: list[str],
    ) -> list[PlanOperation]:
        removed = [name for name in snapshot.resources if name not in graph]
        targets = set(removed) | set(replaced)
        if not targets:
            return []

        names = list(snapshot.resources)
        edges = {name: entry.depends_on for name, entry in snapshot.resources.items()}
        try:
            snapshot_order = topological_order(names, edges)
        except CycleError:
            logger.warning(
                "Snapshot dependency edges form a cycle, deleting in reverse snapshot order",
                extra={"resources": names},
            )
            snapshot_order = names

        snapshot_dependents: dict[str, list[str]] = {name: [] for name in names}
        for name, deps in edges.items():
            for dep in deps:
                if dep in snapshot_dependents:
                    snapshot_dependents[dep].append(name)

        deletes: list[PlanOperation] = []
        for name in reversed(snapshot_order):
            if name not in targets:
                continue
            entry = snapshot.resources[name]
            deps: list[str] = []
            for dependent in snapshot_dependents[name]:
                if dependent in targets:
                    deps.append(_op_id(OperationType.DELETE, dependent))
                if dependent in forward:
                    deps.append(forward[dependent].id)
            deps.extend(
                _tombstone_op_id(tomb) for tomb in snapshot.tombstones if name in tomb.depends_on
            )

            is_replacement = name in forward
            if is_replacement:
                deps.append(forward[name].id)
                deps.extend(forward[dependent].id for dependent in graph.dependents(name))
                reason = f"replaced: {forward[name].reason}"
            else:
                reason = "removed from stack"

            deletes.append(
                PlanOperation(
                    id=_op_id(OperationType.DELETE, name),
                    type=OperationType.DELETE,
                    node=name,
                    kind=entry.kind,
                    provider_id=entry.provider_id,
                    replacement=is_replacement,
                    reason=reason,
                    generation=entry.generation,
                    depends_on=tuple(dict.fromkeys(deps)),
                )
            )

        return deletes
