"""Plan and apply passes over one stack.

A pass is:
1. Load the stack file and reject literal secrets
2. Build the dependency graph (fails fast on cycles and dangling references)
3. Load the snapshot and compute the plan
4. (apply) Take the state lock, execute the plan, and atomically commit the
   snapshot built from the prior state plus every successful operation

The snapshot is committed even when some operations failed: successful
operations changed remote state and must be remembered. Failed and skipped
operations keep their prior entries, so the next run plans them again.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass

from .config import Config, ProviderName
from .dependency import DependencyGraph, build_graph
from .executor import ApplyResult, Executor
from .models import StackSpec
from .provenance import ChangeSummary, OutcomeSummary, RunProvenance, get_provenance_logger
from .providers.base import ProviderRegistry
from .reconciler import OperationType, Plan, Reconciler
from .security import assert_no_secret_literals
from .snapshot import SnapshotEntry, SnapshotStore, StateSnapshot, Tombstone
from .spec_loader import load_stack, spec_file_hash

logger = logging.getLogger(__name__)


@dataclass
class PlanContext:
    """Everything a plan was computed from."""

    stack: StackSpec
    graph: DependencyGraph
    snapshot: StateSnapshot
    plan: Plan


@dataclass
class ApplyOutcome:
    """Result of an apply pass."""

    plan: Plan
    result: ApplyResult
    snapshot: StateSnapshot
    committed: bool = False

    @property
    def succeeded(self) -> bool:
        return self.result.succeeded


def build_registry(config: Config) -> ProviderRegistry:
    """Create the provider registry for the configured backend."""
    match config.provider:
        case ProviderName.LOCAL:
            from .providers.local import LocalProvider

            return ProviderRegistry.uniform(LocalProvider())
        case ProviderName.ARM:
            from .providers.arm import ArmProvider

            return ProviderRegistry.uniform(ArmProvider(config.arm))
        case _:
            raise ValueError(f"Unsupported provider: {config.provider}")


def build_next_snapshot(
    prior: StateSnapshot,
    graph: DependencyGraph,
    result: ApplyResult,
) -> StateSnapshot:
    """Fold successful operations into the prior snapshot.

    Entries are ordered by the desired graph's topological order, followed
    by prior entries that are still tracked (e.g. a delete that failed).
    """
    resources = dict(prior.resources)
    tombstones = list(prior.tombstones)

    for op_result in result.results:
        op = op_result.operation
        if not op_result.succeeded:
            continue

        match op.type:
            case OperationType.CREATE | OperationType.UPDATE:
                node = graph.get(op.node)
                if op.replacement:
                    old = prior.get(op.node)
                    delete_ok = any(
                        r.succeeded
                        for r in result.results
                        if r.operation.id == f"{OperationType.DELETE.value}:{op.node}"
                    )
                    if old is not None and not delete_ok and old.provider_id != op_result.provider_id:
                        tombstones.append(
                            Tombstone(
                                name=op.node,
                                kind=old.kind,
                                provider_id=old.provider_id,
                                reason=f"replaced by {op_result.provider_id}",
                                depends_on=list(old.depends_on),
                                generation=old.generation,
                            )
                        )
                resources[op.node] = SnapshotEntry(
                    kind=node.kind,
                    provider_id=op_result.provider_id or "",
                    properties=node.canonical_properties(),
                    outputs=op_result.outputs,
                    depends_on=graph.dependencies(op.node),
                    generation=op.generation,
                )

            case OperationType.NO_OP:
                entry = resources.get(op.node)
                if entry is not None:
                    resources[op.node] = entry.model_copy(
                        update={"depends_on": graph.dependencies(op.node)}
                    )

            case OperationType.DELETE:
                if "@" in op.id:
                    tombstones = [
                        t
                        for t in tombstones
                        if not (t.name == op.node and t.provider_id == op.provider_id)
                    ]
                elif not op.replacement:
                    resources.pop(op.node, None)

    ordered = {name: resources[name] for name in graph.order if name in resources}
    for name, entry in resources.items():
        ordered.setdefault(name, entry)

    return prior.model_copy(update={"resources": ordered, "tombstones": tombstones})


class StackRunner:
    """Runs plan and apply passes for the configured stack."""

    def __init__(
        self,
        config: Config,
        registry: ProviderRegistry | None = None,
        store: SnapshotStore | None = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self._store = store or SnapshotStore(config.state_file, config.lock_file)
        self._reconciler = Reconciler()
        self._executor: Executor | None = None
        self._shutdown_requested = False

    @property
    def store(self) -> SnapshotStore:
        return self._store

    def shutdown(self) -> None:
        """Signal cancellation: no further operations start."""
        logger.info("Shutdown requested")
        self._shutdown_requested = True
        if self._executor is not None:
            self._executor.cancel()

    def prepare(self) -> PlanContext:
        """Load, validate and plan.

        Raises:
            SpecLoadError: If the stack file is unreadable or invalid.
            ValidationError: On literal secrets, duplicates, cycles or
                dangling references.
            SnapshotCorruptionError: If the snapshot cannot be read back.
        """
        stack = load_stack(self._config.spec_file)
        for node in stack.resources:
            assert_no_secret_literals(node)
        graph = build_graph(stack.resources)
        snapshot = self._store.load()
        plan = self._reconciler.compute_plan(graph, snapshot, stack=stack.name)
        return PlanContext(stack=stack, graph=graph, snapshot=snapshot, plan=plan)

    def plan(self) -> Plan:
        """Compute the plan without applying it."""
        started = time.monotonic()
        context = self.prepare()
        provenance = self._new_provenance("plan", context)
        provenance.duration_seconds = time.monotonic() - started
        get_provenance_logger().log_provenance(provenance)
        return context.plan

    async def apply(self) -> ApplyOutcome:
        """Plan, execute and commit under the state lock.

        Raises:
            LockHeldError: If another run holds the state lock.
            MissingProviderError: If a planned kind has no provider.
            Plus everything `prepare` raises; in all these cases nothing
            was applied.
        """
        started = time.monotonic()
        run_id = uuid.uuid4().hex[:12]

        with self._store.lock(run_id):
            context = self.prepare()
            plan = context.plan
            provenance = self._new_provenance("apply", context, run_id=run_id)

            registry = self._registry or build_registry(self._config)
            registry.check(op.kind for op in plan.changes)

            self._executor = Executor.from_config(self._config, registry)
            if self._shutdown_requested:
                self._executor.cancel()

            result = await self._executor.execute(plan, context.graph, context.snapshot)

            next_snapshot = build_next_snapshot(context.snapshot, context.graph, result)
            committed = False
            if (
                next_snapshot.resources != context.snapshot.resources
                or next_snapshot.tombstones != context.snapshot.tombstones
            ):
                next_snapshot = self._store.commit(next_snapshot)
                committed = True
            else:
                logger.info("Snapshot unchanged, nothing to commit")

        provenance.snapshot_serial_after = next_snapshot.serial
        provenance.outcome = OutcomeSummary.from_counts(result.counts())
        provenance.failures = [r.to_dict() for r in result.failures]
        provenance.duration_seconds = time.monotonic() - started
        get_provenance_logger().log_provenance(provenance)

        return ApplyOutcome(plan=plan, result=result, snapshot=next_snapshot, committed=committed)

    def _new_provenance(self, command: str, context: PlanContext, run_id: str = "") -> RunProvenance:
        provenance = get_provenance_logger().create_provenance(
            run_id=run_id or uuid.uuid4().hex[:12],
            command=command,
            stack=context.stack.name,
            provider=self._config.provider.value,
            spec_file=str(self._config.spec_file),
            spec_file_hash=spec_file_hash(self._config.spec_file),
        )
        provenance.snapshot_serial_before = context.snapshot.serial
        provenance.change_summary = ChangeSummary.from_counts(context.plan.counts())
        return provenance
