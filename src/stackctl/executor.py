"""Plan execution.

Runs plan operations against providers in dependency order:

1. An operation becomes ready once every operation it depends on succeeded
2. Up to `max_concurrency` ready operations run at once
3. Retryable failures are retried with exponential backoff plus jitter
4. A fatal failure skips every transitive dependent; independent branches
   keep going
5. Cancellation stops dispatch; operations already running are awaited

Provider calls are blocking SDK calls. Each attempt runs in the event loop's
thread pool under a timeout; a timed-out attempt counts as retryable, and
the retry only starts once the timed-out call has returned.

Successful results are staged by the scheduling loop only, so the staging
area has a single writer. Reference values are resolved from staged results
of this run first and from the prior snapshot second.
"""

from __future__ import annotations

import asyncio
import heapq
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .config import Config
from .dependency import DependencyGraph
from .diff import REMOVE, PropertyChange
from .models import Reference, SecretRef
from .providers.base import (
    FatalProviderError,
    ProviderError,
    ProviderRegistry,
    RetryableProviderError,
)
from .reconciler import OperationType, Plan, PlanOperation
from .snapshot import StateSnapshot

logger = logging.getLogger(__name__)


class OperationStatus(str, Enum):
    """Outcome of a plan operation."""

    SUCCESS = "success"
    RETRYABLE = "retryable"  # per attempt only, never final
    FATAL = "fatal"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class OperationResult:
    """Outcome of one plan operation.

    Attributes:
        operation: The plan operation.
        status: Final status.
        attempts: Provider calls made.
        cause: Failure or skip reason.
        provider_id: Provider identifier after the operation (Create/Update/NoOp).
        outputs: Provider-generated values the stack did not declare.
    """

    operation: PlanOperation
    status: OperationStatus
    attempts: int = 0
    cause: str | None = None
    provider_id: str | None = None
    outputs: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == OperationStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.operation.id,
            "node": self.operation.node,
            "type": self.operation.type.value,
            "status": self.status.value,
            "attempts": self.attempts,
            "cause": self.cause,
            "providerId": self.provider_id,
        }


@dataclass
class ApplyResult:
    """Outcome of a plan execution, in plan order."""

    results: list[OperationResult] = field(default_factory=list)
    cancelled: bool = False

    def get(self, op_id: str) -> OperationResult:
        for result in self.results:
            if result.operation.id == op_id:
                return result
        raise KeyError(op_id)

    @property
    def succeeded(self) -> bool:
        return all(result.succeeded for result in self.results)

    @property
    def has_fatal(self) -> bool:
        return any(result.status == OperationStatus.FATAL for result in self.results)

    @property
    def failures(self) -> list[OperationResult]:
        return [result for result in self.results if not result.succeeded]

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in OperationStatus if status != OperationStatus.RETRYABLE}
        for result in self.results:
            counts[result.status.value] += 1
        return counts


@dataclass
class _Staged:
    provider_id: str
    properties: dict[str, Any]
    outputs: dict[str, Any]


class ReferenceResolutionError(FatalProviderError):
    """Raised when a reference cannot be turned into a concrete value."""

    pass


def _discard_outcome(future: asyncio.Future[Any]) -> None:
    # The attempt already counted as timed out
    if not future.cancelled():
        future.exception()


class Executor:
    """Applies a plan with bounded concurrency and retries."""

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        max_concurrency: int = 4,
        max_attempts: int = 3,
        backoff_base_seconds: float = 2.0,
        backoff_max_seconds: float = 60.0,
        operation_timeout_seconds: float = 900,
    ) -> None:
        self._registry = registry
        self._max_concurrency = max_concurrency
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base_seconds
        self._backoff_max = backoff_max_seconds
        self._timeout = operation_timeout_seconds
        self._cancel_event = asyncio.Event()

    @classmethod
    def from_config(cls, config: Config, registry: ProviderRegistry) -> Executor:
        return cls(
            registry,
            max_concurrency=config.max_concurrency,
            max_attempts=config.max_attempts,
            backoff_base_seconds=config.backoff_base_seconds,
            backoff_max_seconds=config.backoff_max_seconds,
            operation_timeout_seconds=config.operation_timeout_seconds,
        )

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Stop dispatching new operations."""
        if not self._cancel_event.is_set():
            logger.warning("Cancellation requested, no further operations will start")
        self._cancel_event.set()

    async def execute(
        self,
        plan: Plan,
        graph: DependencyGraph,
        snapshot: StateSnapshot,
    ) -> ApplyResult:
        """Run every operation of the plan.

        Args:
            plan: Plan to apply.
            graph: Desired graph the plan was computed from.
            snapshot: Snapshot the plan was computed from.

        Returns:
            Per-operation results in plan order.
        """
        operations = {op.id: op for op in plan}
        pending: dict[str, int] = {}
        dependents: dict[str, list[str]] = {op_id: [] for op_id in operations}
        for op in plan:
            deps = [dep for dep in op.depends_on if dep in operations]
            pending[op.id] = len(deps)
            for dep in deps:
                dependents[dep].append(op.id)

        results: dict[str, OperationResult] = {}
        staged: dict[str, _Staged] = {}
        ready: list[tuple[int, str]] = [
            (op.position, op.id) for op in plan if pending[op.id] == 0
        ]
        heapq.heapify(ready)
        in_flight: dict[asyncio.Task[OperationResult], str] = {}

        def complete(result: OperationResult) -> None:
            op = result.operation
            results[op.id] = result
            if result.succeeded:
                if op.type != OperationType.DELETE and result.provider_id:
                    staged[op.node] = _Staged(
                        provider_id=result.provider_id,
                        properties=graph.get(op.node).canonical_properties(),
                        outputs=result.outputs,
                    )
                for dependent in dependents[op.id]:
                    pending[dependent] -= 1
                    if pending[dependent] == 0:
                        heapq.heappush(ready, (operations[dependent].position, dependent))
                return

            for skipped_id in self._transitive(op.id, dependents):
                if skipped_id in results:
                    continue
                results[skipped_id] = OperationResult(
                    operation=operations[skipped_id],
                    status=OperationStatus.SKIPPED,
                    cause=f"dependency '{op.node}' did not succeed ({result.status.value})",
                )
                logger.warning(
                    "Operation skipped",
                    extra={"operation": skipped_id, "blocked_by": op.id},
                )

        logger.info(
            "Executing plan",
            extra={"operations": len(operations), "max_concurrency": self._max_concurrency},
        )

        while ready or in_flight:
            while ready and len(in_flight) < self._max_concurrency and not self.cancelled:
                _, op_id = heapq.heappop(ready)
                if op_id in results:
                    continue
                op = operations[op_id]
                if op.type == OperationType.NO_OP:
                    complete(
                        OperationResult(
                            operation=op,
                            status=OperationStatus.SUCCESS,
                            provider_id=op.provider_id,
                            outputs=dict(snapshot.resources[op.node].outputs)
                            if op.node in snapshot
                            else {},
                        )
                    )
                    continue
                task = asyncio.create_task(self._run(op, graph, snapshot, staged))
                in_flight[task] = op_id

            if not in_flight:
                if self.cancelled or not ready:
                    break
                continue

            done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                in_flight.pop(task)
                complete(task.result())

        ordered: list[OperationResult] = []
        for op in plan:
            result = results.get(op.id)
            if result is None:
                result = OperationResult(
                    operation=op,
                    status=OperationStatus.CANCELLED,
                    cause="run cancelled before the operation started",
                )
            ordered.append(result)

        apply_result = ApplyResult(results=ordered, cancelled=self.cancelled)
        logger.info("Plan execution finished", extra=apply_result.counts())
        return apply_result

    @staticmethod
    def _transitive(op_id: str, dependents: dict[str, list[str]]) -> list[str]:
        found: list[str] = []
        seen: set[str] = set()
        stack = list(dependents[op_id])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            found.append(current)
            stack.extend(dependents[current])
        return found

    # =========================================================================
    # Single operation
    # =========================================================================

    async def _run(
        self,
        op: PlanOperation,
        graph: DependencyGraph,
        snapshot: StateSnapshot,
        staged: dict[str, _Staged],
    ) -> OperationResult:
        """Run one operation with retries. Never raises."""
        last_error: Exception | None = None
        attempt = 0
        abandoned: list[asyncio.Future[Any]] = []

        for attempt in range(1, self._max_attempts + 1):
            if abandoned and not await self._settle(op, abandoned):
                return OperationResult(
                    operation=op,
                    status=OperationStatus.FATAL,
                    attempts=attempt - 1,
                    cause=f"timed-out call still running, not retried: {last_error}",
                )

            try:
                return await self._attempt(op, attempt, graph, snapshot, staged, abandoned)
            except RetryableProviderError as e:
                last_error = e
            except TimeoutError:
                last_error = RetryableProviderError(
                    f"timed out after {self._timeout} seconds", node=op.node
                )
            except ProviderError as e:
                logger.error(
                    "Operation failed",
                    extra={"operation": op.id, "attempt": attempt, "error": str(e)},
                )
                return OperationResult(
                    operation=op, status=OperationStatus.FATAL, attempts=attempt, cause=str(e)
                )
            except Exception as e:
                logger.exception("Unexpected provider error", extra={"operation": op.id})
                return OperationResult(
                    operation=op,
                    status=OperationStatus.FATAL,
                    attempts=attempt,
                    cause=f"{type(e).__name__}: {e}",
                )

            if attempt < self._max_attempts:
                # Exponential backoff with jitter
                backoff = min(self._backoff_base * (2 ** (attempt - 1)), self._backoff_max)
                jitter = random.uniform(0, backoff * 0.2)
                wait_time = backoff + jitter

                logger.warning(
                    "Operation failed, retrying",
                    extra={
                        "operation": op.id,
                        "status": OperationStatus.RETRYABLE.value,
                        "attempt": attempt,
                        "max_attempts": self._max_attempts,
                        "wait_seconds": wait_time,
                        "error": str(last_error),
                    },
                )

                try:
                    await asyncio.wait_for(self._cancel_event.wait(), timeout=wait_time)
                except TimeoutError:
                    continue
                return OperationResult(
                    operation=op,
                    status=OperationStatus.CANCELLED,
                    attempts=attempt,
                    cause=f"run cancelled while waiting to retry: {last_error}",
                )

        logger.error(
            "Operation failed, retries exhausted",
            extra={"operation": op.id, "attempts": attempt, "error": str(last_error)},
        )
        return OperationResult(
            operation=op,
            status=OperationStatus.FATAL,
            attempts=attempt,
            cause=f"gave up after {attempt} attempts: {last_error}",
        )

    async def _attempt(
        self,
        op: PlanOperation,
        attempt: int,
        graph: DependencyGraph,
        snapshot: StateSnapshot,
        staged: dict[str, _Staged],
        abandoned: list[asyncio.Future[Any]],
    ) -> OperationResult:
        provider = self._registry.for_kind(op.kind)
        logger.info(
            "Applying operation",
            extra={"operation": op.id, "node": op.node, "attempt": attempt},
        )

        match op.type:
            case OperationType.CREATE:
                node = graph.get(op.node)
                properties = self._resolve(node.properties, snapshot, staged, op.node)
                created = await self._call(
                    lambda: provider.create(node.kind, properties, name=op.physical_name), abandoned
                )
                outputs = {k: v for k, v in created.properties.items() if k not in node.properties}
                return OperationResult(
                    operation=op,
                    status=OperationStatus.SUCCESS,
                    attempts=attempt,
                    provider_id=created.provider_id,
                    outputs=outputs,
                )

            case OperationType.UPDATE:
                node = graph.get(op.node)
                diff = [
                    change
                    if change.action == REMOVE
                    else PropertyChange(
                        key=change.key,
                        before=change.before,
                        after=self._resolve(node.properties[change.key], snapshot, staged, op.node),
                        action=change.action,
                    )
                    for change in op.changes
                ]
                provider_id = self._require_id(op)
                returned = await self._call(lambda: provider.update(provider_id, diff), abandoned)
                prior = snapshot.get(op.node)
                outputs = dict(prior.outputs) if prior else {}
                outputs.update({k: v for k, v in returned.items() if k not in node.properties})
                return OperationResult(
                    operation=op,
                    status=OperationStatus.SUCCESS,
                    attempts=attempt,
                    provider_id=provider_id,
                    outputs=outputs,
                )

            case OperationType.DELETE:
                provider_id = self._require_id(op)
                live = [name for name, entry in staged.items() if entry.provider_id == provider_id]
                if live:
                    # The provider handed this id to a resource created in this run
                    logger.warning(
                        "Delete skipped, provider id is in use",
                        extra={"operation": op.id, "provider_id": provider_id, "used_by": live},
                    )
                    return OperationResult(
                        operation=op,
                        status=OperationStatus.SUCCESS,
                        attempts=0,
                        provider_id=provider_id,
                    )
                await self._call(lambda: provider.delete(provider_id), abandoned)
                return OperationResult(
                    operation=op,
                    status=OperationStatus.SUCCESS,
                    attempts=attempt,
                    provider_id=provider_id,
                )

            case _:
                raise FatalProviderError(f"Unsupported operation type: {op.type}", node=op.node)

    async def _call(self, func: Callable[[], Any], abandoned: list[asyncio.Future[Any]]) -> Any:
        """Run a blocking provider call in the thread pool under the timeout.

        A worker thread cannot be interrupted, so on timeout the call keeps
        running. Its future is added to `abandoned`, and the next attempt
        waits for it first so two calls never hit the same resource at once.
        """
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, func)
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=self._timeout)
        except TimeoutError:
            future.add_done_callback(_discard_outcome)
            abandoned.append(future)
            raise

    async def _settle(self, op: PlanOperation, abandoned: list[asyncio.Future[Any]]) -> bool:
        """Wait up to one more timeout for abandoned calls; True once all finished."""
        logger.warning(
            "Waiting for timed-out call to finish before retrying",
            extra={"operation": op.id, "calls": len(abandoned)},
        )
        _, still_running = await asyncio.wait(abandoned, timeout=self._timeout)
        if still_running:
            logger.error(
                "Timed-out call still running, not retrying",
                extra={"operation": op.id, "timeout_seconds": self._timeout},
            )
            return False
        abandoned.clear()
        return True

    @staticmethod
    def _require_id(op: PlanOperation) -> str:
        if not op.provider_id:
            raise FatalProviderError(f"No provider id recorded for '{op.node}'", node=op.node)
        return op.provider_id

    def _resolve(
        self,
        value: Any,
        snapshot: StateSnapshot,
        staged: dict[str, _Staged],
        node: str,
    ) -> Any:
        """Replace references with concrete values; secrets stay locators."""
        if isinstance(value, SecretRef):
            return value.to_json()
        if isinstance(value, Reference):
            return self._resolve_reference(value, snapshot, staged, node)
        if isinstance(value, dict):
            return {k: self._resolve(v, snapshot, staged, node) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve(v, snapshot, staged, node) for v in value]
        return value

    @staticmethod
    def _resolve_reference(
        ref: Reference,
        snapshot: StateSnapshot,
        staged: dict[str, _Staged],
        node: str,
    ) -> Any:
        target: _Staged | None = staged.get(ref.target)
        if target is None:
            entry = snapshot.get(ref.target)
            if entry is not None:
                target = _Staged(entry.provider_id, entry.properties, entry.outputs)
        if target is None:
            raise ReferenceResolutionError(
                f"Resource '{node}' references '{ref.target}', which has not been applied",
                node=node,
            )

        if ref.attribute is None:
            return target.provider_id
        if ref.attribute in target.outputs:
            return target.outputs[ref.attribute]
        if ref.attribute in target.properties:
            return target.properties[ref.attribute]
        raise ReferenceResolutionError(
            f"Resource '{node}' references attribute '{ref.attribute}' of "
            f"'{ref.target}', which the resource does not expose",
            node=node,
        )
