"""Run entry points and logging setup.

Exit codes:
    0: plan computed / every operation succeeded
    1: at least one operation did not succeed (fatal, skipped or cancelled),
       or an unexpected error
    2: the run was rejected before any operation: invalid configuration or
       stack, corrupted snapshot, held lock, missing provider
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import Any, TextIO

import click

from .config import Config, ConfigurationError
from .dependency import ValidationError
from .diff import ADD, REMOVE
from .executor import OperationStatus
from .providers.base import MissingProviderError
from .reconciler import OperationType, Plan, PlanOperation
from .runner import ApplyOutcome, StackRunner
from .security import SecretlessViolationError
from .snapshot import LockHeldError, SnapshotCorruptionError, SnapshotStore
from .spec_loader import SpecLoadError

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_INVALID = 2

# Errors that reject a run before anything is applied
REJECTING_ERRORS: tuple[type[Exception], ...] = (
    ConfigurationError,
    SpecLoadError,
    ValidationError,
    SnapshotCorruptionError,
    LockHeldError,
    MissingProviderError,
    SecretlessViolationError,
)

logger = logging.getLogger(__name__)

# LogRecord attributes that are not extra fields
_RESERVED_RECORD_KEYS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", stream: TextIO | None = None) -> None:
    """Configure structured JSON logging.

    Logs go to stderr so that plan output on stdout stays machine-readable.
    """
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if isinstance(existing.formatter, JsonFormatter):
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


# =============================================================================
# Output formatting
# =============================================================================

_SYMBOLS: dict[OperationType, str] = {
    OperationType.CREATE: "+",
    OperationType.UPDATE: "~",
    OperationType.DELETE: "-",
    OperationType.NO_OP: "=",
}


def _label(op: PlanOperation) -> tuple[str, str]:
    if op.replacement and op.type == OperationType.CREATE:
        return "+/-", "replace"
    if op.replacement:
        return "-", "delete (replaced)"
    return _SYMBOLS[op.type], op.type.value


def _render(value: Any) -> str:
    return json.dumps(value, sort_keys=True)


def format_plan(plan: Plan, show_unchanged: bool = False) -> str:
    """Render a plan for humans."""
    lines = [f"Stack '{plan.stack}' (snapshot serial {plan.snapshot_serial})", ""]

    for op in plan:
        if not op.is_change and not show_unchanged:
            continue
        symbol, label = _label(op)
        detail = f"  {op.reason}" if op.reason else ""
        lines.append(f"  {symbol:<3} {label:<18} {op.node} ({op.kind.value}){detail}")
        for change in op.changes:
            if change.action == ADD:
                lines.append(f"        + {change.key}: {_render(change.after)}")
            elif change.action == REMOVE:
                lines.append(f"        - {change.key}: {_render(change.before)}")
            else:
                lines.append(
                    f"        ~ {change.key}: {_render(change.before)} -> {_render(change.after)}"
                )

    counts = plan.counts()
    if not plan.has_changes:
        lines.append("No changes. Infrastructure matches the stack.")
    else:
        lines.append("")
        lines.append(
            f"Plan: {counts['create']} to create, {counts['update']} to update, "
            f"{counts['replace']} to replace, {counts['delete']} to delete, "
            f"{counts['no-op']} unchanged."
        )
    return "\n".join(lines)


def format_apply(outcome: ApplyOutcome) -> str:
    """Render an apply outcome for humans."""
    lines = []
    for result in outcome.result.results:
        if result.status == OperationStatus.SUCCESS and not result.operation.is_change:
            continue
        symbol, label = _label(result.operation)
        line = f"  {symbol:<3} {label:<18} {result.operation.node}: {result.status.value}"
        if result.attempts > 1:
            line += f" after {result.attempts} attempts"
        if result.cause:
            line += f" ({result.cause})"
        lines.append(line)

    counts = outcome.result.counts()
    lines.append("")
    lines.append(
        f"Apply: {counts['success']} succeeded, {counts['fatal']} failed, "
        f"{counts['skipped']} skipped, {counts['cancelled']} cancelled."
    )
    if outcome.committed:
        lines.append(f"Snapshot committed (serial {outcome.snapshot.serial}).")
    return "\n".join(lines)


# =============================================================================
# Commands
# =============================================================================


def run_plan(config: Config, output_format: str = "text", show_unchanged: bool = False) -> int:
    """Compute and print the plan."""
    try:
        plan = StackRunner(config).plan()
    except REJECTING_ERRORS as e:
        logger.error("Plan rejected", extra={"error": str(e), "error_type": type(e).__name__})
        click.echo(f"Error: {e}", err=True)
        return EXIT_INVALID
    except Exception as e:
        logger.exception("Plan failed unexpectedly", extra={"error": str(e)})
        click.echo(f"Error: {e}", err=True)
        return EXIT_FATAL

    if output_format == "json":
        click.echo(json.dumps(plan.to_dict(), indent=2))
    else:
        click.echo(format_plan(plan, show_unchanged=show_unchanged))
    return EXIT_OK


async def run_apply(config: Config, output_format: str = "text") -> int:
    """Apply the plan, handling SIGINT/SIGTERM as cancellation."""
    runner = StackRunner(config)

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        runner.shutdown()

    installed: list[signal.Signals] = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not on the main thread, or unsupported platform
            pass

    try:
        outcome = await runner.apply()
    except REJECTING_ERRORS as e:
        logger.error("Apply rejected", extra={"error": str(e), "error_type": type(e).__name__})
        click.echo(f"Error: {e}", err=True)
        return EXIT_INVALID
    except Exception as e:
        logger.exception("Apply failed unexpectedly", extra={"error": str(e)})
        click.echo(f"Error: {e}", err=True)
        return EXIT_FATAL
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)

    if output_format == "json":
        click.echo(
            json.dumps(
                {
                    "plan": outcome.plan.to_dict(),
                    "results": [r.to_dict() for r in outcome.result.results],
                    "committed": outcome.committed,
                    "snapshotSerial": outcome.snapshot.serial,
                },
                indent=2,
            )
        )
    else:
        click.echo(format_apply(outcome))

    return EXIT_OK if outcome.succeeded else EXIT_FATAL


def run_force_unlock(config: Config) -> int:
    store = SnapshotStore(config.state_file, config.lock_file)
    if store.force_unlock():
        click.echo(f"Removed lock {store.lock_path}")
    else:
        click.echo("State is not locked")
    return EXIT_OK


def run_state(config: Config) -> int:
    """Print the committed snapshot."""
    try:
        snapshot = SnapshotStore(config.state_file, config.lock_file).load()
    except SnapshotCorruptionError as e:
        click.echo(f"Error: {e}", err=True)
        return EXIT_INVALID
    click.echo(snapshot.to_json(), nl=False)
    return EXIT_OK
