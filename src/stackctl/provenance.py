"""Run provenance for audit.

Every plan/apply run is stamped with a structured record that answers:
- "What changed, and what did not?"
- "Which stack file and which version of stackctl produced it?"
- "Which operations failed, and why?"
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
STACKCTL_VERSION = os.environ.get("STACKCTL_VERSION", "dev")


@dataclass
class ChangeSummary:
    """Planned operation counts."""

    create_count: int = 0
    update_count: int = 0
    replace_count: int = 0
    delete_count: int = 0
    no_op_count: int = 0

    @property
    def total_significant(self) -> int:
        """Total operations that touch a provider."""
        return self.create_count + self.update_count + self.replace_count + self.delete_count

    @classmethod
    def from_counts(cls, counts: dict[str, int]) -> ChangeSummary:
        return cls(
            create_count=counts.get("create", 0),
            update_count=counts.get("update", 0),
            replace_count=counts.get("replace", 0),
            delete_count=counts.get("delete", 0),
            no_op_count=counts.get("no-op", 0),
        )


@dataclass
class OutcomeSummary:
    """Executed operation counts by final status."""

    success_count: int = 0
    fatal_count: int = 0
    skipped_count: int = 0
    cancelled_count: int = 0

    @classmethod
    def from_counts(cls, counts: dict[str, int]) -> OutcomeSummary:
        return cls(
            success_count=counts.get("success", 0),
            fatal_count=counts.get("fatal", 0),
            skipped_count=counts.get("skipped", 0),
            cancelled_count=counts.get("cancelled", 0),
        )


@dataclass
class RunProvenance:
    """Provenance record for one run."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    run_id: str = ""
    command: str = "plan"
    stack: str = ""
    stackctl_version: str = STACKCTL_VERSION
    provider: str = ""

    # Source of truth
    git_commit_sha: str = ""
    spec_file: str = ""
    spec_file_hash: str = ""

    # Snapshot serials before and after the run
    snapshot_serial_before: int = 0
    snapshot_serial_after: int | None = None

    change_summary: ChangeSummary = field(default_factory=ChangeSummary)
    outcome: OutcomeSummary | None = None
    failures: list[dict[str, Any]] = field(default_factory=list)

    duration_seconds: float = 0.0

    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Emits provenance records to the structured log."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")

    def create_provenance(
        self,
        run_id: str,
        command: str,
        stack: str,
        provider: str,
        spec_file: str,
        spec_file_hash: str,
    ) -> RunProvenance:
        return RunProvenance(
            run_id=run_id,
            command=command,
            stack=stack,
            provider=provider,
            git_commit_sha=self._git_commit_sha,
            spec_file=spec_file,
            spec_file_hash=spec_file_hash,
        )

    def log_provenance(self, provenance: RunProvenance) -> None:
        """Log a completed provenance record.

        Level follows the outcome: ERROR for a run-level error or any fatal
        operation, WARNING for skipped or cancelled operations, INFO otherwise.
        """
        log_level = logging.INFO
        outcome = provenance.outcome
        if provenance.error or (outcome and outcome.fatal_count):
            log_level = logging.ERROR
        elif outcome and (outcome.skipped_count or outcome.cancelled_count):
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Run provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "run_id": provenance.run_id,
                "command": provenance.command,
                "stack": provenance.stack,
                "changes_planned": provenance.change_summary.total_significant,
                "git_commit": provenance.git_commit_sha,
                "duration_seconds": provenance.duration_seconds,
            },
        )


# Global singleton for provenance logging
_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
