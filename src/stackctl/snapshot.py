"""Persistent store for the last-applied state.

The snapshot is a single JSON document. Commits are atomic: the new
document is written to a temporary file in the same directory, fsynced and
renamed over the old one, so a crash mid-write leaves the previous snapshot
intact. A lock file beside the snapshot keeps two runs from working against
the same state at once.

SECURITY: Snapshots hold canonical property bags, where secrets only appear
as `{secretRef: <locator>}`. Secret contents are never persisted.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .config import MAX_STATE_FILE_SIZE_BYTES
from .models import ResourceKind

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class SnapshotCorruptionError(Exception):
    """Raised when the persisted snapshot cannot be read back.

    Never handled by resetting the snapshot: an operator has to inspect
    and repair (or restore) the file.
    """

    pass


class LockHeldError(Exception):
    """Raised when another run holds the snapshot lock."""

    def __init__(self, lock_path: Path, holder: dict[str, Any] | None) -> None:
        self.lock_path = lock_path
        self.holder = holder or {}
        detail = ""
        if self.holder:
            detail = (
                f" (pid {self.holder.get('pid', '?')} on {self.holder.get('host', '?')}"
                f" since {self.holder.get('acquiredAt', '?')})"
            )
        super().__init__(
            f"State is locked by another run{detail}. If no run is active, "
            f"remove the lock with `stackctl force-unlock`: {lock_path}"
        )


# =============================================================================
# Snapshot document
# =============================================================================


class SnapshotEntry(BaseModel):
    """Last-applied state of one resource.

    `generation` counts replacements. Each replacement is created under a
    new physical name, so providers that derive ids from the name never hand
    back the id of the resource being replaced.
    """

    model_config = {"extra": "forbid", "populate_by_name": True}

    kind: ResourceKind
    provider_id: str = Field(alias="providerId", min_length=1)
    properties: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    generation: int = Field(0, ge=0)


class Tombstone(BaseModel):
    """A remote resource that no node tracks any more and must be deleted."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    name: str
    kind: ResourceKind
    provider_id: str = Field(alias="providerId", min_length=1)
    reason: str = ""
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    generation: int = Field(0, ge=0)


class StateSnapshot(BaseModel):
    """Ordered mapping of resource name to last-applied state."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    version: int = SNAPSHOT_VERSION
    serial: int = 0
    updated_at: datetime | None = Field(None, alias="updatedAt")
    resources: dict[str, SnapshotEntry] = Field(default_factory=dict)
    tombstones: list[Tombstone] = Field(default_factory=list)

    def get(self, name: str) -> SnapshotEntry | None:
        return self.resources.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self.resources

    @property
    def is_empty(self) -> bool:
        return not self.resources and not self.tombstones

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json", by_alias=True), indent=2) + "\n"


# =============================================================================
# Store
# =============================================================================


class SnapshotStore:
    """Loads, commits and locks the snapshot file."""

    def __init__(self, path: Path, lock_path: Path | None = None) -> None:
        self._path = path
        self._lock_path = lock_path or path.with_name(path.name + ".lock")

    @property
    def path(self) -> Path:
        return self._path

    @property
    def lock_path(self) -> Path:
        return self._lock_path

    def load(self) -> StateSnapshot:
        """Load the last committed snapshot.

        Returns:
            The snapshot, or an empty one if nothing was committed yet.

        Raises:
            SnapshotCorruptionError: If the file is unreadable or malformed.
        """
        if not self._path.exists():
            logger.info("No snapshot found, starting from empty state", extra={"path": str(self._path)})
            return StateSnapshot()

        try:
            file_size = self._path.stat().st_size
        except OSError as e:
            raise SnapshotCorruptionError(f"Failed to stat snapshot {self._path}: {e}") from e

        if file_size > MAX_STATE_FILE_SIZE_BYTES:
            raise SnapshotCorruptionError(
                f"Snapshot exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes: {self._path}"
            )

        try:
            content = self._path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise SnapshotCorruptionError(f"Failed to read snapshot {self._path}: {e}") from e

        try:
            raw = json.loads(content)
        except json.JSONDecodeError as e:
            raise SnapshotCorruptionError(f"Invalid JSON in snapshot {self._path}: {e}") from e

        if not isinstance(raw, dict):
            raise SnapshotCorruptionError(f"Snapshot must be a JSON object: {self._path}")

        version = raw.get("version")
        if version != SNAPSHOT_VERSION:
            raise SnapshotCorruptionError(
                f"Unsupported snapshot version {version!r} in {self._path} "
                f"(expected {SNAPSHOT_VERSION})"
            )

        try:
            snapshot = StateSnapshot.model_validate(raw)
        except PydanticValidationError as e:
            errors = []
            for error in e.errors():
                loc = ".".join(str(x) for x in error["loc"])
                errors.append(f"  - {loc}: {error['msg']}")
            error_list = "\n".join(errors)
            raise SnapshotCorruptionError(
                f"Malformed snapshot {self._path}:\n{error_list}"
            ) from e

        logger.info(
            "Loaded snapshot",
            extra={
                "path": str(self._path),
                "serial": snapshot.serial,
                "resource_count": len(snapshot.resources),
            },
        )
        return snapshot

    def commit(self, snapshot: StateSnapshot) -> StateSnapshot:
        """Atomically replace the persisted snapshot.

        The serial is bumped and the timestamp refreshed on the committed copy.

        Returns:
            The snapshot as committed.
        """
        committed = snapshot.model_copy(
            update={"serial": snapshot.serial + 1, "updated_at": datetime.now(UTC)}
        )
        payload = committed.to_json()

        directory = self._path.parent
        directory.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(
            dir=directory, prefix=f".{self._path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        self._fsync_directory(directory)

        logger.info(
            "Committed snapshot",
            extra={
                "path": str(self._path),
                "serial": committed.serial,
                "resource_count": len(committed.resources),
                "tombstone_count": len(committed.tombstones),
            },
        )
        return committed

    @staticmethod
    def _fsync_directory(directory: Path) -> None:
        # Directory fsync is not available on every platform
        try:
            dir_fd = os.open(directory, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(dir_fd)
        except OSError:
            pass
        finally:
            os.close(dir_fd)

    # =========================================================================
    # Locking
    # =========================================================================

    def read_lock(self) -> dict[str, Any] | None:
        """Return the current lock holder, or None if unlocked."""
        try:
            content = self._lock_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Failed to read lock file", extra={"path": str(self._lock_path), "error": str(e)})
            return {}
        try:
            holder = json.loads(content)
        except json.JSONDecodeError:
            return {}
        return holder if isinstance(holder, dict) else {}

    @contextmanager
    def lock(self, run_id: str = "") -> Iterator[dict[str, Any]]:
        """Hold the snapshot lock for the duration of a run.

        Raises:
            LockHeldError: If another run holds the lock.
        """
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        holder = {
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "runId": run_id,
            "acquiredAt": datetime.now(UTC).isoformat(),
        }

        try:
            fd = os.open(self._lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as e:
            raise LockHeldError(self._lock_path, self.read_lock()) from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(holder, handle)
            logger.debug("Acquired state lock", extra={"path": str(self._lock_path)})
            yield holder
        finally:
            self._lock_path.unlink(missing_ok=True)
            logger.debug("Released state lock", extra={"path": str(self._lock_path)})

    def force_unlock(self) -> bool:
        """Remove a stale lock.

        Returns:
            True if a lock was removed.
        """
        holder = self.read_lock()
        if holder is None:
            return False
        self._lock_path.unlink(missing_ok=True)
        logger.warning(
            "State lock forcibly removed",
            extra={"path": str(self._lock_path), "holder": holder},
        )
        return True
