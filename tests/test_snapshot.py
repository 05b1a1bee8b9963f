"""Tests for the snapshot store."""

from __future__ import annotations

import json
import os
from pathlib import Path
from unittest import mock

import pytest

from stackctl.models import ResourceKind
from stackctl.snapshot import (
    LockHeldError,
    SnapshotCorruptionError,
    SnapshotEntry,
    SnapshotStore,
    StateSnapshot,
    Tombstone,
)


def _snapshot() -> StateSnapshot:
    return StateSnapshot(
        resources={
            "network": SnapshotEntry(
                kind=ResourceKind.NETWORK,
                provider_id="local:Network/network",
                properties={"cidr": "10.0.0.0/16"},
                outputs={"networkId": "net-network"},
            ),
            "database": SnapshotEntry(
                kind=ResourceKind.DATABASE,
                provider_id="local:Database/database",
                properties={
                    "network": {"ref": "network"},
                    "credentials": {"secretRef": "secrets/app/db"},
                },
                depends_on=["network"],
            ),
        },
        tombstones=[
            Tombstone(name="old", kind=ResourceKind.PROXY, provider_id="local:Proxy/old")
        ],
    )


@pytest.fixture
def store(tmp_path: Path) -> SnapshotStore:
    return SnapshotStore(tmp_path / "state" / "state.json")


class TestLoad:
    """Tests for SnapshotStore.load()."""

    def test_missing_file_is_empty_snapshot(self, store: SnapshotStore) -> None:
        """Test that a first run starts from empty state."""
        snapshot = store.load()

        assert snapshot.is_empty
        assert snapshot.serial == 0

    def test_malformed_json_raises(self, store: SnapshotStore) -> None:
        """Test that a truncated file is reported, never reset."""
        store.path.parent.mkdir(parents=True)
        store.path.write_text('{"version": 1, "resources": {')

        with pytest.raises(SnapshotCorruptionError, match="Invalid JSON"):
            store.load()

        assert store.path.read_text() == '{"version": 1, "resources": {'

    def test_schema_mismatch_raises(self, store: SnapshotStore) -> None:
        """Test that an entry without a provider id is rejected."""
        store.path.parent.mkdir(parents=True)
        store.path.write_text(
            json.dumps({"version": 1, "resources": {"network": {"kind": "Network"}}})
        )

        with pytest.raises(SnapshotCorruptionError) as exc_info:
            store.load()

        assert "resources.network.providerId" in str(exc_info.value)

    def test_unsupported_version_raises(self, store: SnapshotStore) -> None:
        """Test that a snapshot from another format version is rejected."""
        store.path.parent.mkdir(parents=True)
        store.path.write_text(json.dumps({"version": 99, "resources": {}}))

        with pytest.raises(SnapshotCorruptionError, match="version"):
            store.load()

    def test_non_object_raises(self, store: SnapshotStore) -> None:
        """Test that a JSON array is not a snapshot."""
        store.path.parent.mkdir(parents=True)
        store.path.write_text("[]")

        with pytest.raises(SnapshotCorruptionError):
            store.load()


class TestCommit:
    """Tests for SnapshotStore.commit()."""

    def test_commit_then_load(self, store: SnapshotStore) -> None:
        """Test that a committed snapshot reads back with a bumped serial."""
        committed = store.commit(_snapshot())

        loaded = store.load()

        assert committed.serial == 1
        assert committed.updated_at is not None
        assert loaded == committed
        assert list(loaded.resources) == ["network", "database"]
        assert loaded.resources["database"].depends_on == ["network"]

    def test_serial_increments(self, store: SnapshotStore) -> None:
        """Test that every commit bumps the serial."""
        first = store.commit(_snapshot())
        second = store.commit(first)

        assert second.serial == 2

    def test_file_uses_camel_case_keys(self, store: SnapshotStore) -> None:
        """Test the on-disk field names."""
        store.commit(_snapshot())

        raw = json.loads(store.path.read_text())

        assert raw["resources"]["network"]["providerId"] == "local:Network/network"
        assert raw["resources"]["database"]["dependsOn"] == ["network"]
        assert "updatedAt" in raw

    def test_secret_locators_only(self, store: SnapshotStore) -> None:
        """Test that secrets are persisted as locators."""
        store.commit(_snapshot())

        raw = json.loads(store.path.read_text())

        assert raw["resources"]["database"]["properties"]["credentials"] == {
            "secretRef": "secrets/app/db"
        }

    def test_failed_replace_keeps_previous_snapshot(self, store: SnapshotStore) -> None:
        """Test that a crash during commit leaves the old snapshot intact."""
        store.commit(_snapshot())
        before = store.path.read_text()

        changed = _snapshot()
        changed.resources.pop("network")
        with mock.patch("stackctl.snapshot.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                store.commit(changed)

        assert store.path.read_text() == before
        assert store.load().serial == 1
        leftovers = [p for p in store.path.parent.iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []

    def test_failed_write_keeps_previous_snapshot(self, store: SnapshotStore) -> None:
        """Test that a failure before the rename never touches the snapshot."""
        store.commit(_snapshot())
        before = store.path.read_text()

        with mock.patch("stackctl.snapshot.os.fsync", side_effect=OSError("io error")):
            with pytest.raises(OSError):
                store.commit(_snapshot())

        assert store.path.read_text() == before


class TestLock:
    """Tests for the state lock."""

    def test_lock_created_and_released(self, store: SnapshotStore) -> None:
        """Test that the lock exists only while held."""
        with store.lock("run-1") as holder:
            assert store.lock_path.exists()
            assert holder["runId"] == "run-1"
            assert store.read_lock()["pid"] == os.getpid()

        assert not store.lock_path.exists()

    def test_held_lock_rejects_second_run(self, store: SnapshotStore) -> None:
        """Test that a second run cannot take a held lock."""
        with store.lock("run-1"):
            with pytest.raises(LockHeldError) as exc_info:
                with store.lock("run-2"):
                    pass

            assert exc_info.value.holder["runId"] == "run-1"
            assert "force-unlock" in str(exc_info.value)
            assert store.lock_path.exists()

    def test_lock_released_on_error(self, store: SnapshotStore) -> None:
        """Test that an exception inside the block releases the lock."""
        with pytest.raises(RuntimeError):
            with store.lock("run-1"):
                raise RuntimeError("boom")

        assert not store.lock_path.exists()

    def test_force_unlock(self, store: SnapshotStore) -> None:
        """Test removing a stale lock left by a crashed run."""
        store.lock_path.parent.mkdir(parents=True)
        store.lock_path.write_text(json.dumps({"pid": 12345, "runId": "crashed"}))

        assert store.force_unlock() is True
        assert not store.lock_path.exists()
        assert store.force_unlock() is False

    def test_default_lock_path(self, tmp_path: Path) -> None:
        """Test that the lock file sits beside the snapshot."""
        store = SnapshotStore(tmp_path / "state.json")

        assert store.lock_path == tmp_path / "state.json.lock"
