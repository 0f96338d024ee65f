"""Tests for the local JSON state store."""

import json
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from unittest.mock import patch

import pytest

from tests.fixtures.providers import record, snapshot_of
from zae_reconciler.exceptions import (
    ConcurrentRunError,
    IncompatibleStateError,
    StateCorruptError,
    StateError,
)
from zae_reconciler.models import StateSnapshot
from zae_reconciler.state import LocalStateStore, StateLock, StateStoreProtocol


class TestLocalSnapshot:
    """Tests for snapshot persistence."""

    def test_satisfies_protocol(self, store):
        assert isinstance(store, StateStoreProtocol)

    def test_missing_file_loads_empty(self, store):
        snapshot = store.load()

        assert snapshot.resources == {}
        assert snapshot.serial == 0

    def test_round_trip(self, store):
        saved = store.save(snapshot_of(Network=record("Network", Cidr="10.0.0.0/16")))

        assert saved.serial == 1
        assert saved.lineage is not None
        assert store.load() == saved

    def test_unchanged_save_is_noop(self, store):
        first = store.save(snapshot_of(Network=record("Network")))
        mtime = store.path.stat().st_mtime_ns

        second = store.save(snapshot_of(Network=record("Network")))

        assert second.serial == first.serial
        assert store.path.stat().st_mtime_ns == mtime

    def test_change_bumps_serial_and_keeps_lineage(self, store):
        first = store.save(snapshot_of(Network=record("Network")))

        second = store.save(snapshot_of(Network=record("Network"), Cluster=record("Cluster")))

        assert second.serial == first.serial + 1
        assert second.lineage == first.lineage

    def test_file_is_readable_json(self, store):
        store.save(snapshot_of(Network=record("Network")))

        data = json.loads(store.path.read_text())

        assert data["serial"] == 1
        assert data["digest"].startswith("sha256:")
        assert data["resources"]["Network"]["provider_id"] == "Network-0"

    def test_outputs_round_trip(self, store):
        snapshot = replace(snapshot_of(Network=record("Network")), outputs={"NetworkId": "n-1"})

        saved = store.save(snapshot)

        assert store.load().outputs == {"NetworkId": "n-1"}
        assert json.loads(store.path.read_text())["outputs"] == {"NetworkId": "n-1"}
        assert saved.serial == 1

    def test_outputs_change_bumps_serial(self, store):
        first = store.save(snapshot_of(Network=record("Network")))

        second = store.save(replace(first, outputs={"NetworkId": "n-1"}))

        assert second.serial == first.serial + 1
        assert second.digest != first.digest

    def test_delete(self, store):
        store.save(snapshot_of(Network=record("Network")))

        store.delete()
        store.delete()

        assert not store.path.exists()


class TestLocalSnapshotErrors:
    """Tests for unreadable state files."""

    def test_invalid_json(self, store):
        store.path.write_text("{not json")

        with pytest.raises(StateCorruptError, match="invalid JSON"):
            store.load()

    def test_non_object(self, store):
        store.path.write_text("[]")

        with pytest.raises(StateCorruptError):
            store.load()

    def test_digest_mismatch(self, store):
        store.save(snapshot_of(Network=record("Network")))
        data = json.loads(store.path.read_text())
        data["resources"]["Network"]["provider_id"] = "tampered"
        store.path.write_text(json.dumps(data))

        with pytest.raises(StateCorruptError, match="digest mismatch"):
            store.load()

    def test_tampered_outputs(self, store):
        store.save(replace(snapshot_of(Network=record("Network")), outputs={"NetworkId": "n-1"}))
        data = json.loads(store.path.read_text())
        data["outputs"]["NetworkId"] = "n-2"
        store.path.write_text(json.dumps(data))

        with pytest.raises(StateCorruptError, match="digest mismatch"):
            store.load()

    def test_outputs_not_an_object(self, store):
        store.save(snapshot_of(Network=record("Network")))
        data = json.loads(store.path.read_text())
        data["outputs"] = ["NetworkId"]
        store.path.write_text(json.dumps(data))

        with pytest.raises(StateCorruptError, match="outputs must be an object"):
            store.load()

    def test_newer_format_version(self, store):
        store.path.write_text(json.dumps({"version": 99, "resources": {}}))

        with pytest.raises(IncompatibleStateError) as exc_info:
            store.load()

        assert exc_info.value.found == 99

    def test_failed_write_keeps_previous_file(self, store, tmp_path):
        """A crash before the rename leaves the old snapshot and no temp files."""
        previous = store.save(snapshot_of(Network=record("Network")))

        with (
            patch("zae_reconciler.state.local.os.replace", side_effect=OSError("disk full")),
            pytest.raises(OSError, match="disk full"),
        ):
            store.save(snapshot_of(Cluster=record("Cluster")))

        assert store.load() == previous
        assert list(tmp_path.glob("*.tmp")) == []


class TestLocalLock:
    """Tests for the lock file lease."""

    def test_acquire_and_release(self, store):
        lock = store.acquire_lock("alice@host", 60)

        assert store.lock_info_path.exists()
        assert store.read_lock() == lock

        store.release_lock(lock)

        assert not store.lock_info_path.exists()
        assert store.read_lock() is None

    def test_second_acquire_fails_fast(self, store):
        lock = store.acquire_lock("alice@host", 60)
        other = LocalStateStore(store.path)

        with pytest.raises(ConcurrentRunError) as exc_info:
            other.acquire_lock("bob@host", 60)

        assert exc_info.value.owner == "alice@host"
        assert exc_info.value.run_id == lock.run_id
        assert "force-unlock" in str(exc_info.value)

    def test_reacquire_after_release(self, store):
        first = LocalStateStore(store.path)
        second = LocalStateStore(store.path)
        first.release_lock(first.acquire_lock("alice@host", 60))

        lock = second.acquire_lock("bob@host", 60)

        assert first.read_lock() == lock

    def test_concurrent_acquires_admit_one(self, store):
        stores = [LocalStateStore(store.path) for _ in range(4)]
        barrier = threading.Barrier(len(stores))

        def contend(candidate):
            barrier.wait()
            try:
                return candidate.acquire_lock("racer@host", 60)
            except ConcurrentRunError:
                return None

        with ThreadPoolExecutor(max_workers=len(stores)) as pool:
            held = [lock for lock in pool.map(contend, stores) if lock is not None]

        assert len(held) == 1
        assert store.read_lock() == held[0]

    def test_record_left_by_exited_run_is_ignored(self, store):
        store.lock_info_path.write_text(json.dumps(StateLock.new("crashed@host", 3600).to_dict()))

        assert store.read_lock() is None
        lock = store.acquire_lock("alice@host", 60)

        assert store.read_lock() == lock

    def test_release_of_foreign_lock_is_ignored(self, store):
        current = store.acquire_lock("alice@host", 60)
        other = LocalStateStore(store.path)

        other.release_lock(current)

        assert store.read_lock() == current
        with pytest.raises(ConcurrentRunError):
            other.acquire_lock("bob@host", 60)

    def test_unreadable_record_while_held(self, store):
        store.acquire_lock("alice@host", 60)
        store.lock_info_path.write_text("")

        with pytest.raises(ConcurrentRunError):
            LocalStateStore(store.path).acquire_lock("bob@host", 60)

        assert store.read_lock().owner == "unknown"

    def test_force_unlock_removes_stale_record(self, store):
        store.lock_info_path.write_text("")

        store.force_unlock()

        assert not store.lock_info_path.exists()

    def test_force_unlock_refuses_live_holder(self, store):
        lock = store.acquire_lock("alice@host", 60)

        with pytest.raises(StateError, match="running process"):
            LocalStateStore(store.path).force_unlock()

        assert store.read_lock() == lock

    def test_lock_file_beside_state(self, tmp_path):
        store = LocalStateStore(tmp_path / "envs" / "prod.json")

        assert store.lock_path == tmp_path / "envs" / "prod.json.lock"
        assert store.lock_info_path == tmp_path / "envs" / "prod.json.lock.json"
        assert store.load() == StateSnapshot.empty()
        assert store.read_lock() is None
