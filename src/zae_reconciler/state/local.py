"""Local JSON file state store."""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
import time
from pathlib import Path

from filelock import FileLock, Timeout

from ..exceptions import ConcurrentRunError, StateCorruptError, StateError
from ..models import StateSnapshot
from .protocol import StateLock, next_revision

logger = logging.getLogger(__name__)


class LocalStateStore:
    """
    Stores the snapshot as a JSON file.

    Writes go to a temporary file in the same directory, are fsynced, and
    then renamed over the target, so the file is always either the old or
    the new snapshot. The lease is an OS file lock on ``<path>.lock``;
    the holder's owner and run id are kept in ``<path>.lock.json``.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.lock_info_path = self.path.with_name(self.path.name + ".lock.json")
        self._held: dict[str, FileLock] = {}

    @property
    def location(self) -> str:
        return str(self.path)

    # -------------------------------------------------------------------------
    # Snapshot
    # -------------------------------------------------------------------------

    def load(self) -> StateSnapshot:
        try:
            raw = self.path.read_text()
        except FileNotFoundError:
            return StateSnapshot.empty()

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StateCorruptError(self.location, f"invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise StateCorruptError(self.location, "top-level value must be an object")
        return StateSnapshot.from_dict(data, self.location)

    def save(self, snapshot: StateSnapshot) -> StateSnapshot:
        current = self.load()
        prepared = next_revision(current, snapshot)
        if prepared is current:
            return current

        _atomic_write(self.path, json.dumps(prepared.to_dict(), indent=2, sort_keys=True) + "\n")
        logger.debug("Saved state serial %d to %s", prepared.serial, self.path)
        return prepared

    def delete(self) -> None:
        self.path.unlink(missing_ok=True)

    # -------------------------------------------------------------------------
    # Lease
    # -------------------------------------------------------------------------

    def acquire_lock(self, owner: str, ttl_seconds: int) -> StateLock:
        """
        Take the OS lock on ``<path>.lock`` and record who holds it.

        The OS releases the lock when the holding process exits, so a
        crashed run never blocks the next one and ``ttl_seconds`` is only
        recorded for display.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        mutex = FileLock(str(self.lock_path), timeout=0, thread_local=False)
        try:
            mutex.acquire()
        except Timeout:
            existing = self._read_lock_info()
            if existing is None:
                raise ConcurrentRunError(self.location) from None
            raise ConcurrentRunError(self.location, existing.owner, existing.run_id) from None

        lock = StateLock.new(owner, ttl_seconds)
        try:
            _atomic_write(self.lock_info_path, json.dumps(lock.to_dict()) + "\n")
        except BaseException:
            mutex.release()
            raise
        self._held[lock.run_id] = mutex
        logger.info("Acquired state lock %s on %s", lock.run_id, self.location)
        return lock

    def release_lock(self, lock: StateLock) -> None:
        mutex = self._held.pop(lock.run_id, None)
        if mutex is None:
            logger.warning("State lock %s on %s is not held here", lock.run_id, self.location)
            return
        try:
            existing = self._read_lock_info()
            if existing is not None and existing.run_id == lock.run_id:
                self.lock_info_path.unlink(missing_ok=True)
        finally:
            mutex.release()
        logger.info("Released state lock %s on %s", lock.run_id, self.location)

    def read_lock(self) -> StateLock | None:
        """Return the holder of the lock, or None when no process holds it."""
        if not self._is_locked():
            return None
        existing = self._read_lock_info()
        if existing is None:
            # Holder is between taking the OS lock and writing its record
            now = time.time()
            return StateLock(owner="unknown", run_id="unknown", acquired_at=now, expires_at=now)
        return existing

    def force_unlock(self) -> None:
        """
        Remove the lock record left behind by a run that has exited.

        Raises:
            StateError: If a live process still holds the OS lock
        """
        if self._is_locked():
            raise StateError(
                f"State lock on {self.location} is held by a running process; "
                "stop that process to release it"
            )
        self.lock_info_path.unlink(missing_ok=True)

    def _is_locked(self) -> bool:
        if not self.lock_path.exists():
            return False
        attempt = FileLock(str(self.lock_path), timeout=0, thread_local=False)
        try:
            attempt.acquire()
        except Timeout:
            return True
        attempt.release()
        return False

    def _read_lock_info(self) -> StateLock | None:
        try:
            raw = self.lock_info_path.read_text()
        except FileNotFoundError:
            return None
        try:
            return StateLock.from_dict(json.loads(raw))
        except (json.JSONDecodeError, TypeError, ValueError, AttributeError):
            now = time.time()
            return StateLock(owner="unknown", run_id="unknown", acquired_at=now, expires_at=now)


def _atomic_write(path: Path, text: str) -> None:
    """Write ``text`` to ``path`` via write-to-temp, fsync, rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise
