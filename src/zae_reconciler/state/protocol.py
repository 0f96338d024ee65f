"""State store protocol.

A state store persists the ``StateSnapshot`` of the last apply and the
lease that gives one run exclusive write access to it. Implementations
must make ``save`` atomic: a reader never observes a partially written
snapshot.
"""

from __future__ import annotations

import os
import socket
import time
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from ulid import ULID

from ..models import StateSnapshot


@dataclass(frozen=True)
class StateLock:
    """A lease on a state location held by one run."""

    owner: str
    run_id: str
    acquired_at: float
    expires_at: float

    @classmethod
    def new(cls, owner: str, ttl_seconds: int) -> StateLock:
        now = time.time()
        return cls(owner=owner, run_id=str(ULID()), acquired_at=now, expires_at=now + ttl_seconds)

    def is_expired(self, now: float | None = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner": self.owner,
            "run_id": self.run_id,
            "acquired_at": self.acquired_at,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> StateLock:
        return cls(
            owner=str(d.get("owner", "unknown")),
            run_id=str(d.get("run_id", "unknown")),
            acquired_at=float(d.get("acquired_at", 0)),
            expires_at=float(d.get("expires_at", 0)),
        )


@runtime_checkable
class StateStoreProtocol(Protocol):
    """
    Protocol for snapshot storage backends.

    - **load/save/delete**: Snapshot persistence; ``save`` is atomic and a
      no-op when the snapshot digest is unchanged
    - **acquire_lock/release_lock**: Exclusive lease for one run; a second
      acquirer fails fast with ``ConcurrentRunError``
    - **read_lock/force_unlock**: Operator inspection and recovery
    """

    @property
    def location(self) -> str:
        """Human-readable location, used in messages."""
        ...

    def load(self) -> StateSnapshot:
        """Return the stored snapshot, or an empty one if none exists."""
        ...

    def save(self, snapshot: StateSnapshot) -> StateSnapshot:
        """Persist ``snapshot`` and return it as stored (serial and lineage set)."""
        ...

    def delete(self) -> None:
        """Remove the stored snapshot."""
        ...

    def acquire_lock(self, owner: str, ttl_seconds: int) -> StateLock:
        """Take the lease, raising ConcurrentRunError if another run holds it."""
        ...

    def release_lock(self, lock: StateLock) -> None:
        """Release a lease taken by ``acquire_lock``."""
        ...

    def read_lock(self) -> StateLock | None:
        """Return the current lease, if any."""
        ...

    def force_unlock(self) -> None:
        """Remove any lease regardless of owner."""
        ...


def next_revision(current: StateSnapshot, snapshot: StateSnapshot) -> StateSnapshot:
    """
    Compute the snapshot to store on top of ``current``.

    Returns ``current`` itself when the content is unchanged, so callers
    can skip the write. Otherwise the serial is bumped and the lineage
    carried over (or assigned on first save).
    """
    if current.digest == snapshot.digest and current.lineage is not None:
        return current
    lineage = current.lineage or snapshot.lineage or str(ULID())
    return StateSnapshot(
        resources=dict(snapshot.resources),
        serial=current.serial + 1,
        lineage=lineage,
        outputs=dict(snapshot.outputs),
    )


def default_owner() -> str:
    """Lock owner string for this process, e.g. ``alice@build-7``."""
    user = os.environ.get("USER") or os.environ.get("USERNAME") or "unknown"
    return f"{user}@{socket.gethostname()}"
