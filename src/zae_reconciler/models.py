"""Core models for zae-reconciler."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .exceptions import IncompatibleStateError, StateCorruptError

# Current state format version - increment when the snapshot layout changes
STATE_FORMAT_VERSION = 1


# ---------------------------------------------------------------------------
# References
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Ref:
    """
    Reference to another resource's future output.

    Attributes:
        target: Logical name of the referenced resource
        attribute: Output attribute to read, or None for the provider-assigned id
    """

    target: str
    attribute: str | None = None

    @property
    def token(self) -> str:
        """Manifest token form, e.g. ``${Network.VpcId}``."""
        if self.attribute:
            return f"${{{self.target}.{self.attribute}}}"
        return f"${{{self.target}}}"


@dataclass(frozen=True)
class Interpolation:
    """A string with embedded references, resolved by concatenation."""

    parts: tuple[str | Ref, ...]

    @property
    def refs(self) -> list[Ref]:
        return [p for p in self.parts if isinstance(p, Ref)]

    @property
    def token(self) -> str:
        return "".join(p.token if isinstance(p, Ref) else p for p in self.parts)


# ---------------------------------------------------------------------------
# Declarations and graph nodes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ResourceSpec:
    """A single resource declaration as supplied by the user."""

    name: str
    kind: str
    properties: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()


@dataclass(frozen=True)
class LookupSpec:
    """
    A read-only declaration of a resource that already exists.

    Resolved through the provider before planning; references to it read
    the found resource's identifier and properties. A lookup is never
    created, updated or deleted.

    Attributes:
        name: Logical name, referenced as ``${name}`` or ``${name.Attr}``
        kind: Resource kind to search
        identifier: Exact provider identifier, if known
        match: Property values the resource must have (``Tags`` may be a
               mapping of tag key to value)
    """

    name: str
    kind: str
    identifier: str | None = None
    match: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ResourceNode:
    """
    A resource in a built graph.

    Nodes are never mutated after ``build_graph`` returns. ``dependencies``
    holds both explicit ``depends_on`` names and names inferred from
    references embedded in ``properties``, in first-seen order.
    """

    name: str
    kind: str
    properties: dict[str, Any]
    dependencies: tuple[str, ...] = ()
    explicit_dependencies: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


def canonical_json(value: Any) -> str:
    """Serialize to a stable JSON string (sorted keys, no whitespace)."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


@dataclass(frozen=True)
class ResourceRecord:
    """Last-known-applied state of one resource."""

    kind: str
    properties: dict[str, Any]
    provider_id: str
    outputs: dict[str, Any] = field(default_factory=dict)
    dependencies: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "properties": self.properties,
            "provider_id": self.provider_id,
            "outputs": self.outputs,
            "dependencies": list(self.dependencies),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ResourceRecord:
        return cls(
            kind=d["kind"],
            properties=d.get("properties", {}),
            provider_id=d["provider_id"],
            outputs=d.get("outputs", {}),
            dependencies=tuple(d.get("dependencies", ())),
        )


@dataclass(frozen=True)
class StateSnapshot:
    """
    Persisted record of every resource applied by previous runs.

    The snapshot is content-addressed: ``digest`` depends only on
    ``resources`` and the stack ``outputs``, so two snapshots with the same
    content compare equal for storage purposes regardless of ``serial``.
    """

    resources: dict[str, ResourceRecord] = field(default_factory=dict)
    serial: int = 0
    lineage: str | None = None
    version: int = STATE_FORMAT_VERSION
    outputs: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> StateSnapshot:
        return cls()

    @property
    def digest(self) -> str:
        content: dict[str, Any] = {k: v.to_dict() for k, v in self.resources.items()}
        if self.outputs:
            # Without outputs the digest covers the resources alone
            content = {"resources": content, "outputs": self.outputs}
        payload = canonical_json(content)
        return "sha256:" + hashlib.sha256(payload.encode()).hexdigest()

    def __contains__(self, name: object) -> bool:
        return name in self.resources

    def __len__(self) -> int:
        return len(self.resources)

    def get(self, name: str) -> ResourceRecord | None:
        return self.resources.get(name)

    def with_record(self, name: str, record: ResourceRecord) -> StateSnapshot:
        """Return a copy with ``name`` set to ``record``."""
        resources = dict(self.resources)
        resources[name] = record
        return StateSnapshot(resources, self.serial, self.lineage, self.version, self.outputs)

    def without(self, name: str) -> StateSnapshot:
        """Return a copy with ``name`` removed."""
        resources = {k: v for k, v in self.resources.items() if k != name}
        return StateSnapshot(resources, self.serial, self.lineage, self.version, self.outputs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "serial": self.serial,
            "lineage": self.lineage,
            "digest": self.digest,
            "resources": {name: rec.to_dict() for name, rec in sorted(self.resources.items())},
            "outputs": dict(sorted(self.outputs.items())),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any], location: str = "<memory>") -> StateSnapshot:
        """
        Parse a snapshot dict.

        Raises:
            IncompatibleStateError: If the snapshot was written by a newer format
            StateCorruptError: If the payload is malformed or its digest does not match
        """
        version = d.get("version", STATE_FORMAT_VERSION)
        if not isinstance(version, int):
            raise StateCorruptError(location, f"invalid version {version!r}")
        if version > STATE_FORMAT_VERSION:
            raise IncompatibleStateError(version, STATE_FORMAT_VERSION)

        try:
            resources = {
                name: ResourceRecord.from_dict(rec)
                for name, rec in (d.get("resources") or {}).items()
            }
        except (KeyError, TypeError, AttributeError) as e:
            raise StateCorruptError(location, f"malformed resource record: {e}") from e

        outputs = d.get("outputs") or {}
        if not isinstance(outputs, dict):
            raise StateCorruptError(location, "outputs must be an object")

        snapshot = cls(
            resources=resources,
            serial=int(d.get("serial", 0)),
            lineage=d.get("lineage"),
            version=version,
            outputs=outputs,
        )
        expected = d.get("digest")
        if expected is not None and expected != snapshot.digest:
            raise StateCorruptError(location, "digest mismatch")
        return snapshot


# ---------------------------------------------------------------------------
# Diff and plan
# ---------------------------------------------------------------------------


class Action(Enum):
    """Diff classification of a single resource."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    UNCHANGED = "unchanged"


class Operation(Enum):
    """A provider call made by the executor."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class DiffEntry:
    """
    Diff outcome for one logical name.

    Attributes:
        name: Logical name
        action: Classification
        reasons: Changed property paths (immutable paths first for Replace)
        kind: Resource kind (desired kind, or prior kind for Delete)
        desired: Desired node (None for Delete)
        prior: Prior record (None for Create)
    """

    name: str
    action: Action
    reasons: tuple[str, ...] = ()
    kind: str = ""
    desired: ResourceNode | None = field(default=None, compare=False, repr=False)
    prior: ResourceRecord | None = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class PlanStep:
    """One provider operation in a plan, with the steps it must wait for."""

    name: str
    operation: Operation
    entry: DiffEntry = field(compare=False, repr=False)
    requires: frozenset[str] = frozenset()

    @property
    def key(self) -> str:
        return step_key(self.operation, self.name)


def step_key(operation: Operation, name: str) -> str:
    """Identifier of a plan step, e.g. ``create:Network``."""
    return f"{operation.value}:{name}"


@dataclass(frozen=True)
class Batch:
    """Steps with no ordering constraints among them."""

    steps: tuple[PlanStep, ...]

    def __iter__(self) -> Iterator[PlanStep]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def names(self) -> list[str]:
        return [s.name for s in self.steps]


@dataclass(frozen=True)
class Plan:
    """Ordered batches plus the diff they were computed from."""

    batches: tuple[Batch, ...] = ()
    entries: tuple[DiffEntry, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.batches

    @property
    def steps(self) -> list[PlanStep]:
        return [step for batch in self.batches for step in batch]

    def summary(self) -> dict[str, int]:
        """Count entries per action, e.g. ``{"create": 2, "unchanged": 1}``."""
        counts = {action.value: 0 for action in Action}
        for entry in self.entries:
            counts[entry.action.value] += 1
        return counts

    def batch_index(self, key: str) -> int:
        """Return the batch index holding step ``key``."""
        for i, batch in enumerate(self.batches):
            if any(s.key == key for s in batch):
                return i
        raise KeyError(key)


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class StepStatus(Enum):
    """Terminal status of a plan step."""

    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ExecutionResult:
    """
    Outcome of a single plan step.

    ``cause`` is set for FAILED (the provider error message), ``reason``
    for SKIPPED (which prerequisite failed, or cancellation).
    """

    name: str
    operation: Operation
    status: StepStatus
    cause: str | None = None
    reason: str | None = None
    attempts: int = 0
    duration_seconds: float = 0.0

    @property
    def key(self) -> str:
        return step_key(self.operation, self.name)


@dataclass
class ApplyResult:
    """Result of executing a plan."""

    results: list[ExecutionResult] = field(default_factory=list)
    snapshot: StateSnapshot = field(default_factory=StateSnapshot.empty)
    canceled: bool = False

    @property
    def applied(self) -> list[ExecutionResult]:
        return [r for r in self.results if r.status is StepStatus.APPLIED]

    @property
    def failed(self) -> list[ExecutionResult]:
        return [r for r in self.results if r.status is StepStatus.FAILED]

    @property
    def skipped(self) -> list[ExecutionResult]:
        return [r for r in self.results if r.status is StepStatus.SKIPPED]

    @property
    def ok(self) -> bool:
        """True when every step was applied."""
        return not self.failed and not self.skipped

    def by_node(self) -> dict[str, StepStatus]:
        """
        Collapse step results per logical name.

        A Replace produces two steps; the node takes the worst status
        (FAILED over SKIPPED over APPLIED).
        """
        rank = {StepStatus.APPLIED: 0, StepStatus.SKIPPED: 1, StepStatus.FAILED: 2}
        nodes: dict[str, StepStatus] = {}
        for r in self.results:
            current = nodes.get(r.name)
            if current is None or rank[r.status] > rank[current]:
                nodes[r.name] = r.status
        return nodes
