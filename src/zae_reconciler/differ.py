"""Diff engine for declarative resource graphs.

Compares a desired ``ResourceGraph`` against the previous ``StateSnapshot``
to classify each resource as create, update, replace, delete or unchanged.
"""

from __future__ import annotations

from typing import Any

from .graph import ResourceGraph
from .models import (
    Action,
    DiffEntry,
    Ref,
    ResourceNode,
    ResourceRecord,
    StateSnapshot,
    canonical_json,
)
from .refs import UNKNOWN, contains_unknown, iter_refs, resolve
from .resource_types import ResourceType, TypeRegistry

_MISSING = object()

# Outputs of resources being (re)created are not known until apply
_PENDING_ACTIONS = frozenset({Action.CREATE, Action.REPLACE})


def compute_diff(
    desired: ResourceGraph,
    prior: StateSnapshot,
    types: TypeRegistry | None = None,
) -> list[DiffEntry]:
    """Compute changes between a desired graph and previous applied state.

    Args:
        desired: The new desired state.
        prior: The snapshot recorded by the last apply.
        types: Comparison policies per kind (permissive when omitted).

    Returns:
        One DiffEntry per desired node, in topological order, followed by
        one Delete entry per prior resource no longer declared, sorted by
        name.
    """
    types = types or TypeRegistry()
    actions: dict[str, Action] = {}
    changes: list[DiffEntry] = []

    # --- Desired nodes (dependencies first, so reference targets are classified) ---
    for node in desired:
        record = prior.get(node.name)
        if record is None:
            entry = DiffEntry(node.name, Action.CREATE, (), node.kind, node, None)
        elif record.kind != node.kind:
            entry = DiffEntry(node.name, Action.REPLACE, ("kind",), node.kind, node, record)
        else:
            entry = _diff_node(node, record, types.get(node.kind), actions, prior)
            pinned = _pinned_to_replacement(node, desired, actions, types)
            if pinned and entry.action is not Action.REPLACE:
                reasons = entry.reasons + tuple(f"depends_on:{dep}" for dep in pinned)
                entry = DiffEntry(node.name, Action.REPLACE, reasons, node.kind, node, record)
        actions[node.name] = entry.action
        changes.append(entry)

    # --- Removed nodes ---
    for name in sorted(set(prior.resources) - set(desired.nodes)):
        record = prior.resources[name]
        changes.append(DiffEntry(name, Action.DELETE, (), record.kind, None, record))

    return changes


def resolve_known(
    properties: dict[str, Any],
    actions: dict[str, Action],
    prior: StateSnapshot,
) -> dict[str, Any]:
    """Resolve references against prior outputs; pending targets become UNKNOWN."""

    def lookup(ref: Ref) -> Any:
        if actions.get(ref.target) in _PENDING_ACTIONS:
            return UNKNOWN
        record = prior.get(ref.target)
        if record is None:
            return UNKNOWN
        if ref.attribute is None:
            return record.provider_id
        return record.outputs.get(ref.attribute, UNKNOWN)

    resolved: dict[str, Any] = resolve(properties, lookup)
    return resolved


def _diff_node(
    node: ResourceNode,
    record: ResourceRecord,
    rtype: ResourceType,
    actions: dict[str, Action],
    prior: StateSnapshot,
) -> DiffEntry:
    desired = rtype.normalize(resolve_known(node.properties, actions, prior))
    current = rtype.normalize(record.properties)
    changed = changed_paths(desired, current)

    if not changed:
        return DiffEntry(node.name, Action.UNCHANGED, (), node.kind, node, record)

    immutable = [p for p in changed if rtype.is_immutable(p)]
    if immutable:
        mutable = [p for p in changed if p not in immutable]
        reasons = tuple(immutable + mutable)
        return DiffEntry(node.name, Action.REPLACE, reasons, node.kind, node, record)

    return DiffEntry(node.name, Action.UPDATE, tuple(changed), node.kind, node, record)


def changed_paths(desired: dict[str, Any], current: dict[str, Any], prefix: str = "") -> list[str]:
    """
    List dotted property paths that differ between two property mappings.

    Nested mappings are compared key by key; any other value (lists
    included) is compared as a whole. Paths are returned sorted.
    """
    paths: list[str] = []
    for key in sorted(set(desired) | set(current)):
        path = f"{prefix}{key}"
        new = desired.get(key, _MISSING)
        old = current.get(key, _MISSING)
        if isinstance(new, dict) and isinstance(old, dict):
            paths.extend(changed_paths(new, old, path + "."))
        elif not _equal(new, old):
            paths.append(path)
    return paths


def _equal(new: Any, old: Any) -> bool:
    if new is _MISSING or old is _MISSING:
        return new is old
    if contains_unknown(new):
        return False
    # JSON form keeps True distinct from 1
    return canonical_json(new) == canonical_json(old)


def _pinned_to_replacement(
    node: ResourceNode,
    desired: ResourceGraph,
    actions: dict[str, Action],
    types: TypeRegistry,
) -> list[str]:
    """
    Explicit dependencies replaced delete-first that ``node`` does not reference.

    Nothing moves such a dependent onto the new resource, so it has to be
    replaced along with it.
    """
    referenced = {ref.target for ref in iter_refs(node.properties)}
    return [
        dep
        for dep in node.explicit_dependencies
        if dep not in referenced
        and actions.get(dep) is Action.REPLACE
        and not types.get(desired[dep].kind).create_before_destroy
    ]
