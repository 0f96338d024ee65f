"""Per-kind comparison policy.

A ``ResourceType`` tells the diff engine how to compare the properties of
one kind of resource: which property paths cannot be changed in place,
which lists are really sets, and which explicit values are equivalent to
leaving the property out.

Property paths are dotted (``"NetworkConfiguration.Subnets"``) and
address keys of nested mappings.
"""

from __future__ import annotations

import copy
import fnmatch
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .models import canonical_json

_MISSING = object()


@dataclass(frozen=True)
class ResourceType:
    """
    Comparison policy for one resource kind.

    Attributes:
        kind: Resource kind this policy applies to (fnmatch pattern allowed)
        immutable: Property paths whose change forces a Replace
        set_properties: Property paths holding order-insensitive lists
        defaults: Provider defaults; an explicit value equal to its default
                  compares equal to the property being absent
        create_before_destroy: On Replace, create the new resource (and
                  migrate dependents) before deleting the old one
    """

    kind: str
    immutable: frozenset[str] = frozenset()
    set_properties: frozenset[str] = frozenset()
    defaults: dict[str, Any] = field(default_factory=dict)
    create_before_destroy: bool = False

    def is_immutable(self, path: str) -> bool:
        """True if a change at ``path`` touches an immutable property."""
        for imm in self.immutable:
            if path == imm or path.startswith(imm + ".") or imm.startswith(path + "."):
                return True
        return False

    def normalize(self, properties: dict[str, Any]) -> dict[str, Any]:
        """
        Return a normalized copy of ``properties`` for comparison.

        Set-valued lists are sorted by their canonical JSON form and
        values equal to the declared default are dropped.
        """
        result = copy.deepcopy(properties)
        for path, default in self.defaults.items():
            if _get_path(result, path) == default:
                _remove_path(result, path)
        for path in self.set_properties:
            value = _get_path(result, path)
            if isinstance(value, list):
                _set_path(result, path, sorted(value, key=canonical_json))
        return result


class TypeRegistry:
    """
    Lookup table from kind to ResourceType.

    Exact kinds win over patterns; patterns are tried in registration
    order. Unknown kinds get a permissive policy (nothing immutable, no
    sets, no defaults).
    """

    def __init__(self, types: Iterable[ResourceType] = ()) -> None:
        self._exact: dict[str, ResourceType] = {}
        self._patterns: list[ResourceType] = []
        for rtype in types:
            self.register(rtype)

    def register(self, rtype: ResourceType) -> None:
        if any(ch in rtype.kind for ch in "*?["):
            self._patterns.append(rtype)
        else:
            self._exact[rtype.kind] = rtype

    def get(self, kind: str) -> ResourceType:
        rtype = self._exact.get(kind)
        if rtype is not None:
            return rtype
        for pattern in self._patterns:
            if fnmatch.fnmatchcase(kind, pattern.kind):
                return pattern
        return ResourceType(kind=kind)

    def __contains__(self, kind: object) -> bool:
        return kind in self._exact

    def __len__(self) -> int:
        return len(self._exact) + len(self._patterns)


def _get_path(obj: dict[str, Any], path: str) -> Any:
    current: Any = obj
    for key in path.split("."):
        if not isinstance(current, dict) or key not in current:
            return _MISSING
        current = current[key]
    return current


def _set_path(obj: dict[str, Any], path: str, value: Any) -> None:
    *parents, last = path.split(".")
    current = obj
    for key in parents:
        current = current[key]
    current[last] = value


def _remove_path(obj: dict[str, Any], path: str) -> None:
    *parents, last = path.split(".")
    current = obj
    for key in parents:
        current = current[key]
    del current[last]
