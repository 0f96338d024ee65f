"""Read-only lookups of resources that already exist.

A lookup names a resource the stack uses but does not own, such as a
shared VPC. Lookups are resolved through the provider before planning
and their values are substituted into the declarations, so the graph,
the diff and the executor never see them: a lookup can never produce a
Create, an Update or a Delete.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from dataclasses import replace
from typing import Any

from .exceptions import DuplicateResourceError, LookupFailedError, ProviderError
from .models import LookupSpec, Ref, ResourceSpec
from .providers.protocol import LookupProtocol, ProviderRegistry, ProviderResult
from .refs import UNKNOWN, substitute

logger = logging.getLogger(__name__)


async def resolve_lookups(
    lookups: Iterable[LookupSpec],
    providers: ProviderRegistry,
) -> dict[str, ProviderResult]:
    """
    Find the resource behind every lookup.

    Lookups are independent of each other and are resolved concurrently.

    Raises:
        LookupFailedError: If a lookup matches no resource or more than one,
            or its provider cannot read resources
    """
    lookups = list(lookups)
    if not lookups:
        return {}
    found = await asyncio.gather(*(_resolve_one(lookup, providers) for lookup in lookups))
    return {lookup.name: result for lookup, result in zip(lookups, found, strict=True)}


async def _resolve_one(lookup: LookupSpec, providers: ProviderRegistry) -> ProviderResult:
    provider = providers.get(lookup.kind)
    if not isinstance(provider, LookupProtocol):
        raise LookupFailedError(lookup.name, "provider cannot read resources", lookup.kind)

    try:
        if lookup.identifier is not None:
            result = await provider.read(lookup.kind, lookup.identifier)
            candidates = [result] if result is not None else []
        else:
            candidates = await provider.list_resources(lookup.kind)
    except ProviderError as e:
        raise LookupFailedError(lookup.name, str(e), lookup.kind) from e

    matches = [c for c in candidates if _matches(c.outputs, lookup.match)]
    if not matches:
        raise LookupFailedError(lookup.name, "no matching resource", lookup.kind)
    if len(matches) > 1:
        ids = ", ".join(sorted(m.provider_id for m in matches))
        raise LookupFailedError(lookup.name, f"{len(matches)} resources match: {ids}", lookup.kind)

    logger.info("Lookup %s resolved to %s", lookup.name, matches[0].provider_id)
    return matches[0]


def _matches(properties: Mapping[str, Any], match: Mapping[str, Any]) -> bool:
    for key, expected in match.items():
        actual = properties.get(key)
        if key == "Tags" and isinstance(expected, dict):
            if not isinstance(actual, list):
                return False
            tags = {t.get("Key"): t.get("Value") for t in actual if isinstance(t, dict)}
            if any(tags.get(k) != v for k, v in expected.items()):
                return False
        elif actual != expected:
            return False
    return True


def bind_lookups(
    specs: Iterable[ResourceSpec],
    resolved: Mapping[str, ProviderResult | None],
) -> list[ResourceSpec]:
    """
    Substitute references to lookups with the values they resolved to.

    ``${Name}`` becomes the found identifier and ``${Name.Attr}`` the
    found property. A lookup mapped to None (not resolved, as in offline
    validation) becomes UNKNOWN. Lookup names are dropped from
    ``depends_on``.

    Raises:
        DuplicateResourceError: If a resource and a lookup share a name
        LookupFailedError: If a referenced property is missing
    """
    bound: list[ResourceSpec] = []
    for spec in specs:
        if spec.name in resolved:
            raise DuplicateResourceError(spec.name)

        def lookup(ref: Ref, owner: str = spec.name) -> Any:
            return bind_value(ref, resolved, owner)

        bound.append(
            replace(
                spec,
                properties=substitute(spec.properties, lookup),
                depends_on=tuple(d for d in spec.depends_on if d not in resolved),
            )
        )
    return bound


def bind_value(ref: Ref, resolved: Mapping[str, ProviderResult | None], owner: str) -> Any:
    """Value of ``ref`` if it names a lookup; the Ref itself otherwise."""
    if ref.target not in resolved:
        return ref
    result = resolved[ref.target]
    if result is None:
        return UNKNOWN
    if ref.attribute is None:
        return result.provider_id
    if ref.attribute not in result.outputs:
        raise LookupFailedError(
            ref.target, f"found resource has no '{ref.attribute}' (referenced by '{owner}')"
        )
    return result.outputs[ref.attribute]


def bind_outputs(
    outputs: Mapping[str, Any],
    resolved: Mapping[str, ProviderResult | None],
) -> dict[str, Any]:
    """Substitute lookup references inside stack outputs."""
    bound: dict[str, Any] = {}
    for name, value in outputs.items():

        def lookup(ref: Ref, owner: str = f"outputs.{name}") -> Any:
            return bind_value(ref, resolved, owner)

        bound[name] = substitute(value, lookup)
    return bound
