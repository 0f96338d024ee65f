"""Reference tokens: parsing, scanning and resolution.

Manifest strings may embed ``${Name}`` or ``${Name.Attribute}`` tokens.
They are turned into ``Ref`` / ``Interpolation`` values once, when the
manifest is loaded, and resolved against applied outputs at execution time.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterator
from typing import Any

from .models import Interpolation, Ref

TOKEN_PATTERN = re.compile(r"\$\{([A-Za-z][A-Za-z0-9_-]*)(?:\.([A-Za-z0-9_.:-]+))?\}")


class Unknown:
    """Placeholder for a value only known after apply."""

    _instance: Unknown | None = None

    def __new__(cls) -> Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "<known after apply>"

    def __copy__(self) -> Unknown:
        return self

    def __deepcopy__(self, memo: dict[int, Any]) -> Unknown:
        return self


UNKNOWN = Unknown()


def parse_tokens(value: Any) -> Any:
    """
    Replace ``${...}`` tokens in strings with Ref / Interpolation values.

    Walks nested dicts and lists. A string consisting of exactly one token
    becomes a ``Ref``; a string with embedded tokens becomes an
    ``Interpolation``; other values are returned unchanged.
    """
    if isinstance(value, dict):
        return {k: parse_tokens(v) for k, v in value.items()}
    if isinstance(value, list):
        return [parse_tokens(v) for v in value]
    if not isinstance(value, str) or "${" not in value:
        return value

    whole = TOKEN_PATTERN.fullmatch(value)
    if whole:
        return Ref(whole.group(1), whole.group(2))

    parts: list[str | Ref] = []
    pos = 0
    for match in TOKEN_PATTERN.finditer(value):
        if match.start() > pos:
            parts.append(value[pos : match.start()])
        parts.append(Ref(match.group(1), match.group(2)))
        pos = match.end()
    if not parts:
        return value
    if pos < len(value):
        parts.append(value[pos:])
    return Interpolation(tuple(parts))


def iter_refs(value: Any) -> Iterator[Ref]:
    """Yield every Ref embedded in a property value, depth first."""
    if isinstance(value, Ref):
        yield value
    elif isinstance(value, Interpolation):
        yield from value.refs
    elif isinstance(value, dict):
        for v in value.values():
            yield from iter_refs(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from iter_refs(v)


def resolve(value: Any, lookup: Callable[[Ref], Any]) -> Any:
    """
    Substitute references using ``lookup``.

    ``lookup`` returns the resolved value for a Ref, or ``UNKNOWN`` when the
    value is not known yet. An Interpolation with an unknown part resolves
    to ``UNKNOWN`` as a whole.
    """
    if isinstance(value, Ref):
        return lookup(value)
    if isinstance(value, Interpolation):
        out = []
        for part in value.parts:
            if isinstance(part, Ref):
                resolved = lookup(part)
                if resolved is UNKNOWN:
                    return UNKNOWN
                out.append(str(resolved))
            else:
                out.append(part)
        return "".join(out)
    if isinstance(value, dict):
        return {k: resolve(v, lookup) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve(v, lookup) for v in value]
    return value


def to_tokens(value: Any) -> Any:
    """Inverse of ``parse_tokens``: render references back as token strings."""
    if isinstance(value, (Ref, Interpolation)):
        return value.token
    if isinstance(value, dict):
        return {k: to_tokens(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_tokens(v) for v in value]
    return value


def substitute(value: Any, lookup: Callable[[Ref], Any]) -> Any:
    """
    Replace some references, leaving the rest in place.

    Like ``resolve``, but ``lookup`` may return the Ref it was given to keep
    it. An Interpolation whose references are all replaced collapses to a
    plain string.
    """
    if isinstance(value, Ref):
        return lookup(value)
    if isinstance(value, Interpolation):
        parts: list[str | Ref] = []
        for part in value.parts:
            if isinstance(part, Ref):
                replaced = lookup(part)
                if replaced is UNKNOWN:
                    return UNKNOWN
                part = replaced if isinstance(replaced, Ref) else str(replaced)
            if isinstance(part, str) and parts and isinstance(parts[-1], str):
                parts[-1] = str(parts[-1]) + part
            else:
                parts.append(part)
        if any(isinstance(p, Ref) for p in parts):
            return Interpolation(tuple(parts))
        return "".join(str(p) for p in parts)
    if isinstance(value, dict):
        return {k: substitute(v, lookup) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute(v, lookup) for v in value]
    return value


def contains_unknown(value: Any) -> bool:
    """True if ``UNKNOWN`` appears anywhere inside ``value``."""
    if isinstance(value, Unknown):
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False
