"""Provider protocol for remote resource APIs.

A provider is the only component that talks to a remote API. The
executor treats it as an opaque capability and relies on it to translate
transport failures into ``TransientProviderError`` (retried) or
``PermanentProviderError`` (terminal for the node).

The protocol uses Python's typing.Protocol with @runtime_checkable,
so any object with matching async methods can be registered.
"""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from ..exceptions import PermanentProviderError


@dataclass(frozen=True)
class ProviderResult:
    """A resource identifier and its properties, as created or found."""

    provider_id: str
    outputs: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ProviderProtocol(Protocol):
    """
    Protocol for remote resource APIs.

    Example:
        class MyProvider:
            async def create(self, kind, properties):
                return ProviderResult("id-1", {"Arn": "..."})

            async def update(self, kind, provider_id, properties, previous):
                return {"Arn": "..."}

            async def delete(self, kind, provider_id):
                pass

        assert isinstance(MyProvider(), ProviderProtocol)
    """

    async def create(self, kind: str, properties: dict[str, Any]) -> ProviderResult:
        """
        Create a resource.

        Raises:
            TransientProviderError: On throttling, timeouts or server errors
            PermanentProviderError: On validation failures or conflicts
        """
        ...

    async def update(
        self,
        kind: str,
        provider_id: str,
        properties: dict[str, Any],
        previous: dict[str, Any],
    ) -> dict[str, Any]:
        """Update a resource in place and return its new outputs."""
        ...

    async def delete(self, kind: str, provider_id: str) -> None:
        """Delete a resource. Deleting a resource that is already gone succeeds."""
        ...


@runtime_checkable
class LookupProtocol(Protocol):
    """
    Optional read capability used to resolve lookups.

    - **read**: Fetch one resource by identifier, or None if it does not exist
    - **list_resources**: Every resource of a kind visible to the caller
    """

    async def read(self, kind: str, identifier: str) -> ProviderResult | None: ...

    async def list_resources(self, kind: str) -> list[ProviderResult]: ...


class ProviderRegistry:
    """
    Maps resource kinds to providers.

    Kinds are matched against fnmatch patterns in registration order
    (``"AWS::*"`` matches every CloudFormation-style kind); the first match
    wins and ``default`` is used when nothing matches.
    """

    def __init__(self, default: ProviderProtocol | None = None) -> None:
        self._routes: list[tuple[str, ProviderProtocol]] = []
        self.default = default

    def register(self, pattern: str, provider: ProviderProtocol) -> ProviderRegistry:
        self._routes.append((pattern, provider))
        return self

    def get(self, kind: str) -> ProviderProtocol:
        """
        Return the provider responsible for ``kind``.

        Raises:
            PermanentProviderError: If no provider handles the kind
        """
        for pattern, provider in self._routes:
            if fnmatch.fnmatchcase(kind, pattern):
                return provider
        if self.default is not None:
            return self.default
        raise PermanentProviderError("No provider registered for kind", kind=kind)

    def __len__(self) -> int:
        return len(self._routes) + (1 if self.default is not None else 0)

    async def close(self) -> None:
        """Close every registered provider that exposes an async ``close``."""
        providers = [provider for _, provider in self._routes]
        if self.default is not None:
            providers.append(self.default)

        closed: set[int] = set()
        for provider in providers:
            if id(provider) in closed:
                continue
            closed.add(id(provider))
            close = getattr(provider, "close", None)
            if close is not None:
                await close()
