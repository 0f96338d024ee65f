"""Provider API clients."""

from .cloudcontrol import CloudControlProvider
from .protocol import LookupProtocol, ProviderProtocol, ProviderRegistry, ProviderResult

__all__ = [
    "CloudControlProvider",
    "LookupProtocol",
    "ProviderProtocol",
    "ProviderRegistry",
    "ProviderResult",
]
