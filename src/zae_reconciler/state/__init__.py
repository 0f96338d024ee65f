"""State stores for applied snapshots."""

from .dynamodb import DynamoDBStateStore
from .local import LocalStateStore
from .protocol import StateLock, StateStoreProtocol, default_owner

__all__ = [
    "DynamoDBStateStore",
    "LocalStateStore",
    "StateLock",
    "StateStoreProtocol",
    "default_owner",
]
