"""Remote record store adapters.

RemoteStore is the contract the sync engine consumes. HttpRemoteStore talks
to the record service; MemoryRemoteStore keeps everything in process.
"""

from .base import (
    BY_NAME,
    DISTANT_PAST,
    ErrorCode,
    Predicate,
    RemoteStore,
    RemoteStoreError,
    SortOrder,
)
from .http_store import HttpRemoteStore
from .memory_store import MemoryBackend, MemoryRemoteStore

__all__ = [
    "BY_NAME",
    "DISTANT_PAST",
    "ErrorCode",
    "Predicate",
    "RemoteStore",
    "RemoteStoreError",
    "SortOrder",
    "HttpRemoteStore",
    "MemoryBackend",
    "MemoryRemoteStore",
]
