"""listsync

Cache-first client-side synchronization for user-owned collections kept on a
remote list API: optimistic cache updates with rollback, a durable retry
queue with deduplication, and a background processor that drains it.
"""

from .cache import CacheKey, ExpiringCache
from .core import (
    CollectionChanges,
    CredentialResolver,
    ErrorKind,
    Failure,
    ItemRef,
    ListOrchestrator,
    MutationExecutor,
    MutationResult,
    MutationStatus,
    NewCollection,
    OperationQueue,
    OperationRecord,
    OperationStatus,
    OperationType,
    QueueProcessor,
    ReadFetcher,
    RemoteError,
    Success,
    ValidationError,
)
from .service import ListSyncService
from .storage import InMemoryOperationStorage, OperationStorage, RedisOperationStorage
from .utils.config import ListSyncConfig

__all__ = [
    "ListSyncService",
    "ListSyncConfig",
    "ListOrchestrator",
    "OperationQueue",
    "QueueProcessor",
    "ExpiringCache",
    "CacheKey",
    "OperationStorage",
    "InMemoryOperationStorage",
    "RedisOperationStorage",
    "MutationExecutor",
    "ReadFetcher",
    "CredentialResolver",
    "OperationRecord",
    "OperationStatus",
    "OperationType",
    "NewCollection",
    "CollectionChanges",
    "ItemRef",
    "Success",
    "Failure",
    "RemoteError",
    "ErrorKind",
    "MutationResult",
    "MutationStatus",
    "ValidationError",
]

__version__ = "0.1.0"
