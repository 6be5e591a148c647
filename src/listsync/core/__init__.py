"""Core module: operation records, the retry queue, its processor and the list orchestrator."""

from .errors import (
    ErrorKind,
    InvalidStateError,
    ListSyncError,
    OperationNotFoundError,
    RemoteError,
    RemoteOperationError,
    SignatureConflictError,
    ValidationError,
    classify_exception,
)
from .models import (
    CollectionChanges,
    ItemRef,
    NewCollection,
    NoPayload,
    OperationRecord,
    OperationStatus,
    OperationType,
    Payload,
    build_payload,
    cache_keys_for,
    dedup_signature,
)
from .results import Failure, MutationResult, MutationStatus, RemoteResult, Success
from .interfaces import CredentialResolver, MutationExecutor, ReadFetcher
from .queue import OperationQueue
from .processor import QueueProcessor
from .orchestrator import ListOrchestrator

__all__ = [
    # Orchestration
    "ListOrchestrator",
    "OperationQueue",
    "QueueProcessor",
    # Collaborators
    "MutationExecutor",
    "ReadFetcher",
    "CredentialResolver",
    # Models
    "OperationRecord",
    "OperationStatus",
    "OperationType",
    "Payload",
    "NewCollection",
    "CollectionChanges",
    "NoPayload",
    "ItemRef",
    "build_payload",
    "cache_keys_for",
    "dedup_signature",
    # Results
    "Success",
    "Failure",
    "RemoteResult",
    "MutationResult",
    "MutationStatus",
    # Errors
    "ErrorKind",
    "RemoteError",
    "ListSyncError",
    "ValidationError",
    "OperationNotFoundError",
    "InvalidStateError",
    "RemoteOperationError",
    "SignatureConflictError",
    "classify_exception",
]
