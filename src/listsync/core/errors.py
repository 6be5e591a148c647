from __future__ import annotations

import asyncio
import enum
import typing as t
from dataclasses import dataclass

from listsync.utils.resilience import CircuitOpenError


class ErrorKind(str, enum.Enum):
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    UNAUTHORIZED = "unauthorized"
    SESSION_EXPIRED = "session_expired"
    NOT_FOUND = "not_found"
    VALIDATION_ERROR = "validation_error"
    DUPLICATE_ITEM = "duplicate_item"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE


_RETRYABLE = frozenset(
    {
        ErrorKind.NETWORK_ERROR,
        ErrorKind.TIMEOUT,
        ErrorKind.RATE_LIMITED,
        ErrorKind.SERVER_ERROR,
        ErrorKind.UNKNOWN,
    }
)


@dataclass(frozen=True)
class RemoteError:
    """A classified failure reported by (or on behalf of) the remote API."""

    kind: ErrorKind
    message: str = ""

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}" if self.message else self.kind.value


def classify_exception(exc: BaseException) -> RemoteError:
    """Map an exception that escaped a collaborator onto the error taxonomy."""
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return RemoteError(ErrorKind.TIMEOUT, "remote call exceeded deadline")
    if isinstance(exc, CircuitOpenError):
        return RemoteError(ErrorKind.NETWORK_ERROR, "circuit open")
    if isinstance(exc, (ConnectionError, OSError)):
        return RemoteError(ErrorKind.NETWORK_ERROR, str(exc) or type(exc).__name__)
    return RemoteError(ErrorKind.UNKNOWN, f"{type(exc).__name__}: {exc}")


class ListSyncError(Exception):
    pass


class ValidationError(ListSyncError, ValueError):
    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class OperationNotFoundError(ListSyncError, LookupError):
    def __init__(self, operation_id: str) -> None:
        super().__init__(f"operation not found: {operation_id}")
        self.operation_id = operation_id


class InvalidStateError(ListSyncError):
    def __init__(self, operation_id: str, status: t.Any, action: str) -> None:
        status_value = getattr(status, "value", status)
        super().__init__(f"cannot {action} operation {operation_id} in status {status_value}")
        self.operation_id = operation_id
        self.status = status
        self.action = action


class RemoteOperationError(ListSyncError):
    """Raised by the read path when the remote fetch fails."""

    def __init__(self, error: RemoteError) -> None:
        super().__init__(str(error))
        self.error = error


class SignatureConflictError(ListSyncError):
    """Another active operation already holds the dedup signature."""

    def __init__(self, operation_id: str, holder_id: str) -> None:
        super().__init__(f"operation {operation_id} conflicts with active operation {holder_id}")
        self.operation_id = operation_id
        self.holder_id = holder_id
