from __future__ import annotations

import dataclasses
import threading
import typing as t
from abc import ABC, abstractmethod

from ..core.errors import InvalidStateError, SignatureConflictError
from ..core.models import PURGEABLE_STATUSES, OperationRecord, OperationStatus


class OperationStorage(ABC):
    """Durable store of OperationRecords.

    `insert` is the atomic check-then-insert used for deduplication: at most
    one active (pending/processing) record may hold a given signature.
    """

    @abstractmethod
    async def insert(self, record: OperationRecord) -> OperationRecord:  # pragma: no cover - interface
        """Store `record`, or return the active record already holding its signature."""
        raise NotImplementedError

    @abstractmethod
    async def get(self, operation_id: str) -> t.Optional[OperationRecord]:  # pragma: no cover - interface
        raise NotImplementedError

    @abstractmethod
    async def update(
        self, record: OperationRecord, expected_status: t.Optional[OperationStatus] = None
    ) -> None:  # pragma: no cover - interface
        """Persist `record`.

        Raises SignatureConflictError when re-activating a taken signature, and
        InvalidStateError when `expected_status` is given and the stored record
        is no longer in it.
        """
        raise NotImplementedError

    @abstractmethod
    async def find_active(self, signature: str) -> t.Optional[OperationRecord]:  # pragma: no cover - interface
        raise NotImplementedError

    @abstractmethod
    async def list_due(self, now: float, limit: int) -> t.List[OperationRecord]:  # pragma: no cover - interface
        raise NotImplementedError

    @abstractmethod
    async def list_by_owner(self, owner_id: int) -> t.List[OperationRecord]:  # pragma: no cover - interface
        raise NotImplementedError

    @abstractmethod
    async def list_by_status(
        self, status: OperationStatus, limit: t.Optional[int] = None
    ) -> t.List[OperationRecord]:  # pragma: no cover - interface
        raise NotImplementedError

    @abstractmethod
    async def count_by_status(self) -> t.Dict[OperationStatus, int]:  # pragma: no cover - interface
        raise NotImplementedError

    @abstractmethod
    async def delete_terminal_before(self, cutoff: float) -> int:  # pragma: no cover - interface
        raise NotImplementedError

    @abstractmethod
    async def is_healthy(self) -> bool:  # pragma: no cover - interface
        raise NotImplementedError


class InMemoryOperationStorage(OperationStorage):
    """In-process storage for dev/test. Records do not survive a restart.

    Every method runs without awaiting while holding the lock, so it is safe
    to share between event loop tasks and caller threads.
    """

    def __init__(self) -> None:
        self._records: t.Dict[str, OperationRecord] = {}
        self._signatures: t.Dict[str, str] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _copy(record: OperationRecord) -> OperationRecord:
        return dataclasses.replace(record)

    async def insert(self, record: OperationRecord) -> OperationRecord:
        signature = record.signature
        with self._lock:
            holder_id = self._signatures.get(signature)
            if holder_id is not None and record.is_active:
                return self._copy(self._records[holder_id])
            self._records[record.id] = self._copy(record)
            if record.is_active:
                self._signatures[signature] = record.id
        return record

    async def get(self, operation_id: str) -> t.Optional[OperationRecord]:
        with self._lock:
            record = self._records.get(operation_id)
            return self._copy(record) if record is not None else None

    async def update(self, record: OperationRecord, expected_status: t.Optional[OperationStatus] = None) -> None:
        signature = record.signature
        with self._lock:
            if expected_status is not None:
                stored = self._records.get(record.id)
                stored_status = stored.status if stored is not None else None
                if stored_status is not expected_status:
                    raise InvalidStateError(record.id, stored_status, "update")
            holder_id = self._signatures.get(signature)
            if record.is_active:
                if holder_id is not None and holder_id != record.id:
                    raise SignatureConflictError(record.id, holder_id)
                self._signatures[signature] = record.id
            elif holder_id == record.id:
                del self._signatures[signature]
            self._records[record.id] = self._copy(record)

    async def find_active(self, signature: str) -> t.Optional[OperationRecord]:
        with self._lock:
            holder_id = self._signatures.get(signature)
            return self._copy(self._records[holder_id]) if holder_id is not None else None

    def _sorted(self, predicate: t.Callable[[OperationRecord], bool]) -> t.List[OperationRecord]:
        with self._lock:
            matched = [self._copy(r) for r in self._records.values() if predicate(r)]
        return sorted(matched, key=lambda r: r.created_at)

    async def list_due(self, now: float, limit: int) -> t.List[OperationRecord]:
        due = self._sorted(lambda r: r.status is OperationStatus.PENDING and r.scheduled_for <= now)
        return due[:limit]

    async def list_by_owner(self, owner_id: int) -> t.List[OperationRecord]:
        return self._sorted(lambda r: r.owner_id == owner_id)

    async def list_by_status(self, status: OperationStatus, limit: t.Optional[int] = None) -> t.List[OperationRecord]:
        records = self._sorted(lambda r: r.status is status)
        return records if limit is None else records[:limit]

    async def count_by_status(self) -> t.Dict[OperationStatus, int]:
        counts = {status: 0 for status in OperationStatus}
        with self._lock:
            for record in self._records.values():
                counts[record.status] += 1
        return counts

    async def delete_terminal_before(self, cutoff: float) -> int:
        with self._lock:
            doomed = [
                r.id for r in self._records.values() if r.status in PURGEABLE_STATUSES and r.updated_at < cutoff
            ]
            for operation_id in doomed:
                del self._records[operation_id]
        return len(doomed)

    async def is_healthy(self) -> bool:
        return True
