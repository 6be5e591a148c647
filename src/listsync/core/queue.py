from __future__ import annotations

import dataclasses
import logging
import typing as t

from listsync.utils.clock import Clock, SystemClock
from listsync.utils.resilience import BackoffPolicy

from .errors import ErrorKind, InvalidStateError, OperationNotFoundError, RemoteError
from .models import (
    ACTIVE_STATUSES,
    OperationRecord,
    OperationStatus,
    OperationType,
    Payload,
    build_payload,
    dedup_signature,
)

if t.TYPE_CHECKING:
    from listsync.storage.base import OperationStorage

_logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


class OperationQueue:
    """Durable queue of mutations that could not complete synchronously.

    Owns the status state machine of OperationRecord:
    pending -> processing -> completed | pending (retry) | failed,
    pending/processing -> cancelled (operator), failed -> pending (operator).
    """

    def __init__(
        self,
        storage: OperationStorage,
        backoff: t.Optional[BackoffPolicy] = None,
        max_retries: int = 5,
        retention_days: int = 30,
        clock: t.Optional[Clock] = None,
    ) -> None:
        self._storage = storage
        self._backoff = backoff or BackoffPolicy()
        self._max_retries = max_retries
        self._retention_days = retention_days
        self._clock = clock or SystemClock()

    @property
    def max_retries(self) -> int:
        return self._max_retries

    async def enqueue(
        self,
        operation_type: t.Union[OperationType, str],
        owner_id: int,
        target_id: t.Optional[int],
        payload: t.Union[Payload, t.Mapping[str, t.Any], None],
        *,
        local_ref: t.Optional[str] = None,
    ) -> OperationRecord:
        """Queue a mutation, or return the active record with the same signature."""
        op_type = OperationType(operation_type)
        now = self._clock.now()
        record = OperationRecord(
            operation_type=op_type,
            owner_id=owner_id,
            target_id=target_id,
            payload=build_payload(op_type, payload),
            scheduled_for=now,
            created_at=now,
            updated_at=now,
            local_ref=local_ref,
        )
        stored = await self._storage.insert(record)
        if stored.id != record.id:
            _logger.info(
                "Duplicate %s for owner %s target %s, keeping operation %s",
                op_type.value,
                owner_id,
                target_id,
                stored.id,
            )
        else:
            _logger.info("Queued %s operation %s (owner=%s target=%s)", op_type.value, stored.id, owner_id, target_id)
        return stored

    async def find_active(
        self,
        operation_type: t.Union[OperationType, str],
        owner_id: int,
        target_id: t.Optional[int],
        payload: t.Union[Payload, t.Mapping[str, t.Any], None],
    ) -> t.Optional[OperationRecord]:
        op_type = OperationType(operation_type)
        signature = dedup_signature(op_type, owner_id, target_id, build_payload(op_type, payload))
        return await self._storage.find_active(signature)

    async def get(self, operation_id: str) -> OperationRecord:
        record = await self._storage.get(operation_id)
        if record is None:
            raise OperationNotFoundError(operation_id)
        return record

    async def due_pending(self, limit: int = 50) -> t.List[OperationRecord]:
        return await self._storage.list_due(self._clock.now(), limit)

    async def _save(self, record: OperationRecord, **changes: t.Any) -> OperationRecord:
        updated = dataclasses.replace(record, updated_at=self._clock.now(), **changes)
        await self._storage.update(updated)
        return updated

    async def _current(self, record: OperationRecord) -> t.Optional[OperationRecord]:
        """Latest stored copy, or None when an operator cancelled it meanwhile."""
        current = await self._storage.get(record.id)
        if current is None:
            raise OperationNotFoundError(record.id)
        if current.status is OperationStatus.CANCELLED:
            _logger.info("Operation %s was cancelled while processing; discarding outcome", record.id)
            return None
        return current

    async def mark_processing(self, record: OperationRecord) -> t.Optional[OperationRecord]:
        """Claim a due record for execution.

        Works from the stored copy, not `record`, and returns None when that copy
        is no longer pending (cancelled by an operator since it was listed).
        """
        current = await self._storage.get(record.id)
        if current is None:
            raise OperationNotFoundError(record.id)
        if current.status is not OperationStatus.PENDING:
            _logger.info("Operation %s is %s; not processing it", record.id, current.status.value)
            return None
        claimed = dataclasses.replace(current, status=OperationStatus.PROCESSING, updated_at=self._clock.now())
        try:
            await self._storage.update(claimed, expected_status=OperationStatus.PENDING)
        except InvalidStateError as exc:
            _logger.info("Operation %s left pending before it was claimed (%s)", record.id, exc)
            return None
        return claimed

    async def mark_completed(self, record: OperationRecord, target_id: t.Optional[int] = None) -> OperationRecord:
        current = await self._current(record)
        if current is None:
            return await self.get(record.id)
        changes: t.Dict[str, t.Any] = {"status": OperationStatus.COMPLETED, "error_message": None}
        if target_id is not None and current.target_id is None:
            changes["target_id"] = target_id
        completed = await self._save(current, **changes)
        _logger.info("Operation %s (%s) completed", completed.id, completed.operation_type.value)
        return completed

    async def mark_failed_or_retry(self, record: OperationRecord, error: RemoteError) -> OperationRecord:
        current = await self._current(record)
        if current is None:
            return await self.get(record.id)
        now = self._clock.now()
        attempt = current.retry_count + 1
        if error.retryable and attempt < self._max_retries:
            delay = self._backoff.next_delay(attempt, rate_limited=error.kind is ErrorKind.RATE_LIMITED)
            _logger.warning(
                "Operation %s failed (%s), retry %d/%d in %.1fs",
                current.id,
                error,
                attempt,
                self._max_retries,
                delay,
            )
            return await self._save(
                current,
                status=OperationStatus.PENDING,
                retry_count=attempt,
                last_retry_at=now,
                scheduled_for=now + delay,
                error_message=str(error),
            )
        retry_count = min(attempt, self._max_retries) if error.retryable else current.retry_count
        _logger.error(
            "Operation %s (%s) failed permanently after %d attempt(s): %s",
            current.id,
            current.operation_type.value,
            attempt,
            error,
        )
        return await self._save(
            current,
            status=OperationStatus.FAILED,
            retry_count=retry_count,
            last_retry_at=now if error.retryable else current.last_retry_at,
            error_message=str(error),
        )

    async def retry(self, operation_id: str) -> OperationRecord:
        """Operator retry of a failed record; the retry count keeps growing."""
        record = await self.get(operation_id)
        if record.status is not OperationStatus.FAILED:
            raise InvalidStateError(operation_id, record.status, "retry")
        retried = await self._save(record, status=OperationStatus.PENDING, scheduled_for=self._clock.now())
        _logger.info("Operation %s manually re-queued", operation_id)
        return retried

    async def cancel(self, operation_id: str) -> OperationRecord:
        record = await self.get(operation_id)
        if record.status not in ACTIVE_STATUSES:
            raise InvalidStateError(operation_id, record.status, "cancel")
        cancelled = await self._save(record, status=OperationStatus.CANCELLED)
        _logger.info("Operation %s cancelled", operation_id)
        return cancelled

    async def recover_interrupted(self) -> int:
        """Return records stranded in `processing` (e.g. by a crash) to `pending`."""
        stranded = await self._storage.list_by_status(OperationStatus.PROCESSING)
        now = self._clock.now()
        for record in stranded:
            await self._save(record, status=OperationStatus.PENDING, scheduled_for=now)
        if stranded:
            _logger.warning("Recovered %d operation(s) left in processing", len(stranded))
        return len(stranded)

    async def stats_by_status(self) -> t.Dict[str, int]:
        counts = await self._storage.count_by_status()
        stats = {status.value: counts.get(status, 0) for status in OperationStatus}
        stats["total"] = sum(stats.values())
        return stats

    async def pending_for_owner(self, owner_id: int) -> t.List[OperationRecord]:
        records = await self._storage.list_by_owner(owner_id)
        return [r for r in records if r.is_active]

    async def failed_operations(self, limit: int = 50, owner_id: t.Optional[int] = None) -> t.List[OperationRecord]:
        failed = await self._storage.list_by_status(OperationStatus.FAILED)
        if owner_id is not None:
            failed = [r for r in failed if r.owner_id == owner_id]
        return failed[:limit]

    async def purge_old(self, older_than_days: t.Optional[int] = None) -> int:
        days = self._retention_days if older_than_days is None else older_than_days
        cutoff = self._clock.now() - days * SECONDS_PER_DAY
        deleted = await self._storage.delete_terminal_before(cutoff)
        _logger.info("Purged %d completed/cancelled operation(s) older than %d day(s)", deleted, days)
        return deleted
