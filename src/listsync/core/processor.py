from __future__ import annotations

import asyncio
import logging
import time
import typing as t

from listsync.cache.expiring_cache import ExpiringCache
from listsync.monitoring.metrics import Counter, remote_call_latency_seconds
from listsync.utils.clock import Clock, SystemClock
from listsync.utils.scheduling import PeriodicTask

from .errors import ErrorKind, RemoteError, classify_exception
from .interfaces import CredentialResolver, MutationExecutor
from .models import OperationRecord, OperationStatus, OperationType, cache_keys_for
from .queue import OperationQueue
from .results import Failure, Success

_logger = logging.getLogger(__name__)


def remote_id_from(value: t.Any) -> t.Optional[int]:
    """Extract the remote collection id from a create_collection result."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, t.Mapping):
        for key in ("id", "list_id"):
            candidate = value.get(key)
            if isinstance(candidate, int) and not isinstance(candidate, bool):
                return candidate
    return None


class QueueProcessor:
    """Drains due operations from the queue on a fixed interval.

    Each tick takes a batch of due records (oldest first) and runs them with
    at most `fan_out` remote calls in flight. Every outcome is written back to
    the record; nothing raised by a collaborator escapes a tick.
    """

    def __init__(
        self,
        queue: OperationQueue,
        executor: MutationExecutor,
        credentials: CredentialResolver,
        cache: t.Optional[ExpiringCache] = None,
        *,
        enabled: bool = True,
        interval_seconds: float = 60.0,
        purge_interval_seconds: float = 86400.0,
        batch_size: int = 50,
        fan_out: int = 4,
        attempt_timeout_seconds: float = 10.0,
        clock: t.Optional[Clock] = None,
    ) -> None:
        self._queue = queue
        self._executor = executor
        self._credentials = credentials
        self._cache = cache
        self._enabled = enabled
        self._batch_size = batch_size
        self._fan_out = fan_out
        self._attempt_timeout = attempt_timeout_seconds
        self._clock = clock or SystemClock()
        self._tick_lock = asyncio.Lock()
        self._stopping = False
        self._ticker = PeriodicTask("listsync-queue-processor", interval_seconds, self.tick)
        self._purger = PeriodicTask("listsync-queue-purge", purge_interval_seconds, self.purge)
        self._counters = Counter("listsync_processor_total", "Processor ticks and record outcomes")
        self._last_processed_at: t.Optional[float] = None
        self._last_purged_at: t.Optional[float] = None

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def running(self) -> bool:
        return self._ticker.running

    def set_enabled(self, enabled: bool) -> None:
        if enabled != self._enabled:
            _logger.info("Queue processor enabled: %s", enabled)
        self._enabled = enabled

    async def start(self) -> None:
        self._stopping = False
        await self._queue.recover_interrupted()
        self._ticker.start()
        self._purger.start()
        _logger.info("Queue processor started (enabled: %s)", self._enabled)

    async def stop(self) -> None:
        # records not yet started in the current tick stay pending
        self._stopping = True
        await self._ticker.stop()
        await self._purger.stop()
        _logger.info("Queue processor stopped")

    async def tick(self) -> int:
        """Scheduled run; does nothing while disabled."""
        if not self._enabled:
            return 0
        return await self.process_now()

    async def process_now(self) -> int:
        """Process one batch of due records regardless of the timer. Returns the number attempted."""
        async with self._tick_lock:
            started = time.monotonic()
            self._counters.inc(event="tick")
            try:
                records = await self._queue.due_pending(self._batch_size)
                _logger.debug("Processing %d due operation(s)", len(records))
                semaphore = asyncio.Semaphore(self._fan_out)

                async def run(record: OperationRecord) -> bool:
                    async with semaphore:
                        if self._stopping:
                            return False
                        return await self.process_record(record) is not None

                outcomes = await asyncio.gather(*(run(r) for r in records), return_exceptions=True)
            except Exception:  # noqa: BLE001 - a broken tick must not kill the loop
                self._counters.inc(event="tick_failed")
                _logger.exception("Queue processing tick failed")
                return 0
            finally:
                self._last_processed_at = self._clock.now()
            attempted = 0
            for record, outcome in zip(records, outcomes):
                if isinstance(outcome, BaseException):
                    # the remote call ran; the record stays processing until recover_interrupted
                    self._counters.inc(event="write_failed")
                    _logger.error("Could not store the outcome of operation %s", record.id, exc_info=outcome)
                    attempted += 1
                elif outcome:
                    attempted += 1
            _logger.debug("Queue tick finished in %.1fms", (time.monotonic() - started) * 1000)
            return attempted

    async def process_record(self, record: OperationRecord) -> t.Optional[OperationRecord]:
        """Run one due record and store its outcome; None when it was no longer pending."""
        _logger.info("Processing operation %s (%s)", record.id, record.operation_type.value)
        processing = record
        try:
            claimed = await self._queue.mark_processing(record)
            if claimed is None:
                self._counters.inc(event="skipped")
                return None
            processing = claimed
            result = await self._attempt(processing)
        except Exception as exc:  # noqa: BLE001 - converted to a classified failure
            _logger.exception("Unexpected error while processing operation %s", record.id)
            result = Failure(classify_exception(exc))

        if isinstance(result, Success):
            return await self._complete(processing, result.value)
        error = result.error
        if error.kind is ErrorKind.DUPLICATE_ITEM and processing.operation_type is OperationType.ADD_ITEM:
            _logger.info("Item already present for operation %s; treating as completed", processing.id)
            return await self._complete(processing, None)
        if error.kind is ErrorKind.UNKNOWN:
            _logger.error("Unclassified failure for operation %s: %s", processing.id, error)
        updated = await self._queue.mark_failed_or_retry(processing, error)
        if updated.status is OperationStatus.PENDING:
            self._counters.inc(event="retried")
        elif updated.status is OperationStatus.FAILED:
            self._counters.inc(event="failed")
        return updated

    async def _attempt(self, record: OperationRecord) -> t.Union[Success, Failure]:
        credential = await self._credentials.resolve(record.owner_id)
        if isinstance(credential, Failure):
            return Failure(RemoteError(ErrorKind.UNAUTHORIZED, credential.error.message or "no_valid_session"))
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self._executor.execute(
                    record.operation_type,
                    record.owner_id,
                    record.target_id,
                    record.payload,
                    credential.value,
                ),
                timeout=self._attempt_timeout,
            )
        except Exception as exc:  # noqa: BLE001 - executor should not raise; classify if it does
            result = Failure(classify_exception(exc))
        remote_call_latency_seconds.observe(
            time.monotonic() - started, operation=record.operation_type.value, source="processor"
        )
        return result

    async def _complete(self, record: OperationRecord, value: t.Any) -> OperationRecord:
        target_id = None
        if record.operation_type is OperationType.CREATE_COLLECTION:
            target_id = remote_id_from(value)
        completed = await self._queue.mark_completed(record, target_id=target_id)
        if completed.status is OperationStatus.COMPLETED:
            self._counters.inc(event="completed")
            if self._cache is not None:
                for key in cache_keys_for(
                    completed.operation_type, completed.owner_id, completed.target_id, completed.local_ref
                ):
                    self._cache.invalidate(key)
        return completed

    async def purge(self) -> int:
        if not self._enabled:
            return 0
        try:
            deleted = await self._queue.purge_old()
        except Exception:  # noqa: BLE001
            _logger.exception("Operation purge failed")
            return 0
        self._last_purged_at = self._clock.now()
        return deleted

    async def status(self) -> t.Dict[str, t.Any]:
        return {
            "enabled": self._enabled,
            "running": self.running,
            "last_processed_at": self._last_processed_at,
            "last_purged_at": self._last_purged_at,
            "ticks": int(self._counters.get(event="tick")),
            "ticks_failed": int(self._counters.get(event="tick_failed")),
            "records_completed": int(self._counters.get(event="completed")),
            "records_failed": int(self._counters.get(event="failed")),
            "records_retried": int(self._counters.get(event="retried")),
            "records_skipped": int(self._counters.get(event="skipped")),
            "records_write_failed": int(self._counters.get(event="write_failed")),
            "queue_stats": await self._queue.stats_by_status(),
        }
