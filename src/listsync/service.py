from __future__ import annotations

import logging
import random
import typing as t

from .cache.expiring_cache import ExpiringCache
from .core.interfaces import CredentialResolver, MutationExecutor, ReadFetcher
from .core.models import OperationRecord
from .core.orchestrator import ListOrchestrator
from .core.processor import QueueProcessor
from .core.queue import OperationQueue
from .storage import OperationStorage, create_storage
from .utils.clock import Clock, SystemClock
from .utils.config import ListSyncConfig
from .utils.resilience import BackoffPolicy, CircuitBreaker, CircuitBreakerConfig
from .utils.scheduling import PeriodicTask

_logger = logging.getLogger(__name__)


class ListSyncService:
    """Wires cache, queue, processor and orchestrator together from a config.

    Callers use `orchestrator` for reads and mutations; the remaining public
    methods are the operator/monitoring surface.

    Usage:
        async with ListSyncService(executor, fetcher, credentials) as service:
            result = await service.orchestrator.add_item(owner_id=42, target_id=7, item_id=550)
    """

    def __init__(
        self,
        executor: MutationExecutor,
        fetcher: ReadFetcher,
        credentials: CredentialResolver,
        config: t.Optional[ListSyncConfig] = None,
        *,
        storage: t.Optional[OperationStorage] = None,
        clock: t.Optional[Clock] = None,
        rng: t.Optional[random.Random] = None,
    ) -> None:
        self._config = config or ListSyncConfig()
        clock = clock or SystemClock()
        cfg = self._config

        self._cache = ExpiringCache(default_ttl_seconds=cfg.cache.collection_ttl_seconds, clock=clock)
        self._storage = storage or create_storage(cfg.storage)
        backoff = BackoffPolicy(
            base_delay_seconds=cfg.queue.base_delay_seconds,
            rate_limited_base_delay_seconds=cfg.queue.rate_limited_base_delay_seconds,
            max_delay_seconds=cfg.queue.max_delay_seconds,
            jitter_ratio=cfg.queue.jitter_ratio,
            rng=rng or random.Random(),
        )
        self._queue = OperationQueue(
            self._storage,
            backoff,
            max_retries=cfg.queue.max_retries,
            retention_days=cfg.queue.retention_days,
            clock=clock,
        )
        breaker = None
        if cfg.resilience.circuit_breaker_enabled:
            breaker = CircuitBreaker(
                CircuitBreakerConfig(
                    failure_threshold=cfg.resilience.failure_threshold,
                    reset_timeout_seconds=cfg.resilience.reset_timeout_seconds,
                ),
                clock=clock,
            )
        self._orchestrator = ListOrchestrator(
            self._cache,
            self._queue,
            executor,
            fetcher,
            credentials,
            collection_ttl_seconds=cfg.cache.collection_ttl_seconds,
            items_ttl_seconds=cfg.cache.items_ttl_seconds,
            owner_collections_ttl_seconds=cfg.cache.owner_collections_ttl_seconds,
            request_timeout_seconds=cfg.remote.request_timeout_seconds,
            stale_on_read_error=cfg.remote.stale_on_read_error,
            circuit_breaker=breaker,
        )
        self._processor = QueueProcessor(
            self._queue,
            executor,
            credentials,
            self._cache,
            enabled=cfg.processor.enabled,
            interval_seconds=cfg.processor.interval_seconds,
            purge_interval_seconds=cfg.processor.purge_interval_seconds,
            batch_size=cfg.queue.batch_size,
            fan_out=cfg.processor.fan_out,
            attempt_timeout_seconds=cfg.processor.attempt_timeout_seconds,
            clock=clock,
        )
        self._sweeper = PeriodicTask("listsync-cache-sweep", cfg.cache.sweep_interval_seconds, self._sweep)

    @property
    def config(self) -> ListSyncConfig:
        return self._config

    @property
    def cache(self) -> ExpiringCache:
        return self._cache

    @property
    def queue(self) -> OperationQueue:
        return self._queue

    @property
    def orchestrator(self) -> ListOrchestrator:
        return self._orchestrator

    @property
    def processor(self) -> QueueProcessor:
        return self._processor

    async def start(self) -> None:
        await self._processor.start()
        self._sweeper.start()
        _logger.info("List sync service started (storage=%s)", self._config.storage.type)

    async def stop(self) -> None:
        await self._sweeper.stop()
        await self._processor.stop()
        _logger.info("List sync service stopped")

    async def __aenter__(self) -> "ListSyncService":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: t.Any) -> None:
        await self.stop()

    async def _sweep(self) -> int:
        return self._cache.sweep_expired()

    # Operator surface

    async def get_queue_stats(self) -> t.Dict[str, int]:
        return await self._queue.stats_by_status()

    def get_cache_stats(self) -> t.Dict[str, int]:
        return self._cache.stats()

    async def retry_operation(self, operation_id: str) -> OperationRecord:
        return await self._queue.retry(operation_id)

    async def cancel_operation(self, operation_id: str) -> OperationRecord:
        return await self._queue.cancel(operation_id)

    def set_processor_enabled(self, enabled: bool) -> None:
        self._processor.set_enabled(enabled)

    async def process_now(self) -> int:
        return await self._processor.process_now()

    def clear_cache(self) -> None:
        self._cache.clear()

    async def processor_status(self) -> t.Dict[str, t.Any]:
        return await self._processor.status()

    async def is_healthy(self) -> bool:
        return await self._storage.is_healthy()
