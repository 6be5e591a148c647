from __future__ import annotations

import asyncio
import contextlib
import copy
import logging
import time
import typing as t
import uuid
import weakref

from listsync.cache.expiring_cache import CacheEntry, CacheLookup, ExpiringCache, LookupStatus
from listsync.cache.keys import CacheKey, collection_key, items_key, owner_collections_key
from listsync.monitoring.metrics import remote_call_latency_seconds, remote_call_total
from listsync.utils.resilience import CircuitBreaker

from .errors import ErrorKind, RemoteError, RemoteOperationError, classify_exception
from .interfaces import CredentialResolver, MutationExecutor, ReadFetcher
from .models import (
    CollectionChanges,
    ItemRef,
    NewCollection,
    NoPayload,
    OperationType,
    Payload,
    build_payload,
    cache_keys_for,
    dedup_signature,
)
from .processor import remote_id_from
from .queue import OperationQueue
from .results import Failure, MutationResult, RemoteResult, Success

_logger = logging.getLogger(__name__)

LOCAL_REF_PREFIX = "local:"


def _item_id(item: t.Any) -> t.Any:
    return item.get("id") if isinstance(item, t.Mapping) else item


class ListOrchestrator:
    """Entry point for every collection read and mutation.

    Mutations are applied to the cache first, then sent to the remote API:

    - success: the affected cache keys are invalidated so the next read
      fetches authoritative data (item counts, timestamps);
    - non-retryable failure: the cache is rolled back and a failed result is
      returned;
    - retryable failure: the cache is rolled back, the mutation is queued and
      a deferred result is returned.

    Mutations that touch the same cache keys run one at a time, so each one
    snapshots only confirmed data. An identical mutation arriving while the
    first is still in flight shares the first one's result instead of calling
    the remote API again.

    Cached collections are mappings carrying "id", "name", "description",
    "is_public", "item_count" and optionally "items"; items are mappings
    with an "id".
    """

    def __init__(
        self,
        cache: ExpiringCache,
        queue: OperationQueue,
        executor: MutationExecutor,
        fetcher: ReadFetcher,
        credentials: CredentialResolver,
        *,
        collection_ttl_seconds: float = 3600,
        items_ttl_seconds: float = 900,
        owner_collections_ttl_seconds: float = 7200,
        request_timeout_seconds: float = 8,
        stale_on_read_error: bool = False,
        circuit_breaker: t.Optional[CircuitBreaker] = None,
    ) -> None:
        self._cache = cache
        self._queue = queue
        self._executor = executor
        self._fetcher = fetcher
        self._credentials = credentials
        self._collection_ttl = collection_ttl_seconds
        self._items_ttl = items_ttl_seconds
        self._owner_ttl = owner_collections_ttl_seconds
        self._timeout = request_timeout_seconds
        self._stale_on_read_error = stale_on_read_error
        self._breaker = circuit_breaker
        self._key_locks: "weakref.WeakValueDictionary[CacheKey, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._in_flight: t.Dict[str, "asyncio.Task[MutationResult]"] = {}

    # Mutations

    async def create_collection(
        self, owner_id: int, attrs: t.Union[NewCollection, t.Mapping[str, t.Any]]
    ) -> MutationResult:
        payload = build_payload(OperationType.CREATE_COLLECTION, attrs)
        local_ref = f"{LOCAL_REF_PREFIX}{uuid.uuid4().hex}"

        def apply() -> None:
            record = {
                "id": local_ref,
                "item_count": 0,
                "items": [],
                **payload.to_dict(),
            }
            self._cache.put(collection_key(local_ref), record, self._collection_ttl)
            self._update_listing(owner_id, lambda listing: listing + [dict(record)])

        return await self._mutate(
            OperationType.CREATE_COLLECTION,
            owner_id,
            None,
            payload,
            apply,
            [collection_key(local_ref), owner_collections_key(owner_id)],
            local_ref=local_ref,
        )

    async def update_collection(
        self,
        owner_id: int,
        target_id: int,
        changes: t.Union[CollectionChanges, t.Mapping[str, t.Any]],
    ) -> MutationResult:
        payload = t.cast(CollectionChanges, build_payload(OperationType.UPDATE_COLLECTION, changes))
        fields = payload.to_dict()

        def apply() -> None:
            self._update_value(collection_key(target_id), lambda record: {**record, **fields})
            self._update_listing(
                owner_id,
                lambda listing: [{**c, **fields} if _item_id(c) == target_id else c for c in listing],
            )

        return await self._mutate(
            OperationType.UPDATE_COLLECTION,
            owner_id,
            target_id,
            payload,
            apply,
            [collection_key(target_id), owner_collections_key(owner_id)],
        )

    async def delete_collection(self, owner_id: int, target_id: int) -> MutationResult:
        def apply() -> None:
            self._cache.restore(collection_key(target_id), None)
            self._cache.restore(items_key(target_id), None)
            self._update_listing(owner_id, lambda listing: [c for c in listing if _item_id(c) != target_id])

        return await self._mutate(
            OperationType.DELETE_COLLECTION,
            owner_id,
            target_id,
            NoPayload(),
            apply,
            [collection_key(target_id), items_key(target_id), owner_collections_key(owner_id)],
        )

    async def clear_collection(self, owner_id: int, target_id: int) -> MutationResult:
        def apply() -> None:
            self._update_value(items_key(target_id), lambda items: [])
            self._update_value(collection_key(target_id), self._cleared_record)

        return await self._mutate(
            OperationType.CLEAR_COLLECTION,
            owner_id,
            target_id,
            NoPayload(),
            apply,
            [collection_key(target_id), items_key(target_id)],
        )

    async def add_item(
        self,
        owner_id: int,
        target_id: int,
        item_id: int,
        item: t.Optional[t.Mapping[str, t.Any]] = None,
    ) -> MutationResult:
        payload = t.cast(ItemRef, build_payload(OperationType.ADD_ITEM, {"item_id": item_id}))
        entry = dict(item) if item is not None else {}
        entry["id"] = payload.item_id

        def precheck() -> t.Optional[MutationResult]:
            cached_items = self._cache.snapshot(items_key(target_id))
            if cached_items is not None and any(_item_id(i) == payload.item_id for i in cached_items.value):
                _logger.info("Item %s already in collection %s", payload.item_id, target_id)
                return MutationResult.failure(RemoteError(ErrorKind.DUPLICATE_ITEM, "item already in collection"))
            return None

        def apply() -> None:
            self._update_value(items_key(target_id), lambda items: [entry] + list(items))
            self._update_value(collection_key(target_id), lambda record: self._shift_count(record, 1))

        return await self._mutate(
            OperationType.ADD_ITEM,
            owner_id,
            target_id,
            payload,
            apply,
            [collection_key(target_id), items_key(target_id)],
            precheck=precheck,
        )

    async def remove_item(self, owner_id: int, target_id: int, item_id: int) -> MutationResult:
        payload = t.cast(ItemRef, build_payload(OperationType.REMOVE_ITEM, {"item_id": item_id}))

        def apply() -> None:
            cached = self._cache.snapshot(items_key(target_id))
            if cached is None:
                return
            remaining = [i for i in cached.value if _item_id(i) != payload.item_id]
            if len(remaining) == len(cached.value):
                return
            self._update_value(items_key(target_id), lambda items: remaining)
            self._update_value(collection_key(target_id), lambda record: self._shift_count(record, -1))

        return await self._mutate(
            OperationType.REMOVE_ITEM,
            owner_id,
            target_id,
            payload,
            apply,
            [collection_key(target_id), items_key(target_id)],
        )

    async def _mutate(
        self,
        operation_type: OperationType,
        owner_id: int,
        target_id: t.Optional[int],
        payload: Payload,
        apply: t.Callable[[], None],
        touched_keys: t.List[CacheKey],
        *,
        local_ref: t.Optional[str] = None,
        precheck: t.Optional[t.Callable[[], t.Optional[MutationResult]]] = None,
    ) -> MutationResult:
        signature = dedup_signature(operation_type, owner_id, target_id, payload)
        leader = self._in_flight.get(signature)
        if leader is not None:
            _logger.info("%s already in flight for owner %s; sharing its result", operation_type.value, owner_id)
            return await asyncio.shield(leader)

        task = asyncio.ensure_future(
            self._mutate_serialized(
                operation_type, owner_id, target_id, payload, apply, touched_keys, local_ref, precheck
            )
        )
        self._in_flight[signature] = task

        def release(done: "asyncio.Task[MutationResult]") -> None:
            if self._in_flight.get(signature) is done:
                del self._in_flight[signature]

        task.add_done_callback(release)
        # a cancelled caller does not cancel the mutation others may be sharing
        return await asyncio.shield(task)

    async def _mutate_serialized(
        self,
        operation_type: OperationType,
        owner_id: int,
        target_id: t.Optional[int],
        payload: Payload,
        apply: t.Callable[[], None],
        touched_keys: t.List[CacheKey],
        local_ref: t.Optional[str],
        precheck: t.Optional[t.Callable[[], t.Optional[MutationResult]]],
    ) -> MutationResult:
        async with contextlib.AsyncExitStack() as stack:
            # fixed acquisition order so overlapping key sets cannot deadlock
            for key in sorted(set(touched_keys), key=repr):
                await stack.enter_async_context(self._lock_for(key))

            existing = await self._queue.find_active(operation_type, owner_id, target_id, payload)
            if existing is not None:
                _logger.info(
                    "%s already queued as operation %s; not calling remote again", operation_type.value, existing.id
                )
                return MutationResult.pending(existing)

            if precheck is not None:
                rejected = precheck()
                if rejected is not None:
                    return rejected

            return await self._apply_and_send(
                operation_type, owner_id, target_id, payload, apply, touched_keys, local_ref
            )

    async def _apply_and_send(
        self,
        operation_type: OperationType,
        owner_id: int,
        target_id: t.Optional[int],
        payload: Payload,
        apply: t.Callable[[], None],
        touched_keys: t.List[CacheKey],
        local_ref: t.Optional[str],
    ) -> MutationResult:
        credential = await self._credentials.resolve(owner_id)
        if isinstance(credential, Failure):
            _logger.warning("No valid session for owner %s (%s)", owner_id, operation_type.value)
            return MutationResult.failure(RemoteError(ErrorKind.UNAUTHORIZED, credential.error.message))

        snapshot: t.Dict[CacheKey, t.Optional[CacheEntry]] = {key: self._cache.snapshot(key) for key in touched_keys}
        apply()
        written = {key: self._cache.snapshot(key) for key in touched_keys}

        result = await self._guarded(
            operation_type.value,
            lambda: self._executor.execute(operation_type, owner_id, target_id, payload, credential.value),
        )

        if isinstance(result, Success):
            remote_target = target_id
            if operation_type is OperationType.CREATE_COLLECTION:
                remote_target = remote_id_from(result.value)
            for key in cache_keys_for(operation_type, owner_id, remote_target, local_ref):
                self._cache.invalidate(key)
            _logger.info("%s succeeded (owner=%s target=%s)", operation_type.value, owner_id, remote_target)
            return MutationResult.success(result.value)

        error = result.error
        self._rollback(snapshot, written)
        if not error.retryable:
            _logger.warning(
                "%s rejected by remote (owner=%s target=%s): %s", operation_type.value, owner_id, target_id, error
            )
            return MutationResult.failure(error)

        if error.kind is ErrorKind.UNKNOWN:
            _logger.error("Unclassified failure during %s: %s", operation_type.value, error)
        try:
            record = await self._queue.enqueue(operation_type, owner_id, target_id, payload, local_ref=local_ref)
        except Exception:  # noqa: BLE001 - queue storage down: report as a failure, nothing was applied
            _logger.exception("Failed to queue %s for owner %s", operation_type.value, owner_id)
            return MutationResult.failure(RemoteError(ErrorKind.UNKNOWN, "queue unavailable"))
        _logger.warning("%s deferred as operation %s: %s", operation_type.value, record.id, error)
        return MutationResult.pending(record)

    # Reads

    async def get_collection(self, owner_id: int, target_id: int) -> t.Any:
        lookup = self._cache.get(collection_key(target_id))
        if lookup.hit:
            return lookup.value
        data, fresh = await self._read(
            "fetch_collection",
            owner_id,
            lambda credential: self._fetcher.fetch_collection(target_id, credential),
            lookup,
        )
        if fresh:
            self._store_collection(target_id, data)
        return data

    async def get_items(self, owner_id: int, target_id: int) -> t.List[t.Any]:
        lookup = self._cache.get(items_key(target_id))
        if lookup.hit:
            return lookup.value
        data, fresh = await self._read(
            "fetch_collection",
            owner_id,
            lambda credential: self._fetcher.fetch_collection(target_id, credential),
            lookup,
        )
        if not fresh:
            return data
        self._store_collection(target_id, data)
        return list(data.get("items") or []) if isinstance(data, t.Mapping) else []

    async def get_owner_collections(self, owner_id: int) -> t.List[t.Any]:
        key = owner_collections_key(owner_id)
        lookup = self._cache.get(key)
        if lookup.hit:
            return lookup.value
        collections, fresh = await self._read(
            "fetch_owner_collections",
            owner_id,
            lambda credential: self._fetcher.fetch_owner_collections(owner_id, credential),
            lookup,
        )
        if fresh:
            self._cache.put(key, collections, self._owner_ttl)
        return collections

    async def contains_item(self, owner_id: int, target_id: int, item_id: int) -> bool:
        items = await self.get_items(owner_id, target_id)
        return any(_item_id(i) == item_id for i in items)

    async def collection_stats(self, owner_id: int, target_id: int) -> t.Dict[str, t.Any]:
        """Headline figures of one collection, read through `get_collection`."""
        collection = await self.get_collection(owner_id, target_id)
        stats = {
            "item_count": collection.get("item_count", 0),
            "created_at": collection.get("created_at"),
            "updated_at": collection.get("updated_at"),
            "is_public": collection.get("is_public", False),
            "name": collection.get("name"),
            "description": collection.get("description", ""),
        }
        _logger.debug("Collection %s holds %s item(s)", target_id, stats["item_count"])
        return stats

    async def owner_collections_summary(self, owner_id: int) -> t.Dict[str, t.Any]:
        collections = await self.get_owner_collections(owner_id)
        public = sum(1 for c in collections if c.get("is_public"))
        largest = max(collections, key=lambda c: c.get("item_count", 0), default=None)
        return {
            "total_collections": len(collections),
            "total_items": sum(c.get("item_count", 0) for c in collections),
            "public_collections": public,
            "private_collections": len(collections) - public,
            "largest_collection": (
                {"id": largest.get("id"), "name": largest.get("name"), "item_count": largest.get("item_count", 0)}
                if largest is not None
                else None
            ),
        }

    async def owner_sync_status(self, owner_id: int) -> t.Dict[str, t.Any]:
        active = await self._queue.pending_for_owner(owner_id)
        failed = await self._queue.failed_operations(owner_id=owner_id)
        touched = [r.updated_at for r in active + failed]
        return {
            "pending_operations": len(active),
            "failed_operations": len(failed),
            "last_sync_attempt": max(touched) if touched else None,
        }

    async def _read(
        self,
        label: str,
        owner_id: int,
        fetch: t.Callable[[t.Any], t.Awaitable[RemoteResult]],
        lookup: CacheLookup,
    ) -> t.Tuple[t.Any, bool]:
        """Fetch from remote; returns (value, fresh). Stale values come back with fresh=False."""
        credential = await self._credentials.resolve(owner_id)
        if isinstance(credential, Failure):
            raise RemoteOperationError(RemoteError(ErrorKind.UNAUTHORIZED, credential.error.message))
        result = await self._guarded(label, lambda: fetch(credential.value))
        if isinstance(result, Success):
            return result.value, True
        if self._stale_on_read_error and lookup.status is LookupStatus.EXPIRED:
            _logger.warning("%s failed (%s); serving stale cached value", label, result.error)
            return lookup.value, False
        raise RemoteOperationError(result.error)

    # Remote calls

    async def _guarded(self, label: str, call: t.Callable[[], t.Awaitable[RemoteResult]]) -> RemoteResult:
        """Run a remote call with the request timeout and circuit breaker; never raises."""

        async def bounded() -> RemoteResult:
            return await asyncio.wait_for(call(), timeout=self._timeout)

        started = time.monotonic()
        try:
            if self._breaker is not None:
                result = await self._breaker.run(
                    bounded, is_failure=lambda r: isinstance(r, Failure) and r.error.retryable
                )
            else:
                result = await bounded()
        except Exception as exc:  # noqa: BLE001 - every failure becomes a classified result
            result = Failure(classify_exception(exc))
        remote_call_latency_seconds.observe(time.monotonic() - started, operation=label, source="caller")
        outcome = "success" if isinstance(result, Success) else result.error.kind.value
        remote_call_total.inc(operation=label, outcome=outcome)
        return result

    # Cache helpers

    def _rollback(
        self,
        snapshot: t.Dict[CacheKey, t.Optional[CacheEntry]],
        written: t.Dict[CacheKey, t.Optional[CacheEntry]],
    ) -> None:
        """Restore keys still holding this mutation's optimistic value; drop keys rewritten since."""
        for key, entry in snapshot.items():
            if self._cache.snapshot(key) is written[key]:
                self._cache.restore(key, entry)
            else:
                _logger.debug("Cache key %s changed during the call; invalidating instead of restoring", key)
                self._cache.invalidate(key)
        _logger.debug("Rolled back %d cache key(s)", len(snapshot))

    def _lock_for(self, key: CacheKey) -> asyncio.Lock:
        lock = self._key_locks.get(key)
        if lock is None:
            lock = self._key_locks[key] = asyncio.Lock()
        return lock

    def _update_value(self, key: CacheKey, change: t.Callable[[t.Any], t.Any]) -> None:
        """Apply `change` to a copy of the cached value, keeping its expiry."""
        entry = self._cache.snapshot(key)
        if entry is None:
            return
        self._cache.restore(key, CacheEntry(change(copy.deepcopy(entry.value)), entry.expires_at))

    def _update_listing(self, owner_id: int, change: t.Callable[[t.List[t.Any]], t.List[t.Any]]) -> None:
        self._update_value(owner_collections_key(owner_id), lambda listing: change(list(listing)))

    def _store_collection(self, target_id: int, data: t.Any) -> None:
        self._cache.put(collection_key(target_id), data, self._collection_ttl)
        if isinstance(data, t.Mapping) and "items" in data:
            self._cache.put(items_key(target_id), list(data["items"] or []), self._items_ttl)

    @staticmethod
    def _shift_count(record: t.Any, delta: int) -> t.Any:
        if isinstance(record, dict):
            record["item_count"] = max(int(record.get("item_count", 0)) + delta, 0)
        return record

    @staticmethod
    def _cleared_record(record: t.Any) -> t.Any:
        if isinstance(record, dict):
            record["item_count"] = 0
            if "items" in record:
                record["items"] = []
        return record
