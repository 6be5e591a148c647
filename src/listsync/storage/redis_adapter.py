from __future__ import annotations

import json
import logging
import typing as t

import redis.asyncio as redis_asyncio
from redis.exceptions import WatchError

from ..core.errors import InvalidStateError, SignatureConflictError
from ..core.models import PURGEABLE_STATUSES, OperationRecord, OperationStatus
from .base import OperationStorage

_logger = logging.getLogger(__name__)


class RedisOperationStorage(OperationStorage):
    """Redis-backed operation storage.

    - Records are JSON strings at `{prefix}:op:{id}`
    - `{prefix}:due` is a sorted set of pending ids scored by `scheduled_for`
    - `{prefix}:created` is a sorted set of all ids scored by `created_at`
    - `{prefix}:status:{status}` and `{prefix}:owner:{owner_id}` are id sets
    - `{prefix}:sig:{signature}` holds the id of the active record for a
      signature; it is claimed with `SET NX` and released on terminal status
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        prefix: str = "listsync",
        client: t.Any = None,
    ) -> None:
        self._prefix = prefix.rstrip(":")
        self._redis = client if client is not None else redis_asyncio.from_url(url, decode_responses=True)

    def _op_key(self, operation_id: str) -> str:
        return f"{self._prefix}:op:{operation_id}"

    def _sig_key(self, signature: str) -> str:
        return f"{self._prefix}:sig:{signature}"

    def _status_key(self, status: OperationStatus) -> str:
        return f"{self._prefix}:status:{status.value}"

    def _owner_key(self, owner_id: int) -> str:
        return f"{self._prefix}:owner:{owner_id}"

    @property
    def _due_key(self) -> str:
        return f"{self._prefix}:due"

    @property
    def _created_key(self) -> str:
        return f"{self._prefix}:created"

    async def _stored_status(self, operation_id: str) -> t.Optional[OperationStatus]:
        current = await self.get(operation_id)
        return current.status if current is not None else None

    async def _write(self, record: OperationRecord, expected_status: t.Optional[OperationStatus] = None) -> None:
        op_key = self._op_key(record.id)
        async with self._redis.pipeline(transaction=True) as pipe:
            if expected_status is not None:
                # the transaction aborts if the record changes after this read
                await pipe.watch(op_key)
                raw = await pipe.get(op_key)
                status = OperationRecord.from_dict(json.loads(raw)).status if raw is not None else None
                if status is not expected_status:
                    raise InvalidStateError(record.id, status, "update")
                pipe.multi()
            pipe.set(op_key, json.dumps(record.to_dict()))
            pipe.zadd(self._created_key, {record.id: record.created_at})
            for status in OperationStatus:
                if status is not record.status:
                    pipe.srem(self._status_key(status), record.id)
            pipe.sadd(self._status_key(record.status), record.id)
            pipe.sadd(self._owner_key(record.owner_id), record.id)
            if record.status is OperationStatus.PENDING:
                pipe.zadd(self._due_key, {record.id: record.scheduled_for})
            else:
                pipe.zrem(self._due_key, record.id)
            try:
                await pipe.execute()
            except WatchError:
                raise InvalidStateError(record.id, await self._stored_status(record.id), "update") from None

    async def _load_many(self, ids: t.Iterable[str]) -> t.List[OperationRecord]:
        ids = list(ids)
        if not ids:
            return []
        raws = await self._redis.mget([self._op_key(i) for i in ids])
        records = [OperationRecord.from_dict(json.loads(raw)) for raw in raws if raw is not None]
        return sorted(records, key=lambda r: r.created_at)

    async def _active_holder(self, signature: str) -> t.Optional[OperationRecord]:
        holder_id = await self._redis.get(self._sig_key(signature))
        if holder_id is None:
            return None
        holder = await self.get(holder_id)
        if holder is None or not holder.is_active:
            return None
        return holder

    async def insert(self, record: OperationRecord) -> OperationRecord:
        if record.is_active:
            sig_key = self._sig_key(record.signature)
            # body goes in before the claim so a competing insert can always load the holder
            await self._redis.set(self._op_key(record.id), json.dumps(record.to_dict()))
            claimed = await self._redis.set(sig_key, record.id, nx=True)
            if not claimed:
                holder = await self._active_holder(record.signature)
                if holder is not None:
                    await self._redis.delete(self._op_key(record.id))
                    return holder
                # claim left behind by a record that is gone or already terminal
                _logger.warning("Reclaiming stale signature key %s", sig_key)
                await self._redis.set(sig_key, record.id)
        await self._write(record)
        return record

    async def get(self, operation_id: str) -> t.Optional[OperationRecord]:
        raw = await self._redis.get(self._op_key(operation_id))
        if raw is None:
            return None
        return OperationRecord.from_dict(json.loads(raw))

    async def update(self, record: OperationRecord, expected_status: t.Optional[OperationStatus] = None) -> None:
        if expected_status is not None:
            status = await self._stored_status(record.id)
            if status is not expected_status:
                raise InvalidStateError(record.id, status, "update")
        sig_key = self._sig_key(record.signature)
        if record.is_active:
            claimed = await self._redis.set(sig_key, record.id, nx=True)
            if not claimed:
                holder_id = await self._redis.get(sig_key)
                if holder_id is not None and holder_id != record.id:
                    holder = await self._active_holder(record.signature)
                    if holder is not None:
                        raise SignatureConflictError(record.id, holder.id)
                    await self._redis.set(sig_key, record.id)
        else:
            holder_id = await self._redis.get(sig_key)
            if holder_id == record.id:
                await self._redis.delete(sig_key)
        await self._write(record, expected_status)

    async def find_active(self, signature: str) -> t.Optional[OperationRecord]:
        return await self._active_holder(signature)

    async def list_due(self, now: float, limit: int) -> t.List[OperationRecord]:
        """Up to `limit` of the earliest-scheduled due records, returned oldest first."""
        ids = await self._redis.zrangebyscore(self._due_key, "-inf", now, start=0, num=limit)
        records = await self._load_many(ids)
        return [r for r in records if r.status is OperationStatus.PENDING]

    async def list_by_owner(self, owner_id: int) -> t.List[OperationRecord]:
        return await self._load_many(await self._redis.smembers(self._owner_key(owner_id)))

    async def list_by_status(self, status: OperationStatus, limit: t.Optional[int] = None) -> t.List[OperationRecord]:
        records = await self._load_many(await self._redis.smembers(self._status_key(status)))
        return records if limit is None else records[:limit]

    async def count_by_status(self) -> t.Dict[OperationStatus, int]:
        async with self._redis.pipeline(transaction=False) as pipe:
            for status in OperationStatus:
                pipe.scard(self._status_key(status))
            counts = await pipe.execute()
        return {status: int(count) for status, count in zip(OperationStatus, counts)}

    async def delete_terminal_before(self, cutoff: float) -> int:
        deleted = 0
        for status in PURGEABLE_STATUSES:
            records = await self._load_many(await self._redis.smembers(self._status_key(status)))
            doomed = [r for r in records if r.updated_at < cutoff]
            if not doomed:
                continue
            async with self._redis.pipeline(transaction=True) as pipe:
                for record in doomed:
                    pipe.delete(self._op_key(record.id))
                    pipe.srem(self._status_key(status), record.id)
                    pipe.srem(self._owner_key(record.owner_id), record.id)
                    pipe.zrem(self._created_key, record.id)
                    pipe.zrem(self._due_key, record.id)
                await pipe.execute()
            deleted += len(doomed)
        return deleted

    async def is_healthy(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except Exception:  # noqa: BLE001 - health probe reports, never raises
            return False

    async def close(self) -> None:
        await self._redis.aclose()
