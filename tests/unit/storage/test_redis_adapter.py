"""Unit tests for RedisOperationStorage against fakeredis."""

import asyncio
import dataclasses
import json

import pytest

from listsync.core.errors import ErrorKind, InvalidStateError, RemoteError, SignatureConflictError
from listsync.core.models import ItemRef, OperationRecord, OperationStatus, OperationType
from listsync.core.queue import OperationQueue
from listsync.storage.redis_adapter import RedisOperationStorage
from listsync.utils.clock import ManualClock
from listsync.utils.resilience import BackoffPolicy

fakeredis = pytest.importorskip("fakeredis")


def make_record(item_id=550, owner_id=42, **kwargs):
    return OperationRecord(OperationType.ADD_ITEM, owner_id, 7, ItemRef(item_id), **kwargs)


@pytest.fixture
def client():
    return fakeredis.FakeAsyncRedis(decode_responses=True)


@pytest.fixture
def redis_storage(client):
    return RedisOperationStorage(prefix="test", client=client)


@pytest.mark.asyncio
class TestRedisOperationStorage:
    """Test RedisOperationStorage key layout and dedup."""

    async def test_is_healthy(self, redis_storage):
        assert await redis_storage.is_healthy() is True

    async def test_is_healthy_false_when_ping_fails(self):
        class BrokenClient:
            async def ping(self):
                raise ConnectionError("down")

        assert await RedisOperationStorage(client=BrokenClient()).is_healthy() is False

    async def test_insert_writes_record_and_indexes(self, redis_storage, client):
        record = make_record(scheduled_for=100.0)

        await redis_storage.insert(record)

        raw = await client.get(f"test:op:{record.id}")
        assert json.loads(raw)["payload"] == {"item_id": 550}
        assert await client.sismember("test:status:pending", record.id)
        assert await client.sismember("test:owner:42", record.id)
        assert await client.zscore("test:due", record.id) == 100.0
        assert await client.get(f"test:sig:{record.signature}") == record.id
        assert await redis_storage.get(record.id) == record

    async def test_insert_dedups(self, redis_storage):
        first = make_record()
        await redis_storage.insert(first)

        holder = await redis_storage.insert(make_record())

        assert holder.id == first.id
        assert (await redis_storage.count_by_status())[OperationStatus.PENDING] == 1

    async def test_concurrent_inserts(self, redis_storage):
        results = await asyncio.gather(*(redis_storage.insert(make_record()) for _ in range(10)))

        assert len({r.id for r in results}) == 1

    async def test_terminal_update_moves_indexes_and_releases_signature(self, redis_storage, client):
        record = make_record()
        await redis_storage.insert(record)

        await redis_storage.update(dataclasses.replace(record, status=OperationStatus.COMPLETED))

        assert not await client.sismember("test:status:pending", record.id)
        assert await client.sismember("test:status:completed", record.id)
        assert await client.zscore("test:due", record.id) is None
        assert await client.get(f"test:sig:{record.signature}") is None
        assert await redis_storage.find_active(record.signature) is None

    async def test_stale_signature_claim_is_reclaimed(self, redis_storage, client):
        record = make_record()
        await client.set(f"test:sig:{record.signature}", "ghost")

        stored = await redis_storage.insert(record)

        assert stored.id == record.id
        assert await client.get(f"test:sig:{record.signature}") == record.id

    async def test_reactivation_conflict(self, redis_storage):
        record = make_record()
        await redis_storage.insert(record)
        await redis_storage.update(dataclasses.replace(record, status=OperationStatus.FAILED))
        holder = await redis_storage.insert(make_record())

        with pytest.raises(SignatureConflictError):
            await redis_storage.update(dataclasses.replace(record, status=OperationStatus.PENDING))

        assert (await redis_storage.find_active(record.signature)).id == holder.id

    async def test_list_due_orders_by_creation(self, redis_storage):
        first = make_record(item_id=1, created_at=1.0, scheduled_for=300.0)
        second = make_record(item_id=2, created_at=2.0, scheduled_for=100.0)
        await redis_storage.insert(first)
        await redis_storage.insert(second)

        assert [r.id for r in await redis_storage.list_due(200.0, 10)] == [second.id]
        assert [r.id for r in await redis_storage.list_due(400.0, 10)] == [first.id, second.id]

    async def test_list_due_reads_only_limit(self, redis_storage):
        records = [
            make_record(item_id=1, created_at=3.0, scheduled_for=100.0),
            make_record(item_id=2, created_at=2.0, scheduled_for=200.0),
            make_record(item_id=3, created_at=1.0, scheduled_for=300.0),
        ]
        for record in records:
            await redis_storage.insert(record)

        due = await redis_storage.list_due(400.0, 2)

        assert [r.id for r in due] == [records[1].id, records[0].id]

    async def test_conditional_update(self, redis_storage, client):
        record = make_record()
        await redis_storage.insert(record)
        await redis_storage.update(dataclasses.replace(record, status=OperationStatus.CANCELLED))

        with pytest.raises(InvalidStateError):
            await redis_storage.update(
                dataclasses.replace(record, status=OperationStatus.PROCESSING),
                expected_status=OperationStatus.PENDING,
            )

        assert (await redis_storage.get(record.id)).status is OperationStatus.CANCELLED
        assert await client.sismember("test:status:cancelled", record.id)

        claimed = make_record(item_id=2)
        await redis_storage.insert(claimed)
        await redis_storage.update(
            dataclasses.replace(claimed, status=OperationStatus.PROCESSING),
            expected_status=OperationStatus.PENDING,
        )
        assert (await redis_storage.get(claimed.id)).status is OperationStatus.PROCESSING

    async def test_delete_terminal_before(self, redis_storage, client):
        old = make_record(item_id=1, status=OperationStatus.COMPLETED, updated_at=10.0)
        failed = make_record(item_id=2, status=OperationStatus.FAILED, updated_at=10.0)
        await redis_storage.insert(old)
        await redis_storage.insert(failed)

        assert await redis_storage.delete_terminal_before(100.0) == 1

        assert await client.get(f"test:op:{old.id}") is None
        assert not await client.sismember("test:owner:42", old.id)
        assert await redis_storage.get(failed.id) is not None

    async def test_queue_state_machine_on_redis(self, redis_storage):
        clock = ManualClock()
        queue = OperationQueue(redis_storage, BackoffPolicy(jitter_ratio=0.0), max_retries=2, clock=clock)
        record = await queue.enqueue(OperationType.ADD_ITEM, 42, 7, {"item_id": 550})

        retried = await queue.mark_failed_or_retry(
            await queue.mark_processing(record), RemoteError(ErrorKind.TIMEOUT)
        )
        assert retried.status is OperationStatus.PENDING
        clock.advance(30)
        assert [r.id for r in await queue.due_pending()] == [record.id]

        failed = await queue.mark_failed_or_retry(
            await queue.mark_processing(retried), RemoteError(ErrorKind.TIMEOUT)
        )
        assert failed.status is OperationStatus.FAILED
        assert (await queue.stats_by_status())["failed"] == 1

        requeued = await queue.retry(record.id)
        assert requeued.status is OperationStatus.PENDING
        assert (await queue.get(record.id)).retry_count == 2

    async def test_close(self, redis_storage):
        await redis_storage.close()
