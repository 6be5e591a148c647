"""Shared fixtures and fakes for unit tests."""

from __future__ import annotations

import asyncio
import copy
import typing as t
from collections import deque

import pytest

from listsync.cache.expiring_cache import ExpiringCache
from listsync.core.errors import ErrorKind, RemoteError
from listsync.core.interfaces import CredentialResolver, MutationExecutor, ReadFetcher
from listsync.core.models import OperationType, Payload
from listsync.core.orchestrator import ListOrchestrator
from listsync.core.processor import QueueProcessor
from listsync.core.queue import OperationQueue
from listsync.core.results import Failure, RemoteResult, Success
from listsync.storage.base import InMemoryOperationStorage
from listsync.utils.clock import ManualClock
from listsync.utils.resilience import BackoffPolicy


class FakeExecutor(MutationExecutor):
    """Records every call and replays scripted results (or raises scripted exceptions)."""

    def __init__(self, default: t.Any = None) -> None:
        self.calls: t.List[t.Tuple[OperationType, int, t.Optional[int], Payload, t.Any]] = []
        self.results: t.Deque[t.Any] = deque()
        self.default = default if default is not None else Success({"ok": True})
        self.gate: t.Optional[asyncio.Event] = None
        self.in_flight = 0
        self.max_in_flight = 0

    def script(self, *results: t.Any) -> None:
        self.results.extend(results)

    async def execute(self, operation_type, owner_id, target_id, payload, credential) -> RemoteResult:
        self.calls.append((operation_type, owner_id, target_id, payload, credential))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            result = self.results.popleft() if self.results else self.default
            if isinstance(result, BaseException):
                raise result
            return result
        finally:
            self.in_flight -= 1


class FakeFetcher(ReadFetcher):
    """Serves collections from dicts; `failure` forces every fetch to fail."""

    def __init__(self) -> None:
        self.collections: t.Dict[int, t.Dict[str, t.Any]] = {}
        self.owner_collections: t.Dict[int, t.List[t.Dict[str, t.Any]]] = {}
        self.failure: t.Optional[Failure] = None
        self.calls: t.List[t.Tuple[str, int]] = []

    async def fetch_collection(self, target_id, credential) -> RemoteResult:
        self.calls.append(("collection", target_id))
        if self.failure is not None:
            return self.failure
        if target_id not in self.collections:
            return Failure(RemoteError(ErrorKind.NOT_FOUND, f"collection {target_id}"))
        return Success(copy.deepcopy(self.collections[target_id]))

    async def fetch_owner_collections(self, owner_id, credential) -> RemoteResult:
        self.calls.append(("owner_collections", owner_id))
        if self.failure is not None:
            return self.failure
        return Success(copy.deepcopy(self.owner_collections.get(owner_id, [])))


class FakeCredentials(CredentialResolver):
    def __init__(self) -> None:
        self.revoked: t.Set[int] = set()

    async def resolve(self, owner_id) -> RemoteResult:
        if owner_id in self.revoked:
            return Failure(RemoteError(ErrorKind.UNAUTHORIZED, "no_valid_session"))
        return Success(f"token-{owner_id}")


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def storage():
    return InMemoryOperationStorage()


@pytest.fixture
def backoff():
    """Backoff without jitter so scheduled times are exact."""
    return BackoffPolicy(jitter_ratio=0.0)


@pytest.fixture
def queue(storage, backoff, clock):
    return OperationQueue(storage, backoff, max_retries=5, retention_days=30, clock=clock)


@pytest.fixture
def cache(clock):
    return ExpiringCache(default_ttl_seconds=3600, clock=clock)


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def credentials():
    return FakeCredentials()


@pytest.fixture
def orchestrator(cache, queue, executor, fetcher, credentials):
    return ListOrchestrator(cache, queue, executor, fetcher, credentials)


@pytest.fixture
def processor(queue, executor, credentials, cache, clock):
    return QueueProcessor(queue, executor, credentials, cache, clock=clock)
