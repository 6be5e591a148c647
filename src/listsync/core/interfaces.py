from __future__ import annotations

import typing as t
from abc import ABC, abstractmethod

from .models import OperationType, Payload
from .results import RemoteResult


class MutationExecutor(ABC):
    """Performs one mutation against the remote list API.

    Implementations return `Failure` with a classified `RemoteError` rather
    than raising transport exceptions. For create_collection a `Success`
    value is the new remote id, or a mapping carrying it under "id".
    """

    @abstractmethod
    async def execute(
        self,
        operation_type: OperationType,
        owner_id: int,
        target_id: t.Optional[int],
        payload: Payload,
        credential: t.Any,
    ) -> RemoteResult:  # pragma: no cover - interface
        raise NotImplementedError


class ReadFetcher(ABC):
    @abstractmethod
    async def fetch_collection(self, target_id: int, credential: t.Any) -> RemoteResult:  # pragma: no cover - interface
        """Success value: a mapping describing the collection, with its items under "items"."""
        raise NotImplementedError

    @abstractmethod
    async def fetch_owner_collections(self, owner_id: int, credential: t.Any) -> RemoteResult:  # pragma: no cover - interface
        raise NotImplementedError


class CredentialResolver(ABC):
    @abstractmethod
    async def resolve(self, owner_id: int) -> RemoteResult:  # pragma: no cover - interface
        """Success(credential), or Failure when the owner has no valid session."""
        raise NotImplementedError
