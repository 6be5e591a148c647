from __future__ import annotations

from ..utils.config import StorageConfig
from .base import InMemoryOperationStorage, OperationStorage
from .redis_adapter import RedisOperationStorage


def create_storage(config: StorageConfig) -> OperationStorage:
    if config.type == "redis":
        return RedisOperationStorage(config.url, prefix=config.prefix)
    return InMemoryOperationStorage()


__all__ = ["OperationStorage", "InMemoryOperationStorage", "RedisOperationStorage", "create_storage"]
