from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, Dict


@dataclass
class CacheConfig:
    collection_ttl_seconds: float = 3600
    items_ttl_seconds: float = 900
    owner_collections_ttl_seconds: float = 7200
    sweep_interval_seconds: float = 300

    def __post_init__(self) -> None:
        for name in (
            "collection_ttl_seconds",
            "items_ttl_seconds",
            "owner_collections_ttl_seconds",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be > 0")


@dataclass
class QueueConfig:
    max_retries: int = 5
    base_delay_seconds: float = 30
    rate_limited_base_delay_seconds: float = 120
    max_delay_seconds: float = 3600
    jitter_ratio: float = 0.25
    retention_days: int = 30
    batch_size: int = 50

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if not 0 <= self.jitter_ratio <= 1:
            raise ValueError("jitter_ratio must be within [0, 1]")
        if self.base_delay_seconds < 0 or self.rate_limited_base_delay_seconds < 0:
            raise ValueError("base delays must be >= 0")
        if self.max_delay_seconds < 0:
            raise ValueError("max_delay_seconds must be >= 0")
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")


@dataclass
class ProcessorConfig:
    enabled: bool = True
    interval_seconds: float = 60
    purge_interval_seconds: float = 86400
    fan_out: int = 4
    attempt_timeout_seconds: float = 10

    def __post_init__(self) -> None:
        if self.fan_out < 1:
            raise ValueError("fan_out must be >= 1")
        if self.interval_seconds <= 0 or self.purge_interval_seconds <= 0:
            raise ValueError("processor intervals must be > 0")


@dataclass
class RemoteConfig:
    request_timeout_seconds: float = 8
    stale_on_read_error: bool = False


@dataclass
class ResilienceConfig:
    circuit_breaker_enabled: bool = True
    failure_threshold: int = 5
    reset_timeout_seconds: float = 30.0


@dataclass
class StorageConfig:
    type: str = "memory"  # memory | redis
    url: str = "redis://localhost:6379/0"
    prefix: str = "listsync"

    def __post_init__(self) -> None:
        if self.type not in ("memory", "redis"):
            raise ValueError(f"unsupported storage type: {self.type}")


@dataclass
class ListSyncConfig:
    cache: CacheConfig = dataclasses.field(default_factory=CacheConfig)
    queue: QueueConfig = dataclasses.field(default_factory=QueueConfig)
    processor: ProcessorConfig = dataclasses.field(default_factory=ProcessorConfig)
    remote: RemoteConfig = dataclasses.field(default_factory=RemoteConfig)
    resilience: ResilienceConfig = dataclasses.field(default_factory=ResilienceConfig)
    storage: StorageConfig = dataclasses.field(default_factory=StorageConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ListSyncConfig":
        def build(dc_cls, key):
            values = data.get(key, {})
            return dc_cls(**values)

        return cls(
            cache=build(CacheConfig, "cache"),
            queue=build(QueueConfig, "queue"),
            processor=build(ProcessorConfig, "processor"),
            remote=build(RemoteConfig, "remote"),
            resilience=build(ResilienceConfig, "resilience"),
            storage=build(StorageConfig, "storage"),
        )
