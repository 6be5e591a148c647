"""Configuration, clocks, scheduling and resilience helpers."""

from .clock import Clock, ManualClock, SystemClock
from .config import (
    CacheConfig,
    ListSyncConfig,
    ProcessorConfig,
    QueueConfig,
    RemoteConfig,
    ResilienceConfig,
    StorageConfig,
)
from .resilience import BackoffPolicy, CircuitBreaker, CircuitBreakerConfig, CircuitOpenError, CircuitState
from .scheduling import PeriodicTask

__all__ = [
    "Clock",
    "ManualClock",
    "SystemClock",
    "CacheConfig",
    "ListSyncConfig",
    "ProcessorConfig",
    "QueueConfig",
    "RemoteConfig",
    "ResilienceConfig",
    "StorageConfig",
    "BackoffPolicy",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitOpenError",
    "CircuitState",
    "PeriodicTask",
]
