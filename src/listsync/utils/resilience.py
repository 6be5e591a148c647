from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from .clock import Clock, SystemClock

T = TypeVar("T")


class CircuitOpenError(RuntimeError):
    def __init__(self) -> None:
        super().__init__("circuit_open")


@dataclass
class BackoffPolicy:
    """Exponential backoff: base * 2^(n-1), capped, plus optional jitter.

    `attempt` is the 1-based retry count the delay is computed for.
    """

    base_delay_seconds: float = 30.0
    rate_limited_base_delay_seconds: float = 120.0
    max_delay_seconds: float = 3600.0
    jitter_ratio: float = 0.25
    rng: random.Random = field(default_factory=random.Random, repr=False, compare=False)

    def delay(self, attempt: int, rate_limited: bool = False) -> float:
        base = self.rate_limited_base_delay_seconds if rate_limited else self.base_delay_seconds
        exponent = max(attempt, 1) - 1
        # 2**64 * base is already far past any sane cap
        if exponent >= 64:
            return float(self.max_delay_seconds)
        return float(min(base * (2**exponent), self.max_delay_seconds))

    def next_delay(self, attempt: int, rate_limited: bool = False) -> float:
        delay = self.delay(attempt, rate_limited)
        jitter = self.rng.uniform(0.0, delay * self.jitter_ratio) if self.jitter_ratio else 0.0
        return min(delay + jitter, float(self.max_delay_seconds))


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout_seconds: float = 30.0


class CircuitState:
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Counts consecutive failed remote calls and short-circuits once tripped.

    `is_failure` decides which results/exceptions count against the breaker;
    by default only raised exceptions do.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._config = config or CircuitBreakerConfig()
        self._clock = clock or SystemClock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0

    @property
    def state(self) -> str:
        return self._state

    def _can_attempt(self) -> bool:
        if self._state == CircuitState.OPEN:
            if (self._clock.now() - self._opened_at) >= self._config.reset_timeout_seconds:
                self._state = CircuitState.HALF_OPEN
                return True
            return False
        return True

    def record_success(self) -> None:
        self._state = CircuitState.CLOSED
        self._failures = 0

    def record_failure(self) -> None:
        self._failures += 1
        if self._state == CircuitState.HALF_OPEN or self._failures >= self._config.failure_threshold:
            self._state = CircuitState.OPEN
            self._opened_at = self._clock.now()

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        is_failure: Optional[Callable[[T], bool]] = None,
    ) -> T:
        if not self._can_attempt():
            raise CircuitOpenError()
        try:
            result = await fn()
        except Exception:
            self.record_failure()
            raise
        if is_failure is not None and is_failure(result):
            self.record_failure()
        else:
            self.record_success()
        return result
