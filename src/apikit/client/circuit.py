"""Circuit breaker for calls to a failing service.

A :class:`CircuitBreaker` counts consecutive failures of the calls it
guards.  After ``failure_threshold`` of them it *opens* and rejects calls
with :class:`~apikit.exceptions.CircuitOpenError` without touching the
network.  Once ``reset_timeout`` seconds have passed since the last failure
the next call is let through *half-open*; ``success_threshold`` successes
close the circuit again and any failure reopens it.

Example::

    breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=3))
    response = await breaker.execute(lambda: api.get("/health"))

Caller cancellations (:class:`~apikit.exceptions.RequestCancelledError`)
pass through without counting as a success or a failure.
"""

from __future__ import annotations

import enum
import functools
import logging
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from apikit.exceptions import CircuitOpenError, RequestCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreakerConfig(BaseModel):
    """Thresholds of a :class:`CircuitBreaker`."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    failure_threshold: int = Field(default=5, ge=1)
    success_threshold: int = Field(default=2, ge=1)
    reset_timeout: float = Field(default=30.0, ge=0, description="Seconds")
    on_state_change: Optional[Callable[[CircuitState], None]] = None


class CircuitBreaker:
    """Closed/open/half-open guard around coroutine calls.

    Args:
        config: Thresholds.  Defaults to :class:`CircuitBreakerConfig`.
        clock: Monotonic time source in seconds.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._last_failure: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failures(self) -> int:
        """Consecutive failures counted since the last success or reset."""
        return self._failures

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Await ``fn()`` unless the circuit is open.

        Raises:
            CircuitOpenError: The circuit is open and ``reset_timeout`` has
                not yet elapsed.
            Exception: Whatever ``fn()`` raised; it is recorded first.
        """
        if self._state is CircuitState.OPEN:
            remaining = self._remaining_open_time()
            if remaining > 0:
                raise CircuitOpenError(retry_after=remaining)
            self._set_state(CircuitState.HALF_OPEN)

        try:
            result = await fn()
        except RequestCancelledError:
            raise
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def wrap(self, func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        """Return *func* guarded by this breaker."""

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await self.execute(lambda: func(*args, **kwargs))

        return wrapper

    def open(self) -> None:
        """Force the circuit open, starting a fresh ``reset_timeout``."""
        self._last_failure = self._clock()
        self._set_state(CircuitState.OPEN)

    def close(self) -> None:
        self.reset()

    def reset(self) -> None:
        """Close the circuit and forget all counted calls."""
        self._failures = 0
        self._successes = 0
        self._last_failure = None
        self._set_state(CircuitState.CLOSED)

    def _remaining_open_time(self) -> float:
        if self._last_failure is None:
            return 0.0
        return self._last_failure + self._config.reset_timeout - self._clock()

    def _on_success(self) -> None:
        if self._state is CircuitState.HALF_OPEN:
            self._successes += 1
            if self._successes >= self._config.success_threshold:
                self.reset()
        else:
            self._failures = 0

    def _on_failure(self) -> None:
        self._failures += 1
        self._last_failure = self._clock()
        if self._state is CircuitState.HALF_OPEN:
            self._successes = 0
            self._set_state(CircuitState.OPEN)
        elif self._failures >= self._config.failure_threshold:
            self._set_state(CircuitState.OPEN)

    def _set_state(self, state: CircuitState) -> None:
        if state is self._state:
            return
        logger.info("Circuit %s -> %s", self._state.value, state.value)
        self._state = state
        if self._config.on_state_change is not None:
            self._config.on_state_change(state)

    def __repr__(self) -> str:
        return f"<CircuitBreaker state={self._state.value} failures={self._failures}>"
