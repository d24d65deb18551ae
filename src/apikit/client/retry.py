"""Retry with exponential backoff for request coroutines.

The request pipeline never retries on its own (``RequestConfig.retries`` is
advisory).  Callers that want retries wrap the call explicitly::

    response = await retry_with_backoff(lambda: api.get("/users"), RetryConfig(max_retries=5))

or decorate a coroutine function with :func:`retrying`.  A
:class:`RetryHandler` runs the same loop while exposing its progress to
listeners and can be cancelled mid-backoff.

An error is retried when it is an :class:`~apikit.exceptions.ApiError`
whose status is in :attr:`RetryConfig.retryable_statuses` or is ``0`` (no
response received).  A custom :attr:`RetryConfig.should_retry` predicate
replaces that rule entirely.  Caller cancellations
(:class:`~apikit.exceptions.RequestCancelledError`) are never retried.
"""

from __future__ import annotations

import asyncio
import functools
import random
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from apikit.cancellation import CancellationToken
from apikit.exceptions import ApiError, RequestCancelledError
from apikit.output import get_output

T = TypeVar("T")

DEFAULT_RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})
"""Timeout, rate limiting and transient server failures."""


class RetryConfig(BaseModel):
    """Backoff schedule and retry rules.

    The delay before retry ``n`` (0-based) is
    ``min(initial_delay * backoff_multiplier ** n, max_delay)`` seconds,
    stretched by a random 0-50% when ``jitter`` is on.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    max_retries: int = Field(default=3, ge=0)
    initial_delay: float = Field(default=1.0, ge=0, description="Seconds")
    max_delay: float = Field(default=30.0, ge=0, description="Seconds")
    backoff_multiplier: float = Field(default=2.0, ge=1)
    jitter: bool = True
    retryable_statuses: frozenset[int] = DEFAULT_RETRYABLE_STATUSES
    should_retry: Optional[Callable[[BaseException, int], bool]] = None
    on_retry: Optional[Callable[[BaseException, int, float], None]] = None


def compute_delay(
    attempt: int,
    config: RetryConfig,
    rand: Callable[[], float] = random.random,
) -> float:
    """Return the delay in seconds before retry *attempt* (0-based)."""
    delay = min(config.initial_delay * config.backoff_multiplier**attempt, config.max_delay)
    if config.jitter:
        delay *= 1 + rand() * 0.5
    return delay


def is_retryable(error: BaseException, attempt: int, config: RetryConfig) -> bool:
    if isinstance(error, RequestCancelledError):
        return False
    if config.should_retry is not None:
        return config.should_retry(error, attempt)
    if isinstance(error, ApiError):
        return error.status == 0 or error.status in config.retryable_statuses
    return False


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
) -> T:
    """Await ``fn()`` until it succeeds or the retry budget is spent.

    Args:
        fn: Zero-argument coroutine factory; called once per attempt.
        config: Retry rules.  Defaults to :class:`RetryConfig`.

    Returns:
        The first successful result.

    Raises:
        Exception: The last error, once it is not retryable or
            ``max_retries`` retries have been made.
    """
    config = config or RetryConfig()
    output = get_output()
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            if attempt >= config.max_retries or not is_retryable(exc, attempt, config):
                raise
            delay = compute_delay(attempt, config)
            attempt += 1
            output.debug(
                f"{exc}, retrying in {delay:.2f}s (attempt {attempt}/{config.max_retries})"
            )
            if config.on_retry is not None:
                config.on_retry(exc, attempt, delay)
            await asyncio.sleep(delay)


def retrying(
    func: Callable[..., Awaitable[T]],
    config: Optional[RetryConfig] = None,
) -> Callable[..., Awaitable[T]]:
    """Wrap the coroutine function *func* with :func:`retry_with_backoff`."""

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        return await retry_with_backoff(lambda: func(*args, **kwargs), config)

    return wrapper


class RetryHandler:
    """Observable, cancellable retry loop around one coroutine factory.

    The public attributes describe the loop while it runs and are pushed to
    listeners registered with :meth:`subscribe` after every change:

    * ``attempt`` -- 0-based index of the current attempt;
    * ``is_retrying`` -- whether the loop is waiting to retry;
    * ``last_error`` -- the most recent failure, or ``None``;
    * ``next_retry_at`` -- clock time of the pending retry, or ``None``.

    :meth:`cancel` stops the loop: a pending backoff wait ends at once and
    :meth:`execute` raises the last error.

    Args:
        fn: Zero-argument coroutine factory; called once per attempt.
        config: Retry rules.  Defaults to :class:`RetryConfig`.
        clock: Wall-clock time source in seconds for ``next_retry_at``.
    """

    def __init__(
        self,
        fn: Callable[[], Awaitable[T]],
        config: Optional[RetryConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._fn = fn
        self._config = config or RetryConfig()
        self._clock = clock
        self._token: Optional[CancellationToken] = None
        self._listeners: list[Callable[[RetryHandler], None]] = []
        self.attempt = 0
        self.is_retrying = False
        self.last_error: Optional[BaseException] = None
        self.next_retry_at: Optional[float] = None

    async def execute(self) -> Any:
        """Run the loop and return the first successful result.

        Raises:
            Exception: The last error, once it is not retryable, the retry
                budget is spent or :meth:`cancel` was called.
        """
        config = self._config
        token = CancellationToken()
        self._token = token
        self.attempt = 0
        self.last_error = None
        self._settle()

        attempt = 0
        while not token.cancelled:
            self.attempt = attempt
            try:
                result = await self._fn()
            except Exception as exc:
                self.last_error = exc
                if (
                    token.cancelled
                    or attempt >= config.max_retries
                    or not is_retryable(exc, attempt, config)
                ):
                    break
                delay = compute_delay(attempt, config)
                self.is_retrying = True
                self.next_retry_at = self._clock() + delay
                self._notify()
                if config.on_retry is not None:
                    config.on_retry(exc, attempt + 1, delay)
                await _wait_or_cancel(token, delay)
                attempt += 1
                continue
            self._settle()
            return result

        self._settle()
        if self.last_error is None:
            raise RequestCancelledError(reason=token.reason)
        raise self.last_error

    def cancel(self) -> None:
        """Stop the running loop after the current attempt."""
        if self._token is not None:
            self._token.cancel("retry cancelled")
        self._settle()

    def subscribe(self, listener: Callable[[RetryHandler], None]) -> Callable[[], None]:
        """Register *listener* and return a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _settle(self) -> None:
        self.is_retrying = False
        self.next_retry_at = None
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    def __repr__(self) -> str:
        return f"<RetryHandler attempt={self.attempt} retrying={self.is_retrying}>"


async def _wait_or_cancel(token: CancellationToken, delay: float) -> None:
    try:
        await asyncio.wait_for(token.wait(), timeout=delay)
    except asyncio.TimeoutError:
        pass
