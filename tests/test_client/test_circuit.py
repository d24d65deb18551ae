"""Tests for CircuitBreaker."""

from __future__ import annotations

import httpx
import pytest

from apikit.client import CircuitBreaker, CircuitBreakerConfig, CircuitState, HttpClient
from apikit.exceptions import ApiError, CircuitOpenError, RequestCancelledError
from apikit.exit_codes import EXIT_CONNECTION_ERROR
from apikit.models import ClientConfig


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


async def _ok() -> str:
    return "ok"


async def _fail() -> str:
    raise ApiError("Service Unavailable", 503)


def _breaker(clock: FakeClock, **config) -> CircuitBreaker:
    config.setdefault("failure_threshold", 2)
    config.setdefault("success_threshold", 2)
    config.setdefault("reset_timeout", 10.0)
    return CircuitBreaker(CircuitBreakerConfig(**config), clock=clock)


async def _trip(breaker: CircuitBreaker, times: int = 2) -> None:
    for _ in range(times):
        with pytest.raises(ApiError):
            await breaker.execute(_fail)


# ---------------------------------------------------------------------------
# Closed state
# ---------------------------------------------------------------------------


class TestClosed:
    @pytest.mark.asyncio
    async def test_passes_results_through(self) -> None:
        breaker = _breaker(FakeClock())
        assert await breaker.execute(_ok) == "ok"
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_opens_at_failure_threshold(self) -> None:
        breaker = _breaker(FakeClock())
        await _trip(breaker, 1)
        assert breaker.state is CircuitState.CLOSED
        await _trip(breaker, 1)
        assert breaker.state is CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self) -> None:
        breaker = _breaker(FakeClock())
        await _trip(breaker, 1)
        await breaker.execute(_ok)
        assert breaker.failures == 0
        await _trip(breaker, 1)
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancellation_is_not_a_failure(self) -> None:
        async def cancelled() -> None:
            raise RequestCancelledError()

        breaker = _breaker(FakeClock(), failure_threshold=1)
        with pytest.raises(RequestCancelledError):
            await breaker.execute(cancelled)
        assert breaker.state is CircuitState.CLOSED
        assert breaker.failures == 0


# ---------------------------------------------------------------------------
# Open and half-open states
# ---------------------------------------------------------------------------


class TestOpen:
    @pytest.mark.asyncio
    async def test_rejects_without_calling(self) -> None:
        clock = FakeClock()
        breaker = _breaker(clock)
        await _trip(breaker)
        clock.now = 4.0

        calls: list[int] = []

        async def tracked() -> str:
            calls.append(1)
            return "ok"

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.execute(tracked)
        assert calls == []
        assert exc_info.value.retry_after == pytest.approx(6.0)
        assert exc_info.value.exit_code == EXIT_CONNECTION_ERROR

    @pytest.mark.asyncio
    async def test_half_open_after_reset_timeout(self) -> None:
        clock = FakeClock()
        breaker = _breaker(clock)
        await _trip(breaker)
        clock.now = 10.0

        assert await breaker.execute(_ok) == "ok"
        assert breaker.state is CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_closes_after_success_threshold(self) -> None:
        clock = FakeClock()
        breaker = _breaker(clock)
        await _trip(breaker)
        clock.now = 10.0

        await breaker.execute(_ok)
        await breaker.execute(_ok)
        assert breaker.state is CircuitState.CLOSED
        assert breaker.failures == 0

    @pytest.mark.asyncio
    async def test_failure_while_half_open_reopens(self) -> None:
        clock = FakeClock()
        breaker = _breaker(clock)
        await _trip(breaker)
        clock.now = 10.0

        await breaker.execute(_ok)
        await _trip(breaker, 1)
        assert breaker.state is CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await breaker.execute(_ok)


# ---------------------------------------------------------------------------
# Manual control and notifications
# ---------------------------------------------------------------------------


class TestControl:
    @pytest.mark.asyncio
    async def test_manual_open_and_close(self) -> None:
        breaker = _breaker(FakeClock())
        breaker.open()
        with pytest.raises(CircuitOpenError):
            await breaker.execute(_ok)
        breaker.close()
        assert await breaker.execute(_ok) == "ok"

    @pytest.mark.asyncio
    async def test_state_changes_are_reported_once(self) -> None:
        clock = FakeClock()
        changes: list[CircuitState] = []
        breaker = _breaker(clock, on_state_change=changes.append)

        await _trip(breaker)
        with pytest.raises(CircuitOpenError):
            await breaker.execute(_ok)
        clock.now = 20.0
        await breaker.execute(_ok)
        await breaker.execute(_ok)

        assert changes == [CircuitState.OPEN, CircuitState.HALF_OPEN, CircuitState.CLOSED]

    @pytest.mark.asyncio
    async def test_wraps_client_calls(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(503, json={"message": "down"})

        client = HttpClient(
            ClientConfig(base_url="https://api.example.com"),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        breaker = _breaker(FakeClock())
        get = breaker.wrap(client.get)

        async with client:
            for _ in range(2):
                with pytest.raises(ApiError, match="down"):
                    await get("/health")
            with pytest.raises(CircuitOpenError):
                await get("/health")

        assert len(requests) == 2
