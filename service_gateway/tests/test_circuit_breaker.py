"""
Unit tests for the counter store circuit breaker.
"""

from unittest.mock import AsyncMock

import pytest

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException, CircuitBreakerState


class Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestCircuitBreaker:
    """Test cases for CircuitBreaker."""

    @pytest.fixture
    def clock(self):
        return Clock()

    @pytest.fixture
    def breaker(self, clock):
        return CircuitBreaker(
            "store", failure_threshold=2, recovery_timeout=5.0, tracked_exceptions=(ConnectionError,), clock=clock
        )

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self, breaker):
        failing = AsyncMock(side_effect=ConnectionError("down"))

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.call(failing)

        assert breaker.is_open()
        with pytest.raises(CircuitBreakerOpenException):
            await breaker.call(failing)
        assert failing.await_count == 2

    @pytest.mark.asyncio
    async def test_untracked_errors_do_not_count(self, breaker):
        failing = AsyncMock(side_effect=ValueError("bad input"))

        for _ in range(3):
            with pytest.raises(ValueError):
                await breaker.call(failing)

        assert breaker.state == CircuitBreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_probe_closes_on_success(self, breaker, clock):
        breaker.record_failure()
        breaker.record_failure()
        clock.now += 5.0

        assert breaker.state == CircuitBreakerState.HALF_OPEN
        assert await breaker.call(AsyncMock(return_value="ok")) == "ok"
        assert breaker.state == CircuitBreakerState.CLOSED
        assert breaker.get_state()["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_half_open_probe_failure_reopens(self, breaker, clock):
        breaker.record_failure()
        breaker.record_failure()
        clock.now += 5.0

        with pytest.raises(ConnectionError):
            await breaker.call(AsyncMock(side_effect=ConnectionError("still down")))

        assert breaker.is_open()

    def test_reset(self, breaker):
        breaker.record_failure()
        breaker.record_failure()

        breaker.reset()

        assert breaker.get_state()["state"] == "closed"
