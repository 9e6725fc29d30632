"""
Unit tests for the bid fast-path limiter.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from service_gateway.app.domain.context import AdmissionContext, Outcome
from service_gateway.app.ratelimit.fast_path import LocalWindowCounter, RTBRateLimiter, rtb_key_generator
from service_gateway.app.ratelimit.store import InMemoryCounterStore
from shared.errors import UpstreamUnavailableError

from .helpers import make_request


class TestLocalWindowCounter:
    """Test cases for LocalWindowCounter."""

    def test_counts_and_rolls_over(self, clock):
        counter = LocalWindowCounter(1000, clock=clock)

        assert counter.hit("k").count == 1
        assert counter.hit("k").count == 2
        clock.now = 1000
        assert counter.hit("k").count == 1

    def test_pending_accumulates_across_windows(self, clock):
        counter = LocalWindowCounter(1000, clock=clock)
        counter.hit("k")
        clock.now = 1500
        counter.hit("k")
        counter.hit("j")

        assert counter.drain_pending() == {"k": 2, "j": 1}
        assert counter.drain_pending() == {}

    def test_prune_drops_stale_keys(self, clock):
        counter = LocalWindowCounter(1000, clock=clock)
        counter.hit("old")
        clock.now = 2000
        counter.hit("new")

        assert counter.prune() == 1
        assert counter.peek("old").count == 0

    def test_rollover_drops_previous_window_keys(self, clock):
        counter = LocalWindowCounter(1000, clock=clock)
        for ip in range(5):
            counter.hit(f"10.0.0.{ip}")
        clock.now = 1000

        counter.hit("10.0.1.1")

        assert len(counter) == 1


class TestRTBRateLimiter:
    """Test cases for RTBRateLimiter."""

    @pytest.fixture
    def limiter(self, clock, metrics):
        return RTBRateLimiter(3, store=InMemoryCounterStore(clock=clock), metrics=metrics, clock=clock)

    def test_kth_admitted_next_rejected(self, limiter):
        results = [limiter.check("1.2.3.4") for _ in range(4)]

        assert [info.exceeded for info in results] == [False, False, False, True]

    def test_next_second_admits_again(self, limiter, clock):
        for _ in range(4):
            limiter.check("1.2.3.4")

        clock.now = 1000

        assert not limiter.check("1.2.3.4").exceeded

    def test_keys_are_independent(self, limiter):
        for _ in range(4):
            limiter.check("a")

        assert not limiter.check("b").exceeded

    def test_invalid_limit(self):
        with pytest.raises(ValueError):
            RTBRateLimiter(0)

    def test_key_generator(self):
        assert rtb_key_generator(make_request(headers={"X-Real-IP": "198.51.100.7"})) == "rtb_limit:198.51.100.7"

    @pytest.mark.asyncio
    async def test_concurrent_requests_admit_exactly_k(self, limiter):
        stage = limiter.stage()
        request = make_request(path="/api/rtb/bid", method="POST")

        decisions = await asyncio.gather(*(stage.run(AdmissionContext(request=request)) for _ in range(10)))

        admitted = [d for d in decisions if d.outcome == Outcome.PROCEED]
        rejected = [d for d in decisions if d.outcome == Outcome.REJECT]
        assert len(admitted) == 3
        assert len(rejected) == 7
        assert rejected[0].kind == "RATE_LIMITED"
        assert rejected[0].error.headers["Retry-After"] == "1"
        assert rejected[0].error.message == "RTB rate limit exceeded"

    @pytest.mark.asyncio
    async def test_reconcile_publishes_deltas(self, limiter):
        for _ in range(3):
            limiter.check("k")

        published = await limiter.reconcile()

        assert published == 1
        assert (await limiter.store.get("k", 1000)).count == 3
        status = limiter.get_status("k")
        assert status["globalEstimate"] == 3
        assert status["scope"] == "process"
        assert status["current"] == 3
        assert await limiter.reconcile() == 0

    @pytest.mark.asyncio
    async def test_reconcile_failure_is_logged_not_raised(self, limiter, metrics):
        limiter.store.incr = AsyncMock(side_effect=UpstreamUnavailableError("redis"))
        limiter.check("k")

        assert await limiter.reconcile() == 0
        assert not limiter.check("k").exceeded
        assert metrics.registry.get_sample_value("rtb_reconcile_total", {"status": "error"}) == 1

    @pytest.mark.asyncio
    async def test_reconcile_without_store(self, clock):
        limiter = RTBRateLimiter(3, clock=clock)
        limiter.check("k")

        assert await limiter.reconcile() == 0

    @pytest.mark.asyncio
    async def test_start_stop_flushes_pending(self, clock):
        store = InMemoryCounterStore(clock=clock)
        limiter = RTBRateLimiter(5, store=store, reconcile_interval=60, clock=clock)
        await limiter.start()
        limiter.check("k")
        limiter.check("k")

        await limiter.stop()

        assert (await store.get("k", 1000)).count == 2

    def test_reset(self, limiter):
        for _ in range(4):
            limiter.check("k")

        limiter.reset("k")

        assert limiter.get_status("k")["current"] == 0
        assert not limiter.check("k").exceeded

    def test_tracked_keys_bounded_without_store(self, clock):
        limiter = RTBRateLimiter(10, clock=clock)

        for second in range(50):
            clock.now = second * 1000
            for ip in range(200):
                limiter.check(f"rtb_limit:10.{second}.0.{ip}")

        assert len(limiter.counter) == 200
        assert limiter.counter.drain_pending() == {}

    def test_no_pending_counts_without_store(self, clock):
        limiter = RTBRateLimiter(3, clock=clock)
        limiter.check("k")

        assert limiter.counter.track_pending is False
        assert limiter.counter.drain_pending() == {}
