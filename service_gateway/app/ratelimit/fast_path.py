"""
Latency-bounded rate limiting for the bid-serving route.

Bid requests are throttled on a per-process counter only; nothing on the hot
path waits on the network. A background task periodically publishes the
local counts to the shared store so operators can see an approximate global
rate. Because each process enforces ``max_requests_per_second`` on its own,
the cluster-wide ceiling is roughly ``max_requests_per_second * processes``.
"""

import asyncio
import contextlib
import threading
import time
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from shared.errors import RateLimitError, UpstreamUnavailableError
from shared.logging import get_logger

from ..domain.context import AccessDecision, AdmissionContext, Stage
from .models import KeyGenerator, RateLimitInfo, WindowCount, client_ip
from .store import CounterStore, window_start

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from fastapi import Request
    from shared.metrics import MetricsCollector


RTB_WINDOW_MS = 1000


def rtb_key_generator(request: "Request") -> str:
    return f"rtb_limit:{client_ip(request)}"


class LocalWindowCounter:
    """Thread-safe per-process fixed-window counter.

    Keys from earlier windows are dropped when the window rolls over. With
    ``track_pending`` it also accumulates the increments not yet published to
    the shared store.
    """

    def __init__(
        self,
        window_ms: int = RTB_WINDOW_MS,
        clock: Optional[Callable[[], int]] = None,
        track_pending: bool = True,
    ):
        self.window_ms = window_ms
        self.track_pending = track_pending
        self._clock = clock or (lambda: int(time.time() * 1000))
        # key -> [window_start_ms, count]
        self._counts: Dict[str, List[int]] = {}
        self._pending: Dict[str, int] = {}
        self._current_window: Optional[int] = None
        self._lock = threading.Lock()

    def _roll_over(self, start: int) -> None:
        # Caller holds the lock
        if start == self._current_window:
            return
        stale = [key for key, (entry_start, _) in self._counts.items() if entry_start != start]
        for key in stale:
            del self._counts[key]
        self._current_window = start

    def hit(self, key: str) -> WindowCount:
        start = window_start(self._clock(), self.window_ms)
        with self._lock:
            self._roll_over(start)
            entry = self._counts.get(key)
            if entry is None:
                entry = [start, 0]
                self._counts[key] = entry
            entry[1] += 1
            count = entry[1]
            if self.track_pending:
                self._pending[key] = self._pending.get(key, 0) + 1
        return WindowCount(count=count, window_start_ms=start, reset_at_ms=start + self.window_ms)

    def peek(self, key: str) -> WindowCount:
        start = window_start(self._clock(), self.window_ms)
        with self._lock:
            entry = self._counts.get(key)
            count = entry[1] if entry is not None and entry[0] == start else 0
        return WindowCount(count=count, window_start_ms=start, reset_at_ms=start + self.window_ms)

    def reset(self, key: str) -> None:
        with self._lock:
            self._counts.pop(key, None)
            self._pending.pop(key, None)

    def drain_pending(self) -> Dict[str, int]:
        with self._lock:
            pending, self._pending = self._pending, {}
        return pending

    def prune(self) -> int:
        """Forget keys whose window has passed; returns the number still tracked."""
        start = window_start(self._clock(), self.window_ms)
        with self._lock:
            self._roll_over(start)
            return len(self._counts)

    def __len__(self) -> int:
        return len(self._counts)


class RTBRateLimiter:
    """Per-process fast-path limiter with out-of-band reconciliation."""

    def __init__(
        self,
        max_requests_per_second: int,
        *,
        store: Optional[CounterStore] = None,
        reconcile_interval: float = 1.0,
        message: str = "RTB rate limit exceeded",
        key_generator: Optional[KeyGenerator] = None,
        metrics: Optional["MetricsCollector"] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        if max_requests_per_second <= 0:
            raise ValueError("max_requests_per_second must be positive")
        self.max_requests_per_second = max_requests_per_second
        self.store = store
        self.reconcile_interval = reconcile_interval
        self.message = message
        self.key_generator = key_generator or rtb_key_generator
        self.metrics = metrics
        self._clock = clock or (lambda: int(time.time() * 1000))
        self.counter = LocalWindowCounter(RTB_WINDOW_MS, clock=self._clock, track_pending=store is not None)
        self.logger = get_logger("gateway.rtb_rate_limiter")
        self._global: Dict[str, WindowCount] = {}
        self._task: Optional[asyncio.Task] = None

    def now_ms(self) -> int:
        return self._clock()

    def check(self, key: str) -> RateLimitInfo:
        """Count one bid request against ``key`` using only local state."""
        window = self.counter.hit(key)
        return RateLimitInfo.from_window(self.max_requests_per_second, window)

    def get_status(self, key: str) -> Dict[str, Any]:
        local = RateLimitInfo.from_window(self.max_requests_per_second, self.counter.peek(key))
        status: Dict[str, Any] = {**local.to_dict(), "scope": "process"}
        published = self._global.get(key)
        if published is not None and published.reset_at_ms > self._clock():
            status["globalEstimate"] = published.count
        return status

    def reset(self, key: str) -> None:
        self.counter.reset(key)
        self._global.pop(key, None)
        self.logger.info("RTB rate limit reset", key=key)

    async def reconcile(self) -> int:
        """Publish pending local counts to the shared store; returns keys published."""
        pending = self.counter.drain_pending()
        tracked = self.counter.prune()
        now = self._clock()
        for key in [k for k, w in self._global.items() if w.reset_at_ms <= now]:
            del self._global[key]

        if self.store is None or not pending:
            return 0

        published = 0
        failed = 0
        for key, delta in pending.items():
            try:
                self._global[key] = await self.store.incr(key, RTB_WINDOW_MS, amount=delta)
                published += 1
            except UpstreamUnavailableError:
                failed += 1

        if failed:
            self.logger.warning("Fast-path reconciliation incomplete", published=published, failed=failed)
        if self.metrics:
            self.metrics.record_reconcile("error" if failed else "ok", tracked_keys=tracked)
        return published

    async def _reconcile_loop(self) -> None:
        while True:
            await asyncio.sleep(self.reconcile_interval)
            try:
                await self.reconcile()
            except Exception as exc:
                self.logger.error("Fast-path reconciliation crashed", error=str(exc), exc_info=True)

    async def start(self) -> None:
        self.logger.info(
            "Fast-path limiter active; limits are enforced per process",
            max_requests_per_second=self.max_requests_per_second,
            reconcile_interval=self.reconcile_interval,
        )
        if self.store is not None and self._task is None:
            self._task = asyncio.create_task(self._reconcile_loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
            await self.reconcile()

    def stage(self) -> "FastPathStage":
        return FastPathStage(self)


class FastPathStage(Stage):
    name = "rate_limit:rtb"
    passed_state = "RateAdmitted"
    failed_state = "RateRejected"

    def __init__(self, limiter: RTBRateLimiter):
        self.limiter = limiter

    async def evaluate(self, ctx: AdmissionContext) -> AccessDecision:
        info = self.limiter.check(self.limiter.key_generator(ctx.request))
        if info.exceeded:
            headers = info.headers()
            headers["Retry-After"] = str(info.retry_after(self.limiter.now_ms()))
            return AccessDecision.reject(
                RateLimitError(self.limiter.message, details=info.to_dict(), headers=headers)
            )
        ctx.rate_limit = info
        return AccessDecision.proceed()
