"""
Standard fixed-window rate limiter backed by the shared counter store.
"""

import time
from typing import TYPE_CHECKING, Callable, Optional

from shared.errors import RateLimitError, UpstreamUnavailableError
from shared.logging import get_logger

from ..domain.context import AccessDecision, AdmissionContext, Stage
from .models import RateLimitConfig, RateLimitInfo
from .store import CounterStore, InMemoryCounterStore

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from fastapi import Request
    from shared.metrics import MetricsCollector


class RateLimiter:
    """Fixed-window limiter that degrades to process-local counting.

    When the shared store is unreachable the limiter keeps enforcing limits
    against an in-process store under the same key. With N gateway processes
    the effective limit during an outage is up to N times ``max_requests``.
    """

    def __init__(
        self,
        store: CounterStore,
        *,
        default_config: Optional[RateLimitConfig] = None,
        fallback: Optional[CounterStore] = None,
        metrics: Optional["MetricsCollector"] = None,
        policy: str = "standard",
        clock: Optional[Callable[[], int]] = None,
    ):
        self.store = store
        self.fallback = fallback if fallback is not None else InMemoryCounterStore(clock=clock)
        self.default_config = default_config
        self.metrics = metrics
        self.policy = policy
        self._clock = clock or (lambda: int(time.time() * 1000))
        self.logger = get_logger("gateway.rate_limiter")
        self.degraded = False

    def _config(self, config: Optional[RateLimitConfig]) -> RateLimitConfig:
        config = config or self.default_config
        if config is None:
            raise ValueError("No rate limit config given and no default configured")
        return config

    def _enter_degraded(self, operation: str, exc: UpstreamUnavailableError) -> None:
        if not self.degraded:
            self.logger.warning(
                "Counter store unavailable, using local fallback counters",
                policy=self.policy,
                operation=operation,
                error=exc.message,
            )
        self.degraded = True
        if self.metrics:
            self.metrics.record_rate_limit_fallback(self.policy)

    def _leave_degraded(self) -> None:
        if self.degraded:
            self.logger.info("Counter store recovered", policy=self.policy)
        self.degraded = False

    async def hit(self, key: str, config: Optional[RateLimitConfig] = None) -> RateLimitInfo:
        """Count one request against ``key`` and return the resulting status."""
        config = self._config(config)
        try:
            window = await self.store.incr(key, config.window_ms)
        except UpstreamUnavailableError as exc:
            self._enter_degraded("incr", exc)
            window = await self.fallback.incr(key, config.window_ms)
            return RateLimitInfo.from_window(config.max_requests, window, degraded=True)

        self._leave_degraded()
        return RateLimitInfo.from_window(config.max_requests, window)

    async def undo(self, key: str, info: RateLimitInfo) -> None:
        """Compensate a counted request, on whichever store counted it."""
        store = self.fallback if info.degraded else self.store
        try:
            await store.decr(key, info.window_start_ms)
        except UpstreamUnavailableError as exc:
            # Leaves the request counted; over-counting is the safe direction.
            self.logger.warning("Could not undo rate limit hit", key=key, error=exc.message)

    async def check_request(self, request: "Request", config: Optional[RateLimitConfig] = None) -> RateLimitInfo:
        config = self._config(config)
        return await self.hit(config.key_for(request), config)

    async def get_status(self, key: str, config: Optional[RateLimitConfig] = None) -> RateLimitInfo:
        """Current count for ``key``; does not count a request."""
        config = self._config(config)
        try:
            window = await self.store.get(key, config.window_ms)
        except UpstreamUnavailableError as exc:
            self._enter_degraded("get", exc)
            window = await self.fallback.get(key, config.window_ms)
            return RateLimitInfo.from_window(config.max_requests, window, degraded=True)
        return RateLimitInfo.from_window(config.max_requests, window)

    async def reset(self, key: str, config: Optional[RateLimitConfig] = None) -> None:
        """Clear ``key`` immediately on both the shared and the local store."""
        config = self._config(config)
        await self.fallback.reset(key, config.window_ms)
        try:
            await self.store.reset(key, config.window_ms)
        except UpstreamUnavailableError as exc:
            self._enter_degraded("reset", exc)
        self.logger.info("Rate limit reset", policy=self.policy, key=key)

    def rejection(self, info: RateLimitInfo, config: RateLimitConfig, **details) -> RateLimitError:
        headers = info.headers()
        headers["Retry-After"] = str(info.retry_after(self._clock()))
        return RateLimitError(
            config.message,
            details={**info.to_dict(), **details},
            status_code=config.status_code,
            headers=headers,
        )

    def stage(self, config: Optional[RateLimitConfig] = None, name: Optional[str] = None) -> "RateLimitStage":
        return RateLimitStage(self, self._config(config), name=name or f"rate_limit:{self.policy}")


class RateLimitStage(Stage):
    passed_state = "RateAdmitted"
    failed_state = "RateRejected"

    def __init__(self, limiter: RateLimiter, config: RateLimitConfig, name: str):
        self.limiter = limiter
        self.config = config
        self.name = name

    async def evaluate(self, ctx: AdmissionContext) -> AccessDecision:
        key = self.config.key_for(ctx.request)
        info = await self.limiter.hit(key, self.config)
        if info.exceeded:
            self.limiter.logger.warning(
                "Rate limit exceeded",
                policy=self.limiter.policy,
                key=key,
                limit=info.limit,
                current=info.current,
                degraded=info.degraded,
            )
            return AccessDecision.reject(self.limiter.rejection(info, self.config))

        ctx.rate_limit = info
        if self.config.skip_successful or self.config.skip_failed:
            ctx.on_complete(settle_hook(self.limiter, self.config, key, info))
        return AccessDecision.proceed()


def settle_hook(limiter: RateLimiter, config: RateLimitConfig, key: str, info: RateLimitInfo):
    """Completion hook that takes back a counted request the config says to skip."""

    async def settle(status_code: int) -> None:
        succeeded = status_code < 400
        if (config.skip_successful and succeeded) or (config.skip_failed and not succeeded):
            await limiter.undo(key, info)

    return settle
