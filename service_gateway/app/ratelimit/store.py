"""
Counter stores backing fixed-window rate limits.

``RedisCounterStore`` is the shared store that keeps counts consistent across
gateway processes. ``InMemoryCounterStore`` implements the same contract for a
single process; the limiter substitutes it when Redis is unreachable.
"""

import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.errors import UpstreamUnavailableError
from shared.logging import get_logger

from .models import WindowCount


def _now_ms() -> int:
    return int(time.time() * 1000)


def window_start(now_ms: int, window_ms: int) -> int:
    return now_ms - (now_ms % window_ms)


class CounterStore(ABC):
    """Atomic fixed-window counters keyed by ``(key, window_start)``."""

    name = "store"

    @abstractmethod
    async def incr(self, key: str, window_ms: int, amount: int = 1) -> WindowCount:
        """Increment the current window's counter, creating it with expiry if new."""

    @abstractmethod
    async def get(self, key: str, window_ms: int) -> WindowCount:
        """Read the current window's counter without changing it."""

    @abstractmethod
    async def decr(self, key: str, window_start_ms: int) -> None:
        """Undo one increment in a specific window, if that window still exists."""

    @abstractmethod
    async def reset(self, key: str, window_ms: int) -> None:
        """Drop the current window's counter."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class InMemoryCounterStore(CounterStore):
    """Process-local counters on the local clock."""

    name = "memory"

    def __init__(self, clock: Optional[Callable[[], int]] = None, max_keys: int = 100_000):
        self._clock = clock or _now_ms
        self._max_keys = max_keys
        # key -> [window_start_ms, window_ms, count]
        self._buckets: Dict[str, List[int]] = {}
        self._lock = threading.Lock()

    async def incr(self, key: str, window_ms: int, amount: int = 1) -> WindowCount:
        now = self._clock()
        start = window_start(now, window_ms)
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None or bucket[0] != start:
                if bucket is None and len(self._buckets) >= self._max_keys:
                    self._evict_expired(now)
                bucket = [start, window_ms, 0]
                self._buckets[key] = bucket
            bucket[2] += amount
            count = bucket[2]
        return WindowCount(count=count, window_start_ms=start, reset_at_ms=start + window_ms)

    async def get(self, key: str, window_ms: int) -> WindowCount:
        start = window_start(self._clock(), window_ms)
        with self._lock:
            bucket = self._buckets.get(key)
            count = bucket[2] if bucket is not None and bucket[0] == start else 0
        return WindowCount(count=count, window_start_ms=start, reset_at_ms=start + window_ms)

    async def decr(self, key: str, window_start_ms: int) -> None:
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is not None and bucket[0] == window_start_ms and bucket[2] > 0:
                bucket[2] -= 1

    async def reset(self, key: str, window_ms: int) -> None:
        with self._lock:
            self._buckets.pop(key, None)

    def _evict_expired(self, now: int) -> None:
        expired = [key for key, (start, window, _) in self._buckets.items() if start + window <= now]
        for key in expired:
            del self._buckets[key]

    def __len__(self) -> int:
        return len(self._buckets)


# Windows are derived from the server's TIME so every gateway process agrees
# on boundaries regardless of local clock skew.
_WINDOW_PREAMBLE = """
local now = redis.call('TIME')
local now_ms = tonumber(now[1]) * 1000 + math.floor(tonumber(now[2]) / 1000)
local window = tonumber(ARGV[1])
local start = now_ms - (now_ms % window)
local bucket = KEYS[1] .. ':' .. start
"""

INCR_SCRIPT = _WINDOW_PREAMBLE + """
local count = redis.call('INCRBY', bucket, tonumber(ARGV[2]))
if redis.call('PTTL', bucket) < 0 then
  redis.call('PEXPIRE', bucket, window)
end
return {count, start}
"""

GET_SCRIPT = _WINDOW_PREAMBLE + """
local value = redis.call('GET', bucket)
return {tonumber(value) or 0, start}
"""

RESET_SCRIPT = _WINDOW_PREAMBLE + """
redis.call('DEL', bucket)
return {0, start}
"""

DECR_SCRIPT = """
local value = tonumber(redis.call('GET', KEYS[1]))
if value and value > 0 then
  return redis.call('DECR', KEYS[1])
end
return 0
"""


class RedisCounterStore(CounterStore):
    """Shared counters in Redis, one Lua round trip per operation."""

    name = "redis"

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 0.25,
        breaker: Optional[CircuitBreaker] = None,
        client: Optional[redis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.logger = get_logger("gateway.counter_store")
        self.breaker = breaker or CircuitBreaker("redis_counter_store", tracked_exceptions=(RedisError, OSError))
        self._redis: Optional[redis.Redis] = client
        self._scripts: Dict[str, object] = {}

    def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                socket_timeout=self.socket_timeout,
                socket_connect_timeout=self.socket_timeout,
            )
        return self._redis

    def _script(self, source: str):
        script = self._scripts.get(source)
        if script is None:
            script = self._get_redis().register_script(source)
            self._scripts[source] = script
        return script

    async def _run(self, source: str, keys: List[str], args: List[object]):
        try:
            return await self.breaker.call(self._script(source), keys=keys, args=args)
        except CircuitBreakerOpenException as exc:
            raise UpstreamUnavailableError("redis", "circuit open") from exc
        except (RedisError, OSError) as exc:
            raise UpstreamUnavailableError("redis", str(exc)) from exc

    @staticmethod
    def _window(result, window_ms: int) -> WindowCount:
        count, start = int(result[0]), int(result[1])
        return WindowCount(count=count, window_start_ms=start, reset_at_ms=start + window_ms)

    async def incr(self, key: str, window_ms: int, amount: int = 1) -> WindowCount:
        result = await self._run(INCR_SCRIPT, [key], [window_ms, amount])
        return self._window(result, window_ms)

    async def get(self, key: str, window_ms: int) -> WindowCount:
        result = await self._run(GET_SCRIPT, [key], [window_ms])
        return self._window(result, window_ms)

    async def decr(self, key: str, window_start_ms: int) -> None:
        await self._run(DECR_SCRIPT, [f"{key}:{window_start_ms}"], [])

    async def reset(self, key: str, window_ms: int) -> None:
        await self._run(RESET_SCRIPT, [key], [window_ms])
        self.logger.info("Rate limit counter reset", key=key)

    async def ping(self) -> bool:
        try:
            return bool(await self._get_redis().ping())
        except (RedisError, OSError) as exc:
            self.logger.warning("Counter store ping failed", error=str(exc))
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._scripts.clear()
