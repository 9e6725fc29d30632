"""
Rate limiting package for the Gateway.

Holds the fixed-window limiters (standard, per-endpoint and the bid fast
path) and the counter stores they share.
"""

from .endpoint import EndpointMatcher, EndpointRateLimiter
from .fast_path import RTBRateLimiter
from .limiter import RateLimiter
from .models import RateLimitConfig, RateLimitInfo, WindowCount, rate_limit_presets
from .store import CounterStore, InMemoryCounterStore, RedisCounterStore

__all__ = [
    "CounterStore",
    "EndpointMatcher",
    "EndpointRateLimiter",
    "InMemoryCounterStore",
    "RTBRateLimiter",
    "RateLimitConfig",
    "RateLimitInfo",
    "RateLimiter",
    "RedisCounterStore",
    "WindowCount",
    "rate_limit_presets",
]
