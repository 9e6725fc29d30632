"""
Rate limit configuration and counter value types.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Dict, Optional

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from fastapi import Request
    from shared.config import BaseConfig


KeyGenerator = Callable[["Request"], str]


def client_ip(request: "Request") -> str:
    """Extract the caller IP from standard proxy headers."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if isinstance(forwarded_for, str) and forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if isinstance(real_ip, str) and real_ip:
        return real_ip

    return request.client.host if request.client else "unknown"


def default_key_generator(request: "Request") -> str:
    return f"rate_limit:{client_ip(request)}:{request.url.path}"


def upload_key_generator(request: "Request") -> str:
    return f"upload_limit:{client_ip(request)}"


@dataclass(frozen=True)
class RateLimitConfig:
    window_ms: int
    max_requests: int
    key_generator: Optional[KeyGenerator] = field(default=None, compare=False)
    skip_successful: bool = False
    skip_failed: bool = False
    status_code: int = 429
    message: str = "Too many requests, please try again later"

    def __post_init__(self):
        if self.window_ms <= 0:
            raise ValueError("window_ms must be positive")
        if self.max_requests <= 0:
            raise ValueError("max_requests must be positive")

    def key_for(self, request: "Request") -> str:
        return (self.key_generator or default_key_generator)(request)


@dataclass(frozen=True)
class WindowCount:
    """A store's answer for one ``(key, window_start)`` bucket."""

    count: int
    window_start_ms: int
    reset_at_ms: int


@dataclass(frozen=True)
class RateLimitInfo:
    limit: int
    current: int
    remaining: int
    reset_time: int
    degraded: bool = False
    window_start_ms: Optional[int] = field(default=None, compare=False)

    @classmethod
    def from_window(cls, limit: int, window: WindowCount, *, degraded: bool = False) -> "RateLimitInfo":
        return cls(
            limit=limit,
            current=window.count,
            remaining=max(0, limit - window.count),
            reset_time=window.reset_at_ms,
            degraded=degraded,
            window_start_ms=window.window_start_ms,
        )

    @property
    def exceeded(self) -> bool:
        return self.current > self.limit

    def retry_after(self, now_ms: int) -> int:
        """Whole seconds until the window resets, at least one."""
        return max(1, -(-(self.reset_time - now_ms) // 1000))

    def headers(self) -> Dict[str, str]:
        reset = datetime.fromtimestamp(self.reset_time / 1000, tz=timezone.utc)
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": reset.isoformat().replace("+00:00", "Z"),
        }

    def to_dict(self) -> Dict[str, object]:
        return {
            "limit": self.limit,
            "current": self.current,
            "remaining": self.remaining,
            "resetTime": self.reset_time,
            "degraded": self.degraded,
        }


def rate_limit_presets(config: "BaseConfig") -> Dict[str, RateLimitConfig]:
    """Build the named policy configs (general, auth, upload, rtb)."""
    presets = {}
    for kind in ("general", "auth", "upload", "rtb"):
        window_ms, max_requests = config.rate_limit_defaults(kind)
        presets[kind] = RateLimitConfig(
            window_ms=window_ms,
            max_requests=max_requests,
            message=config.rate_limit_message(kind),
            skip_successful=(kind == "auth"),
            key_generator=upload_key_generator if kind == "upload" else None,
        )
    return presets
