"""
Per-endpoint rate limits.

Endpoint keys look like ``"POST /api/auth/token"`` or ``"/api/uploads/*"``.
The method is optional; a trailing ``*`` turns the path into a prefix match on
whole path segments. Matchers are held in an explicit list sorted most
specific first, so the entry that applies to a request never depends on
mapping order.
"""

from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple

from shared.logging import get_logger

from ..domain.context import AccessDecision, AdmissionContext, Stage
from .limiter import RateLimiter, settle_hook
from .models import RateLimitConfig, client_ip

HTTP_METHODS = {"GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"}


@dataclass(frozen=True)
class EndpointMatcher:
    name: str
    path: str
    method: Optional[str] = None
    prefix: bool = False

    @classmethod
    def parse(cls, endpoint: str) -> "EndpointMatcher":
        raw = endpoint.strip()
        method = None
        head, _, rest = raw.partition(" ")
        if rest and head.upper() in HTTP_METHODS:
            method, raw = head.upper(), rest.strip()
        elif ":" in raw and raw.split(":", 1)[0].upper() in HTTP_METHODS:
            head, raw = raw.split(":", 1)
            method = head.upper()

        prefix = raw.endswith("*")
        path = raw.rstrip("*").rstrip("/") or "/"
        if not path.startswith("/"):
            raise ValueError(f"Endpoint path must start with '/': {endpoint!r}")
        return cls(name=endpoint, path=path, method=method, prefix=prefix)

    @property
    def specificity(self) -> Tuple[int, int, int]:
        # Exact beats prefix, longer path beats shorter, method-bound beats any-method
        return (0 if self.prefix else 1, len(self.path), 1 if self.method else 0)

    def matches(self, method: str, path: str) -> bool:
        if self.method and self.method != method.upper():
            return False
        normalized = path.rstrip("/") or "/"
        if not self.prefix:
            return normalized == self.path
        if self.path == "/":
            return True
        return normalized == self.path or normalized.startswith(self.path + "/")


class EndpointRateLimiter:
    """Applies the most specific matching endpoint config, if any."""

    def __init__(self, limiter: RateLimiter, limits: Mapping[str, RateLimitConfig]):
        self.limiter = limiter
        self.logger = get_logger("gateway.endpoint_rate_limiter")
        entries = [(EndpointMatcher.parse(endpoint), config) for endpoint, config in limits.items()]
        self.entries: List[Tuple[EndpointMatcher, RateLimitConfig]] = sorted(
            entries, key=lambda entry: entry[0].specificity, reverse=True
        )

    @classmethod
    def from_settings(cls, limiter: RateLimiter, raw: Mapping[str, Dict[str, object]]) -> "EndpointRateLimiter":
        """Build from plain settings values such as ``{"POST /api/x": {"window_ms": 1000, "max_requests": 5}}``."""
        limits = {endpoint: RateLimitConfig(**values) for endpoint, values in raw.items()}
        return cls(limiter, limits)

    def match(self, method: str, path: str) -> Optional[Tuple[EndpointMatcher, RateLimitConfig]]:
        for matcher, config in self.entries:
            if matcher.matches(method, path):
                return matcher, config
        return None

    def stage(self) -> "EndpointRateLimitStage":
        return EndpointRateLimitStage(self)


class EndpointRateLimitStage(Stage):
    name = "rate_limit:endpoint"
    passed_state = "RateAdmitted"
    failed_state = "RateRejected"

    def __init__(self, endpoint_limiter: EndpointRateLimiter):
        self.endpoint_limiter = endpoint_limiter

    async def evaluate(self, ctx: AdmissionContext) -> AccessDecision:
        request = ctx.request
        matched = self.endpoint_limiter.match(request.method, request.url.path)
        if matched is None:
            return AccessDecision.proceed()

        matcher, config = matched
        if config.key_generator is not None:
            key = config.key_generator(request)
        else:
            key = f"advanced_limit:{client_ip(request)}:{matcher.name}"
        limiter = self.endpoint_limiter.limiter
        info = await limiter.hit(key, config)
        if info.exceeded:
            self.endpoint_limiter.logger.warning(
                "Endpoint rate limit exceeded", endpoint=matcher.name, key=key, limit=info.limit
            )
            return AccessDecision.reject(limiter.rejection(info, config, endpoint=matcher.name))

        ctx.rate_limit = info
        if config.skip_successful or config.skip_failed:
            ctx.on_complete(settle_hook(limiter, config, key, info))
        return AccessDecision.proceed()
