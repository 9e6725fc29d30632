"""
Test doubles shared by the Gateway tests.
"""

from typing import Dict, Optional
from unittest.mock import MagicMock


class ManualClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now: int = 0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def make_request(
    path: str = "/api/podcasts/p1",
    method: str = "GET",
    headers: Optional[Dict[str, str]] = None,
    host: str = "10.0.0.1",
    path_params: Optional[Dict[str, str]] = None,
):
    """Request stand-in carrying only what admission stages read."""
    request = MagicMock()
    request.method = method
    request.url.path = path
    request.headers = headers or {}
    request.client.host = host
    request.path_params = path_params or {}
    return request


# Minimal settings a production config accepts
PRODUCTION_SETTINGS = {
    "env": "production",
    "jwt_secret": "0123456789abcdef0123456789abcdef-prod",
    "api_keys": ["prod-api-key"],
    "redis_url": "redis://redis.internal:6379/0",
}
