"""
Shared fixtures for Gateway tests.
"""

import pytest

from shared.config import get_config
from shared.metrics import MetricsCollector

from .helpers import ManualClock


@pytest.fixture
def clock():
    return ManualClock(0)


@pytest.fixture
def metrics():
    return MetricsCollector("gateway-test")


@pytest.fixture
def gateway_config():
    return get_config(
        "gateway",
        8000,
        env="development",
        jwt_secret="gateway-test-secret-0123456789abcdef",
        api_keys=["test-api-key"],
        rate_limit_max_requests=5,
        auth_rate_limit_max_requests=3,
        upload_rate_limit_max_requests=2,
        rtb_max_requests_per_second=3,
        endpoint_rate_limits={"POST /api/campaigns": {"window_ms": 60000, "max_requests": 2}},
    )
