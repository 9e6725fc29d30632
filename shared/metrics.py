"""
Shared metrics configuration for the Campfire admission gateway.
"""

import threading
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info, generate_latest

# Admission stages are budgeted in milliseconds; default buckets are too coarse.
STAGE_BUCKETS = (0.0001, 0.00025, 0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25)


class MetricsCollector:
    """Centralized metrics collector for services.

    Each collector owns its own registry so that several service instances
    (as in tests) can coexist in one process.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        self._setup_admission_metrics()

    def _setup_admission_metrics(self):
        """Set up admission pipeline metrics."""
        self._metrics["admission_decisions_total"] = Counter(
            "admission_decisions_total",
            "Terminal admission decisions",
            ["pipeline", "outcome", "kind"],
            registry=self.registry
        )

        self._metrics["admission_stage_duration_seconds"] = Histogram(
            "admission_stage_duration_seconds",
            "Time spent in each admission stage",
            ["stage"],
            buckets=STAGE_BUCKETS,
            registry=self.registry
        )

        self._metrics["rate_limit_fallback_total"] = Counter(
            "rate_limit_fallback_total",
            "Rate limit checks served by the process-local fallback counter",
            ["policy"],
            registry=self.registry
        )

        self._metrics["rtb_reconcile_total"] = Counter(
            "rtb_reconcile_total",
            "Fast-path reconciliation passes against the shared store",
            ["status"],
            registry=self.registry
        )

        self._metrics["rtb_tracked_keys"] = Gauge(
            "rtb_tracked_keys",
            "Keys currently held by the fast-path local counter",
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def generate(self) -> bytes:
        """Render the registry in Prometheus exposition format."""
        return generate_latest(self.registry)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_admission(self, pipeline: str, outcome: str, kind: str = "none"):
        self._metrics["admission_decisions_total"].labels(
            pipeline=pipeline, outcome=outcome, kind=kind
        ).inc()

    def observe_stage(self, stage: str, duration: float):
        self._metrics["admission_stage_duration_seconds"].labels(stage=stage).observe(duration)

    def record_rate_limit_fallback(self, policy: str):
        self._metrics["rate_limit_fallback_total"].labels(policy=policy).inc()

    def record_reconcile(self, status: str, tracked_keys: Optional[int] = None):
        self._metrics["rtb_reconcile_total"].labels(status=status).inc()
        if tracked_keys is not None:
            self._metrics["rtb_tracked_keys"].set(tracked_keys)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Create a metrics collector for a service."""
    return MetricsCollector(service_name, registry=registry)
