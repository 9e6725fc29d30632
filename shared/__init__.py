"""
Shared utilities for the Campfire admission gateway.

This package aggregates common building blocks consumed by the services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- circuit_breaker: Protection for calls to the shared counter store
- base_service: FastAPI service skeleton

Do not import from service packages into shared/.
"""
