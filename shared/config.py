"""
Shared configuration management for the Campfire admission gateway.
"""

import hashlib
import json
from typing import Annotated, Any, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


# Per-environment request budgets: (window_ms, max_requests)
RATE_LIMIT_DEFAULTS: Dict[str, Dict[str, tuple]] = {
    "development": {
        "general": (15 * 60 * 1000, 1000),
        "auth": (15 * 60 * 1000, 10),
        "upload": (60 * 1000, 5),
        "rtb": (1000, 100),
    },
    "staging": {
        "general": (15 * 60 * 1000, 2000),
        "auth": (15 * 60 * 1000, 20),
        "upload": (60 * 1000, 10),
        "rtb": (1000, 500),
    },
    "production": {
        "general": (15 * 60 * 1000, 5000),
        "auth": (15 * 60 * 1000, 50),
        "upload": (60 * 1000, 25),
        "rtb": (1000, 10000),
    },
}

RATE_LIMIT_MESSAGES = {
    "general": "Too many requests from this IP address",
    "auth": "Too many authentication attempts",
    "upload": "Too many upload attempts",
    "rtb": "RTB rate limit exceeded - maximum bids per second reached",
}

MIN_JWT_SECRET_LENGTH = 32
DEVELOPMENT_API_KEY = "development-api-key"
LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}

TOKEN_EXPIRY_DEFAULTS = {
    "development": 7 * 24 * 3600,
    "staging": 2 * 3600,
    "production": 3600,
}


class BaseConfig(BaseSettings):
    """Process-wide settings, loaded once at startup and immutable afterwards."""

    model_config = SettingsConfigDict(
        env_prefix="CAMPFIRE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # Environment
    env: str = "development"
    log_level: str = "info"

    # Shared counter store
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout: float = 0.25
    store_failure_threshold: int = 3
    store_recovery_timeout: float = 5.0

    # Credentials
    jwt_secret: Optional[str] = None
    jwt_expires_in: Optional[int] = None
    jwt_issuer: Optional[str] = "campfire-ads-platform"
    jwt_audience: Optional[str] = "campfire-ads-api"
    jwt_algorithm: str = "HS256"
    # None means the environment default: a fixed key in development, none elsewhere
    api_keys: Annotated[Optional[List[str]], NoDecode] = None

    # Rate limiting overrides; None means use the environment default
    rate_limit_window_ms: Optional[int] = None
    rate_limit_max_requests: Optional[int] = None
    auth_rate_limit_max_requests: Optional[int] = None
    upload_rate_limit_max_requests: Optional[int] = None
    rtb_max_requests_per_second: Optional[int] = None
    rtb_reconcile_interval: float = 1.0
    endpoint_rate_limits: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    @field_validator("env")
    @classmethod
    def _known_env(cls, value: str) -> str:
        value = value.lower()
        if value not in RATE_LIMIT_DEFAULTS:
            raise ValueError(f"Unknown environment '{value}'")
        return value

    @field_validator("api_keys", mode="before")
    @classmethod
    def _split_api_keys(cls, value: Any) -> Any:
        if isinstance(value, str):
            stripped = value.strip()
            if stripped.startswith("["):
                return json.loads(stripped)
            return [key.strip() for key in stripped.split(",") if key.strip()]
        return value

    @model_validator(mode="after")
    def _resolve_credentials(self) -> "BaseConfig":
        errors = []
        production = self.env == "production"

        if not self.jwt_secret:
            if production:
                errors.append("CAMPFIRE_JWT_SECRET must be set in production")
            else:
                derived = hashlib.sha256(f"campfire-ads-{self.env}".encode()).hexdigest()
                object.__setattr__(self, "jwt_secret", derived)
        elif len(self.jwt_secret) < MIN_JWT_SECRET_LENGTH:
            errors.append(f"JWT secret must be at least {MIN_JWT_SECRET_LENGTH} characters long")
        elif production and "development" in self.jwt_secret.lower():
            errors.append("Development JWT secret detected in production")

        if self.api_keys is None:
            default_keys = [DEVELOPMENT_API_KEY] if self.env == "development" else []
            object.__setattr__(self, "api_keys", default_keys)
        if production:
            if not self.api_keys:
                errors.append("CAMPFIRE_API_KEYS must be set in production")
            elif DEVELOPMENT_API_KEY in self.api_keys:
                errors.append("Development API key detected in production")
            host = urlparse(self.redis_url).hostname or ""
            if host in LOCAL_HOSTS:
                errors.append("Production CAMPFIRE_REDIS_URL must be set and not localhost")

        if errors:
            raise ValueError("; ".join(errors))

        if self.jwt_expires_in is None:
            object.__setattr__(self, "jwt_expires_in", TOKEN_EXPIRY_DEFAULTS[self.env])
        return self

    def rate_limit_defaults(self, kind: str) -> tuple:
        """Return (window_ms, max_requests) for a preset, honouring overrides."""
        window_ms, max_requests = RATE_LIMIT_DEFAULTS[self.env][kind]
        overrides = {
            "general": self.rate_limit_max_requests,
            "auth": self.auth_rate_limit_max_requests,
            "upload": self.upload_rate_limit_max_requests,
            "rtb": self.rtb_max_requests_per_second,
        }
        if kind == "general" and self.rate_limit_window_ms:
            window_ms = self.rate_limit_window_ms
        if overrides.get(kind):
            max_requests = overrides[kind]
        return window_ms, max_requests

    def rate_limit_message(self, kind: str) -> str:
        return RATE_LIMIT_MESSAGES.get(kind, "Too many requests, please try again later")


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"


def get_config(service_name: str, port: int, **overrides: Any) -> ServiceConfig:
    """Build configuration for a service. Call once at process start."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
