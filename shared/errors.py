"""
Shared error handling for the Campfire admission gateway.

Every rejection the gateway can produce is one of the exceptions below. Each
carries a stable ``code`` (the rejection kind), the HTTP status it maps to and
optional response headers, so the composition root can render any of them
without knowing which stage raised it.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    error: str
    code: str
    details: Dict[str, Any] = Field(default_factory=dict)


class AccessLayerException(Exception):
    """Base exception for admission failures."""

    status_code: int = 400

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        status_code: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        self.headers = headers or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(error=self.message, code=self.code, details=self.details)


class ValidationError(AccessLayerException):
    """Malformed request body or parameters."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("BAD_REQUEST", message, details)


class AuthenticationError(AccessLayerException):
    """No identity could be established for the request."""

    status_code = 401

    def __init__(self, message: str = "Authentication required", details: Optional[Dict[str, Any]] = None):
        super().__init__("UNAUTHORIZED", message, details)


class InvalidCredentialError(AuthenticationError):
    """A credential was presented but is malformed, expired or forged.

    All of those cases share one code so callers cannot probe which check
    failed.
    """

    def __init__(self, message: str = "Invalid token", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.code = "INVALID_CREDENTIAL"


class AuthorizationError(AccessLayerException):
    """Role or ownership denial."""

    status_code = 403

    def __init__(self, message: str = "Insufficient permissions", details: Optional[Dict[str, Any]] = None):
        super().__init__("FORBIDDEN", message, details)


class NotFoundError(AccessLayerException):
    """The resource an ownership check targets does not exist."""

    status_code = 404

    def __init__(self, message: str = "Resource not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class RateLimitError(AccessLayerException):
    """Admission denied by throttling."""

    status_code = 429

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        details: Optional[Dict[str, Any]] = None,
        *,
        status_code: int = 429,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__("RATE_LIMITED", message, details, status_code=status_code, headers=headers)


class UpstreamUnavailableError(AccessLayerException):
    """The shared counter store could not be reached.

    Recovered internally by fallback counting; never rendered to a caller.
    """

    status_code = 503

    def __init__(self, service: str, message: str = "Service unreachable", details: Optional[Dict[str, Any]] = None):
        super().__init__("UPSTREAM_UNAVAILABLE", f"{service}: {message}", details)
        self.service = service


class InternalError(AccessLayerException):
    """Unexpected failure inside the gateway."""

    status_code = 500

    def __init__(self, message: str = "Internal server error", details: Optional[Dict[str, Any]] = None):
        super().__init__("INTERNAL_ERROR", message, details)
