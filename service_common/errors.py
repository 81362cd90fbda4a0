"""
Shared error handling for the service-common runtime.

Callers distinguish failures by exception type, never by message text:
verification rejections map to "unauthorized", an open circuit maps to
"temporarily unavailable".
"""

from typing import Any, Dict, Optional

from opentelemetry import trace
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class AccessLayerException(Exception):
    """Base exception for runtime components."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class AuthenticationError(AccessLayerException):
    """Authentication-related errors."""

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class ValidationError(AccessLayerException):
    """Malformed request data, e.g. a missing binding header."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class CacheUnavailableError(AccessLayerException):
    """The remote cache is required but could not be reached at startup."""

    def __init__(self, message: str = "Remote cache unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_UNAVAILABLE", message, details)


class BrokerUnavailableError(AccessLayerException):
    """The pub/sub backend could not be reached at startup."""

    def __init__(self, message: str = "Event broker unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("BROKER_UNAVAILABLE", message, details)


class JWKSFetchError(AccessLayerException):
    """The remote key set could not be retrieved or parsed."""

    def __init__(self, message: str = "JWKS fetch failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("JWKS_FETCH_FAILED", message, details)
