"""
Shared error handling for the VIVK access governance layer.
"""

from datetime import datetime, timezone
from typing import Dict, Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    model_config = ConfigDict(populate_by_name=True)

    error: str
    code: str
    retryable: bool = False
    reset_at: Optional[int] = Field(default=None, alias="resetAt")
    retry_after: Optional[int] = Field(default=None, alias="retryAfter")
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    )

    def to_body(self) -> Dict[str, Any]:
        """Serialize with camelCase keys, dropping unset optional fields."""
        return self.model_dump(by_alias=True, exclude_none=True)


class GovernanceError(Exception):
    """Base exception for the governance layer."""

    status_code = 500
    retryable = False

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None,
                 retryable: Optional[bool] = None, status_code: Optional[int] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        if retryable is not None:
            self.retryable = retryable
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            error=self.message,
            code=self.code,
            retryable=self.retryable,
        )


class ConfigurationError(GovernanceError):
    """Unknown policy or breaker name, invalid settings."""

    def __init__(self, message: str = "Invalid configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class RateLimitExceededError(GovernanceError):
    """Quota exhausted for the current window."""

    status_code = 429
    retryable = True

    def __init__(self, message: str = "Too many requests. Please try again later.",
                 reset_at: Optional[int] = None, retry_after: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__("RATE_LIMIT_EXCEEDED", message, details)
        self.reset_at = reset_at
        self.retry_after = retry_after

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(
            error=self.message,
            code=self.code,
            retryable=True,
            reset_at=self.reset_at,
            retry_after=self.retry_after,
        )


class MaintenanceModeError(GovernanceError):
    """Service is in maintenance mode."""

    status_code = 503
    retryable = True

    def __init__(self, message: str = "Service is under maintenance. Please try again later.",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__("MAINTENANCE_MODE", message, details)


class ForbiddenOriginError(GovernanceError):
    """Cross-origin mutation attempt."""

    status_code = 403

    def __init__(self, message: str = "Forbidden", details: Optional[Dict[str, Any]] = None):
        super().__init__("FORBIDDEN", message, details)


class CircuitOpenError(GovernanceError):
    """Raised when a circuit breaker blocks a call."""

    status_code = 503
    retryable = True

    def __init__(self, name: str, next_attempt_time: float, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            "SERVICE_UNAVAILABLE",
            f"Circuit breaker '{name}' is OPEN - blocking call",
            details,
        )
        self.name = name
        self.next_attempt_time = next_attempt_time

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(
            error="Service is temporarily unavailable. Please try again later.",
            code=self.code,
            retryable=True,
            reset_at=int(self.next_attempt_time),
        )


class CounterStoreUnavailableError(GovernanceError):
    """Window counter backend could not be reached."""

    status_code = 503
    retryable = True

    def __init__(self, message: str = "Counter store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("COUNTER_STORE_UNAVAILABLE", message, details)


class ExternalServiceError(GovernanceError):
    """External service errors."""

    status_code = 502
    retryable = True

    def __init__(self, service: str, message: str = "External service error",
                 details: Optional[Dict[str, Any]] = None, retryable: Optional[bool] = None):
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details, retryable=retryable)
        self.service = service
