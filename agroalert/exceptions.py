"""
Custom exceptions for AgroAlert.

Nothing here is raised to the end user. Provider failures are recovered by
fallback or retry, poison findings are dropped, dispatch failures are retried
on the next tick.
"""

from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    """Standard error codes for AgroAlert."""
    UNKNOWN_ERROR = "E1000"
    VALIDATION_ERROR = "E1001"

    # External providers (2xxx)
    PROVIDER_UNAVAILABLE = "E2000"
    PROVIDER_TIMEOUT = "E2001"
    CIRCUIT_OPEN = "E2002"

    # Channel delivery (3xxx)
    CHANNEL_ERROR = "E3000"
    NO_RECIPIENT = "E3001"

    # Alert pipeline (4xxx)
    POISON_FINDING = "E4000"
    STORE_ERROR = "E4001"


class AgroAlertError(Exception):
    """Base exception for AgroAlert."""

    error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR

    def __init__(self, message: str, cause: Optional[Exception] = None, **details: Any):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a dict for structured logging."""
        result: dict[str, Any] = {
            "error_code": self.error_code.value,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __str__(self) -> str:
        return f"[{self.error_code.value}] {self.message}"


class ProviderUnavailableError(AgroAlertError):
    """Weather provider or messaging channel cannot be reached or is mis-configured."""

    error_code = ErrorCode.PROVIDER_UNAVAILABLE

    def __init__(self, provider: str, message: str, cause: Optional[Exception] = None):
        super().__init__(message, cause=cause, provider=provider)
        self.provider = provider


class CircuitOpenError(ProviderUnavailableError):
    """Raised when a circuit breaker is open and rejects a call."""

    error_code = ErrorCode.CIRCUIT_OPEN


class ChannelError(AgroAlertError):
    """A message could not be delivered through the outbound channel."""

    error_code = ErrorCode.CHANNEL_ERROR


class PoisonFindingError(AgroAlertError):
    """A finding that cannot produce a valid dedup key."""

    error_code = ErrorCode.POISON_FINDING


class StoreError(AgroAlertError):
    """The alert store rejected an operation."""

    error_code = ErrorCode.STORE_ERROR
