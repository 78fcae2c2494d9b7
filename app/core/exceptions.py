"""
Custom exception classes for FleetSync Backend.
"""
from typing import Any, Dict, Optional


class FleetSyncException(Exception):
    """Base exception class for FleetSync application."""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class AuthenticationError(FleetSyncException):
    """Raised when authentication fails."""

    def __init__(
        self,
        message: str = "Authentication failed",
        code: str = "AUTHENTICATION_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, code=code, status_code=401, details=details)


class AuthorizationError(FleetSyncException):
    """Raised when a user doesn't have permission."""

    def __init__(
        self,
        message: str = "Not authorized",
        code: str = "AUTHORIZATION_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, code=code, status_code=403, details=details)


class NotFoundError(FleetSyncException):
    """Raised when a resource is not found."""

    def __init__(
        self,
        message: str = "Resource not found",
        code: str = "NOT_FOUND",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, code=code, status_code=404, details=details)


class InvalidTransitionError(FleetSyncException):
    """Raised when a job status change is not allowed by the state machine."""

    def __init__(
        self,
        message: str = "Invalid job status transition",
        code: str = "INVALID_TRANSITION",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, code=code, status_code=409, details=details)


class JobLockedError(FleetSyncException):
    """Raised when another runner already holds the job."""

    def __init__(
        self,
        message: str = "Job is locked by another runner",
        code: str = "JOB_LOCKED",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, code=code, status_code=409, details=details)


class ExternalPlatformError(FleetSyncException):
    """Raised when there's an error with the GP51 platform."""

    def __init__(
        self,
        message: str = "GP51 platform error",
        code: str = "GP51_ERROR",
        details: Optional[Dict[str, Any]] = None,
        status_code: int = 502,
        error_kind: str = "platform_error",
    ):
        self.error_kind = error_kind
        super().__init__(message=message, code=code, status_code=status_code, details=details)


class RetryableError(ExternalPlatformError):
    """Transient platform error (timeout, rate limit, 5xx) that can be retried."""

    def __init__(
        self,
        message: str = "Retryable error",
        error_kind: str = "transient",
        details: Optional[Dict[str, Any]] = None,
        retry_after: Optional[float] = None,
    ):
        details = details or {}
        if retry_after is not None:
            details["retry_after"] = retry_after
        super().__init__(
            message=message,
            code="RETRYABLE_ERROR",
            status_code=503,
            details=details,
            error_kind=error_kind
        )


class RecordValidationError(ExternalPlatformError):
    """Raised when the platform returns a malformed record. Never retried."""

    def __init__(
        self,
        message: str = "Malformed record from GP51",
        details: Optional[Dict[str, Any]] = None,
        step: str = "validate",
    ):
        self.step = step
        super().__init__(
            message=message,
            code="RECORD_VALIDATION_ERROR",
            status_code=422,
            details=details,
            error_kind="validation"
        )


class FatalPlatformError(ExternalPlatformError):
    """Raised when credentials are rejected or the platform schema changed."""

    def __init__(
        self,
        message: str = "GP51 rejected the request",
        details: Optional[Dict[str, Any]] = None,
        error_kind: str = "authentication",
    ):
        super().__init__(
            message=message,
            code="GP51_FATAL_ERROR",
            status_code=401,
            details=details,
            error_kind=error_kind
        )


class StructuralError(FleetSyncException):
    """Raised when the record store is unreachable or configuration is invalid."""

    def __init__(
        self,
        message: str = "Record store unavailable",
        code: str = "STRUCTURAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, code=code, status_code=503, details=details)
