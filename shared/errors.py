"""
Shared error handling for the Flag Gate service layer.
"""

from typing import Dict, Any, Optional

from opentelemetry import trace
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class FlagServiceException(Exception):
    """Base exception for Flag Gate services."""

    status_code = 400

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


class AuthenticationError(FlagServiceException):
    """Authentication-related errors."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class AuthorizationError(FlagServiceException):
    """Authorization-related errors."""

    status_code = 403

    def __init__(self, message: str = "Authorization failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHORIZATION_ERROR", message, details)


class ValidationError(FlagServiceException):
    """Malformed caller input. Never reaches the evaluation fail-safe path."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class FlagNotFoundError(FlagServiceException):
    """Administrative operation targeted a flag that does not exist."""

    status_code = 404

    def __init__(self, name: str, environment: str):
        super().__init__(
            "FLAG_NOT_FOUND",
            f"Flag '{name}' does not exist in environment '{environment}'",
            {"name": name, "environment": environment}
        )


class DuplicateFlagError(FlagServiceException):
    """A flag with the same (name, environment) already exists."""

    status_code = 409

    def __init__(self, name: str, environment: str):
        super().__init__(
            "DUPLICATE_FLAG",
            f"Flag '{name}' already exists in environment '{environment}'",
            {"name": name, "environment": environment}
        )


class DatabaseError(FlagServiceException):
    """
    Storage failure.

    The message is generic: driver and SQL detail is logged
    where the failure is caught and never placed on the exception.
    """

    status_code = 503

    def __init__(self, operation: str, message: str = "Storage operation failed"):
        super().__init__("DATABASE_ERROR", message, {"operation": operation})
        self.operation = operation


class ServiceError(FlagServiceException):
    """Service-related errors."""

    status_code = 500

    def __init__(self, message: str = "Service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERVICE_ERROR", message, details)
