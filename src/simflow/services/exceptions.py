"""Service-layer exceptions.

The API maps each class to an HTTP status code; services raise them for
business failures that the caller must act on.
"""

from __future__ import annotations

from typing import Any


class ServiceError(Exception):
    """Base class for service-layer failures."""

    code = "SERVICE_ERROR"

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)


class NotFoundError(ServiceError):
    """Raised when a referenced row does not exist."""

    code = "NOT_FOUND"


class ValidationError(ServiceError):
    """Raised when input or current state rejects the operation."""

    code = "VALIDATION_ERROR"


class ConflictError(ServiceError):
    """Raised when the operation conflicts with dependent rows."""

    code = "CONFLICT"
