# core/errors.py
"""
Service error hierarchy.

Each error carries the HTTP status the API layer answers with and an optional
``details`` payload. The FastAPI exception handlers in the caption API turn
these into the standard response envelope.
"""
from typing import Any, Optional


class ServiceError(Exception):
    """Base class for errors that are expected and reported to the caller."""
    status_code: int = 500

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidRequestError(ServiceError):
    status_code = 400


class AuthenticationError(ServiceError):
    status_code = 401

    def __init__(self, message: str = "Authentication required", details: Optional[Any] = None):
        super().__init__(message, details)


class AuthorizationError(ServiceError):
    status_code = 403

    def __init__(self, message: str = "Insufficient permissions", details: Optional[Any] = None):
        super().__init__(message, details)


class RecordNotFoundError(AuthorizationError):
    """A row the caller cannot see. Under RLS, missing and not-owned look the same."""
    status_code = 404

    def __init__(self, message: str = "File not found or access denied", details: Optional[Any] = None):
        super().__init__(message, details)


class DatabaseError(ServiceError):
    status_code = 500


class ExternalServiceError(ServiceError):
    status_code = 503

    def __init__(self, service: str, message: str = "External service error", details: Optional[Any] = None):
        super().__init__(f"{service}: {message}", details)
        self.service = service


class StorageError(ExternalServiceError):
    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__("Storage", message, details)


class AnalysisError(ExternalServiceError):
    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__("AI", message, details)
