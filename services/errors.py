"""Error types surfaced by the data and auth services."""
from __future__ import annotations

from typing import Any, Dict, Optional

__all__ = [
    "ApiError",
    "AuthenticationError",
    "AuthorizationError",
    "ConflictError",
    "StorageError",
    "ValidationError",
]


class ApiError(Exception):
    """Base class for errors that map onto an HTTP status and a client-safe message."""

    status = 500
    default_message = "Unexpected server error."

    def __init__(self, message: Optional[str] = None, *, status: Optional[int] = None):
        self.message = message or self.default_message
        if status is not None:
            self.status = status
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message}


class ValidationError(ApiError):
    """Raised when a request body is missing required fields or has the wrong shape."""

    status = 400
    default_message = "Invalid request."


class AuthenticationError(ApiError):
    status = 401
    default_message = "Invalid credentials."


class AuthorizationError(ApiError):
    """Raised when the acting user may not touch a collection or record."""

    status = 403
    default_message = "Permission denied."

    def __init__(self, message: Optional[str] = None, *, target: Optional[str] = None):
        super().__init__(message)
        self.target = target

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        if self.target:
            payload["target"] = self.target
        return payload


class ConflictError(ApiError):
    status = 409
    default_message = "Resource already exists."


class StorageError(ApiError):
    """Raised when the database layer fails; the message never carries SQL details."""

    status = 500
    default_message = "Database error."
