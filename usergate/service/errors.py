from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Stable error kinds surfaced by the credential and session engine."""

    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    VALIDATION = "validation_error"
    CONFLICT = "conflict"
    INTERNAL = "server_error"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class carries an :class:`ErrorKind`, the HTTP
    ``status_code`` it maps to, and the ``error_code`` string placed in the
    error envelope:
    - unauthorized (401)
    - not_found (404)
    - validation_error (422)
    - conflict (409)
    - server_error (500)
    """

    kind: ErrorKind = ErrorKind.VALIDATION
    status_code: int = 422

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail or {}

    @property
    def error_code(self) -> str:
        return self.kind.value


class ValidationError(ServiceError):
    """Request validation failed (422)."""
    kind = ErrorKind.VALIDATION
    status_code = 422


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    kind = ErrorKind.UNAUTHORIZED
    status_code = 401


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    kind = ErrorKind.CONFLICT
    status_code = 409


class ServerError(ServiceError):
    """Internal server error (500)."""
    kind = ErrorKind.INTERNAL
    status_code = 500


__all__ = [
    "ErrorKind",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
