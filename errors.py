"""
Domain errors for the booking marketplace.

Handlers and lifecycle functions raise these; the exception handlers in
``main`` turn them into ``{"success": false, "message": ..., "code": ...}``
JSON bodies with the matching HTTP status.
"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    """Base class for all errors surfaced to API clients."""

    status_code: int = 500

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        super().__init__(self.message)

    def to_body(self) -> Dict[str, Any]:
        return {"success": False, "message": self.message, "code": self.code}


class ValidationError(DomainError):
    """Missing or malformed required field, or a rejected state change."""

    status_code = 400


class InvalidInputError(DomainError):
    """Malformed identifier or unsupported action value."""

    status_code = 400


class AuthError(DomainError):
    status_code = 401


class ForbiddenError(DomainError):
    status_code = 403


class NotFoundError(DomainError):
    status_code = 404


class DependencyError(DomainError):
    """Document store, identity verifier or payment gateway call failed."""

    status_code = 500
