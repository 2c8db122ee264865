"""
Error taxonomy for the authorization and lifecycle core.

Every business outcome that stops an action is raised as a subclass of
``CareflowError``.  Each carries the status code the boundary layer
should surface, and a message that is safe to show to the caller: it
never includes other principals' data or the contents of the permission
registry.  None of these errors are retried by the core.
"""

from __future__ import annotations

from typing import Any


class CareflowError(Exception):
    """Base class for all business errors raised by the core."""

    status_code: int = 400
    error_code: str = "careflow_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class AuthenticationRequired(CareflowError):
    """No principal, or the principal could not be resolved."""

    status_code = 401
    error_code = "authentication_required"


class PermissionDenied(CareflowError):
    """The role lacks the permission, or it is disabled for the user."""

    status_code = 403
    error_code = "permission_denied"


class ResourceAccessDenied(CareflowError):
    """The principal is not entitled to the specific target record."""

    status_code = 403
    error_code = "resource_access_denied"


class NotFound(CareflowError):
    """The target record does not exist."""

    status_code = 404
    error_code = "not_found"


class Conflict(CareflowError):
    """Scheduling overlap, duplicate booking, or a lost conditional write."""

    status_code = 409
    error_code = "conflict"


class InvalidTransition(CareflowError):
    """The status change is not in the transition table, or the record is immutable."""

    status_code = 400
    error_code = "invalid_transition"


class RegistryError(ValueError):
    """The permission registry configuration is malformed."""
    pass


def to_problem(exc: CareflowError) -> dict[str, Any]:
    """Map a business error to a response body for the boundary layer."""
    return {
        "status": exc.status_code,
        "error": exc.error_code,
        "message": exc.message,
    }
