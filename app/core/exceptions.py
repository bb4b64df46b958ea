"""
Error taxonomy for the grant model.

Every error carries an HTTP status and a machine-readable code so the
exception handlers in app.main can render a uniform body:

    {"error": {"code": "INVALID_TRANSITION", "message": "...", "details": {...}}}
"""
from typing import Any, Dict, Optional
from fastapi import status


class GrantError(Exception):
    """Base class for grant model errors."""
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code: str = "GRANT_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class NotFound(GrantError):
    """Referenced permission set, table access, field access, profile, user or edge does not exist."""
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: Any, details: Optional[Dict[str, Any]] = None):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} not found: {identifier}", details)


class Conflict(GrantError):
    """Uniqueness violation."""
    status_code = status.HTTP_409_CONFLICT
    error_code = "CONFLICT"


class InvalidTransition(GrantError):
    """A flag change would break the table/field hierarchy."""
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error_code = "INVALID_TRANSITION"


class DependencyBlocked(GrantError):
    """Deletion refused because dependents still exist."""
    status_code = status.HTTP_409_CONFLICT
    error_code = "DEPENDENCY_BLOCKED"


class CommitFailed(GrantError):
    """
    A staged commit was rolled back.

    Wraps the first failing operation and takes its status code, so a
    NotFound raised by a concurrent detach still surfaces as 404.
    """
    error_code = "COMMIT_FAILED"

    def __init__(self, op_description: str, cause: Exception):
        self.cause = cause
        self.status_code = getattr(cause, "status_code", status.HTTP_500_INTERNAL_SERVER_ERROR)
        details: Dict[str, Any] = {"failed_op": op_description}
        if isinstance(cause, GrantError):
            details["cause"] = {"code": cause.error_code, "message": cause.message}
        else:
            details["cause"] = {"code": type(cause).__name__, "message": str(cause)}
        super().__init__(f"Commit rolled back at {op_description}", details)
