"""
Error taxonomy for the Society Management API.

Every failure the workflow can produce is a WorkflowError subclass that
knows its HTTP status; main.py turns them into JSON responses.
"""

from typing import Optional


class WorkflowError(Exception):
    status_code = 500
    code = "error"
    default_message = "Server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(WorkflowError):
    status_code = 400
    code = "validation_error"
    default_message = "Invalid request"


class Unauthenticated(WorkflowError):
    status_code = 401
    code = "unauthenticated"
    default_message = "Invalid or expired token"


class Forbidden(WorkflowError):
    status_code = 403
    code = "forbidden"
    default_message = "Access denied"


class NotFound(WorkflowError):
    status_code = 404
    code = "not_found"

    def __init__(self, resource: str = "Resource", message: Optional[str] = None):
        self.resource = resource
        super().__init__(message or f"{resource} not found")


class InvalidTransition(WorkflowError):
    status_code = 400
    code = "invalid_transition"
    default_message = "Operation not allowed in the current state"


class NotActive(InvalidTransition):
    code = "not_active"
    default_message = "Petition is not active"


class AlreadySigned(WorkflowError):
    status_code = 400
    code = "already_signed"
    default_message = "You have already signed this petition"


class AlreadyUpvoted(WorkflowError):
    status_code = 400
    code = "already_upvoted"
    default_message = "You have already upvoted this idea"


class ConflictError(WorkflowError):
    """Raised by a store when a conditional write loses a race."""

    status_code = 409
    code = "conflict"
    default_message = "Document was modified concurrently"


class StoreFailure(WorkflowError):
    status_code = 500
    code = "store_failure"
    default_message = "Database error"
