"""
Workflow engine error taxonomy.

Every error raised by the engine derives from WorkflowError and carries the
HTTP status it maps to, so the API layer needs a single exception handler.
"""

from typing import Any, Dict, List, Optional


class WorkflowError(Exception):
    """Base exception for workflow engine errors."""
    status_code = 500
    error_type = "internal_error"

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"detail": self.message, "error_type": self.error_type}
        body.update({k: v for k, v in self.details.items() if v is not None})
        return body


class ValidationError(WorkflowError):
    """Malformed or missing input."""
    status_code = 400
    error_type = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message, field=field)


class Unauthenticated(WorkflowError):
    status_code = 401
    error_type = "unauthenticated"


class Forbidden(WorkflowError):
    status_code = 403
    error_type = "forbidden"


class NotFound(WorkflowError):
    status_code = 404
    error_type = "not_found"


class LifecycleViolation(WorkflowError):
    """Request is well-formed but not allowed in the entity's current state."""
    status_code = 400
    error_type = "lifecycle_violation"


class InvalidTransition(LifecycleViolation):
    """Raised when the transition guard rejects a status change."""
    error_type = "invalid_transition"

    def __init__(self, entity: str, from_state: str, to_state: str, allowed: List[str] = None):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed or []

        allowed_str = f" Allowed transitions from '{from_state}': {self.allowed}" if self.allowed else ""
        message = f"Invalid transition for {entity}: '{from_state}' -> '{to_state}'.{allowed_str}"
        super().__init__(
            message,
            entity=entity,
            current_status=from_state,
            requested_status=to_state,
            allowed=self.allowed,
        )


class Conflict(WorkflowError):
    status_code = 409
    error_type = "conflict"


class RateLimited(WorkflowError):
    status_code = 429
    error_type = "rate_limited"


class UpstreamError(WorkflowError):
    """Payment gateway failure (unreachable, timed out, malformed response)."""
    status_code = 500
    error_type = "upstream_error"
