"""
Orchestration error hierarchy.

Every engine raises one of these; the API layer maps them to HTTP status
codes in one place (see app.main).
"""


class OrchestrationError(Exception):
    """Base class for all orchestration-layer errors."""

    status_code: int = 500

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def error_type(self) -> str:
        return type(self).__name__


class ValidationError(OrchestrationError):
    """Malformed registration: missing fields, bad enum, weight mismatch, cycles."""
    status_code = 400


class ConflictError(ValidationError):
    """Duplicate id/version, or an active deployment already holds the slot."""
    status_code = 409


class NotFoundError(OrchestrationError):
    """Unknown pipeline / test / algorithm / deployment / version / alert."""
    status_code = 404


class StateError(OrchestrationError):
    """Operation not allowed in the entity's current lifecycle state."""
    status_code = 409


class NotEligibleError(OrchestrationError):
    """Caller was gated out of an A/B test (traffic, targeting, user lists)."""
    status_code = 403


class CapacityError(OrchestrationError):
    """The overflow queue itself is full. Over-ceiling work is otherwise queued."""
    status_code = 503


class ExecutionError(OrchestrationError):
    """A stage or variant call failed and the failure is surfaced upward."""
    status_code = 502
