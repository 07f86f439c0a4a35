"""
Engine Error Taxonomy

Every failure that crosses a component boundary is one of these types,
so callers can decide between retrying, reconciling, or surfacing
the error to staff.

    NetworkError        transient, retryable (queued when offline)
    InvalidTransition   rejected by the order state machine
    ValidationError     malformed payload, never succeeds on retry
    Conflict            server diverged from the client's view; reconcile
    AuthorizationError  session rejected by the backend
    QueueLockTimeout    durable queue file lock not acquired
    MutationNotFound    unknown offline queue entry
"""

from typing import Optional, Union


class EngineError(Exception):
    """Base class for all engine errors."""

    retryable: bool = False

    def __init__(self, message: str, entity_id: Optional[Union[int, str]] = None):
        super().__init__(message)
        self.message = message
        self.entity_id = entity_id

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "entity_id": self.entity_id,
            "retryable": self.retryable,
        }


class NetworkError(EngineError):
    """Backend unreachable, timed out, or answered with a 5xx."""

    retryable = True


class InvalidTransition(EngineError):
    """The requested status change is not an edge of the state machine."""


class RoleNotPermitted(InvalidTransition):
    """The actor's role may not drive this edge."""


class ValidationError(EngineError):
    """Payload rejected as malformed."""


class Conflict(EngineError):
    """Server state no longer matches what the client assumed."""


class AuthorizationError(EngineError):
    """Backend refused the session (401/403)."""


class QueueLockTimeout(EngineError):
    """Could not acquire the offline queue lock in time."""

    retryable = True


class MutationNotFound(EngineError):
    """No queued mutation with that id."""


# Errors the offline queue must never hold on to.
TERMINAL_ERRORS = (InvalidTransition, ValidationError, Conflict, AuthorizationError)
