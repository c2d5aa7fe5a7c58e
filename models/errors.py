"""
Error taxonomy for the follow-up queue engine.

  ValidationError         malformed input, bad page size, never retried
    InvalidTransitionError  lifecycle transition not allowed from current state
  NotFoundError           unknown item id
  ConflictError           concurrent mutation on the same item; caller may retry
  CollaboratorError       mailbox or persistent store unavailable
  AdvisorUnavailableError suggestion backend unusable; always resolved by fallback
  ConfigurationError      invalid settings, raised at startup
"""
from __future__ import annotations

from typing import Any


class QueueError(Exception):
    """Base class. ``code`` is a stable machine-readable identifier."""

    code = "QUEUE_ERROR"
    retryable = False

    def __init__(self, message: str, details: dict[str, Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(QueueError):
    code = "VALIDATION_ERROR"


class InvalidTransitionError(ValidationError):
    code = "INVALID_TRANSITION"

    def __init__(self, item_id: str, current: str, trigger: str):
        super().__init__(
            f"Cannot {trigger} item {item_id} from status '{current}'",
            details={"item_id": item_id, "status": current, "trigger": trigger},
        )
        self.item_id = item_id
        self.current = current
        self.trigger = trigger


class NotFoundError(QueueError):
    code = "NOT_FOUND"

    def __init__(self, item_id: str):
        super().__init__(f"Queue item not found: {item_id}", details={"item_id": item_id})
        self.item_id = item_id


class ConflictError(QueueError):
    code = "CONFLICT"
    retryable = True


class CollaboratorError(QueueError):
    code = "COLLABORATOR_UNAVAILABLE"
    retryable = True


class AdvisorUnavailableError(QueueError):
    code = "ADVISOR_UNAVAILABLE"


class ConfigurationError(QueueError):
    code = "CONFIGURATION_ERROR"
