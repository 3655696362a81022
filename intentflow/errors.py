"""Error taxonomy for the automation engine."""

from __future__ import annotations

from typing import Optional


class AutomationError(Exception):
    """Base class for all engine errors."""


class DuplicateEventError(AutomationError):
    """An event with the same dedupe key (or within the dedupe window) exists."""

    def __init__(self, existing_event_id: Optional[str], reason: str = "Duplicate event"):
        super().__init__(reason)
        self.existing_event_id = existing_event_id
        self.reason = reason


class NotEligibleError(AutomationError):
    """The contact may not (re-)enter the workflow."""

    def __init__(self, contact_id: str, workflow_id: str):
        super().__init__(
            f"Contact {contact_id} not eligible for workflow {workflow_id}"
        )
        self.contact_id = contact_id
        self.workflow_id = workflow_id


class ActionFailure(AutomationError):
    """A step action failed. Retried up to the configured bound when retryable."""

    retryable = True

    def __init__(self, message: str, retryable: Optional[bool] = None):
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class InvalidActionConfig(ActionFailure):
    """A step config is missing required fields. Retrying cannot help."""

    retryable = False


class UnknownActionTypeError(AutomationError):
    """No action is registered for the step's action type."""

    def __init__(self, action_type: str):
        super().__init__(f"Unknown action type: {action_type}")
        self.action_type = action_type


class LookupFailure(AutomationError):
    """A business, workflow, run or record could not be found."""


class UniqueViolation(AutomationError):
    """A store uniqueness constraint rejected a write."""

    def __init__(self, constraint: str):
        super().__init__(f"Unique constraint violated: {constraint}")
        self.constraint = constraint


class InvalidScheduleError(AutomationError, ValueError):
    """A schedule expression does not match the supported grammar."""
