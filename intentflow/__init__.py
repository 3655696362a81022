"""Intentflow: intent-routed workflow automation for CRM events."""

from .contracts import ProcessRunRequest, SubmitEventResult, TriggerOutcome
from .engine import AutomationEngine
from .enrollment import EnrollmentGuard
from .events import EventStore
from .execute import JobProcessor, JobWorker
from .persistence import get_repository
from .routing import IntentRouter
from .runs import WorkflowRunManager, derive_run_status
from .scheduler import Scheduler
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "AutomationEngine",
    "EnrollmentGuard",
    "EventStore",
    "IntentRouter",
    "JobProcessor",
    "JobWorker",
    "ProcessRunRequest",
    "Scheduler",
    "SubmitEventResult",
    "TriggerOutcome",
    "WorkflowRunManager",
    "derive_run_status",
    "get_repository",
    "get_transport",
]
