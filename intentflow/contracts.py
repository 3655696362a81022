"""Message and result contracts exchanged between engine components."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .persistence.models import JobStatus, RunStatus
from .utils.clock import utcnow


class CandidateSource(str, Enum):
    BUSINESS = "business"
    RECIPE = "recipe"


class WorkflowToTrigger(BaseModel):
    """A workflow selected by the intent router."""

    id: str
    name: str
    priority: int
    source: CandidateSource = CandidateSource.BUSINESS
    recipe_id: Optional[str] = None


class ScheduleContext(BaseModel):
    """Describes the schedule slot that fired a workflow."""

    expression: str
    fired_at: datetime = Field(default_factory=utcnow)


class TriggerStatus(str, Enum):
    TRIGGERED = "triggered"
    ALREADY_TRIGGERED = "already_triggered"
    NOT_ELIGIBLE = "not_eligible"
    ERROR = "error"


class TriggerOutcome(BaseModel):
    """Result of asking the run manager to trigger one workflow."""

    workflow_id: str
    status: TriggerStatus
    run_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def created(self) -> bool:
        return self.status == TriggerStatus.TRIGGERED


class SubmitEventResult(BaseModel):
    """Synchronous answer to an event submission."""

    success: bool = True
    event_id: Optional[str] = None
    duplicate: bool = False
    message: Optional[str] = None
    triggered: int = 0
    results: List[TriggerOutcome] = Field(default_factory=list)


class JobOutcome(BaseModel):
    """What happened to one job during a processor pass."""

    job_id: str
    step_index: int
    action_type: str
    status: JobStatus
    retry_count: int = 0
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class ProcessResult(BaseModel):
    """Summary of one ``process_run`` invocation."""

    run_id: str
    processed: int = 0
    results: List[JobOutcome] = Field(default_factory=list)
    run_status: Optional[RunStatus] = None
    finalized: bool = False


class TickResult(BaseModel):
    """Summary of one scheduler tick."""

    triggered_workflow_ids: List[str] = Field(default_factory=list)
    swept_run_ids: List[str] = Field(default_factory=list)
    released_jobs: int = 0


class ProcessRunRequest(BaseModel):
    """Envelope asking a worker to process the queued jobs of a run."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    reason: str = "triggered"
    timestamp: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "ProcessRunRequest":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)
