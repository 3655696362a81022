"""Data models for persisted automation state."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..constants import DEFAULT_EVENT_SOURCE
from ..utils.clock import utcnow


def new_id() -> str:
    return str(uuid.uuid4())


class TriggerType(str, Enum):
    EVENT = "event"
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class Business(BaseModel):
    """Tenant owning contacts, events and workflows."""

    id: str
    name: Optional[str] = None
    industry: Optional[str] = None


class BusinessAutomationSettings(BaseModel):
    """Per-business automation switches."""

    business_id: str
    automations_enabled: bool = True
    dedupe_window_minutes: Optional[int] = None


class Event(BaseModel):
    """Inbound business event. Unique per ``(business_id, dedupe_key)``."""

    id: str = Field(default_factory=new_id)
    business_id: str
    intent: str
    payload: dict[str, Any] = Field(default_factory=dict)
    dedupe_key: str
    contact_id: Optional[str] = None
    source: str = DEFAULT_EVENT_SOURCE
    source_url: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utcnow)
    processed: bool = False


class Step(BaseModel):
    """One ordered step of a workflow definition."""

    action_type: str
    config: dict[str, Any] = Field(default_factory=dict)


class WorkflowDefinition(BaseModel):
    """A business-specific or industry recipe workflow."""

    id: str = Field(default_factory=new_id)
    business_id: Optional[str] = None
    industry: Optional[str] = None
    name: str
    trigger_type: TriggerType = TriggerType.EVENT
    trigger_config: dict[str, Any] = Field(default_factory=dict)
    steps: list[Step] = Field(default_factory=list)
    is_active: bool = True
    priority: Optional[int] = None
    recipe_id: Optional[str] = None
    max_enrollments_per_contact: Optional[int] = None
    reenroll_after_days: Optional[int] = None
    last_run_at: Optional[datetime] = None

    def matches_intent(self, intent: str) -> bool:
        """Return ``True`` when the trigger config listens for ``intent``."""
        if self.trigger_config.get("intent") == intent:
            return True
        intents = self.trigger_config.get("intents") or []
        return intent in intents

    @property
    def schedule(self) -> Optional[str]:
        return self.trigger_config.get("schedule")


class Enrollment(BaseModel):
    """Tracks how often a contact entered a workflow."""

    contact_id: str
    workflow_id: str
    enrollment_count: int = 0
    first_enrolled_at: Optional[datetime] = None
    last_enrolled_at: Optional[datetime] = None
    last_completed_at: Optional[datetime] = None
    blocked_until: Optional[datetime] = None


class WorkflowRun(BaseModel):
    """One execution of a workflow for a triggering event or schedule slot."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    event_id: Optional[str] = None
    contact_id: Optional[str] = None
    status: RunStatus = RunStatus.RUNNING
    context: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    result: Optional[dict[str, Any]] = None


class WorkflowJob(BaseModel):
    """Queued execution of a single workflow step."""

    id: str = Field(default_factory=new_id)
    workflow_run_id: str
    step_index: int
    action_type: str
    action_config: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.QUEUED
    retry_count: int = 0
    scheduled_at: datetime = Field(default_factory=utcnow)
    claimed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    result: Optional[dict[str, Any]] = None


class IntentRecipeMapping(BaseModel):
    """Industry-level mapping from an intent to recipe ids."""

    intent: str
    industry: str
    recipe_ids: list[str] = Field(default_factory=list)
    priority: int = 50


class RecipeToggle(BaseModel):
    business_id: str
    recipe_id: str
    enabled: bool = True


class RecipePack(BaseModel):
    """A named bundle of recipes installable per business."""

    pack_id: str
    name: Optional[str] = None
    recipes: list[str] = Field(default_factory=list)


class InstalledRecipePack(BaseModel):
    business_id: str
    pack_id: str
    enabled: bool = True
