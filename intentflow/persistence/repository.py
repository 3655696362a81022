"""Repository abstraction for automation state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional, Protocol, Sequence

from .models import (
    Business,
    BusinessAutomationSettings,
    Enrollment,
    Event,
    InstalledRecipePack,
    IntentRecipeMapping,
    JobStatus,
    RecipePack,
    RecipeToggle,
    RunStatus,
    TriggerType,
    WorkflowDefinition,
    WorkflowJob,
    WorkflowRun,
)


class AutomationRepository(Protocol):
    """Protocol for automation state persistence backends.

    Every write is a single-row insert or an update scoped by primary key or
    by one of the uniqueness constraints. Conditional updates return ``True``
    only for the caller whose write took effect.
    """

    # Businesses and settings -------------------------------------------
    async def save_business(self, business: Business) -> None:
        """Insert or replace a business."""

    async def get_business(self, business_id: str) -> Business | None:
        """Retrieve a business by id."""

    async def save_automation_settings(
        self, settings: BusinessAutomationSettings
    ) -> None:
        """Insert or replace a business's automation settings."""

    async def get_automation_settings(
        self, business_id: str
    ) -> BusinessAutomationSettings | None:
        """Retrieve automation settings, ``None`` when never configured."""

    # Recipes --------------------------------------------------------------
    async def save_intent_mapping(self, mapping: IntentRecipeMapping) -> None:
        """Add an intent to recipe mapping."""

    async def list_intent_mappings(
        self, intent: str, industry: str
    ) -> list[IntentRecipeMapping]:
        """Return mappings for ``(intent, industry)``."""

    async def save_recipe_toggle(self, toggle: RecipeToggle) -> None:
        """Insert or replace a per-business recipe toggle."""

    async def get_recipe_toggle(
        self, business_id: str, recipe_id: str
    ) -> RecipeToggle | None:
        """Retrieve a recipe toggle."""

    async def save_recipe_pack(self, pack: RecipePack) -> None:
        """Insert or replace a recipe pack."""

    async def find_recipe_pack(self, recipe_id: str) -> RecipePack | None:
        """Return the pack containing ``recipe_id`` if any."""

    async def save_installed_pack(self, installed: InstalledRecipePack) -> None:
        """Insert or replace a business's pack installation."""

    async def get_installed_pack(
        self, business_id: str, pack_id: str
    ) -> InstalledRecipePack | None:
        """Retrieve a business's pack installation."""

    # Workflow definitions ---------------------------------------------------
    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        """Insert or replace a workflow definition."""

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        """Retrieve a workflow definition by id."""

    async def list_workflows(
        self,
        business_id: Optional[str] = None,
        trigger_type: Optional[TriggerType] = None,
        active_only: bool = False,
    ) -> list[WorkflowDefinition]:
        """Return workflow definitions matching the filters."""

    async def find_recipe_workflow(
        self, recipe_id: str, industry: str
    ) -> WorkflowDefinition | None:
        """Return the active workflow implementing a recipe for an industry."""

    async def update_workflow_last_run(
        self,
        workflow_id: str,
        expected: Optional[datetime],
        new_value: datetime,
    ) -> bool:
        """Set ``last_run_at`` only if it still equals ``expected``."""

    # Events --------------------------------------------------------------
    async def insert_event(self, event: Event) -> None:
        """Persist a new event. Raises ``UniqueViolation`` on a dedupe key clash."""

    async def get_event(self, event_id: str) -> Event | None:
        """Retrieve an event by id."""

    async def find_event_by_dedupe_key(
        self, business_id: str, dedupe_key: str
    ) -> Event | None:
        """Return the event stored under ``(business_id, dedupe_key)``."""

    async def find_recent_event(
        self, business_id: str, intent: str, since: datetime
    ) -> Event | None:
        """Return an event with ``intent`` that occurred at or after ``since``."""

    async def mark_event_processed(self, event_id: str) -> None:
        """Flag an event as routed."""

    # Enrollments -----------------------------------------------------------
    async def get_enrollment(
        self, contact_id: str, workflow_id: str
    ) -> Enrollment | None:
        """Retrieve enrollment tracking for a contact and workflow."""

    async def upsert_enrollment(
        self, contact_id: str, workflow_id: str, enrolled_at: datetime
    ) -> Enrollment:
        """Create or bump enrollment tracking."""

    # Runs ------------------------------------------------------------------
    async def insert_run(self, run: WorkflowRun) -> None:
        """Persist a new run. Raises ``UniqueViolation`` on an idempotency clash."""

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Retrieve a run by id."""

    async def get_run_by_idempotency_key(self, key: str) -> WorkflowRun | None:
        """Retrieve a run by idempotency key."""

    async def list_runs(
        self,
        status: Optional[RunStatus] = None,
        workflow_id: Optional[str] = None,
    ) -> list[WorkflowRun]:
        """Return runs ordered by creation time."""

    async def finalize_run(
        self,
        run_id: str,
        status: RunStatus,
        completed_at: datetime,
        result: dict[str, Any] | None = None,
    ) -> bool:
        """Move a non-terminal run to a terminal status."""

    # Jobs ------------------------------------------------------------------
    async def insert_jobs(self, jobs: Sequence[WorkflowJob]) -> None:
        """Persist the jobs of a newly created run."""

    async def list_jobs(
        self, run_id: str, statuses: Optional[Iterable[JobStatus]] = None
    ) -> list[WorkflowJob]:
        """Return a run's jobs ordered by ``step_index``."""

    async def list_due_jobs(self, now: datetime) -> list[WorkflowJob]:
        """Return queued jobs with ``scheduled_at <= now`` across all runs."""

    async def claim_job(self, job_id: str, now: datetime) -> bool:
        """Atomically move a due job from ``queued`` to ``processing``."""

    async def complete_job(
        self, job_id: str, result: dict[str, Any] | None, processed_at: datetime
    ) -> None:
        """Mark a processing job completed."""

    async def requeue_job(
        self,
        job_id: str,
        scheduled_at: datetime,
        retry_count: int,
        error_message: Optional[str] = None,
        result: dict[str, Any] | None = None,
    ) -> None:
        """Return a processing job to the queue for a later attempt."""

    async def fail_job(
        self,
        job_id: str,
        retry_count: int,
        error_message: str,
        processed_at: datetime,
    ) -> None:
        """Mark a processing job permanently failed."""

    async def release_stale_jobs(self, claimed_before: datetime) -> int:
        """Requeue processing jobs whose claim predates ``claimed_before``."""

    # CRM records ---------------------------------------------------------
    async def insert_record(
        self, collection: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        """Insert a record into a named collection and return it with its id."""

    async def get_record(
        self, collection: str, record_id: str
    ) -> dict[str, Any] | None:
        """Retrieve a record from a named collection."""

    async def update_record(
        self, collection: str, record_id: str, changes: dict[str, Any]
    ) -> bool:
        """Merge ``changes`` into a record. Returns ``False`` if it is missing."""
