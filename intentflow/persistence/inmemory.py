"""In-memory implementation of the automation repository."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

from ..errors import UniqueViolation
from ..utils.clock import utcnow
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
from .repository import AutomationRepository


class InMemoryAutomationRepository(AutomationRepository):
    """Store automation state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Methods never await between a check
    and the matching write, so each call is atomic on the event loop.
    Stored models are copied on the way in and out to behave like rows.
    """

    def __init__(self) -> None:
        self._businesses: Dict[str, Business] = {}
        self._settings: Dict[str, BusinessAutomationSettings] = {}
        self._mappings: list[IntentRecipeMapping] = []
        self._toggles: Dict[Tuple[str, str], RecipeToggle] = {}
        self._packs: Dict[str, RecipePack] = {}
        self._installed: Dict[Tuple[str, str], InstalledRecipePack] = {}
        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._events: Dict[str, Event] = {}
        self._event_keys: Dict[Tuple[str, str], str] = {}
        self._enrollments: Dict[Tuple[str, str], Enrollment] = {}
        self._runs: Dict[str, WorkflowRun] = {}
        self._run_keys: Dict[str, str] = {}
        self._jobs: Dict[str, WorkflowJob] = {}
        self._records: Dict[str, Dict[str, dict[str, Any]]] = {}

    # ------------------------------------------------------------------
    async def save_business(self, business: Business) -> None:
        self._businesses[business.id] = business.model_copy(deep=True)

    async def get_business(self, business_id: str) -> Business | None:
        business = self._businesses.get(business_id)
        return business.model_copy(deep=True) if business else None

    async def save_automation_settings(
        self, settings: BusinessAutomationSettings
    ) -> None:
        self._settings[settings.business_id] = settings.model_copy(deep=True)

    async def get_automation_settings(
        self, business_id: str
    ) -> BusinessAutomationSettings | None:
        settings = self._settings.get(business_id)
        return settings.model_copy(deep=True) if settings else None

    # ------------------------------------------------------------------
    async def save_intent_mapping(self, mapping: IntentRecipeMapping) -> None:
        self._mappings.append(mapping.model_copy(deep=True))

    async def list_intent_mappings(
        self, intent: str, industry: str
    ) -> list[IntentRecipeMapping]:
        return [
            m.model_copy(deep=True)
            for m in self._mappings
            if m.intent == intent and m.industry == industry
        ]

    async def save_recipe_toggle(self, toggle: RecipeToggle) -> None:
        self._toggles[(toggle.business_id, toggle.recipe_id)] = toggle.model_copy()

    async def get_recipe_toggle(
        self, business_id: str, recipe_id: str
    ) -> RecipeToggle | None:
        toggle = self._toggles.get((business_id, recipe_id))
        return toggle.model_copy() if toggle else None

    async def save_recipe_pack(self, pack: RecipePack) -> None:
        self._packs[pack.pack_id] = pack.model_copy(deep=True)

    async def find_recipe_pack(self, recipe_id: str) -> RecipePack | None:
        for pack in self._packs.values():
            if recipe_id in pack.recipes:
                return pack.model_copy(deep=True)
        return None

    async def save_installed_pack(self, installed: InstalledRecipePack) -> None:
        self._installed[(installed.business_id, installed.pack_id)] = (
            installed.model_copy()
        )

    async def get_installed_pack(
        self, business_id: str, pack_id: str
    ) -> InstalledRecipePack | None:
        installed = self._installed.get((business_id, pack_id))
        return installed.model_copy() if installed else None

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        workflow = self._workflows.get(workflow_id)
        return workflow.model_copy(deep=True) if workflow else None

    async def list_workflows(
        self,
        business_id: Optional[str] = None,
        trigger_type: Optional[TriggerType] = None,
        active_only: bool = False,
    ) -> list[WorkflowDefinition]:
        workflows = []
        for wf in self._workflows.values():
            if business_id is not None and wf.business_id != business_id:
                continue
            if trigger_type is not None and wf.trigger_type != trigger_type:
                continue
            if active_only and not wf.is_active:
                continue
            workflows.append(wf.model_copy(deep=True))
        return workflows

    async def find_recipe_workflow(
        self, recipe_id: str, industry: str
    ) -> WorkflowDefinition | None:
        for wf in self._workflows.values():
            if wf.recipe_id == recipe_id and wf.industry == industry and wf.is_active:
                return wf.model_copy(deep=True)
        return None

    async def update_workflow_last_run(
        self,
        workflow_id: str,
        expected: Optional[datetime],
        new_value: datetime,
    ) -> bool:
        wf = self._workflows.get(workflow_id)
        if wf is None or wf.last_run_at != expected:
            return False
        wf.last_run_at = new_value
        return True

    # ------------------------------------------------------------------
    async def insert_event(self, event: Event) -> None:
        key = (event.business_id, event.dedupe_key)
        if key in self._event_keys:
            raise UniqueViolation("events_business_id_dedupe_key")
        self._events[event.id] = event.model_copy(deep=True)
        self._event_keys[key] = event.id

    async def get_event(self, event_id: str) -> Event | None:
        event = self._events.get(event_id)
        return event.model_copy(deep=True) if event else None

    async def find_event_by_dedupe_key(
        self, business_id: str, dedupe_key: str
    ) -> Event | None:
        event_id = self._event_keys.get((business_id, dedupe_key))
        return await self.get_event(event_id) if event_id else None

    async def find_recent_event(
        self, business_id: str, intent: str, since: datetime
    ) -> Event | None:
        for event in self._events.values():
            if (
                event.business_id == business_id
                and event.intent == intent
                and event.occurred_at >= since
            ):
                return event.model_copy(deep=True)
        return None

    async def mark_event_processed(self, event_id: str) -> None:
        event = self._events.get(event_id)
        if event:
            event.processed = True

    # ------------------------------------------------------------------
    async def get_enrollment(
        self, contact_id: str, workflow_id: str
    ) -> Enrollment | None:
        enrollment = self._enrollments.get((contact_id, workflow_id))
        return enrollment.model_copy() if enrollment else None

    async def upsert_enrollment(
        self, contact_id: str, workflow_id: str, enrolled_at: datetime
    ) -> Enrollment:
        enrollment = self._enrollments.get((contact_id, workflow_id))
        if enrollment is None:
            enrollment = Enrollment(
                contact_id=contact_id,
                workflow_id=workflow_id,
                enrollment_count=0,
                first_enrolled_at=enrolled_at,
            )
            self._enrollments[(contact_id, workflow_id)] = enrollment
        enrollment.enrollment_count += 1
        enrollment.last_enrolled_at = enrolled_at
        return enrollment.model_copy()

    # ------------------------------------------------------------------
    async def insert_run(self, run: WorkflowRun) -> None:
        if run.idempotency_key in self._run_keys:
            raise UniqueViolation("workflow_runs_idempotency_key")
        self._runs[run.id] = run.model_copy(deep=True)
        self._run_keys[run.idempotency_key] = run.id

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def get_run_by_idempotency_key(self, key: str) -> WorkflowRun | None:
        run_id = self._run_keys.get(key)
        return await self.get_run(run_id) if run_id else None

    async def list_runs(
        self,
        status: Optional[RunStatus] = None,
        workflow_id: Optional[str] = None,
    ) -> list[WorkflowRun]:
        runs = [
            r.model_copy(deep=True)
            for r in self._runs.values()
            if (status is None or r.status == status)
            and (workflow_id is None or r.workflow_id == workflow_id)
        ]
        return sorted(runs, key=lambda r: r.created_at)

    async def finalize_run(
        self,
        run_id: str,
        status: RunStatus,
        completed_at: datetime,
        result: dict[str, Any] | None = None,
    ) -> bool:
        run = self._runs.get(run_id)
        if run is None or run.status.is_terminal:
            return False
        run.status = status
        run.completed_at = completed_at
        run.result = result
        return True

    # ------------------------------------------------------------------
    async def insert_jobs(self, jobs: Sequence[WorkflowJob]) -> None:
        for job in jobs:
            for existing in self._jobs.values():
                if (
                    existing.workflow_run_id == job.workflow_run_id
                    and existing.step_index == job.step_index
                ):
                    raise UniqueViolation("workflow_jobs_run_step")
            self._jobs[job.id] = job.model_copy(deep=True)

    async def list_jobs(
        self, run_id: str, statuses: Optional[Iterable[JobStatus]] = None
    ) -> list[WorkflowJob]:
        wanted = set(statuses) if statuses is not None else None
        jobs = [
            j.model_copy(deep=True)
            for j in self._jobs.values()
            if j.workflow_run_id == run_id and (wanted is None or j.status in wanted)
        ]
        return sorted(jobs, key=lambda j: j.step_index)

    async def list_due_jobs(self, now: datetime) -> list[WorkflowJob]:
        jobs = [
            j.model_copy(deep=True)
            for j in self._jobs.values()
            if j.status == JobStatus.QUEUED and j.scheduled_at <= now
        ]
        return sorted(jobs, key=lambda j: (j.scheduled_at, j.step_index))

    async def claim_job(self, job_id: str, now: datetime) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.QUEUED or job.scheduled_at > now:
            return False
        job.status = JobStatus.PROCESSING
        job.claimed_at = now
        return True

    async def complete_job(
        self, job_id: str, result: dict[str, Any] | None, processed_at: datetime
    ) -> None:
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.PROCESSING:
            return
        job.status = JobStatus.COMPLETED
        job.result = result
        job.processed_at = processed_at

    async def requeue_job(
        self,
        job_id: str,
        scheduled_at: datetime,
        retry_count: int,
        error_message: Optional[str] = None,
        result: dict[str, Any] | None = None,
    ) -> None:
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.PROCESSING:
            return
        job.status = JobStatus.QUEUED
        job.scheduled_at = scheduled_at
        job.retry_count = retry_count
        job.error_message = error_message
        job.result = result
        job.claimed_at = None

    async def fail_job(
        self,
        job_id: str,
        retry_count: int,
        error_message: str,
        processed_at: datetime,
    ) -> None:
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.PROCESSING:
            return
        job.status = JobStatus.FAILED
        job.retry_count = retry_count
        job.error_message = error_message
        job.processed_at = processed_at

    async def release_stale_jobs(self, claimed_before: datetime) -> int:
        released = 0
        for job in self._jobs.values():
            if (
                job.status == JobStatus.PROCESSING
                and job.claimed_at is not None
                and job.claimed_at < claimed_before
            ):
                job.status = JobStatus.QUEUED
                job.claimed_at = None
                released += 1
        return released

    # ------------------------------------------------------------------
    async def insert_record(
        self, collection: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        record = dict(data)
        record.setdefault("id", str(uuid.uuid4()))
        record.setdefault("created_at", utcnow().isoformat())
        self._records.setdefault(collection, {})[record["id"]] = record
        return dict(record)

    async def get_record(
        self, collection: str, record_id: str
    ) -> dict[str, Any] | None:
        record = self._records.get(collection, {}).get(record_id)
        return dict(record) if record else None

    async def update_record(
        self, collection: str, record_id: str, changes: dict[str, Any]
    ) -> bool:
        record = self._records.get(collection, {}).get(record_id)
        if record is None:
            return False
        record.update(changes)
        record["updated_at"] = utcnow().isoformat()
        return True
