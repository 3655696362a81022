"""Turning triggered workflows into runs and queued jobs."""

from __future__ import annotations

import copy
import logging
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Iterable, Optional

from .contracts import ScheduleContext, TriggerOutcome, TriggerStatus
from .enrollment import EnrollmentGuard
from .errors import NotEligibleError, UniqueViolation
from .persistence import (
    AutomationRepository,
    Business,
    Event,
    JobStatus,
    RunStatus,
    WorkflowDefinition,
    WorkflowJob,
    WorkflowRun,
)
from .transports import BaseTransport
from .utils.clock import utcnow

if TYPE_CHECKING:
    from .execute import JobProcessor

logger = logging.getLogger(__name__)


def derive_run_status(jobs: Iterable[WorkflowJob]) -> RunStatus:
    """Aggregate job statuses into a run status.

    Any failed job fails the run; otherwise the run is completed once every
    job is terminal (trivially so without jobs) and running before that.
    """
    jobs = list(jobs)
    if any(job.status == JobStatus.FAILED for job in jobs):
        return RunStatus.FAILED
    if all(job.status.is_terminal for job in jobs):
        return RunStatus.COMPLETED
    return RunStatus.RUNNING


def idempotency_key_for(
    workflow_id: str,
    event: Optional[Event] = None,
    schedule: Optional[ScheduleContext] = None,
) -> str:
    if event is not None:
        return f"{event.id}:{workflow_id}"
    if schedule is not None:
        return f"schedule:{workflow_id}:{schedule.fired_at.isoformat()}"
    return f"manual:{workflow_id}:{uuid.uuid4()}"


class WorkflowRunManager:
    """Creates runs with their jobs and hands them to the job processor."""

    def __init__(
        self,
        repository: AutomationRepository,
        guard: Optional[EnrollmentGuard] = None,
        transport: Optional[BaseTransport] = None,
        processor: Optional["JobProcessor"] = None,
    ) -> None:
        self._repository = repository
        self._guard = guard or EnrollmentGuard(repository)
        self._transport = transport
        self._processor = processor

    async def trigger(
        self,
        workflow: WorkflowDefinition,
        event: Optional[Event] = None,
        schedule: Optional[ScheduleContext] = None,
        contact_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        business: Optional[Business] = None,
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TriggerOutcome:
        """Create a run for ``workflow`` unless one exists or the contact is ineligible."""
        now = now or utcnow()
        contact_id = contact_id or (event.contact_id if event else None)
        key = idempotency_key or idempotency_key_for(workflow.id, event, schedule)

        existing = await self._repository.get_run_by_idempotency_key(key)
        if existing is not None:
            return TriggerOutcome(
                workflow_id=workflow.id,
                status=TriggerStatus.ALREADY_TRIGGERED,
                run_id=existing.id,
            )

        try:
            await self._guard.ensure_eligible(contact_id, workflow.id, now, workflow)
        except NotEligibleError as exc:
            logger.info(str(exc))
            return TriggerOutcome(
                workflow_id=workflow.id, status=TriggerStatus.NOT_ELIGIBLE
            )

        run = WorkflowRun(
            workflow_id=workflow.id,
            event_id=event.id if event else None,
            contact_id=contact_id,
            status=RunStatus.RUNNING,
            context=self._build_context(workflow, event, schedule, contact_id, payload, business),
            idempotency_key=key,
            created_at=now,
        )
        try:
            await self._repository.insert_run(run)
        except UniqueViolation:
            winner = await self._repository.get_run_by_idempotency_key(key)
            return TriggerOutcome(
                workflow_id=workflow.id,
                status=TriggerStatus.ALREADY_TRIGGERED,
                run_id=winner.id if winner else None,
            )

        if contact_id:
            await self._guard.record_enrollment(contact_id, workflow.id, now)

        jobs = [
            WorkflowJob(
                workflow_run_id=run.id,
                step_index=index,
                action_type=step.action_type,
                action_config=copy.deepcopy(step.config),
                scheduled_at=now,
            )
            for index, step in enumerate(workflow.steps)
        ]
        if jobs:
            await self._repository.insert_jobs(jobs)
            logger.info(f"Run {run.id} of {workflow.name} queued {len(jobs)} jobs")
            await self._request_processing(run.id, now)
        else:
            await self._repository.finalize_run(
                run.id,
                RunStatus.COMPLETED,
                now,
                {"jobs": [], "completed": 0, "failed": 0},
            )
            logger.info(f"Run {run.id} of {workflow.name} has no steps, completed")

        return TriggerOutcome(
            workflow_id=workflow.id, status=TriggerStatus.TRIGGERED, run_id=run.id
        )

    def _build_context(
        self,
        workflow: WorkflowDefinition,
        event: Optional[Event],
        schedule: Optional[ScheduleContext],
        contact_id: Optional[str],
        payload: Optional[Dict[str, Any]],
        business: Optional[Business],
    ) -> Dict[str, Any]:
        data = payload if payload is not None else (event.payload if event else {})
        context: Dict[str, Any] = {
            "payload": copy.deepcopy(data),
            "workflow": {"id": workflow.id, "name": workflow.name},
            "contact": {"id": contact_id} if contact_id else {},
        }
        business_id = business.id if business else (
            event.business_id if event else workflow.business_id
        )
        if business is not None:
            context["business"] = business.model_dump()
        elif business_id:
            context["business"] = {"id": business_id}
        if event is not None:
            context["intent"] = event.intent
            context["event"] = {
                "id": event.id,
                "intent": event.intent,
                "source": event.source,
                "source_url": event.source_url,
                "occurred_at": event.occurred_at.isoformat(),
            }
        if schedule is not None:
            context["schedule"] = schedule.model_dump(mode="json")
        return context

    async def _request_processing(self, run_id: str, now: datetime) -> None:
        try:
            if self._transport is not None:
                await self._transport.request_run(run_id)
            elif self._processor is not None:
                await self._processor.process_run(run_id, now=now)
        except Exception:
            logger.exception(f"Failed to start processing of run {run_id}")
