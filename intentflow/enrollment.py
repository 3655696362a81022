"""Contact enrollment limits for workflows."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .errors import NotEligibleError
from .persistence import AutomationRepository, Enrollment, WorkflowDefinition
from .utils.clock import utcnow

logger = logging.getLogger(__name__)

EnrollmentPolicy = Callable[
    [WorkflowDefinition, Optional[Enrollment], datetime], bool
]


class WorkflowEnrollmentPolicy:
    """Apply the limits configured on the workflow itself.

    A contact never enrolled before is always eligible. Afterwards the
    workflow's ``max_enrollments_per_contact`` caps re-entry, a
    ``blocked_until`` in the future blocks it, and ``reenroll_after_days``
    sets the cooldown since the last enrollment. Without a cooldown a
    contact does not re-enroll.
    """

    def __call__(
        self,
        workflow: WorkflowDefinition,
        enrollment: Optional[Enrollment],
        now: datetime,
    ) -> bool:
        if enrollment is None or enrollment.enrollment_count == 0:
            return True
        if enrollment.blocked_until is not None and enrollment.blocked_until > now:
            return False
        cap = workflow.max_enrollments_per_contact
        if cap is not None and enrollment.enrollment_count >= cap:
            return False
        if workflow.reenroll_after_days is None:
            return False
        if enrollment.last_enrolled_at is None:
            return True
        return now >= enrollment.last_enrolled_at + timedelta(
            days=workflow.reenroll_after_days
        )


class NeverReenrollPolicy:
    """Each contact enters a workflow at most once."""

    def __call__(self, workflow, enrollment, now) -> bool:
        return enrollment is None or enrollment.enrollment_count == 0


class CooldownPolicy:
    """Allow re-entry once ``days`` have passed since the last enrollment."""

    def __init__(self, days: float) -> None:
        self.days = days

    def __call__(self, workflow, enrollment, now) -> bool:
        if enrollment is None or enrollment.last_enrolled_at is None:
            return True
        return now >= enrollment.last_enrolled_at + timedelta(days=self.days)


class EnrollmentGuard:
    """Decides and records whether contacts may enter workflows."""

    def __init__(
        self,
        repository: AutomationRepository,
        policy: Optional[EnrollmentPolicy] = None,
    ) -> None:
        self._repository = repository
        self._policy = policy or WorkflowEnrollmentPolicy()

    async def is_eligible(
        self,
        contact_id: Optional[str],
        workflow_id: str,
        now: Optional[datetime] = None,
        workflow: Optional[WorkflowDefinition] = None,
    ) -> bool:
        if not contact_id:
            return True
        workflow = workflow or await self._repository.get_workflow(workflow_id)
        if workflow is None:
            logger.warning(f"Eligibility check for unknown workflow {workflow_id}")
            return False
        enrollment = await self._repository.get_enrollment(contact_id, workflow_id)
        return self._policy(workflow, enrollment, now or utcnow())

    async def ensure_eligible(
        self,
        contact_id: Optional[str],
        workflow_id: str,
        now: Optional[datetime] = None,
        workflow: Optional[WorkflowDefinition] = None,
    ) -> None:
        """Raise ``NotEligibleError`` when the contact may not enter the workflow."""
        if not await self.is_eligible(contact_id, workflow_id, now, workflow):
            raise NotEligibleError(contact_id or "", workflow_id)

    async def record_enrollment(
        self, contact_id: str, workflow_id: str, now: Optional[datetime] = None
    ) -> Enrollment:
        enrollment = await self._repository.upsert_enrollment(
            contact_id, workflow_id, now or utcnow()
        )
        logger.debug(
            f"Contact {contact_id} enrolled in {workflow_id} "
            f"({enrollment.enrollment_count}x)"
        )
        return enrollment
