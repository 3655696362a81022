"""Timer-driven workflow triggering and recovery of stuck jobs."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from .config import IntentflowConfig, load_config
from .contracts import ScheduleContext, TickResult
from .errors import InvalidScheduleError
from .execute import JobProcessor
from .persistence import AutomationRepository, TriggerType
from .runs import WorkflowRunManager
from .utils.clock import utcnow

logger = logging.getLogger(__name__)

_NAMED = {
    "@hourly": timedelta(hours=1),
    "@daily": timedelta(days=1),
    "@weekly": timedelta(weeks=1),
}
_EVERY_N_MINUTES = re.compile(r"^\*/(\d+)$")


def parse_schedule(expression: Optional[str]) -> timedelta:
    """Return the interval of ``@hourly``, ``@daily``, ``@weekly`` or ``*/N``.

    Raises:
        InvalidScheduleError: For anything else, including ``*/0``.
    """
    text = (expression or "").strip().lower()
    if text in _NAMED:
        return _NAMED[text]
    match = _EVERY_N_MINUTES.match(text)
    if match and int(match.group(1)) > 0:
        return timedelta(minutes=int(match.group(1)))
    raise InvalidScheduleError(f"Unsupported schedule expression: {expression!r}")


def is_due(last_run_at: Optional[datetime], interval: timedelta, now: datetime) -> bool:
    return last_run_at is None or now - last_run_at >= interval


class Scheduler:
    """Fires due schedule workflows and sweeps queued work on each tick."""

    def __init__(
        self,
        repository: AutomationRepository,
        run_manager: WorkflowRunManager,
        processor: JobProcessor,
        config: Optional[IntentflowConfig] = None,
    ) -> None:
        self._repository = repository
        self._run_manager = run_manager
        self._processor = processor
        self._config = config or load_config()

    async def tick(self, now: Optional[datetime] = None) -> TickResult:
        now = now or utcnow()
        result = TickResult()

        workflows = await self._repository.list_workflows(
            trigger_type=TriggerType.SCHEDULE, active_only=True
        )
        for workflow in workflows:
            try:
                interval = parse_schedule(workflow.schedule)
            except InvalidScheduleError as exc:
                logger.warning(f"Skipping workflow {workflow.id}: {exc}")
                continue
            if not is_due(workflow.last_run_at, interval, now):
                continue
            claimed = await self._repository.update_workflow_last_run(
                workflow.id, workflow.last_run_at, now
            )
            if not claimed:
                logger.debug(f"Schedule slot of {workflow.id} taken by another tick")
                continue
            try:
                outcome = await self._run_manager.trigger(
                    workflow,
                    schedule=ScheduleContext(expression=workflow.schedule, fired_at=now),
                    now=now,
                )
            except Exception:
                logger.exception(f"Scheduled trigger of workflow {workflow.id} failed")
                continue
            if outcome.created:
                logger.info(f"Scheduled workflow {workflow.name} started run {outcome.run_id}")
                result.triggered_workflow_ids.append(workflow.id)

        result.swept_run_ids, result.released_jobs = await self.sweep(now)
        return result

    async def sweep(self, now: Optional[datetime] = None) -> Tuple[List[str], int]:
        """Release stale claims, then reprocess every run with due queued jobs."""
        now = now or utcnow()
        stale_before = now - timedelta(seconds=self._config.engine.stale_job_seconds)
        released = await self._repository.release_stale_jobs(stale_before)
        if released:
            logger.warning(f"Released {released} stale job claims")

        run_ids: List[str] = []
        for job in await self._repository.list_due_jobs(now):
            if job.workflow_run_id not in run_ids:
                run_ids.append(job.workflow_run_id)

        for run_id in run_ids:
            try:
                await self._processor.process_run(run_id, now=now)
            except Exception:
                logger.exception(f"Sweep of run {run_id} failed")
        return run_ids, released
