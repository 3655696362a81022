"""Job execution engine for workflow runs."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from .actions import ActionContext, Deferral, get_action, interpolate
from .config import IntentflowConfig, load_config
from .constants import PROCESS_RUN_TOPIC
from .contracts import JobOutcome, ProcessResult
from .errors import ActionFailure, LookupFailure, UnknownActionTypeError
from .persistence import (
    AutomationRepository,
    JobStatus,
    WorkflowJob,
    WorkflowRun,
)
from .runs import derive_run_status
from .transports import BaseTransport
from .utils.clock import utcnow
from .utils.retry import next_attempt_at

logger = logging.getLogger(__name__)


class JobProcessor:
    """Executes the queued jobs of a run in step order with bounded retries."""

    def __init__(
        self,
        repository: AutomationRepository,
        config: Optional[IntentflowConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._repository = repository
        self._config = config or load_config()
        self._http_client = http_client

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(
            timeout=self._config.actions.webhook_timeout_seconds
        ) as client:
            yield client

    async def process_run(
        self, run_id: str, now: Optional[datetime] = None
    ) -> ProcessResult:
        """Run every due queued job of ``run_id`` and finalize the run if done.

        Stops at the first job that is not yet due, whose claim is lost, or
        that was requeued, so steps never overtake each other. Safe to call
        repeatedly.

        Raises:
            LookupFailure: When the run does not exist.
        """
        now = now or utcnow()
        run = await self._repository.get_run(run_id)
        if run is None:
            raise LookupFailure(f"Run {run_id} not found")
        if run.status.is_terminal:
            return ProcessResult(run_id=run_id, run_status=run.status)

        outcomes: List[JobOutcome] = []
        queued = await self._repository.list_jobs(run_id, statuses=[JobStatus.QUEUED])
        async with self._client() as client:
            for job in queued:
                if job.scheduled_at > now:
                    break
                if not await self._repository.claim_job(job.id, now):
                    logger.debug(f"Job {job.id} claimed elsewhere, stopping run {run_id}")
                    break
                outcome = await self._execute_job(job, run, client, now)
                outcomes.append(outcome)
                if outcome.status == JobStatus.QUEUED:
                    break

        result = ProcessResult(run_id=run_id, processed=len(outcomes), results=outcomes)
        jobs = await self._repository.list_jobs(run_id)
        status = derive_run_status(jobs)
        result.run_status = status
        if all(job.status.is_terminal for job in jobs):
            result.finalized = await self._repository.finalize_run(
                run_id, status, now, self._aggregate(jobs)
            )
            if result.finalized:
                logger.info(f"Run {run_id} finished as {status.value}")
        return result

    async def _execute_job(
        self,
        job: WorkflowJob,
        run: WorkflowRun,
        client: httpx.AsyncClient,
        now: datetime,
    ) -> JobOutcome:
        outcome = JobOutcome(
            job_id=job.id,
            step_index=job.step_index,
            action_type=job.action_type,
            status=JobStatus.COMPLETED,
            retry_count=job.retry_count,
        )
        try:
            action = get_action(job.action_type)
        except UnknownActionTypeError as exc:
            logger.warning(f"Skipping job {job.id}: {exc}")
            outcome.result = {"skipped": True, "reason": str(exc)}
            await self._repository.complete_job(job.id, outcome.result, now)
            return outcome

        ctx = ActionContext(
            job=job,
            run=run,
            repository=self._repository,
            http_client=client,
            now=now,
            settings=self._config.actions,
        )
        try:
            result = await action(interpolate(job.action_config, run.context), ctx)
        except ActionFailure as exc:
            return await self._handle_failure(job, outcome, str(exc), exc.retryable, now)
        except Exception as exc:
            logger.exception(f"Job {job.id} raised unexpectedly")
            return await self._handle_failure(job, outcome, str(exc), True, now)

        if isinstance(result, Deferral):
            await self._repository.requeue_job(
                job.id,
                scheduled_at=result.resume_at,
                retry_count=job.retry_count,
                result=result.state,
            )
            logger.info(f"Job {job.id} deferred until {result.resume_at.isoformat()}")
            outcome.status = JobStatus.QUEUED
            outcome.result = result.state
            return outcome

        await self._repository.complete_job(job.id, result, now)
        logger.debug(f"Job {job.id} ({job.action_type}) completed")
        outcome.result = result
        return outcome

    async def _handle_failure(
        self,
        job: WorkflowJob,
        outcome: JobOutcome,
        message: str,
        retryable: bool,
        now: datetime,
    ) -> JobOutcome:
        engine = self._config.engine
        retry_count = job.retry_count + 1
        outcome.retry_count = retry_count
        outcome.error = message

        if retryable and retry_count < engine.max_retries:
            scheduled_at = next_attempt_at(
                now,
                retry_count,
                unit=engine.backoff_unit_seconds,
                strategy=engine.backoff_strategy,
                jitter=engine.backoff_jitter_seconds,
            )
            await self._repository.requeue_job(
                job.id,
                scheduled_at=scheduled_at,
                retry_count=retry_count,
                error_message=message,
            )
            logger.warning(
                f"Job {job.id} failed (attempt {retry_count}), "
                f"retrying at {scheduled_at.isoformat()}: {message}"
            )
            outcome.status = JobStatus.QUEUED
            return outcome

        await self._repository.fail_job(job.id, retry_count, message, now)
        logger.error(f"Job {job.id} failed permanently after {retry_count} attempts: {message}")
        outcome.status = JobStatus.FAILED
        return outcome

    @staticmethod
    def _aggregate(jobs: List[WorkflowJob]) -> Dict[str, Any]:
        return {
            "jobs": [
                {
                    "step_index": job.step_index,
                    "action_type": job.action_type,
                    "status": job.status.value,
                    "retry_count": job.retry_count,
                    "result": job.result,
                    "error": job.error_message,
                }
                for job in jobs
            ],
            "completed": sum(1 for job in jobs if job.status == JobStatus.COMPLETED),
            "failed": sum(1 for job in jobs if job.status == JobStatus.FAILED),
        }


class JobWorker:
    """Consumes process-run requests from a transport."""

    def __init__(self, transport: BaseTransport, processor: JobProcessor) -> None:
        self._transport = transport
        self._processor = processor
        self.processed_runs: List[str] = []

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Start listening for process-run requests."""
        async for raw_message, message in self._transport.subscribe(
            PROCESS_RUN_TOPIC, lifespan=lifespan
        ):
            try:
                result = await self._processor.process_run(message.run_id)
            except LookupFailure as exc:
                logger.warning(f"Dropping request {message.message_id}: {exc}")
            except Exception:
                logger.exception(f"Processing run {message.run_id} failed")
                await self._transport.nack(raw_message, requeue=False)
                continue
            else:
                self.processed_runs.append(message.run_id)
                logger.info(
                    f"Processed {result.processed} jobs of run {message.run_id} "
                    f"({result.run_status.value if result.run_status else 'unknown'})"
                )
            await self._transport.ack(raw_message)


__all__ = ["JobProcessor", "JobWorker"]
