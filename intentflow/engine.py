"""Facade wiring the event store, router, run manager and processor together."""

from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

import httpx

from .config import IntentflowConfig, load_config
from .constants import DEFAULT_EVENT_SOURCE
from .contracts import SubmitEventResult, TriggerOutcome, TriggerStatus
from .enrollment import EnrollmentGuard, EnrollmentPolicy
from .errors import DuplicateEventError, LookupFailure
from .events import EventStore
from .execute import JobProcessor
from .persistence import AutomationRepository, get_repository
from .routing import IntentRouter
from .runs import WorkflowRunManager
from .scheduler import Scheduler
from .transports import BaseTransport, get_transport
from .utils.clock import utcnow

logger = logging.getLogger(__name__)


class AutomationEngine:
    """Entry point for event submission, manual triggers and scheduling.

    Without a transport, runs are processed inline right after they are
    created. With one, a ``ProcessRunRequest`` is published for a
    ``JobWorker`` to pick up.
    """

    def __init__(
        self,
        repository: AutomationRepository,
        config: Optional[IntentflowConfig] = None,
        transport: Optional[BaseTransport] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        enrollment_policy: Optional[EnrollmentPolicy] = None,
    ) -> None:
        self.config = config or load_config()
        self.repository = repository
        self.transport = transport
        self.events = EventStore(repository)
        self.router = IntentRouter(repository)
        self.guard = EnrollmentGuard(repository, enrollment_policy)
        self.processor = JobProcessor(repository, self.config, http_client)
        self.runs = WorkflowRunManager(
            repository,
            self.guard,
            transport=transport,
            processor=None if transport is not None else self.processor,
        )
        self.scheduler = Scheduler(repository, self.runs, self.processor, self.config)

    @classmethod
    def from_config(
        cls, config: Optional[IntentflowConfig] = None, inline: Optional[bool] = None
    ) -> "AutomationEngine":
        """Build an engine from configuration.

        ``inline`` defaults to ``True`` for the in-memory transport, which
        has no worker in another process to consume requests.
        """
        config = config or load_config()
        backend = (os.getenv("INTENTFLOW_TRANSPORT") or config.transport.backend).lower()
        if inline is None:
            inline = backend == "inmemory"
        transport = None if inline else get_transport(backend, config)
        return cls(get_repository(config=config), config, transport)

    async def submit_event(
        self,
        business_id: str,
        intent: str,
        payload: Optional[Dict[str, Any]] = None,
        dedupe_key: Optional[str] = None,
        contact_id: Optional[str] = None,
        source: str = DEFAULT_EVENT_SOURCE,
        source_url: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SubmitEventResult:
        """Ingest an event and trigger every workflow routed from its intent.

        Raises:
            LookupFailure: When the business does not exist.
        """
        now = now or utcnow()
        logger.info(f"Received {intent} for business {business_id} from {source}")

        settings = await self.repository.get_automation_settings(business_id)
        if settings is not None and not settings.automations_enabled:
            logger.info(f"Automations disabled for business {business_id}")
            return SubmitEventResult(message="Automations disabled")

        business = await self.repository.get_business(business_id)
        if business is None:
            raise LookupFailure(f"Business {business_id} not found")

        try:
            event = await self.events.ingest(
                business_id,
                intent,
                payload or {},
                dedupe_key=dedupe_key,
                contact_id=contact_id,
                source=source,
                source_url=source_url,
                now=now,
            )
        except DuplicateEventError as exc:
            return SubmitEventResult(
                event_id=exc.existing_event_id, duplicate=True, message=exc.reason
            )

        candidates = await self.router.resolve(business_id, intent, business)
        logger.info(f"Event {event.id} routed to {len(candidates)} workflows")

        results = []
        for candidate in candidates:
            try:
                workflow = await self.repository.get_workflow(candidate.id)
                if workflow is None:
                    raise LookupFailure(f"Workflow {candidate.id} not found")
                outcome = await self.runs.trigger(
                    workflow, event=event, business=business, now=now
                )
            except Exception as exc:
                logger.exception(f"Triggering workflow {candidate.name} failed")
                outcome = TriggerOutcome(
                    workflow_id=candidate.id, status=TriggerStatus.ERROR, error=str(exc)
                )
            results.append(outcome)

        await self.events.mark_processed(event.id)
        return SubmitEventResult(
            event_id=event.id,
            triggered=sum(1 for outcome in results if outcome.created),
            results=results,
        )

    async def trigger_workflow(
        self,
        workflow_id: str,
        payload: Optional[Dict[str, Any]] = None,
        contact_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TriggerOutcome:
        """Start a single workflow directly, as a webhook or manual trigger does.

        Raises:
            LookupFailure: When the workflow does not exist.
        """
        workflow = await self.repository.get_workflow(workflow_id)
        if workflow is None:
            raise LookupFailure(f"Workflow {workflow_id} not found")
        if not workflow.is_active:
            return TriggerOutcome(
                workflow_id=workflow_id,
                status=TriggerStatus.ERROR,
                error="Workflow is not active",
            )
        business = None
        if workflow.business_id:
            business = await self.repository.get_business(workflow.business_id)
        return await self.runs.trigger(
            workflow,
            contact_id=contact_id,
            payload=payload or {},
            business=business,
            idempotency_key=idempotency_key,
            now=now,
        )

    async def handle_submit_event(self, body: Dict[str, Any]) -> Tuple[int, Dict[str, Any]]:
        """Answer a JSON submission with ``(status_code, body)``.

        Accepts both ``business_id`` and ``businessId`` style keys.
        """

        def _get(snake: str, camel: str) -> Any:
            return body.get(snake) if body.get(snake) is not None else body.get(camel)

        business_id = _get("business_id", "businessId")
        intent = body.get("intent")
        if not business_id or not intent:
            return 400, {"error": "business_id and intent are required"}

        try:
            result = await self.submit_event(
                business_id,
                intent,
                body.get("payload") or {},
                dedupe_key=_get("dedupe_key", "dedupeKey"),
                contact_id=_get("contact_id", "contactId"),
                source=body.get("source") or DEFAULT_EVENT_SOURCE,
                source_url=_get("source_url", "sourceUrl"),
            )
        except LookupFailure as exc:
            return 404, {"error": str(exc)}
        except Exception as exc:
            logger.exception("Event submission failed")
            return 500, {"error": str(exc)}
        return 200, result.model_dump(mode="json")
