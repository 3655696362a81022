"""Event ingestion with deduplication."""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .constants import DEFAULT_EVENT_SOURCE
from .errors import DuplicateEventError, UniqueViolation
from .persistence import AutomationRepository, Event
from .utils.clock import utcnow

logger = logging.getLogger(__name__)


def derive_dedupe_key(
    business_id: str, intent: str, payload: Dict[str, Any], now: datetime
) -> str:
    """Build a key unique per submission: business, intent, payload digest, epoch ms."""
    digest = hashlib.sha256(
        json.dumps(payload, sort_keys=True, default=str).encode()
    ).hexdigest()[:16]
    return f"{business_id}:{intent}:{digest}:{int(now.timestamp() * 1000)}"


class EventStore:
    """Persists inbound events, rejecting duplicates."""

    def __init__(self, repository: AutomationRepository) -> None:
        self._repository = repository

    async def ingest(
        self,
        business_id: str,
        intent: str,
        payload: Optional[Dict[str, Any]] = None,
        dedupe_key: Optional[str] = None,
        contact_id: Optional[str] = None,
        source: str = DEFAULT_EVENT_SOURCE,
        source_url: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Event:
        """Persist a new event.

        Raises:
            DuplicateEventError: When an event with the same dedupe key exists,
                or one with the same intent falls inside the business's
                dedupe window.
        """
        now = now or utcnow()
        payload = payload or {}
        dedupe_key = dedupe_key or derive_dedupe_key(business_id, intent, payload, now)

        existing = await self._repository.find_event_by_dedupe_key(business_id, dedupe_key)
        if existing is not None:
            logger.info(f"Duplicate event {dedupe_key} for business {business_id}")
            raise DuplicateEventError(existing.id)

        settings = await self._repository.get_automation_settings(business_id)
        if settings is not None and settings.dedupe_window_minutes:
            since = now - timedelta(minutes=settings.dedupe_window_minutes)
            recent = await self._repository.find_recent_event(business_id, intent, since)
            if recent is not None:
                logger.info(
                    f"Event {intent} for business {business_id} within "
                    f"{settings.dedupe_window_minutes}m dedupe window"
                )
                raise DuplicateEventError(
                    recent.id, reason="Duplicate event within dedupe window"
                )

        event = Event(
            business_id=business_id,
            intent=intent,
            payload=payload,
            dedupe_key=dedupe_key,
            contact_id=contact_id,
            source=source,
            source_url=source_url,
            occurred_at=now,
        )
        try:
            await self._repository.insert_event(event)
        except UniqueViolation:
            winner = await self._repository.find_event_by_dedupe_key(business_id, dedupe_key)
            raise DuplicateEventError(winner.id if winner else None) from None

        logger.info(f"Stored event {event.id} ({intent}) for business {business_id}")
        return event

    async def mark_processed(self, event_id: str) -> None:
        await self._repository.mark_event_processed(event_id)
