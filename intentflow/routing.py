"""Resolve an intent to the workflows a business should run."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .constants import DEFAULT_INDUSTRY, DEFAULT_PRIORITY
from .contracts import CandidateSource, WorkflowToTrigger
from .errors import LookupFailure
from .persistence import AutomationRepository, Business, TriggerType

logger = logging.getLogger(__name__)


class IntentRouter:
    """Collects business workflows and enabled industry recipes for an intent."""

    def __init__(self, repository: AutomationRepository) -> None:
        self._repository = repository

    async def resolve(
        self, business_id: str, intent: str, business: Optional[Business] = None
    ) -> List[WorkflowToTrigger]:
        """Return workflows to trigger, ascending by priority.

        Raises:
            LookupFailure: When the business does not exist.
        """
        settings = await self._repository.get_automation_settings(business_id)
        if settings is not None and not settings.automations_enabled:
            logger.info(f"Automations disabled for business {business_id}")
            return []

        business = business or await self._repository.get_business(business_id)
        if business is None:
            raise LookupFailure(f"Business {business_id} not found")
        industry = business.industry or DEFAULT_INDUSTRY

        candidates: Dict[str, WorkflowToTrigger] = {}

        def _add(candidate: WorkflowToTrigger) -> None:
            current = candidates.get(candidate.id)
            if current is None or candidate.priority < current.priority:
                candidates[candidate.id] = candidate

        workflows = await self._repository.list_workflows(
            business_id=business_id, trigger_type=TriggerType.EVENT, active_only=True
        )
        for workflow in workflows:
            if not workflow.matches_intent(intent):
                continue
            _add(
                WorkflowToTrigger(
                    id=workflow.id,
                    name=workflow.name,
                    priority=(
                        workflow.priority
                        if workflow.priority is not None
                        else DEFAULT_PRIORITY
                    ),
                )
            )

        for mapping in await self._repository.list_intent_mappings(intent, industry):
            for recipe_id in mapping.recipe_ids:
                try:
                    if not await self._recipe_enabled(business_id, recipe_id):
                        logger.debug(f"Recipe {recipe_id} disabled for {business_id}")
                        continue
                    workflow = await self._repository.find_recipe_workflow(
                        recipe_id, industry
                    )
                except Exception as exc:
                    logger.warning(f"Skipping recipe {recipe_id} for {intent}: {exc}")
                    continue
                if workflow is None:
                    logger.debug(f"No {industry} workflow implements recipe {recipe_id}")
                    continue
                _add(
                    WorkflowToTrigger(
                        id=workflow.id,
                        name=workflow.name,
                        priority=(
                            workflow.priority
                            if workflow.priority is not None
                            else mapping.priority
                        ),
                        source=CandidateSource.RECIPE,
                        recipe_id=recipe_id,
                    )
                )

        # sorted() is stable, so equal priorities keep discovery order
        return sorted(candidates.values(), key=lambda c: c.priority)

    async def _recipe_enabled(self, business_id: str, recipe_id: str) -> bool:
        toggle = await self._repository.get_recipe_toggle(business_id, recipe_id)
        if toggle is not None:
            return toggle.enabled
        pack = await self._repository.find_recipe_pack(recipe_id)
        if pack is None:
            return True
        installed = await self._repository.get_installed_pack(business_id, pack.pack_id)
        return installed is None or installed.enabled
