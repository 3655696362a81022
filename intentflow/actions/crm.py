"""Actions writing contacts, leads and activities into the CRM collections."""

from __future__ import annotations

import logging
from typing import Any, Dict

from ..constants import ACTIVITIES, CONTACTS, LEADS
from ..errors import ActionFailure
from .base import ActionContext, ActionType, BaseAction, optional
from .templating import lookup

logger = logging.getLogger(__name__)


class CreateContactAction(BaseAction):
    action_type = ActionType.CREATE_CONTACT
    required_fields = ("email",)

    async def execute(self, config: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
        data = {
            "email": config["email"],
            "source": config.get("source") or "workflow",
            "tags": config.get("tags") or [],
            "custom_fields": config.get("custom_fields") or {},
            **optional(config, "first_name", "last_name", "phone", "company"),
        }
        business_id = ctx.run.context.get("business", {}).get("id")
        if business_id:
            data["business_id"] = business_id
        record = await ctx.repository.insert_record(CONTACTS, data)
        return {"action": "created", "contact_id": record["id"]}


class UpdateContactAction(BaseAction):
    action_type = ActionType.UPDATE_CONTACT
    required_fields = ("contact_id",)

    async def execute(self, config: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
        contact_id = config["contact_id"]
        changes = optional(
            config, "first_name", "last_name", "phone", "company", "tags", "custom_fields"
        )
        updated = await ctx.repository.update_record(CONTACTS, contact_id, changes)
        if not updated:
            raise ActionFailure(f"Contact {contact_id} not found")
        return {"action": "updated", "contact_id": contact_id}


class CreateLeadAction(BaseAction):
    action_type = ActionType.CREATE_LEAD
    required_fields = ("title",)

    async def execute(self, config: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
        data = {
            "title": config["title"],
            "status": config.get("status") or "new",
            "contact_id": config.get("contact_id") or ctx.run.contact_id,
            **optional(config, "value", "source", "notes"),
        }
        record = await ctx.repository.insert_record(LEADS, data)
        return {"action": "created", "lead_id": record["id"]}


class UpdateLeadStatusAction(BaseAction):
    action_type = ActionType.UPDATE_LEAD_STATUS
    required_fields = ("lead_id", "status")

    async def execute(self, config: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
        lead_id = config["lead_id"]
        status = config["status"]
        updated = await ctx.repository.update_record(LEADS, lead_id, {"status": status})
        if not updated:
            raise ActionFailure(f"Lead {lead_id} not found")
        return {"action": "status_updated", "lead_id": lead_id, "status": status}


class CreateActivityAction(BaseAction):
    action_type = ActionType.CREATE_ACTIVITY
    required_fields = ("activity_type", "title")

    async def execute(self, config: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
        data = {
            "activity_type": config["activity_type"],
            "title": config["title"],
            "contact_id": config.get("contact_id") or ctx.run.contact_id,
            **optional(config, "description", "lead_id", "deal_id"),
        }
        record = await ctx.repository.insert_record(ACTIVITIES, data)
        return {"action": "created", "activity_id": record["id"]}


def _compare(operator: str, actual: Any, expected: Any) -> bool:
    if operator in ("equals", "eq"):
        return actual == expected
    if operator in ("not_equals", "neq"):
        return actual != expected
    if operator == "contains":
        return actual is not None and str(expected) in str(actual)
    if operator == "not_contains":
        return actual is None or str(expected) not in str(actual)
    if operator in ("greater_than", "gt", "less_than", "lt"):
        try:
            left, right = float(actual), float(expected)
        except (TypeError, ValueError):
            return False
        return left > right if operator in ("greater_than", "gt") else left < right
    if operator == "exists":
        return actual is not None
    if operator == "not_exists":
        return actual is None
    logger.warning(f"Unknown condition operator {operator!r}, treating as not met")
    return False


class ConditionAction(BaseAction):
    """Evaluate a field of a CRM record or of the run context.

    With ``entity_type`` (``contact`` or ``lead``) and ``entity_id`` the field
    is read from that record; otherwise ``field`` is a dotted path into the
    run context such as ``payload.budget``.
    """

    action_type = ActionType.CONDITION
    required_fields = ("field", "operator")

    _collections = {"contact": CONTACTS, "lead": LEADS}

    async def execute(self, config: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
        field = config["field"]
        operator = config["operator"]
        expected = config.get("value")
        entity_type = config.get("entity_type")

        if entity_type:
            collection = self._collections.get(entity_type)
            if collection is None:
                raise ActionFailure(
                    f"Unsupported condition entity type: {entity_type}", retryable=False
                )
            record = await ctx.repository.get_record(collection, config.get("entity_id") or "")
            if record is None:
                return {
                    "action": "condition_evaluated",
                    "condition_met": False,
                    "branch_key": "no",
                    "reason": "Entity not found",
                }
            actual = record.get(field)
        else:
            actual = lookup(ctx.run.context, field)

        met = _compare(operator, actual, expected)
        return {
            "action": "condition_evaluated",
            "condition_met": met,
            "branch_key": "yes" if met else "no",
            "field": field,
            "operator": operator,
            "value": expected,
            "actual_value": actual,
        }
