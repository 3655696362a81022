"""Step actions and the registry mapping action types to implementations."""

from __future__ import annotations

from typing import Dict, Type

from ..errors import UnknownActionTypeError
from .base import ActionContext, ActionType, BaseAction, Deferral
from .crm import (
    ConditionAction,
    CreateActivityAction,
    CreateContactAction,
    CreateLeadAction,
    UpdateContactAction,
    UpdateLeadStatusAction,
)
from .messaging import SendEmailAction, WebhookAction
from .templating import interpolate, lookup
from .timing import DelayAction, parse_delay

ACTION_REGISTRY: Dict[ActionType, BaseAction] = {}

ACTION_ALIASES: Dict[str, ActionType] = {
    "call_webhook": ActionType.WEBHOOK,
    "evaluate_condition": ActionType.CONDITION,
}


def register_action(action_cls: Type[BaseAction]) -> Type[BaseAction]:
    """Register an action class under its ``action_type``."""
    ACTION_REGISTRY[action_cls.action_type] = action_cls()
    return action_cls


for _action_cls in (
    CreateContactAction,
    UpdateContactAction,
    CreateLeadAction,
    UpdateLeadStatusAction,
    CreateActivityAction,
    SendEmailAction,
    WebhookAction,
    DelayAction,
    ConditionAction,
):
    register_action(_action_cls)


def get_action(action_type: str) -> BaseAction:
    """Resolve an action type (or alias) to its registered action.

    Raises:
        UnknownActionTypeError: When nothing is registered for ``action_type``.
    """
    resolved = ACTION_ALIASES.get(action_type)
    if resolved is None:
        try:
            resolved = ActionType(action_type)
        except ValueError:
            raise UnknownActionTypeError(action_type) from None
    action = ACTION_REGISTRY.get(resolved)
    if action is None:
        raise UnknownActionTypeError(action_type)
    return action


__all__ = [
    "ACTION_ALIASES",
    "ACTION_REGISTRY",
    "ActionContext",
    "ActionType",
    "BaseAction",
    "ConditionAction",
    "CreateActivityAction",
    "CreateContactAction",
    "CreateLeadAction",
    "DelayAction",
    "Deferral",
    "SendEmailAction",
    "UpdateContactAction",
    "UpdateLeadStatusAction",
    "WebhookAction",
    "get_action",
    "interpolate",
    "lookup",
    "parse_delay",
    "register_action",
]
