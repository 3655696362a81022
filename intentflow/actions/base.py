"""Base interface for workflow step actions."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Dict, Optional, Tuple

import httpx
from pydantic import BaseModel, Field

from ..config import ActionsConfig
from ..errors import InvalidActionConfig
from ..persistence.models import WorkflowJob, WorkflowRun

if TYPE_CHECKING:
    from ..persistence import AutomationRepository


class ActionType(str, Enum):
    """Closed set of step kinds the processor can execute."""

    CREATE_CONTACT = "create_contact"
    UPDATE_CONTACT = "update_contact"
    CREATE_LEAD = "create_lead"
    UPDATE_LEAD_STATUS = "update_lead_status"
    CREATE_ACTIVITY = "create_activity"
    SEND_EMAIL = "send_email"
    WEBHOOK = "webhook"
    DELAY = "delay"
    CONDITION = "condition"


@dataclass
class ActionContext:
    """Everything an action may touch while executing one job."""

    job: WorkflowJob
    run: WorkflowRun
    repository: "AutomationRepository"
    http_client: httpx.AsyncClient
    now: datetime
    settings: ActionsConfig = field(default_factory=ActionsConfig)


class Deferral(BaseModel):
    """Returned by an action that must resume later instead of blocking."""

    resume_at: datetime
    state: Dict[str, Any] = Field(default_factory=dict)


class BaseAction(metaclass=abc.ABCMeta):
    """One step kind. Subclasses declare required config fields."""

    action_type: ClassVar[ActionType]
    required_fields: ClassVar[Tuple[str, ...]] = ()

    def validate(self, config: Dict[str, Any]) -> None:
        missing = [
            name for name in self.required_fields if config.get(name) in (None, "")
        ]
        if missing:
            raise InvalidActionConfig(
                f"{self.action_type.value} requires {', '.join(missing)}"
            )

    @abc.abstractmethod
    async def execute(
        self, config: Dict[str, Any], ctx: ActionContext
    ) -> Dict[str, Any] | Deferral:
        """Perform the side effect and return ``{"action": ..., ...}``.

        Raises:
            ActionFailure: When the side effect did not happen.
        """
        raise NotImplementedError

    async def __call__(
        self, config: Dict[str, Any], ctx: ActionContext
    ) -> Dict[str, Any] | Deferral:
        self.validate(config)
        return await self.execute(config, ctx)


def optional(config: Dict[str, Any], *names: str) -> Dict[str, Optional[Any]]:
    """Pick the keys of ``config`` that are present and not ``None``."""
    return {name: config[name] for name in names if config.get(name) is not None}
