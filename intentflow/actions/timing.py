"""Delay steps resume through the job queue instead of sleeping."""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Any, Dict

from ..errors import InvalidActionConfig
from .base import ActionContext, ActionType, BaseAction, Deferral

DEFAULT_DELAY = timedelta(minutes=5)

_SHORT = re.compile(r"^(\d+)\s*([smhd])$")
_ISO = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)
_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}


def parse_delay(config: Dict[str, Any]) -> timedelta:
    """Return the delay described by ``minutes`` or ``duration``.

    ``duration`` accepts ``30s``, ``5m``, ``1h``, ``1d`` and ISO-8601
    durations such as ``PT5M`` or ``P1D``. Without either key the delay
    defaults to five minutes.
    """
    minutes = config.get("minutes")
    if minutes not in (None, ""):
        try:
            return timedelta(minutes=float(minutes))
        except (TypeError, ValueError):
            raise InvalidActionConfig(f"Invalid delay minutes: {minutes!r}")

    duration = config.get("duration")
    if duration in (None, ""):
        return DEFAULT_DELAY

    text = str(duration).strip()
    match = _SHORT.match(text.lower())
    if match:
        return timedelta(**{_UNITS[match.group(2)]: int(match.group(1))})

    match = _ISO.match(text.upper())
    if match and any(match.groupdict().values()):
        parts = {k: int(v) for k, v in match.groupdict().items() if v}
        return timedelta(**parts)

    raise InvalidActionConfig(f"Invalid delay duration: {duration!r}")


class DelayAction(BaseAction):
    """First run defers until ``now + delay``; the resumed run completes."""

    action_type = ActionType.DELAY

    async def execute(
        self, config: Dict[str, Any], ctx: ActionContext
    ) -> Dict[str, Any] | Deferral:
        state = ctx.job.result or {}
        resume_at = state.get("resume_at")
        if resume_at:
            due = datetime.fromisoformat(resume_at)
            if ctx.now >= due:
                return {"action": "delayed", "resumed_at": ctx.now.isoformat(), "resume_at": resume_at}
            return Deferral(resume_at=due, state=state)

        delay = parse_delay(config)
        due = ctx.now + delay
        return Deferral(
            resume_at=due,
            state={"resume_at": due.isoformat(), "delay_seconds": delay.total_seconds()},
        )
