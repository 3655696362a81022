"""Persistence layer for automation state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import IntentflowConfig, load_config
from .inmemory import InMemoryAutomationRepository
from .models import (
    Business,
    BusinessAutomationSettings,
    Enrollment,
    Event,
    InstalledRecipePack,
    IntentRecipeMapping,
    JobStatus,
    RecipePack,
    RecipeToggle,
    RunStatus,
    Step,
    TriggerType,
    WorkflowDefinition,
    WorkflowJob,
    WorkflowRun,
)
from .postgres import PostgresAutomationRepository
from .repository import AutomationRepository
from .sqlite import SQLiteAutomationRepository

_repository_instance: AutomationRepository | None = None
_repository_url: str | None = None


def _build_repository(database_url: str) -> AutomationRepository:
    scheme, _, location = database_url.partition("://")
    if scheme == "sqlite":
        return SQLiteAutomationRepository(location)
    if scheme in ("postgres", "postgresql"):
        return PostgresAutomationRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[IntentflowConfig] = None
) -> AutomationRepository:
    """Return the process-wide automation repository.

    The backend follows ``database_url``, then ``INTENTFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, then the loaded config. ``sqlite://<path>`` and
    ``postgres(ql)://`` URLs are supported; with no URL the state lives in
    memory. The instance is cached until a different URL is requested.
    """
    global _repository_instance, _repository_url
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("INTENTFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )
    if _repository_instance is not None and database_url == _repository_url:
        return _repository_instance

    if database_url:
        _repository_instance = _build_repository(database_url)
    else:
        _repository_instance = InMemoryAutomationRepository()
    _repository_url = database_url or None
    return _repository_instance


__all__ = [
    "AutomationRepository",
    "Business",
    "BusinessAutomationSettings",
    "Enrollment",
    "Event",
    "InMemoryAutomationRepository",
    "InstalledRecipePack",
    "IntentRecipeMapping",
    "JobStatus",
    "PostgresAutomationRepository",
    "RecipePack",
    "RecipeToggle",
    "RunStatus",
    "SQLiteAutomationRepository",
    "Step",
    "TriggerType",
    "WorkflowDefinition",
    "WorkflowJob",
    "WorkflowRun",
    "get_repository",
]
