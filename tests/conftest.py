from datetime import datetime, timezone

import httpx
import pytest

from intentflow.config import IntentflowConfig
from intentflow.persistence import (
    Business,
    InMemoryAutomationRepository,
    Step,
    WorkflowDefinition,
)

NOW = datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def repo() -> InMemoryAutomationRepository:
    return InMemoryAutomationRepository()


@pytest.fixture
def config() -> IntentflowConfig:
    return IntentflowConfig()


@pytest.fixture
def http_client():
    """Client answering every request with 200 and recording it."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"id": "msg_1"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client.calls = calls
    return client


def _make_business(business_id: str = "b1", industry: str | None = "dental") -> Business:
    return Business(id=business_id, name="Bright Smiles", industry=industry)


def _make_workflow(
    workflow_id: str = "wf-1",
    business_id: str | None = "b1",
    intent: str = "contact.submit",
    steps: list[Step] | None = None,
    **kwargs,
) -> WorkflowDefinition:
    return WorkflowDefinition(
        id=workflow_id,
        business_id=business_id,
        name=kwargs.pop("name", f"Workflow {workflow_id}"),
        trigger_config=kwargs.pop("trigger_config", {"intent": intent}),
        steps=steps
        if steps is not None
        else [Step(action_type="create_activity", config={"activity_type": "note", "title": "New lead"})],
        **kwargs,
    )


@pytest.fixture
def make_business():
    return _make_business


@pytest.fixture
def make_workflow():
    return _make_workflow
