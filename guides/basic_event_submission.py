"""Simple example showing an event routed to a workflow and run inline."""

import asyncio

from intentflow import AutomationEngine
from intentflow.config import IntentflowConfig
from intentflow.persistence import (
    Business,
    InMemoryAutomationRepository,
    Step,
    WorkflowDefinition,
)


async def main():
    """Basic event submission example."""
    repo = InMemoryAutomationRepository()
    await repo.save_business(Business(id="b1", name="Bright Smiles", industry="dental"))

    # Define a workflow listening for contact form submissions
    await repo.save_workflow(
        WorkflowDefinition(
            id="wf-welcome",
            business_id="b1",
            name="Welcome new contact",
            trigger_config={"intent": "contact.submit"},
            steps=[
                Step(action_type="create_contact", config={"email": "{{payload.email}}"}),
                Step(action_type="send_email", config={"to": "{{payload.email}}", "subject": "Welcome!"}),
                Step(action_type="create_activity", config={"activity_type": "note", "title": "Welcome sent"}),
            ],
        )
    )

    # No transport configured, so runs are processed inline
    engine = AutomationEngine(repo, IntentflowConfig())
    result = await engine.submit_event(
        "b1", "contact.submit", {"email": "ada@example.com"}, dedupe_key="form-42"
    )

    print(f"Event {result.event_id} triggered {result.triggered} workflows")
    for outcome in result.results:
        run = await repo.get_run(outcome.run_id)
        print(f"Run {run.id}: {run.status.value}")
        for job in await repo.list_jobs(run.id):
            print(f"  {job.step_index} {job.action_type}: {job.result}")


if __name__ == "__main__":
    asyncio.run(main())
