import asyncio

import pytest

from intentflow.constants import PROCESS_RUN_TOPIC
from intentflow.contracts import ScheduleContext, TriggerStatus
from intentflow.errors import UniqueViolation
from intentflow.persistence import (
    Event,
    InMemoryAutomationRepository,
    JobStatus,
    RunStatus,
    SQLiteAutomationRepository,
    Step,
    WorkflowJob,
    WorkflowRun,
)
from intentflow.runs import WorkflowRunManager, derive_run_status
from intentflow.transports import InMemoryTransport


def _job(status, index=0):
    return WorkflowJob(workflow_run_id="r1", step_index=index, action_type="delay", status=status)


def test_derive_run_status():
    assert derive_run_status([]) == RunStatus.COMPLETED
    assert derive_run_status([_job(JobStatus.COMPLETED), _job(JobStatus.COMPLETED, 1)]) == RunStatus.COMPLETED
    assert derive_run_status([_job(JobStatus.COMPLETED), _job(JobStatus.QUEUED, 1)]) == RunStatus.RUNNING
    assert derive_run_status([_job(JobStatus.PROCESSING)]) == RunStatus.RUNNING
    assert derive_run_status([_job(JobStatus.FAILED), _job(JobStatus.QUEUED, 1)]) == RunStatus.FAILED


def _event(contact_id="c1"):
    return Event(
        business_id="b1",
        intent="contact.submit",
        payload={"email": "a@b.co"},
        dedupe_key="d1",
        contact_id=contact_id,
    )


@pytest.mark.asyncio
async def test_trigger_creates_run_and_ordered_jobs(repo, make_workflow, now):
    steps = [
        Step(action_type="create_contact", config={"email": "{{payload.email}}"}),
        Step(action_type="delay", config={"minutes": 5}),
        Step(action_type="send_email", config={"to": "{{payload.email}}"}),
    ]
    workflow = make_workflow(steps=steps)
    await repo.save_workflow(workflow)
    event = _event()

    outcome = await WorkflowRunManager(repo).trigger(workflow, event=event, now=now)

    assert outcome.status == TriggerStatus.TRIGGERED
    run = await repo.get_run(outcome.run_id)
    assert run.status == RunStatus.RUNNING
    assert run.idempotency_key == f"{event.id}:wf-1"
    assert run.context["payload"] == {"email": "a@b.co"}
    assert run.context["intent"] == "contact.submit"
    jobs = await repo.list_jobs(run.id)
    assert [j.step_index for j in jobs] == [0, 1, 2]
    assert [j.action_type for j in jobs] == ["create_contact", "delay", "send_email"]
    assert all(j.status == JobStatus.QUEUED and j.scheduled_at == now for j in jobs)
    enrollment = await repo.get_enrollment("c1", "wf-1")
    assert enrollment.enrollment_count == 1


@pytest.mark.asyncio
async def test_job_configs_are_snapshots(repo, make_workflow, now):
    workflow = make_workflow(steps=[Step(action_type="webhook", config={"url": "https://a", "payload": {"x": 1}})])
    outcome = await WorkflowRunManager(repo).trigger(workflow, event=_event(None), now=now)

    workflow.steps[0].config["payload"]["x"] = 2
    jobs = await repo.list_jobs(outcome.run_id)
    assert jobs[0].action_config["payload"] == {"x": 1}


@pytest.mark.asyncio
async def test_second_trigger_is_idempotent(repo, make_workflow, now):
    workflow = make_workflow()
    await repo.save_workflow(workflow)
    manager = WorkflowRunManager(repo)
    event = _event()

    first = await manager.trigger(workflow, event=event, now=now)
    second = await manager.trigger(workflow, event=event, now=now)

    assert second.status == TriggerStatus.ALREADY_TRIGGERED
    assert second.run_id == first.run_id
    assert len(await repo.list_runs()) == 1
    assert len(await repo.list_jobs(first.run_id)) == 1


@pytest.mark.asyncio
async def test_ineligible_contact_gets_no_run(repo, make_workflow, now):
    workflow = make_workflow()
    await repo.save_workflow(workflow)
    await repo.upsert_enrollment("c1", "wf-1", now)

    outcome = await WorkflowRunManager(repo).trigger(workflow, event=_event(), now=now)

    assert outcome.status == TriggerStatus.NOT_ELIGIBLE
    assert outcome.run_id is None
    assert await repo.list_runs() == []


@pytest.mark.asyncio
async def test_zero_step_workflow_completes_immediately(repo, make_workflow, now):
    workflow = make_workflow(steps=[])
    outcome = await WorkflowRunManager(repo).trigger(workflow, event=_event(None), now=now)

    run = await repo.get_run(outcome.run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.completed_at == now


@pytest.mark.asyncio
async def test_schedule_trigger_key_and_transport_request(repo, make_workflow, now):
    transport = InMemoryTransport()
    workflow = make_workflow(business_id="b1")
    manager = WorkflowRunManager(repo, transport=transport)

    outcome = await manager.trigger(
        workflow, schedule=ScheduleContext(expression="*/5", fired_at=now), now=now
    )

    run = await repo.get_run(outcome.run_id)
    assert run.idempotency_key == f"schedule:wf-1:{now.isoformat()}"
    assert run.context["schedule"]["expression"] == "*/5"
    assert transport.pending(PROCESS_RUN_TOPIC) == 1


class FailingTransport(InMemoryTransport):
    async def publish(self, topic, message):
        raise ConnectionError("broker down")


@pytest.mark.asyncio
async def test_processing_request_failure_does_not_raise(make_workflow, now):
    repo = InMemoryAutomationRepository()
    workflow = make_workflow()
    manager = WorkflowRunManager(repo, transport=FailingTransport())

    outcome = await manager.trigger(workflow, event=_event(None), now=now)

    assert outcome.created
    assert (await repo.get_run(outcome.run_id)).status == RunStatus.RUNNING


class LosingInsertRepository(InMemoryAutomationRepository):
    """Another trigger inserts the run between the lookup and our insert."""

    def __init__(self, winner):
        super().__init__()
        self._winner = winner

    async def insert_run(self, run):
        await super().insert_run(self._winner)
        raise UniqueViolation("workflow_runs_idempotency_key")


@pytest.mark.asyncio
async def test_insert_race_returns_winning_run(make_workflow, now):
    workflow = make_workflow()
    event = _event()
    winner = WorkflowRun(workflow_id=workflow.id, idempotency_key=f"{event.id}:{workflow.id}", created_at=now)
    repo = LosingInsertRepository(winner)

    outcome = await WorkflowRunManager(repo).trigger(workflow, event=event, now=now)

    assert outcome.status == TriggerStatus.ALREADY_TRIGGERED
    assert outcome.run_id == winner.id
    assert [r.id for r in await repo.list_runs()] == [winner.id]
    assert await repo.list_jobs(winner.id) == []
    assert await repo.get_enrollment("c1", workflow.id) is None


@pytest.mark.asyncio
async def test_concurrent_triggers_create_one_run(tmp_path, make_workflow, now):
    repo = SQLiteAutomationRepository(tmp_path / "runs.db")
    try:
        workflow = make_workflow()
        await repo.save_workflow(workflow)
        manager = WorkflowRunManager(repo)
        event = _event(None)

        outcomes = await asyncio.gather(
            manager.trigger(workflow, event=event, now=now),
            manager.trigger(workflow, event=event, now=now),
        )

        assert sorted(o.status.value for o in outcomes) == ["already_triggered", "triggered"]
        assert outcomes[0].run_id == outcomes[1].run_id
        runs = await repo.list_runs()
        assert len(runs) == 1
        assert len(await repo.list_jobs(runs[0].id)) == 1
    finally:
        repo.close()
