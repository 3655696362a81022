from datetime import timedelta

import httpx
import pytest

from intentflow.config import EngineConfig, IntentflowConfig
from intentflow.constants import PROCESS_RUN_TOPIC
from intentflow.contracts import ProcessRunRequest
from intentflow.errors import LookupFailure
from intentflow.execute import JobProcessor, JobWorker
from intentflow.persistence import Event, JobStatus, RunStatus, Step
from intentflow.runs import WorkflowRunManager
from intentflow.transports import InMemoryTransport


def _flaky_client(failures: int):
    """Webhook endpoint answering 500 ``failures`` times, then 200."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) <= failures:
            return httpx.Response(500)
        return httpx.Response(200)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler)), calls


ACTIVITY = Step(action_type="create_activity", config={"activity_type": "note", "title": "hello"})
WEBHOOK = Step(action_type="webhook", config={"url": "https://hooks.example.com/in"})


async def _start_run(repo, make_workflow, now, steps):
    workflow = make_workflow(steps=steps)
    event = Event(business_id="b1", intent="contact.submit", dedupe_key="d1", payload={"email": "a@b.co"})
    outcome = await WorkflowRunManager(repo).trigger(workflow, event=event, now=now)
    return outcome.run_id


@pytest.mark.asyncio
async def test_all_steps_complete_and_run_finalizes(repo, config, http_client, make_workflow, now):
    run_id = await _start_run(repo, make_workflow, now, [ACTIVITY, WEBHOOK])
    processor = JobProcessor(repo, config, http_client)

    result = await processor.process_run(run_id, now=now)

    assert result.processed == 2
    assert result.finalized is True
    assert result.run_status == RunStatus.COMPLETED
    run = await repo.get_run(run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.result["completed"] == 2
    assert run.result["failed"] == 0
    jobs = await repo.list_jobs(run_id)
    assert jobs[1].result == {
        "action": "webhook_called",
        "url": "https://hooks.example.com/in",
        "status": 200,
        "success": True,
    }
    assert len(http_client.calls) == 1


@pytest.mark.asyncio
async def test_retry_until_success_keeps_order(repo, config, make_workflow, now):
    client, calls = _flaky_client(failures=2)
    run_id = await _start_run(repo, make_workflow, now, [ACTIVITY, WEBHOOK, ACTIVITY])
    processor = JobProcessor(repo, config, client)

    first = await processor.process_run(run_id, now=now)
    assert [o.status for o in first.results] == [JobStatus.COMPLETED, JobStatus.QUEUED]
    jobs = await repo.list_jobs(run_id)
    assert jobs[1].retry_count == 1
    assert jobs[1].scheduled_at == now + timedelta(seconds=60)
    assert jobs[1].error_message
    assert jobs[2].status == JobStatus.QUEUED

    early = await processor.process_run(run_id, now=now + timedelta(seconds=30))
    assert early.processed == 0
    assert len(calls) == 1

    await processor.process_run(run_id, now=now + timedelta(seconds=60))
    jobs = await repo.list_jobs(run_id)
    assert jobs[1].retry_count == 2
    assert jobs[1].scheduled_at == now + timedelta(seconds=180)

    last = await processor.process_run(run_id, now=now + timedelta(seconds=180))
    assert last.finalized is True
    jobs = await repo.list_jobs(run_id)
    assert [j.status for j in jobs] == [JobStatus.COMPLETED] * 3
    assert jobs[1].retry_count == 2
    assert jobs[2].processed_at == now + timedelta(seconds=180)
    assert (await repo.get_run(run_id)).status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_retries_exhausted_fail_job_and_continue(repo, config, make_workflow, now):
    client, calls = _flaky_client(failures=10)
    run_id = await _start_run(repo, make_workflow, now, [WEBHOOK, ACTIVITY])
    processor = JobProcessor(repo, config, client)

    await processor.process_run(run_id, now=now)
    await processor.process_run(run_id, now=now + timedelta(seconds=60))
    result = await processor.process_run(run_id, now=now + timedelta(seconds=180))

    assert len(calls) == 3
    jobs = await repo.list_jobs(run_id)
    assert jobs[0].status == JobStatus.FAILED
    assert jobs[0].retry_count == 3
    assert jobs[1].status == JobStatus.COMPLETED
    assert result.run_status == RunStatus.FAILED
    run = await repo.get_run(run_id)
    assert run.status == RunStatus.FAILED
    assert run.result["failed"] == 1


@pytest.mark.asyncio
async def test_exponential_backoff(repo, make_workflow, now):
    client, _ = _flaky_client(failures=10)
    config = IntentflowConfig(
        engine=EngineConfig(backoff_strategy="exponential", backoff_unit_seconds=10, max_retries=5)
    )
    run_id = await _start_run(repo, make_workflow, now, [WEBHOOK])
    processor = JobProcessor(repo, config, client)

    await processor.process_run(run_id, now=now)
    await processor.process_run(run_id, now=now + timedelta(seconds=10))
    job = (await repo.list_jobs(run_id))[0]
    assert job.retry_count == 2
    assert job.scheduled_at == now + timedelta(seconds=30)


@pytest.mark.asyncio
async def test_invalid_config_fails_without_retry(repo, config, http_client, make_workflow, now):
    run_id = await _start_run(
        repo, make_workflow, now, [Step(action_type="webhook", config={"method": "POST"})]
    )
    result = await JobProcessor(repo, config, http_client).process_run(run_id, now=now)

    job = (await repo.list_jobs(run_id))[0]
    assert job.status == JobStatus.FAILED
    assert job.retry_count == 1
    assert "url" in job.error_message
    assert result.run_status == RunStatus.FAILED
    assert http_client.calls == []


@pytest.mark.asyncio
async def test_unknown_action_is_skipped(repo, config, http_client, make_workflow, now):
    run_id = await _start_run(
        repo, make_workflow, now, [Step(action_type="teleport", config={}), ACTIVITY]
    )
    result = await JobProcessor(repo, config, http_client).process_run(run_id, now=now)

    jobs = await repo.list_jobs(run_id)
    assert jobs[0].status == JobStatus.COMPLETED
    assert jobs[0].result["skipped"] is True
    assert "teleport" in jobs[0].result["reason"]
    assert result.run_status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_delay_defers_following_steps(repo, config, http_client, make_workflow, now):
    run_id = await _start_run(
        repo, make_workflow, now, [Step(action_type="delay", config={"minutes": 5}), ACTIVITY]
    )
    processor = JobProcessor(repo, config, http_client)

    first = await processor.process_run(run_id, now=now)
    jobs = await repo.list_jobs(run_id)
    assert first.run_status == RunStatus.RUNNING
    assert jobs[0].status == JobStatus.QUEUED
    assert jobs[0].scheduled_at == now + timedelta(minutes=5)
    assert jobs[0].retry_count == 0
    assert jobs[1].status == JobStatus.QUEUED

    second = await processor.process_run(run_id, now=now + timedelta(minutes=5))
    jobs = await repo.list_jobs(run_id)
    assert jobs[0].result["action"] == "delayed"
    assert jobs[1].status == JobStatus.COMPLETED
    assert second.run_status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_config_is_interpolated_from_run_context(repo, config, http_client, make_workflow, now):
    run_id = await _start_run(
        repo,
        make_workflow,
        now,
        [Step(action_type="create_contact", config={"email": "{{payload.email}}", "first_name": "{{payload.name}}"})],
    )
    await JobProcessor(repo, config, http_client).process_run(run_id, now=now)

    job = (await repo.list_jobs(run_id))[0]
    contact = await repo.get_record("contacts", job.result["contact_id"])
    assert contact["email"] == "a@b.co"
    assert contact["first_name"] == "{{payload.name}}"
    assert contact["business_id"] == "b1"


@pytest.mark.asyncio
async def test_lost_claim_stops_processing(repo, config, http_client, make_workflow, now):
    run_id = await _start_run(repo, make_workflow, now, [ACTIVITY, ACTIVITY])
    first_job = (await repo.list_jobs(run_id))[0]
    assert await repo.claim_job(first_job.id, now) is True

    result = await JobProcessor(repo, config, http_client).process_run(run_id, now=now)

    assert result.processed == 0
    assert result.run_status == RunStatus.RUNNING
    jobs = await repo.list_jobs(run_id)
    assert [j.status for j in jobs] == [JobStatus.PROCESSING, JobStatus.QUEUED]


@pytest.mark.asyncio
async def test_missing_and_terminal_runs(repo, config, http_client, make_workflow, now):
    processor = JobProcessor(repo, config, http_client)
    with pytest.raises(LookupFailure):
        await processor.process_run("nope", now=now)

    run_id = await _start_run(repo, make_workflow, now, [ACTIVITY])
    await processor.process_run(run_id, now=now)
    again = await processor.process_run(run_id, now=now)
    assert again.processed == 0
    assert again.run_status == RunStatus.COMPLETED
    assert again.finalized is False


@pytest.mark.asyncio
async def test_worker_consumes_process_requests(repo, config, http_client, make_workflow, now):
    run_id = await _start_run(repo, make_workflow, now, [ACTIVITY])
    transport = InMemoryTransport()
    await transport.publish(PROCESS_RUN_TOPIC, ProcessRunRequest(run_id=run_id))
    await transport.publish(PROCESS_RUN_TOPIC, ProcessRunRequest(run_id="missing"))
    worker = JobWorker(transport, JobProcessor(repo, config, http_client))

    await worker.start(lifespan=0.3)

    assert worker.processed_runs == [run_id]
    assert transport.pending(PROCESS_RUN_TOPIC) == 0
    assert (await repo.get_run(run_id)).status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_failed_step_waits_for_retrying_step_before_finalizing(repo, config, make_workflow, now):
    client, calls = _flaky_client(failures=1)
    run_id = await _start_run(
        repo, make_workflow, now, [Step(action_type="create_contact", config={}), WEBHOOK]
    )
    processor = JobProcessor(repo, config, client)

    first = await processor.process_run(run_id, now=now)

    assert first.run_status == RunStatus.FAILED
    assert first.finalized is False
    assert (await repo.get_run(run_id)).status == RunStatus.RUNNING
    jobs = await repo.list_jobs(run_id)
    assert [(j.status, j.retry_count) for j in jobs] == [(JobStatus.FAILED, 1), (JobStatus.QUEUED, 1)]

    second = await processor.process_run(run_id, now=now + timedelta(seconds=60))

    assert second.processed == 1
    assert second.finalized is True
    assert len(calls) == 2
    run = await repo.get_run(run_id)
    assert run.status == RunStatus.FAILED
    assert run.result["failed"] == 1
    assert run.result["completed"] == 1
    assert [j.status for j in await repo.list_jobs(run_id)] == [JobStatus.FAILED, JobStatus.COMPLETED]
