import json
from datetime import timedelta

import httpx
import pytest

from intentflow.actions import (
    ActionContext,
    ActionType,
    ConditionAction,
    CreateContactAction,
    CreateLeadAction,
    Deferral,
    SendEmailAction,
    UpdateContactAction,
    UpdateLeadStatusAction,
    WebhookAction,
    get_action,
    interpolate,
    parse_delay,
)
from intentflow.config import ActionsConfig
from intentflow.constants import CONTACTS, LEADS
from intentflow.errors import ActionFailure, InvalidActionConfig, UnknownActionTypeError
from intentflow.persistence import WorkflowJob, WorkflowRun


def _ctx(repo, client, now, settings=None, context=None, job_result=None, contact_id=None):
    run = WorkflowRun(
        workflow_id="wf-1",
        idempotency_key="e1:wf-1",
        contact_id=contact_id,
        context=context or {"payload": {"email": "a@b.co"}, "business": {"id": "b1", "name": "Bright Smiles"}},
    )
    job = WorkflowJob(workflow_run_id=run.id, step_index=0, action_type="x", result=job_result)
    return ActionContext(
        job=job,
        run=run,
        repository=repo,
        http_client=client,
        now=now,
        settings=settings or ActionsConfig(),
    )


def test_registry_resolves_types_and_aliases():
    assert get_action("webhook").action_type == ActionType.WEBHOOK
    assert get_action("call_webhook").action_type == ActionType.WEBHOOK
    assert get_action("evaluate_condition").action_type == ActionType.CONDITION
    with pytest.raises(UnknownActionTypeError):
        get_action("teleport")


def test_interpolate_nested_values():
    context = {"payload": {"email": "a@b.co", "budget": 1200, "tags": ["vip"]}}
    config = {
        "to": "{{payload.email}}",
        "subject": "Hi {{payload.email}} ({{payload.missing}})",
        "amount": "{{ payload.budget }}",
        "items": ["{{payload.tags}}", 3],
    }
    assert interpolate(config, context) == {
        "to": "a@b.co",
        "subject": "Hi a@b.co ({{payload.missing}})",
        "amount": 1200,
        "items": [["vip"], 3],
    }


def test_parse_delay_formats():
    assert parse_delay({"minutes": 15}) == timedelta(minutes=15)
    assert parse_delay({"duration": "30s"}) == timedelta(seconds=30)
    assert parse_delay({"duration": "2h"}) == timedelta(hours=2)
    assert parse_delay({"duration": "1d"}) == timedelta(days=1)
    assert parse_delay({"duration": "PT5M"}) == timedelta(minutes=5)
    assert parse_delay({"duration": "P1DT2H"}) == timedelta(days=1, hours=2)
    assert parse_delay({}) == timedelta(minutes=5)
    with pytest.raises(InvalidActionConfig):
        parse_delay({"duration": "soon"})


@pytest.mark.asyncio
async def test_required_fields_are_validated(repo, http_client, now):
    with pytest.raises(InvalidActionConfig):
        await CreateContactAction()({}, _ctx(repo, http_client, now))
    with pytest.raises(InvalidActionConfig):
        await UpdateLeadStatusAction()({"lead_id": "l1"}, _ctx(repo, http_client, now))


@pytest.mark.asyncio
async def test_contact_and_lead_records(repo, http_client, now):
    ctx = _ctx(repo, http_client, now, contact_id="c-run")
    created = await CreateContactAction()({"email": "a@b.co", "first_name": "Ada"}, ctx)
    contact = await repo.get_record(CONTACTS, created["contact_id"])
    assert contact["business_id"] == "b1"
    assert contact["source"] == "workflow"

    updated = await UpdateContactAction()(
        {"contact_id": created["contact_id"], "phone": "555"}, ctx
    )
    assert updated == {"action": "updated", "contact_id": created["contact_id"]}
    assert (await repo.get_record(CONTACTS, created["contact_id"]))["phone"] == "555"

    with pytest.raises(ActionFailure):
        await UpdateContactAction()({"contact_id": "missing"}, ctx)

    lead = await CreateLeadAction()({"title": "Implant consult"}, ctx)
    stored = await repo.get_record(LEADS, lead["lead_id"])
    assert stored["status"] == "new"
    assert stored["contact_id"] == "c-run"

    result = await UpdateLeadStatusAction()({"lead_id": lead["lead_id"], "status": "won"}, ctx)
    assert result["action"] == "status_updated"
    assert (await repo.get_record(LEADS, lead["lead_id"]))["status"] == "won"


@pytest.mark.asyncio
async def test_webhook_posts_payload_with_context(repo, http_client, now):
    result = await WebhookAction()(
        {"url": "https://hooks.example.com/in", "payload": {"kind": "lead"}, "headers": {"X-Key": "k"}},
        _ctx(repo, http_client, now),
    )

    assert result["status"] == 200
    request = http_client.calls[0]
    assert request.method == "POST"
    assert request.headers["X-Key"] == "k"
    body = json.loads(request.content)
    assert body["kind"] == "lead"
    assert body["context"]["payload"]["email"] == "a@b.co"


@pytest.mark.asyncio
async def test_webhook_failures_raise_action_failure(repo, now):
    def not_found(request):
        return httpx.Response(404)

    def unreachable(request):
        raise httpx.ConnectError("refused", request=request)

    for handler in (not_found, unreachable):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        with pytest.raises(ActionFailure) as exc_info:
            await WebhookAction()({"url": "https://hooks.example.com/in"}, _ctx(repo, client, now))
        assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_email_queued_without_api_key(repo, http_client, now):
    result = await SendEmailAction()({"to": "a@b.co", "subject": "Hi"}, _ctx(repo, http_client, now))
    assert result["action"] == "email_queued"
    assert http_client.calls == []


@pytest.mark.asyncio
async def test_email_sent_through_api(repo, http_client, now):
    settings = ActionsConfig(email_api_key="re_test", email_api_url="https://mail.example.com/emails")
    result = await SendEmailAction()(
        {"to": "a@b.co", "subject": "Hi", "body": "<p>Welcome</p>"},
        _ctx(repo, http_client, now, settings=settings),
    )

    assert result == {"action": "email_sent", "email_id": "msg_1", "to": "a@b.co", "subject": "Hi"}
    request = http_client.calls[0]
    assert str(request.url) == "https://mail.example.com/emails"
    assert request.headers["Authorization"] == "Bearer re_test"
    body = json.loads(request.content)
    assert body["from"] == "Bright Smiles <onboarding@resend.dev>"
    assert body["to"] == ["a@b.co"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "operator, value, met",
    [
        ("equals", 1200, True),
        ("neq", 1200, False),
        ("greater_than", "1000", True),
        ("lt", 1000, False),
        ("contains", "20", True),
        ("not_contains", "99", True),
        ("exists", None, True),
        ("not_exists", None, False),
        ("bogus", None, False),
    ],
)
async def test_condition_on_context(repo, http_client, now, operator, value, met):
    ctx = _ctx(repo, http_client, now, context={"payload": {"budget": 1200}})
    result = await ConditionAction()(
        {"field": "payload.budget", "operator": operator, "value": value}, ctx
    )
    assert result["condition_met"] is met
    assert result["branch_key"] == ("yes" if met else "no")


@pytest.mark.asyncio
async def test_condition_on_record(repo, http_client, now):
    contact = await repo.insert_record(CONTACTS, {"email": "a@b.co", "status": "customer"})
    ctx = _ctx(repo, http_client, now)

    met = await ConditionAction()(
        {"field": "status", "operator": "eq", "value": "customer", "entity_type": "contact", "entity_id": contact["id"]},
        ctx,
    )
    missing = await ConditionAction()(
        {"field": "status", "operator": "eq", "value": "customer", "entity_type": "lead", "entity_id": "nope"},
        ctx,
    )

    assert met["condition_met"] is True
    assert missing["condition_met"] is False
    assert missing["reason"] == "Entity not found"


@pytest.mark.asyncio
async def test_delay_defers_then_resumes(repo, http_client, now):
    action = get_action("delay")
    deferral = await action({"duration": "1h"}, _ctx(repo, http_client, now))
    assert isinstance(deferral, Deferral)
    assert deferral.resume_at == now + timedelta(hours=1)

    early = await action({"duration": "1h"}, _ctx(repo, http_client, now, job_result=deferral.state))
    assert isinstance(early, Deferral)

    resumed = await action(
        {"duration": "1h"},
        _ctx(repo, http_client, now + timedelta(hours=1), job_result=deferral.state),
    )
    assert resumed["action"] == "delayed"
