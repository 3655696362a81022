import pytest

from intentflow.contracts import CandidateSource
from intentflow.errors import LookupFailure
from intentflow.persistence import (
    BusinessAutomationSettings,
    InstalledRecipePack,
    IntentRecipeMapping,
    RecipePack,
    RecipeToggle,
    TriggerType,
)
from intentflow.routing import IntentRouter


async def _seed_recipe(repo, make_workflow, recipe_id="r-welcome", priority=None, industry="dental"):
    await repo.save_workflow(
        make_workflow(
            workflow_id=f"wf-{recipe_id}",
            business_id=None,
            industry=industry,
            recipe_id=recipe_id,
            priority=priority,
            trigger_config={},
        )
    )


@pytest.mark.asyncio
async def test_disabled_business_resolves_nothing(repo, make_business, make_workflow):
    await repo.save_business(make_business())
    await repo.save_workflow(make_workflow())
    await repo.save_automation_settings(
        BusinessAutomationSettings(business_id="b1", automations_enabled=False)
    )

    assert await IntentRouter(repo).resolve("b1", "contact.submit") == []


@pytest.mark.asyncio
async def test_missing_business_raises(repo):
    with pytest.raises(LookupFailure):
        await IntentRouter(repo).resolve("nope", "contact.submit")


@pytest.mark.asyncio
async def test_business_workflows_match_intent_and_sort(repo, make_business, make_workflow):
    await repo.save_business(make_business())
    await repo.save_workflow(make_workflow("wf-late", priority=90))
    await repo.save_workflow(make_workflow("wf-default"))
    await repo.save_workflow(make_workflow("wf-first", priority=10))
    await repo.save_workflow(
        make_workflow("wf-any", priority=20, trigger_config={"intents": ["contact.submit", "x"]})
    )
    await repo.save_workflow(make_workflow("wf-other", intent="booking.request"))
    await repo.save_workflow(make_workflow("wf-off", is_active=False))
    await repo.save_workflow(
        make_workflow("wf-sched", trigger_type=TriggerType.SCHEDULE)
    )
    await repo.save_workflow(make_workflow("wf-b2", business_id="b2"))

    result = await IntentRouter(repo).resolve("b1", "contact.submit")

    assert [c.id for c in result] == ["wf-first", "wf-any", "wf-default", "wf-late"]
    assert result[2].priority == 50
    assert all(c.source == CandidateSource.BUSINESS for c in result)


@pytest.mark.asyncio
async def test_recipe_workflows_follow_industry_mapping(repo, make_business, make_workflow):
    await repo.save_business(make_business())
    await _seed_recipe(repo, make_workflow, "r-welcome")
    await _seed_recipe(repo, make_workflow, "r-vip", priority=5)
    await _seed_recipe(repo, make_workflow, "r-legal", industry="legal")
    await repo.save_intent_mapping(
        IntentRecipeMapping(
            intent="contact.submit",
            industry="dental",
            recipe_ids=["r-welcome", "r-vip", "r-legal", "r-missing"],
            priority=30,
        )
    )

    result = await IntentRouter(repo).resolve("b1", "contact.submit")

    assert [(c.id, c.priority) for c in result] == [("wf-r-vip", 5), ("wf-r-welcome", 30)]
    assert result[1].source == CandidateSource.RECIPE
    assert result[1].recipe_id == "r-welcome"


@pytest.mark.asyncio
async def test_industry_defaults_to_general(repo, make_business, make_workflow):
    await repo.save_business(make_business(industry=None))
    await _seed_recipe(repo, make_workflow, "r-general", industry="general")
    await repo.save_intent_mapping(
        IntentRecipeMapping(intent="contact.submit", industry="general", recipe_ids=["r-general"])
    )

    result = await IntentRouter(repo).resolve("b1", "contact.submit")
    assert [c.id for c in result] == ["wf-r-general"]


@pytest.mark.asyncio
async def test_toggle_and_pack_decide_recipe_enablement(repo, make_business, make_workflow):
    await repo.save_business(make_business())
    for recipe_id in ("r-toggled-off", "r-toggled-on", "r-pack-off", "r-no-pack"):
        await _seed_recipe(repo, make_workflow, recipe_id)
    await repo.save_intent_mapping(
        IntentRecipeMapping(
            intent="contact.submit",
            industry="dental",
            recipe_ids=["r-toggled-off", "r-toggled-on", "r-pack-off", "r-no-pack"],
        )
    )
    await repo.save_recipe_pack(
        RecipePack(pack_id="p1", recipes=["r-toggled-on", "r-pack-off"])
    )
    await repo.save_installed_pack(InstalledRecipePack(business_id="b1", pack_id="p1", enabled=False))
    await repo.save_recipe_toggle(RecipeToggle(business_id="b1", recipe_id="r-toggled-off", enabled=False))
    await repo.save_recipe_toggle(RecipeToggle(business_id="b1", recipe_id="r-toggled-on", enabled=True))

    result = await IntentRouter(repo).resolve("b1", "contact.submit")

    assert sorted(c.id for c in result) == ["wf-r-no-pack", "wf-r-toggled-on"]


@pytest.mark.asyncio
async def test_workflow_from_both_sources_appears_once(repo, make_business, make_workflow):
    await repo.save_business(make_business())
    await repo.save_workflow(
        make_workflow("wf-shared", industry="dental", recipe_id="r-shared")
    )
    await repo.save_intent_mapping(
        IntentRecipeMapping(intent="contact.submit", industry="dental", recipe_ids=["r-shared"], priority=20)
    )

    result = await IntentRouter(repo).resolve("b1", "contact.submit")

    assert len(result) == 1
    assert result[0].id == "wf-shared"
    assert result[0].priority == 20


@pytest.mark.asyncio
async def test_failing_recipe_lookup_is_skipped(repo, make_business, make_workflow):
    await repo.save_business(make_business())
    await repo.save_workflow(make_workflow("wf-own"))
    await repo.save_intent_mapping(
        IntentRecipeMapping(intent="contact.submit", industry="dental", recipe_ids=["r-broken"])
    )

    async def broken(business_id, recipe_id):
        raise RuntimeError("store unavailable")

    repo.get_recipe_toggle = broken

    result = await IntentRouter(repo).resolve("b1", "contact.submit")
    assert [c.id for c in result] == ["wf-own"]
