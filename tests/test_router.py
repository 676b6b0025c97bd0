"""Frontdesk – Scenario Router tests.

Tests: cascade ordering (call counts), guaranteed termination, decision
cache hits, cache coherence after invalidate, stale-pool handling.
"""

import copy
import time
from unittest.mock import AsyncMock, patch

import pytest

from config.settings import Settings
from frontdesk.core.errors import StoreUnavailable
from frontdesk.matching.llm import LLMResponse
from frontdesk.matching.types import NO_MATCH_SCENARIO_ID, MatchContext
from frontdesk.response.engine import ResponsePath
from frontdesk.routing.cache import MemoryDecisionCache
from frontdesk.routing.router import ScenarioRouter, build_router
from frontdesk.scenarios.schemas import Channel, FollowUpMode
from frontdesk.scenarios.store import InMemoryScenarioStore


class TestCascade:
    @pytest.mark.anyio
    async def test_tier1_answer_short_circuits(self, router: ScenarioRouter) -> None:
        with patch.object(router.tier2, "score_all", wraps=router.tier2.score_all) as tier2, patch.object(
            router.tier3, "match", new=AsyncMock()
        ) as tier3:
            decision = await router.route("What are your hours?", "acme")

        assert decision.tier == 1
        assert decision.scenario_id == "hours"
        assert decision.strategy_used == ResponsePath.FULL
        assert "8am to 6pm" in decision.text
        assert decision.cost == 0.0
        tier2.assert_not_called()
        tier3.assert_not_called()

    @pytest.mark.anyio
    async def test_tier2_answer_skips_tier3(self, router: ScenarioRouter) -> None:
        with patch.object(router.tier3, "match", new=AsyncMock()) as tier3:
            decision = await router.route("my house is getting really hot", "acme")
        assert decision.tier == 2
        assert decision.scenario_id == "ac-repair"
        assert decision.strategy_used == ResponsePath.QUICK_THEN_FULL
        assert decision.text == "Sorry to hear that. Let's get a technician out to you."
        assert decision.follow_up.mode == FollowUpMode.ASK_IF_BOOK
        tier3.assert_not_called()

    @pytest.mark.anyio
    async def test_negative_trigger_falls_through_to_tier3(self, router: ScenarioRouter, llm) -> None:
        llm.chat.return_value = LLMResponse(
            content='{"scenario_id": "cancel", "confidence": 0.85}', total_cost_cents=0.03
        )
        decision = await router.route("my air conditioner is broken but it's under warranty", "acme")
        assert decision.tier == 3
        assert decision.scenario_id == "cancel"
        assert decision.cost == 0.03
        assert decision.needs_review is False
        llm.chat.assert_awaited_once()

    @pytest.mark.anyio
    async def test_empty_pool_still_answers(self, router: ScenarioRouter, llm) -> None:
        decision = await router.route("anything at all", "tenant-without-templates")
        assert decision.scenario_id == NO_MATCH_SCENARIO_ID
        assert decision.tier == 3
        assert decision.text
        assert decision.fallback_reason == "skipped"
        llm.chat.assert_not_awaited()

    @pytest.mark.anyio
    async def test_expired_deadline_still_answers(self, router: ScenarioRouter, llm) -> None:
        decision = await router.route("gift cards?", "acme", deadline=time.monotonic() - 1)
        assert decision.tier == 3
        assert decision.text
        llm.chat.assert_not_awaited()

    @pytest.mark.anyio
    async def test_caller_name_and_company_are_filled(self, store: InMemoryScenarioStore, router: ScenarioRouter) -> None:
        template = store._templates["hvac"]
        template["categories"][0]["scenarios"].append(
            {
                "scenarioId": "greeting",
                "scenarioType": "SMALL_TALK",
                "triggers": ["good morning"],
                "quickReplies": ["Morning {name}, this is {companyName}!"],
                "quickReplies_noName": ["Good morning, this is {companyName}. Who's calling?"],
            }
        )
        with_name = await router.route("good morning", "acme", MatchContext(caller_name="Dana"))
        assert with_name.text == "Morning Dana, this is Acme Heating!"
        anonymous = await router.route("good morning", "acme")
        assert anonymous.text == "Good morning, this is Acme Heating. Who's calling?"


class TestDecisionCache:
    @pytest.mark.anyio
    async def test_repeat_utterance_hits_cache(self, router: ScenarioRouter) -> None:
        first = await router.route("What are your hours?", "acme")
        with patch.object(router.tier1, "match", wraps=router.tier1.match) as tier1:
            second = await router.route("what are your hours", "acme")
        assert first.cached is False
        assert second.cached is True
        assert second.scenario_id == first.scenario_id
        assert second.pool_version == first.pool_version
        tier1.assert_not_called()

    @pytest.mark.anyio
    async def test_cache_is_per_channel(self, router: ScenarioRouter) -> None:
        await router.route("what are your hours", "acme")
        sms = await router.route("what are your hours", "acme", MatchContext(channel=Channel.SMS))
        assert sms.cached is False

    @pytest.mark.anyio
    async def test_cached_tier3_costs_nothing(self, router: ScenarioRouter, llm) -> None:
        llm.chat.return_value = LLMResponse(content='{"scenario_id": "cancel", "confidence": 0.9}', total_cost_cents=0.05)
        first = await router.route("I need to call off Tuesday", "acme")
        second = await router.route("I need to call off Tuesday", "acme")
        assert first.cost == 0.05
        assert second.cached is True
        assert second.cost == 0.0
        llm.chat.assert_awaited_once()

    @pytest.mark.anyio
    async def test_degraded_tier3_is_not_cached(self, router: ScenarioRouter, llm) -> None:
        await router.route("gift cards?", "acme")
        again = await router.route("gift cards?", "acme")
        assert again.cached is False
        assert llm.chat.await_count == 2

    @pytest.mark.anyio
    async def test_invalidate_makes_edits_visible(self, store: InMemoryScenarioStore, router: ScenarioRouter, hvac_template) -> None:
        before = await router.route("what are your hours", "acme")
        assert "8am to 6pm" in before.text

        hvac_template["categories"][0]["scenarios"][0]["fullReplies"] = ["We are open 7am to 9pm every day."]
        store.put_template(hvac_template)
        version = await router.invalidate("acme")

        after = await router.route("what are your hours", "acme")
        assert after.cached is False
        assert after.text == "We are open 7am to 9pm every day."
        assert after.pool_version > before.pool_version
        assert after.pool_version > version

    @pytest.mark.anyio
    async def test_invalidate_evicts_tenant_decisions(self, router: ScenarioRouter) -> None:
        await router.route("what are your hours", "acme")
        assert len(router.cache) == 1
        await router.invalidate("acme")
        assert len(router.cache) == 0

    @pytest.mark.anyio
    async def test_stale_pool_decisions_are_not_cached(self, store: InMemoryScenarioStore, llm, recorder) -> None:
        router = build_router(
            Settings(pool_cache_ttl_seconds=0),
            store=store,
            cache=MemoryDecisionCache(),
            recorder=recorder,
            llm=llm,
        )
        fresh = await router.route("what are your hours", "acme")
        assert fresh.stale is False

        store.available = False
        stale = await router.route("cancel my appointment", "acme")
        assert stale.stale is True
        assert stale.scenario_id == "cancel"
        assert len(router.cache) == 1

    @pytest.mark.anyio
    async def test_store_down_without_pool_propagates(self, store: InMemoryScenarioStore, router: ScenarioRouter) -> None:
        store.available = False
        with pytest.raises(StoreUnavailable):
            await router.route("what are your hours", "acme")


class TestDecisionCacheScope:
    @pytest.mark.anyio
    async def test_cached_scenario_in_cooldown_is_skipped(self, store: InMemoryScenarioStore, router: ScenarioRouter) -> None:
        store._templates["hvac"]["categories"][0]["scenarios"][0]["cooldownSeconds"] = 60
        first = await router.route("what are your hours", "acme")
        assert first.scenario_id == "hours"

        cooling = await router.route("what are your hours", "acme", MatchContext(recent_scenarios={"hours": 5}))
        assert cooling.scenario_id != "hours"
        assert cooling.cached is False

        later = await router.route("what are your hours", "acme", MatchContext(recent_scenarios={"hours": 90}))
        assert later.scenario_id == "hours"
        assert later.cached is True

    @pytest.mark.anyio
    async def test_workers_sharing_a_cache_only_share_identical_snapshots(self, hvac_template, llm, recorder) -> None:
        tenants = {"acme": {"companyName": "Acme Heating", "templateReferences": [{"templateId": "hvac", "priority": 1}]}}
        edited = copy.deepcopy(hvac_template)
        office = edited["categories"][0]["scenarios"]
        office[0]["triggers"] = ["when do you open on weekends"]
        office.append(
            {
                "scenarioId": "hours2",
                "name": "Extended hours",
                "scenarioType": "INFO_FAQ",
                "triggers": ["what are your hours"],
                "fullReplies": ["We are now open around the clock."],
            }
        )
        shared = MemoryDecisionCache()

        def worker(template):
            return build_router(
                Settings(),
                store=InMemoryScenarioStore([template], tenants),
                cache=shared,
                recorder=recorder,
                llm=llm,
            )

        old = await worker(hvac_template).route("what are your hours", "acme")
        assert old.scenario_id == "hours"

        new = await worker(edited).route("what are your hours", "acme")
        assert new.scenario_id == "hours2"
        assert new.cached is False

        twin = await worker(copy.deepcopy(hvac_template)).route("what are your hours", "acme")
        assert twin.scenario_id == "hours"
        assert twin.cached is True

    @pytest.mark.anyio
    async def test_answer_after_deadline_is_not_cached(self, router: ScenarioRouter) -> None:
        late = await router.route("what are your hours", "acme", deadline=time.monotonic() - 1)
        assert late.scenario_id == "hours"
        again = await router.route("what are your hours", "acme")
        assert again.cached is False
