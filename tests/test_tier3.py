"""Frontdesk – Tier-3 fallback matcher tests.

The language model is always mocked: no production API calls.
"""

import asyncio
import time
from unittest.mock import AsyncMock

import pytest

from frontdesk.core.errors import LLMProviderError
from frontdesk.matching.learning import LearningOutcome, LearningRecorder
from frontdesk.matching.llm import LLMResponse
from frontdesk.matching.text import UtteranceView
from frontdesk.matching.tier3 import LLMFallbackMatcher, build_prompt, parse_choice
from frontdesk.matching.types import NO_MATCH_SCENARIO_ID, MatchContext, ScoredCandidate


def _answer(content: str, cost: float = 0.02) -> LLMResponse:
    return LLMResponse(content=content, model="gpt-4o-mini", total_cost_cents=cost)


def _drain(recorder: LearningRecorder) -> list:
    records = []
    while recorder.pending:
        records.append(recorder._queue.get_nowait())
    return records


@pytest.fixture
def matcher(llm, recorder) -> LLMFallbackMatcher:
    return LLMFallbackMatcher(
        llm,
        recorder,
        max_candidates=25,
        timeout_seconds=1.0,
        review_threshold=0.7,
        no_match_reply="Sorry, could you repeat that?",
    )


class TestParseChoice:
    def test_plain_json(self) -> None:
        assert parse_choice('{"scenario_id": "hours", "confidence": 0.8, "reason": "asks hours"}') == (
            "hours",
            0.8,
            "asks hours",
        )

    def test_json_wrapped_in_prose_and_clamped(self) -> None:
        scenario_id, confidence, _ = parse_choice('Sure! {"scenarioId": "cancel", "confidence": 7}')
        assert scenario_id == "cancel"
        assert confidence == 1.0

    @pytest.mark.parametrize("content", ["hours", '{"confidence": 0.9}', "{not json}"])
    def test_unusable_answers(self, content: str) -> None:
        with pytest.raises(LLMProviderError):
            parse_choice(content)


class TestBuildPrompt:
    def test_lists_candidates_and_recent_turns(self, make_pool) -> None:
        pool = make_pool()
        context = MatchContext(recent_turns=["hi", "my ac is out"])
        messages = build_prompt("it is so hot", pool.scenarios, context)
        assert messages[0]["role"] == "system"
        user = messages[1]["content"]
        assert "- hours | Business hours | Office Info" in user
        assert "my ac is out" in user
        assert user.endswith("Caller said: it is so hot")


class TestLLMFallbackMatcher:
    @pytest.mark.anyio
    async def test_model_choice_is_returned(self, make_pool, llm, recorder, matcher) -> None:
        pool = make_pool()
        llm.chat.return_value = _answer('{"scenario_id": "cancel", "confidence": 0.92}')
        view = UtteranceView("I won't make it on Tuesday", pool.normalizers)

        result = await matcher.match(view, pool, pool.scenarios, None, time.monotonic() + 5)

        assert result.scenario.scenario_id == "cancel"
        assert result.tier == 3
        assert result.confidence == 0.92
        assert result.cost == 0.02
        assert result.fallback_reason is None
        assert result.needs_review is False
        records = _drain(recorder)
        assert len(records) == 1
        assert records[0].outcome == LearningOutcome.MATCHED
        assert records[0].candidates == ["hours", "ac-repair", "cancel"]

    @pytest.mark.anyio
    async def test_low_confidence_flags_review(self, make_pool, llm, matcher) -> None:
        pool = make_pool()
        llm.chat.return_value = _answer('{"scenario_id": "hours", "confidence": 0.4}')
        view = UtteranceView("when can I come by", pool.normalizers)
        result = await matcher.match(view, pool, pool.scenarios, None, time.monotonic() + 5)
        assert result.scenario.scenario_id == "hours"
        assert result.needs_review is True

    @pytest.mark.anyio
    async def test_none_answer_returns_sentinel(self, make_pool, llm, recorder, matcher) -> None:
        pool = make_pool()
        llm.chat.return_value = _answer('{"scenario_id": "NONE", "confidence": 0.9}')
        view = UtteranceView("do you sell pizza", pool.normalizers)
        ranked = [ScoredCandidate(pool.get("hours"), 0.3)]

        result = await matcher.match(view, pool, pool.scenarios, None, time.monotonic() + 5, ranked=ranked)

        assert result.is_no_match
        assert result.scenario.scenario_id == NO_MATCH_SCENARIO_ID
        assert result.scenario.full_replies[0].text == "Sorry, could you repeat that?"
        assert result.fallback_reason == "no_match"
        assert _drain(recorder)[0].outcome == LearningOutcome.NO_MATCH

    @pytest.mark.anyio
    async def test_none_answer_prefers_safe_scenario(self, make_pool, llm, recorder) -> None:
        pool = make_pool()
        llm.chat.return_value = _answer('{"scenario_id": "NONE"}')
        matcher = LLMFallbackMatcher(llm, recorder, safe_scenario_id="hours")
        view = UtteranceView("do you sell pizza", pool.normalizers)
        result = await matcher.match(view, pool, pool.scenarios, None, time.monotonic() + 5)
        assert result.scenario.scenario_id == "hours"
        assert result.confidence == 0.0

    @pytest.mark.anyio
    async def test_timeout_degrades_to_best_tier2(self, make_pool, llm, recorder) -> None:
        pool = make_pool()

        async def _hang(*args, **kwargs):
            await asyncio.sleep(5)

        llm.chat = AsyncMock(side_effect=_hang)
        matcher = LLMFallbackMatcher(llm, recorder, timeout_seconds=0.05)
        view = UtteranceView("it is hot in here", pool.normalizers)
        ranked = [ScoredCandidate(pool.get("ac-repair"), 0.41), ScoredCandidate(pool.get("hours"), 0.1)]

        started = time.monotonic()
        result = await matcher.match(view, pool, pool.scenarios, None, started + 5, ranked=ranked)

        assert time.monotonic() - started < 1.0
        assert result.scenario.scenario_id == "ac-repair"
        assert result.confidence == 0.41
        assert result.fallback_reason == "timeout"
        assert result.needs_review is True
        assert _drain(recorder)[0].outcome == LearningOutcome.TIMEOUT

    @pytest.mark.anyio
    async def test_deadline_bounds_the_call(self, make_pool, llm, recorder) -> None:
        pool = make_pool()

        async def _hang(*args, **kwargs):
            await asyncio.sleep(5)

        llm.chat = AsyncMock(side_effect=_hang)
        matcher = LLMFallbackMatcher(llm, recorder, timeout_seconds=10.0)
        view = UtteranceView("hmm", pool.normalizers)
        started = time.monotonic()
        result = await matcher.match(view, pool, pool.scenarios, None, started + 0.1)
        assert time.monotonic() - started < 1.0
        assert result.fallback_reason == "timeout"

    @pytest.mark.anyio
    async def test_provider_error_degrades(self, make_pool, llm, recorder, matcher) -> None:
        pool = make_pool()
        llm.chat.return_value = LLMResponse(content="", success=False, error="LLM Error (500): boom")
        view = UtteranceView("hello?", pool.normalizers)
        result = await matcher.match(view, pool, pool.scenarios, None, time.monotonic() + 5)
        assert result.is_no_match
        assert result.fallback_reason == "provider_error"
        assert "boom" in _drain(recorder)[0].reason

    @pytest.mark.anyio
    async def test_unknown_id_is_a_provider_error(self, make_pool, llm, recorder, matcher) -> None:
        pool = make_pool()
        llm.chat.return_value = _answer('{"scenario_id": "made-up", "confidence": 0.99}')
        view = UtteranceView("hello?", pool.normalizers)
        ranked = [ScoredCandidate(pool.get("cancel"), 0.2)]
        result = await matcher.match(view, pool, pool.scenarios, None, time.monotonic() + 5, ranked=ranked)
        assert result.scenario.scenario_id == "cancel"
        assert result.fallback_reason == "provider_error"
        assert result.cost == 0.02

    @pytest.mark.anyio
    async def test_empty_scope_skips_the_model(self, make_pool, llm, recorder, matcher) -> None:
        pool = make_pool()
        view = UtteranceView("anything", pool.normalizers)
        result = await matcher.match(view, pool, [], None, time.monotonic() + 5)
        llm.chat.assert_not_awaited()
        assert result.is_no_match
        assert _drain(recorder)[0].outcome == LearningOutcome.SKIPPED

    @pytest.mark.anyio
    async def test_unconfigured_provider_skips_the_model(self, make_pool, llm, recorder, matcher) -> None:
        pool = make_pool()
        llm.configured = False
        view = UtteranceView("anything", pool.normalizers)
        result = await matcher.match(view, pool, pool.scenarios, None, time.monotonic() + 5)
        llm.chat.assert_not_awaited()
        assert result.fallback_reason == "skipped"

    @pytest.mark.anyio
    async def test_eliminated_scenarios_are_not_offered(self, make_pool, llm, recorder, matcher) -> None:
        pool = make_pool()
        llm.chat.return_value = _answer('{"scenario_id": "ac-repair", "confidence": 0.9}')
        view = UtteranceView("ac broken but under warranty", pool.normalizers)
        result = await matcher.match(
            view, pool, pool.scenarios, None, time.monotonic() + 5, eliminated={"hvac:ac-repair"}
        )
        assert result.scenario.scenario_id != "ac-repair"
        assert "ac-repair" not in _drain(recorder)[0].candidates


class TestCandidateSelection:
    def test_small_scope_is_sent_whole(self, make_pool, llm, recorder) -> None:
        pool = make_pool()
        matcher = LLMFallbackMatcher(llm, recorder, max_candidates=3)
        assert matcher.candidates(pool, pool.scenarios, []) == list(pool.scenarios)

    def test_large_scope_uses_tier2_ranking_then_priority(self, make_pool, hvac_template, llm, recorder) -> None:
        hvac_template["categories"][1]["scenarios"].append(
            {"scenarioId": "vip", "priority": 50, "triggers": ["maintenance plan"], "fullReplies": ["x"]}
        )
        pool = make_pool(hvac_template)
        matcher = LLMFallbackMatcher(llm, recorder, max_candidates=2)
        ranked = [ScoredCandidate(pool.get("cancel"), 0.5)]
        chosen = matcher.candidates(pool, pool.scenarios, ranked)
        assert [s.scenario_id for s in chosen] == ["cancel", "vip"]
