"""Frontdesk – Tier 3: generative-model fallback.

Always returns a MatchResult. The language model classifies the utterance
against a bounded candidate list; on timeout, provider error or an unusable
answer the matcher degrades to the best Tier-2 candidate, then to the
configured safe scenario, then to the reserved no-match sentinel.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from collections.abc import Sequence

import structlog

from frontdesk.core.errors import LLMProviderError
from frontdesk.core.instrumentation import TIER3_FALLBACKS
from frontdesk.matching.learning import LearningOutcome, LearningRecord, LearningRecorder
from frontdesk.matching.llm import LLMClient, LLMResponse
from frontdesk.matching.text import UtteranceView, utterance_hash
from frontdesk.matching.types import MatchContext, MatchResult, ScoredCandidate, no_match_scenario
from frontdesk.scenarios.pool import ScenarioPool
from frontdesk.scenarios.schemas import Scenario

logger = structlog.get_logger()

# Below this much time left the model is not even asked
MIN_LLM_BUDGET_SECONDS = 0.05
NONE_ANSWER = "NONE"

SYSTEM_PROMPT = (
    "You route caller utterances for a service business to one scenario from a catalog.\n"
    "Reply with JSON only: {\"scenario_id\": \"<id>\", \"confidence\": <0..1>, \"reason\": \"<short>\"}.\n"
    "Use \"NONE\" as scenario_id when no scenario plausibly fits. Never invent ids."
)

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def build_prompt(utterance: str, candidates: Sequence[Scenario], context: MatchContext | None = None) -> list[dict[str, str]]:
    lines = []
    for scenario in candidates:
        examples = list(scenario.triggers[:2]) + list(scenario.example_user_phrases[:1])
        hint = "; ".join(examples)
        lines.append(f"- {scenario.scenario_id} | {scenario.name} | {scenario.category_name} | {hint}")
    recent = ""
    if context is not None and context.recent_turns:
        recent = "Recent turns (oldest first):\n" + "\n".join(context.recent_turns[-3:]) + "\n\n"
    user = f"{recent}Catalog (id | name | category | examples):\n" + "\n".join(lines) + f"\n\nCaller said: {utterance}"
    return [{"role": "system", "content": SYSTEM_PROMPT}, {"role": "user", "content": user}]


def parse_choice(content: str) -> tuple[str, float, str]:
    """Extract (scenario_id, confidence, reason) from the model's answer."""
    match = _JSON_OBJECT.search(content or "")
    if not match:
        raise LLMProviderError(f"answer is not JSON: {content[:80]!r}")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise LLMProviderError(f"answer is not JSON: {exc}") from exc
    scenario_id = str(data.get("scenario_id") or data.get("scenarioId") or "").strip()
    if not scenario_id:
        raise LLMProviderError("answer carries no scenario_id")
    try:
        confidence = float(data.get("confidence", 0.5))
    except (TypeError, ValueError):
        confidence = 0.5
    return scenario_id, min(1.0, max(0.0, confidence)), str(data.get("reason") or "")


class LLMFallbackMatcher:
    """Tier-3 matcher. Cancellable, deadline-bound, never empty-handed."""

    tier = 3

    def __init__(
        self,
        llm: LLMClient,
        recorder: LearningRecorder,
        *,
        max_candidates: int = 25,
        timeout_seconds: float = 4.0,
        review_threshold: float = 0.70,
        safe_scenario_id: str = "",
        no_match_reply: str = "",
    ) -> None:
        self._llm = llm
        self._recorder = recorder
        self.max_candidates = max_candidates
        self.timeout_seconds = timeout_seconds
        self.review_threshold = review_threshold
        self.safe_scenario_id = safe_scenario_id
        self.no_match = no_match_scenario(no_match_reply or "Sorry, could you say that again?")
        self.calls = 0

    def candidates(
        self,
        pool: ScenarioPool,
        in_scope: Sequence[Scenario],
        ranked: Sequence[ScoredCandidate],
        eliminated: set[str] | None = None,
    ) -> list[Scenario]:
        """Top-N by Tier-2 score, or the whole scope when it is small.

        Scenarios blocked by a negative trigger are never offered to the model.
        """
        if eliminated:
            in_scope = [s for s in in_scope if s.key not in eliminated]
        if len(in_scope) <= self.max_candidates:
            return list(in_scope)
        chosen = [c.scenario for c in ranked[: self.max_candidates]]
        if len(chosen) < self.max_candidates:
            taken = {s.key for s in chosen}
            rest = sorted(
                (s for s in in_scope if s.key not in taken),
                key=lambda s: (-s.priority, s.order),
            )
            chosen.extend(rest[: self.max_candidates - len(chosen)])
        return chosen

    async def match(
        self,
        view: UtteranceView,
        pool: ScenarioPool,
        in_scope: Sequence[Scenario],
        context: MatchContext | None,
        deadline: float,
        *,
        ranked: Sequence[ScoredCandidate] = (),
        eliminated: set[str] | None = None,
    ) -> MatchResult:
        started = time.monotonic()
        candidates = self.candidates(pool, in_scope, ranked, eliminated)
        remaining = deadline - started
        budget = min(remaining, self.timeout_seconds)

        if not candidates:
            result = self._degrade(pool, ranked, LearningOutcome.SKIPPED)
            self._record(pool, view, result, LearningOutcome.SKIPPED, started, candidates, "empty scope")
            return result
        if budget < MIN_LLM_BUDGET_SECONDS or not self._llm.configured:
            reason = "deadline exhausted" if budget < MIN_LLM_BUDGET_SECONDS else "provider not configured"
            result = self._degrade(pool, ranked, LearningOutcome.SKIPPED)
            self._record(pool, view, result, LearningOutcome.SKIPPED, started, candidates, reason)
            return result

        self.calls += 1
        messages = build_prompt(view.original, candidates, context)
        response: LLMResponse | None = None
        try:
            response = await asyncio.wait_for(
                self._llm.chat(messages, tenant_id=pool.tenant_id, timeout=budget),
                timeout=budget,
            )
            if not response.success:
                raise LLMProviderError(response.error or "provider error")
            scenario_id, confidence, reason = parse_choice(response.content)
        except asyncio.TimeoutError:
            result = self._degrade(pool, ranked, LearningOutcome.TIMEOUT)
            self._record(pool, view, result, LearningOutcome.TIMEOUT, started, candidates, f"no answer within {budget:.2f}s")
            return result
        except LLMProviderError as exc:
            result = self._degrade(pool, ranked, LearningOutcome.PROVIDER_ERROR, cost=_cost(response))
            self._record(pool, view, result, LearningOutcome.PROVIDER_ERROR, started, candidates, str(exc))
            return result

        cost = _cost(response)
        if scenario_id.upper() == NONE_ANSWER:
            result = self._degrade(pool, (), LearningOutcome.NO_MATCH, cost=cost)
            self._record(pool, view, result, LearningOutcome.NO_MATCH, started, candidates, reason)
            return result

        chosen = next((s for s in candidates if s.scenario_id == scenario_id), None)
        if chosen is None:
            logger.warning("tier3.unknown_scenario", tenant_id=pool.tenant_id, scenario_id=scenario_id)
            result = self._degrade(pool, ranked, LearningOutcome.PROVIDER_ERROR, cost=cost)
            self._record(pool, view, result, LearningOutcome.PROVIDER_ERROR, started, candidates, f"unknown id {scenario_id}")
            return result

        result = MatchResult(
            scenario=chosen,
            tier=self.tier,
            confidence=round(confidence, 4),
            cost=cost,
            needs_review=confidence < self.review_threshold,
        )
        self._record(pool, view, result, LearningOutcome.MATCHED, started, candidates, reason)
        return result

    def _degrade(
        self,
        pool: ScenarioPool,
        ranked: Sequence[ScoredCandidate],
        outcome: LearningOutcome,
        *,
        cost: float = 0.0,
    ) -> MatchResult:
        """Best Tier-2 candidate, else the safe scenario, else the sentinel."""
        TIER3_FALLBACKS.labels(reason=outcome.value).inc()
        if ranked:
            best = ranked[0]
            return MatchResult(
                scenario=best.scenario,
                tier=self.tier,
                confidence=best.score,
                cost=cost,
                fallback_reason=outcome.value,
                needs_review=True,
            )
        safe = pool.get(self.safe_scenario_id) if self.safe_scenario_id else None
        return MatchResult(
            scenario=safe or self.no_match,
            tier=self.tier,
            confidence=0.0,
            cost=cost,
            fallback_reason=outcome.value,
            needs_review=True,
        )

    def _record(
        self,
        pool: ScenarioPool,
        view: UtteranceView,
        result: MatchResult,
        outcome: LearningOutcome,
        started: float,
        candidates: Sequence[Scenario],
        reason: str,
    ) -> None:
        latency_ms = round((time.monotonic() - started) * 1000)
        logger.info(
            "tier3.completed",
            stage="tier3",
            tenant_id=pool.tenant_id,
            outcome=outcome.value,
            scenario_id=result.scenario.scenario_id,
            confidence=result.confidence,
            cost_cents=result.cost,
            latency_ms=latency_ms,
        )
        self._recorder.emit(
            LearningRecord(
                tenant_id=pool.tenant_id,
                utterance=view.original,
                utterance_hash=utterance_hash(view.original),
                scenario_id=result.scenario.scenario_id,
                outcome=outcome,
                confidence=result.confidence,
                cost_cents=result.cost,
                latency_ms=latency_ms,
                candidates=[s.scenario_id for s in candidates],
                reason=reason,
                needs_review=result.needs_review,
            )
        )


def _cost(response: LLMResponse | None) -> float:
    return response.total_cost_cents if response is not None else 0.0
