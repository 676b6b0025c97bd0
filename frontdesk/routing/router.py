"""Frontdesk – Scenario Router.

Strict per-utterance cascade:

0. Routing Decision cache (tenant, pool fingerprint, channel, utterance hash)
1. Tier 1 – lexical rules            → done if above threshold
2. Tier 2 – statistical scoring      → done if above threshold
3. Tier 3 – language-model fallback  → always returns

The cache holds which scenario matched, not the reply: text is selected
again on every turn so weighted variants and caller names stay per-turn.

The only error that escapes ``route()`` is StoreUnavailable when the tenant
has no cached pool at all. Everything else is recovered and logged.
"""

from __future__ import annotations

import time

import structlog
from pydantic import BaseModel

from config.settings import Settings, get_settings
from frontdesk.core.instrumentation import ROUTE_LATENCY, ROUTING_DECISIONS
from frontdesk.core.redis_keys import route_decision_key
from frontdesk.matching.learning import LearningRecorder
from frontdesk.matching.llm import LLMClient
from frontdesk.matching.text import UtteranceView, utterance_hash
from frontdesk.matching.tier1 import LexicalMatcher
from frontdesk.matching.tier2 import SemanticMatcher
from frontdesk.matching.tier3 import LLMFallbackMatcher
from frontdesk.matching.types import MatchContext, MatchResult
from frontdesk.response.engine import FollowUpDecision, ResponseEngine, ResponsePath
from frontdesk.routing.cache import DecisionCache, MemoryDecisionCache
from frontdesk.scenarios.pool import ScenarioPool, ScenarioPoolLoader
from frontdesk.scenarios.schemas import Scenario
from frontdesk.scenarios.store import ScenarioStore, build_store

logger = structlog.get_logger()


class RoutingDecision(BaseModel):
    """What the conversational state machine receives for one utterance."""

    tenant_id: str
    scenario_id: str
    scenario_name: str = ""
    tier: int
    confidence: float
    cost: float = 0.0
    text: str
    strategy_used: ResponsePath
    follow_up: FollowUpDecision = FollowUpDecision()
    pool_version: int
    stale: bool = False
    cached: bool = False
    needs_review: bool = False
    fallback_reason: str | None = None
    latency_ms: float = 0.0


class ScenarioRouter:
    """Orchestrates pool loading, the tier cascade, caching and reply selection."""

    def __init__(
        self,
        loader: ScenarioPoolLoader,
        tier1: LexicalMatcher,
        tier2: SemanticMatcher,
        tier3: LLMFallbackMatcher,
        responses: ResponseEngine,
        cache: DecisionCache | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.loader = loader
        self.tier1 = tier1
        self.tier2 = tier2
        self.tier3 = tier3
        self.responses = responses
        self.cache = cache if cache is not None else MemoryDecisionCache(self.settings.decision_cache_max_entries)

    async def route(
        self,
        utterance: str,
        tenant_id: str,
        context: MatchContext | None = None,
        deadline: float | None = None,
    ) -> RoutingDecision:
        """Route one utterance. ``deadline`` is an absolute ``time.monotonic()`` value."""
        started = time.monotonic()
        context = context or MatchContext()
        if deadline is None:
            deadline = started + self.settings.route_timeout_seconds
        digest = utterance_hash(utterance)

        with structlog.contextvars.bound_contextvars(tenant_id=tenant_id, utterance_hash=digest[:16]):
            pool = await self.loader.load(tenant_id)
            key = route_decision_key(tenant_id, pool.cache_tag, context.channel.value, digest)
            in_scope = pool.in_scope(context.channel, context)
            # Cooldowns depend on this turn's context, which the key does not cover
            cooling = len(in_scope) != len(pool.in_scope(context.channel))

            cached = await self._cached_match(key, pool, in_scope)
            if cached is not None:
                # Reply text is re-selected per turn: variants and caller name vary
                decision = self._decide(cached, pool, context)
                decision.cached = True
                decision.latency_ms = round((time.monotonic() - started) * 1000, 2)
                ROUTING_DECISIONS.labels(tier=str(decision.tier), cached="true", tenant_id=tenant_id).inc()
                logger.info("router.cache_hit", scenario_id=decision.scenario_id, tier=decision.tier)
                return decision

            result = await self._cascade(utterance, pool, in_scope, context, deadline)
            decision = self._decide(result, pool, context)
            decision.latency_ms = round((time.monotonic() - started) * 1000, 2)

            # Stale pools, degraded Tier-3 answers, cooldown-shaped scopes and
            # answers that arrived after the deadline are not authoritative
            if (
                not pool.stale
                and result.fallback_reason is None
                and not cooling
                and time.monotonic() <= deadline
            ):
                await self.cache.set(
                    key,
                    {
                        "scenario_key": result.scenario.key,
                        "tier": result.tier,
                        "confidence": result.confidence,
                        "needs_review": result.needs_review,
                    },
                    self.settings.decision_cache_ttl_seconds,
                )

            ROUTING_DECISIONS.labels(tier=str(decision.tier), cached="false", tenant_id=tenant_id).inc()
            ROUTE_LATENCY.labels(tier=str(decision.tier)).observe(time.monotonic() - started)
            logger.info(
                "router.decision",
                scenario_id=decision.scenario_id,
                tier=decision.tier,
                confidence=decision.confidence,
                cost_cents=decision.cost,
                strategy=decision.strategy_used.value,
                pool_version=pool.version,
                stale=pool.stale,
                fallback_reason=decision.fallback_reason,
                latency_ms=decision.latency_ms,
            )
            return decision

    async def _cascade(
        self,
        utterance: str,
        pool: ScenarioPool,
        in_scope: list[Scenario],
        context: MatchContext,
        deadline: float,
    ) -> MatchResult:
        view = UtteranceView(utterance, pool.normalizers)
        eliminated: set[str] = set()

        result = self.tier1.match(view, in_scope, eliminated=eliminated)
        if result is not None:
            return result

        ranked = self.tier2.score_all(view, pool, in_scope, context, eliminated=eliminated)
        result = self.tier2.select(ranked)
        if result is not None:
            return result

        logger.info(
            "router.escalate_tier3",
            stage="tier3",
            candidates=len(in_scope),
            best_tier2=ranked[0].score if ranked else None,
        )
        return await self.tier3.match(view, pool, in_scope, context, deadline, ranked=ranked, eliminated=eliminated)

    async def _cached_match(self, key: str, pool: ScenarioPool, in_scope: list[Scenario]) -> MatchResult | None:
        entry = await self.cache.get(key)
        if entry is None:
            return None
        scenario = pool.by_key(str(entry.get("scenario_key", "")))
        if scenario is None:
            logger.warning("router.cache_entry_orphaned", key=key)
            return None
        if scenario.key not in {s.key for s in in_scope}:
            logger.debug("router.cache_entry_out_of_scope", scenario_id=scenario.scenario_id)
            return None
        # No model call happened for this turn
        return MatchResult(
            scenario=scenario,
            tier=int(entry.get("tier", 1)),
            confidence=float(entry.get("confidence", 0.0)),
            needs_review=bool(entry.get("needs_review", False)),
        )

    def _decide(self, result: MatchResult, pool: ScenarioPool, context: MatchContext) -> RoutingDecision:
        response = self.responses.build_response(
            result.scenario,
            context.channel,
            context,
            company_name=pool.company_name,
        )
        return RoutingDecision(
            tenant_id=pool.tenant_id,
            scenario_id=result.scenario.scenario_id,
            scenario_name=result.scenario.name,
            tier=result.tier,
            confidence=result.confidence,
            cost=result.cost,
            text=response.text,
            strategy_used=response.strategy_used,
            follow_up=response.follow_up,
            pool_version=pool.version,
            stale=pool.stale,
            needs_review=result.needs_review,
            fallback_reason=result.fallback_reason,
        )

    async def invalidate(self, tenant_id: str) -> int:
        """Bump the tenant's pool version and drop its cached decisions."""
        version = self.loader.invalidate(tenant_id)
        evicted = await self.cache.evict_tenant(tenant_id)
        logger.info("router.invalidated", tenant_id=tenant_id, pool_version=version, evicted=evicted)
        return version


def build_router(
    settings: Settings,
    *,
    store: ScenarioStore | None = None,
    cache: DecisionCache | None = None,
    recorder: LearningRecorder | None = None,
    llm: LLMClient | None = None,
) -> ScenarioRouter:
    """Wire the full engine from settings; every collaborator can be swapped."""
    if recorder is None:
        recorder = LearningRecorder(maxsize=settings.learning_queue_size)
    if llm is None:
        llm = LLMClient(base_url=settings.llm_base_url, api_key=settings.llm_api_key, model=settings.llm_model)
    return ScenarioRouter(
        loader=ScenarioPoolLoader(
            store if store is not None else build_store(settings),
            ttl_seconds=settings.pool_cache_ttl_seconds,
            store_timeout=settings.store_timeout_seconds,
        ),
        tier1=LexicalMatcher(threshold=settings.tier1_threshold),
        tier2=SemanticMatcher(threshold=settings.tier2_threshold),
        tier3=LLMFallbackMatcher(
            llm,
            recorder,
            max_candidates=settings.tier3_max_candidates,
            timeout_seconds=settings.tier3_timeout_seconds,
            review_threshold=settings.review_confidence_threshold,
            safe_scenario_id=settings.safe_scenario_id,
            no_match_reply=settings.no_match_reply,
        ),
        responses=ResponseEngine(faq_quick_prefix=settings.faq_quick_prefix),
        cache=cache,
        settings=settings,
    )
