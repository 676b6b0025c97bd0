"""Frontdesk – Tier 2: statistical/semantic scoring.

    score = 0.6 * tfidf_cosine + 0.25 * fuzzy + 0.15 * min(1, context * contextWeight)

tfidf_cosine: best cosine between the utterance and any one of the scenario's
phrases (triggers + example user phrases), IDF computed over the pool with
every scenario as one document. fuzzy: rapidfuzz token-sort similarity to the
closest phrase. context: conversational continuity bonus.
"""

from __future__ import annotations

import math
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass

import structlog
from rapidfuzz import fuzz

from frontdesk.matching.text import UtteranceView, extract_terms
from frontdesk.matching.tier1 import is_blocked
from frontdesk.matching.types import MatchContext, MatchResult, ScoredCandidate
from frontdesk.scenarios.pool import ScenarioPool
from frontdesk.scenarios.schemas import Scenario

logger = structlog.get_logger()

TFIDF_WEIGHT = 0.6
FUZZY_WEIGHT = 0.25
CONTEXT_WEIGHT = 0.15

CONTEXT_CONTINUITY_BONUS = 0.3
CONTEXT_PREFERRED_BONUS = 0.2
CONTEXT_STATE_BONUS = 0.1

# Character similarity below this is noise, not evidence
MIN_FUZZY_EVIDENCE = 0.5


@dataclass(frozen=True)
class PhraseVector:
    text: str
    weights: dict[str, float]
    norm: float


@dataclass(frozen=True)
class CorpusIndex:
    """IDF table and per-scenario phrase vectors for one pool snapshot."""

    idf: dict[str, float]
    default_idf: float
    phrases: dict[str, tuple[PhraseVector, ...]]

    def vectorize(self, terms: Sequence[str]) -> tuple[dict[str, float], float]:
        counts = Counter(terms)
        weights = {t: c * self.idf.get(t, self.default_idf) for t, c in counts.items()}
        return weights, math.sqrt(sum(w * w for w in weights.values()))


def build_index(scenarios: Sequence[Scenario]) -> CorpusIndex:
    document_frequency: Counter[str] = Counter()
    for scenario in scenarios:
        terms: set[str] = set()
        for phrase in scenario.match.phrases:
            terms.update(extract_terms(phrase))
        document_frequency.update(terms)

    total = len(scenarios)
    idf = {t: math.log((1 + total) / (1 + df)) + 1.0 for t, df in document_frequency.items()}
    index = CorpusIndex(idf=idf, default_idf=math.log(1 + total) + 1.0, phrases={})
    for scenario in scenarios:
        vectors: list[PhraseVector] = []
        for phrase in scenario.match.phrases:
            weights, norm = index.vectorize(extract_terms(phrase))
            if norm:
                vectors.append(PhraseVector(" ".join(phrase), weights, norm))
        index.phrases[scenario.key] = tuple(vectors)
    return index


def cosine(a: dict[str, float], a_norm: float, b: dict[str, float], b_norm: float) -> float:
    if not a_norm or not b_norm:
        return 0.0
    if len(a) > len(b):
        a, b = b, a
    dot = sum(w * b.get(t, 0.0) for t, w in a.items())
    return dot / (a_norm * b_norm)


def context_score(scenario: Scenario, context: MatchContext | None) -> float:
    if context is None:
        return 0.0
    score = 0.0
    same_category = bool(context.last_category) and context.last_category.strip().lower() == scenario.category_name.lower()
    if same_category or context.last_scenario_id == scenario.scenario_id:
        score += CONTEXT_CONTINUITY_BONUS
    if scenario.scenario_id in context.preferred_scenarios:
        score += CONTEXT_PREFERRED_BONUS
    if context.conversation_state:
        score += CONTEXT_STATE_BONUS
    return score


class SemanticMatcher:
    """Tier-2 matcher. Corpus statistics are memoized on the pool snapshot."""

    tier = 2

    def __init__(self, threshold: float = 0.60) -> None:
        self.threshold = threshold

    def index_for(self, pool: ScenarioPool) -> CorpusIndex:
        # Built over the whole pool so scores do not depend on the turn's scope
        return pool.memoize("tier2_index", lambda: build_index(pool.scenarios))

    def score(
        self,
        scenario: Scenario,
        view: UtteranceView,
        index: CorpusIndex,
        context: MatchContext | None = None,
    ) -> ScoredCandidate:
        utterance = view.normalized(scenario.nlp_key)
        weights, norm = index.vectorize(extract_terms(utterance.tokens))

        best_cosine = 0.0
        best_fuzzy = 0.0
        for phrase in index.phrases.get(scenario.key, ()):
            best_cosine = max(best_cosine, cosine(weights, norm, phrase.weights, phrase.norm))
            best_fuzzy = max(best_fuzzy, fuzz.token_sort_ratio(phrase.text, utterance.text) / 100.0)

        ctx = min(1.0, context_score(scenario, context) * scenario.context_weight)
        if best_cosine == 0.0 and best_fuzzy < MIN_FUZZY_EVIDENCE:
            # Context alone never selects a scenario
            total = 0.0
        else:
            total = TFIDF_WEIGHT * best_cosine + FUZZY_WEIGHT * best_fuzzy + CONTEXT_WEIGHT * ctx
        return ScoredCandidate(
            scenario,
            round(total, 4),
            {"tfidf": round(best_cosine, 4), "fuzzy": round(best_fuzzy, 4), "context": round(ctx, 4)},
        )

    def score_all(
        self,
        view: UtteranceView,
        pool: ScenarioPool,
        candidates: Sequence[Scenario],
        context: MatchContext | None = None,
        *,
        eliminated: set[str] | None = None,
    ) -> list[ScoredCandidate]:
        """Every eligible candidate with a positive score, best first."""
        index = self.index_for(pool)
        skip = eliminated or set()
        ranked: list[ScoredCandidate] = []
        for scenario in candidates:
            if scenario.key in skip:
                continue
            try:
                utterance = view.normalized(scenario.nlp_key)
                if is_blocked(scenario, utterance) or any(
                    p.search(utterance.text) for p in scenario.match.soft_negatives
                ):
                    continue
                candidate = self.score(scenario, view, index, context)
            except Exception as exc:
                logger.warning(
                    "tier2.scenario_error",
                    stage="tier2",
                    scenario_id=scenario.scenario_id,
                    template_id=scenario.template_id,
                    error=str(exc),
                )
                continue
            if candidate.score > 0:
                ranked.append(candidate)
        ranked.sort(key=lambda c: (-c.score, -c.scenario.priority, c.scenario.order))
        return ranked

    def required_confidence(self, scenario: Scenario) -> float:
        return scenario.min_confidence if scenario.min_confidence is not None else self.threshold

    def select(self, ranked: Sequence[ScoredCandidate]) -> MatchResult | None:
        if not ranked:
            return None
        best = ranked[0]
        if best.score < self.required_confidence(best.scenario):
            logger.debug(
                "tier2.below_threshold",
                scenario_id=best.scenario.scenario_id,
                score=best.score,
                required=self.required_confidence(best.scenario),
            )
            return None
        return MatchResult(scenario=best.scenario, tier=self.tier, confidence=best.score)

    def match(
        self,
        view: UtteranceView,
        pool: ScenarioPool,
        candidates: Sequence[Scenario],
        context: MatchContext | None = None,
        *,
        eliminated: set[str] | None = None,
    ) -> MatchResult | None:
        return self.select(self.score_all(view, pool, candidates, context, eliminated=eliminated))

