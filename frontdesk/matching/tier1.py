"""Frontdesk – Tier 1: lexical matching.

Zero marginal cost. Every candidate is scored against the utterance as
normalized under its own category's NLP config:

    score = max(1.0 * regex_hit, 0.9 * plain_trigger_score)

A negative trigger anywhere in the utterance zeroes the scenario. Plain
trigger score is 1.0 for a whole-phrase hit, otherwise the best of a
sliding-window token overlap and a rapidfuzz similarity (absorbs minor
transcription errors such as "ours" for "hours").
"""

from __future__ import annotations

from collections.abc import Sequence

import structlog
from rapidfuzz import fuzz

from frontdesk.matching.text import NormalizedPhrase, UtteranceView
from frontdesk.matching.types import MatchResult, ScoredCandidate
from frontdesk.scenarios.schemas import Scenario

logger = structlog.get_logger()

REGEX_WEIGHT = 1.0
PLAIN_WEIGHT = 0.9
OVERLAP_WINDOWS = (10, 7)
FORWARD_WEIGHT = 0.7
REVERSE_WEIGHT = 0.3
# Triggers shorter than this are too ambiguous for fuzzy matching
MIN_FUZZY_LENGTH = 4


def window_overlap(trigger: Sequence[str], tokens: Sequence[str]) -> float:
    """Best ``0.7 * forward + 0.3 * reverse`` overlap over sliding windows.

    forward: share of trigger tokens present in the window.
    reverse: share of window tokens present in the trigger.
    """
    if not trigger or not tokens:
        return 0.0
    trigger_set = set(trigger)
    best = 0.0
    for size in OVERLAP_WINDOWS:
        size = min(size, len(tokens))
        for start in range(0, len(tokens) - size + 1):
            window = tokens[start:start + size]
            window_set = set(window)
            shared = trigger_set & window_set
            if not shared:
                continue
            forward = len(shared) / len(trigger_set)
            reverse = len(shared) / len(window_set)
            best = max(best, FORWARD_WEIGHT * forward + REVERSE_WEIGHT * reverse)
    return best


def fuzzy_similarity(trigger: Sequence[str], tokens: Sequence[str]) -> float:
    """Best character-level similarity of the trigger to same-length windows."""
    text = " ".join(trigger)
    if len(text) < MIN_FUZZY_LENGTH or not tokens:
        return 0.0
    size = min(len(trigger), len(tokens))
    best = 0.0
    for start in range(0, len(tokens) - size + 1):
        window = " ".join(tokens[start:start + size])
        best = max(best, fuzz.ratio(text, window) / 100.0)
    return best


def plain_trigger_score(trigger: str, trigger_tokens: Sequence[str], utterance: NormalizedPhrase) -> float:
    if not trigger or not utterance.text:
        return 0.0
    if f" {trigger} " in f" {utterance.text} ":
        return 1.0
    tokens = utterance.tokens
    if not set(trigger_tokens) & set(tokens):
        return 0.0
    return max(window_overlap(trigger_tokens, tokens), fuzzy_similarity(trigger_tokens, tokens))


def is_blocked(scenario: Scenario, utterance: NormalizedPhrase) -> bool:
    """Negative triggers take precedence over every positive signal."""
    return any(p.search(utterance.text) for p in scenario.match.negatives)


class LexicalMatcher:
    """Tier-1 matcher. Stateless apart from its threshold."""

    tier = 1

    def __init__(self, threshold: float = 0.80) -> None:
        self.threshold = threshold

    def score(self, scenario: Scenario, view: UtteranceView) -> ScoredCandidate:
        utterance = view.normalized(scenario.nlp_key)
        spec = scenario.match

        regex_hit = 0.0
        for pattern in spec.regexes:
            if pattern.search(utterance.text) or pattern.search(view.lowered):
                regex_hit = 1.0
                break

        plain = 0.0
        for trigger, tokens in zip(spec.triggers, spec.trigger_tokens):
            plain = max(plain, plain_trigger_score(trigger, tokens, utterance))
            if plain >= 1.0:
                break

        score = max(REGEX_WEIGHT * regex_hit, PLAIN_WEIGHT * plain)
        return ScoredCandidate(scenario, round(score, 4), {"regex": regex_hit, "plain": round(plain, 4)})

    def required_confidence(self, scenario: Scenario) -> float:
        return max(scenario.min_confidence or 0.0, self.threshold)

    def match(
        self,
        view: UtteranceView,
        candidates: Sequence[Scenario],
        *,
        eliminated: set[str] | None = None,
    ) -> MatchResult | None:
        """Best lexical match above threshold, or None.

        Keys of scenarios blocked by a negative trigger are added to
        ``eliminated`` so Tier 2 can skip them.
        """
        best: ScoredCandidate | None = None
        for scenario in candidates:
            try:
                if is_blocked(scenario, view.normalized(scenario.nlp_key)):
                    if eliminated is not None:
                        eliminated.add(scenario.key)
                    continue
                candidate = self.score(scenario, view)
            except Exception as exc:
                logger.warning(
                    "tier1.scenario_error",
                    stage="tier1",
                    scenario_id=scenario.scenario_id,
                    template_id=scenario.template_id,
                    error=str(exc),
                )
                continue
            if candidate.score <= 0:
                continue
            if best is None or _ranks_higher(candidate, best):
                best = candidate

        if best is None:
            return None
        if best.score < self.required_confidence(best.scenario):
            logger.debug(
                "tier1.below_threshold",
                scenario_id=best.scenario.scenario_id,
                score=best.score,
                required=self.required_confidence(best.scenario),
            )
            return None
        return MatchResult(scenario=best.scenario, tier=self.tier, confidence=best.score)


def _ranks_higher(a: ScoredCandidate, b: ScoredCandidate) -> bool:
    """Score, then priority descending, then declaration order."""
    return (a.score, a.scenario.priority, -a.scenario.order) > (b.score, b.scenario.priority, -b.scenario.order)
