"""Scenario normalization and configuration inheritance.

Everything here runs once per pool build:

- Which templates apply to a tenant (current field, then legacy fields).
- The Effective NLP Config per category name (template → category merge).
- Raw scenario documents → immutable runtime ``Scenario`` objects, with
  matching data precompiled against the category's effective config.

A malformed scenario raises ``ScenarioConfigError``; the pool loader excludes
that scenario and keeps going.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

import structlog
from pydantic import ValidationError

from frontdesk.core.errors import ScenarioConfigError
from frontdesk.matching.text import PhraseNormalizer, basic_normalize, phrase_pattern
from frontdesk.scenarios.schemas import (
    CategoryDocument,
    EffectiveNLPConfig,
    ReplyStrategy,
    Scenario,
    ScenarioDocument,
    ScenarioMatchSpec,
    ScenarioType,
    TemplateDocument,
    TenantScenarioSettings,
)

logger = structlog.get_logger()

DEFAULT_TEMPLATE_PRIORITY = 999


@dataclass(frozen=True)
class TemplateRef:
    template_id: str
    priority: int


# ── Template resolution ────────────────────────────────────────────────────────


def resolve_template_refs(settings: TenantScenarioSettings) -> list[TemplateRef]:
    """Ordered template references for a tenant.

    1. Enabled ``templateReferences`` (lower priority number = loaded first).
    2. Legacy ``activeTemplates`` (ids or objects, positional priority).
    3. Legacy single ``clonedFrom``.
    4. Nothing: the tenant gets an empty pool.
    """
    refs = [
        TemplateRef(ref.template_id, ref.priority or DEFAULT_TEMPLATE_PRIORITY)
        for ref in settings.template_references
        if ref.template_id and ref.enabled
    ]
    if refs:
        return _dedupe(sorted(refs, key=lambda r: r.priority))

    legacy: list[TemplateRef] = []
    for index, entry in enumerate(settings.active_templates):
        if isinstance(entry, str) and entry.strip():
            legacy.append(TemplateRef(entry.strip(), index + 1))
        elif isinstance(entry, dict):
            template_id = entry.get("templateId") or entry.get("id") or entry.get("_id")
            if not template_id or entry.get("enabled") is False:
                continue
            priority = entry.get("priority") or entry.get("sortOrder") or index + 1
            legacy.append(TemplateRef(str(template_id), int(priority)))
    if legacy:
        return _dedupe(sorted(legacy, key=lambda r: r.priority))

    if settings.cloned_from:
        return [TemplateRef(settings.cloned_from, 1)]
    return []


def _dedupe(refs: Iterable[TemplateRef]) -> list[TemplateRef]:
    seen: set[str] = set()
    unique: list[TemplateRef] = []
    for ref in refs:
        if ref.template_id not in seen:
            seen.add(ref.template_id)
            unique.append(ref)
    return unique


# ── Effective NLP Config ───────────────────────────────────────────────────────


def category_key(name: str | None) -> str:
    return basic_normalize(name or "") or "uncategorized"


def merge_nlp_configs(templates: list[TemplateDocument]) -> dict[str, EffectiveNLPConfig]:
    """Union template- and category-level fillers/synonyms per category name.

    Order matters only for provenance (``sources``) and for which term keeps
    an alias two terms both claim: templates in priority order, template-level
    data before category-level data, categories in declaration order.
    Categories of the same name in different templates share one config.
    """
    fillers: dict[str, set[str]] = {}
    synonyms: dict[str, dict[str, set[str]]] = {}
    sources: dict[str, list[str]] = {}

    for template in templates:
        for category in template.categories:
            key = category_key(category.name)
            bucket_fillers = fillers.setdefault(key, set())
            bucket_synonyms = synonyms.setdefault(key, {})
            bucket_sources = sources.setdefault(key, [])

            bucket_fillers.update(_clean_fillers(template.filler_words))
            bucket_fillers.update(_clean_fillers(category.additional_filler_words))
            for source in (template.synonym_map, category.synonym_map):
                for term, aliases in source.items():
                    term_key = basic_normalize(term)
                    if not term_key:
                        continue
                    alias_set = bucket_synonyms.setdefault(term_key, set())
                    alias_set.update(a for a in (basic_normalize(x) for x in aliases) if a and a != term_key)
            if template.id not in bucket_sources:
                bucket_sources.append(template.id)

    return {
        key: EffectiveNLPConfig(
            key=key,
            filler_words=frozenset(fillers[key]),
            synonyms=tuple(
                (term, tuple(sorted(aliases)))
                for term, aliases in synonyms[key].items()
                if aliases
            ),
            sources=tuple(sources[key]),
        )
        for key in fillers
    }


def _clean_fillers(words: Iterable[str]) -> set[str]:
    # Multi-word fillers cannot be removed token-wise; keep single tokens only
    return {w for w in (basic_normalize(x) for x in words) if w and " " not in w}


# ── Scenario construction ──────────────────────────────────────────────────────


def parse_scenario_document(raw: dict[str, Any]) -> ScenarioDocument:
    """Validate one raw scenario; failures become ScenarioConfigError."""
    scenario_id = str(raw.get("scenarioId") or raw.get("scenario_id") or raw.get("_id") or raw.get("id") or "?")
    try:
        return ScenarioDocument.model_validate(raw)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(p) for p in first.get("loc", ()))
        raise ScenarioConfigError(scenario_id, f"invalid field {location}: {first.get('msg')}") from exc


def check_reply_pools(doc: ScenarioDocument, scenario_id: str) -> None:
    """Enforce the reply pool required by the scenario's strategy."""
    has_quick = bool(doc.quick_replies)
    has_full = bool(doc.full_replies)
    strategy = doc.reply_strategy

    if strategy in (ReplyStrategy.FULL_ONLY, ReplyStrategy.QUICK_THEN_FULL) and not has_full:
        raise ScenarioConfigError(scenario_id, f"{strategy.value} requires fullReplies")
    if strategy == ReplyStrategy.QUICK_ONLY and not has_quick:
        raise ScenarioConfigError(scenario_id, "QUICK_ONLY requires quickReplies")
    if doc.scenario_type == ScenarioType.INFO_FAQ and strategy == ReplyStrategy.AUTO and not has_full:
        raise ScenarioConfigError(scenario_id, "INFO_FAQ requires fullReplies")
    if not has_quick and not has_full:
        raise ScenarioConfigError(scenario_id, "no quickReplies or fullReplies")


def compile_regexes(patterns: Iterable[str], scenario_id: str) -> tuple[re.Pattern[str], ...]:
    compiled: list[re.Pattern[str]] = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern, re.IGNORECASE))
        except re.error as exc:
            raise ScenarioConfigError(scenario_id, f"invalid regex {pattern!r}: {exc}") from exc
    return tuple(compiled)


def compile_match_spec(doc: ScenarioDocument, normalizer: PhraseNormalizer, scenario_id: str) -> ScenarioMatchSpec:
    """Run authored phrases through the same pipeline utterances go through."""
    triggers: list[str] = []
    trigger_tokens: list[tuple[str, ...]] = []
    for trigger in doc.triggers:
        phrase = normalizer.normalize(trigger)
        if phrase.text and phrase.text not in triggers:
            triggers.append(phrase.text)
            trigger_tokens.append(phrase.tokens)

    phrases = list(trigger_tokens)
    for example in doc.example_user_phrases:
        tokens = normalizer.normalize(example).tokens
        if tokens and tokens not in phrases:
            phrases.append(tokens)

    return ScenarioMatchSpec(
        triggers=tuple(triggers),
        trigger_tokens=tuple(trigger_tokens),
        regexes=compile_regexes(doc.regex_triggers, scenario_id),
        negatives=_phrase_patterns(doc.negative_triggers, normalizer),
        phrases=tuple(phrases),
        soft_negatives=_phrase_patterns(doc.negative_user_phrases, normalizer),
    )


def _phrase_patterns(phrases: Iterable[str], normalizer: PhraseNormalizer) -> tuple[re.Pattern[str], ...]:
    patterns: list[re.Pattern[str]] = []
    for phrase in phrases:
        pattern = phrase_pattern(normalizer.normalize_text(phrase))
        if pattern is not None:
            patterns.append(pattern)
    return tuple(patterns)


def build_scenario(
    doc: ScenarioDocument,
    *,
    template: TemplateDocument,
    category: CategoryDocument,
    order: int,
    normalizer: PhraseNormalizer,
) -> Scenario:
    """Validate invariants and produce the immutable runtime Scenario."""
    scenario_id = doc.scenario_id or ""
    if not scenario_id:
        raise ScenarioConfigError(f"{category.name}#{order}", "missing scenarioId")
    if not doc.triggers and not doc.regex_triggers and not doc.example_user_phrases:
        raise ScenarioConfigError(scenario_id, "no triggers, regexTriggers or exampleUserPhrases")
    check_reply_pools(doc, scenario_id)

    return Scenario(
        scenario_id=scenario_id,
        name=doc.name or scenario_id,
        template_id=template.id,
        template_name=template.name,
        category_name=category.name,
        nlp_key=normalizer.config.key,
        order=order,
        status=doc.status,
        priority=doc.priority,
        min_confidence=doc.min_confidence,
        triggers=tuple(doc.triggers),
        regex_triggers=tuple(doc.regex_triggers),
        negative_triggers=tuple(doc.negative_triggers),
        example_user_phrases=tuple(doc.example_user_phrases),
        negative_user_phrases=tuple(doc.negative_user_phrases),
        scenario_type=doc.scenario_type,
        reply_strategy=doc.reply_strategy,
        quick_replies=doc.quick_replies,
        full_replies=doc.full_replies,
        follow_up_prompts=doc.follow_up_prompts,
        quick_replies_no_name=doc.quick_replies_no_name,
        full_replies_no_name=doc.full_replies_no_name,
        follow_up_mode=doc.follow_up_mode,
        follow_up_question_text=doc.follow_up_question_text,
        transfer_target=doc.transfer_target,
        channel=doc.channel,
        cooldown_seconds=max(0, doc.cooldown_seconds),
        context_weight=doc.context_weight,
        match=compile_match_spec(doc, normalizer, scenario_id),
    )
