"""Frontdesk – Response Engine.

Turns a matched scenario into the literal text to speak or send.

Decision matrix (voice, replyStrategy AUTO):

    INFO_FAQ     full reply (optionally prefixed by a quick reply)
    SYSTEM_ACK   quick, else full
    SMALL_TALK   quick, else full
    ACTION_FLOW  quick + full when both exist, else whichever exists

sms/chat under AUTO prefer full, else quick. FULL_ONLY, QUICK_ONLY and
QUICK_THEN_FULL override the matrix, except that INFO_FAQ always answers
with its full reply. MODEL_WRAP / MODEL_CONTEXT are resolved like AUTO; the
generation step belongs to the caller.
"""

from __future__ import annotations

import random
import re
from collections.abc import Sequence
from enum import Enum

import structlog
from pydantic import BaseModel

from frontdesk.matching.types import MatchContext
from frontdesk.scenarios.replies import ReplyVariant
from frontdesk.scenarios.schemas import Channel, FollowUpMode, ReplyStrategy, Scenario, ScenarioType

logger = structlog.get_logger()


class ResponsePath(str, Enum):
    FULL = "FULL"
    QUICK = "QUICK"
    QUICK_THEN_FULL = "QUICK_THEN_FULL"
    NONE = "NONE"


class FollowUpDecision(BaseModel):
    mode: FollowUpMode = FollowUpMode.NONE
    question_text: str | None = None
    transfer_target: str | None = None


class ResponseDecision(BaseModel):
    text: str
    strategy_used: ResponsePath
    reply_strategy: ReplyStrategy
    scenario_type: ScenarioType
    follow_up: FollowUpDecision = FollowUpDecision()
    misconfigured: bool = False


def weighted_choice(variants: Sequence[ReplyVariant], rng: random.Random | None = None) -> ReplyVariant | None:
    """P(variant) = weight / sum(weights); all-zero weights fall back to uniform."""
    if not variants:
        return None
    rng = rng or random
    weights = [max(0.0, v.weight) for v in variants]
    if sum(weights) <= 0:
        return rng.choice(list(variants))
    return rng.choices(list(variants), weights=weights, k=1)[0]


def effective_type(scenario: Scenario) -> ScenarioType:
    if scenario.scenario_type is not None:
        return scenario.scenario_type
    return ScenarioType.INFO_FAQ if scenario.full_replies else ScenarioType.SYSTEM_ACK


# ── Placeholders ───────────────────────────────────────────────────────────────

_NAME_PLACEHOLDER = re.compile(r"[ \t]*,?[ \t]*\{name\}")
_PLACEHOLDER = re.compile(r"\{(companyName|phone|office_city|technician|time)\}")
_SPACE_BEFORE_PUNCT = re.compile(r"\s+([,.!?;:])")
_DOUBLE_COMMA = re.compile(r",\s*,")
_MULTI_SPACE = re.compile(r"[ \t]{2,}")


def fill_placeholders(text: str, context: MatchContext | None, company_name: str | None = None) -> str:
    """Substitute caller/company values; unresolved placeholders are removed."""
    context = context or MatchContext()
    name = (context.caller_name or "").strip()
    if name:
        text = text.replace("{name}", name)
    else:
        text = _NAME_PLACEHOLDER.sub("", text)

    values = {
        "companyName": context.company_name or company_name or "",
        "phone": context.slots.get("phone", ""),
        "office_city": context.slots.get("office_city", ""),
        "technician": context.slots.get("technician", ""),
        "time": context.slots.get("time", ""),
    }
    text = _PLACEHOLDER.sub(lambda m: values.get(m.group(1), ""), text)
    text = _DOUBLE_COMMA.sub(",", text)
    text = _SPACE_BEFORE_PUNCT.sub(r"\1", text)
    text = _MULTI_SPACE.sub(" ", text).strip()
    return text.lstrip(",;: ").strip()


class ResponseEngine:
    """Select reply text for a scenario, channel and conversation context."""

    def __init__(self, *, faq_quick_prefix: bool = False, rng: random.Random | None = None) -> None:
        self.faq_quick_prefix = faq_quick_prefix
        self._rng = rng or random.Random()

    def _pick(self, scenario: Scenario, kind: str, context: MatchContext | None) -> str | None:
        pool: tuple[ReplyVariant, ...] = getattr(scenario, f"{kind}_replies")
        no_name: tuple[ReplyVariant, ...] = getattr(scenario, f"{kind}_replies_no_name")
        if no_name and not (pool and context and context.caller_name):
            pool = no_name
        variant = weighted_choice(pool, self._rng)
        return variant.text if variant else None

    def _path(self, scenario: Scenario, channel: Channel) -> tuple[ResponsePath, bool]:
        """Resolve the reply path; the flag reports a degraded misconfiguration."""
        has_quick = bool(scenario.quick_replies or scenario.quick_replies_no_name)
        has_full = bool(scenario.full_replies or scenario.full_replies_no_name)
        kind = effective_type(scenario)
        strategy = scenario.reply_strategy

        def whichever(preferred: ResponsePath) -> ResponsePath:
            if preferred == ResponsePath.FULL:
                return ResponsePath.FULL if has_full else (ResponsePath.QUICK if has_quick else ResponsePath.NONE)
            return ResponsePath.QUICK if has_quick else (ResponsePath.FULL if has_full else ResponsePath.NONE)

        both = ResponsePath.QUICK_THEN_FULL if has_quick and has_full else whichever(ResponsePath.FULL)

        text_channel = channel in (Channel.SMS, Channel.CHAT)

        # Voice callers must hear the answer; text channels honour the strategy
        if not text_channel and kind == ScenarioType.INFO_FAQ and strategy not in (
            ReplyStrategy.AUTO,
            ReplyStrategy.FULL_ONLY,
            ReplyStrategy.QUICK_THEN_FULL,
        ):
            return whichever(ResponsePath.FULL), True

        if strategy == ReplyStrategy.FULL_ONLY:
            return whichever(ResponsePath.FULL), False
        if strategy == ReplyStrategy.QUICK_ONLY:
            return whichever(ResponsePath.QUICK), False
        if strategy == ReplyStrategy.QUICK_THEN_FULL:
            return both, False

        # AUTO and the MODEL_* strategies
        if text_channel:
            return whichever(ResponsePath.FULL), False
        if kind == ScenarioType.INFO_FAQ:
            if self.faq_quick_prefix and has_quick and has_full:
                return ResponsePath.QUICK_THEN_FULL, False
            return whichever(ResponsePath.FULL), False
        if kind == ScenarioType.ACTION_FLOW:
            return both, False
        return whichever(ResponsePath.QUICK), False

    def build_response(
        self,
        scenario: Scenario,
        channel: Channel | str,
        context: MatchContext | None = None,
        *,
        company_name: str | None = None,
    ) -> ResponseDecision:
        channel = Channel(channel) if not isinstance(channel, Channel) else channel
        path, misconfigured = self._path(scenario, channel)
        if misconfigured:
            logger.warning(
                "response.misconfigured_strategy",
                scenario_id=scenario.scenario_id,
                scenario_type=effective_type(scenario).value,
                reply_strategy=scenario.reply_strategy.value,
                resolved=path.value,
            )

        parts: list[str] = []
        if path in (ResponsePath.QUICK, ResponsePath.QUICK_THEN_FULL):
            parts.append(self._pick(scenario, "quick", context) or "")
        if path in (ResponsePath.FULL, ResponsePath.QUICK_THEN_FULL):
            parts.append(self._pick(scenario, "full", context) or "")
        text = " ".join(fill_placeholders(p, context, company_name) for p in parts if p)

        if not text:
            logger.error("response.empty_reply", scenario_id=scenario.scenario_id, path=path.value)

        return ResponseDecision(
            text=text,
            strategy_used=path,
            reply_strategy=scenario.reply_strategy,
            scenario_type=effective_type(scenario),
            follow_up=self.resolve_follow_up(scenario, context, company_name),
            misconfigured=misconfigured,
        )

    def resolve_follow_up(
        self,
        scenario: Scenario,
        context: MatchContext | None = None,
        company_name: str | None = None,
    ) -> FollowUpDecision:
        """What the conversation should do next; executing it is the caller's job."""
        mode = scenario.follow_up_mode
        if mode == FollowUpMode.NONE:
            return FollowUpDecision()
        question: str | None = None
        if mode != FollowUpMode.TRANSFER:
            variant = weighted_choice(scenario.follow_up_prompts, self._rng)
            raw = variant.text if variant else scenario.follow_up_question_text
            question = fill_placeholders(raw, context, company_name) if raw else None
        return FollowUpDecision(
            mode=mode,
            question_text=question,
            transfer_target=scenario.transfer_target if mode == FollowUpMode.TRANSFER else None,
        )
