"""Frontdesk – Scenario Store document schemas and runtime types.

Store documents are validated with pydantic and tolerate schema drift:
camelCase (as authored) and snake_case keys are both accepted, unknown keys
are ignored, legacy enum spellings are mapped onto the current ones.

Runtime types (Scenario, EffectiveNLPConfig) are frozen dataclasses built
once per pool and shared read-only by concurrent matchers.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from frontdesk.scenarios.replies import ReplyVariant, normalize_replies


# ── Enums ──────────────────────────────────────────────────────────────────────


class ScenarioStatus(str, Enum):
    DRAFT = "draft"
    LIVE = "live"
    ARCHIVED = "archived"


class ScenarioType(str, Enum):
    """Scenario semantics driving the reply decision matrix."""

    INFO_FAQ = "INFO_FAQ"        # Answer a question → full reply required
    ACTION_FLOW = "ACTION_FLOW"  # Booking, emergency, transfer → quick + full
    SYSTEM_ACK = "SYSTEM_ACK"    # Acknowledgements → quick preferred
    SMALL_TALK = "SMALL_TALK"    # Greetings, chit-chat → quick preferred


class ReplyStrategy(str, Enum):
    AUTO = "AUTO"
    FULL_ONLY = "FULL_ONLY"
    QUICK_ONLY = "QUICK_ONLY"
    QUICK_THEN_FULL = "QUICK_THEN_FULL"
    MODEL_WRAP = "MODEL_WRAP"
    MODEL_CONTEXT = "MODEL_CONTEXT"


class FollowUpMode(str, Enum):
    NONE = "NONE"
    ASK_FOLLOWUP_QUESTION = "ASK_FOLLOWUP_QUESTION"
    ASK_IF_BOOK = "ASK_IF_BOOK"
    TRANSFER = "TRANSFER"


class Channel(str, Enum):
    VOICE = "voice"
    SMS = "sms"
    CHAT = "chat"
    ANY = "any"


# Older template generations used a finer-grained type vocabulary.
LEGACY_SCENARIO_TYPES: dict[str, ScenarioType] = {
    "FAQ": ScenarioType.INFO_FAQ,
    "INFO": ScenarioType.INFO_FAQ,
    "BILLING": ScenarioType.INFO_FAQ,
    "TROUBLESHOOT": ScenarioType.INFO_FAQ,
    "SYSTEM": ScenarioType.SYSTEM_ACK,
    "ACK": ScenarioType.SYSTEM_ACK,
    "BOOKING": ScenarioType.ACTION_FLOW,
    "EMERGENCY": ScenarioType.ACTION_FLOW,
    "TRANSFER": ScenarioType.ACTION_FLOW,
    "SMALLTALK": ScenarioType.SMALL_TALK,
}

LEGACY_REPLY_STRATEGIES: dict[str, ReplyStrategy] = {
    "LLM_WRAP": ReplyStrategy.MODEL_WRAP,
    "LLM_CONTEXT": ReplyStrategy.MODEL_CONTEXT,
}


def _enum_key(value: Any) -> str:
    if isinstance(value, Enum):
        value = value.value
    return re.sub(r"[\s\-]+", "_", str(value).strip()).upper()


# ── Store documents ────────────────────────────────────────────────────────────


class StoreDocument(BaseModel):
    """Base for all store documents: camelCase or snake_case, extras ignored."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


def _string_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    return [str(v).strip() for v in value if v is not None and str(v).strip()]


def _synonym_map(value: Any) -> dict[str, list[str]]:
    """Accept {term: [aliases]} or {term: "a, b"} (hand-edited documents)."""
    if not value:
        return {}
    result: dict[str, list[str]] = {}
    for term, aliases in dict(value).items():
        if isinstance(aliases, str):
            aliases = aliases.split(",")
        cleaned = _string_list(aliases)
        key = str(term).strip()
        if key and cleaned:
            result[key] = cleaned
    return result


class ScenarioDocument(StoreDocument):
    """A scenario as stored inside a template category."""

    scenario_id: str | None = Field(default=None, validation_alias=AliasChoices("scenarioId", "scenario_id", "_id", "id"))
    name: str = ""
    status: ScenarioStatus = ScenarioStatus.LIVE
    is_active: bool = True
    priority: int = 0
    min_confidence: float | None = None
    triggers: list[str] = Field(default_factory=list)
    regex_triggers: list[str] = Field(default_factory=list)
    negative_triggers: list[str] = Field(default_factory=list)
    example_user_phrases: list[str] = Field(default_factory=list)
    negative_user_phrases: list[str] = Field(default_factory=list)
    scenario_type: ScenarioType | None = None
    reply_strategy: ReplyStrategy = ReplyStrategy.AUTO
    quick_replies: tuple[ReplyVariant, ...] = ()
    full_replies: tuple[ReplyVariant, ...] = ()
    follow_up_prompts: tuple[ReplyVariant, ...] = ()
    quick_replies_no_name: tuple[ReplyVariant, ...] = Field(
        default=(),
        validation_alias=AliasChoices("quickReplies_noName", "quickRepliesNoName", "quick_replies_no_name"),
    )
    full_replies_no_name: tuple[ReplyVariant, ...] = Field(
        default=(),
        validation_alias=AliasChoices("fullReplies_noName", "fullRepliesNoName", "full_replies_no_name"),
    )
    follow_up_mode: FollowUpMode = FollowUpMode.NONE
    follow_up_question_text: str | None = None
    transfer_target: str | None = None
    channel: Channel = Channel.ANY
    cooldown_seconds: int = 0
    context_weight: float = 1.0
    notes: str = ""

    @field_validator("scenario_id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        return str(value) if value is not None else None

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> Any:
        if value in (None, ""):
            return ScenarioStatus.LIVE
        return value if isinstance(value, ScenarioStatus) else str(value).strip().lower()

    @field_validator("min_confidence", mode="before")
    @classmethod
    def _min_confidence(cls, value: Any) -> Any:
        # 0 / "" / None all mean "inherit the tier threshold"
        return value or None

    @field_validator("priority", "cooldown_seconds", mode="before")
    @classmethod
    def _int_or_zero(cls, value: Any) -> Any:
        return 0 if value in (None, "") else value

    @field_validator("context_weight", mode="before")
    @classmethod
    def _context_weight(cls, value: Any) -> Any:
        return 1.0 if value in (None, "", 0) else value

    @field_validator(
        "triggers",
        "regex_triggers",
        "negative_triggers",
        "example_user_phrases",
        "negative_user_phrases",
        mode="before",
    )
    @classmethod
    def _phrases(cls, value: Any) -> list[str]:
        return _string_list(value)

    @field_validator(
        "quick_replies",
        "full_replies",
        "follow_up_prompts",
        "quick_replies_no_name",
        "full_replies_no_name",
        mode="before",
    )
    @classmethod
    def _replies(cls, value: Any) -> tuple[ReplyVariant, ...]:
        return normalize_replies(value)

    @field_validator("scenario_type", mode="before")
    @classmethod
    def _scenario_type(cls, value: Any) -> Any:
        if value in (None, ""):
            return None
        key = _enum_key(value)
        if key in ScenarioType.__members__:
            return ScenarioType[key]
        # Unknown types are inferred from the reply pools at response time
        return LEGACY_SCENARIO_TYPES.get(key)

    @field_validator("reply_strategy", mode="before")
    @classmethod
    def _reply_strategy(cls, value: Any) -> Any:
        if value in (None, ""):
            return ReplyStrategy.AUTO
        key = _enum_key(value)
        if key in ReplyStrategy.__members__:
            return ReplyStrategy[key]
        return LEGACY_REPLY_STRATEGIES.get(key, ReplyStrategy.AUTO)

    @field_validator("follow_up_mode", mode="before")
    @classmethod
    def _follow_up_mode(cls, value: Any) -> Any:
        if value in (None, ""):
            return FollowUpMode.NONE
        key = _enum_key(value)
        return FollowUpMode[key] if key in FollowUpMode.__members__ else FollowUpMode.NONE

    @field_validator("channel", mode="before")
    @classmethod
    def _channel(cls, value: Any) -> Any:
        if value in (None, "", "all", "*"):
            return Channel.ANY
        if isinstance(value, Channel):
            return value
        return str(value).strip().lower()


class CategoryDocument(StoreDocument):
    """A category; scenarios are kept raw so each one validates in isolation."""

    id: str | None = Field(default=None, validation_alias=AliasChoices("id", "_id", "categoryId"))
    name: str = "Uncategorized"
    additional_filler_words: list[str] = Field(default_factory=list)
    synonym_map: dict[str, list[str]] = Field(default_factory=dict)
    scenarios: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        return str(value) if value is not None else None

    @field_validator("name", mode="before")
    @classmethod
    def _name(cls, value: Any) -> Any:
        return str(value).strip() if value and str(value).strip() else "Uncategorized"

    @field_validator("additional_filler_words", mode="before")
    @classmethod
    def _fillers(cls, value: Any) -> list[str]:
        return [w.lower() for w in _string_list(value)]

    @field_validator("synonym_map", mode="before")
    @classmethod
    def _synonyms(cls, value: Any) -> dict[str, list[str]]:
        return _synonym_map(value)

    @field_validator("scenarios", mode="before")
    @classmethod
    def _raw_scenarios(cls, value: Any) -> list[dict[str, Any]]:
        return [s for s in (value or []) if isinstance(s, dict)]


class TemplateDocument(StoreDocument):
    """A named, versioned collection of categories."""

    id: str = Field(validation_alias=AliasChoices("id", "_id", "templateId"))
    name: str = ""
    version: str | None = None
    updated_at: datetime | None = None
    is_active: bool = True
    filler_words: list[str] = Field(default_factory=list)
    synonym_map: dict[str, list[str]] = Field(default_factory=dict)
    categories: list[CategoryDocument] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        return str(value) if value is not None else value

    @field_validator("version", mode="before")
    @classmethod
    def _version(cls, value: Any) -> Any:
        return str(value) if value is not None else None

    @field_validator("filler_words", mode="before")
    @classmethod
    def _fillers(cls, value: Any) -> list[str]:
        return [w.lower() for w in _string_list(value)]

    @field_validator("synonym_map", mode="before")
    @classmethod
    def _synonyms(cls, value: Any) -> dict[str, list[str]]:
        return _synonym_map(value)


class TemplateReference(StoreDocument):
    template_id: str | None = Field(default=None, validation_alias=AliasChoices("templateId", "template_id", "id", "_id"))
    enabled: bool = True
    priority: int | None = None

    @field_validator("template_id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        return str(value) if value else None


class ScenarioControl(StoreDocument):
    """Company Scenario Override keyed by (templateId, scenarioId)."""

    template_id: str
    scenario_id: str
    is_enabled: bool = True
    disabled_at: datetime | None = None
    disabled_by: str | None = None
    notes: str | None = None

    @field_validator("template_id", "scenario_id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        return str(value) if value is not None else value


class TenantScenarioSettings(StoreDocument):
    """The tenant-side view of which templates apply and which scenarios are off."""

    tenant_id: str
    company_name: str | None = None
    template_references: list[TemplateReference] = Field(default_factory=list)
    active_templates: list[Any] = Field(default_factory=list)
    cloned_from: str | None = None
    scenario_controls: list[ScenarioControl] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _flatten_nested(cls, data: Any) -> Any:
        """Lift fields out of the nested company layout (aiAgentSettings / configuration)."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        agent_settings = data.pop("aiAgentSettings", None) or {}
        configuration = data.pop("configuration", None) or {}
        for key in ("templateReferences", "activeTemplates", "scenarioControls"):
            if key in agent_settings and key not in data:
                data[key] = agent_settings[key]
        if "clonedFrom" in configuration and "clonedFrom" not in data:
            data["clonedFrom"] = configuration["clonedFrom"]
        return data

    @field_validator("tenant_id", "cloned_from", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        return str(value) if value else None

    @field_validator("scenario_controls", mode="before")
    @classmethod
    def _valid_controls(cls, value: Any) -> list[Any]:
        # Entries without both ids cannot be keyed and are skipped
        return [
            c for c in (value or [])
            if isinstance(c, ScenarioControl)
            or (
                isinstance(c, dict)
                and (c.get("templateId") or c.get("template_id"))
                and (c.get("scenarioId") or c.get("scenario_id"))
            )
        ]


# ── Runtime types ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class EffectiveNLPConfig:
    """Merged filler words and synonyms visible to one category name."""

    key: str
    filler_words: frozenset[str] = frozenset()
    # technical term → colloquial aliases, both lowercased, sorted for stability
    synonyms: tuple[tuple[str, tuple[str, ...]], ...] = ()
    sources: tuple[str, ...] = ()

    def synonym_map(self) -> dict[str, set[str]]:
        return {term: set(aliases) for term, aliases in self.synonyms}


@dataclass(frozen=True)
class ScenarioMatchSpec:
    """Matching data precompiled against the scenario's EffectiveNLPConfig."""

    triggers: tuple[str, ...] = ()
    trigger_tokens: tuple[tuple[str, ...], ...] = ()
    regexes: tuple[re.Pattern[str], ...] = ()
    negatives: tuple[re.Pattern[str], ...] = ()
    # Tier-2 evidence: triggers + example phrases (tokens) and soft negatives
    phrases: tuple[tuple[str, ...], ...] = ()
    soft_negatives: tuple[re.Pattern[str], ...] = ()


@dataclass(frozen=True)
class Scenario:
    """Canonical in-memory scenario. Built once per pool, never mutated."""

    scenario_id: str
    name: str
    template_id: str
    template_name: str = ""
    category_name: str = "Uncategorized"
    nlp_key: str = "uncategorized"
    order: int = 0
    status: ScenarioStatus = ScenarioStatus.LIVE
    priority: int = 0
    min_confidence: float | None = None
    triggers: tuple[str, ...] = ()
    regex_triggers: tuple[str, ...] = ()
    negative_triggers: tuple[str, ...] = ()
    example_user_phrases: tuple[str, ...] = ()
    negative_user_phrases: tuple[str, ...] = ()
    scenario_type: ScenarioType | None = None
    reply_strategy: ReplyStrategy = ReplyStrategy.AUTO
    quick_replies: tuple[ReplyVariant, ...] = ()
    full_replies: tuple[ReplyVariant, ...] = ()
    follow_up_prompts: tuple[ReplyVariant, ...] = ()
    quick_replies_no_name: tuple[ReplyVariant, ...] = ()
    full_replies_no_name: tuple[ReplyVariant, ...] = ()
    follow_up_mode: FollowUpMode = FollowUpMode.NONE
    follow_up_question_text: str | None = None
    transfer_target: str | None = None
    channel: Channel = Channel.ANY
    cooldown_seconds: int = 0
    context_weight: float = 1.0
    match: ScenarioMatchSpec = field(default_factory=ScenarioMatchSpec)

    @property
    def key(self) -> str:
        return f"{self.template_id}:{self.scenario_id}"

    def serves(self, channel: Channel | str) -> bool:
        channel = Channel(channel) if not isinstance(channel, Channel) else channel
        return self.channel == Channel.ANY or channel == Channel.ANY or self.channel == channel
