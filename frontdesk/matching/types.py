"""Frontdesk – Matching types shared by the three tiers and the router."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field, field_validator

from frontdesk.scenarios.replies import normalize_replies
from frontdesk.scenarios.schemas import Channel, Scenario, ScenarioType

NO_MATCH_SCENARIO_ID = "__no_match__"


class MatchContext(BaseModel):
    """What the conversational state machine knows about the current turn."""

    channel: Channel = Channel.VOICE
    caller_name: str | None = None
    company_name: str | None = None
    # Values already captured by the conversation: phone, office_city, technician, time …
    slots: dict[str, str] = Field(default_factory=dict)
    recent_turns: list[str] = Field(default_factory=list)
    last_scenario_id: str | None = None
    last_category: str | None = None
    preferred_scenarios: list[str] = Field(default_factory=list)
    conversation_state: str | None = None
    # scenario id → seconds since it was last used (cooldown filter)
    recent_scenarios: dict[str, float] = Field(default_factory=dict)

    @field_validator("channel", mode="before")
    @classmethod
    def _channel(cls, value: Any) -> Any:
        if value in (None, ""):
            return Channel.VOICE
        if isinstance(value, Channel):
            return value
        return str(value).strip().lower()


@dataclass(frozen=True)
class ScoredCandidate:
    scenario: Scenario
    score: float
    details: dict[str, float] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class MatchResult:
    """A tier's accepted match. Tier 3 always produces one."""

    scenario: Scenario
    tier: int
    confidence: float
    cost: float = 0.0
    # Set when Tier 3 had to degrade (timeout, provider_error, no_match, skipped)
    fallback_reason: str | None = None
    needs_review: bool = False

    @property
    def is_no_match(self) -> bool:
        return self.scenario.scenario_id == NO_MATCH_SCENARIO_ID


def no_match_scenario(reply: str) -> Scenario:
    """The reserved sentinel returned when nothing in the catalog fits."""
    return Scenario(
        scenario_id=NO_MATCH_SCENARIO_ID,
        name="No matching scenario",
        template_id="__system__",
        category_name="System",
        scenario_type=ScenarioType.INFO_FAQ,
        full_replies=normalize_replies([reply]),
    )
