"""Frontdesk – Gateway request/response schemas."""

from typing import Any

from pydantic import BaseModel, Field

from frontdesk.scenarios.schemas import Channel


class RouteRequest(BaseModel):
    """One caller utterance handed over by the conversational state machine."""

    tenant_id: str = Field(..., min_length=1, description="Tenant (company) identifier")
    utterance: str = Field(..., description="Caller utterance, already admitted by the call gate")
    channel: Channel = Field(default=Channel.VOICE, description="voice|sms|chat")
    context: dict[str, Any] = Field(default_factory=dict, description="Turn context (caller name, slots, recent turns …)")
    timeout_ms: int | None = Field(default=None, gt=0, description="Overall time budget for this turn")


class InvalidateResponse(BaseModel):
    tenant_id: str
    pool_version: int
