"""Frontdesk – LLM client with cost tracking (Tier 3 provider).

Speaks the OpenAI-compatible ``/chat/completions`` protocol (OpenAI, Groq,
Mistral, xAI, self-hosted gateways). Every call returns an LLMResponse with
token usage, cost in USD-cents and latency; provider failures are reported in
the response, never raised, so the caller decides how to degrade.
"""

import time
from dataclasses import dataclass

import httpx
import structlog

logger = structlog.get_logger()


@dataclass
class LLMResponse:
    """Structured response from an LLM call including usage metadata."""
    content: str
    model: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    input_cost_cents: float = 0.0
    output_cost_cents: float = 0.0
    total_cost_cents: float = 0.0
    latency_ms: int = 0
    success: bool = True
    error: str = ""


# ── Cost table ─────────────────────────────────────────────────────────────────
# USD-cents per million tokens: (input, output)
MODEL_COSTS: dict[str, tuple[float, float]] = {
    "gpt-4o-mini": (15.0, 60.0),
    "gpt-4o": (250.0, 1000.0),
    "gpt-4-turbo": (1000.0, 3000.0),
    "gpt-3.5-turbo": (50.0, 150.0),
}


def _calculate_cost(model_id: str, prompt_tokens: int, completion_tokens: int) -> tuple[float, float, float]:
    """Calculate cost in USD-cents for a given token usage."""
    input_cpm, output_cpm = MODEL_COSTS.get(model_id, (0.0, 0.0))
    input_cost = (prompt_tokens / 1_000_000) * input_cpm
    output_cost = (completion_tokens / 1_000_000) * output_cpm
    return round(input_cost, 6), round(output_cost, 6), round(input_cost + output_cost, 6)


def _extract_usage_openai(data: dict) -> tuple[int, int, int]:
    """Extract token usage from OpenAI-compatible response."""
    usage = data.get("usage") or {}
    pt = usage.get("prompt_tokens", 0)
    ct = usage.get("completion_tokens", 0)
    tt = usage.get("total_tokens", pt + ct)
    return pt, ct, tt


class LLMClient:
    """OpenAI-compatible chat client used by the Tier-3 matcher."""

    def __init__(self, base_url: str, api_key: str = "", model: str = "gpt-4o-mini") -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.model = model

    @property
    def configured(self) -> bool:
        return bool(self._api_key and self._base_url)

    async def chat(
        self,
        messages: list[dict[str, str]],
        *,
        tenant_id: str | None = None,
        model: str | None = None,
        temperature: float = 0.0,
        max_tokens: int = 200,
        timeout: float = 10.0,
    ) -> LLMResponse:
        """Execute a chat completion with cost tracking.

        Cancellation (the caller's deadline) propagates; everything else is
        folded into ``LLMResponse(success=False)``.
        """
        effective_model = model or self.model
        if not self._api_key:
            return LLMResponse(content="", model=effective_model, success=False, error="api key missing")

        start_time = time.time()
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.post(
                    f"{self._base_url}/chat/completions",
                    headers={"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"},
                    json={
                        "model": effective_model,
                        "messages": messages,
                        "temperature": temperature,
                        "max_tokens": max_tokens,
                    },
                )
                latency = round((time.time() - start_time) * 1000)

                if resp.status_code != 200:
                    try:
                        error_msg = resp.json().get("error", {}).get("message", resp.text[:200])
                    except ValueError:
                        error_msg = resp.text[:200]
                    logger.error("llm.provider_error", status=resp.status_code, detail=error_msg[:200], tenant_id=tenant_id)
                    return LLMResponse(
                        content="",
                        model=effective_model,
                        latency_ms=latency,
                        success=False,
                        error=f"LLM Error ({resp.status_code}): {error_msg[:200]}",
                    )

                data = resp.json()
                content = data["choices"][0]["message"]["content"] or ""
                prompt_tokens, completion_tokens, total_tokens = _extract_usage_openai(data)

        except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError) as e:
            latency = round((time.time() - start_time) * 1000)
            logger.error("llm.request_failed", error=str(e), error_type=e.__class__.__name__, tenant_id=tenant_id)
            return LLMResponse(content="", model=effective_model, latency_ms=latency, success=False, error=str(e) or e.__class__.__name__)

        input_cost, output_cost, total_cost = _calculate_cost(effective_model, prompt_tokens, completion_tokens)
        logger.info(
            "llm.success",
            model=effective_model,
            latency_ms=latency,
            tokens=total_tokens,
            cost_cents=round(total_cost, 4),
            tenant_id=tenant_id,
        )
        return LLMResponse(
            content=content,
            model=effective_model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
            input_cost_cents=input_cost,
            output_cost_cents=output_cost,
            total_cost_cents=total_cost,
            latency_ms=latency,
        )
