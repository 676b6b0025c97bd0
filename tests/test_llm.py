"""Frontdesk – LLM Client Tests.

Tests: OpenAI-compatible call, usage and cost accounting, provider errors,
transport failures, missing key. httpx is always patched.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from frontdesk.matching.llm import LLMClient, _calculate_cost

MOCK_OPENAI_RESPONSE = {
    "choices": [{"message": {"content": '{"scenario_id": "hours", "confidence": 0.9}'}}],
    "usage": {"prompt_tokens": 1000, "completion_tokens": 100, "total_tokens": 1100},
}


def _patched_client(mock_client_cls: MagicMock, **post_kwargs) -> AsyncMock:
    mock_client = AsyncMock()
    mock_client.post = AsyncMock(**post_kwargs)
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    mock_client_cls.return_value = mock_client
    return mock_client


class TestLLMChat:
    @pytest.mark.anyio
    async def test_success_reports_usage_and_cost(self) -> None:
        llm = LLMClient("https://api.example.test/v1/", api_key="test-key-123")

        mock_response = MagicMock()
        mock_response.status_code = 200
        mock_response.json.return_value = MOCK_OPENAI_RESPONSE

        with patch("httpx.AsyncClient") as mock_client_cls:
            mock_client = _patched_client(mock_client_cls, return_value=mock_response)
            result = await llm.chat([{"role": "user", "content": "test"}], tenant_id="acme", timeout=2.5)

        assert result.success is True
        assert result.content == '{"scenario_id": "hours", "confidence": 0.9}'
        assert result.total_tokens == 1100
        # 1000 * 15 / 1e6 + 100 * 60 / 1e6
        assert result.total_cost_cents == pytest.approx(0.021)
        mock_client_cls.assert_called_once_with(timeout=2.5)
        url = mock_client.post.call_args.args[0]
        assert url == "https://api.example.test/v1/chat/completions"
        payload = mock_client.post.call_args.kwargs["json"]
        assert payload["model"] == "gpt-4o-mini"
        assert payload["temperature"] == 0.0

    @pytest.mark.anyio
    async def test_provider_error_is_reported(self) -> None:
        llm = LLMClient("https://api.example.test/v1", api_key="test-key-123")

        mock_response = MagicMock()
        mock_response.status_code = 429
        mock_response.json.return_value = {"error": {"message": "rate limited"}}

        with patch("httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, return_value=mock_response)
            result = await llm.chat([{"role": "user", "content": "test"}])

        assert result.success is False
        assert result.error == "LLM Error (429): rate limited"

    @pytest.mark.anyio
    async def test_transport_failure_is_reported(self) -> None:
        llm = LLMClient("https://api.example.test/v1", api_key="test-key-123")

        with patch("httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, side_effect=httpx.ConnectError("connection refused"))
            result = await llm.chat([{"role": "user", "content": "test"}])

        assert result.success is False
        assert "connection refused" in result.error

    @pytest.mark.anyio
    async def test_malformed_body_is_reported(self) -> None:
        llm = LLMClient("https://api.example.test/v1", api_key="test-key-123")

        mock_response = MagicMock()
        mock_response.status_code = 200
        mock_response.json.return_value = {"choices": []}

        with patch("httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, return_value=mock_response)
            result = await llm.chat([{"role": "user", "content": "test"}])

        assert result.success is False

    @pytest.mark.anyio
    async def test_missing_key_skips_the_call(self) -> None:
        llm = LLMClient("https://api.example.test/v1", api_key="")
        assert llm.configured is False
        with patch("httpx.AsyncClient") as mock_client_cls:
            result = await llm.chat([{"role": "user", "content": "test"}])
        mock_client_cls.assert_not_called()
        assert result.error == "api key missing"


class TestCost:
    def test_known_model(self) -> None:
        assert _calculate_cost("gpt-4o", 1_000_000, 0) == (250.0, 0.0, 250.0)

    def test_unknown_model_is_free(self) -> None:
        assert _calculate_cost("local-llama", 5000, 5000) == (0.0, 0.0, 0.0)
