"""
Unit tests for model routing, pricing and the per-row cost budget
"""
import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from services.ai_provider import (
    AZURE, DEFAULT_PRICING, GOOGLE, AIProviderError, AIProviderService, calculate_cost,
    get_deployment_name, get_model_pricing, get_provider_from_model, get_provider_rate_limits,
    max_output_tokens_for_budget,
)


class TestRouting:

    def test_provider_from_model(self):
        assert get_provider_from_model("gpt-4o-mini") == AZURE
        assert get_provider_from_model("deepseek-chat") == AZURE
        assert get_provider_from_model("gemini-2.5-flash") == GOOGLE

    def test_rate_limits(self):
        assert get_provider_rate_limits(AZURE).concurrent_requests == 75
        google = get_provider_rate_limits(GOOGLE)
        assert google.concurrent_requests == 10
        assert google.delay_between_chunks_ms == 200

    def test_deployment_override(self, monkeypatch):
        monkeypatch.setenv("AZURE_DEPLOYMENT_GPT_4O_MINI", "my-deploy")
        assert get_deployment_name("gpt-4o-mini") == "my-deploy"
        assert get_deployment_name("gpt-4o") == "gpt-4o"


class TestPricing:

    def test_known_and_default(self):
        assert get_model_pricing("gpt-4o").input == 2.50
        assert get_model_pricing("mystery-model") == DEFAULT_PRICING

    def test_cost(self):
        assert calculate_cost("gpt-4o", 1_000_000, 1_000_000) == pytest.approx(12.50)
        assert calculate_cost("gpt-4o-mini", 0, 0) == 0


class TestBudget:

    def test_ceiling_applies_when_budget_is_generous(self):
        assert max_output_tokens_for_budget("gpt-4o-mini", "x" * 40, 10.0, 500) == 500

    def test_budget_limits_tokens(self):
        # 10 input tokens at $0.15/M, output at $0.60/M
        tokens = max_output_tokens_for_budget("gpt-4o-mini", "x" * 40, 0.0006, 8192)
        assert 0 < tokens < 8192
        assert tokens == int((0.0006 * 1_000_000 - 10 * 0.15) // 0.60)

    def test_exhausted_budget(self):
        assert max_output_tokens_for_budget("gpt-4o", "x" * 4000, 0.000001, 8192) == 0


class TestGenerate:

    def test_unconfigured_provider_raises(self, monkeypatch):
        from config import settings

        monkeypatch.setattr(settings, "AZURE_OPENAI_ENDPOINT", None)
        monkeypatch.setattr(settings, "AZURE_OPENAI_API_KEY", None)
        service = AIProviderService()
        with pytest.raises(AIProviderError):
            asyncio.run(service.generate("hi", "gpt-4o-mini"))

    def test_azure_response_is_mapped(self, monkeypatch):
        service = AIProviderService()
        completion = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="hello"), finish_reason="length")],
            usage=SimpleNamespace(prompt_tokens=12, completion_tokens=3),
        )
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=completion)
        monkeypatch.setattr(service, "_azure_client", lambda api_version: client)

        result = asyncio.run(service.generate("hi", "gpt-4o-mini", temperature=0.1, max_output_tokens=50))

        assert result.text == "hello"
        assert result.input_tokens == 12
        assert result.output_tokens == 3
        assert result.finish_reason == "length"
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["max_tokens"] == 50
        assert kwargs["temperature"] == 0.1

    def test_clients_are_rebuilt_for_each_event_loop(self, monkeypatch):
        from config import settings

        monkeypatch.setattr(settings, "AZURE_OPENAI_ENDPOINT", "https://example.openai.azure.com/")
        monkeypatch.setattr(settings, "AZURE_OPENAI_API_KEY", "key")
        completion = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="ok"), finish_reason="stop")],
            usage=SimpleNamespace(prompt_tokens=1, completion_tokens=1),
        )
        created = []

        def make_client(**kwargs):
            client = MagicMock()
            client.chat.completions.create = AsyncMock(return_value=completion)
            created.append(client)
            return client

        monkeypatch.setattr("services.ai_provider.AsyncAzureOpenAI", make_client)
        service = AIProviderService()

        async def sweep():
            await service.generate("a", "gpt-4o-mini")
            await service.generate("b", "gpt-4o-mini")

        asyncio.run(sweep())
        asyncio.run(sweep())

        assert len(created) == 2
        assert all(c.chat.completions.create.await_count == 2 for c in created)
