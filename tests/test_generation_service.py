"""Tests for model routing, pricing and the provider adapters."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from backend.errors import DependencyError, ValidationError
from backend.services.generation_service import GenerationService
from backend.services.providers.base import Completion


@pytest.fixture
def generation(test_settings):
    return GenerationService(test_settings)


def _fake_provider(completion=None, error=None):
    provider = MagicMock()
    provider.get_provider_name.return_value = "openai"
    provider.complete = AsyncMock(return_value=completion, side_effect=error)
    return provider


class TestRouting:
    def test_get_provider_name(self, generation):
        assert generation.get_provider_name("gpt-4o") == "openai"
        assert generation.get_provider_name("gpt-4o-mini") == "openai"
        assert generation.get_provider_name("claude-sonnet-4-5-20250929") == "anthropic"
        assert generation.get_provider_name("claude-haiku-4-5-20251001") == "anthropic"
        assert generation.get_provider_name("nope") == "unknown"

    def test_available_models(self, generation):
        model_ids = [m["id"] for m in generation.get_available_models()]
        assert "gpt-4o" in model_ids
        assert "claude-sonnet-4-5-20250929" in model_ids

    def test_unconfigured_provider(self, temp_db_path):
        from backend.config import Settings
        service = GenerationService(Settings(openai_api_key="", anthropic_api_key="", database_url=temp_db_path))
        assert service.get_available_models() == []
        with pytest.raises(DependencyError, match="not configured"):
            service._get_provider("gpt-4o")

    def test_unknown_model(self, generation):
        with pytest.raises(ValidationError, match="Unknown model") as exc_info:
            generation._get_provider("nonexistent-model")
        assert exc_info.value.status_code == 400
        assert exc_info.value.code == "UNKNOWN_MODEL"

    @pytest.mark.asyncio
    async def test_generate_with_unknown_model_never_calls_provider(self, generation):
        provider = _fake_provider(Completion(content="ok"))
        generation._providers["openai"] = provider
        with pytest.raises(ValidationError):
            await generation.generate([{"role": "user", "content": "Hi"}], model_id="gpt-9")
        provider.complete.assert_not_called()


class TestPricing:
    def test_gpt4o(self, generation):
        # 1000/1M * 2.50 + 500/1M * 10.00 = 0.0025 + 0.005
        assert generation.calculate_cost("gpt-4o", 1000, 500) == pytest.approx(0.0075)

    def test_claude_sonnet(self, generation):
        # 1000/1M * 3.00 + 500/1M * 15.00 = 0.003 + 0.0075
        assert generation.calculate_cost("claude-sonnet-4-5-20250929", 1000, 500) == pytest.approx(0.0105)

    def test_unknown_model_is_free(self, generation):
        assert generation.calculate_cost("unknown-model", 1000, 500) == 0.0


class TestGenerate:
    @pytest.mark.asyncio
    async def test_returns_content_tokens_and_cost(self, generation):
        provider = _fake_provider(Completion(content="Hi there", input_tokens=1000, output_tokens=500))
        generation._providers["openai"] = provider

        result = await generation.generate(
            [{"role": "user", "content": "Hello"}], model_id="gpt-4o"
        )
        assert result.content == "Hi there"
        assert result.tokens_used == 1500
        assert result.cost == pytest.approx(0.0075)
        assert result.model_id == "gpt-4o"

        kwargs = provider.complete.call_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["max_tokens"] == 4096
        assert kwargs["messages"][0]["role"] == "system"
        assert kwargs["messages"][-1] == {"role": "user", "content": "Hello"}

    @pytest.mark.asyncio
    async def test_default_model(self, generation):
        provider = _fake_provider(Completion(content="ok"))
        generation._providers["openai"] = provider
        result = await generation.generate([{"role": "user", "content": "Hello"}])
        assert result.model_id == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_history_is_trimmed(self, generation):
        provider = _fake_provider(Completion(content="ok"))
        generation._providers["openai"] = provider
        history = [{"role": "user", "content": str(i)} for i in range(100)]

        await generation.generate(history, model_id="gpt-4o")
        messages = provider.complete.call_args.kwargs["messages"]
        assert len(messages) == 41
        assert messages[-1]["content"] == "99"

    @pytest.mark.asyncio
    async def test_provider_failure_becomes_dependency_error(self, generation):
        generation._providers["openai"] = _fake_provider(error=RuntimeError("rate limited"))
        with pytest.raises(DependencyError) as exc_info:
            await generation.generate([{"role": "user", "content": "Hello"}], model_id="gpt-4o")
        assert exc_info.value.status_code == 502
        assert "rate limited" in exc_info.value.details

    @pytest.mark.asyncio
    async def test_empty_reply_is_dependency_error(self, generation):
        generation._providers["openai"] = _fake_provider(Completion(content="  "))
        with pytest.raises(DependencyError, match="empty"):
            await generation.generate([{"role": "user", "content": "Hello"}], model_id="gpt-4o")

    @pytest.mark.asyncio
    async def test_generate_prompt_sends_transcript(self, generation):
        provider = _fake_provider(Completion(content="You are an analyst..."))
        generation._providers["openai"] = provider
        history = [
            {"role": "user", "content": "Summarize sales"},
            {"role": "assistant", "content": "Sure"},
        ]
        result = await generation.generate_prompt(history, model_id="gpt-4o")
        assert result.content == "You are an analyst..."
        messages = provider.complete.call_args.kwargs["messages"]
        assert "USER: Summarize sales" in messages[-1]["content"]
        assert "ASSISTANT: Sure" in messages[-1]["content"]


class TestProviders:
    @pytest.mark.asyncio
    async def test_openai_complete(self):
        from backend.services.providers.openai_provider import OpenAIProvider
        provider = OpenAIProvider(api_key="fake-key")
        response = SimpleNamespace(
            choices=[SimpleNamespace(
                message=SimpleNamespace(content="Hello!"), finish_reason="stop"
            )],
            usage=SimpleNamespace(prompt_tokens=12, completion_tokens=3),
        )
        provider._client = MagicMock()
        provider._client.chat.completions.create = AsyncMock(return_value=response)

        completion = await provider.complete([{"role": "user", "content": "Hi"}], model="gpt-4o")
        assert completion.content == "Hello!"
        assert completion.total_tokens == 15
        assert completion.finish_reason == "stop"
        assert provider.get_provider_name() == "openai"

    @pytest.mark.asyncio
    async def test_anthropic_extracts_system_prompt(self):
        from backend.services.providers.anthropic_provider import AnthropicProvider
        provider = AnthropicProvider(api_key="fake-key")
        response = SimpleNamespace(
            content=[SimpleNamespace(type="text", text="Hello!")],
            usage=SimpleNamespace(input_tokens=20, output_tokens=4),
            stop_reason="end_turn",
        )
        provider._client = MagicMock()
        provider._client.messages.create = AsyncMock(return_value=response)

        completion = await provider.complete(
            [
                {"role": "system", "content": "Be brief."},
                {"role": "user", "content": "Hi"},
            ],
            model="claude-haiku-4-5-20251001",
        )
        kwargs = provider._client.messages.create.call_args.kwargs
        assert kwargs["system"] == "Be brief."
        assert kwargs["messages"] == [{"role": "user", "content": "Hi"}]
        assert completion.content == "Hello!"
        assert completion.total_tokens == 24
