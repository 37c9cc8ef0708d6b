import logging
from dataclasses import dataclass
from typing import Optional

from backend.config import Settings
from backend.errors import DependencyError, ValidationError
from backend.services.providers.base import BaseLLMProvider
from backend.services.providers.openai_provider import OpenAIProvider
from backend.services.providers.anthropic_provider import AnthropicProvider

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant that provides thoughtful and accurate responses. "
    "Be conversational, informative and professional. "
    "If you are unsure about something, say so rather than making up information."
)

PROMPT_DISTILLER_PROMPT = (
    "You are a prompt engineer. Read the conversation below and write a single, "
    "reusable prompt that would reproduce the user's intent in one shot. "
    "Be specific about the role, the task, the constraints and the expected output format. "
    "Reply with ONLY the prompt text."
)


@dataclass
class GenerationResult:
    content: str
    tokens_used: int
    cost: float
    model_id: str


class GenerationService:
    """Routes a model id to its provider and prices the reply."""

    def __init__(self, settings: Settings):
        self._settings = settings
        self._pricing = settings.pricing_config
        self._providers: dict[str, BaseLLMProvider] = {}
        self._model_provider_map: dict[str, str] = {}

        openai_key = settings.openai_api_key.get_secret_value()
        if openai_key:
            self._providers["openai"] = OpenAIProvider(openai_key)

        anthropic_key = settings.anthropic_api_key.get_secret_value()
        if anthropic_key:
            self._providers["anthropic"] = AnthropicProvider(anthropic_key)

        for model_cfg in settings.models_config:
            self._model_provider_map[model_cfg["id"]] = model_cfg["provider"]

    def _get_provider(self, model_id: str) -> BaseLLMProvider:
        provider_name = self._model_provider_map.get(model_id)
        if not provider_name:
            raise ValidationError(
                f"Unknown model: {model_id}", code="UNKNOWN_MODEL", details={"field": "modelId"}
            )
        provider = self._providers.get(provider_name)
        if not provider:
            raise DependencyError(
                f"Provider '{provider_name}' not configured. "
                f"Set the API key in .env for this provider.",
                code="PROVIDER_NOT_CONFIGURED",
            )
        return provider

    def _get_model_config(self, model_id: str) -> dict:
        for m in self._settings.models_config:
            if m["id"] == model_id:
                return m
        return {}

    def get_provider_name(self, model_id: str) -> str:
        return self._model_provider_map.get(model_id, "unknown")

    def get_available_models(self) -> list[dict]:
        """Return models whose providers have API keys configured."""
        return [
            model_cfg
            for model_cfg in self._settings.models_config
            if model_cfg["provider"] in self._providers
        ]

    def calculate_cost(self, model_id: str, input_tokens: int, output_tokens: int) -> float:
        """Cost in USD (pricing is per 1M tokens). Unknown models cost nothing."""
        pricing = {}
        for models in self._pricing.values():
            if model_id in models:
                pricing = models[model_id]
                break
        if not pricing:
            return 0.0
        cost = (
            (input_tokens / 1_000_000) * pricing.get("input", 0.0)
            + (output_tokens / 1_000_000) * pricing.get("output", 0.0)
        )
        return round(cost, 8)

    def build_messages(self, history: list[dict], system_prompt: str) -> list[dict]:
        limit = self._settings.generation_config.get("max_history_messages", 40)
        turns = [
            {"role": m["role"], "content": m["content"]}
            for m in history
            if m["role"] in ("user", "assistant")
        ]
        if limit and len(turns) > limit:
            turns = turns[-limit:]
        return [{"role": "system", "content": system_prompt}, *turns]

    async def generate(
        self,
        history: list[dict],
        model_id: Optional[str] = None,
        temperature: Optional[float] = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ) -> GenerationResult:
        model_id = model_id or self._settings.default_model
        provider = self._get_provider(model_id)
        if temperature is None:
            temperature = self._settings.generation_config.get("temperature", 0.7)
        max_tokens = self._get_model_config(model_id).get("max_tokens", 4096)

        logger.info(f"Routing to {provider.get_provider_name()} for model {model_id}")
        try:
            completion = await provider.complete(
                messages=self.build_messages(history, system_prompt),
                model=model_id,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except Exception as exc:
            logger.exception("Generation failed for model %s", model_id)
            raise DependencyError(
                "Failed to generate AI response", details=str(exc)
            ) from exc

        if not completion.content.strip():
            raise DependencyError(
                "Provider returned an empty reply", details={"model": model_id}
            )
        return GenerationResult(
            content=completion.content,
            tokens_used=completion.total_tokens,
            cost=self.calculate_cost(
                model_id, completion.input_tokens, completion.output_tokens
            ),
            model_id=model_id,
        )

    async def generate_prompt(
        self, history: list[dict], model_id: Optional[str] = None
    ) -> GenerationResult:
        """Distil a conversation into one reusable prompt."""
        transcript = "\n\n".join(
            f"{m['role'].upper()}: {m['content']}"
            for m in history
            if m["role"] in ("user", "assistant")
        )
        return await self.generate(
            [{"role": "user", "content": transcript}],
            model_id=model_id,
            temperature=0.3,
            system_prompt=PROMPT_DISTILLER_PROMPT,
        )
