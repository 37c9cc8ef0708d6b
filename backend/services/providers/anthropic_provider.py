from anthropic import AsyncAnthropic

from backend.services.providers.base import BaseLLMProvider, Completion


class AnthropicProvider(BaseLLMProvider):
    def __init__(self, api_key: str):
        self._client = AsyncAnthropic(api_key=api_key)

    def get_provider_name(self) -> str:
        return "anthropic"

    async def complete(
        self,
        messages: list[dict],
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 8192,
    ) -> Completion:
        # Anthropic takes the system prompt as a separate parameter
        system_msg = ""
        chat_messages = []
        for m in messages:
            if m["role"] == "system":
                system_msg = (system_msg + "\n" + m["content"]).strip()
            else:
                chat_messages.append({"role": m["role"], "content": m["content"]})

        kwargs = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": chat_messages,
        }
        if system_msg:
            kwargs["system"] = system_msg

        response = await self._client.messages.create(**kwargs)
        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        return Completion(
            content=text,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            finish_reason=response.stop_reason,
        )
