from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass
class Completion:
    """Normalized non-streaming reply from any LLM provider."""
    content: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    finish_reason: str | None = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class BaseLLMProvider(ABC):
    @abstractmethod
    async def complete(
        self,
        messages: list[dict],
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 4096,
    ) -> Completion:
        """Return the full reply for an ordered message history."""
        ...

    @abstractmethod
    def get_provider_name(self) -> str:
        ...
