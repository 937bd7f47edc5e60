from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None
    confidence: Optional[float] = None


class LLMProvider(ABC):
    """Non-streaming chat completion backend."""

    @abstractmethod
    async def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 500,
    ) -> LLMResponse:
        """Return generated text for a role-tagged message list.

        Raises GenerationFailure on backend errors.
        """

    async def aclose(self) -> None:
        return None
