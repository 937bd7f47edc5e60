from engage.services.llm.base import LLMProvider, LLMResponse
from engage.services.llm.openai_provider import OpenAIProvider

__all__ = ["LLMProvider", "LLMResponse", "OpenAIProvider"]
