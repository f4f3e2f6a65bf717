from gateway.services.llm.base import LLMProvider, LLMResponse
from gateway.services.llm.openai_provider import OpenAIProvider

__all__ = ["LLMProvider", "LLMResponse", "OpenAIProvider"]
