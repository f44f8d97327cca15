from inbox_triage.services.llm.base import (
    InferenceProvider,
    LLMProviderError,
    LLMResponse,
    LLMTimeoutError,
)
from inbox_triage.services.llm.openai_provider import OpenAIProvider

__all__ = ["InferenceProvider", "LLMProviderError", "LLMResponse", "LLMTimeoutError", "OpenAIProvider"]
