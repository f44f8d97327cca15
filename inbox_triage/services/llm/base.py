from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None


class LLMProviderError(Exception):
    """Provider answered with a non-success status."""


class LLMTimeoutError(LLMProviderError):
    """Provider did not answer within its own transport timeout."""


class InferenceProvider(ABC):
    """Async inference capability consumed by the ambiguity interpreter."""

    @abstractmethod
    async def run(
        self,
        model: str,
        payload: dict,
        *,
        max_tokens: int = 128,
        temperature: float = 0.0,
    ) -> Any:
        """Run a chat payload (``{"messages": [...]}``) and return the raw model output."""
        pass
