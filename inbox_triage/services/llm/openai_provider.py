from typing import Any, List, Optional

import httpx

from inbox_triage.logging_config import get_logger
from inbox_triage.services.llm.base import (
    InferenceProvider,
    LLMProviderError,
    LLMResponse,
    LLMTimeoutError,
)

logger = get_logger("llm.openai")


class OpenAIProvider(InferenceProvider):
    """OpenAI chat completions provider returning JSON-only output."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 30.0,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = f"{base_url.rstrip('/')}/chat/completions"
        self.timeout_seconds = timeout_seconds

    async def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.0,
        max_tokens: int = 128,
    ) -> LLMResponse:
        """Generate a JSON-object completion from OpenAI."""
        model = model or self.default_model
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_completion_tokens": max_tokens,
            "response_format": {"type": "json_object"},
        }
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    self.base_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.TimeoutException as exc:
            raise LLMTimeoutError(f"OpenAI request timeout: {exc}") from exc

        logger.debug(f"OpenAI response status: {response.status_code}")

        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text}")
            raise LLMProviderError(f"OpenAI API error: {response.status_code} - {response.text}")

        data = response.json()
        content = ""
        if data.get("choices"):
            message = data["choices"][0].get("message", {})
            content = message.get("content") or ""
        logger.debug(f"OpenAI content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )

    async def run(
        self,
        model: str,
        payload: dict,
        *,
        max_tokens: int = 128,
        temperature: float = 0.0,
    ) -> Any:
        response = await self.generate(
            payload.get("messages", []),
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        return response.content
