import asyncio
from unittest.mock import AsyncMock, Mock, patch

import httpx
import pytest

from inbox_triage.services.llm import LLMProviderError, LLMTimeoutError, OpenAIProvider


def mock_client(response=None, side_effect=None):
    client = AsyncMock()
    client.__aenter__.return_value = client
    client.__aexit__.return_value = False
    if side_effect is not None:
        client.post.side_effect = side_effect
    else:
        client.post.return_value = response
    return client


def ok_response(content='{"handoff": {}}'):
    response = Mock(status_code=200)
    response.json.return_value = {
        "model": "gpt-4o-mini-2024-07-18",
        "choices": [{"message": {"content": content}}],
        "usage": {"total_tokens": 42},
    }
    return response


class TestOpenAIProvider:
    def test_generate(self):
        provider = OpenAIProvider(api_key="sk-test", base_url="https://llm.example.com/v1/")
        client = mock_client(ok_response())
        with patch("inbox_triage.services.llm.openai_provider.httpx.AsyncClient", return_value=client):
            response = asyncio.run(provider.generate([{"role": "user", "content": "hi"}], max_tokens=64))

        assert response.content == '{"handoff": {}}'
        assert response.model == "gpt-4o-mini-2024-07-18"
        assert response.usage == {"total_tokens": 42}

        url = client.post.call_args.args[0]
        kwargs = client.post.call_args.kwargs
        assert url == "https://llm.example.com/v1/chat/completions"
        assert kwargs["headers"]["Authorization"] == "Bearer sk-test"
        assert kwargs["json"]["model"] == "gpt-4o-mini"
        assert kwargs["json"]["max_completion_tokens"] == 64
        assert kwargs["json"]["response_format"] == {"type": "json_object"}

    def test_run_returns_content(self):
        provider = OpenAIProvider(api_key="sk-test")
        client = mock_client(ok_response("{}"))
        payload = {"messages": [{"role": "system", "content": "json only"}]}
        with patch("inbox_triage.services.llm.openai_provider.httpx.AsyncClient", return_value=client):
            content = asyncio.run(provider.run("gpt-4o", payload, max_tokens=128, temperature=0.0))

        assert content == "{}"
        assert client.post.call_args.kwargs["json"]["model"] == "gpt-4o"
        assert client.post.call_args.kwargs["json"]["messages"] == payload["messages"]

    def test_empty_choices(self):
        response = Mock(status_code=200)
        response.json.return_value = {"choices": []}
        provider = OpenAIProvider(api_key="sk-test")
        with patch("inbox_triage.services.llm.openai_provider.httpx.AsyncClient", return_value=mock_client(response)):
            result = asyncio.run(provider.generate([]))
        assert result.content == ""
        assert result.model == "gpt-4o-mini"

    def test_error_status(self):
        response = Mock(status_code=429, text="rate limited")
        provider = OpenAIProvider(api_key="sk-test")
        with patch("inbox_triage.services.llm.openai_provider.httpx.AsyncClient", return_value=mock_client(response)):
            with pytest.raises(LLMProviderError, match="429"):
                asyncio.run(provider.generate([]))

    def test_transport_timeout(self):
        provider = OpenAIProvider(api_key="sk-test")
        client = mock_client(side_effect=httpx.ReadTimeout("read timed out"))
        with patch("inbox_triage.services.llm.openai_provider.httpx.AsyncClient", return_value=client):
            with pytest.raises(LLMTimeoutError, match="timeout"):
                asyncio.run(provider.generate([]))
