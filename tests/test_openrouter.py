import asyncio
import json

import httpx
import pytest

from app.services.openrouter import CompletionError, complete
from app.services.prompts import build_messages

MESSAGES = build_messages("1. Choose the title.", [1])


def _completion(content, finish_reason="stop"):
    return {"choices": [{"message": {"content": content}, "finish_reason": finish_reason}]}


def _run(mock_client, handler):
    async def run():
        async with mock_client(handler) as client:
            return await complete(client, MESSAGES)

    return asyncio.run(run())


def test_complete_retries_rate_limit(mock_client):
    requests = []
    responses = iter([httpx.Response(429, text="slow down"), httpx.Response(200, json=_completion(" 1: B XURTH "))])

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return next(responses)

    result = _run(mock_client, handler)

    assert result.text == "1: B XURTH"
    assert result.attempts == 2
    assert result.finish_reason == "stop"
    assert result.model == "openai/gpt-4o-mini"
    assert str(requests[0].url) == "https://openrouter.ai/api/v1/chat/completions"
    assert requests[0].headers["Authorization"] == "Bearer or-test-key"
    assert requests[0].headers["X-Title"] == "exam-answer-service"

    body = json.loads(requests[0].content)
    assert body["temperature"] == 0
    assert body["max_tokens"] == 512
    assert body["messages"] == MESSAGES


def test_complete_skips_to_fallback_model_on_client_error(mock_client, monkeypatch):
    monkeypatch.setenv("OPENROUTER_FALLBACK_MODELS", "backup/model")
    models = []

    def handler(request: httpx.Request) -> httpx.Response:
        model = json.loads(request.content)["model"]
        models.append(model)
        if model == "openai/gpt-4o-mini":
            return httpx.Response(400, json={"error": "model unavailable"})
        return httpx.Response(200, json=_completion("1: C"))

    result = _run(mock_client, handler)

    assert models == ["openai/gpt-4o-mini", "backup/model"]
    assert result.model == "backup/model"
    assert len(result.errors) == 1


def test_complete_uses_backup_base_url(mock_client, monkeypatch):
    monkeypatch.setenv("OPENROUTER_BASE_URL_BACKUP", "https://backup.example.com/v1/")
    monkeypatch.setenv("OPENROUTER_MAX_RETRIES", "1")

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "openrouter.ai":
            return httpx.Response(502, text="bad gateway")
        return httpx.Response(200, json=_completion("1: D"))

    result = _run(mock_client, handler)
    assert result.base_url == "https://backup.example.com/v1"
    assert result.text == "1: D"


def test_complete_retries_empty_content(mock_client):
    responses = iter([httpx.Response(200, json=_completion("")), httpx.Response(200, json=_completion("1: A"))])

    result = _run(mock_client, lambda request: next(responses))
    assert result.text == "1: A"
    assert result.attempts == 2


def test_complete_raises_when_exhausted(mock_client):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    with pytest.raises(CompletionError) as excinfo:
        _run(mock_client, handler)
    assert len(excinfo.value.errors) == 3
