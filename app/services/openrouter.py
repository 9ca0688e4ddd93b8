from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

import httpx

from app.services import settings

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {408, 409, 429}


class CompletionError(RuntimeError):
    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []


@dataclass
class Completion:
    text: str
    model: str
    base_url: str
    finish_reason: str | None = None
    attempts: int = 1
    errors: list[str] = field(default_factory=list)


def _is_retryable(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS or status_code >= 500


def _completion_text(payload: dict) -> tuple[str, str | None]:
    choices = payload.get("choices") or []
    if not choices:
        return "", None
    choice = choices[0] or {}
    message = choice.get("message") or {}
    content = message.get("content")
    text = content.strip() if isinstance(content, str) else ""
    return text, choice.get("finish_reason")


async def complete(client: httpx.AsyncClient, messages: list[dict[str, str]]) -> Completion:
    """Run one chat completion, walking base URLs x models on failure.

    Each (base URL, model) candidate gets up to ``OPENROUTER_MAX_RETRIES``
    attempts with linear backoff. Non-retryable 4xx responses move straight to
    the next candidate.
    """
    api_key = settings.get_openrouter_api_key()
    max_retries = settings.get_openrouter_max_retries()
    delay = settings.get_openrouter_retry_delay_seconds()
    timeout = settings.get_openrouter_timeout_seconds()
    max_tokens = settings.get_openrouter_max_tokens()
    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {api_key}",
        **settings.get_openrouter_headers(),
    }

    errors: list[str] = []
    attempts = 0
    for base_url in settings.get_openrouter_base_urls():
        for model in settings.get_openrouter_models():
            payload = {
                "model": model,
                "temperature": 0,
                "max_tokens": max_tokens,
                "messages": messages,
            }
            for attempt in range(1, max_retries + 1):
                attempts += 1
                retryable = True
                try:
                    response = await client.post(
                        f"{base_url}/chat/completions",
                        headers=headers,
                        json=payload,
                        timeout=timeout,
                    )
                except httpx.HTTPError as exc:
                    error = f"{type(exc).__name__}: {exc}"
                else:
                    if response.is_error:
                        error = f"HTTP {response.status_code}: {response.text[:300]}"
                        retryable = _is_retryable(response.status_code)
                    else:
                        try:
                            data = response.json()
                        except ValueError:
                            data = None
                        if not isinstance(data, dict):
                            error = "invalid JSON in completion response"
                        else:
                            text, finish_reason = _completion_text(data)
                            if text:
                                return Completion(
                                    text=text,
                                    model=model,
                                    base_url=base_url,
                                    finish_reason=finish_reason,
                                    attempts=attempts,
                                    errors=errors,
                                )
                            error = "empty completion"

                errors.append(f"{model}@{base_url} #{attempt}: {error}")
                logger.warning(
                    "Completion attempt %d/%d (%s) failed: %s", attempt, max_retries, model, error
                )
                if not retryable:
                    break
                if attempt < max_retries:
                    await asyncio.sleep(delay * attempt)

    raise CompletionError("All completion attempts failed", errors=errors)
