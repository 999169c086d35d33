"""Provider clients behind the LLM gateway.

Every client exposes ``async complete(config, prompt) -> LLMResponse`` and
``async aclose()`` to release its connection pool.
OpenAI and Azure OpenAI go through the official SDK; Anthropic and Gemini are
called over their REST endpoints with ``httpx``.
"""
from __future__ import annotations

from typing import Any, Protocol

import httpx

from taskrelay.core.errors import UnsupportedProvider
from taskrelay.core.models import LLMConfig, LLMProvider, LLMResponse, LLMUsage

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
GEMINI_URL_TEMPLATE = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
REQUEST_TIMEOUT = 120.0


class ProviderClient(Protocol):
    async def complete(self, config: LLMConfig, prompt: str) -> LLMResponse:
        ...

    async def aclose(self) -> None:
        ...


class OpenAIChatClient:
    """Chat-completions client for OpenAI and Azure OpenAI."""

    def __init__(self, config: LLMConfig) -> None:
        if config.provider is LLMProvider.AZURE_OPENAI:
            from openai import AsyncAzureOpenAI

            self._client: Any = AsyncAzureOpenAI(
                api_key=config.api_key,
                api_version=config.api_version or "2024-02-15-preview",
                azure_endpoint=config.endpoint or "",
            )
        else:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=config.api_key, base_url=config.endpoint)

    async def complete(self, config: LLMConfig, prompt: str) -> LLMResponse:
        completion = await self._client.chat.completions.create(
            model=config.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )
        if not completion.choices:
            raise RuntimeError("No response from OpenAI")
        choice = completion.choices[0]
        usage = completion.usage
        return LLMResponse(
            content=choice.message.content or "",
            usage=LLMUsage(
                input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            ),
            metadata={"model": config.model, "finish_reason": choice.finish_reason},
        )

    async def aclose(self) -> None:
        await self._client.close()


class AnthropicClient:
    def __init__(self, config: LLMConfig) -> None:
        self._http = httpx.AsyncClient(timeout=REQUEST_TIMEOUT)

    async def complete(self, config: LLMConfig, prompt: str) -> LLMResponse:
        response = await self._http.post(
            config.endpoint or ANTHROPIC_URL,
            headers={
                "x-api-key": config.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "content-type": "application/json",
            },
            json={
                "model": config.model,
                "max_tokens": config.max_tokens,
                "temperature": config.temperature,
                "messages": [{"role": "user", "content": prompt}],
            },
        )
        response.raise_for_status()
        data = response.json()
        blocks = data.get("content") or []
        usage = data.get("usage") or {}
        return LLMResponse(
            content=blocks[0].get("text", "") if blocks else "",
            usage=LLMUsage(
                input_tokens=usage.get("input_tokens", 0),
                output_tokens=usage.get("output_tokens", 0),
            ),
            metadata={"model": config.model, "stop_reason": data.get("stop_reason")},
        )

    async def aclose(self) -> None:
        await self._http.aclose()


class GeminiClient:
    def __init__(self, config: LLMConfig) -> None:
        self._http = httpx.AsyncClient(timeout=REQUEST_TIMEOUT)

    async def complete(self, config: LLMConfig, prompt: str) -> LLMResponse:
        response = await self._http.post(
            config.endpoint or GEMINI_URL_TEMPLATE.format(model=config.model),
            headers={"x-goog-api-key": config.api_key, "Content-Type": "application/json"},
            json={
                "contents": [{"role": "user", "parts": [{"text": prompt}]}],
                "generationConfig": {
                    "temperature": config.temperature,
                    "maxOutputTokens": config.max_tokens,
                },
            },
        )
        response.raise_for_status()
        data = response.json()
        candidates = data.get("candidates") or [{}]
        parts = (candidates[0].get("content") or {}).get("parts") or []
        usage = data.get("usageMetadata") or {}
        return LLMResponse(
            content="".join(part.get("text", "") for part in parts),
            usage=LLMUsage(
                input_tokens=usage.get("promptTokenCount", 0),
                output_tokens=usage.get("candidatesTokenCount", 0),
            ),
            metadata={"model": config.model, "finish_reason": candidates[0].get("finishReason")},
        )

    async def aclose(self) -> None:
        await self._http.aclose()


def build_client(config: LLMConfig) -> ProviderClient:
    """Default client factory used by the gateway."""
    if config.provider in (LLMProvider.OPENAI, LLMProvider.AZURE_OPENAI):
        return OpenAIChatClient(config)
    if config.provider is LLMProvider.ANTHROPIC:
        return AnthropicClient(config)
    if config.provider is LLMProvider.GOOGLE:
        return GeminiClient(config)
    raise UnsupportedProvider(f"Unsupported LLM provider: {config.provider}")
