"""LLM gateway instance management and generation."""
from __future__ import annotations

from datetime import timedelta
from typing import List

import pytest

from taskrelay.core.errors import InstanceNotFound, ProviderError, UnsupportedProvider
from taskrelay.core.models import LLMConfig, LLMProvider, LLMResponse, utcnow
from taskrelay.services.llm_gateway import LLMGateway
from taskrelay.services.llm_providers import AnthropicClient, GeminiClient, OpenAIChatClient, build_client


def test_create_instance_rejects_unknown_provider(llm: LLMGateway) -> None:
    with pytest.raises(UnsupportedProvider):
        llm.create_instance(LLMConfig(provider="cohere", api_key="k", model="m"))
    assert llm.list_instances() == []


def test_create_accepts_provider_strings(llm: LLMGateway) -> None:
    instance_id = llm.create_instance(LLMConfig(provider="anthropic", api_key="k", model="claude"))

    assert llm.get_instance(instance_id).config.provider is LLMProvider.ANTHROPIC
    assert [inst.id for inst in llm.instances_by_provider(LLMProvider.ANTHROPIC)] == [instance_id]


@pytest.mark.anyio
async def test_delete_and_edit(llm: LLMGateway, llm_config: LLMConfig) -> None:
    instance_id = llm.create_instance(llm_config)

    assert await llm.edit_instance(instance_id, model="gpt-4o", temperature=0.2)
    assert llm.get_instance(instance_id).config.model == "gpt-4o"
    assert await llm.delete_instance(instance_id)
    assert not await llm.delete_instance(instance_id)
    assert not await llm.edit_instance(instance_id, model="x")


@pytest.mark.anyio
async def test_generate_composes_prompt_and_marks_usage(llm: LLMGateway, llm_client, llm_config) -> None:
    instance_id = llm.create_instance(
        LLMConfig(provider=LLMProvider.OPENAI, api_key="k", model="gpt-4", system_prompt="Be brief.")
    )
    llm_client.replies.append("hello there")

    response = await llm.generate_response(instance_id, "Say hi", context="greeting")

    assert response.content == "hello there"
    assert response.usage.total_tokens == 20
    assert llm_client.prompts == ["Be brief.\n\nContext: greeting\n\nUser: Say hi"]
    assert llm.get_instance(instance_id).last_used is not None
    assert llm.instance_stats() == {"totalInstances": 1, "byProvider": {"openai": 1}, "recentlyUsed": 1}


@pytest.mark.anyio
async def test_generate_failures(llm: LLMGateway, llm_client, llm_config) -> None:
    with pytest.raises(InstanceNotFound):
        await llm.generate_response("missing", "hi")

    instance_id = llm.create_instance(llm_config)
    llm_client.replies.append(ConnectionError("boom"))
    with pytest.raises(ProviderError, match="boom"):
        await llm.generate_response(instance_id, "hi")
    assert llm.get_instance(instance_id).last_used is None


@pytest.mark.anyio
async def test_test_instance(llm: LLMGateway, llm_client, llm_config) -> None:
    instance_id = llm.create_instance(llm_config)
    llm_client.replies.extend(["Test successful", RuntimeError("down")])

    assert await llm.test_instance(instance_id)
    assert not await llm.test_instance(instance_id)


@pytest.mark.anyio
async def test_cleanup_evicts_only_stale_used_instances(llm: LLMGateway, llm_config: LLMConfig) -> None:
    stale = llm.create_instance(llm_config)
    fresh = llm.create_instance(llm_config)
    unused = llm.create_instance(llm_config)
    now = utcnow()
    llm.get_instance(stale).last_used = now - timedelta(hours=25)
    llm.get_instance(fresh).last_used = now - timedelta(hours=1)

    removed = await llm.cleanup(now=now)

    assert removed == 1
    assert {inst.id for inst in llm.list_instances()} == {fresh, unused}


def test_health_needs_an_instance(llm: LLMGateway, llm_config: LLMConfig) -> None:
    assert not llm.health_status().healthy
    llm.create_instance(llm_config)
    assert llm.health_status().healthy


def test_build_client_selects_provider_client() -> None:
    assert isinstance(build_client(LLMConfig(provider=LLMProvider.OPENAI, api_key="k", model="m")), OpenAIChatClient)
    assert isinstance(build_client(LLMConfig(provider=LLMProvider.ANTHROPIC, api_key="k", model="m")), AnthropicClient)
    assert isinstance(build_client(LLMConfig(provider=LLMProvider.GOOGLE, api_key="k", model="m")), GeminiClient)


class RecordingClient:
    def __init__(self, config: LLMConfig) -> None:
        self.config = config
        self.closed = False

    async def complete(self, config: LLMConfig, prompt: str) -> LLMResponse:
        return LLMResponse(content="ok")

    async def aclose(self) -> None:
        self.closed = True


@pytest.mark.anyio
async def test_provider_clients_are_closed_when_dropped(llm_config: LLMConfig) -> None:
    built: List[RecordingClient] = []

    def factory(config: LLMConfig) -> RecordingClient:
        built.append(RecordingClient(config))
        return built[-1]

    llm = LLMGateway(client_factory=factory)
    edited = llm.create_instance(llm_config)
    deleted = llm.create_instance(llm_config)
    stale = llm.create_instance(llm_config)
    for instance_id in (edited, deleted, stale):
        await llm.generate_response(instance_id, "hi")
    first_edited, first_deleted, first_stale = built

    await llm.edit_instance(edited, api_key="sk-rotated")
    assert first_edited.closed
    await llm.edit_instance(deleted, temperature=0.1)
    assert not first_deleted.closed

    assert await llm.delete_instance(deleted)
    assert first_deleted.closed

    llm.get_instance(stale).last_used = utcnow() - timedelta(days=2)
    assert await llm.cleanup() == 1
    assert first_stale.closed

    await llm.generate_response(edited, "hi again")
    rebuilt = built[-1]
    assert rebuilt is not first_edited and rebuilt.config.api_key == "sk-rotated"
    await llm.aclose()
    assert rebuilt.closed
    assert llm.get_instance(edited).client is None


@pytest.mark.anyio
async def test_openai_and_http_clients_release_connections() -> None:
    anthropic = AnthropicClient(LLMConfig(provider=LLMProvider.ANTHROPIC, api_key="k", model="m"))
    gemini = GeminiClient(LLMConfig(provider=LLMProvider.GOOGLE, api_key="k", model="m"))
    openai_client = OpenAIChatClient(LLMConfig(provider=LLMProvider.OPENAI, api_key="k", model="m"))

    await anthropic.aclose()
    await gemini.aclose()
    await openai_client.aclose()

    assert anthropic._http.is_closed
    assert gemini._http.is_closed
    assert openai_client._client.is_closed()
