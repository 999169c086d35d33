"""Shared fixtures: scripted LLM client and freshly wired components."""
from __future__ import annotations

from typing import List, Union

import pytest

from taskrelay.core.models import LLMConfig, LLMProvider, LLMResponse, LLMUsage
from taskrelay.functions import catalog
from taskrelay.functions.registry import FunctionRegistry
from taskrelay.jobs.engine import JobEngine
from taskrelay.messaging.broker import InMemoryBroker
from taskrelay.messaging.gateway import MessageGateway
from taskrelay.orchestration.orchestrator import Orchestrator
from taskrelay.services.llm_gateway import LLMGateway


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class ScriptedClient:
    """Provider client that replays queued replies in order."""

    def __init__(self) -> None:
        self.replies: List[Union[str, Exception]] = []
        self.prompts: List[str] = []
        self.configs: List[LLMConfig] = []
        self.closed = 0

    async def complete(self, config: LLMConfig, prompt: str) -> LLMResponse:
        self.configs.append(config)
        self.prompts.append(prompt)
        if not self.replies:
            return LLMResponse(content="")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return LLMResponse(content=reply, usage=LLMUsage(input_tokens=12, output_tokens=8))

    async def aclose(self) -> None:
        self.closed += 1


@pytest.fixture
def llm_client() -> ScriptedClient:
    return ScriptedClient()


@pytest.fixture
def llm(llm_client: ScriptedClient) -> LLMGateway:
    return LLMGateway(client_factory=lambda config: llm_client)


@pytest.fixture
def llm_config() -> LLMConfig:
    return LLMConfig(provider=LLMProvider.OPENAI, api_key="sk-test", model="gpt-4")


@pytest.fixture
def registry() -> FunctionRegistry:
    registry = FunctionRegistry()
    registry.load(catalog.BUILTIN_FUNCTIONS)
    return registry


@pytest.fixture
def engine(registry: FunctionRegistry, llm: LLMGateway) -> JobEngine:
    return JobEngine(registry, backoff_base=0.01, services={"llm": llm})


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest.fixture
def gateway(broker: InMemoryBroker) -> MessageGateway:
    return MessageGateway(broker, publish_timeout=0.5, reconnect_delay=0.05, connect_timeout=0.5)


@pytest.fixture
def orchestrator(
    registry: FunctionRegistry,
    engine: JobEngine,
    llm: LLMGateway,
    gateway: MessageGateway,
) -> Orchestrator:
    return Orchestrator(registry, engine, llm, gateway, job_wait_timeout=2.0, poll_interval=0.01, shutdown_timeout=1.0)
