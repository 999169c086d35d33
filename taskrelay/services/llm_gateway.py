"""LLM gateway managing provider instances with concurrency control."""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from taskrelay.core.errors import InstanceNotFound, ProviderError, UnsupportedProvider
from taskrelay.core.models import (
    HealthState,
    HealthStatus,
    LLMConfig,
    LLMProvider,
    LLMResponse,
    utcnow,
)
from taskrelay.services.llm_providers import ProviderClient, build_client

logger = logging.getLogger(__name__)

ClientFactory = Callable[[LLMConfig], ProviderClient]

IDLE_TTL = timedelta(hours=24)


@dataclass(slots=True)
class LLMInstance:
    """A configured provider session."""

    id: str
    config: LLMConfig
    created_at: datetime = field(default_factory=utcnow)
    last_used: Optional[datetime] = None
    client: Optional[ProviderClient] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "provider": self.config.provider.value,
            "model": self.config.model,
            "createdAt": self.created_at.isoformat(),
            "lastUsed": self.last_used.isoformat() if self.last_used else None,
        }


class LLMGateway:
    """Uniform ``generate(prompt) -> text`` access to pluggable providers."""

    def __init__(
        self,
        client_factory: ClientFactory = build_client,
        *,
        max_concurrent: int = 50,
        idle_ttl: timedelta = IDLE_TTL,
    ) -> None:
        self._client_factory = client_factory
        self._max_concurrent = max_concurrent
        self._idle_ttl = idle_ttl
        self._instances: Dict[str, LLMInstance] = {}
        self._semaphores: Dict[str, asyncio.Semaphore] = {}

    def create_instance(self, config: LLMConfig) -> str:
        """Register a provider configuration and return its instance id."""
        try:
            provider = LLMProvider(config.provider)
        except ValueError as exc:
            raise UnsupportedProvider(f"Unsupported LLM provider: {config.provider}") from exc
        if provider is not config.provider:
            config = dataclasses.replace(config, provider=provider)

        instance_id = str(uuid.uuid4())
        self._instances[instance_id] = LLMInstance(id=instance_id, config=config)
        self._semaphores[instance_id] = asyncio.Semaphore(self._max_concurrent)
        logger.info("Created LLM instance %s (provider=%s, model=%s)", instance_id, provider.value, config.model)
        return instance_id

    async def delete_instance(self, instance_id: str) -> bool:
        instance = self._instances.pop(instance_id, None)
        self._semaphores.pop(instance_id, None)
        if instance is None:
            return False
        await self._close_client(instance_id, instance.client)
        logger.info("Deleted LLM instance %s", instance_id)
        return True

    async def edit_instance(self, instance_id: str, **changes: Any) -> bool:
        """Update an instance's configuration; the client is rebuilt lazily if credentials change."""
        instance = self._instances.get(instance_id)
        if instance is None:
            return False
        if "provider" in changes:
            try:
                changes["provider"] = LLMProvider(changes["provider"])
            except ValueError as exc:
                raise UnsupportedProvider(f"Unsupported LLM provider: {changes['provider']}") from exc
        instance.config = dataclasses.replace(instance.config, **changes)
        if {"provider", "api_key", "endpoint", "api_version"} & changes.keys():
            client, instance.client = instance.client, None
            await self._close_client(instance_id, client)
        logger.info("Updated LLM instance %s", instance_id)
        return True

    def get_instance(self, instance_id: str) -> Optional[LLMInstance]:
        return self._instances.get(instance_id)

    def list_instances(self) -> List[LLMInstance]:
        return list(self._instances.values())

    def instances_by_provider(self, provider: LLMProvider) -> List[LLMInstance]:
        return [inst for inst in self._instances.values() if inst.config.provider is provider]

    @asynccontextmanager
    async def acquire(self, instance_id: str) -> AsyncIterator[LLMInstance]:
        """Acquire an instance with its client initialised, honouring the concurrency limit."""
        instance = self._instances.get(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)

        semaphore = self._semaphores[instance_id]
        async with semaphore:
            if instance.client is None:
                instance.client = self._client_factory(instance.config)
            yield instance

    async def generate_response(
        self,
        instance_id: str,
        prompt: str,
        context: Optional[str] = None,
    ) -> LLMResponse:
        """Generate text with a single provider call. No retry happens here."""
        async with self.acquire(instance_id) as instance:
            full_prompt = self._compose_prompt(instance.config, prompt, context)
            try:
                response = await instance.client.complete(instance.config, full_prompt)
            except Exception as exc:
                logger.error("Provider call failed for instance %s: %s", instance_id, exc)
                raise ProviderError(f"{instance.config.provider.value} request failed: {exc}") from exc
            instance.last_used = utcnow()

        logger.info(
            "Generated response with instance %s (input=%d chars, output=%d chars)",
            instance_id,
            len(prompt),
            len(response.content),
        )
        return response

    async def test_instance(self, instance_id: str) -> bool:
        try:
            response = await self.generate_response(
                instance_id, 'Hello, please respond with "Test successful"'
            )
        except (InstanceNotFound, ProviderError) as exc:
            logger.warning("Test failed for instance %s: %s", instance_id, exc)
            return False
        return "test successful" in response.content.lower()

    def instance_stats(self) -> Dict[str, Any]:
        hour_ago = utcnow() - timedelta(hours=1)
        by_provider = Counter(inst.config.provider.value for inst in self._instances.values())
        recently_used = sum(
            1 for inst in self._instances.values() if inst.last_used and inst.last_used > hour_ago
        )
        return {
            "totalInstances": len(self._instances),
            "byProvider": dict(by_provider),
            "recentlyUsed": recently_used,
        }

    async def cleanup(self, now: Optional[datetime] = None) -> int:
        """Evict instances idle longer than the TTL. Never-used instances are kept."""
        cutoff = (now or utcnow()) - self._idle_ttl
        stale = [
            instance_id
            for instance_id, inst in self._instances.items()
            if inst.last_used is not None and inst.last_used < cutoff
        ]
        for instance_id in stale:
            await self.delete_instance(instance_id)
            logger.info("Cleaned up unused LLM instance %s", instance_id)
        return len(stale)

    async def run_cleanup(self, interval: float) -> None:
        """Periodic sweep, meant to run as a background task."""
        while True:
            await asyncio.sleep(interval)
            await self.cleanup()

    async def aclose(self) -> None:
        """Close every provider client; instances stay registered and reconnect lazily."""
        for instance in self._instances.values():
            client, instance.client = instance.client, None
            await self._close_client(instance.id, client)

    @staticmethod
    async def _close_client(instance_id: str, client: Optional[ProviderClient]) -> None:
        if client is None:
            return
        try:
            await client.aclose()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Error closing client for LLM instance %s: %s", instance_id, exc)

    def health_status(self) -> HealthStatus:
        stats = self.instance_stats()
        return HealthStatus(
            module="LLMGateway",
            status=HealthState.HEALTHY if self._instances else HealthState.UNHEALTHY,
            details=f"Total: {stats['totalInstances']}, Recently used: {stats['recentlyUsed']}",
        )

    @staticmethod
    def _compose_prompt(config: LLMConfig, prompt: str, context: Optional[str]) -> str:
        if context:
            return f"{config.system_prompt}\n\nContext: {context}\n\nUser: {prompt}"
        return f"{config.system_prompt}\n\nUser: {prompt}"
