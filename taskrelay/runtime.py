"""Application runtime composition helpers."""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
import signal
from functools import lru_cache
from typing import Any, Dict, List, Optional

from taskrelay.config import config, preferred_llm_config
from taskrelay.core.models import LLMProvider
from taskrelay.functions import catalog
from taskrelay.functions.registry import FunctionRegistry
from taskrelay.functions.worker import sentiment
from taskrelay.jobs.engine import JobEngine
from taskrelay.logging_config import configure_logging
from taskrelay.messaging.broker import Broker, InMemoryBroker
from taskrelay.messaging.gateway import MessageGateway
from taskrelay.messaging.redis_broker import RedisBroker
from taskrelay.orchestration.orchestrator import Orchestrator
from taskrelay.services.llm_gateway import LLMGateway

logger = logging.getLogger(__name__)

_background: List["asyncio.Task[Any]"] = []
_shutting_down = False


@lru_cache
def get_registry() -> FunctionRegistry:
    registry = FunctionRegistry()
    registry.load(catalog.BUILTIN_FUNCTIONS)
    return registry


@lru_cache
def get_llm_gateway() -> LLMGateway:
    return LLMGateway(max_concurrent=config.llm.max_concurrent)


@lru_cache
def get_services() -> Dict[str, Any]:
    """Shared services handed to function handlers through their execution context."""
    return {"llm": get_llm_gateway()}


@lru_cache
def get_job_engine() -> JobEngine:
    return JobEngine(
        get_registry(),
        max_concurrent_jobs=config.jobs.max_concurrent_jobs,
        backoff_base=config.jobs.backoff_base,
        max_retained_jobs=config.jobs.max_retained_jobs,
        default_repeat_window=config.jobs.default_repeat_window,
        services=get_services(),
    )


@lru_cache
def get_broker() -> Broker:
    backend = config.broker.backend
    if backend == "redis":
        return RedisBroker(config.broker.url, max_deliveries=config.broker.max_deliveries)
    if backend == "memory":
        return InMemoryBroker(max_deliveries=config.broker.max_deliveries)
    raise ValueError(f"Unknown broker backend: {backend}")


@lru_cache
def get_gateway() -> MessageGateway:
    return MessageGateway(
        get_broker(),
        incoming_queue=config.broker.incoming_queue,
        outgoing_queue=config.broker.outgoing_queue,
        publish_timeout=config.broker.publish_timeout,
        reconnect_delay=config.broker.reconnect_delay,
        connect_timeout=config.broker.connect_timeout,
    )


@lru_cache
def get_orchestrator() -> Orchestrator:
    return Orchestrator(
        get_registry(),
        get_job_engine(),
        get_llm_gateway(),
        get_gateway(),
        job_wait_timeout=config.jobs.wait_timeout,
        poll_interval=config.jobs.poll_interval,
        shutdown_timeout=config.shutdown_timeout,
    )


def create_analysis_instance(llm: LLMGateway) -> Optional[str]:
    """LLM instance used by worker functions; OpenAI preferred."""
    try:
        base = preferred_llm_config(
            config.llm,
            order=(LLMProvider.OPENAI, LLMProvider.ANTHROPIC, LLMProvider.AZURE_OPENAI, LLMProvider.GOOGLE),
        )
    except RuntimeError:
        logger.warning("No LLM credentials for worker functions; sentimentAnalysis will fail")
        return None
    return llm.create_instance(
        dataclasses.replace(base, temperature=0.1, max_tokens=1500, system_prompt=sentiment.SYSTEM_PROMPT)
    )


async def startup() -> Orchestrator:
    """Bring every component up in dependency order."""
    global _shutting_down
    _shutting_down = False
    configure_logging(config.log_level, config.log_file)
    asyncio.get_running_loop().set_exception_handler(handle_loop_exception)
    logger.info("Starting task relay (%s)", config.environment)

    orchestrator = get_orchestrator()
    await get_job_engine().start()
    await get_gateway().connect()
    await orchestrator.initialize(preferred_llm_config(config.llm), connect_timeout=config.broker.connect_timeout)

    llm = get_llm_gateway()
    instance_id = create_analysis_instance(llm)
    if instance_id is not None:
        get_services()["llm_instance_id"] = instance_id
    _background.append(asyncio.create_task(llm.run_cleanup(config.llm.cleanup_interval), name="llm-cleanup"))
    return orchestrator


async def shutdown() -> None:
    for task in _background:
        task.cancel()
    await asyncio.gather(*_background, return_exceptions=True)
    _background.clear()
    await get_orchestrator().shutdown()
    await get_llm_gateway().aclose()


def handle_loop_exception(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
    """Log an unhandled async failure and take the process down gracefully."""
    global _shutting_down
    logger.error(
        "Unhandled exception in event loop: %s", context.get("message"), exc_info=context.get("exception")
    )
    if _shutting_down:
        return
    _shutting_down = True
    loop.create_task(_fatal_shutdown())


async def _fatal_shutdown() -> None:
    try:
        await shutdown()
    finally:
        os.kill(os.getpid(), signal.SIGTERM)
