"""Configuration management for the task relay."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from taskrelay.core.models import LLMConfig, LLMProvider

load_dotenv()


def _float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


@dataclass(frozen=True)
class BrokerConfig:
    """Message broker connection and topology."""

    backend: str = "memory"
    url: str = "redis://localhost:6379/0"
    incoming_queue: str = "agent_incoming"
    outgoing_queue: str = "agent_outgoing"
    publish_timeout: float = 5.0
    reconnect_delay: float = 5.0
    connect_timeout: float = 10.0
    max_deliveries: int = 3


@dataclass(frozen=True)
class JobsConfig:
    """Job engine limits. Durations are seconds."""

    max_concurrent_jobs: int = 10
    backoff_base: float = 2.0
    max_retained_jobs: int = 150
    wait_timeout: float = 30.0
    poll_interval: float = 1.0
    default_repeat_window: float = 24 * 60 * 60.0


@dataclass(frozen=True)
class AzureOpenAIConfig:
    """Azure OpenAI service configuration."""

    api_key: str
    endpoint: str
    api_version: str = "2024-02-15-preview"
    deployment_name: str = "gpt-4"


@dataclass(frozen=True)
class LLMKeys:
    openai_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    google_api_key: Optional[str] = None
    azure_openai: Optional[AzureOpenAIConfig] = None
    max_concurrent: int = 50
    cleanup_interval: float = 3600.0


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment variables."""

    broker: BrokerConfig = field(default_factory=BrokerConfig)
    jobs: JobsConfig = field(default_factory=JobsConfig)
    llm: LLMKeys = field(default_factory=LLMKeys)
    log_level: str = "INFO"
    log_file: Optional[str] = None
    environment: str = "development"
    shutdown_timeout: float = 30.0

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables."""
        azure_key = os.getenv("AZURE_OPENAI_KEY")
        azure_endpoint = os.getenv("AZURE_OPENAI_ENDPOINT")

        azure_config = None
        if azure_key and azure_endpoint:
            azure_config = AzureOpenAIConfig(
                api_key=azure_key,
                endpoint=azure_endpoint,
                api_version=os.getenv("AZURE_OPENAI_API_VERSION", "2024-02-15-preview"),
                deployment_name=os.getenv("AZURE_OPENAI_DEPLOYMENT", "gpt-4"),
            )

        return cls(
            broker=BrokerConfig(
                backend=os.getenv("BROKER_BACKEND", "memory").lower(),
                url=os.getenv("BROKER_URL", "redis://localhost:6379/0"),
                incoming_queue=os.getenv("QUEUE_INCOMING", "agent_incoming"),
                outgoing_queue=os.getenv("QUEUE_OUTGOING", "agent_outgoing"),
                publish_timeout=_float("PUBLISH_TIMEOUT_S", 5.0),
                reconnect_delay=_float("RECONNECT_DELAY_S", 5.0),
                connect_timeout=_float("CONNECT_TIMEOUT_S", 10.0),
                max_deliveries=_int("MAX_DELIVERIES", 3),
            ),
            jobs=JobsConfig(
                max_concurrent_jobs=_int("MAX_CONCURRENT_JOBS", 10),
                backoff_base=_float("JOB_BACKOFF_S", 2.0),
                max_retained_jobs=_int("MAX_RETAINED_JOBS", 150),
                wait_timeout=_float("JOB_WAIT_TIMEOUT_S", 30.0),
                poll_interval=_float("JOB_POLL_INTERVAL_S", 1.0),
                default_repeat_window=_float("DEFAULT_REPEAT_WINDOW_S", 24 * 60 * 60.0),
            ),
            llm=LLMKeys(
                openai_api_key=os.getenv("OPENAI_API_KEY") or None,
                anthropic_api_key=os.getenv("ANTHROPIC_API_KEY") or None,
                google_api_key=os.getenv("GOOGLE_AI_API_KEY") or None,
                azure_openai=azure_config,
                max_concurrent=_int("LLM_MAX_CONCURRENT", 50),
                cleanup_interval=_float("LLM_CLEANUP_INTERVAL_S", 3600.0),
            ),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_file=os.getenv("LOG_FILE") or None,
            environment=os.getenv("ENVIRONMENT", "development"),
            shutdown_timeout=_float("SHUTDOWN_TIMEOUT_S", 30.0),
        )


DEFAULT_MODELS = {
    LLMProvider.ANTHROPIC: "claude-3-sonnet-20240229",
    LLMProvider.OPENAI: "gpt-4",
    LLMProvider.GOOGLE: "gemini-pro",
}


def preferred_llm_config(keys: LLMKeys, order: tuple = ()) -> LLMConfig:
    """Build a config for the first provider in ``order`` that has credentials."""
    order = order or (LLMProvider.ANTHROPIC, LLMProvider.OPENAI, LLMProvider.AZURE_OPENAI, LLMProvider.GOOGLE)
    for provider in order:
        if provider is LLMProvider.ANTHROPIC and keys.anthropic_api_key:
            return LLMConfig(provider=provider, api_key=keys.anthropic_api_key, model=DEFAULT_MODELS[provider])
        if provider is LLMProvider.OPENAI and keys.openai_api_key:
            return LLMConfig(provider=provider, api_key=keys.openai_api_key, model=DEFAULT_MODELS[provider])
        if provider is LLMProvider.AZURE_OPENAI and keys.azure_openai:
            azure = keys.azure_openai
            return LLMConfig(
                provider=provider,
                api_key=azure.api_key,
                model=azure.deployment_name,
                endpoint=azure.endpoint,
                api_version=azure.api_version,
            )
        if provider is LLMProvider.GOOGLE and keys.google_api_key:
            return LLMConfig(provider=provider, api_key=keys.google_api_key, model=DEFAULT_MODELS[provider])
    raise RuntimeError("No LLM API keys configured")


# Global config instance
config = Config.from_env()
