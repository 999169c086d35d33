"""Core data models shared across orchestrator components."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple, Union

if TYPE_CHECKING:
    from taskrelay.core.messages import IncomingMessage, OutgoingMessage


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FunctionType(str, Enum):
    """Capability class of a registered function."""

    HELPER = "helper"
    RUNNER = "runner"
    WORKER = "worker"


class JobExecutionType(str, Enum):
    """How the job engine schedules a job."""

    INSTANT = "instant"
    SCHEDULE = "schedule"
    REPEAT = "repeat"


class JobStatus(str, Enum):
    """Lifecycle states for a job managed by the job engine."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class LLMProvider(str, Enum):
    OPENAI = "openai"
    AZURE_OPENAI = "azure_openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"


class HealthState(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class FunctionParameter:
    """Typed parameter accepted by a function."""

    name: str
    type: str
    description: str = ""
    required: bool = True
    default: Any = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "type": self.type,
            "description": self.description,
            "required": self.required,
        }
        if self.default is not None:
            data["default"] = self.default
        return data


@dataclass(frozen=True, slots=True)
class FunctionDefinition:
    """Immutable descriptor of a callable unit.

    ``timeout`` is expressed in seconds.
    """

    name: str
    description: str
    type: FunctionType
    parameters: Tuple[FunctionParameter, ...] = ()
    timeout: float = 30.0
    retries: int = 3

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "type": self.type.value,
            "parameters": [param.to_dict() for param in self.parameters],
            "timeout": self.timeout,
            "retries": self.retries,
        }


@dataclass(slots=True)
class ExecutionContext:
    """Per-invocation context handed to function handlers."""

    job_id: str
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    logger: Union[logging.Logger, logging.LoggerAdapter] = field(
        default_factory=lambda: logging.getLogger("taskrelay.functions")
    )
    services: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobData:
    """Job specification. ``repeat_interval`` is in seconds."""

    function_name: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    execution_type: JobExecutionType = JobExecutionType.INSTANT
    schedule_time: Optional[datetime] = None
    repeat_interval: Optional[float] = None
    repeat_deadline: Optional[datetime] = None
    priority: int = 0
    retries: Optional[int] = None


@dataclass(slots=True)
class Job:
    """Record persisted by the job engine for each accepted job."""

    id: str
    data: JobData
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Any = None
    error: Optional[str] = None
    attempts: int = 0
    run_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "functionName": self.data.function_name,
            "parameters": self.data.parameters,
            "executionType": self.data.execution_type.value,
            "priority": self.data.priority,
            "status": self.status.value,
            "createdAt": _iso(self.created_at),
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
            "result": self.result,
            "error": self.error,
            "attempts": self.attempts,
            "runCount": self.run_count,
        }


@dataclass(frozen=True, slots=True)
class LLMConfig:
    """Provider configuration for an LLM instance."""

    provider: LLMProvider
    api_key: str
    model: str
    temperature: float = 0.7
    max_tokens: int = 2000
    system_prompt: str = ""
    endpoint: Optional[str] = None
    api_version: Optional[str] = None


@dataclass(frozen=True, slots=True)
class LLMUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True, slots=True)
class LLMResponse:
    content: str
    usage: LLMUsage = field(default_factory=LLMUsage)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class HealthStatus:
    module: str
    status: HealthState
    details: str = ""
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def healthy(self) -> bool:
        return self.status is HealthState.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "module": self.module,
            "status": self.status.value,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(slots=True)
class OrchestrationRequest:
    message: IncomingMessage
    context: ExecutionContext


@dataclass(slots=True)
class OrchestrationResponse:
    response: OutgoingMessage
    executed_jobs: List[str] = field(default_factory=list)
    status: str = "success"
    error: Optional[str] = None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
