"""Exception hierarchy shared by the orchestrator components.

``retryable`` tells the job engine whether a failed attempt is worth another
delivery. Validation-type errors never are.
"""
from __future__ import annotations


class TaskRelayError(Exception):
    """Base exception for taskrelay."""

    retryable = True


class DuplicateFunction(TaskRelayError):
    retryable = False


class InvalidFunctionDefinition(TaskRelayError):
    retryable = False


class FunctionNotFound(TaskRelayError):
    retryable = False

    def __init__(self, name: str) -> None:
        super().__init__(f"Function {name} not found")
        self.name = name


class InvalidParameters(TaskRelayError):
    retryable = False


class FunctionTimeout(TaskRelayError):
    """A handler did not finish within its declared timeout."""

    def __init__(self, name: str, timeout: float) -> None:
        super().__init__(f"Function {name} timed out after {timeout:g}s")
        self.name = name
        self.timeout = timeout


class UnsupportedProvider(TaskRelayError):
    retryable = False


class InstanceNotFound(TaskRelayError):
    retryable = False

    def __init__(self, instance_id: str) -> None:
        super().__init__(f"LLM instance not found: {instance_id}")
        self.instance_id = instance_id


class ProviderError(TaskRelayError):
    """The underlying model provider call failed."""


class InvalidSchedule(TaskRelayError):
    retryable = False


class NotRepeatable(TaskRelayError):
    retryable = False


class JobNotFound(TaskRelayError):
    retryable = False

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class JobFailed(TaskRelayError):
    def __init__(self, job_id: str, reason: str) -> None:
        super().__init__(reason or "Job failed")
        self.job_id = job_id


class JobWaitTimeout(TaskRelayError):
    """An instant job did not reach a terminal state in time."""

    def __init__(self, job_id: str, timeout: float) -> None:
        super().__init__(f"Job execution timeout: {job_id} still running after {timeout:g}s")
        self.job_id = job_id
        self.timeout = timeout


class MessageValidationError(TaskRelayError):
    retryable = False


class TransportError(TaskRelayError):
    """Broker-level failure."""


class BrokerUnavailable(TransportError):
    pass


class PublishTimeout(TransportError):
    def __init__(self, message_id: str, timeout: float) -> None:
        super().__init__(f"Message send timeout: {message_id} not confirmed within {timeout:g}s")
        self.message_id = message_id
        self.timeout = timeout
