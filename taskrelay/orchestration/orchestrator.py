"""Turns inbound messages into model decisions, jobs and replies."""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from taskrelay.core.errors import (
    FunctionNotFound,
    JobFailed,
    JobNotFound,
    JobWaitTimeout,
    PublishTimeout,
    TaskRelayError,
)
from taskrelay.core.messages import RESPONSE_FLAG, IncomingMessage, OutgoingMessage, create_outgoing_message
from taskrelay.core.models import (
    ExecutionContext,
    HealthState,
    HealthStatus,
    JobExecutionType,
    JobStatus,
    LLMConfig,
    OrchestrationRequest,
    OrchestrationResponse,
    utcnow,
)
from taskrelay.functions.registry import FunctionRegistry
from taskrelay.jobs.engine import JobEngine
from taskrelay.messaging.gateway import ORCHESTRATION_HANDLER, MessageGateway
from taskrelay.orchestration.decision import Action, Decision, parse_decision
from taskrelay.orchestration.prompts import ORCHESTRATION_SYSTEM_PROMPT, analysis_prompt, summary_prompt
from taskrelay.services.llm_gateway import LLMGateway

logger = logging.getLogger(__name__)

DECISION_TEMPERATURE = 0.3
DECISION_MAX_TOKENS = 4000


class Orchestrator:
    """Coordinates the registry, job engine, LLM gateway and message gateway."""

    def __init__(
        self,
        registry: FunctionRegistry,
        jobs: JobEngine,
        llm: LLMGateway,
        gateway: MessageGateway,
        *,
        job_wait_timeout: float = 30.0,
        poll_interval: float = 1.0,
        shutdown_timeout: float = 30.0,
    ) -> None:
        self._registry = registry
        self._jobs = jobs
        self._llm = llm
        self._gateway = gateway
        self._job_wait_timeout = job_wait_timeout
        self._poll_interval = poll_interval
        self._shutdown_timeout = shutdown_timeout
        self._active: Dict[str, OrchestrationRequest] = {}
        self._instance_id: Optional[str] = None
        self._initialized = False

    @property
    def registry(self) -> FunctionRegistry:
        return self._registry

    @property
    def jobs(self) -> JobEngine:
        return self._jobs

    @property
    def llm(self) -> LLMGateway:
        return self._llm

    @property
    def gateway(self) -> MessageGateway:
        return self._gateway

    @property
    def decision_instance_id(self) -> Optional[str]:
        return self._instance_id

    @property
    def active_requests(self) -> int:
        return len(self._active)

    def create_decision_instance(self, config: LLMConfig) -> str:
        """Create the LLM instance used for decisions and summaries."""
        self._instance_id = self._llm.create_instance(
            dataclasses.replace(
                config,
                temperature=DECISION_TEMPERATURE,
                max_tokens=DECISION_MAX_TOKENS,
                system_prompt=ORCHESTRATION_SYSTEM_PROMPT,
            )
        )
        return self._instance_id

    async def initialize(self, config: Optional[LLMConfig] = None, connect_timeout: Optional[float] = None) -> None:
        logger.info("Initializing orchestrator...")
        if config is not None:
            self.create_decision_instance(config)
        if self._instance_id is None:
            raise RuntimeError("Orchestrator needs a decision LLM instance before it can initialize")

        await self._gateway.wait_for_connection(timeout=connect_timeout)
        self._gateway.register_handler(ORCHESTRATION_HANDLER, self.handle_message)
        await self._gateway.start_listening()
        self._initialized = True
        logger.info("Orchestrator initialized successfully")

    async def handle_message(self, message: IncomingMessage) -> None:
        """Process one inbound request and publish exactly one reply.

        Only ``PublishTimeout`` (or another transport failure while replying)
        escapes; every other failure becomes an apology message.
        """
        if message.metadata.get(RESPONSE_FLAG):
            logger.info("Skipping response message %s", message.id)
            return
        if message.id in self._active:
            logger.warning("Message already being processed: %s", message.id)
            return

        request_id = str(uuid.uuid4())
        request = OrchestrationRequest(
            message=message,
            context=ExecutionContext(
                job_id=request_id,
                user_id=message.metadata.get("userId"),
                session_id=message.metadata.get("sessionId"),
                metadata={"requestId": request_id, "messageId": message.id},
                logger=logging.LoggerAdapter(logger, {"request_id": request_id}),
            ),
        )
        self._active[message.id] = request
        logger.info("Processing incoming message %s (request %s)", message.id, request_id)
        try:
            try:
                response = await self.orchestrate(request)
            except PublishTimeout:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.error("Error processing message %s: %s", message.id, exc, exc_info=True)
                response = OrchestrationResponse(
                    response=self._error_reply(message, exc, requestId=request_id),
                    status="failure",
                    error=str(exc),
                )
            await self._gateway.send_message(response.response)
            logger.info("Message processed: %s (%s)", message.id, response.status)
        finally:
            self._active.pop(message.id, None)

    async def orchestrate(self, request: OrchestrationRequest) -> OrchestrationResponse:
        """Decide on an action for the request and carry it out."""
        message = request.message
        decision = await self.decide(message.content)
        logger.info("Decision for %s: %s", message.id, decision.action.value)

        text, executed_jobs = await self.execute_decision(decision, request)
        reply = create_outgoing_message(
            text,
            {
                RESPONSE_FLAG: True,
                "originalMessageId": message.id,
                "action": decision.action.value,
                "executedJobs": executed_jobs,
            },
        )
        return OrchestrationResponse(response=reply, executed_jobs=executed_jobs)

    async def decide(self, content: str) -> Decision:
        if self._instance_id is None:
            raise RuntimeError("No decision LLM instance configured")
        prompt = analysis_prompt(content, self._registry.export_definitions())
        reply = await self._llm.generate_response(self._instance_id, prompt)
        if not reply.content:
            raise RuntimeError("Invalid response from LLM")
        return parse_decision(reply.content)

    async def execute_decision(self, decision: Decision, request: OrchestrationRequest) -> Tuple[str, List[str]]:
        if decision.action is Action.EXECUTE_FUNCTION:
            return await self._execute_function(decision, request)
        if decision.action is Action.CANCEL_JOB:
            return await self._cancel_job(decision), []
        if decision.action is Action.GET_STATUS:
            return await self._status_report(), []
        return decision.response_message or "I've processed your message.", []

    async def _execute_function(self, decision: Decision, request: OrchestrationRequest) -> Tuple[str, List[str]]:
        executed: List[str] = []
        try:
            job_data = decision.to_job_data()
            if self._registry.lookup(job_data.function_name) is None:
                raise FunctionNotFound(job_data.function_name)

            job_id = await self._jobs.add_job(job_data)
            executed.append(job_id)
            logger.info("Job queued: %s (%s, %s)", job_id, job_data.function_name, job_data.execution_type.value)

            if job_data.execution_type is not JobExecutionType.INSTANT:
                when = "at the specified time" if job_data.execution_type is JobExecutionType.SCHEDULE else "repeatedly"
                return (
                    decision.response_message
                    or f"I've scheduled the {job_data.function_name} function to run {when}. Job ID: {job_id}",
                    executed,
                )

            result = await self.wait_for_job(job_id)
            text = await self._summarise(
                request.message.content, job_data.function_name, result, decision.response_message
            )
            return text, executed
        except (TaskRelayError, ValueError) as exc:
            logger.error("Error executing function decision: %s", exc)
            return f"I encountered an error while executing the requested function: {exc}", executed

    async def wait_for_job(self, job_id: str, timeout: Optional[float] = None) -> Any:
        """Poll the job until it is terminal or the wall-clock cap passes."""
        timeout = self._job_wait_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            job = self._jobs.get_job(job_id)
            if job is None:
                raise JobNotFound(job_id)
            if job.status is JobStatus.COMPLETED:
                return job.result
            if job.status is JobStatus.FAILED:
                raise JobFailed(job_id, job.error or "Job failed")
            if job.status is JobStatus.CANCELLED:
                raise JobFailed(job_id, "Job was cancelled")
            if loop.time() >= deadline:
                raise JobWaitTimeout(job_id, timeout)
            await asyncio.sleep(min(self._poll_interval, max(0.0, deadline - loop.time())))

    async def _summarise(self, content: str, function_name: str, result: Any, suggested: Optional[str]) -> str:
        prompt = summary_prompt(content, function_name, result, suggested)
        try:
            reply = await self._llm.generate_response(self._instance_id, prompt)
        except TaskRelayError as exc:
            logger.error("Error generating contextual response: %s", exc)
            return suggested or f"I've completed the {function_name} function successfully."
        return reply.content or suggested or f"I've completed the {function_name} function successfully."

    async def _cancel_job(self, decision: Decision) -> str:
        if not decision.job_id:
            return "Error cancelling job: Job ID is required for cancel_job action"
        if await self._jobs.cancel_job(decision.job_id):
            return f"Job {decision.job_id} has been cancelled successfully."
        return f"Could not cancel job {decision.job_id}. It may not exist or already be completed."

    async def _status_report(self) -> str:
        stats = await self._jobs.get_queue_stats()
        statuses = self.all_health_statuses()
        healthy = sum(1 for status in statuses if status.healthy)
        return (
            "System Status:\n"
            f"- Jobs: {stats['active']} active, {stats['waiting']} waiting, {stats['completed']} completed\n"
            f"- Functions: {len(self._registry)} loaded\n"
            f"- LLM Instances: {len(self._llm.list_instances())} available\n"
            f"- Modules: {healthy}/{len(statuses)} healthy"
        )

    @staticmethod
    def _error_reply(message: IncomingMessage, exc: BaseException, **extra: Any) -> OutgoingMessage:
        return create_outgoing_message(
            f"I apologize, but I encountered an error while processing your request: {exc}",
            {
                RESPONSE_FLAG: True,
                "error": True,
                "originalMessageId": message.id,
                "errorTimestamp": utcnow().isoformat(),
                **extra,
            },
        )

    def health_status(self) -> HealthStatus:
        return HealthStatus(
            module="Orchestrator",
            status=HealthState.HEALTHY if self._initialized else HealthState.UNHEALTHY,
            details=f"Initialized: {self._initialized}, Active requests: {len(self._active)}",
        )

    def all_health_statuses(self) -> List[HealthStatus]:
        return [
            self.health_status(),
            self._registry.health_status(),
            self._gateway.health_status(),
            self._jobs.health_status(),
            self._llm.health_status(),
        ]

    def overall_health(self) -> HealthState:
        statuses = self.all_health_statuses()
        if any(status.status is HealthState.UNHEALTHY for status in statuses):
            return HealthState.UNHEALTHY
        if all(status.healthy for status in statuses):
            return HealthState.HEALTHY
        return HealthState.UNKNOWN

    async def shutdown(self) -> None:
        """Drain in-flight requests, then stop the job engine and the transport."""
        logger.info("Shutting down orchestrator...")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._shutdown_timeout
        while self._active and loop.time() < deadline:
            await asyncio.sleep(min(1.0, max(0.0, deadline - loop.time())))
        if self._active:
            logger.warning("Shutdown timeout reached with %d requests still active", len(self._active))

        await self._jobs.shutdown()
        await self._gateway.disconnect()
        self._initialized = False
        logger.info("Orchestrator shutdown completed")
