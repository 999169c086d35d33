"""Timer that waits for a duration and reports elapsed time."""
from __future__ import annotations

import asyncio
import time
from typing import Any, Dict

from taskrelay.core.models import (
    ExecutionContext,
    FunctionDefinition,
    FunctionParameter,
    FunctionType,
    utcnow,
)
from taskrelay.functions.registry import CallableFunction

MAX_DURATION_MS = 300_000

definition = FunctionDefinition(
    name="timer",
    description="Simple timer function that waits for a specified duration and returns elapsed time information",
    type=FunctionType.RUNNER,
    parameters=(
        FunctionParameter("duration", "number", "Duration to wait in milliseconds"),
        FunctionParameter(
            "message",
            "string",
            "Optional message to include in the response",
            required=False,
            default="Timer completed",
        ),
    ),
    timeout=MAX_DURATION_MS / 1000,
)


async def handler(params: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
    duration = params.get("duration")
    message = params.get("message") or "Timer completed"
    if isinstance(duration, bool) or not isinstance(duration, (int, float)) or duration <= 0:
        raise ValueError("Duration must be a positive number")
    if duration > MAX_DURATION_MS:
        raise ValueError(f"Duration cannot exceed {MAX_DURATION_MS}ms (5 minutes)")

    started_at = utcnow()
    start = time.monotonic()
    context.logger.info("Timer started for %sms", duration)
    await asyncio.sleep(duration / 1000)
    elapsed_ms = round((time.monotonic() - start) * 1000)

    return {
        "message": message,
        "requestedDuration": duration,
        "actualDuration": elapsed_ms,
        "startTime": started_at.isoformat(),
        "endTime": utcnow().isoformat(),
        "jobId": context.job_id,
    }


def create() -> CallableFunction:
    return CallableFunction(definition=definition, handler=handler)
