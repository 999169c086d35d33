"""Parsing of the model's structured decision.

``parse_decision`` is the single tolerant boundary between free-form model
text and the orchestrator: it never raises, and anything it cannot make sense
of becomes a ``direct_response`` asking the user to be more specific.
"""
from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from taskrelay.core.models import JobData, JobExecutionType
from taskrelay.core.text import extract_json_object

logger = logging.getLogger(__name__)

FALLBACK_MESSAGE = "I understand your message, but I need more specific instructions to help you effectively."


class Action(str, Enum):
    EXECUTE_FUNCTION = "execute_function"
    CANCEL_JOB = "cancel_job"
    GET_STATUS = "get_status"
    DIRECT_RESPONSE = "direct_response"


class Decision(BaseModel):
    """Action chosen by the model. ``repeat_interval`` is in milliseconds."""

    model_config = ConfigDict(extra="ignore")

    action: Action
    function_name: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    execution_type: JobExecutionType = JobExecutionType.INSTANT
    schedule_time: Optional[datetime] = None
    repeat_interval: Optional[float] = Field(default=None, gt=0)
    repeat_deadline: Optional[datetime] = None
    job_id: Optional[str] = None
    response_message: Optional[str] = None

    @field_validator("action", mode="before")
    @classmethod
    def _known_action(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
            try:
                return Action(value)
            except ValueError:
                logger.warning("Unknown action %r, treating as direct_response", value)
                return Action.DIRECT_RESPONSE
        return value

    @field_validator("execution_type", mode="before")
    @classmethod
    def _lower_execution_type(cls, value: Any) -> Any:
        if value is None:
            return JobExecutionType.INSTANT
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("parameters", mode="before")
    @classmethod
    def _empty_parameters(cls, value: Any) -> Any:
        return {} if value is None else value

    def to_job_data(self) -> JobData:
        if not self.function_name:
            raise ValueError("Function name is required for execute_function action")
        return JobData(
            function_name=self.function_name,
            parameters=dict(self.parameters),
            execution_type=self.execution_type,
            schedule_time=self.schedule_time,
            repeat_interval=self.repeat_interval / 1000.0 if self.repeat_interval else None,
            repeat_deadline=self.repeat_deadline,
        )


def fallback_decision() -> Decision:
    return Decision(action=Action.DIRECT_RESPONSE, response_message=FALLBACK_MESSAGE)


def parse_decision(raw: str) -> Decision:
    payload = extract_json_object(raw or "")
    if payload is None:
        logger.error("No JSON object found in model reply: %.200s", raw)
        return fallback_decision()
    if not payload.get("action"):
        logger.error("Model decision is missing an action: %s", payload)
        return fallback_decision()
    try:
        return Decision.model_validate(payload)
    except ValidationError as exc:
        logger.error("Model decision failed validation: %s", exc)
        return fallback_decision()
