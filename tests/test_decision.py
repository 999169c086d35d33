"""Tolerant parsing of model decisions."""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from taskrelay.core.models import JobExecutionType
from taskrelay.orchestration.decision import FALLBACK_MESSAGE, Action, parse_decision


def test_extracts_json_from_chatty_reply() -> None:
    raw = """Sure, here is my plan:
```json
{"action": "execute_function", "function_name": "mathUtils",
 "parameters": {"numbers": [1, 2], "operation": "sum"}, "execution_type": "INSTANT",
 "confidence": "high"}
```
Let me know if you need anything else."""

    decision = parse_decision(raw)

    assert decision.action is Action.EXECUTE_FUNCTION
    assert decision.function_name == "mathUtils"
    assert decision.parameters == {"numbers": [1, 2], "operation": "sum"}
    assert decision.execution_type is JobExecutionType.INSTANT


@pytest.mark.parametrize(
    "raw",
    [
        "I have no idea what you mean.",
        '{"function_name": "mathUtils"}',
        '{"action": ""}',
        '{"action": "execute_function", "parameters": [1, 2',
        '{"action": "execute_function", "execution_type": "weekly"}',
        "",
    ],
)
def test_unusable_replies_fall_back_to_direct_response(raw: str) -> None:
    decision = parse_decision(raw)

    assert decision.action is Action.DIRECT_RESPONSE
    assert decision.response_message == FALLBACK_MESSAGE


def test_unknown_action_is_a_direct_response() -> None:
    decision = parse_decision('{"action": "dance", "response_message": "No dancing here."}')

    assert decision.action is Action.DIRECT_RESPONSE
    assert decision.response_message == "No dancing here."


def test_repeat_interval_is_converted_to_seconds() -> None:
    decision = parse_decision(
        '{"action": "execute_function", "function_name": "timer", "parameters": null,'
        ' "execution_type": "Repeat", "repeat_interval": 60000,'
        ' "repeat_deadline": "2030-01-01T00:00:00Z"}'
    )

    job = decision.to_job_data()

    assert job.execution_type is JobExecutionType.REPEAT
    assert job.repeat_interval == 60.0
    assert job.parameters == {}
    assert job.repeat_deadline == datetime(2030, 1, 1, tzinfo=timezone.utc)


def test_schedule_time_is_parsed() -> None:
    decision = parse_decision(
        '{"action": "execute_function", "function_name": "timer", "execution_type": "schedule",'
        ' "schedule_time": "2030-06-01T12:30:00+00:00"}'
    )

    assert decision.to_job_data().schedule_time == datetime(2030, 6, 1, 12, 30, tzinfo=timezone.utc)


def test_job_data_needs_a_function_name() -> None:
    decision = parse_decision('{"action": "execute_function"}')

    with pytest.raises(ValueError, match="Function name is required"):
        decision.to_job_data()


def test_cancel_decision_keeps_job_id() -> None:
    decision = parse_decision('{"action": "cancel_job", "job_id": "abc"}')

    assert decision.action is Action.CANCEL_JOB
    assert decision.job_id == "abc"
