"""Prompt templates used by the orchestrator's decision and summary calls."""
from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

ORCHESTRATION_SYSTEM_PROMPT = """You are an AI orchestration system responsible for analyzing incoming messages and determining the appropriate function to call.

Your primary responsibilities:
1. Analyze incoming messages to understand user intent
2. Select the most appropriate function from available functions
3. Determine execution type (INSTANT, SCHEDULE, REPEAT)
4. Extract necessary parameters for function execution
5. Handle job management (cancel, status)

Available function types:
- HELPER: Utility functions for data processing
- RUNNER: Functions that can be scheduled or repeated
- WORKER: Functions that can use other LLM instances

Execution types:
- INSTANT: Execute immediately
- SCHEDULE: Execute at specified future time
- REPEAT: Execute repeatedly (only for RUNNER functions)

When responding, you must provide a JSON response with this structure:
{
  "action": "execute_function" | "cancel_job" | "get_status" | "direct_response",
  "function_name": "string (if action is execute_function)",
  "parameters": {object (if action is execute_function)},
  "execution_type": "instant" | "schedule" | "repeat" (if action is execute_function),
  "schedule_time": "ISO string (if execution_type is schedule)",
  "repeat_interval": number of milliseconds (if execution_type is repeat),
  "repeat_deadline": "ISO string (if execution_type is repeat)",
  "job_id": "string (if action is cancel_job)",
  "response_message": "string (direct response to user)"
}

Always analyze the message context and available functions before making decisions."""


def analysis_prompt(content: str, definitions: List[Dict[str, Any]]) -> str:
    catalog = json.dumps(definitions, indent=2)
    return f"""
Message to analyze: "{content}"

Available functions:
{catalog}

Analyze this message and determine the appropriate action. Consider:
1. What is the user trying to accomplish?
2. Which function can help achieve this goal?
3. What parameters are needed?
4. What execution type is most appropriate?

Respond with the JSON structure as specified in your system prompt."""


def summary_prompt(
    content: str,
    function_name: str,
    result: Any,
    suggested_response: Optional[str] = None,
) -> str:
    rendered = json.dumps(result, indent=2, default=str)
    return f"""
Original user message: "{content}"
Function executed: {function_name}
Function result: {rendered}
Suggested response: {suggested_response or "None"}

Generate a natural, helpful response to the user based on the function execution result.
Be conversational and explain what was accomplished. Keep it concise but informative."""
