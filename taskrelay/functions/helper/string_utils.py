"""String manipulation helpers."""
from __future__ import annotations

from typing import Any, Dict

from taskrelay.core.models import ExecutionContext, FunctionDefinition, FunctionParameter, FunctionType
from taskrelay.functions.registry import CallableFunction

definition = FunctionDefinition(
    name="stringUtils",
    description=(
        "Utility functions for string manipulation including uppercase, lowercase, "
        "reverse, and character count"
    ),
    type=FunctionType.HELPER,
    parameters=(
        FunctionParameter("text", "string", "The text to process"),
        FunctionParameter(
            "operation", "string", "Operation to perform: uppercase, lowercase, reverse, count, or wordCount"
        ),
    ),
    timeout=5.0,
)

_OPERATIONS = {
    "uppercase": ("uppercase", str.upper),
    "lowercase": ("lowercase", str.lower),
    "reverse": ("reverse", lambda text: text[::-1]),
    "count": ("character count", len),
    "wordcount": ("word count", lambda text: len(text.split())),
}


def handler(params: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
    text = params.get("text")
    operation = params.get("operation")
    if not isinstance(text, str) or not text:
        raise ValueError("Text parameter is required and must be a string")
    if not isinstance(operation, str) or not operation:
        raise ValueError("Operation parameter is required and must be a string")

    entry = _OPERATIONS.get(operation.lower())
    if entry is None:
        raise ValueError(
            f"Unsupported operation: {operation}. "
            "Supported operations: uppercase, lowercase, reverse, count, wordCount"
        )
    label, transform = entry
    context.logger.info("Processing string operation %s on %d chars", label, len(text))
    return {"original": text, "result": transform(text), "operation": label}


def create() -> CallableFunction:
    return CallableFunction(definition=definition, handler=handler)
