"""Basic arithmetic and statistics over a list of numbers."""
from __future__ import annotations

import math
import statistics
from typing import Any, Dict, List

from taskrelay.core.models import ExecutionContext, FunctionDefinition, FunctionParameter, FunctionType
from taskrelay.functions.registry import CallableFunction

OPERATIONS = ("sum", "average", "min", "max", "median", "factorial")

definition = FunctionDefinition(
    name="mathUtils",
    description="Mathematical utility functions for basic calculations, statistics, and number operations",
    type=FunctionType.HELPER,
    parameters=(
        FunctionParameter("numbers", "array", "Array of numbers to process"),
        FunctionParameter(
            "operation",
            "string",
            "Math operation: sum, average, min, max, median, or factorial (for single number)",
        ),
    ),
    timeout=10.0,
)


def _coerce(numbers: Any) -> List[float]:
    if not isinstance(numbers, (list, tuple)):
        raise ValueError("Numbers parameter is required and must be an array")
    values = []
    for item in numbers:
        try:
            value = float(item)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid number: {item}") from None
        if math.isnan(value):
            raise ValueError(f"Invalid number: {item}")
        values.append(int(value) if value.is_integer() else value)
    return values


async def handler(params: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
    operation = params.get("operation")
    if not isinstance(operation, str) or not operation:
        raise ValueError("Operation parameter is required and must be a string")
    values = _coerce(params.get("numbers"))
    op = operation.lower()
    context.logger.info("Processing math operation %s over %d numbers", op, len(values))

    if op == "factorial":
        if len(values) != 1:
            raise ValueError("Factorial operation requires exactly one number")
        number = values[0]
        if number < 0 or not float(number).is_integer():
            raise ValueError("Factorial requires a non-negative integer")
        if number > 20:
            raise ValueError("Factorial calculation limited to numbers <= 20 to prevent overflow")
        return {"operation": "factorial", "input": int(number), "result": math.factorial(int(number))}

    if op not in OPERATIONS:
        raise ValueError(f"Unsupported operation: {operation}. Supported operations: {', '.join(OPERATIONS)}")
    if op != "sum" and not values:
        raise ValueError(f"Cannot calculate {op} of empty array")

    if op == "sum":
        result, label = sum(values), "sum"
    elif op == "average":
        result, label = round(sum(values) / len(values), 2), "average"
    elif op == "min":
        result, label = min(values), "minimum"
    elif op == "max":
        result, label = max(values), "maximum"
    else:
        result, label = statistics.median(values), "median"

    if isinstance(result, float) and result.is_integer():
        result = int(result)
    return {"operation": label, "input": values, "result": result, "count": len(values)}


def create() -> CallableFunction:
    return CallableFunction(definition=definition, handler=handler)
