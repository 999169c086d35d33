"""Built-in function handlers."""
from __future__ import annotations

import pytest

from taskrelay.core.models import ExecutionContext
from taskrelay.functions.registry import FunctionRegistry
from taskrelay.services.llm_gateway import LLMGateway


def _context(**services) -> ExecutionContext:
    return ExecutionContext(job_id="job-1", services=services)


@pytest.mark.anyio
async def test_math_average_rounds_and_reports_integers(registry: FunctionRegistry) -> None:
    result = await registry.invoke(
        "mathUtils", {"numbers": [10, 20, 30, 45, 55], "operation": "average"}, _context()
    )

    assert result == {"operation": "average", "input": [10, 20, 30, 45, 55], "result": 32, "count": 5}


@pytest.mark.anyio
@pytest.mark.parametrize(
    "operation, numbers, expected",
    [
        ("sum", [1, 2, 3.5], 6.5),
        ("min", [4, -2, 9], -2),
        ("max", ["4", "11"], 11),
        ("median", [5, 1, 3, 2], 2.5),
        ("average", [1, 2, 2], 1.67),
        ("factorial", [5], 120),
    ],
)
async def test_math_operations(registry: FunctionRegistry, operation, numbers, expected) -> None:
    result = await registry.invoke("mathUtils", {"numbers": numbers, "operation": operation}, _context())

    assert result["result"] == expected


@pytest.mark.anyio
async def test_math_rejects_bad_input(registry: FunctionRegistry) -> None:
    with pytest.raises(ValueError, match="limited"):
        await registry.invoke("mathUtils", {"numbers": [21], "operation": "factorial"}, _context())
    with pytest.raises(ValueError, match="Unsupported operation"):
        await registry.invoke("mathUtils", {"numbers": [1], "operation": "cube"}, _context())
    with pytest.raises(ValueError, match="Invalid number"):
        await registry.invoke("mathUtils", {"numbers": [1, "x"], "operation": "sum"}, _context())


@pytest.mark.anyio
async def test_string_operations(registry: FunctionRegistry) -> None:
    upper = await registry.invoke("stringUtils", {"text": "hello world", "operation": "uppercase"}, _context())
    words = await registry.invoke("stringUtils", {"text": "hello big world", "operation": "wordCount"}, _context())

    assert upper == {"original": "hello world", "result": "HELLO WORLD", "operation": "uppercase"}
    assert words["result"] == 3


@pytest.mark.anyio
async def test_timer_reports_elapsed_time(registry: FunctionRegistry) -> None:
    result = await registry.invoke("timer", {"duration": 20}, _context())

    assert result["message"] == "Timer completed"
    assert result["requestedDuration"] == 20
    assert result["actualDuration"] >= 15
    assert result["jobId"] == "job-1"


@pytest.mark.anyio
async def test_timer_rejects_excessive_duration(registry: FunctionRegistry) -> None:
    with pytest.raises(ValueError, match="cannot exceed"):
        await registry.invoke("timer", {"duration": 300_001}, _context())


@pytest.mark.anyio
async def test_sentiment_uses_injected_llm(registry: FunctionRegistry, llm: LLMGateway, llm_client, llm_config) -> None:
    instance_id = llm.create_instance(llm_config)
    llm_client.replies.append(
        'Sure! {"sentiment": "positive", "score": 0.9, "confidence": 0.95, "emotions": {"joy": 0.9}}'
    )

    result = await registry.invoke(
        "sentimentAnalysis",
        {"text": "I love it", "includeEmotions": False},
        _context(llm=llm, llm_instance_id=instance_id),
    )

    assert result["sentiment"] == "positive"
    assert "emotions" not in result
    assert result["textLength"] == 9
    assert result["tokensUsed"] == 20
    assert "I love it" in llm_client.prompts[0]


@pytest.mark.anyio
async def test_sentiment_requires_llm_service(registry: FunctionRegistry) -> None:
    with pytest.raises(RuntimeError, match="No LLM instance"):
        await registry.invoke("sentimentAnalysis", {"text": "meh"}, _context())
