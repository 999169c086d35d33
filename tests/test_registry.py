"""Function registry registration, validation and invocation."""
from __future__ import annotations

import asyncio
import json
import threading
import time

import pytest

from taskrelay.core.errors import (
    DuplicateFunction,
    FunctionNotFound,
    FunctionTimeout,
    InvalidFunctionDefinition,
    InvalidParameters,
)
from taskrelay.core.models import ExecutionContext, FunctionDefinition, FunctionParameter, FunctionType
from taskrelay.functions import catalog
from taskrelay.functions.registry import CallableFunction, FunctionRegistry


def _definition(name: str = "echo", **overrides) -> FunctionDefinition:
    fields = {
        "name": name,
        "description": "Echo parameters back",
        "type": FunctionType.HELPER,
        "parameters": (
            FunctionParameter("value", "string", "Value to echo"),
            FunctionParameter("suffix", "string", "Appended text", required=False, default="!"),
        ),
        "timeout": 1.0,
    }
    fields.update(overrides)
    return FunctionDefinition(**fields)


async def _echo(params, context):
    return f"{params['value']}{params['suffix']}"


def test_register_rejects_duplicates() -> None:
    registry = FunctionRegistry()
    registry.register(_definition(), _echo)

    with pytest.raises(DuplicateFunction):
        registry.register(_definition(), _echo)
    assert len(registry) == 1


def test_register_rejects_malformed_definition() -> None:
    registry = FunctionRegistry()

    with pytest.raises(InvalidFunctionDefinition):
        registry.register(_definition(description=""), _echo)
    with pytest.raises(InvalidFunctionDefinition):
        registry.register(_definition(type="helper"), _echo)
    with pytest.raises(InvalidFunctionDefinition):
        registry.register(_definition(), "not callable")
    assert "echo" not in registry


def test_load_skips_broken_factories() -> None:
    def broken() -> CallableFunction:
        raise RuntimeError("cannot build")

    def invalid() -> CallableFunction:
        return CallableFunction(definition=_definition("bad", timeout=0), handler=_echo)

    registry = FunctionRegistry()
    loaded = registry.load([*catalog.BUILTIN_FUNCTIONS, broken, invalid, catalog.BUILTIN_FUNCTIONS[0]])

    assert loaded == 4
    assert {func.name for func in registry.list_functions()} == {
        "mathUtils",
        "stringUtils",
        "timer",
        "sentimentAnalysis",
    }


def test_reload_replaces_function_set() -> None:
    registry = FunctionRegistry()
    registry.load(catalog.BUILTIN_FUNCTIONS)

    count = registry.reload([lambda: CallableFunction(definition=_definition(), handler=_echo)])

    assert count == 1
    assert registry.lookup("mathUtils") is None
    assert registry.lookup("echo") is not None


def test_export_definitions_is_json_ready(registry: FunctionRegistry) -> None:
    exported = json.loads(registry.export_json())
    timer = next(item for item in exported if item["name"] == "timer")

    assert timer["type"] == "runner"
    assert timer["parameters"][1] == {
        "name": "message",
        "type": "string",
        "description": "Optional message to include in the response",
        "required": False,
        "default": "Timer completed",
    }
    assert [func.name for func in registry.by_type(FunctionType.WORKER)] == ["sentimentAnalysis"]


def test_health_counts_by_type(registry: FunctionRegistry) -> None:
    status = registry.health_status()

    assert status.healthy
    assert status.details == "Total: 4, Helper: 2, Runner: 1, Worker: 1"


@pytest.mark.anyio
async def test_invoke_fills_defaults() -> None:
    registry = FunctionRegistry()
    registry.register(_definition(), _echo)

    result = await registry.invoke("echo", {"value": "hi"}, ExecutionContext(job_id="j1"))

    assert result == "hi!"


@pytest.mark.anyio
async def test_invoke_validates_name_and_parameters() -> None:
    registry = FunctionRegistry()
    registry.register(_definition(), _echo)

    with pytest.raises(FunctionNotFound):
        await registry.invoke("missing", {}, ExecutionContext(job_id="j1"))
    with pytest.raises(InvalidParameters, match="value"):
        await registry.invoke("echo", {}, ExecutionContext(job_id="j1"))


@pytest.mark.anyio
async def test_invoke_times_out_without_waiting_for_handler() -> None:
    finished = asyncio.Event()

    async def slow(params, context):
        await asyncio.sleep(0.3)
        finished.set()
        return "late"

    registry = FunctionRegistry()
    registry.register(_definition("slow", timeout=0.05), slow)

    started = time.monotonic()
    with pytest.raises(FunctionTimeout):
        await registry.invoke("slow", {"value": "x"}, ExecutionContext(job_id="j1"))
    elapsed = time.monotonic() - started

    assert elapsed < 0.25
    # the handler is not killed; it finishes in the background
    await asyncio.wait_for(finished.wait(), timeout=1.0)


@pytest.mark.anyio
async def test_sync_handlers_run_off_the_event_loop() -> None:
    loop_thread = threading.get_ident()

    def blocking(params, context):
        return threading.get_ident()

    registry = FunctionRegistry()
    registry.register(_definition("blocking"), blocking)

    handler_thread = await registry.invoke("blocking", {"value": "x"}, ExecutionContext(job_id="j1"))

    assert handler_thread != loop_thread
