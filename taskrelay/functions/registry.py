"""Registry of callable functions available to the orchestrator."""
from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from taskrelay.core.errors import (
    DuplicateFunction,
    FunctionNotFound,
    FunctionTimeout,
    InvalidFunctionDefinition,
    InvalidParameters,
)
from taskrelay.core.models import (
    ExecutionContext,
    FunctionDefinition,
    FunctionParameter,
    FunctionType,
    HealthState,
    HealthStatus,
)

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any], ExecutionContext], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True, slots=True)
class CallableFunction:
    """A definition paired with its executable handler."""

    definition: FunctionDefinition
    handler: Handler

    @property
    def name(self) -> str:
        return self.definition.name


FunctionFactory = Callable[[], CallableFunction]


def validate_definition(definition: Any, handler: Any) -> None:
    """Raise ``InvalidFunctionDefinition`` when the pair is malformed."""
    if not isinstance(definition, FunctionDefinition):
        raise InvalidFunctionDefinition(f"Expected FunctionDefinition, got {type(definition).__name__}")
    if not isinstance(definition.name, str) or not definition.name.strip():
        raise InvalidFunctionDefinition("Function name must be a non-empty string")
    if not isinstance(definition.description, str) or not definition.description.strip():
        raise InvalidFunctionDefinition(f"Function {definition.name} needs a description")
    if not isinstance(definition.type, FunctionType):
        raise InvalidFunctionDefinition(f"Function {definition.name} has invalid type {definition.type!r}")
    if not isinstance(definition.parameters, (tuple, list)):
        raise InvalidFunctionDefinition(f"Function {definition.name} parameters must be a sequence")
    seen = set()
    for param in definition.parameters:
        if not isinstance(param, FunctionParameter) or not param.name:
            raise InvalidFunctionDefinition(f"Function {definition.name} has a malformed parameter")
        if param.name in seen:
            raise InvalidFunctionDefinition(f"Function {definition.name} repeats parameter {param.name}")
        seen.add(param.name)
    if definition.timeout <= 0:
        raise InvalidFunctionDefinition(f"Function {definition.name} timeout must be positive")
    if definition.retries < 0:
        raise InvalidFunctionDefinition(f"Function {definition.name} retries cannot be negative")
    if not callable(handler):
        raise InvalidFunctionDefinition(f"Function {definition.name} handler is not callable")


class FunctionRegistry:
    """Holds validated functions keyed by unique name."""

    def __init__(self) -> None:
        self._functions: Dict[str, CallableFunction] = {}

    def __len__(self) -> int:
        return len(self._functions)

    def __contains__(self, name: object) -> bool:
        return name in self._functions

    def register(self, definition: FunctionDefinition, handler: Handler) -> CallableFunction:
        validate_definition(definition, handler)
        if definition.name in self._functions:
            raise DuplicateFunction(f"Function {definition.name} is already registered")
        func = CallableFunction(definition=definition, handler=handler)
        self._functions[definition.name] = func
        logger.info("Registered %s function: %s", definition.type.value, definition.name)
        return func

    def unregister(self, name: str) -> bool:
        removed = self._functions.pop(name, None) is not None
        if removed:
            logger.info("Removed function: %s", name)
        return removed

    def load(self, factories: Iterable[FunctionFactory]) -> int:
        """Register functions built by ``factories``; a malformed one is logged and skipped."""
        loaded = 0
        for func in self._build_all(factories, self._functions):
            self._functions[func.name] = func
            loaded += 1
        logger.info("Loaded %d functions (%d total)", loaded, len(self._functions))
        return loaded

    def reload(self, factories: Iterable[FunctionFactory]) -> int:
        """Replace the whole function set at once."""
        fresh: Dict[str, CallableFunction] = {}
        for func in self._build_all(factories, fresh):
            fresh[func.name] = func
        self._functions = fresh
        logger.info("Reloaded %d functions", len(fresh))
        return len(fresh)

    @staticmethod
    def _build_all(
        factories: Iterable[FunctionFactory], existing: Dict[str, CallableFunction]
    ) -> List[CallableFunction]:
        built: List[CallableFunction] = []
        names = set(existing)
        for factory in factories:
            try:
                func = factory()
                validate_definition(func.definition, func.handler)
                if func.name in names:
                    raise DuplicateFunction(f"Function {func.name} is already registered")
            except Exception as exc:  # noqa: BLE001
                logger.error("Skipping function from %r: %s", factory, exc)
                continue
            names.add(func.name)
            built.append(func)
        return built

    def lookup(self, name: str) -> Optional[CallableFunction]:
        return self._functions.get(name)

    def list_functions(self) -> List[CallableFunction]:
        return list(self._functions.values())

    def by_type(self, kind: FunctionType) -> List[CallableFunction]:
        return [func for func in self._functions.values() if func.definition.type is kind]

    def definitions(self) -> List[FunctionDefinition]:
        return [func.definition for func in self._functions.values()]

    def export_definitions(self) -> List[Dict[str, Any]]:
        return [definition.to_dict() for definition in self.definitions()]

    def export_json(self) -> str:
        return json.dumps(self.export_definitions(), indent=2)

    def validate_call(self, name: str, parameters: Dict[str, Any]) -> CallableFunction:
        func = self._functions.get(name)
        if func is None:
            raise FunctionNotFound(name)
        missing = [
            param.name
            for param in func.definition.parameters
            if param.required and param.name not in parameters
        ]
        if missing:
            raise InvalidParameters(
                f"Missing required parameter(s) for function {name}: {', '.join(missing)}"
            )
        return func

    async def invoke(self, name: str, parameters: Dict[str, Any], context: ExecutionContext) -> Any:
        """Run a function, racing the handler against its declared timeout.

        A timed-out handler keeps running in the background; its eventual
        result is discarded.
        """
        func = self.validate_call(name, parameters)
        params = {
            param.name: param.default
            for param in func.definition.parameters
            if not param.required and param.default is not None
        }
        params.update(parameters)

        logger.info("Executing function %s", name)
        task = asyncio.ensure_future(self._call(func.handler, params, context))
        timeout = func.definition.timeout
        try:
            result = await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            task.add_done_callback(_discard_late_result(name))
            logger.error("Function %s timed out after %ss", name, timeout)
            raise FunctionTimeout(name, timeout) from None
        except asyncio.CancelledError:
            task.add_done_callback(_discard_late_result(name))
            raise
        logger.info("Function %s executed successfully", name)
        return result

    @staticmethod
    async def _call(handler: Handler, params: Dict[str, Any], context: ExecutionContext) -> Any:
        if inspect.iscoroutinefunction(handler):
            return await handler(params, context)
        result = await asyncio.to_thread(handler, params, context)
        if inspect.isawaitable(result):
            return await result
        return result

    def health_status(self) -> HealthStatus:
        counts = Counter(func.definition.type for func in self._functions.values())
        return HealthStatus(
            module="FunctionRegistry",
            status=HealthState.HEALTHY,
            details=(
                f"Total: {len(self._functions)}, Helper: {counts[FunctionType.HELPER]}, "
                f"Runner: {counts[FunctionType.RUNNER]}, Worker: {counts[FunctionType.WORKER]}"
            ),
        )


def _discard_late_result(name: str) -> Callable[["asyncio.Future[Any]"], None]:
    def _callback(task: "asyncio.Future[Any]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Late failure from timed-out function %s discarded: %s", name, exc)
        else:
            logger.info("Late result from timed-out function %s discarded", name)

    return _callback
