"""Tool registry: definitions, schema validation, and dispatch."""
from __future__ import annotations

import asyncio
import inspect
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable

from jsonschema import Draft7Validator
from jsonschema.exceptions import best_match

from agent_runtime.agent.messages import ToolCall, ToolResult
from agent_runtime.agent.providers.base import ToolSchema
from agent_runtime.observability.logging import get_runtime_logger

logger = get_runtime_logger(__name__)

DEFAULT_OUTPUT_LIMIT = 50_000


class ToolExecutionError(Exception):
    """Raised by handlers; the message is returned to the model as-is."""


class Sensitivity(str, Enum):
    SAFE = "safe"
    SENSITIVE = "sensitive"


class AgentMode(str, Enum):
    BUILDER = "builder"
    PLANNER = "planner"
    CHAT = "chat"


ALL_MODES = frozenset(AgentMode)


@dataclass(frozen=True, slots=True)
class ToolContext:
    workspace_root: Path | None
    request_id: str = ""
    output_limit: int = DEFAULT_OUTPUT_LIMIT


@dataclass(slots=True)
class ToolDef:
    name: str
    description: str
    input_schema: dict
    handler: Callable[[dict[str, Any], ToolContext], Any]
    sensitivity: Sensitivity = Sensitivity.SAFE
    path_arguments: tuple[str, ...] = ()
    modes: frozenset[AgentMode] = ALL_MODES

    def to_schema(self) -> ToolSchema:
        return ToolSchema(name=self.name, description=self.description, input_schema=self.input_schema)


def truncate_output(output: str, limit: int) -> str:
    if limit <= 0 or len(output) <= limit:
        return output
    return f"{output[:limit]}\n... (output truncated, {len(output)} characters total)"


class ToolRegistry:
    def __init__(self, tools: Iterable[ToolDef] = ()) -> None:
        self._tools: dict[str, ToolDef] = {}
        self._validators: dict[str, Draft7Validator] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: ToolDef) -> None:
        Draft7Validator.check_schema(tool.input_schema)
        self._tools[tool.name] = tool
        self._validators[tool.name] = Draft7Validator(tool.input_schema)

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)
        self._validators.pop(name, None)

    def get(self, name: str) -> ToolDef | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> list[str]:
        return list(self._tools)

    def for_mode(self, mode: AgentMode | str) -> list[ToolDef]:
        mode = AgentMode(mode)
        return [td for td in self._tools.values() if mode in td.modes]

    def by_names(self, names: Iterable[str]) -> list[ToolDef]:
        return [self._tools[name] for name in names if name in self._tools]

    def to_schemas(self, tools: Iterable[ToolDef] | None = None) -> list[ToolSchema]:
        return [td.to_schema() for td in (self._tools.values() if tools is None else tools)]

    def check(self, call: ToolCall, *, allowed: frozenset[str] | None = None) -> str | None:
        """Return why ``call`` cannot run, or None when it can."""
        td = self._tools.get(call.name)
        if td is None or (allowed is not None and call.name not in allowed):
            return f"Tool not found: {call.name}"
        error = best_match(self._validators[call.name].iter_errors(call.arguments))
        if error is not None:
            location = ".".join(str(part) for part in error.absolute_path)
            where = f" at '{location}'" if location else ""
            return f"Invalid arguments for {call.name}{where}: {error.message}"
        return None

    async def execute(
        self,
        call: ToolCall,
        context: ToolContext,
        *,
        allowed: frozenset[str] | None = None,
    ) -> ToolResult:
        started = time.monotonic()
        problem = self.check(call, allowed=allowed)
        if problem is not None:
            return self._finish(call, context, False, problem, started)

        td = self._tools[call.name]
        try:
            if inspect.iscoroutinefunction(td.handler):
                result = await td.handler(call.arguments, context)
            else:
                result = await asyncio.to_thread(td.handler, call.arguments, context)
        except ToolExecutionError as exc:
            return self._finish(call, context, False, str(exc), started)
        except Exception as exc:
            return self._finish(call, context, False, f"Error executing {call.name}: {exc}", started)

        if isinstance(result, str):
            output = result
        else:
            output = json.dumps(result, ensure_ascii=False, default=str)
        return self._finish(call, context, True, output, started)

    def _finish(self, call: ToolCall, context: ToolContext, success: bool, output: str, started: float) -> ToolResult:
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "tool finished",
            extra={
                "request_id": context.request_id or None,
                "tool_name": call.name,
                "tool_call_id": call.id,
                "duration_ms": duration_ms,
                "outcome": "success" if success else "failure",
            },
        )
        return ToolResult(
            tool_call_id=call.id,
            tool_name=call.name,
            success=success,
            output=truncate_output(output, context.output_limit),
            duration_ms=duration_ms,
        )
