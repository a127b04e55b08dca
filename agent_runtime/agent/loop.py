"""
Streaming agent run loop.

One run = one user turn: request, stream, execute the requested tools behind the
approval gate, feed the results back, and repeat until the model answers
without tool calls, the run is aborted, or the iteration bound is reached.
Every run ends with exactly one terminal event.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, TypeVar

from agent_runtime.agent.approval import (
    DENIED_BY_ABORT,
    DENIED_BY_USER,
    ApprovalGate,
    ApprovalKind,
    ApprovalMode,
    ApprovalRequest,
)
from agent_runtime.agent.context_manager import trim_history
from agent_runtime.agent.events import (
    AgentAborted,
    AgentComplete,
    AgentError,
    IterationComplete,
    IterationStart,
    PathApprovalRequired,
    ReasoningDelta,
    TextDelta,
    Thinking,
    ToolApprovalRequired,
    ToolCallComplete,
    ToolCallDelta,
    ToolCallStart,
    ToolResultEvent,
)
from agent_runtime.agent.messages import (
    ImageAttachment,
    Role,
    ToolCall,
    ToolResult,
    UniversalMessage,
    append_tool_result,
    build_user_message,
    ensure_resolved,
    normalize,
    unresolved_tool_calls,
)
from agent_runtime.agent.provider_router import get_adapter
from agent_runtime.agent.providers.base import (
    DEFAULT_MAX_TOKENS,
    ModelConfig,
    ProviderAdapter,
    ProviderConfig,
    Usage,
    WireRequest,
)
from agent_runtime.agent.providers.sse import ToolCallAccumulator
from agent_runtime.agent.run_registry import CancellationToken, RunChannel
from agent_runtime.agent.tool_registry import AgentMode, ToolContext, ToolDef, ToolRegistry, truncate_output
from agent_runtime.agent.transport import HttpTransport
from agent_runtime.errors import error_from_exception
from agent_runtime.observability.logging import get_runtime_logger
from agent_runtime.observability.metrics import get_runtime_metrics
from agent_runtime.trace import get_current_trace_id, set_current_request_id

logger = get_runtime_logger(__name__)

ITERATION_LIMIT_REASON = "iteration limit reached"
ABORTED_BEFORE_EXECUTION = "aborted before execution"
NOT_EXECUTED_AFTER_FAILURE = "not executed: run failed"

T = TypeVar("T")


class RunStatus(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    EXECUTING_TOOLS = "executing_tools"
    COMPLETING = "completing"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass(slots=True)
class RunRequest:
    request_id: str
    message: str
    model: ModelConfig
    provider: ProviderConfig
    max_iterations: int
    history: list[Any] = field(default_factory=list)
    file_context: str | None = None
    images: tuple[ImageAttachment, ...] = ()
    tool_names: list[str] | None = None
    system_prompt: str | None = None
    agent_mode: AgentMode = AgentMode.BUILDER
    workspace_root: Path | None = None
    approval_mode: ApprovalMode | None = None
    session_id: str | None = None

    def __post_init__(self) -> None:
        if not self.request_id or not self.request_id.strip():
            raise ValueError("request_id is required")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")


@dataclass(slots=True)
class RunResponse:
    request_id: str
    status: RunStatus
    content: str
    iterations: int
    history: list[UniversalMessage]
    tool_results: list[ToolResult] = field(default_factory=list)
    error: str | None = None
    usage: Usage | None = None


@dataclass(slots=True)
class RunState:
    request: RunRequest
    status: RunStatus = RunStatus.IDLE
    iteration: int = 0
    history: list[UniversalMessage] = field(default_factory=list)
    content: str = ""
    tool_results: list[ToolResult] = field(default_factory=list)
    usage: Usage | None = None
    pending_approvals: set[str] = field(default_factory=set)

    def add_usage(self, usage: Usage) -> None:
        self.usage = usage if self.usage is None else self.usage + usage


@dataclass(slots=True)
class _Turn:
    text: str = ""
    calls: list[ToolCall] = field(default_factory=list)


async def run_until_cancelled(awaitable: Awaitable[T], token: CancellationToken) -> tuple[bool, T | None]:
    """Await ``awaitable`` unless the token trips first.

    Returns ``(True, result)`` on completion, ``(False, None)`` when cancelled;
    in that case the work is cancelled and awaited before returning.
    """
    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        waiter.cancel()
        await asyncio.wait({work})
        raise
    waiter.cancel()
    if work in done:
        return True, work.result()
    work.cancel()
    await asyncio.wait({work})
    return False, None


class AgentLoop:
    def __init__(
        self,
        *,
        transport: HttpTransport,
        tools: ToolRegistry,
        gate: ApprovalGate,
        default_approval_mode: ApprovalMode = ApprovalMode.ASK,
        tool_output_limit: int = 50_000,
        event_output_limit: int = 5_000,
    ) -> None:
        self._transport = transport
        self._tools = tools
        self._gate = gate
        self._default_approval_mode = default_approval_mode
        self._tool_output_limit = tool_output_limit
        self._event_output_limit = event_output_limit

    def resolve_tools(self, request: RunRequest) -> list[ToolDef]:
        if not request.model.supports_tools:
            return []
        if request.tool_names is not None:
            return self._tools.by_names(request.tool_names)
        return self._tools.for_mode(request.agent_mode)

    async def run(self, request: RunRequest, channel: RunChannel, token: CancellationToken) -> RunResponse:
        state = RunState(request=request)
        started = time.monotonic()
        set_current_request_id(request.request_id)
        logger.info("run started", extra={"request_id": request.request_id})
        try:
            response = await self._run(state, channel, token)
        except asyncio.CancelledError:
            if not channel.closed:
                self._abort(state, channel)
            raise
        except Exception as exc:
            response = self._fail_from_exception(state, channel, exc)
        logger.info(
            "run finished",
            extra={
                "request_id": request.request_id,
                "iteration": state.iteration,
                "outcome": response.status.value,
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return response

    async def _run(self, state: RunState, channel: RunChannel, token: CancellationToken) -> RunResponse:
        request = state.request
        channel.emit(Thinking())

        state.history = [
            *normalize(request.history),
            build_user_message(request.message, request.file_context, request.images),
        ]
        adapter = get_adapter(request.model, request.provider)
        tool_defs = self.resolve_tools(request)
        allowed = frozenset(td.name for td in tool_defs)
        schemas = self._tools.to_schemas(tool_defs)

        while True:
            if token.cancelled:
                return self._abort(state, channel)
            if state.iteration >= request.max_iterations:
                logger.warning(
                    "iteration limit reached",
                    extra={"request_id": request.request_id, "iteration": state.iteration},
                )
                return self._fail(state, channel, ITERATION_LIMIT_REASON, "E_ITERATION_LIMIT")

            state.iteration += 1
            channel.emit(IterationStart(iteration=state.iteration))

            ensure_resolved(state.history)
            state.status = RunStatus.REQUESTING
            wire = adapter.build_request(
                self._request_view(state.history, request.model),
                request.model,
                request.provider,
                request.system_prompt,
                schemas or None,
            )

            state.status = RunStatus.STREAMING
            turn = _Turn()
            finished, _ = await run_until_cancelled(
                self._stream_turn(adapter, wire, state, turn, channel, token, tools_enabled=bool(tool_defs)),
                token,
            )
            if not finished or token.cancelled:
                if turn.text:
                    state.history.append(UniversalMessage(role=Role.ASSISTANT, content=turn.text))
                return self._abort(state, channel)

            state.history.append(
                UniversalMessage(role=Role.ASSISTANT, content=turn.text, tool_calls=tuple(turn.calls))
            )
            if not turn.calls:
                state.status = RunStatus.COMPLETING
                channel.emit(IterationComplete(iteration=state.iteration, tool_call_count=0))
                return self._complete(state, channel)

            state.status = RunStatus.EXECUTING_TOOLS
            if await self._execute_calls(turn.calls, allowed, state, channel, token):
                return self._abort(state, channel)
            channel.emit(IterationComplete(iteration=state.iteration, tool_call_count=len(turn.calls)))

    def _request_view(self, history: list[UniversalMessage], model: ModelConfig) -> list[UniversalMessage]:
        if not model.context_window:
            return history
        output_tokens = model.max_tokens or DEFAULT_MAX_TOKENS
        budget = max(model.context_window - output_tokens, model.context_window // 2)
        return trim_history(history, budget)

    async def _stream_turn(
        self,
        adapter: ProviderAdapter,
        wire: WireRequest,
        state: RunState,
        turn: _Turn,
        channel: RunChannel,
        token: CancellationToken,
        *,
        tools_enabled: bool,
    ) -> None:
        accumulator = ToolCallAccumulator()
        async for delta in adapter.stream(self._transport, wire, state.request.request_id):
            if delta.usage is not None:
                state.add_usage(delta.usage)
            if delta.text_delta:
                turn.text += delta.text_delta
                state.content += delta.text_delta
                channel.emit(TextDelta(text=delta.text_delta, iteration=state.iteration))
            if delta.reasoning_delta:
                channel.emit(ReasoningDelta(text=delta.reasoning_delta, iteration=state.iteration))
            if tools_enabled:
                for fragment in delta.tool_call_deltas:
                    started = accumulator.feed(fragment.index, fragment.id, fragment.name, fragment.arguments)
                    pending = accumulator.get(fragment.index)
                    if pending is None:
                        continue
                    if started:
                        channel.emit(ToolCallStart(tool_call_id=pending.id, tool_name=pending.name, index=fragment.index))
                    if fragment.arguments:
                        channel.emit(ToolCallDelta(
                            tool_call_id=pending.id, index=fragment.index, arguments_delta=fragment.arguments
                        ))
            if token.cancelled:
                return
        turn.calls = accumulator.flush()

    async def _execute_calls(
        self,
        calls: list[ToolCall],
        allowed: frozenset[str],
        state: RunState,
        channel: RunChannel,
        token: CancellationToken,
    ) -> bool:
        """Run tool calls one at a time; returns True when the run was aborted."""
        for call in calls:
            if token.cancelled:
                return True
            channel.emit(ToolCallComplete(tool_call_id=call.id, tool_name=call.name, arguments=dict(call.arguments)))
            result = await self._execute_call(call, allowed, state, channel, token)
            self._record(result, state, channel)
            if token.cancelled:
                return True
        return False

    async def _execute_call(
        self,
        call: ToolCall,
        allowed: frozenset[str],
        state: RunState,
        channel: RunChannel,
        token: CancellationToken,
    ) -> ToolResult:
        request = state.request
        problem = self._tools.check(call, allowed=allowed)
        if problem is not None:
            return ToolResult(tool_call_id=call.id, tool_name=call.name, success=False, output=problem)

        tool = self._tools.get(call.name)
        assert tool is not None
        try:
            approvals = self._gate.required_approvals(
                run_id=request.request_id,
                call=call,
                tool=tool,
                mode=request.approval_mode or self._default_approval_mode,
                workspace_root=request.workspace_root,
                session_id=request.session_id,
            )
        except Exception as exc:
            logger.warning(
                "approval check failed",
                extra={"request_id": request.request_id, "tool_name": call.name, "outcome": str(exc)},
            )
            return ToolResult(tool_call_id=call.id, tool_name=call.name, success=False, output=f"Error: {exc}")
        for approval in approvals:
            approved = await self._await_approval(approval, state, channel, token)
            if approved is None:
                return ToolResult(tool_call_id=call.id, tool_name=call.name, success=False, output=DENIED_BY_ABORT)
            if not approved:
                return ToolResult(tool_call_id=call.id, tool_name=call.name, success=False, output=DENIED_BY_USER)
            if approval.session_scope and self._gate.session_approved(approval.session_scope):
                break

        context = ToolContext(
            workspace_root=request.workspace_root,
            request_id=request.request_id,
            output_limit=self._tool_output_limit,
        )
        return await self._tools.execute(call, context, allowed=allowed)

    async def _await_approval(
        self,
        approval: ApprovalRequest,
        state: RunState,
        channel: RunChannel,
        token: CancellationToken,
    ) -> bool | None:
        """Block on one approval; None when the run was aborted meanwhile."""
        if token.cancelled:
            return None
        self._gate.open(approval)
        state.pending_approvals.add(approval.id)
        if approval.kind is ApprovalKind.TOOL:
            channel.emit(ToolApprovalRequired(
                approval_id=approval.id,
                tool_call_id=approval.related_tool_call_id,
                tool_name=approval.tool_name,
                description=approval.description,
                arguments=dict(approval.arguments),
            ))
        else:
            channel.emit(PathApprovalRequired(
                approval_id=approval.id,
                tool_call_id=approval.related_tool_call_id,
                tool_name=approval.tool_name,
                description=approval.description,
                path=approval.path or "",
            ))
        try:
            finished, approved = await run_until_cancelled(self._gate.wait(approval.id), token)
        finally:
            state.pending_approvals.discard(approval.id)
        if not finished or token.cancelled:
            self._gate.cancel_run(state.request.request_id)
            return None
        return bool(approved)

    def _record(self, result: ToolResult, state: RunState, channel: RunChannel) -> None:
        state.history = append_tool_result(state.history, result.tool_call_id, result)
        state.tool_results.append(result)
        get_runtime_metrics().increment_tool_call(result.tool_name, success=result.success)
        channel.emit(ToolResultEvent(
            tool_call_id=result.tool_call_id,
            tool_name=result.tool_name,
            success=result.success,
            output=truncate_output(result.output, self._event_output_limit),
            duration_ms=result.duration_ms,
        ))

    def _close_dangling_calls(self, state: RunState, output: str) -> None:
        # Calls that never ran still need a result so the history can be reused.
        for call in unresolved_tool_calls(state.history):
            state.history = append_tool_result(
                state.history,
                call.id,
                ToolResult(tool_call_id=call.id, tool_name=call.name, success=False, output=output),
            )

    def _response(self, state: RunState, error: str | None = None) -> RunResponse:
        return RunResponse(
            request_id=state.request.request_id,
            status=state.status,
            content=state.content,
            iterations=state.iteration,
            history=list(state.history),
            tool_results=list(state.tool_results),
            error=error,
            usage=state.usage,
        )

    def _complete(self, state: RunState, channel: RunChannel) -> RunResponse:
        state.status = RunStatus.COMPLETED
        channel.emit(AgentComplete(
            content=state.content,
            iterations=state.iteration,
            usage=state.usage.to_dict() if state.usage else None,
        ))
        return self._response(state)

    def _abort(self, state: RunState, channel: RunChannel) -> RunResponse:
        state.status = RunStatus.ABORTED
        self._gate.cancel_run(state.request.request_id)
        self._close_dangling_calls(state, ABORTED_BEFORE_EXECUTION)
        channel.emit(AgentAborted(iteration=state.iteration))
        return self._response(state)

    def _fail(
        self,
        state: RunState,
        channel: RunChannel,
        message: str,
        code: str,
        *,
        retryable: bool = False,
    ) -> RunResponse:
        state.status = RunStatus.FAILED
        self._gate.cancel_run(state.request.request_id)
        self._close_dangling_calls(state, NOT_EXECUTED_AFTER_FAILURE)
        channel.emit(AgentError(error=message, code=code, iteration=state.iteration, retryable=retryable))
        return self._response(state, error=message)

    def _fail_from_exception(self, state: RunState, channel: RunChannel, exc: Exception) -> RunResponse:
        _, body = error_from_exception(exc, get_current_trace_id())
        error = body["error"]
        if error["code"] == "E_INTERNAL":
            logger.exception("run failed unexpectedly", extra={"request_id": state.request.request_id})
        else:
            logger.warning(
                "run failed: %s",
                exc,
                extra={"request_id": state.request.request_id, "outcome": error["code"]},
            )
        message = str(exc) or error["message"]
        if channel.closed:
            state.status = RunStatus.FAILED
            return self._response(state, error=message)
        return self._fail(state, channel, message, error["code"], retryable=bool(error["retryable"]))
