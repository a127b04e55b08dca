from __future__ import annotations

import asyncio
import dataclasses
import uuid
from pathlib import Path
from typing import Any, AsyncIterator, Callable

from agent_runtime.agent.approval import ApprovalGate, ApprovalKind, ApprovalMode, ApprovalRequest
from agent_runtime.agent.events import AgentEvent
from agent_runtime.agent.loop import AgentLoop, RunRequest, RunResponse
from agent_runtime.agent.messages import ToolCall, ToolResult
from agent_runtime.agent.providers.base import ToolSchema
from agent_runtime.agent.run_registry import EventCallback, RunRegistry
from agent_runtime.agent.tool_registry import AgentMode, ToolContext, ToolRegistry
from agent_runtime.agent.transport import HttpTransport
from agent_runtime.config import Settings
from agent_runtime.observability.logging import get_runtime_logger
from agent_runtime.observability.metrics import get_runtime_metrics
from agent_runtime.tools.builtin import build_builtin_tools
from agent_runtime.tools.commands import CommandRunner, LocalCommandRunner
from agent_runtime.tools.filesystem import FileSystem, LocalFileSystem

logger = get_runtime_logger(__name__)
metrics = get_runtime_metrics()


class AgentService:
    def __init__(
        self,
        *,
        loop: AgentLoop,
        tools: ToolRegistry,
        gate: ApprovalGate,
        registry: RunRegistry,
        transport: HttpTransport | None = None,
        workspace_root: Path | None = None,
        tool_output_limit: int = 50_000,
        drain_timeout_seconds: float = 5.0,
    ) -> None:
        self.loop = loop
        self.tools = tools
        self.gate = gate
        self.registry = registry
        self._transport = transport
        self._workspace_root = workspace_root
        self._tool_output_limit = tool_output_limit
        self._drain_timeout = drain_timeout_seconds
        self._draining: set[asyncio.Task[None]] = set()

    @property
    def workspace_root(self) -> Path | None:
        return self._workspace_root

    @property
    def tool_output_limit(self) -> int:
        return self._tool_output_limit

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: HttpTransport | None = None,
        fs: FileSystem | None = None,
        runner: CommandRunner | None = None,
    ) -> AgentService:
        transport = transport or HttpTransport(
            timeout_seconds=settings.http_timeout_seconds,
            verify_tls=settings.http_verify_tls,
        )
        tools = ToolRegistry(build_builtin_tools(
            fs or LocalFileSystem(),
            runner or LocalCommandRunner(settings.command_timeout_seconds),
        ))
        gate = ApprovalGate()
        loop = AgentLoop(
            transport=transport,
            tools=tools,
            gate=gate,
            default_approval_mode=ApprovalMode(settings.approval_mode),
            tool_output_limit=settings.tool_output_limit,
            event_output_limit=settings.event_output_limit,
        )
        return cls(
            loop=loop,
            tools=tools,
            gate=gate,
            registry=RunRegistry(finished_memory=settings.finished_run_memory),
            transport=transport,
            workspace_root=settings.workspace_root,
            tool_output_limit=settings.tool_output_limit,
            drain_timeout_seconds=settings.subscriber_drain_timeout_seconds,
        )

    def start(self, request: RunRequest) -> asyncio.Task[RunResponse]:
        """Register the run and schedule it; DuplicateRun is raised here, synchronously."""
        if request.workspace_root is None and self._workspace_root is not None:
            request = dataclasses.replace(request, workspace_root=self._workspace_root)
        handle = self.registry.register(request.request_id)
        metrics.runs_total += 1
        handle.task = asyncio.get_running_loop().create_task(
            self._drive(request, handle.channel, handle.token),
            name=f"agent-run-{request.request_id}",
        )
        return handle.task

    async def _drive(self, request: RunRequest, channel, token) -> RunResponse:
        try:
            response = await self.loop.run(request, channel, token)
        except asyncio.CancelledError:
            metrics.record_terminal("aborted")
            raise
        else:
            metrics.record_terminal(response.status.value)
            return response
        finally:
            self.registry.unregister(request.request_id)

    async def run(self, request: RunRequest, on_event: EventCallback | None = None) -> RunResponse:
        task = self.start(request)
        channel = self.registry.channel(request.request_id)
        if on_event is not None:
            channel.subscribe(on_event)
        response = await task
        for drain in await channel.drain(self._drain_timeout):
            self._draining.add(drain)
            drain.add_done_callback(self._draining.discard)
        return response

    def abort(self, request_id: str) -> bool:
        aborted = self.registry.abort(request_id)
        if aborted:
            denied = self.gate.cancel_run(request_id)
            logger.info(
                "run abort requested",
                extra={"request_id": request_id, "outcome": f"approvals_denied={denied}"},
            )
        return aborted

    def respond_tool_approval(self, approval_id: str, approved: bool) -> ApprovalRequest:
        return self.gate.respond(approval_id, approved, kind=ApprovalKind.TOOL)

    def respond_path_approval(self, approval_id: str, approved: bool) -> ApprovalRequest:
        return self.gate.respond(approval_id, approved, kind=ApprovalKind.PATH)

    def get_tools(self, mode: AgentMode | str | None = None) -> list[ToolSchema]:
        if mode is None:
            return self.tools.to_schemas()
        return self.tools.to_schemas(self.tools.for_mode(mode))

    async def execute_tool(
        self,
        name: str,
        arguments: dict[str, Any],
        context: ToolContext | None = None,
    ) -> ToolResult:
        """Run one tool directly, outside any run and without the approval gate."""
        call = ToolCall(id=f"direct-{uuid.uuid4().hex}", name=name, arguments=dict(arguments))
        context = context or ToolContext(
            workspace_root=self._workspace_root,
            output_limit=self._tool_output_limit,
        )
        result = await self.tools.execute(call, context)
        metrics.increment_tool_call(name, success=result.success)
        return result

    def on_event(self, request_id: str, callback: EventCallback) -> Callable[[], None]:
        return self.registry.channel(request_id).subscribe(callback)

    def events(self, request_id: str) -> AsyncIterator[AgentEvent]:
        return self.registry.channel(request_id).stream()

    def active_runs(self) -> list[str]:
        return self.registry.active_runs()

    def end_session(self, session_id: str) -> None:
        self.gate.end_session(session_id)

    async def aclose(self) -> None:
        tasks = []
        for request_id in self.registry.active_runs():
            handle = self.registry.get(request_id)
            self.abort(request_id)
            if handle.task is not None:
                tasks.append(handle.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for channel in self.registry.channels():
            channel.cancel_subscribers()
        for drain in list(self._draining):
            drain.cancel()
        if self._transport is not None:
            await self._transport.aclose()
