"""Human-in-the-loop approval gate for sensitive tools and out-of-workspace paths."""
from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable

from agent_runtime.agent.messages import ToolCall
from agent_runtime.agent.tool_registry import Sensitivity, ToolDef
from agent_runtime.observability.logging import get_runtime_logger
from agent_runtime.observability.metrics import get_runtime_metrics
from agent_runtime.security.path_guard import PathGuardError, is_within_workspace, resolve_path

logger = get_runtime_logger(__name__)

DENIED_BY_USER = "denied by user"
DENIED_BY_ABORT = "denied: run aborted"


class ApprovalMode(str, Enum):
    ALLOW_ALL = "allow-all"
    SESSION_ONLY = "session-only"
    ASK = "ask"


class ApprovalKind(str, Enum):
    TOOL = "tool"
    PATH = "path"


class ApprovalNotFound(Exception):
    pass


@dataclass(slots=True)
class ApprovalRequest:
    id: str
    kind: ApprovalKind
    run_id: str
    description: str
    related_tool_call_id: str
    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    path: str | None = None
    session_scope: str | None = None


@dataclass(slots=True)
class _Pending:
    request: ApprovalRequest
    future: asyncio.Future[bool]


def _summarize(arguments: dict[str, Any], limit: int = 200) -> str:
    text = json.dumps(arguments, ensure_ascii=False, default=str)
    return text if len(text) <= limit else f"{text[:limit]}..."


class ApprovalGate:
    def __init__(self) -> None:
        self._pending: dict[str, _Pending] = {}
        self._approved_sessions: set[str] = set()

    def required_approvals(
        self,
        *,
        run_id: str,
        call: ToolCall,
        tool: ToolDef,
        mode: ApprovalMode,
        workspace_root: Path | None,
        session_id: str | None = None,
    ) -> list[ApprovalRequest]:
        """Approvals needed before ``call`` may run: tool approval first, then paths."""
        mode = ApprovalMode(mode)
        if mode is ApprovalMode.ALLOW_ALL:
            return []
        scope = None
        if mode is ApprovalMode.SESSION_ONLY:
            scope = session_id or run_id
            if self.session_approved(scope):
                return []

        requests: list[ApprovalRequest] = []
        if tool.sensitivity is Sensitivity.SENSITIVE:
            if call.name == "execute_command" and "command" in call.arguments:
                description = f"Run command: {call.arguments['command']}"
            else:
                description = f"Allow {call.name} with {_summarize(call.arguments)}"
            requests.append(ApprovalRequest(
                id=uuid.uuid4().hex,
                kind=ApprovalKind.TOOL,
                run_id=run_id,
                description=description,
                related_tool_call_id=call.id,
                tool_name=call.name,
                arguments=dict(call.arguments),
                session_scope=scope,
            ))

        if workspace_root is None:
            return requests
        for name in tool.path_arguments:
            raw = call.arguments.get(name)
            if not isinstance(raw, str) or not raw.strip():
                continue
            try:
                resolved = resolve_path(workspace_root, raw)
            except PathGuardError:
                continue
            if is_within_workspace(resolved, workspace_root):
                continue
            requests.append(ApprovalRequest(
                id=uuid.uuid4().hex,
                kind=ApprovalKind.PATH,
                run_id=run_id,
                description=f"{call.name} wants to access '{resolved}' outside the workspace",
                related_tool_call_id=call.id,
                tool_name=call.name,
                arguments=dict(call.arguments),
                path=str(resolved),
                session_scope=scope,
            ))
        return requests

    def open(self, request: ApprovalRequest) -> None:
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._pending[request.id] = _Pending(request=request, future=future)
        get_runtime_metrics().approvals_pending += 1
        logger.info(
            "approval requested",
            extra={"request_id": request.run_id, "approval_id": request.id, "tool_name": request.tool_name},
        )

    def wait(self, approval_id: str) -> Awaitable[bool]:
        """Resolve the pending approval now; the returned awaitable yields the decision."""
        pending = self._pending.get(approval_id)
        if pending is None:
            raise ApprovalNotFound(f"Approval not found: {approval_id}")
        return self._await_decision(approval_id, pending.future)

    async def _await_decision(self, approval_id: str, future: asyncio.Future[bool]) -> bool:
        try:
            return await future
        finally:
            self._discard(approval_id)

    def respond(self, approval_id: str, approved: bool, *, kind: ApprovalKind | None = None) -> ApprovalRequest:
        pending = self._pending.get(approval_id)
        if pending is None or pending.future.done():
            raise ApprovalNotFound(f"Approval not found: {approval_id}")
        if kind is not None and pending.request.kind is not ApprovalKind(kind):
            raise ApprovalNotFound(f"Approval {approval_id} is not a {ApprovalKind(kind).value} approval")

        request = pending.request
        if approved and request.session_scope:
            self._approved_sessions.add(request.session_scope)
        if not approved:
            get_runtime_metrics().approvals_denied_total += 1
        pending.future.set_result(approved)
        self._discard(approval_id)
        logger.info(
            "approval resolved",
            extra={
                "request_id": request.run_id,
                "approval_id": approval_id,
                "outcome": "approved" if approved else "denied",
            },
        )
        return request

    def cancel_run(self, run_id: str) -> int:
        """Deny every pending approval of ``run_id``."""
        denied = 0
        for approval_id, pending in list(self._pending.items()):
            if pending.request.run_id != run_id or pending.future.done():
                continue
            pending.future.set_result(False)
            self._discard(approval_id)
            denied += 1
        return denied

    def pending_ids(self, run_id: str | None = None) -> list[str]:
        return [
            approval_id
            for approval_id, pending in self._pending.items()
            if run_id is None or pending.request.run_id == run_id
        ]

    def session_approved(self, scope: str) -> bool:
        return scope in self._approved_sessions

    def end_session(self, session_id: str) -> None:
        self._approved_sessions.discard(session_id)

    def _discard(self, approval_id: str) -> None:
        if self._pending.pop(approval_id, None) is not None:
            metrics = get_runtime_metrics()
            metrics.approvals_pending = max(0, metrics.approvals_pending - 1)
