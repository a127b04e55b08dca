"""Provider-agnostic conversation model.

Every function here is pure: inputs are never mutated and new lists are
returned. Provider adapters translate these shapes to a wire format only at the
moment a request is built.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping


class ProtocolError(Exception):
    """The conversation or a provider response broke the wire protocol."""


class InvalidHistory(ProtocolError):
    pass


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True, slots=True)
class ImageAttachment:
    media_type: str
    data: str  # base64, no data: prefix

    def data_url(self) -> str:
        return f"data:{self.media_type};base64,{self.data}"


@dataclass(frozen=True, slots=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ToolResult:
    tool_call_id: str
    tool_name: str
    success: bool
    output: str
    duration_ms: int = 0


@dataclass(frozen=True, slots=True)
class UniversalMessage:
    role: Role
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None
    tool_name: str | None = None
    images: tuple[ImageAttachment, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [
                {"id": tc.id, "name": tc.name, "arguments": dict(tc.arguments)}
                for tc in self.tool_calls
            ]
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        if self.tool_name is not None:
            data["tool_name"] = self.tool_name
        if self.images:
            data["images"] = [{"media_type": img.media_type, "data": img.data} for img in self.images]
        return data


def _pick(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _parse_arguments(raw_arguments: Any) -> dict[str, Any]:
    if isinstance(raw_arguments, Mapping):
        return dict(raw_arguments)
    if raw_arguments is None or raw_arguments == "":
        return {}
    if isinstance(raw_arguments, str):
        try:
            parsed = json.loads(raw_arguments)
        except ValueError as exc:
            raise InvalidHistory(f"tool call arguments are not valid JSON: {raw_arguments[:200]}") from exc
        if isinstance(parsed, dict):
            return parsed
    raise InvalidHistory("tool call arguments must be an object")


def _coerce_tool_call(raw: ToolCall | Mapping[str, Any]) -> ToolCall:
    if isinstance(raw, ToolCall):
        return raw
    call_id = str(_pick(raw, "id") or "").strip()
    name = str(_pick(raw, "name") or "").strip()
    if not call_id or not name:
        raise InvalidHistory("tool call requires both id and name")
    return ToolCall(id=call_id, name=name, arguments=_parse_arguments(_pick(raw, "arguments", "input")))


def _coerce_message(raw: UniversalMessage | Mapping[str, Any]) -> UniversalMessage:
    if isinstance(raw, UniversalMessage):
        return raw
    try:
        role = Role(str(_pick(raw, "role") or "").strip().lower())
    except ValueError as exc:
        raise InvalidHistory(f"unknown message role: {raw.get('role')!r}") from exc

    content = _pick(raw, "content")
    tool_calls = tuple(_coerce_tool_call(tc) for tc in (_pick(raw, "tool_calls", "toolCalls") or ()))
    images = tuple(
        img if isinstance(img, ImageAttachment) else ImageAttachment(
            media_type=str(_pick(img, "media_type", "mediaType") or "image/png"),
            data=str(_pick(img, "data") or ""),
        )
        for img in (_pick(raw, "images") or ())
    )
    tool_call_id = _pick(raw, "tool_call_id", "toolCallId")
    tool_name = _pick(raw, "tool_name", "toolName")

    if tool_calls and role is not Role.ASSISTANT:
        raise InvalidHistory(f"{role.value} message cannot carry tool calls")
    if role is Role.TOOL and not tool_call_id:
        raise InvalidHistory("tool message requires tool_call_id")

    return UniversalMessage(
        role=role,
        content="" if content is None else str(content),
        tool_calls=tool_calls,
        tool_call_id=str(tool_call_id) if role is Role.TOOL else None,
        tool_name=str(tool_name) if role is Role.TOOL and tool_name is not None else None,
        images=images if role is Role.USER else (),
    )


def validate_history(history: Iterable[UniversalMessage]) -> None:
    """Every tool message must answer exactly one earlier, still open tool call."""
    requested: set[str] = set()
    resolved: set[str] = set()
    for message in history:
        if message.role is Role.ASSISTANT:
            for tc in message.tool_calls:
                if tc.id in requested:
                    raise InvalidHistory(f"duplicate tool call id: {tc.id}")
                requested.add(tc.id)
        elif message.role is Role.TOOL:
            call_id = message.tool_call_id or ""
            if call_id not in requested:
                raise InvalidHistory(f"tool result references unknown tool call id: {call_id}")
            if call_id in resolved:
                raise InvalidHistory(f"tool call id already has a result: {call_id}")
            resolved.add(call_id)


def normalize(raw: Iterable[UniversalMessage | Mapping[str, Any]]) -> list[UniversalMessage]:
    messages = [_coerce_message(item) for item in raw]
    validate_history(messages)
    return messages


def unresolved_tool_calls(history: Iterable[UniversalMessage]) -> list[ToolCall]:
    pending: dict[str, ToolCall] = {}
    for message in history:
        if message.role is Role.ASSISTANT:
            for tc in message.tool_calls:
                pending[tc.id] = tc
        elif message.role is Role.TOOL and message.tool_call_id in pending:
            pending.pop(message.tool_call_id)
    return list(pending.values())


def ensure_resolved(history: list[UniversalMessage]) -> None:
    """Raise unless the history is ready to be sent to a provider."""
    validate_history(history)
    pending = unresolved_tool_calls(history)
    if pending:
        ids = ", ".join(tc.id for tc in pending)
        raise InvalidHistory(f"tool calls without results: {ids}")


def append_tool_result(
    history: list[UniversalMessage], tool_call_id: str, result: ToolResult
) -> list[UniversalMessage]:
    requested = False
    for message in history:
        if message.role is Role.TOOL and message.tool_call_id == tool_call_id:
            return list(history)
        if message.role is Role.ASSISTANT and any(tc.id == tool_call_id for tc in message.tool_calls):
            requested = True
    if not requested:
        raise InvalidHistory(f"no tool call with id {tool_call_id} in history")

    return [
        *history,
        UniversalMessage(
            role=Role.TOOL,
            content=result.output,
            tool_call_id=tool_call_id,
            tool_name=result.tool_name,
        ),
    ]


def build_user_message(
    text: str,
    file_context: str | None = None,
    images: Iterable[ImageAttachment] = (),
) -> UniversalMessage:
    content = text
    if file_context:
        content = f"{text}\n\n{file_context}"
    return UniversalMessage(role=Role.USER, content=content, images=tuple(images))
