"""Anthropic Messages wire format with native tool_use blocks."""
from __future__ import annotations

import json
from typing import Any

from agent_runtime.agent.messages import Role, UniversalMessage
from agent_runtime.agent.providers.base import (
    DEFAULT_MAX_TOKENS,
    ModelConfig,
    ProviderAdapter,
    ProviderConfig,
    ProviderError,
    StreamDelta,
    ToolCallDelta,
    ToolSchema,
    Usage,
    WireFormat,
    WireRequest,
    cap_max_tokens,
    join_base_url,
    merge_headers,
    parse_api_error_common,
    system_text,
)

ANTHROPIC_VERSION = "2023-06-01"

_STOP_REASONS = {"tool_use": "tool_calls", "end_turn": "stop", "stop_sequence": "stop", "max_tokens": "length"}


class AnthropicMessagesAdapter(ProviderAdapter):
    wire_format = WireFormat.ANTHROPIC_MESSAGES

    def build_request(
        self,
        history: list[UniversalMessage],
        model: ModelConfig,
        provider: ProviderConfig,
        system_prompt: str | None = None,
        tools: list[ToolSchema] | None = None,
    ) -> WireRequest:
        messages = _merge_consecutive_roles(_build_messages(history))
        system = system_text(history, system_prompt)
        body: dict[str, Any] = {
            "model": model.wire_model_id,
            "messages": messages,
            "stream": True,
        }
        if system:
            body["system"] = system
        if tools:
            body["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.input_schema}
                for t in tools
            ]

        serialized = json.dumps(messages) + json.dumps(body.get("tools", [])) + system
        body["max_tokens"] = cap_max_tokens(model.max_tokens or DEFAULT_MAX_TOKENS, model.context_window, serialized)
        if model.temperature is not None:
            body["temperature"] = model.temperature

        headers = merge_headers(
            {
                "Content-Type": "application/json",
                "x-api-key": provider.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
            },
            provider.extra_headers,
            model.extra_headers,
        )
        url = join_base_url(model.base_url or provider.base_url, "/messages")
        return WireRequest(url=url, headers=headers, body=body)

    def parse_error(self, status: int, body: str) -> ProviderError:
        error = parse_api_error_common(status, body)
        if error.error_type == "auth":
            error.details = "Check your API key. Anthropic keys use the x-api-key header."
        return error

    def parse_event(self, payload: dict[str, Any]) -> StreamDelta | None:
        event_type = payload.get("type")
        delta = payload.get("delta") or {}

        if event_type == "content_block_delta":
            kind = delta.get("type")
            if kind == "text_delta" and delta.get("text"):
                return StreamDelta(text_delta=delta["text"])
            if kind == "thinking_delta" and delta.get("thinking"):
                return StreamDelta(reasoning_delta=delta["thinking"])
            if kind == "input_json_delta":
                return StreamDelta(tool_call_deltas=(
                    ToolCallDelta(index=int(payload.get("index") or 0), arguments=delta.get("partial_json") or ""),
                ))
            return None

        if event_type == "content_block_start":
            block = payload.get("content_block") or {}
            if block.get("type") != "tool_use":
                return None
            return StreamDelta(tool_call_deltas=(
                ToolCallDelta(index=int(payload.get("index") or 0), id=block.get("id"), name=block.get("name")),
            ))

        if event_type == "message_delta":
            reason = delta.get("stop_reason")
            usage_raw = payload.get("usage") or {}
            usage = None
            if usage_raw.get("output_tokens"):
                output_tokens = int(usage_raw["output_tokens"])
                usage = Usage(completion_tokens=output_tokens, total_tokens=output_tokens)
            if not reason and usage is None:
                return None
            return StreamDelta(finish_reason=_STOP_REASONS.get(reason, reason) if reason else None, usage=usage)

        if event_type == "message_start":
            usage_raw = (payload.get("message") or {}).get("usage")
            if not isinstance(usage_raw, dict):
                return None
            # output_tokens is reported cumulatively by message_delta
            input_tokens = int(usage_raw.get("input_tokens") or 0)
            return StreamDelta(usage=Usage(prompt_tokens=input_tokens, total_tokens=input_tokens))

        return None


def _user_content(msg: UniversalMessage) -> str | list[dict[str, Any]]:
    if not msg.images:
        return msg.content
    parts: list[dict[str, Any]] = [
        {"type": "image", "source": {"type": "base64", "media_type": img.media_type, "data": img.data}}
        for img in msg.images
    ]
    parts.append({"type": "text", "text": msg.content})
    return parts


def _build_messages(history: list[UniversalMessage]) -> list[dict[str, Any]]:
    result: list[dict[str, Any]] = []
    for msg in history:
        if msg.role is Role.SYSTEM:
            continue
        if msg.role is Role.ASSISTANT and msg.tool_calls:
            content: list[dict[str, Any]] = []
            if msg.content:
                content.append({"type": "text", "text": msg.content})
            content.extend(
                {"type": "tool_use", "id": tc.id, "name": tc.name, "input": dict(tc.arguments)}
                for tc in msg.tool_calls
            )
            result.append({"role": "assistant", "content": content})
        elif msg.role is Role.TOOL:
            result.append({
                "role": "user",
                "content": [{"type": "tool_result", "tool_use_id": msg.tool_call_id, "content": msg.content}],
            })
        elif msg.role is Role.USER:
            result.append({"role": "user", "content": _user_content(msg)})
        else:
            result.append({"role": msg.role.value, "content": msg.content})
    return result


def _as_blocks(content: str | list[dict[str, Any]]) -> list[dict[str, Any]]:
    if isinstance(content, list):
        return content
    return [{"type": "text", "text": content}]


def _merge_consecutive_roles(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """The Messages API requires alternating user/assistant turns."""
    merged: list[dict[str, Any]] = []
    for msg in messages:
        if merged and merged[-1]["role"] == msg["role"]:
            prev = merged[-1]
            merged[-1] = {"role": prev["role"], "content": [*_as_blocks(prev["content"]), *_as_blocks(msg["content"])]}
        else:
            merged.append(msg)
    return merged
