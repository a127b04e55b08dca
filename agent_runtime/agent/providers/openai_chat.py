"""Chat Completions wire format (OpenAI and compatible providers)."""
from __future__ import annotations

import json
from typing import Any

from agent_runtime.agent.messages import Role, UniversalMessage
from agent_runtime.agent.providers.base import (
    DEFAULT_MAX_TOKENS,
    ModelConfig,
    ProviderAdapter,
    ProviderConfig,
    StreamDelta,
    ToolCallDelta,
    ToolSchema,
    Usage,
    WireFormat,
    WireRequest,
    cap_max_tokens,
    join_base_url,
    merge_headers,
    system_text,
)

_FINISH_REASONS = {"tool_calls": "tool_calls", "function_call": "tool_calls"}


class OpenAIChatAdapter(ProviderAdapter):
    wire_format = WireFormat.OPENAI_CHAT

    def build_request(
        self,
        history: list[UniversalMessage],
        model: ModelConfig,
        provider: ProviderConfig,
        system_prompt: str | None = None,
        tools: list[ToolSchema] | None = None,
    ) -> WireRequest:
        messages = _build_messages(history, system_text(history, system_prompt))
        body: dict[str, Any] = {
            "model": model.wire_model_id,
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            body["tools"] = _build_tools(tools)

        serialized = json.dumps(messages) + json.dumps(body.get("tools", []))
        body["max_tokens"] = cap_max_tokens(model.max_tokens or DEFAULT_MAX_TOKENS, model.context_window, serialized)
        if model.temperature is not None:
            body["temperature"] = model.temperature

        headers = merge_headers(
            {"Content-Type": "application/json", "Authorization": f"Bearer {provider.api_key}"},
            provider.extra_headers,
            model.extra_headers,
        )
        url = join_base_url(model.base_url or provider.base_url, "/chat/completions")
        return WireRequest(url=url, headers=headers, body=body)

    def parse_event(self, payload: dict[str, Any]) -> StreamDelta | None:
        usage = _parse_usage(payload.get("usage"))
        choices = payload.get("choices")
        choice = choices[0] if isinstance(choices, list) and choices else None
        if not isinstance(choice, dict):
            return StreamDelta(usage=usage) if usage else None

        delta = choice.get("delta") or {}
        tool_call_deltas = tuple(
            ToolCallDelta(
                index=int(tc.get("index") or 0),
                id=tc.get("id"),
                name=(tc.get("function") or {}).get("name"),
                arguments=(tc.get("function") or {}).get("arguments") or "",
            )
            for tc in delta.get("tool_calls") or ()
            if isinstance(tc, dict)
        )
        finish = choice.get("finish_reason")
        result = StreamDelta(
            text_delta=delta.get("content") or None,
            reasoning_delta=delta.get("reasoning_content") or delta.get("reasoning") or None,
            tool_call_deltas=tool_call_deltas,
            finish_reason=_FINISH_REASONS.get(finish, finish) if finish else None,
            usage=usage,
        )
        if not (result.text_delta or result.reasoning_delta or result.tool_call_deltas or result.finish_reason or usage):
            return None
        return result


def _parse_usage(raw: Any) -> Usage | None:
    if not isinstance(raw, dict):
        return None
    prompt = int(raw.get("prompt_tokens") or 0)
    completion = int(raw.get("completion_tokens") or 0)
    return Usage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=int(raw.get("total_tokens") or prompt + completion),
    )


def _user_content(msg: UniversalMessage) -> str | list[dict[str, Any]]:
    if not msg.images:
        return msg.content
    parts: list[dict[str, Any]] = [{"type": "text", "text": msg.content}]
    parts.extend({"type": "image_url", "image_url": {"url": img.data_url()}} for img in msg.images)
    return parts


def _build_messages(history: list[UniversalMessage], system: str) -> list[dict[str, Any]]:
    result: list[dict[str, Any]] = []
    if system:
        result.append({"role": "system", "content": system})
    for msg in history:
        if msg.role is Role.SYSTEM:
            continue
        if msg.role is Role.ASSISTANT and msg.tool_calls:
            result.append({
                "role": "assistant",
                "content": msg.content or None,
                "tool_calls": [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)},
                    }
                    for tc in msg.tool_calls
                ],
            })
        elif msg.role is Role.TOOL:
            result.append({"role": "tool", "tool_call_id": msg.tool_call_id, "content": msg.content})
        elif msg.role is Role.USER:
            result.append({"role": "user", "content": _user_content(msg)})
        else:
            result.append({"role": msg.role.value, "content": msg.content})
    return result


def _build_tools(tools: list[ToolSchema]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {"name": t.name, "description": t.description, "parameters": t.input_schema},
        }
        for t in tools
    ]
