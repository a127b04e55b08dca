"""Responses API wire format: ``input`` items, ``instructions`` for the system prompt."""
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
    system_text,
)


class OpenAIResponsesAdapter(ProviderAdapter):
    wire_format = WireFormat.OPENAI_RESPONSES

    def build_request(
        self,
        history: list[UniversalMessage],
        model: ModelConfig,
        provider: ProviderConfig,
        system_prompt: str | None = None,
        tools: list[ToolSchema] | None = None,
    ) -> WireRequest:
        input_items = _build_input(history)
        instructions = system_text(history, system_prompt)
        body: dict[str, Any] = {
            "model": model.wire_model_id,
            "input": input_items,
            "stream": True,
            "store": False,
        }
        if instructions:
            body["instructions"] = instructions
        if tools:
            body["tools"] = [
                {"type": "function", "name": t.name, "description": t.description, "parameters": t.input_schema}
                for t in tools
            ]

        serialized = json.dumps(input_items) + json.dumps(body.get("tools", [])) + instructions
        body["max_output_tokens"] = cap_max_tokens(
            model.max_tokens or DEFAULT_MAX_TOKENS, model.context_window, serialized
        )
        if model.temperature is not None:
            body["temperature"] = model.temperature

        headers = merge_headers(
            {"Content-Type": "application/json", "Authorization": f"Bearer {provider.api_key}"},
            provider.extra_headers,
            model.extra_headers,
        )
        url = join_base_url(model.base_url or provider.base_url, "/responses")
        return WireRequest(url=url, headers=headers, body=body)

    def in_stream_error(self, payload: dict[str, Any]) -> ProviderError | None:
        if payload.get("type") == "response.failed":
            error = (payload.get("response") or {}).get("error") or {}
            return ProviderError(None, str(error.get("message") or "response failed"), "server", True)
        return super().in_stream_error(payload)

    def parse_event(self, payload: dict[str, Any]) -> StreamDelta | None:
        event_type = payload.get("type")

        if event_type == "response.output_text.delta" and payload.get("delta") is not None:
            return StreamDelta(text_delta=str(payload["delta"]))

        if event_type in ("response.reasoning_summary_text.delta", "response.reasoning_text.delta"):
            return StreamDelta(reasoning_delta=str(payload.get("delta") or "")) if payload.get("delta") else None

        if event_type == "response.output_item.added":
            item = payload.get("item") or {}
            if item.get("type") != "function_call":
                return None
            return StreamDelta(tool_call_deltas=(
                ToolCallDelta(
                    index=int(payload.get("output_index") or 0),
                    id=item.get("call_id") or item.get("id"),
                    name=item.get("name"),
                    arguments=item.get("arguments") or "",
                ),
            ))

        if event_type == "response.function_call_arguments.delta":
            return StreamDelta(tool_call_deltas=(
                ToolCallDelta(index=int(payload.get("output_index") or 0), arguments=payload.get("delta") or ""),
            ))

        if event_type in ("response.completed", "response.done", "response.incomplete"):
            response = payload.get("response") or {}
            output = response.get("output") or []
            has_calls = any(isinstance(o, dict) and o.get("type") == "function_call" for o in output)
            finish = "tool_calls" if has_calls else ("length" if event_type == "response.incomplete" else "stop")
            return StreamDelta(finish_reason=finish, usage=_parse_usage(response.get("usage")))

        return None


def _parse_usage(raw: Any) -> Usage | None:
    if not isinstance(raw, dict):
        return None
    prompt = int(raw.get("input_tokens") or 0)
    completion = int(raw.get("output_tokens") or 0)
    return Usage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=int(raw.get("total_tokens") or prompt + completion),
    )


def _user_content(msg: UniversalMessage) -> str | list[dict[str, Any]]:
    if not msg.images:
        return msg.content
    parts: list[dict[str, Any]] = [{"type": "input_text", "text": msg.content}]
    parts.extend({"type": "input_image", "image_url": img.data_url()} for img in msg.images)
    return parts


def _build_input(history: list[UniversalMessage]) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    for msg in history:
        if msg.role is Role.SYSTEM:
            continue
        if msg.role is Role.ASSISTANT and msg.tool_calls:
            if msg.content:
                items.append({"role": "assistant", "content": msg.content})
            for tc in msg.tool_calls:
                items.append({
                    "type": "function_call",
                    "call_id": tc.id,
                    "name": tc.name,
                    "arguments": json.dumps(tc.arguments),
                })
        elif msg.role is Role.TOOL:
            items.append({"type": "function_call_output", "call_id": msg.tool_call_id, "output": msg.content})
        elif msg.role is Role.USER:
            items.append({"role": "user", "content": _user_content(msg)})
        else:
            items.append({"role": msg.role.value, "content": msg.content})
    return items
