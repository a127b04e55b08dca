"""Tests for the wire adapters, SSE parsing and format routing."""
from __future__ import annotations

import json

import pytest

from agent_runtime.agent.messages import (
    ImageAttachment,
    Role,
    ToolCall,
    ToolResult,
    UniversalMessage,
    append_tool_result,
)
from agent_runtime.agent.provider_router import get_adapter, resolve_format
from agent_runtime.agent.providers.anthropic_messages import AnthropicMessagesAdapter
from agent_runtime.agent.providers.base import (
    MIN_OUTPUT_TOKENS,
    ModelConfig,
    ProviderConfig,
    ProviderError,
    ToolSchema,
    Usage,
    WireFormat,
    cap_max_tokens,
    merge_headers,
    parse_api_error_common,
)
from agent_runtime.agent.providers.openai_chat import OpenAIChatAdapter
from agent_runtime.agent.providers.openai_responses import OpenAIResponsesAdapter
from agent_runtime.agent.providers.sse import SSEParser, ToolCallAccumulator, parse_arguments, repair_json
from agent_runtime.agent.transport import HttpStatusFailure


# ─── Helpers ──────────────────────────────────────────────────────────────────

PROVIDER = ProviderConfig(id="test", base_url="https://api.example.com/v1/", api_key="sk-test")
READ_FILE = ToolSchema(
    name="read_file",
    description="Read a file",
    input_schema={"type": "object", "properties": {"path": {"type": "string"}}, "required": ["path"]},
)


def sse(*payloads: dict, done: bool = False) -> str:
    lines = [f"data: {json.dumps(p)}\n\n" for p in payloads]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines)


async def _chunks(*parts: str):
    for part in parts:
        yield part


async def _collect(adapter, *parts: str) -> list:
    return [delta async for delta in adapter.parse_stream(_chunks(*parts))]


def _conversation() -> list[UniversalMessage]:
    history = [
        UniversalMessage(role=Role.SYSTEM, content="history rule"),
        UniversalMessage(
            role=Role.USER,
            content="look at this",
            images=(ImageAttachment(media_type="image/png", data="QUJD"),),
        ),
        UniversalMessage(
            role=Role.ASSISTANT,
            content="checking",
            tool_calls=(ToolCall(id="call_1", name="read_file", arguments={"path": "a.py"}),),
        ),
    ]
    return append_tool_result(
        history,
        "call_1",
        ToolResult(tool_call_id="call_1", tool_name="read_file", success=True, output="print(1)"),
    )


class FailingTransport:
    def __init__(self, status: int, body: str) -> None:
        self.status = status
        self.body = body

    async def stream(self, wire, *, request_id: str):
        raise HttpStatusFailure(self.status, self.body)
        yield ""  # pragma: no cover


# ─── SSE parsing ──────────────────────────────────────────────────────────────

def test_sse_parser_buffers_partial_lines():
    parser = SSEParser()
    assert parser.feed('data: {"a"') == []
    assert parser.feed(': 1}\n\nevent: ping\n: comment\ndata: [DONE]\n') == ['{"a": 1}']
    assert parser.feed("data: tail") == []
    assert parser.flush() == ["tail"]
    assert parser.flush() == []


def test_tool_call_accumulator_assembles_by_index():
    acc = ToolCallAccumulator()
    assert acc.feed(1, "call_b", "list_directory", "") is True
    assert acc.feed(0, "call_a", "read_file", '{"pa') is True
    assert acc.feed(0, None, None, 'th": "x"}') is False
    assert acc.feed(5, None, None, "orphan") is False
    assert acc.get(0).arguments == '{"path": "x"}'

    calls = acc.flush()

    assert [c.id for c in calls] == ["call_a", "call_b"]
    assert calls[0].arguments == {"path": "x"}
    assert calls[1].arguments == {}
    assert acc.get(0) is None


def test_parse_arguments_repairs_truncated_json():
    assert parse_arguments('{"path": "a.txt", "content": "line1\nline2"') == {
        "path": "a.txt",
        "content": "line1\nline2",
    }
    assert parse_arguments('{"items": [1, 2,]}') == {"items": [1, 2]}
    assert parse_arguments("not json at all") == {}
    assert repair_json('{"a": [1') == '{"a": [1]}'


# ─── shared helpers ───────────────────────────────────────────────────────────

def test_cap_max_tokens_respects_context_window():
    assert cap_max_tokens(4096, None, "x" * 1000) == 4096
    assert cap_max_tokens(4096, 200_000, "x" * 350) == 4096
    assert cap_max_tokens(8000, 10_000, "x" * 3500) == 10_000 - 1000 - 2000
    assert cap_max_tokens(4096, 3000, "x" * 35_000) == MIN_OUTPUT_TOKENS


def test_merge_headers_skips_reserved_keys_and_non_strings():
    merged = merge_headers({"A": "1"}, {"__proto__": "x", "B": "2", "C": 3}, None, {"A": "override"})
    assert merged == {"A": "override", "B": "2"}


def test_parse_api_error_classifies_common_failures():
    auth = parse_api_error_common(401, json.dumps({"error": {"message": "Incorrect API key"}}))
    assert auth.error_type == "auth"
    assert auth.retryable is False
    assert auth.details == "Incorrect API key"

    assert parse_api_error_common(429, "slow down").error_type == "rate_limit"
    assert parse_api_error_common(429, "slow down").retryable is True
    assert parse_api_error_common(402, "{}").error_type == "billing"
    assert parse_api_error_common(503, "").error_type == "server"

    other = parse_api_error_common(400, json.dumps({"message": "bad field"}))
    assert other.error_type == "unknown"
    assert other.message == "bad field"
    assert str(other) == "bad field (status 400)"


# ─── routing ──────────────────────────────────────────────────────────────────

def test_resolve_format_prefers_explicit_override_then_known_models():
    openai_default = ProviderConfig(id="p", base_url="https://x", default_format=WireFormat.OPENAI_CHAT)

    assert resolve_format(ModelConfig(id="claude-sonnet-4-5"), openai_default) is WireFormat.ANTHROPIC_MESSAGES
    assert resolve_format(
        ModelConfig(id="claude-sonnet-4-5", wire_format=WireFormat.OPENAI_CHAT), openai_default
    ) is WireFormat.OPENAI_CHAT
    assert resolve_format(ModelConfig(id="gpt-5"), openai_default) is WireFormat.OPENAI_RESPONSES
    assert resolve_format(ModelConfig(id="local-llama"), openai_default) is WireFormat.OPENAI_CHAT
    assert isinstance(get_adapter(ModelConfig(id="gpt-5"), openai_default), OpenAIResponsesAdapter)


# ─── chat completions ─────────────────────────────────────────────────────────

def test_openai_chat_build_request():
    model = ModelConfig(id="gpt-4o", extra_headers={"X-Model": "m"}, temperature=0.2)
    wire = OpenAIChatAdapter().build_request(_conversation(), model, PROVIDER, "be brief", [READ_FILE])

    assert wire.url == "https://api.example.com/v1/chat/completions"
    assert wire.headers["Authorization"] == "Bearer sk-test"
    assert wire.headers["X-Model"] == "m"
    body = wire.body
    assert body["model"] == "gpt-4o"
    assert body["stream"] is True
    assert body["stream_options"] == {"include_usage": True}
    assert body["temperature"] == 0.2
    assert body["max_tokens"] == 4096
    assert body["tools"][0]["function"]["name"] == "read_file"

    messages = body["messages"]
    assert messages[0] == {"role": "system", "content": "be brief\n\nhistory rule"}
    assert messages[1]["content"][1] == {"type": "image_url", "image_url": {"url": "data:image/png;base64,QUJD"}}
    assert messages[2]["tool_calls"][0]["function"] == {"name": "read_file", "arguments": '{"path": "a.py"}'}
    assert messages[3] == {"role": "tool", "tool_call_id": "call_1", "content": "print(1)"}


@pytest.mark.asyncio
async def test_openai_chat_stream_text_tool_calls_and_usage():
    body = sse(
        {"choices": [{"delta": {"content": "Hel"}}]},
        {"choices": [{"delta": {"content": "lo", "reasoning_content": "hmm"}}]},
        {"choices": [{"delta": {"tool_calls": [
            {"index": 0, "id": "call_1", "function": {"name": "read_file", "arguments": '{"path"'}}
        ]}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": ': "a.py"}'}}]}}]},
        {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
        {"choices": [], "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}},
        done=True,
    )
    # split mid-line to exercise buffering
    deltas = await _collect(OpenAIChatAdapter(), body[:37], body[37:])

    assert "".join(d.text_delta or "" for d in deltas) == "Hello"
    assert [d.reasoning_delta for d in deltas if d.reasoning_delta] == ["hmm"]
    fragments = [tc for d in deltas for tc in d.tool_call_deltas]
    assert fragments[0].id == "call_1"
    assert fragments[0].name == "read_file"
    assert "".join(f.arguments for f in fragments) == '{"path": "a.py"}'
    assert any(d.finish_reason == "tool_calls" for d in deltas)
    assert [d.usage for d in deltas if d.usage] == [Usage(10, 5, 15)]
    assert deltas[-1].usage == Usage(10, 5, 15)


@pytest.mark.asyncio
async def test_stream_without_usage_reports_none():
    deltas = await _collect(
        OpenAIChatAdapter(),
        sse({"choices": [{"delta": {"content": "hi"}, "finish_reason": "stop"}]}, done=True),
    )
    assert [d.text_delta for d in deltas] == ["hi"]
    assert all(d.usage is None for d in deltas)


@pytest.mark.asyncio
async def test_cumulative_usage_is_not_double_counted():
    chat = await _collect(
        OpenAIChatAdapter(),
        sse(
            {"choices": [{"delta": {"content": "a"}}], "usage": {"prompt_tokens": 10, "completion_tokens": 1, "total_tokens": 11}},
            {"choices": [{"delta": {"content": "b"}}], "usage": {"prompt_tokens": 10, "completion_tokens": 2, "total_tokens": 12}},
            {"choices": [{"delta": {}, "finish_reason": "stop"}], "usage": {"prompt_tokens": 10, "completion_tokens": 3, "total_tokens": 13}},
            done=True,
        ),
    )
    anthropic = await _collect(
        AnthropicMessagesAdapter(),
        sse(
            {"type": "message_start", "message": {"usage": {"input_tokens": 12, "output_tokens": 1}}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "ok"}},
            {"type": "message_delta", "delta": {}, "usage": {"output_tokens": 5}},
            {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 9}},
        ),
    )

    assert [d.usage for d in chat if d.usage] == [Usage(10, 3, 13)]
    assert [d.usage for d in anthropic if d.usage] == [Usage(prompt_tokens=12, completion_tokens=9, total_tokens=21)]


@pytest.mark.asyncio
async def test_malformed_stream_payload_raises_protocol_error():
    with pytest.raises(ProviderError) as exc_info:
        await _collect(OpenAIChatAdapter(), "data: {not json}\n\n")
    assert exc_info.value.error_type == "protocol"


@pytest.mark.asyncio
async def test_in_stream_error_event_raises():
    with pytest.raises(ProviderError) as exc_info:
        await _collect(
            OpenAIChatAdapter(),
            sse({"error": {"message": "server overloaded", "type": "overloaded_error"}}),
        )
    assert exc_info.value.retryable is True
    assert exc_info.value.message == "server overloaded"


@pytest.mark.asyncio
async def test_http_error_status_becomes_provider_error():
    adapter = OpenAIChatAdapter()
    wire = adapter.build_request([UniversalMessage(role=Role.USER, content="hi")], ModelConfig(id="m"), PROVIDER)

    with pytest.raises(ProviderError) as exc_info:
        async for _ in adapter.stream(FailingTransport(429, '{"error": {"message": "Rate limit"}}'), wire, "r1"):
            pass
    assert exc_info.value.error_type == "rate_limit"
    assert exc_info.value.status_code == 429


# ─── responses ────────────────────────────────────────────────────────────────

def test_openai_responses_build_request():
    model = ModelConfig(id="gpt-5", api_model_id="gpt-5-2025", max_tokens=2048)
    wire = OpenAIResponsesAdapter().build_request(_conversation(), model, PROVIDER, "be brief", [READ_FILE])

    assert wire.url == "https://api.example.com/v1/responses"
    body = wire.body
    assert body["model"] == "gpt-5-2025"
    assert body["instructions"] == "be brief\n\nhistory rule"
    assert body["store"] is False
    assert body["max_output_tokens"] == 2048
    assert body["tools"][0] == {
        "type": "function",
        "name": "read_file",
        "description": "Read a file",
        "parameters": READ_FILE.input_schema,
    }
    items = body["input"]
    assert items[0]["content"][1] == {"type": "input_image", "image_url": "data:image/png;base64,QUJD"}
    assert items[1] == {"role": "assistant", "content": "checking"}
    assert items[2]["type"] == "function_call"
    assert items[2]["call_id"] == "call_1"
    assert items[3] == {"type": "function_call_output", "call_id": "call_1", "output": "print(1)"}


@pytest.mark.asyncio
async def test_openai_responses_stream():
    body = "event: response.output_text.delta\n" + sse(
        {"type": "response.output_text.delta", "delta": "Hi"},
        {"type": "response.reasoning_summary_text.delta", "delta": "plan"},
        {
            "type": "response.output_item.added",
            "output_index": 1,
            "item": {"type": "function_call", "call_id": "call_9", "name": "list_directory", "arguments": ""},
        },
        {"type": "response.function_call_arguments.delta", "output_index": 1, "delta": '{"path": "."}'},
        {
            "type": "response.completed",
            "response": {
                "output": [{"type": "function_call"}],
                "usage": {"input_tokens": 7, "output_tokens": 3, "total_tokens": 10},
            },
        },
    )
    deltas = await _collect(OpenAIResponsesAdapter(), body)

    assert deltas[0].text_delta == "Hi"
    assert deltas[1].reasoning_delta == "plan"
    assert deltas[2].tool_call_deltas[0].id == "call_9"
    assert deltas[2].tool_call_deltas[0].index == 1
    assert deltas[3].tool_call_deltas[0].arguments == '{"path": "."}'
    assert deltas[4].finish_reason == "tool_calls"
    assert deltas[-1].usage == Usage(7, 3, 10)


@pytest.mark.asyncio
async def test_openai_responses_failed_event_raises():
    with pytest.raises(ProviderError, match="quota"):
        await _collect(
            OpenAIResponsesAdapter(),
            sse({"type": "response.failed", "response": {"error": {"message": "quota"}}}),
        )


# ─── anthropic messages ───────────────────────────────────────────────────────

def test_anthropic_build_request():
    history = [*_conversation(), UniversalMessage(role=Role.USER, content="and now?")]
    wire = AnthropicMessagesAdapter().build_request(
        history, ModelConfig(id="claude-sonnet-4-5"), PROVIDER, "be brief", [READ_FILE]
    )

    assert wire.url == "https://api.example.com/v1/messages"
    assert wire.headers["x-api-key"] == "sk-test"
    assert wire.headers["anthropic-version"] == "2023-06-01"
    assert "Authorization" not in wire.headers
    body = wire.body
    assert body["system"] == "be brief\n\nhistory rule"
    assert body["tools"][0]["input_schema"] == READ_FILE.input_schema

    messages = body["messages"]
    assert [m["role"] for m in messages] == ["user", "assistant", "user"]
    assert messages[0]["content"][0]["type"] == "image"
    assert messages[1]["content"] == [
        {"type": "text", "text": "checking"},
        {"type": "tool_use", "id": "call_1", "name": "read_file", "input": {"path": "a.py"}},
    ]
    # tool result and the follow-up user turn are merged into one user message
    assert messages[2]["content"] == [
        {"type": "tool_result", "tool_use_id": "call_1", "content": "print(1)"},
        {"type": "text", "text": "and now?"},
    ]


@pytest.mark.asyncio
async def test_anthropic_stream():
    body = sse(
        {"type": "message_start", "message": {"usage": {"input_tokens": 12, "output_tokens": 1}}},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "thinking_delta", "thinking": "hmm"}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Sure"}},
        {
            "type": "content_block_start",
            "index": 1,
            "content_block": {"type": "tool_use", "id": "toolu_1", "name": "read_file"},
        },
        {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '{"path":'}},
        {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": ' "b"}'}},
        {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 20}},
        {"type": "message_stop"},
    )
    deltas = await _collect(AnthropicMessagesAdapter(), body)

    assert [d.reasoning_delta for d in deltas if d.reasoning_delta] == ["hmm"]
    assert [d.text_delta for d in deltas if d.text_delta] == ["Sure"]
    fragments = [tc for d in deltas for tc in d.tool_call_deltas]
    assert fragments[0].id == "toolu_1"
    assert "".join(f.arguments for f in fragments) == '{"path": "b"}'
    assert any(d.finish_reason == "tool_calls" for d in deltas)
    assert deltas[-1].usage == Usage(prompt_tokens=12, completion_tokens=20, total_tokens=32)


@pytest.mark.asyncio
async def test_anthropic_error_event_raises():
    with pytest.raises(ProviderError) as exc_info:
        await _collect(
            AnthropicMessagesAdapter(),
            sse({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}),
        )
    assert exc_info.value.error_type == "server"
    assert exc_info.value.retryable is True


def test_anthropic_auth_error_adds_hint():
    error = AnthropicMessagesAdapter().parse_error(401, '{"error": {"message": "invalid x-api-key"}}')
    assert error.error_type == "auth"
    assert "x-api-key" in (error.details or "")
