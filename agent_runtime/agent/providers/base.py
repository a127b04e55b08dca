"""Provider base types: configs, wire requests, stream deltas and ProviderAdapter."""
from __future__ import annotations

import json
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Mapping

from agent_runtime.agent.messages import Role, UniversalMessage
from agent_runtime.agent.providers.sse import SSEParser
from agent_runtime.agent.transport import HttpStatusFailure

if TYPE_CHECKING:
    from agent_runtime.agent.transport import HttpTransport

SAFETY_BUFFER = 2000
MIN_OUTPUT_TOKENS = 1000
DEFAULT_MAX_TOKENS = 4096

RESERVED_HEADER_KEYS = frozenset({"__proto__", "constructor", "prototype"})


class WireFormat(str, Enum):
    OPENAI_CHAT = "openai-chat"
    OPENAI_RESPONSES = "openai-responses"
    ANTHROPIC_MESSAGES = "anthropic-messages"


@dataclass(slots=True)
class ProviderConfig:
    id: str
    base_url: str
    api_key: str = ""
    name: str = ""
    default_format: WireFormat = WireFormat.OPENAI_CHAT
    extra_headers: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ModelConfig:
    id: str
    name: str = ""
    wire_format: WireFormat | None = None
    base_url: str | None = None
    api_model_id: str | None = None
    extra_headers: dict[str, str] = field(default_factory=dict)
    max_tokens: int | None = None
    context_window: int | None = None
    supports_tools: bool = True
    temperature: float | None = None

    @property
    def wire_model_id(self) -> str:
        return self.api_model_id or self.id


@dataclass(frozen=True, slots=True)
class ToolSchema:
    name: str
    description: str
    input_schema: dict


@dataclass(frozen=True, slots=True)
class WireRequest:
    url: str
    headers: dict[str, str]
    body: dict[str, Any]


@dataclass(frozen=True, slots=True)
class ToolCallDelta:
    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""


@dataclass(frozen=True, slots=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    def merge(self, other: Usage) -> Usage:
        """Fold in a later report; the latest non-zero value of each counter wins."""
        prompt = other.prompt_tokens or self.prompt_tokens
        completion = other.completion_tokens or self.completion_tokens
        total = max(other.total_tokens or self.total_tokens, prompt + completion)
        return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True, slots=True)
class StreamDelta:
    text_delta: str | None = None
    reasoning_delta: str | None = None
    tool_call_deltas: tuple[ToolCallDelta, ...] = ()
    finish_reason: str | None = None
    usage: Usage | None = None


@dataclass(eq=False, slots=True)
class ProviderError(Exception):
    status_code: int | None
    message: str
    error_type: str = "unknown"
    retryable: bool = False
    details: str | None = None

    def __str__(self) -> str:
        if self.status_code is None:
            return self.message
        return f"{self.message} (status {self.status_code})"


def cap_max_tokens(max_tokens: int, context_window: int | None, serialized_input: str) -> int:
    """Shrink ``max_tokens`` so that input plus output fits the context window."""
    if not context_window:
        return max_tokens
    estimated_input = math.ceil(len(serialized_input) / 3.5)
    available = context_window - estimated_input - SAFETY_BUFFER
    return max(MIN_OUTPUT_TOKENS, min(max_tokens, available))


def merge_headers(base: dict[str, str], *extras: Mapping[str, Any] | None) -> dict[str, str]:
    headers = dict(base)
    for extra in extras:
        for key, value in (extra or {}).items():
            if key in RESERVED_HEADER_KEYS or not isinstance(value, str):
                continue
            headers[key] = value
    return headers


def join_base_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


def system_text(history: list[UniversalMessage], system_prompt: str | None) -> str:
    parts = [system_prompt] if system_prompt else []
    parts.extend(msg.content for msg in history if msg.role is Role.SYSTEM and msg.content)
    return "\n\n".join(parts)


def parse_api_error_common(status: int, body: str) -> ProviderError:
    message = body
    try:
        payload = json.loads(body)
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            message = str(error["message"])
        elif isinstance(error, str) and error:
            message = error
        elif payload.get("message"):
            message = str(payload["message"])
        elif payload.get("detail"):
            message = str(payload["detail"])

    lower = message.lower()
    if status == 401 or "unauthorized" in lower or "invalid api key" in lower:
        return ProviderError(status, "Invalid or expired API key", "auth", False, message)
    if status == 402 or "billing" in lower or "payment" in lower or "insufficient" in lower:
        return ProviderError(status, "Billing issue: insufficient credits", "billing", False, message)
    if status == 429 or "rate limit" in lower or "rate_limit" in lower:
        return ProviderError(status, "Rate limit exceeded", "rate_limit", True, message)
    if status >= 500 or "unavailable" in lower or "overloaded" in lower:
        return ProviderError(status, "Model unavailable or overloaded", "server", True, message)
    return ProviderError(status, message or f"Request failed (status {status})", "unknown", False)


class ProviderAdapter(ABC):
    wire_format: WireFormat

    @abstractmethod
    def build_request(
        self,
        history: list[UniversalMessage],
        model: ModelConfig,
        provider: ProviderConfig,
        system_prompt: str | None = None,
        tools: list[ToolSchema] | None = None,
    ) -> WireRequest: ...

    @abstractmethod
    def parse_event(self, payload: dict[str, Any]) -> StreamDelta | None:
        """Translate one decoded stream event; ``None`` when it carries nothing."""

    def parse_error(self, status: int, body: str) -> ProviderError:
        return parse_api_error_common(status, body)

    def in_stream_error(self, payload: dict[str, Any]) -> ProviderError | None:
        error = payload.get("error")
        if payload.get("type") == "error" or isinstance(error, dict):
            detail = error if isinstance(error, dict) else {}
            message = str(detail.get("message") or "provider reported a stream error")
            kind = str(detail.get("type") or "")
            if "overloaded" in kind or "rate_limit" in kind:
                return ProviderError(None, message, "rate_limit" if "rate_limit" in kind else "server", True)
            return ProviderError(None, message, "unknown", False)
        return None

    async def parse_stream(self, chunks: AsyncIterator[str]) -> AsyncIterator[StreamDelta]:
        """Decode raw SSE text chunks into deltas.

        Usage counters keep their latest reported value and are reported once,
        in a final delta, only when the provider sent any.
        """
        parser = SSEParser()
        reported: Usage | None = None

        def consume(data: str) -> StreamDelta | None:
            nonlocal reported
            delta = self._decode(data)
            if delta is None:
                return None
            if delta.usage is not None:
                reported = delta.usage if reported is None else reported.merge(delta.usage)
                delta = replace(delta, usage=None)
            return delta if _has_content(delta) else None

        async for chunk in chunks:
            for data in parser.feed(chunk):
                delta = consume(data)
                if delta is not None:
                    yield delta

        for data in parser.flush():
            delta = consume(data)
            if delta is not None:
                yield delta

        if reported is not None:
            yield StreamDelta(usage=reported)

    def _decode(self, data: str) -> StreamDelta | None:
        try:
            payload = json.loads(data)
        except ValueError as exc:
            raise ProviderError(None, f"malformed stream payload: {data[:200]}", "protocol") from exc
        if not isinstance(payload, dict):
            raise ProviderError(None, f"unexpected stream payload: {data[:200]}", "protocol")
        error = self.in_stream_error(payload)
        if error is not None:
            raise error
        return self.parse_event(payload)

    async def stream(self, transport: HttpTransport, wire: WireRequest, request_id: str) -> AsyncIterator[StreamDelta]:
        try:
            async for delta in self.parse_stream(transport.stream(wire, request_id=request_id)):
                yield delta
        except HttpStatusFailure as exc:
            raise self.parse_error(exc.status_code, exc.body) from exc


def _has_content(delta: StreamDelta) -> bool:
    return bool(delta.text_delta or delta.reasoning_delta or delta.tool_call_deltas or delta.finish_reason)
