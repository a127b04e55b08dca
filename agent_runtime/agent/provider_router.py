from __future__ import annotations

from agent_runtime.agent.providers.anthropic_messages import AnthropicMessagesAdapter
from agent_runtime.agent.providers.base import ModelConfig, ProviderAdapter, ProviderConfig, WireFormat
from agent_runtime.agent.providers.openai_chat import OpenAIChatAdapter
from agent_runtime.agent.providers.openai_responses import OpenAIResponsesAdapter

_ADAPTERS: dict[WireFormat, ProviderAdapter] = {
    WireFormat.OPENAI_CHAT: OpenAIChatAdapter(),
    WireFormat.OPENAI_RESPONSES: OpenAIResponsesAdapter(),
    WireFormat.ANTHROPIC_MESSAGES: AnthropicMessagesAdapter(),
}

MODEL_FORMAT_MAP: dict[str, WireFormat] = {
    "gpt-5.2": WireFormat.OPENAI_RESPONSES,
    "gpt-5.2-codex": WireFormat.OPENAI_RESPONSES,
    "gpt-5.1": WireFormat.OPENAI_RESPONSES,
    "gpt-5.1-codex": WireFormat.OPENAI_RESPONSES,
    "gpt-5.1-codex-max": WireFormat.OPENAI_RESPONSES,
    "gpt-5.1-codex-mini": WireFormat.OPENAI_RESPONSES,
    "gpt-5": WireFormat.OPENAI_RESPONSES,
    "gpt-5-codex": WireFormat.OPENAI_RESPONSES,
    "gpt-5-nano": WireFormat.OPENAI_RESPONSES,
    "claude-opus-4-6": WireFormat.ANTHROPIC_MESSAGES,
    "claude-opus-4-5": WireFormat.ANTHROPIC_MESSAGES,
    "claude-opus-4-1": WireFormat.ANTHROPIC_MESSAGES,
    "claude-sonnet-4-5": WireFormat.ANTHROPIC_MESSAGES,
    "claude-sonnet-4": WireFormat.ANTHROPIC_MESSAGES,
    "claude-haiku-4-5": WireFormat.ANTHROPIC_MESSAGES,
    "claude-3-5-haiku": WireFormat.ANTHROPIC_MESSAGES,
    "minimax-m2.1-free": WireFormat.ANTHROPIC_MESSAGES,
}


def resolve_format(model: ModelConfig, provider: ProviderConfig) -> WireFormat:
    if model.wire_format is not None:
        return WireFormat(model.wire_format)
    known = MODEL_FORMAT_MAP.get(model.id)
    if known is not None:
        return known
    return WireFormat(provider.default_format)


def get_adapter(model: ModelConfig, provider: ProviderConfig) -> ProviderAdapter:
    return _ADAPTERS[resolve_format(model, provider)]
