"""Context window management: token estimation and history trimming."""
from __future__ import annotations

from agent_runtime.agent.messages import Role, UniversalMessage

DEFAULT_MIN_KEEP = 4


def estimate_message_tokens(message: UniversalMessage) -> int:
    chars = len(message.content)
    for tc in message.tool_calls:
        chars += len(tc.name) + len(str(tc.arguments))
    return chars // 4


def estimate_tokens(messages: list[UniversalMessage]) -> int:
    """Rough token estimate: total chars / 4."""
    return sum(estimate_message_tokens(msg) for msg in messages)


def _group_exchanges(messages: list[UniversalMessage]) -> list[list[UniversalMessage]]:
    # An assistant message and the tool results answering it stay in one group.
    groups: list[list[UniversalMessage]] = []
    for msg in messages:
        if msg.role is Role.TOOL and groups and groups[-1][0].role is Role.ASSISTANT:
            groups[-1].append(msg)
        else:
            groups.append([msg])
    return groups


def trim_history(
    history: list[UniversalMessage],
    max_tokens: int,
    *,
    min_keep: int = DEFAULT_MIN_KEEP,
) -> list[UniversalMessage]:
    """Drop the oldest exchanges until the history fits in ``max_tokens``.

    System messages are always kept, and so is the most recent exchange.
    Returns a new list; ``history`` is not modified.
    """
    if max_tokens <= 0 or estimate_tokens(history) <= max_tokens:
        return list(history)

    system = [msg for msg in history if msg.role is Role.SYSTEM]
    groups = _group_exchanges([msg for msg in history if msg.role is not Role.SYSTEM])

    budget = max_tokens - estimate_tokens(system)
    kept_count = sum(len(g) for g in groups)
    total = sum(estimate_tokens(g) for g in groups)

    while len(groups) > 1 and total > budget and kept_count - len(groups[0]) >= min_keep:
        dropped = groups.pop(0)
        kept_count -= len(dropped)
        total -= estimate_tokens(dropped)

    # The request view must not open on an orphaned assistant turn.
    while len(groups) > 1 and groups[0][0].role is not Role.USER:
        groups.pop(0)

    return [*system, *(msg for group in groups for msg in group)]
