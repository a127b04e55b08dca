"""Server-sent-event line buffering and streamed tool-call assembly."""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Iterable

from agent_runtime.agent.messages import ToolCall

DONE_MARKER = "[DONE]"

_TRAILING_COMMA = re.compile(r",\s*([}\]])")


class SSEParser:
    """Buffers raw text and yields complete ``data:`` payloads.

    A line split across two chunks is held back until its newline arrives.
    Comments, ``event:`` lines and the ``[DONE]`` marker are skipped.
    """

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> list[str]:
        self._buffer += chunk
        last_newline = self._buffer.rfind("\n")
        if last_newline == -1:
            return []
        complete = self._buffer[: last_newline + 1]
        self._buffer = self._buffer[last_newline + 1 :]
        return _extract_payloads(complete.split("\n"))

    def flush(self) -> list[str]:
        remaining, self._buffer = self._buffer, ""
        if not remaining.strip():
            return []
        return _extract_payloads(remaining.split("\n"))


def _extract_payloads(lines: Iterable[str]) -> list[str]:
    payloads: list[str] = []
    for line in lines:
        stripped = line.strip()
        if not stripped.startswith("data:"):
            continue
        data = stripped[5:].strip()
        if not data or data == DONE_MARKER:
            continue
        payloads.append(data)
    return payloads


@dataclass(slots=True)
class _PendingCall:
    id: str
    name: str
    arguments: str


class ToolCallAccumulator:
    """Collects tool-call fragments by stream index.

    A fragment with both id and name starts a call; later fragments at the same
    index append to its argument text.
    """

    def __init__(self) -> None:
        self._pending: dict[int, _PendingCall] = {}

    def feed(self, index: int, call_id: str | None, name: str | None, arguments: str | None) -> bool:
        """Returns True when the fragment started a new call."""
        if call_id and name:
            self._pending[index] = _PendingCall(id=call_id, name=name, arguments=arguments or "")
            return True
        if arguments:
            existing = self._pending.get(index)
            if existing is not None:
                existing.arguments += arguments
        return False

    def get(self, index: int) -> _PendingCall | None:
        return self._pending.get(index)

    def flush(self) -> list[ToolCall]:
        calls = [
            ToolCall(id=pending.id, name=pending.name, arguments=parse_arguments(pending.arguments))
            for _, pending in sorted(self._pending.items())
        ]
        self._pending.clear()
        return calls


def parse_arguments(text: str) -> dict[str, Any]:
    if not text.strip():
        return {}
    for candidate in (text, repair_json(text)):
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return {}


def repair_json(text: str) -> str:
    """Best-effort fix for truncated or sloppy JSON argument text."""
    out: list[str] = []
    in_str = escaped = False
    for ch in text.strip():
        if escaped:
            escaped = False
            out.append(ch)
            continue
        if ch == "\\" and in_str:
            escaped = True
            out.append(ch)
            continue
        if ch == '"':
            in_str = not in_str
            out.append(ch)
            continue
        if in_str:
            if ch == "\n":
                out.append("\\n")
                continue
            if ch == "\r":
                out.append("\\r")
                continue
            if ch == "\t":
                out.append("\\t")
                continue
            if ord(ch) < 32:
                continue
        out.append(ch)
    repaired = _TRAILING_COMMA.sub(r"\1", "".join(out))

    braces = brackets = 0
    in_str = escaped = False
    for ch in repaired:
        if escaped:
            escaped = False
            continue
        if ch == "\\" and in_str:
            escaped = True
            continue
        if ch == '"':
            in_str = not in_str
            continue
        if in_str:
            continue
        if ch == "{":
            braces += 1
        elif ch == "}":
            braces -= 1
        elif ch == "[":
            brackets += 1
        elif ch == "]":
            brackets -= 1

    if in_str:
        repaired += '"'
    repaired += "]" * max(brackets, 0)
    repaired += "}" * max(braces, 0)
    return repaired
