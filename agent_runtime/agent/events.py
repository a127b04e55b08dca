"""Run events: one payload dataclass per event type, wrapped in a sequenced AgentEvent."""
from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union


class EventType(str, Enum):
    THINKING = "thinking"
    TEXT_DELTA = "text_delta"
    REASONING_DELTA = "reasoning_delta"
    TOOL_CALL_START = "tool_call_start"
    TOOL_CALL_DELTA = "tool_call_delta"
    TOOL_CALL_COMPLETE = "tool_call_complete"
    TOOL_RESULT = "tool_result"
    TOOL_APPROVAL_REQUIRED = "tool_approval_required"
    PATH_APPROVAL_REQUIRED = "path_approval_required"
    ITERATION_START = "iteration_start"
    ITERATION_COMPLETE = "iteration_complete"
    AGENT_COMPLETE = "agent_complete"
    AGENT_ERROR = "agent_error"
    AGENT_ABORTED = "agent_aborted"


TERMINAL_EVENT_TYPES = frozenset({EventType.AGENT_COMPLETE, EventType.AGENT_ERROR, EventType.AGENT_ABORTED})


@dataclass(frozen=True, slots=True)
class Thinking:
    event_type: ClassVar[EventType] = EventType.THINKING
    iteration: int = 0


@dataclass(frozen=True, slots=True)
class TextDelta:
    event_type: ClassVar[EventType] = EventType.TEXT_DELTA
    text: str
    iteration: int


@dataclass(frozen=True, slots=True)
class ReasoningDelta:
    event_type: ClassVar[EventType] = EventType.REASONING_DELTA
    text: str
    iteration: int


@dataclass(frozen=True, slots=True)
class ToolCallStart:
    event_type: ClassVar[EventType] = EventType.TOOL_CALL_START
    tool_call_id: str
    tool_name: str
    index: int


@dataclass(frozen=True, slots=True)
class ToolCallDelta:
    event_type: ClassVar[EventType] = EventType.TOOL_CALL_DELTA
    tool_call_id: str
    index: int
    arguments_delta: str


@dataclass(frozen=True, slots=True)
class ToolCallComplete:
    event_type: ClassVar[EventType] = EventType.TOOL_CALL_COMPLETE
    tool_call_id: str
    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ToolResultEvent:
    event_type: ClassVar[EventType] = EventType.TOOL_RESULT
    tool_call_id: str
    tool_name: str
    success: bool
    output: str
    duration_ms: int


@dataclass(frozen=True, slots=True)
class ToolApprovalRequired:
    event_type: ClassVar[EventType] = EventType.TOOL_APPROVAL_REQUIRED
    approval_id: str
    tool_call_id: str
    tool_name: str
    description: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class PathApprovalRequired:
    event_type: ClassVar[EventType] = EventType.PATH_APPROVAL_REQUIRED
    approval_id: str
    tool_call_id: str
    tool_name: str
    description: str
    path: str


@dataclass(frozen=True, slots=True)
class IterationStart:
    event_type: ClassVar[EventType] = EventType.ITERATION_START
    iteration: int


@dataclass(frozen=True, slots=True)
class IterationComplete:
    event_type: ClassVar[EventType] = EventType.ITERATION_COMPLETE
    iteration: int
    tool_call_count: int


@dataclass(frozen=True, slots=True)
class AgentComplete:
    event_type: ClassVar[EventType] = EventType.AGENT_COMPLETE
    content: str
    iterations: int
    usage: dict[str, int] | None = None


@dataclass(frozen=True, slots=True)
class AgentError:
    event_type: ClassVar[EventType] = EventType.AGENT_ERROR
    error: str
    code: str
    iteration: int
    retryable: bool = False


@dataclass(frozen=True, slots=True)
class AgentAborted:
    event_type: ClassVar[EventType] = EventType.AGENT_ABORTED
    iteration: int


EventPayload = Union[
    Thinking,
    TextDelta,
    ReasoningDelta,
    ToolCallStart,
    ToolCallDelta,
    ToolCallComplete,
    ToolResultEvent,
    ToolApprovalRequired,
    PathApprovalRequired,
    IterationStart,
    IterationComplete,
    AgentComplete,
    AgentError,
    AgentAborted,
]


@dataclass(frozen=True, slots=True)
class AgentEvent:
    type: EventType
    seq: int
    timestamp: int
    data: EventPayload

    @classmethod
    def create(cls, seq: int, payload: EventPayload) -> AgentEvent:
        return cls(type=payload.event_type, seq=seq, timestamp=int(time.time() * 1000), data=payload)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "seq": self.seq,
            "timestamp": self.timestamp,
            "data": asdict(self.data),
        }
