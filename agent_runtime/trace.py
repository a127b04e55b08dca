from __future__ import annotations

import uuid
from contextvars import ContextVar

TRACE_HEADER = "X-Trace-Id"
MAX_TRACE_ID_LENGTH = 128

_trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)
# Run tasks copy the context of the request that started them.
_request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)


def generate_trace_id() -> str:
    return uuid.uuid4().hex


def normalize_trace_id(candidate: str | None) -> str:
    value = (candidate or "").strip()
    if value and len(value) <= MAX_TRACE_ID_LENGTH and value.isprintable():
        return value
    return generate_trace_id()


def set_current_trace_id(trace_id: str) -> None:
    _trace_id_var.set(trace_id)


def peek_trace_id() -> str | None:
    return _trace_id_var.get()


def get_current_trace_id() -> str:
    return _trace_id_var.get() or generate_trace_id()


def set_current_request_id(request_id: str | None) -> None:
    _request_id_var.set(request_id)


def get_current_request_id() -> str | None:
    return _request_id_var.get()
