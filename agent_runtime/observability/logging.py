from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from agent_runtime.trace import get_current_request_id, peek_trace_id


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "level": record.levelname.lower(),
            "ts": datetime.now(tz=timezone.utc).isoformat(),
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in (
            "trace_id",
            "request_id",
            "iteration",
            "tool_name",
            "tool_call_id",
            "approval_id",
            "duration_ms",
            "outcome",
            "path",
            "status",
            "method",
        ):
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        for key, value in (("trace_id", peek_trace_id()), ("request_id", get_current_request_id())):
            if value and key not in payload:
                payload[key] = value

        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False)


def get_runtime_logger(name: str = "agent_runtime") -> logging.Logger:
    root = logging.getLogger("agent_runtime")
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter())
        root.addHandler(handler)
        root.setLevel(logging.INFO)
        root.propagate = False
    if name == "agent_runtime":
        return root
    return root.getChild(name.removeprefix("agent_runtime."))
