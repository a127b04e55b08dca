from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict


@dataclass(slots=True)
class RuntimeMetrics:
    runs_total: int = 0
    runs_completed_total: int = 0
    runs_failed_total: int = 0
    runs_aborted_total: int = 0
    tool_calls_total: Dict[str, int] = field(default_factory=dict)
    tool_failures_total: int = 0
    approvals_pending: int = 0
    approvals_denied_total: int = 0

    def increment_tool_call(self, tool_name: str, *, success: bool) -> None:
        self.tool_calls_total[tool_name] = self.tool_calls_total.get(tool_name, 0) + 1
        if not success:
            self.tool_failures_total += 1

    def record_terminal(self, status: str) -> None:
        if status == "completed":
            self.runs_completed_total += 1
        elif status == "aborted":
            self.runs_aborted_total += 1
        else:
            self.runs_failed_total += 1

    def snapshot(self) -> dict:
        return {
            "runs_total": self.runs_total,
            "runs_completed_total": self.runs_completed_total,
            "runs_failed_total": self.runs_failed_total,
            "runs_aborted_total": self.runs_aborted_total,
            "tool_calls_total": dict(self.tool_calls_total),
            "tool_failures_total": self.tool_failures_total,
            "approvals_pending": self.approvals_pending,
            "approvals_denied_total": self.approvals_denied_total,
        }


_runtime_metrics = RuntimeMetrics()


def get_runtime_metrics() -> RuntimeMetrics:
    return _runtime_metrics
