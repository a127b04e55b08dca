from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

APPROVAL_MODES = {"allow-all", "session-only", "ask"}


@dataclass(slots=True)
class Settings:
    runtime_host: str
    runtime_port: int
    workspace_root: Path
    approval_mode: str
    http_timeout_seconds: float
    http_verify_tls: bool
    command_timeout_seconds: float | None
    tool_output_limit: int
    event_output_limit: int
    subscriber_drain_timeout_seconds: float
    finished_run_memory: int
    runtime_token: str
    cors_origins: list[str]


def _parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_optional_float(value: str | None) -> float | None:
    if value is None or value.strip() == "":
        return None
    parsed = float(value)
    if parsed <= 0:
        return None
    return parsed


def load_settings() -> Settings:
    approval_mode = os.getenv("AGENT_RUNTIME_APPROVAL_MODE", "ask").strip().lower()
    if approval_mode not in APPROVAL_MODES:
        raise RuntimeError(
            f"AGENT_RUNTIME_APPROVAL_MODE must be one of {sorted(APPROVAL_MODES)}, got {approval_mode!r}"
        )

    workspace_root = Path(
        os.getenv("AGENT_RUNTIME_WORKSPACE_ROOT", str(Path.cwd().resolve()))
    ).resolve()

    return Settings(
        runtime_host=os.getenv("AGENT_RUNTIME_HOST", "127.0.0.1"),
        runtime_port=int(os.getenv("AGENT_RUNTIME_PORT", "8050")),
        workspace_root=workspace_root,
        approval_mode=approval_mode,
        http_timeout_seconds=float(os.getenv("AGENT_RUNTIME_HTTP_TIMEOUT_SECONDS", "120")),
        http_verify_tls=_parse_bool(os.getenv("AGENT_RUNTIME_HTTP_VERIFY_TLS"), True),
        command_timeout_seconds=_parse_optional_float(os.getenv("AGENT_RUNTIME_COMMAND_TIMEOUT_SECONDS")),
        tool_output_limit=int(os.getenv("AGENT_RUNTIME_TOOL_OUTPUT_LIMIT", "50000")),
        event_output_limit=int(os.getenv("AGENT_RUNTIME_EVENT_OUTPUT_LIMIT", "5000")),
        subscriber_drain_timeout_seconds=float(os.getenv("AGENT_RUNTIME_SUBSCRIBER_DRAIN_TIMEOUT_SECONDS", "5")),
        finished_run_memory=int(os.getenv("AGENT_RUNTIME_FINISHED_RUN_MEMORY", "1024")),
        runtime_token=os.getenv("AGENT_RUNTIME_TOKEN", "dev-runtime-token"),
        cors_origins=_parse_list(os.getenv("AGENT_RUNTIME_CORS_ORIGINS", "*")),
    )
