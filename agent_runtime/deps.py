from __future__ import annotations

from agent_runtime.config import Settings
from agent_runtime.services.agent_service import AgentService

_agent_service: AgentService | None = None
_settings: Settings | None = None


def set_dependencies(agent_service: AgentService | None, settings: Settings | None = None) -> None:
    global _agent_service, _settings
    _agent_service = agent_service
    _settings = settings


def get_agent_service() -> AgentService:
    if _agent_service is None:
        raise RuntimeError("AgentService not initialized")
    return _agent_service


def get_settings() -> Settings:
    if _settings is None:
        raise RuntimeError("Settings not initialized")
    return _settings
