"""Request bodies for the HTTP surface."""
from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from agent_runtime.agent.approval import ApprovalMode
from agent_runtime.agent.loop import RunRequest
from agent_runtime.agent.messages import ImageAttachment
from agent_runtime.agent.providers.base import ModelConfig, ProviderConfig, WireFormat
from agent_runtime.agent.tool_registry import AgentMode


class ProviderBody(BaseModel):
    id: str
    base_url: str
    api_key: str = ""
    name: str = ""
    default_format: WireFormat = WireFormat.OPENAI_CHAT
    extra_headers: dict[str, str] = Field(default_factory=dict)

    def to_config(self) -> ProviderConfig:
        return ProviderConfig(**self.model_dump())


class ModelBody(BaseModel):
    id: str
    name: str = ""
    wire_format: WireFormat | None = None
    base_url: str | None = None
    api_model_id: str | None = None
    extra_headers: dict[str, str] = Field(default_factory=dict)
    max_tokens: int | None = Field(default=None, ge=1)
    context_window: int | None = Field(default=None, ge=1)
    supports_tools: bool = True
    temperature: float | None = None

    def to_config(self) -> ModelConfig:
        return ModelConfig(**self.model_dump())


class ImageBody(BaseModel):
    media_type: str = "image/png"
    data: str


class RunCreateBody(BaseModel):
    request_id: str = Field(min_length=1)
    message: str
    model: ModelBody
    provider: ProviderBody
    max_iterations: int = Field(ge=1)
    history: list[dict[str, Any]] = Field(default_factory=list)
    file_context: str | None = None
    images: list[ImageBody] = Field(default_factory=list)
    tool_names: list[str] | None = None
    system_prompt: str | None = None
    agent_mode: AgentMode = AgentMode.BUILDER
    workspace_root: str | None = None
    approval_mode: ApprovalMode | None = None
    session_id: str | None = None

    def to_request(self) -> RunRequest:
        return RunRequest(
            request_id=self.request_id,
            message=self.message,
            model=self.model.to_config(),
            provider=self.provider.to_config(),
            max_iterations=self.max_iterations,
            history=list(self.history),
            file_context=self.file_context,
            images=tuple(ImageAttachment(media_type=img.media_type, data=img.data) for img in self.images),
            tool_names=self.tool_names,
            system_prompt=self.system_prompt,
            agent_mode=self.agent_mode,
            workspace_root=Path(self.workspace_root).resolve() if self.workspace_root else None,
            approval_mode=self.approval_mode,
            session_id=self.session_id,
        )


class ApprovalDecisionBody(BaseModel):
    approved: bool


class ToolExecuteBody(BaseModel):
    arguments: dict[str, Any] = Field(default_factory=dict)
    workspace_root: str | None = None
