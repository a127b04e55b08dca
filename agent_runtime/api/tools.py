from __future__ import annotations

from pathlib import Path

from fastapi import APIRouter, Depends

from agent_runtime.agent.tool_registry import AgentMode, ToolContext
from agent_runtime.api.schemas import ToolExecuteBody
from agent_runtime.deps import get_agent_service
from agent_runtime.security.auth_token import require_runtime_token

router = APIRouter(prefix="/v1", tags=["tools"])


@router.get("/tools")
async def list_tools(mode: AgentMode | None = None, agent_service=Depends(get_agent_service)):
    return {
        "tools": [
            {"name": schema.name, "description": schema.description, "input_schema": schema.input_schema}
            for schema in agent_service.get_tools(mode)
        ]
    }


@router.post("/tools/{name}/execute", dependencies=[Depends(require_runtime_token)])
async def execute_tool(name: str, payload: ToolExecuteBody, agent_service=Depends(get_agent_service)):
    workspace_root = Path(payload.workspace_root).resolve() if payload.workspace_root else agent_service.workspace_root
    context = ToolContext(workspace_root=workspace_root, output_limit=agent_service.tool_output_limit)
    result = await agent_service.execute_tool(name, payload.arguments, context)
    return {
        "tool_name": result.tool_name,
        "success": result.success,
        "output": result.output,
        "duration_ms": result.duration_ms,
    }
