from __future__ import annotations

from fastapi import APIRouter, Depends

from agent_runtime.api.schemas import ApprovalDecisionBody
from agent_runtime.deps import get_agent_service
from agent_runtime.security.auth_token import require_runtime_token

router = APIRouter(prefix="/v1", tags=["approvals"], dependencies=[Depends(require_runtime_token)])


@router.post("/approvals/tool/{approval_id}")
async def respond_tool_approval(
    approval_id: str,
    payload: ApprovalDecisionBody,
    agent_service=Depends(get_agent_service),
):
    request = agent_service.respond_tool_approval(approval_id, payload.approved)
    return {"ok": True, "approval_id": approval_id, "request_id": request.run_id, "approved": payload.approved}


@router.post("/approvals/path/{approval_id}")
async def respond_path_approval(
    approval_id: str,
    payload: ApprovalDecisionBody,
    agent_service=Depends(get_agent_service),
):
    request = agent_service.respond_path_approval(approval_id, payload.approved)
    return {"ok": True, "approval_id": approval_id, "request_id": request.run_id, "approved": payload.approved}
