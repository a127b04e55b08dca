from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Depends
from sse_starlette.sse import EventSourceResponse

from agent_runtime.agent.events import AgentEvent
from agent_runtime.api.schemas import RunCreateBody
from agent_runtime.deps import get_agent_service
from agent_runtime.security.auth_token import require_runtime_token

router = APIRouter(prefix="/v1", tags=["runs"], dependencies=[Depends(require_runtime_token)])


def event_as_sse(event: AgentEvent) -> dict[str, Any]:
    return {
        "event": event.type.value,
        "id": str(event.seq),
        "data": json.dumps(event.to_dict(), ensure_ascii=False),
    }


@router.post("/runs", status_code=202)
async def create_run(payload: RunCreateBody, agent_service=Depends(get_agent_service)):
    agent_service.start(payload.to_request())
    return {"request_id": payload.request_id}


@router.get("/runs")
async def list_runs(agent_service=Depends(get_agent_service)):
    return {"runs": agent_service.active_runs()}


@router.get("/runs/{request_id}/events")
async def stream_events(request_id: str, agent_service=Depends(get_agent_service)):
    events = agent_service.events(request_id)

    async def event_generator():
        async for event in events:
            yield event_as_sse(event)

    return EventSourceResponse(event_generator())


@router.post("/runs/{request_id}/abort")
async def abort_run(request_id: str, agent_service=Depends(get_agent_service)):
    return {"request_id": request_id, "aborted": agent_service.abort(request_id)}
