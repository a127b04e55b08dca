from __future__ import annotations

from fastapi import APIRouter, Depends

from agent_runtime.deps import get_agent_service
from agent_runtime.observability.metrics import get_runtime_metrics

router = APIRouter(prefix="/v1", tags=["ops"])

RUNTIME_VERSION = "0.1.0"


@router.get("/health")
async def health(agent_service=Depends(get_agent_service)):
    return {
        "ok": True,
        "version": RUNTIME_VERSION,
        "active_runs": len(agent_service.active_runs()),
        "runtime_status": "ok",
    }


@router.get("/metrics")
async def metrics():
    return get_runtime_metrics().snapshot()
