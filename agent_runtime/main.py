from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from agent_runtime.api import approvals, ops, runs, tools
from agent_runtime.config import load_settings
from agent_runtime.deps import set_dependencies
from agent_runtime.errors import error_from_exception
from agent_runtime.observability.logging import get_runtime_logger
from agent_runtime.services.agent_service import AgentService
from agent_runtime.trace import TRACE_HEADER, get_current_trace_id, normalize_trace_id, set_current_trace_id

settings = load_settings()
logger = get_runtime_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    agent_service = AgentService.from_settings(settings)
    set_dependencies(agent_service, settings)
    logger.info(
        "agent runtime started",
        extra={"path": str(settings.workspace_root), "outcome": settings.approval_mode},
    )

    yield

    await agent_service.aclose()
    set_dependencies(None)


app = FastAPI(title="Agent Runtime", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def trace_middleware(request: Request, call_next):
    trace_id = normalize_trace_id(request.headers.get(TRACE_HEADER))
    request.state.trace_id = trace_id
    set_current_trace_id(trace_id)
    started = datetime.now(tz=timezone.utc)
    try:
        response = await call_next(request)
    except Exception as exc:  # noqa: BLE001
        status_code, payload = error_from_exception(exc, trace_id)
        response = JSONResponse(status_code=status_code, content=payload)
    duration_ms = int((datetime.now(tz=timezone.utc) - started).total_seconds() * 1000)
    logger.info(
        "http_request",
        extra={
            "trace_id": trace_id,
            "path": request.url.path,
            "method": request.method,
            "status": response.status_code,
            "duration_ms": duration_ms,
            "outcome": "ok" if response.status_code < 400 else "error",
        },
    )
    response.headers[TRACE_HEADER] = trace_id
    return response


@app.exception_handler(Exception)
async def exception_handler(request: Request, exc: Exception):
    trace_id = str(getattr(request.state, "trace_id", get_current_trace_id()))
    status_code, payload = error_from_exception(exc, trace_id)
    response = JSONResponse(status_code=status_code, content=payload)
    response.headers[TRACE_HEADER] = trace_id
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return await exception_handler(request, exc)


app.include_router(runs.router)
app.include_router(approvals.router)
app.include_router(tools.router)
app.include_router(ops.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("agent_runtime.main:app", host=settings.runtime_host, port=settings.runtime_port)
