from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx
from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError

from agent_runtime.agent.approval import ApprovalNotFound
from agent_runtime.agent.messages import InvalidHistory, ProtocolError
from agent_runtime.agent.providers.base import ProviderError
from agent_runtime.agent.run_registry import DuplicateRun, RunNotFound
from agent_runtime.agent.transport import TransportError
from agent_runtime.security.command_guard import CommandGuardError
from agent_runtime.security.path_guard import PathGuardError

DEFAULT_INTERNAL_MESSAGE = "Internal server error"


@dataclass(eq=False, slots=True)
class RuntimeApiError(Exception):
    code: str
    message: str
    retryable: bool
    status_code: int
    details: dict[str, Any] | None = None
    cause: str | None = None


def build_runtime_error(
    *,
    code: str,
    message: str,
    trace_id: str,
    retryable: bool,
    details: dict[str, Any] | None = None,
    cause: str | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "code": code,
        "message": message,
        "trace_id": trace_id,
        "retryable": retryable,
        "ts": datetime.now(tz=timezone.utc).isoformat(),
    }
    if details:
        payload["details"] = details
    if cause:
        payload["cause"] = cause
    return payload


def error_response(
    *,
    code: str,
    message: str,
    trace_id: str,
    retryable: bool,
    details: dict[str, Any] | None = None,
    cause: str | None = None,
) -> dict[str, Any]:
    return {
        "error": build_runtime_error(
            code=code,
            message=message,
            trace_id=trace_id,
            retryable=retryable,
            details=details,
            cause=cause,
        )
    }


def _provider_error(exc: ProviderError, trace_id: str) -> tuple[int, dict[str, Any]]:
    details = {"provider_status": exc.status_code, "error_type": exc.error_type}
    if exc.details:
        details["provider_message"] = exc.details
    if exc.error_type == "auth":
        status, code = 401, "E_PROVIDER_AUTH"
    elif exc.error_type == "rate_limit":
        status, code = 429, "E_PROVIDER_RATE_LIMIT"
    elif exc.error_type == "billing":
        status, code = 402, "E_PROVIDER_BILLING"
    elif exc.error_type == "protocol":
        status, code = 502, "E_PROTOCOL"
    else:
        status, code = 502, "E_PROVIDER"
    return (
        status,
        error_response(
            code=code,
            message=str(exc),
            trace_id=trace_id,
            retryable=exc.retryable,
            details=details,
            cause="provider_error",
        ),
    )


def error_from_exception(exc: Exception, trace_id: str) -> tuple[int, dict[str, Any]]:
    if isinstance(exc, RuntimeApiError):
        return (
            exc.status_code,
            error_response(
                code=exc.code,
                message=exc.message,
                trace_id=trace_id,
                retryable=exc.retryable,
                details=exc.details,
                cause=exc.cause,
            ),
        )

    if isinstance(exc, RequestValidationError):
        return (
            422,
            error_response(
                code="E_SCHEMA_INVALID",
                message="Request validation failed.",
                trace_id=trace_id,
                retryable=False,
                details={"errors": exc.errors()},
                cause="request_validation_error",
            ),
        )

    if isinstance(exc, HTTPException):
        retryable = exc.status_code >= 500
        code = "E_INTERNAL" if retryable else "E_SCHEMA_INVALID"
        if exc.status_code == 404:
            code = "E_NOT_FOUND"
        return (
            exc.status_code,
            error_response(
                code=code,
                message=str(exc.detail),
                trace_id=trace_id,
                retryable=retryable,
                cause="http_exception",
            ),
        )

    if isinstance(exc, DuplicateRun):
        return (
            409,
            error_response(
                code="E_DUPLICATE_RUN",
                message=str(exc),
                trace_id=trace_id,
                retryable=False,
                cause="duplicate_run",
            ),
        )

    if isinstance(exc, RunNotFound):
        return (
            404,
            error_response(
                code="E_RUN_NOT_FOUND",
                message=str(exc),
                trace_id=trace_id,
                retryable=False,
                cause="run_not_found",
            ),
        )

    if isinstance(exc, ApprovalNotFound):
        return (
            404,
            error_response(
                code="E_APPROVAL_NOT_FOUND",
                message=str(exc),
                trace_id=trace_id,
                retryable=False,
                cause="approval_not_found",
            ),
        )

    if isinstance(exc, PathGuardError):
        return (
            400,
            error_response(
                code="E_PATH_ESCAPE",
                message=str(exc),
                trace_id=trace_id,
                retryable=False,
                cause="path_guard",
            ),
        )

    if isinstance(exc, CommandGuardError):
        return (
            403,
            error_response(
                code="E_TOOL_DENIED",
                message="Tool execution denied by policy.",
                trace_id=trace_id,
                retryable=False,
                details={"reason": str(exc)},
                cause="command_guard",
            ),
        )

    if isinstance(exc, ProviderError):
        return _provider_error(exc, trace_id)

    if isinstance(exc, InvalidHistory):
        return (
            400,
            error_response(
                code="E_PROTOCOL",
                message=str(exc),
                trace_id=trace_id,
                retryable=False,
                cause="invalid_history",
            ),
        )

    if isinstance(exc, ProtocolError):
        return (
            502,
            error_response(
                code="E_PROTOCOL",
                message=str(exc),
                trace_id=trace_id,
                retryable=False,
                cause="protocol_error",
            ),
        )

    if isinstance(exc, httpx.TimeoutException):
        return (
            503,
            error_response(
                code="E_NETWORK_TIMEOUT",
                message="Network timeout.",
                trace_id=trace_id,
                retryable=True,
                cause="network_timeout",
            ),
        )

    if isinstance(exc, TransportError):
        cause = exc.__cause__
        return (
            503,
            error_response(
                code="E_NETWORK_TIMEOUT" if isinstance(cause, httpx.TimeoutException) else "E_NETWORK",
                message=f"Network request failed: {exc}",
                trace_id=trace_id,
                retryable=True,
                cause="transport_error",
            ),
        )

    if isinstance(exc, (KeyError, ValueError, TypeError)):
        return (
            400,
            error_response(
                code="E_SCHEMA_INVALID",
                message=str(exc) or "Invalid request or payload shape.",
                trace_id=trace_id,
                retryable=False,
                cause=exc.__class__.__name__,
            ),
        )

    return (
        500,
        error_response(
            code="E_INTERNAL",
            message=DEFAULT_INTERNAL_MESSAGE,
            trace_id=trace_id,
            retryable=False,
            cause=exc.__class__.__name__,
        ),
    )
