from __future__ import annotations

import hmac

from fastapi import Depends, Header

from agent_runtime.config import Settings
from agent_runtime.deps import get_settings
from agent_runtime.errors import RuntimeApiError


def require_runtime_token(
    x_runtime_token: str = Header(default=""),
    settings: Settings = Depends(get_settings),
) -> None:
    """Reject callers that do not present the runtime token."""
    if not hmac.compare_digest(x_runtime_token.encode("utf-8"), settings.runtime_token.encode("utf-8")):
        raise RuntimeApiError(
            code="E_AUTH",
            message="Invalid runtime token.",
            retryable=False,
            status_code=401,
            cause="runtime_token",
        )
