"""HTTP transport for provider calls (httpx).

No retries happen here; a failed request surfaces to the caller unchanged.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, AsyncIterator

import httpx

from agent_runtime.observability.logging import get_runtime_logger

if TYPE_CHECKING:
    from agent_runtime.agent.providers.base import WireRequest

logger = get_runtime_logger(__name__)

_ERROR_BODY_LIMIT = 4000


class TransportError(Exception):
    """The request never produced an HTTP response."""


class HttpStatusFailure(Exception):
    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code
        self.body = body


class HttpTransport:
    def __init__(
        self,
        *,
        timeout_seconds: float = 120.0,
        verify_tls: bool = True,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 30.0)),
            verify=verify_tls,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def stream(self, wire: WireRequest, *, request_id: str) -> AsyncIterator[str]:
        """Streaming POST; yields decoded text chunks as they arrive."""
        body = dict(wire.body)
        body["stream"] = True
        logger.debug(
            "opening provider stream",
            extra={"request_id": request_id, "path": wire.url, "method": "POST"},
        )
        try:
            async with self._client.stream("POST", wire.url, headers=wire.headers, json=body) as resp:
                if resp.status_code >= 400:
                    raw = await resp.aread()
                    text = raw.decode("utf-8", errors="replace")[:_ERROR_BODY_LIMIT]
                    logger.warning(
                        "provider returned error status",
                        extra={"request_id": request_id, "path": wire.url, "status": resp.status_code},
                    )
                    raise HttpStatusFailure(resp.status_code, text)
                async for chunk in resp.aiter_text():
                    if chunk:
                        yield chunk
        except httpx.HTTPError as exc:
            logger.warning(
                "provider stream failed: %s",
                exc,
                extra={"request_id": request_id, "path": wire.url, "outcome": "network_error"},
            )
            raise TransportError(str(exc) or exc.__class__.__name__) from exc
