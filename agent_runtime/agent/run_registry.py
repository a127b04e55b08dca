"""Active-run registry and per-run ordered event channels."""
from __future__ import annotations

import asyncio
import inspect
from collections import deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

from agent_runtime.agent.events import AgentEvent, EventPayload
from agent_runtime.observability.logging import get_runtime_logger

logger = get_runtime_logger(__name__)

EventCallback = Callable[[AgentEvent], Awaitable[None] | None]


class DuplicateRun(Exception):
    pass


class RunNotFound(Exception):
    pass


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


async def _call_maybe_async(fn: Callable, *args: Any) -> Any:
    result = fn(*args)
    if inspect.isawaitable(result):
        return await result
    return result


class RunChannel:
    """Ordered event log for one run.

    ``emit`` never blocks: each subscriber has its own unbounded queue and a
    task that drains it, so a slow consumer only delays itself.
    """

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        self._seq = 0
        self._history: list[AgentEvent] = []
        self._queues: set[asyncio.Queue[AgentEvent]] = set()
        self._drains: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def history(self) -> list[AgentEvent]:
        return list(self._history)

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, payload: EventPayload) -> AgentEvent:
        if self._closed:
            raise RuntimeError(f"run {self.request_id} already emitted its terminal event")
        self._seq += 1
        event = AgentEvent.create(self._seq, payload)
        self._history.append(event)
        if event.is_terminal:
            self._closed = True
        for queue in list(self._queues):
            queue.put_nowait(event)
        return event

    def _attach(self) -> asyncio.Queue[AgentEvent]:
        queue: asyncio.Queue[AgentEvent] = asyncio.Queue()
        for event in self._history:
            queue.put_nowait(event)
        if not self._closed:
            self._queues.add(queue)
        return queue

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Deliver past and future events to ``callback`` in ``seq`` order."""
        queue = self._attach()

        async def drain() -> None:
            while True:
                event = await queue.get()
                try:
                    await _call_maybe_async(callback, event)
                except Exception:
                    logger.exception(
                        "event subscriber failed",
                        extra={"request_id": self.request_id, "outcome": event.type.value},
                    )
                if event.is_terminal:
                    return

        task = asyncio.get_running_loop().create_task(drain())
        self._drains.add(task)

        def _cleanup(done: asyncio.Task[None]) -> None:
            self._drains.discard(done)
            self._queues.discard(queue)

        task.add_done_callback(_cleanup)

        def unsubscribe() -> None:
            self._queues.discard(queue)
            if not task.done():
                task.cancel()

        return unsubscribe

    async def stream(self) -> AsyncIterator[AgentEvent]:
        """Iterate past and future events; ends after the terminal event."""
        queue = self._attach()
        try:
            while True:
                event = await queue.get()
                yield event
                if event.is_terminal:
                    return
        finally:
            self._queues.discard(queue)

    async def drain(self, timeout: float | None = None) -> set[asyncio.Task[None]]:
        """Wait up to ``timeout`` seconds for subscribers to catch up.

        Subscribers still behind keep their queues and finish in the background;
        their drain tasks are returned.
        """
        pending = [task for task in self._drains if not task.done()]
        if not pending:
            return set()
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        if still_running:
            logger.warning(
                "event subscribers still draining",
                extra={"request_id": self.request_id, "outcome": f"pending={len(still_running)}"},
            )
        return still_running

    def cancel_subscribers(self) -> None:
        for task in list(self._drains):
            task.cancel()
        self._queues.clear()


@dataclass(slots=True)
class RunHandle:
    request_id: str
    channel: RunChannel
    token: CancellationToken = field(default_factory=CancellationToken)
    task: asyncio.Task | None = None


class RunRegistry:
    def __init__(self, *, finished_memory: int = 1024) -> None:
        self._active: dict[str, RunHandle] = {}
        self._finished: deque[str] = deque(maxlen=max(1, finished_memory))
        self._finished_channels: dict[str, RunChannel] = {}

    def register(self, request_id: str) -> RunHandle:
        if request_id in self._active:
            raise DuplicateRun(f"Run already active: {request_id}")
        if self._finished_channels.pop(request_id, None) is not None:
            self._finished.remove(request_id)
        handle = RunHandle(request_id=request_id, channel=RunChannel(request_id))
        self._active[request_id] = handle
        return handle

    def get(self, request_id: str) -> RunHandle:
        handle = self._active.get(request_id)
        if handle is None:
            raise RunNotFound(f"Run not found: {request_id}")
        return handle

    def channel(self, request_id: str) -> RunChannel:
        """Channel of an active run, or of a recently finished one."""
        handle = self._active.get(request_id)
        if handle is not None:
            return handle.channel
        channel = self._finished_channels.get(request_id)
        if channel is None:
            raise RunNotFound(f"Run not found: {request_id}")
        return channel

    def unregister(self, request_id: str) -> None:
        handle = self._active.pop(request_id, None)
        if handle is None:
            return
        if len(self._finished) == self._finished.maxlen:
            self._finished_channels.pop(self._finished[0], None)
        self._finished.append(request_id)
        self._finished_channels[request_id] = handle.channel

    def is_finished(self, request_id: str) -> bool:
        return request_id in self._finished_channels

    def abort(self, request_id: str) -> bool:
        """Trip the run's cancellation token; False when the run already finished."""
        handle = self._active.get(request_id)
        if handle is not None:
            handle.token.cancel()
            return True
        if self.is_finished(request_id):
            return False
        raise RunNotFound(f"Run not found: {request_id}")

    def active_runs(self) -> list[str]:
        return list(self._active)

    def channels(self) -> list[RunChannel]:
        return [handle.channel for handle in self._active.values()] + list(self._finished_channels.values())
