from __future__ import annotations

import asyncio

import pytest

from agent_runtime.agent.events import (
    AgentComplete,
    EventType,
    IterationStart,
    TextDelta,
    Thinking,
)
from agent_runtime.agent.run_registry import DuplicateRun, RunChannel, RunNotFound, RunRegistry


# ─── RunChannel ───────────────────────────────────────────────────────────────

def test_emit_assigns_increasing_seq_and_closes_on_terminal():
    channel = RunChannel("run-1")

    first = channel.emit(Thinking())
    second = channel.emit(IterationStart(iteration=1))
    last = channel.emit(AgentComplete(content="done", iterations=1))

    assert [first.seq, second.seq, last.seq] == [1, 2, 3]
    assert channel.closed is True
    assert last.is_terminal is True
    with pytest.raises(RuntimeError):
        channel.emit(TextDelta(text="late", iteration=1))
    assert len(channel.history) == 3


def test_event_to_dict_shape():
    event = RunChannel("run-1").emit(TextDelta(text="hi", iteration=2))
    data = event.to_dict()

    assert data["type"] == "text_delta"
    assert data["seq"] == 1
    assert isinstance(data["timestamp"], int)
    assert data["data"] == {"text": "hi", "iteration": 2}


@pytest.mark.asyncio
async def test_subscribe_replays_history_and_delivers_in_order():
    channel = RunChannel("run-1")
    channel.emit(Thinking())
    received: list[int] = []

    async def on_event(event):
        await asyncio.sleep(0)
        received.append(event.seq)

    channel.subscribe(on_event)
    channel.emit(IterationStart(iteration=1))
    channel.emit(AgentComplete(content="", iterations=1))
    await channel.drain(1.0)

    assert received == [1, 2, 3]


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_affect_others():
    channel = RunChannel("run-1")
    good: list[EventType] = []

    def broken(event):
        raise ValueError("subscriber bug")

    channel.subscribe(broken)
    channel.subscribe(lambda event: good.append(event.type))
    channel.emit(Thinking())
    channel.emit(AgentComplete(content="", iterations=0))
    await channel.drain(1.0)

    assert good == [EventType.THINKING, EventType.AGENT_COMPLETE]


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery():
    channel = RunChannel("run-1")
    received: list[int] = []
    unsubscribe = channel.subscribe(lambda event: received.append(event.seq))

    channel.emit(Thinking())
    await asyncio.sleep(0.01)
    unsubscribe()
    channel.emit(IterationStart(iteration=1))
    await asyncio.sleep(0.01)

    assert received == [1]


@pytest.mark.asyncio
async def test_stream_ends_after_terminal_event():
    channel = RunChannel("run-1")

    async def produce():
        await asyncio.sleep(0.01)
        channel.emit(TextDelta(text="a", iteration=1))
        channel.emit(AgentComplete(content="a", iterations=1))

    producer = asyncio.create_task(produce())
    channel.emit(Thinking())
    types = [event.type async for event in channel.stream()]
    await producer

    assert types == [EventType.THINKING, EventType.TEXT_DELTA, EventType.AGENT_COMPLETE]


@pytest.mark.asyncio
async def test_stream_after_close_replays_everything():
    channel = RunChannel("run-1")
    channel.emit(Thinking())
    channel.emit(AgentComplete(content="", iterations=0))

    assert [event.seq async for event in channel.stream()] == [1, 2]


@pytest.mark.asyncio
async def test_slow_subscriber_keeps_draining_after_timeout():
    channel = RunChannel("run-1")
    received: list[EventType] = []

    async def slow(event):
        await asyncio.sleep(0.05)
        received.append(event.type)

    channel.subscribe(slow)
    channel.emit(Thinking())
    channel.emit(IterationStart(iteration=1))
    channel.emit(AgentComplete(content="", iterations=1))

    behind = await channel.drain(0.01)
    assert len(behind) == 1
    await asyncio.wait_for(asyncio.gather(*behind), timeout=2)

    assert received == [EventType.THINKING, EventType.ITERATION_START, EventType.AGENT_COMPLETE]


@pytest.mark.asyncio
async def test_cancel_subscribers_stops_background_drains():
    channel = RunChannel("run-1")

    async def stuck(event):
        await asyncio.sleep(60)

    channel.subscribe(stuck)
    channel.emit(AgentComplete(content="", iterations=0))
    behind = await channel.drain(0.01)

    channel.cancel_subscribers()
    await asyncio.gather(*behind, return_exceptions=True)

    assert all(task.cancelled() for task in behind)


# ─── RunRegistry ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_register_rejects_duplicate_active_run():
    registry = RunRegistry()
    registry.register("run-1")

    with pytest.raises(DuplicateRun):
        registry.register("run-1")
    assert registry.active_runs() == ["run-1"]


@pytest.mark.asyncio
async def test_abort_active_finished_and_unknown():
    registry = RunRegistry()
    handle = registry.register("run-1")

    assert registry.abort("run-1") is True
    assert handle.token.cancelled is True

    registry.unregister("run-1")
    assert registry.abort("run-1") is False
    assert registry.is_finished("run-1")
    with pytest.raises(RunNotFound):
        registry.abort("never-existed")
    with pytest.raises(RunNotFound):
        registry.get("run-1")


@pytest.mark.asyncio
async def test_finished_channels_are_bounded_and_ids_reusable():
    registry = RunRegistry(finished_memory=2)
    for run_id in ("a", "b", "c"):
        registry.register(run_id)
        registry.unregister(run_id)

    assert not registry.is_finished("a")
    assert registry.is_finished("b") and registry.is_finished("c")
    with pytest.raises(RunNotFound):
        registry.channel("a")

    handle = registry.register("b")
    assert registry.channel("b") is handle.channel
    assert not registry.is_finished("b")
