"""Tests for OutputRelay ordering and end-of-output handling."""
from __future__ import annotations

from unittest.mock import patch

import pytest

from ronboard.adapters.events import SessionEnded, StreamMessageEvent, TerminalOutput


@pytest.mark.asyncio
async def test_terminal_chunks_reach_group_subscriber_in_order(registry, launcher, workdir, settle):
    await registry.initialize()
    session = await registry.create("t", workdir, "terminal")
    own = registry.bus.subscribe(session.id)
    other = registry.bus.subscribe("someone-else")

    for chunk in ("a", "b", "c"):
        launcher.last.emit(chunk)
    launcher.last.finish(0)
    await settle()

    events = _drain(own)
    output = [e.data for e in events if isinstance(e, TerminalOutput)]
    assert output == ["a", "b", "c"]
    assert isinstance(events[3], SessionEnded)
    assert not any(isinstance(e, (TerminalOutput, SessionEnded)) for e in _drain(other))
    await registry.shutdown()


@pytest.mark.asyncio
async def test_stream_frames_are_indexed_and_persisted(registry, launcher, store, workdir, settle):
    await registry.initialize()
    session = await registry.create("s", workdir, "stream")
    queue = registry.bus.subscribe(session.id)

    launcher.last.emit_json({"type": "system", "subtype": "init"})
    launcher.last.emit_json({"type": "assistant", "message": {"content": "hi"}})
    await settle()
    await registry.writer.flush()

    published = [e.message for e in _drain(queue) if isinstance(e, StreamMessageEvent)]
    assert [(m["index"], m["type"]) for m in published] == [(0, "system"), (1, "assistant")]
    assert [m.to_dict() for m in store.load_stream_history(session.id)] == published
    await registry.shutdown()


@pytest.mark.asyncio
async def test_output_observed_fires_per_unit(registry, launcher, workdir, settle):
    await registry.initialize()
    seen: list[str] = []
    registry.output_observed.connect(seen.append)
    session = await registry.create("t", workdir, "terminal")

    launcher.last.emit("one")
    launcher.last.emit("two")
    await settle()

    assert seen == [session.id, session.id]
    await registry.shutdown()


@pytest.mark.asyncio
async def test_failing_observer_does_not_stop_relay(registry, launcher, workdir, settle):
    await registry.initialize()

    def explode(_session_id):
        raise RuntimeError("observer bug")

    registry.output_observed.connect(explode)
    session = await registry.create("t", workdir, "terminal")
    launcher.last.emit("still ")
    launcher.last.emit("here")
    await settle()

    assert registry.get_terminal_history(session.id) == "still here"
    await registry.shutdown()


@pytest.mark.asyncio
async def test_relay_failure_still_announces_end(registry, launcher, workdir, settle):
    await registry.initialize()
    ended: list[str] = []
    registry.session_ended.connect(ended.append)
    session = await registry.create("t", workdir, "terminal")
    queue = registry.bus.subscribe(session.id)

    with patch(
        "ronboard.engine.models.SessionBuffers.append_terminal",
        side_effect=RuntimeError("boom"),
    ):
        launcher.last.emit("x")
        await settle()

    assert ended == [session.id]
    assert any(isinstance(e, SessionEnded) for e in _drain(queue))
    await registry.shutdown()
    assert ended == [session.id]


@pytest.mark.asyncio
async def test_remove_cancels_relay_without_announcing(registry, launcher, workdir, settle):
    await registry.initialize()
    ended: list[str] = []
    registry.session_ended.connect(ended.append)
    session = await registry.create("t", workdir, "terminal")
    # The kill leaves the output channel open.
    launcher.last.process.kill_tree = lambda: None

    await registry.remove(session.id)
    await settle()

    assert ended == []
    await registry.shutdown()


def _drain(queue) -> list:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events
