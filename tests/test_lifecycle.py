"""Tests for status transitions and the exit supervisor."""
from __future__ import annotations

import asyncio

import pytest

from ronboard.engine.errors import InvalidTransitionError
from ronboard.engine.lifecycle import (
    VALID_TRANSITIONS,
    LifecycleSupervisor,
    can_transition,
    exit_status,
    validate_transition,
)
from ronboard.engine.models import AgentSession, SessionStatus


class _Process:
    def __init__(self, pid: int = 1) -> None:
        self.pid = pid
        self.returncode = None
        self._done = asyncio.Event()

    @property
    def has_exited(self) -> bool:
        return self.returncode is not None

    async def wait(self) -> int:
        await self._done.wait()
        return self.returncode

    def exit(self, code: int) -> None:
        self.returncode = code
        self._done.set()


def test_every_status_has_transition_rules():
    assert set(VALID_TRANSITIONS) == set(SessionStatus)


@pytest.mark.parametrize("current,target", [
    (SessionStatus.STARTING, SessionStatus.RUNNING),
    (SessionStatus.STARTING, SessionStatus.ERROR),
    (SessionStatus.RUNNING, SessionStatus.STOPPED),
    (SessionStatus.RUNNING, SessionStatus.IDLE),
    (SessionStatus.IDLE, SessionStatus.RUNNING),
    (SessionStatus.STOPPED, SessionStatus.STARTING),
    (SessionStatus.ERROR, SessionStatus.STARTING),
    (SessionStatus.ERROR, SessionStatus.STOPPED),
])
def test_allowed_transitions(current, target):
    assert can_transition(current, target)
    validate_transition(current, target)


@pytest.mark.parametrize("current,target", [
    (SessionStatus.STOPPED, SessionStatus.RUNNING),
    (SessionStatus.STOPPED, SessionStatus.ERROR),
    (SessionStatus.ERROR, SessionStatus.RUNNING),
    (SessionStatus.STARTING, SessionStatus.IDLE),
])
def test_rejected_transitions(current, target):
    assert not can_transition(current, target)
    with pytest.raises(InvalidTransitionError) as exc_info:
        validate_transition(current, target)
    assert "Allowed from" in str(exc_info.value)


def test_exit_status_maps_code():
    assert exit_status(0) == SessionStatus.STOPPED
    assert exit_status(1) == SessionStatus.ERROR
    assert exit_status(-9) == SessionStatus.ERROR


@pytest.mark.asyncio
async def test_supervisor_applies_exit_and_reports():
    changed: list[SessionStatus] = []

    async def on_change(session):
        changed.append(session.status)

    supervisor = LifecycleSupervisor(on_change)
    session = AgentSession(status=SessionStatus.RUNNING)
    process = _Process()
    session.process = process

    task = supervisor.watch(session, process)
    assert supervisor.watch(session, process) is None
    assert supervisor.active_count == 1

    process.exit(7)
    await asyncio.wait_for(task, 1)

    assert session.status == SessionStatus.ERROR
    assert changed == [SessionStatus.ERROR]
    await asyncio.sleep(0)
    assert supervisor.active_count == 0


@pytest.mark.asyncio
async def test_supervisor_ignores_superseded_process():
    supervisor = LifecycleSupervisor(lambda s: asyncio.sleep(0))
    session = AgentSession(status=SessionStatus.RUNNING)
    old, new = _Process(1), _Process(2)
    session.process = new

    task = supervisor.watch(session, old)
    old.exit(1)
    await asyncio.wait_for(task, 1)

    assert session.status == SessionStatus.RUNNING


@pytest.mark.asyncio
async def test_supervisor_keeps_explicit_stop():
    supervisor = LifecycleSupervisor(lambda s: asyncio.sleep(0))
    session = AgentSession(status=SessionStatus.RUNNING)
    process = _Process()
    session.process = process
    task = supervisor.watch(session, process)

    session.status = SessionStatus.STOPPED
    process.exit(-9)
    await asyncio.wait_for(task, 1)

    assert session.status == SessionStatus.STOPPED


@pytest.mark.asyncio
async def test_supervisor_close_cancels_observers():
    supervisor = LifecycleSupervisor(lambda s: asyncio.sleep(0))
    session = AgentSession(status=SessionStatus.RUNNING)
    process = _Process()
    session.process = process
    supervisor.watch(session, process)

    await supervisor.close()

    assert supervisor.active_count == 0
    assert session.status == SessionStatus.RUNNING
