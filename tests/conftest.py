"""Shared fakes for engine tests: a launcher that never spawns anything."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass

import pytest

from ronboard.engine.channel import OutputChannel
from ronboard.engine.config import RonboardConfig
from ronboard.engine.launcher import AgentProcess, framing_for, resolve_working_directory
from ronboard.engine.models import SessionMode, StreamFrame
from ronboard.engine.registry import SessionRegistry
from ronboard.shared.services.persistence import MemoryHistoryStore


class FakeStdin:
    def __init__(self) -> None:
        self.chunks: list[bytes] = []

    def write(self, data: bytes) -> None:
        self.chunks.append(data)

    async def drain(self) -> None:
        return None

    def text(self) -> str:
        return b"".join(self.chunks).decode("utf-8")


class FakeProc:
    """Stands in for asyncio.subprocess.Process."""

    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.returncode: int | None = None
        self.stdin = FakeStdin()
        self._exited = asyncio.Event()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def exit(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()


@dataclass
class Launched:
    process: AgentProcess
    channel: OutputChannel
    proc: FakeProc

    def emit(self, unit: str | StreamFrame) -> None:
        self.channel.put(unit)

    def emit_json(self, payload: dict) -> None:
        self.channel.put(StreamFrame(type=payload.get("type", "unknown"), payload=payload))

    def finish(self, code: int = 0) -> None:
        self.channel.close()
        self.proc.exit(code)


class FakeAgentProcess(AgentProcess):
    """AgentProcess whose kill only simulates the exit."""

    def __init__(self, launched_ref: list, loop: asyncio.AbstractEventLoop, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._launched_ref = launched_ref
        self._loop = loop
        self.kill_calls = 0

    def kill_tree(self) -> None:
        self.kill_calls += 1
        if self.has_exited:
            return
        # May be called from a worker thread (registry.stop uses to_thread).
        self._loop.call_soon_threadsafe(self._launched_ref[0].finish, -9)


class FakeLauncher:
    def __init__(self, config: RonboardConfig) -> None:
        self.config = config
        self.launched: list[Launched] = []
        self.fail_with: Exception | None = None
        # When set, start() blocks until the event is set.
        self.gate: asyncio.Event | None = None
        self.calls: list[tuple[SessionMode, str, str | None]] = []

    @property
    def last(self) -> Launched:
        return self.launched[-1]

    async def start(self, mode, working_directory, model=None):
        self.calls.append((mode, working_directory, model))
        if self.gate is not None:
            await self.gate.wait()
        resolved = resolve_working_directory(working_directory)
        if self.fail_with is not None:
            raise self.fail_with
        proc = FakeProc(pid=90000 + len(self.launched))
        ref: list = []
        process = FakeAgentProcess(
            ref, asyncio.get_running_loop(), proc, framing_for(mode, self.config), resolved,
        )
        channel: OutputChannel = OutputChannel()
        launched = Launched(process=process, channel=channel, proc=proc)
        ref.append(launched)
        self.launched.append(launched)
        return process, channel


async def settle(rounds: int = 10) -> None:
    """Let relay and observer tasks catch up."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def until(predicate, timeout: float = 2.0) -> None:
    """Poll until *predicate()* holds; for steps that pass through threads."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def config(tmp_path) -> RonboardConfig:
    return RonboardConfig(
        data_dir=str(tmp_path / "data"),
        shell="/bin/sh",
        resume_settle_seconds=0.01,
        metadata_flush_seconds=3600.0,
        relay_drain_seconds=0.05,
        naming_enabled=True,
    )


@pytest.fixture
def launcher(config) -> FakeLauncher:
    return FakeLauncher(config)


@pytest.fixture
def store() -> MemoryHistoryStore:
    return MemoryHistoryStore()


@pytest.fixture
def registry(config, store, launcher) -> SessionRegistry:
    return SessionRegistry(config, store, launcher=launcher)


@pytest.fixture
def workdir(tmp_path) -> str:
    path = tmp_path / "work"
    path.mkdir()
    return str(path)


@pytest.fixture(name="settle")
def settle_fixture():
    return settle
