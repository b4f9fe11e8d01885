"""Session registry: the single owner of sessions and their buffers.

Create one per host process, call ``initialize()`` before use and
``shutdown()`` on exit. Components that need sessions get the registry
passed in; there is no module-level instance.

Persistence is detached: every write goes through a PersistenceWriter
and is never awaited on the caller's path. ``last_used_at`` changes are
only marked dirty and saved by a periodic flush.
"""
from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging

from ronboard.adapters.event_bus import EventBus, Notifier
from ronboard.adapters.events import (
    SessionCreated,
    SessionRemoved,
    SessionRenamed,
    SessionResumed,
    SessionStopped,
    StreamMessageEvent,
)
from ronboard.shared.services.persistence import HistoryStore, PersistenceWriter

from .channel import OutputChannel
from .config import RonboardConfig
from .errors import SessionNotFoundError
from .launcher import AgentProcess, ProcessLauncher
from .lifecycle import LifecycleSupervisor, exit_status, validate_transition
from .models import (
    UNDELIVERED_TYPE,
    UNTITLED,
    USER_MESSAGE_TYPE,
    AgentSession,
    SessionBuffers,
    SessionMode,
    SessionStatus,
    StreamMessage,
)
from .relay import OutputRelay
from .resume import ResumeEngine
from .text import extract_stream_text, strip_ansi

logger = logging.getLogger(__name__)


def _snapshot(session: AgentSession) -> AgentSession:
    return dataclasses.replace(session)


class SessionRegistry:
    """Creates, tracks, stops and resumes agent sessions."""

    def __init__(
        self,
        config: RonboardConfig,
        store: HistoryStore,
        launcher: ProcessLauncher | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._config = config
        self._writer = PersistenceWriter(store)
        self._launcher = launcher or ProcessLauncher(config)
        self._bus = bus or EventBus()
        self._sessions: dict[str, AgentSession] = {}
        self._buffers: dict[str, SessionBuffers] = {}
        self._relays: dict[str, OutputRelay] = {}
        self._send_locks: dict[str, asyncio.Lock] = {}
        self._launches: dict[str, object] = {}
        self._dirty: set[str] = set()
        self._supervisor = LifecycleSupervisor(self._on_exit_status)
        self._resume_engine = ResumeEngine(self)
        self._flush_task: asyncio.Task | None = None
        self._initialized = False

        # Observers connect at wiring time (e.g. the auto-namer).
        self.output_observed = Notifier("output_observed")
        self.session_ended = Notifier("session_ended")

    @property
    def config(self) -> RonboardConfig:
        return self._config

    @property
    def writer(self) -> PersistenceWriter:
        return self._writer

    @property
    def launcher(self) -> ProcessLauncher:
        return self._launcher

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def supervisor(self) -> LifecycleSupervisor:
        return self._supervisor

    # ── Setup / teardown ──

    async def initialize(self) -> None:
        """Load persisted sessions and their transcripts, start the flush loop."""
        if self._initialized:
            return
        store = self._writer.store
        await asyncio.to_thread(store.ensure_directories)
        sessions = await asyncio.to_thread(store.load_all)
        for session in sessions:
            buffers = SessionBuffers()
            if session.mode == SessionMode.STREAM:
                buffers.seed_messages(
                    await asyncio.to_thread(store.load_stream_history, session.id)
                )
            else:
                buffers.seed_terminal(
                    await asyncio.to_thread(store.load_terminal_history, session.id)
                )
            self._sessions[session.id] = session
            self._buffers[session.id] = buffers
        self._flush_task = asyncio.create_task(self._flush_loop())
        self._initialized = True
        logger.info("Session registry ready with %d persisted sessions", len(sessions))

    async def shutdown(self) -> None:
        """Stop every live session and make all pending writes durable."""
        if self._flush_task is not None:
            self._flush_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._flush_task
            self._flush_task = None

        live = [sid for sid, s in self._sessions.items() if s.is_running]
        for session_id in live:
            await self.stop(session_id)

        for session_id, relay in list(self._relays.items()):
            if not await relay.wait(self._config.relay_drain_seconds):
                logger.warning("Relay for session %s did not drain; cancelling", session_id)
                await relay.cancel()
        self._relays.clear()

        await self._resume_engine.close()
        await self._supervisor.close()
        self.flush_metadata()
        await self._writer.close()
        self._initialized = False
        logger.info("Session registry shut down (%d sessions stopped)", len(live))

    # ── Queries ──

    def get(self, session_id: str) -> AgentSession | None:
        session = self._sessions.get(session_id)
        return _snapshot(session) if session is not None else None

    def list_all(self) -> list[AgentSession]:
        return [_snapshot(s) for s in list(self._sessions.values())]

    def require(self, session_id: str) -> AgentSession:
        """Internal session entity. Raises SessionNotFoundError."""
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def get_terminal_history(self, session_id: str) -> str:
        self.require(session_id)
        return self._buffers[session_id].terminal_text()

    def get_stream_history(self, session_id: str) -> list[StreamMessage]:
        self.require(session_id)
        return self._buffers[session_id].messages()

    def get_accumulated_text(self, session_id: str) -> str:
        """Plain text the agent has produced so far."""
        session = self.require(session_id)
        buffers = self._buffers[session_id]
        if session.mode == SessionMode.STREAM:
            return extract_stream_text(buffers.messages())
        return strip_ansi(buffers.terminal_text())

    # ── Operations ──

    async def create(
        self,
        name: str | None,
        working_directory: str,
        mode: SessionMode | str,
        model: str | None = None,
    ) -> AgentSession:
        """Start a new session. Launch failures end up in its status.

        A session stopped or removed while its agent is launching keeps
        that outcome; the late process is killed. Only an unknown mode
        name raises (ValueError).
        """
        session = AgentSession(
            mode=SessionMode.parse(mode),
            name=(name or "").strip() or UNTITLED,
            working_directory=working_directory,
            model=model or None,
        )
        self._sessions[session.id] = session
        self._buffers[session.id] = SessionBuffers()
        ticket = self.begin_launch(session)

        try:
            process, channel = await self._launcher.start(
                session.mode, working_directory, session.model,
            )
        except Exception as exc:
            logger.error("Failed to start session %s: %s", session.id, exc)
            if self.end_launch(session, ticket):
                self.set_status(session, SessionStatus.ERROR)
        else:
            if await self.adopt(session, ticket, process, channel):
                session.working_directory = process.cwd or working_directory
                logger.info(
                    "Created %s session %s '%s' in %s",
                    session.mode.value, session.id, session.name, session.working_directory,
                )

        if self._sessions.get(session.id) is not session:
            return _snapshot(session)
        self._writer.save_metadata(session)
        self._bus.publish(
            SessionCreated(session_id=session.id, session=session.to_public_dict())
        )
        return _snapshot(session)

    async def send_input(self, session_id: str, data: str) -> bool:
        """Write raw keystrokes to a terminal session. False if not delivered."""
        session = self.require(session_id)
        if session.mode != SessionMode.TERMINAL:
            logger.warning("send_input on %s session %s ignored", session.mode.value, session_id)
            return False
        process = session.process
        if process is None or process.has_exited:
            logger.debug("send_input: session %s has no live process", session_id)
            return False
        try:
            await process.write(data)
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning("Input to session %s failed: %s", session_id, exc)
            return False
        self._writer.append_input(session_id, data)
        self.mark_used(session)
        return True

    async def send_message(self, session_id: str, text: str) -> bool:
        """Send one user turn to a stream session. False if not delivered.

        The user's own message enters the history before it is written to
        the agent, so it always precedes the agent's reply. If the write
        fails, an UNDELIVERED_TYPE entry pointing at it follows.
        """
        session = self.require(session_id)
        if session.mode != SessionMode.STREAM:
            logger.warning("send_message on %s session %s ignored", session.mode.value, session_id)
            return False
        process = session.process
        if process is None or process.has_exited:
            logger.debug("send_message: session %s has no live process", session_id)
            return False

        lock = self._send_locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            msg = self._buffers[session_id].append_message(
                USER_MESSAGE_TYPE, {"text": text},
            )
            self._writer.append_stream_message(session_id, msg)
            self._bus.publish(StreamMessageEvent(session_id=session_id, message=msg.to_dict()))
            try:
                await process.write(text)
            except (BrokenPipeError, ConnectionResetError) as exc:
                logger.warning("Message to session %s failed: %s", session_id, exc)
                # The user turn is already in the history; flag it.
                failed = self._buffers[session_id].append_message(
                    UNDELIVERED_TYPE, {"index": msg.index, "error": str(exc)},
                )
                self._writer.append_stream_message(session_id, failed)
                self._bus.publish(
                    StreamMessageEvent(session_id=session_id, message=failed.to_dict())
                )
                return False
        self._writer.append_input(session_id, text)
        self.mark_used(session)
        return True

    async def stop(self, session_id: str) -> bool:
        """Kill the session's process tree and mark it stopped.

        Returns False for an unknown id. Safe to repeat.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return False
        # A launch still in flight is killed when it completes.
        self._launches.pop(session_id, None)
        process = session.process
        if process is not None and not process.has_exited:
            try:
                await asyncio.to_thread(process.kill_tree)
            except Exception as exc:
                logger.warning(
                    "Failed to kill process tree %d for session %s: %s",
                    process.pid, session_id, exc,
                )
        if session.status == SessionStatus.STOPPED:
            return True
        self.set_status(session, SessionStatus.STOPPED)
        self._writer.save_metadata(session)
        self._bus.publish(SessionStopped(session_id=session_id))
        logger.info("Stopped session %s", session_id)
        return True

    async def remove(self, session_id: str) -> bool:
        if session_id not in self._sessions:
            return False
        await self.stop(session_id)
        relay = self._relays.pop(session_id, None)
        if relay is not None:
            await relay.cancel()
        self._sessions.pop(session_id, None)
        self._buffers.pop(session_id, None)
        self._send_locks.pop(session_id, None)
        self._dirty.discard(session_id)
        self._writer.delete(session_id)
        self._bus.publish(SessionRemoved(session_id=session_id))
        logger.info("Removed session %s", session_id)
        return True

    async def rename(self, session_id: str, name: str) -> AgentSession:
        """Raises SessionNotFoundError, or ValueError for a blank name."""
        session = self.require(session_id)
        name = (name or "").strip()
        if not name:
            raise ValueError("session name must not be empty")
        session.name = name
        self._writer.save_metadata(session)
        self._bus.publish(SessionRenamed(session_id=session_id, name=name))
        logger.info("Renamed session %s to '%s'", session_id, name)
        return _snapshot(session)

    async def resume(self, session_id: str) -> AgentSession:
        """Restart an exited session's agent, keeping its history.

        No-op if the session's process is still alive. Raises
        SessionNotFoundError, or the launch error.
        """
        previous = self.require(session_id).process
        session = await self._resume_engine.resume(session_id)
        if session.process is not None and session.process is not previous:
            self._bus.publish(
                SessionResumed(session_id=session_id, session=session.to_public_dict())
            )
        return _snapshot(session)

    # ── Hooks used by the relay, resume engine and supervisor ──

    def begin_launch(self, session: AgentSession) -> object:
        """Register a pending launch. stop() and remove() invalidate it."""
        ticket = object()
        self._launches[session.id] = ticket
        return ticket

    def end_launch(self, session: AgentSession, ticket: object) -> bool:
        """Close a pending launch. False if the session moved on meanwhile."""
        if self._launches.get(session.id) is not ticket:
            return False
        del self._launches[session.id]
        if self._sessions.get(session.id) is not session:
            return False
        return session.status == SessionStatus.STARTING

    async def adopt(
        self,
        session: AgentSession,
        ticket: object,
        process: AgentProcess,
        channel: OutputChannel,
    ) -> bool:
        """Attach a just-launched process if its launch is still current.

        A session stopped or removed during the launch gets the process
        killed instead. Returns whether the process was attached.
        """
        if self.end_launch(session, ticket):
            try:
                self.attach(session, process, channel)
                return True
            except Exception:
                logger.error(
                    "Failed to attach process %d to session %s",
                    process.pid, session.id, exc_info=True,
                )
                if session.process is process:
                    session.process = None
                if session.status == SessionStatus.STARTING:
                    self.set_status(session, SessionStatus.ERROR)
        else:
            logger.info(
                "Session %s was stopped or removed during launch; killing new process %d",
                session.id, process.pid,
            )
        try:
            await asyncio.to_thread(process.kill_tree)
        except Exception as exc:
            logger.warning("Failed to kill unattached process %d: %s", process.pid, exc)
        return False

    def attach(self, session: AgentSession, process: AgentProcess, channel: OutputChannel) -> None:
        """Bind a freshly started process: RUNNING, relay, exit observer."""
        self.set_status(session, SessionStatus.RUNNING)
        session.process = process
        session.touch()
        relay = OutputRelay(self, session, self._buffers[session.id], channel)
        self._relays[session.id] = relay
        relay.start()
        self._supervisor.watch(session, process)

    async def drain_relay(self, session_id: str) -> None:
        """Let the previous process's relay finish before a new one starts."""
        relay = self._relays.pop(session_id, None)
        if relay is None:
            return
        if not await relay.wait(self._config.relay_drain_seconds):
            logger.warning("Relay for session %s did not drain; cancelling", session_id)
            await relay.cancel()

    def release_process(self, session: AgentSession) -> None:
        """Detach an exited process, settling the status its exit implies."""
        process = session.process
        if process is None:
            return
        if process.has_exited and session.status in (
            SessionStatus.STARTING, SessionStatus.RUNNING, SessionStatus.IDLE,
        ):
            self.set_status(session, exit_status(process.returncode or 0))
        session.process = None

    def set_status(self, session: AgentSession, status: SessionStatus) -> None:
        if session.status == status:
            return
        validate_transition(session.status, status)
        logger.debug(
            "Session %s: %s -> %s", session.id, session.status.value, status.value,
        )
        session.status = status

    def mark_used(self, session: AgentSession) -> None:
        session.touch()
        self._dirty.add(session.id)

    async def _on_exit_status(self, session: AgentSession) -> None:
        if session.id in self._sessions:
            self._writer.save_metadata(session)

    def flush_metadata(self) -> int:
        """Queue metadata saves for sessions touched since the last flush."""
        dirty, self._dirty = self._dirty, set()
        count = 0
        for session_id in dirty:
            session = self._sessions.get(session_id)
            if session is None:
                continue
            self._writer.save_metadata(session)
            count += 1
        return count

    async def _flush_loop(self) -> None:
        interval = max(self._config.metadata_flush_seconds, 0.1)
        while True:
            await asyncio.sleep(interval)
            try:
                count = self.flush_metadata()
            except Exception:
                logger.warning("Metadata flush failed", exc_info=True)
                continue
            if count:
                logger.debug("Flushed metadata for %d sessions", count)
