"""Output relay: drains one agent process's output into the session.

For every unit, in arrival order: buffer it (stream messages get their
index here), persist it in the background, mark the session used, fire
the output-observed hook and publish it to the session's subscribers.
When the output ends the relay announces the session's end once and
stops. It never restarts itself.
"""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from ronboard.adapters.events import SessionEnded, StreamMessageEvent, TerminalOutput

from .channel import OutputChannel
from .models import AgentSession, SessionBuffers, StreamFrame

if TYPE_CHECKING:
    from .registry import SessionRegistry

logger = logging.getLogger(__name__)


class OutputRelay:
    def __init__(
        self,
        registry: SessionRegistry,
        session: AgentSession,
        buffers: SessionBuffers,
        channel: OutputChannel,
    ) -> None:
        self._registry = registry
        self._session = session
        self._buffers = buffers
        self._channel = channel
        self._task: asyncio.Task | None = None
        self._ended = False

    def start(self) -> asyncio.Task:
        if self._task is not None:
            raise RuntimeError(f"relay for session {self._session.id} already started")
        self._task = asyncio.create_task(self._run(), name=f"relay-{self._session.id}")
        return self._task

    async def _run(self) -> None:
        try:
            async for unit in self._channel:
                self._relay(unit)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning(
                "Output relay for session %s failed", self._session.id, exc_info=True,
            )
        self._end()

    def _relay(self, unit: str | StreamFrame) -> None:
        session_id = self._session.id
        writer = self._registry.writer
        if isinstance(unit, StreamFrame):
            msg = self._buffers.append_message(unit.type, unit.payload)
            writer.append_stream_message(session_id, msg)
            event = StreamMessageEvent(session_id=session_id, message=msg.to_dict())
        else:
            self._buffers.append_terminal(unit)
            writer.append_terminal_output(session_id, unit)
            event = TerminalOutput(session_id=session_id, data=unit)
        self._registry.mark_used(self._session)
        self._registry.output_observed.fire(session_id)
        self._registry.bus.publish(event)

    def _end(self) -> None:
        if self._ended:
            return
        self._ended = True
        session_id = self._session.id
        logger.info("Output ended for session %s", session_id)
        self._registry.bus.publish(SessionEnded(session_id=session_id))
        self._registry.session_ended.fire(session_id)

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait for the relay to drain. Returns False on timeout."""
        if self._task is None:
            return True
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout)
        except asyncio.TimeoutError:
            return False
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise
        return True

    async def cancel(self) -> None:
        """Stop relaying without announcing the end (session removal)."""
        if self._task is None or self._task.done():
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
