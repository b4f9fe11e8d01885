"""Session lifecycle state machine and process exit supervision.

State Diagram:

    STARTING ──> RUNNING ──┬──> STOPPED ──> STARTING  (resume)
        │                  │
        │                  ├──> ERROR ───> STARTING  (resume)
        │                  │
        │                  └──> IDLE ──> RUNNING
        │
        └──> ERROR | STOPPED

    ERROR ──> STOPPED  (explicit stop)

IDLE is never entered by the engine itself.
"""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable

from .errors import InvalidTransitionError
from .models import AgentSession, SessionStatus

if TYPE_CHECKING:
    from .launcher import AgentProcess

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.STARTING: {
        SessionStatus.RUNNING,
        SessionStatus.ERROR,
        SessionStatus.STOPPED,
    },
    SessionStatus.RUNNING: {
        SessionStatus.IDLE,
        SessionStatus.STOPPED,
        SessionStatus.ERROR,
    },
    SessionStatus.IDLE: {
        SessionStatus.RUNNING,
        SessionStatus.STOPPED,
        SessionStatus.ERROR,
    },
    SessionStatus.STOPPED: {
        SessionStatus.STARTING,
    },
    SessionStatus.ERROR: {
        SessionStatus.STARTING,
        SessionStatus.STOPPED,
    },
}


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


def validate_transition(current: SessionStatus, target: SessionStatus) -> None:
    """Validate a status transition. Raises InvalidTransitionError if invalid."""
    if not can_transition(current, target):
        allowed = sorted(s.value for s in VALID_TRANSITIONS.get(current, set()))
        raise InvalidTransitionError(current.value, target.value, allowed)


def exit_status(returncode: int) -> SessionStatus:
    return SessionStatus.STOPPED if returncode == 0 else SessionStatus.ERROR


StatusCallback = Callable[[AgentSession], Awaitable[None]]


class LifecycleSupervisor:
    """Attaches one exit observer per agent process instance.

    When the process exits, the session moves to STOPPED (exit code 0)
    or ERROR, but only while the session still holds that same process
    and the move is a legal transition. *on_status_change* is awaited
    after the status is applied so the caller can persist it.
    """

    def __init__(self, on_status_change: StatusCallback) -> None:
        self._on_status_change = on_status_change
        self._observers: dict[int, asyncio.Task] = {}

    @property
    def active_count(self) -> int:
        return len(self._observers)

    def watch(self, session: AgentSession, process: AgentProcess) -> asyncio.Task | None:
        key = id(process)
        if key in self._observers:
            return None
        task = asyncio.create_task(self._observe(session, process))
        self._observers[key] = task
        task.add_done_callback(lambda _t: self._observers.pop(key, None))
        return task

    async def _observe(self, session: AgentSession, process: AgentProcess) -> None:
        try:
            returncode = await process.wait()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning(
                "Exit observer for session %s failed", session.id, exc_info=True,
            )
            return

        logger.info(
            "Agent process %d for session %s exited with code %d",
            process.pid, session.id, returncode,
        )
        if session.process is not process:
            logger.debug("Session %s has moved to a newer process", session.id)
            return

        target = exit_status(returncode)
        if not can_transition(session.status, target):
            logger.debug(
                "Keeping status %s for session %s (exit would be %s)",
                session.status.value, session.id, target.value,
            )
            return
        session.status = target
        await self._on_status_change(session)

    async def close(self) -> None:
        tasks = list(self._observers.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._observers.clear()
