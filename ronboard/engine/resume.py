"""Resume a session whose agent process has exited.

The earlier conversation is handed to the new process as one inert
priming turn built from the input log, so the agent regains context
without answering the old messages again.
"""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from .models import AgentSession, SessionStatus

if TYPE_CHECKING:
    from .launcher import AgentProcess
    from .registry import SessionRegistry

logger = logging.getLogger(__name__)

RESUME_PROMPT = """\
IMPORTANT INSTRUCTION: The following is a TRANSCRIPT of a previous conversation session.
These messages were ALREADY sent and answered in a prior session.
DO NOT answer or respond to ANY of the messages in the transcript.
Your ONLY task is to read the transcript for context, then respond with EXACTLY:
--- RESUMING ---
Nothing else. No answers, no commentary, no summaries. Just "--- RESUMING ---".
After that, wait for the user's next NEW message.

=== PREVIOUS CONVERSATION TRANSCRIPT ===
{transcript}
=== END OF TRANSCRIPT ===

Remember: Do NOT answer anything above. Respond ONLY with "--- RESUMING ---"
"""


def build_resume_prompt(user_inputs: list[str]) -> str:
    transcript = "\n".join(f"[User said]: {text}" for text in user_inputs)
    return RESUME_PROMPT.format(transcript=transcript)


class ResumeEngine:
    """Starts a fresh process for an existing session and primes it."""

    def __init__(self, registry: SessionRegistry) -> None:
        self._registry = registry
        self._locks: dict[str, asyncio.Lock] = {}
        self._priming: set[asyncio.Task] = set()

    async def resume(self, session_id: str) -> AgentSession:
        """Raises SessionNotFoundError, or the launch error on failure."""
        registry = self._registry
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            session = registry.require(session_id)
            if session.is_running:
                logger.debug("Session %s already has a live process", session_id)
                return session
            if session.status == SessionStatus.STARTING and session.process is None:
                logger.debug("Session %s is already being launched", session_id)
                return session

            # Late output of the previous process must land before new output.
            await registry.drain_relay(session_id)
            # Pending input log writes must land before the log is read.
            await registry.writer.flush()
            inputs = await asyncio.to_thread(
                registry.writer.store.load_input_history, session_id,
            )

            registry.release_process(session)
            registry.set_status(session, SessionStatus.STARTING)
            ticket = registry.begin_launch(session)
            try:
                process, channel = await registry.launcher.start(
                    session.mode, session.working_directory, session.model,
                )
            except Exception as exc:
                logger.error("Failed to resume session %s: %s", session_id, exc)
                if registry.end_launch(session, ticket):
                    registry.set_status(session, SessionStatus.ERROR)
                    registry.writer.save_metadata(session)
                raise

            if not await registry.adopt(session, ticket, process, channel):
                return session
            logger.info(
                "Resumed session %s (PID %d, %d prior inputs)",
                session_id, process.pid, len(inputs),
            )

            transcript = process.framing.transcript(inputs)
            if transcript:
                prompt = build_resume_prompt(transcript)
                if process.framing.priming_delay > 0:
                    task = asyncio.create_task(self._prime(session, process, prompt))
                    self._priming.add(task)
                    task.add_done_callback(self._priming.discard)
                else:
                    await self._prime(session, process, prompt)

            session.touch()
            registry.writer.save_metadata(session)
            return session

    async def _prime(self, session: AgentSession, process: AgentProcess, prompt: str) -> None:
        delay = process.framing.priming_delay
        if delay > 0:
            await asyncio.sleep(delay)
        if session.process is not process or process.has_exited:
            logger.info("Skipping resume priming for session %s: process gone", session.id)
            return
        try:
            await process.write_raw(process.framing.encode_priming(prompt))
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning("Could not prime session %s: %s", session.id, exc)
            return
        logger.debug("Primed session %s with %d-char transcript", session.id, len(prompt))

    async def close(self) -> None:
        tasks = list(self._priming)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._priming.clear()
