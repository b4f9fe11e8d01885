"""Auto-name "Untitled" sessions from their first output.

Listens to the registry's output-observed hook. Once a session still
carrying the placeholder name has produced enough plain text, a single
background attempt asks the agent CLI for a short title and renames the
session with it.
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import TYPE_CHECKING, Awaitable, Callable

from ronboard.engine.config import RonboardConfig
from ronboard.engine.models import UNTITLED
from ronboard.shared.services.process_cleanup import kill_process_tree

if TYPE_CHECKING:
    from ronboard.engine.registry import SessionRegistry

logger = logging.getLogger(__name__)

NAMING_PROMPT = (
    "Given this conversation snippet, suggest a very short title "
    "(2-4 words, no quotes, no punctuation, no explanation - ONLY the title):"
    "\n\n{snippet}"
)

_FENCE_RE = re.compile(r"^```[A-Za-z0-9_-]*\s*\n(.*?)\n?```$", re.DOTALL)

TitleGenerator = Callable[[str], Awaitable["str | None"]]


def _strip_code_fence(text: str) -> str:
    match = _FENCE_RE.match(text)
    return match.group(1) if match else text


def clean_title(raw: str, max_chars: int = 60) -> str:
    """Normalize model output into a plain session title string."""
    if not raw:
        return ""
    text = _strip_code_fence(raw.strip())
    first = next((line.strip() for line in text.splitlines() if line.strip()), "")
    title = first.strip("\"'`").strip()
    if len(title) > max_chars:
        title = title[: max_chars - 3].rstrip() + "..."
    return title


class AutoNamer:
    """Names sessions once, with at most one attempt in flight per session."""

    def __init__(
        self,
        registry: SessionRegistry,
        config: RonboardConfig | None = None,
        generate: TitleGenerator | None = None,
    ) -> None:
        self._registry = registry
        self._config = config or registry.config
        self._generate = generate or self.generate_title
        self._in_flight: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self.attempts: dict[str, int] = {}

    def attach(self) -> None:
        self._registry.output_observed.connect(self.on_output)

    def detach(self) -> None:
        self._registry.output_observed.disconnect(self.on_output)

    def on_output(self, session_id: str) -> None:
        if not self._config.naming_enabled or session_id in self._in_flight:
            return
        session = self._registry.get(session_id)
        if session is None or session.name != UNTITLED:
            return
        text = self._registry.get_accumulated_text(session_id)
        if len(text) < self._config.naming_min_chars:
            return

        self._in_flight.add(session_id)
        self.attempts[session_id] = self.attempts.get(session_id, 0) + 1
        task = asyncio.create_task(
            self._name_session(session_id, text[: self._config.naming_snippet_chars])
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _name_session(self, session_id: str, snippet: str) -> None:
        try:
            title = await self._generate(snippet)
            if not title:
                return
            session = self._registry.get(session_id)
            if session is None or session.name != UNTITLED:
                return
            await self._registry.rename(session_id, title)
            logger.info("Auto-named session %s '%s'", session_id, title)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("Auto-naming failed for session %s", session_id, exc_info=True)
        finally:
            self._in_flight.discard(session_id)

    async def generate_title(self, snippet: str) -> str | None:
        """Ask the agent CLI for a title. Returns None on any failure."""
        cfg = self._config
        prompt = NAMING_PROMPT.format(snippet=snippet)
        cmd = [cfg.shell, "-l", "-c", f"{cfg.agent_command} --print"]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            logger.debug("Session naming could not start: %s", exc)
            return None

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(prompt.encode("utf-8")),
                timeout=cfg.naming_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.debug("Session naming timed out")
            return None
        finally:
            if proc.returncode is None:
                kill_process_tree(proc.pid)
                await proc.wait()

        if proc.returncode != 0:
            logger.debug(
                "Session naming exited with %d: %s",
                proc.returncode, stderr.decode("utf-8", errors="replace").strip()[:200],
            )
            return None
        title = clean_title(stdout.decode("utf-8", errors="replace"), cfg.naming_max_title_chars)
        return title or None

    async def close(self) -> None:
        self.detach()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._in_flight.clear()
