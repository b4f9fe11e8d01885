"""Session history persistence.

Storage layout:
    <data_dir>/sessions/{session_id}/metadata.json   session metadata
    <data_dir>/sessions/{session_id}/terminal.log    raw terminal output
    <data_dir>/sessions/{session_id}/stream.ndjson   structured messages
    <data_dir>/sessions/{session_id}/stdin.log       user inputs (NDJSON)

Appends are fsynced before returning, metadata is replaced atomically.
The registry never calls a store directly on its hot path: writes go
through a PersistenceWriter, which runs them off the event loop in
per-session submission order.
"""

from __future__ import annotations

import abc
import asyncio
import contextlib
import dataclasses
import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator

from ronboard.engine.errors import PersistenceError
from ronboard.engine.models import AgentSession, SessionStatus, StreamMessage
from ronboard.shared.services.durable_write import (
    append_text_durable,
    atomic_write_text,
    remove_tree_durable,
)

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"
TERMINAL_FILE = "terminal.log"
STREAM_FILE = "stream.ndjson"
INPUT_FILE = "stdin.log"


class HistoryStore(abc.ABC):
    """Durable owner of session metadata and transcripts."""

    def ensure_directories(self) -> None:
        """Create whatever storage the store needs. Default: nothing."""

    @abc.abstractmethod
    def save_metadata(self, session: AgentSession) -> None: ...

    @abc.abstractmethod
    def load_all(self) -> list[AgentSession]:
        """Every persisted session, with status forced to STOPPED."""

    @abc.abstractmethod
    def delete(self, session_id: str) -> bool: ...

    @abc.abstractmethod
    def append_terminal_output(self, session_id: str, chunk: str) -> None: ...

    @abc.abstractmethod
    def load_terminal_history(self, session_id: str) -> str: ...

    @abc.abstractmethod
    def append_stream_message(self, session_id: str, message: StreamMessage) -> None: ...

    @abc.abstractmethod
    def load_stream_history(self, session_id: str) -> list[StreamMessage]: ...

    @abc.abstractmethod
    def append_input(self, session_id: str, text: str) -> None: ...

    @abc.abstractmethod
    def load_input_history(self, session_id: str) -> list[str]: ...


@contextlib.contextmanager
def _translate_os_errors(operation: str, session_id: str | None) -> Iterator[None]:
    try:
        yield
    except OSError as exc:
        raise PersistenceError(operation, session_id, str(exc)) from exc


class FileHistoryStore(HistoryStore):
    """One directory per session under ``<base_dir>/sessions``."""

    def __init__(self, base_dir: Path | str) -> None:
        self._base_dir = Path(base_dir).expanduser()
        self._dir = self._base_dir / "sessions"

    @property
    def sessions_dir(self) -> Path:
        return self._dir

    def _session_dir(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or "\\" in session_id or session_id in (".", ".."):
            raise PersistenceError("resolve", session_id, "invalid session id")
        return self._dir / session_id

    def ensure_directories(self) -> None:
        with _translate_os_errors("ensure_directories", None):
            self._dir.mkdir(parents=True, exist_ok=True)

    def save_metadata(self, session: AgentSession) -> None:
        path = self._session_dir(session.id) / METADATA_FILE
        with _translate_os_errors("save_metadata", session.id):
            atomic_write_text(path, json.dumps(session.to_dict(), indent=2))
        logger.debug("Session metadata saved to %s", path)

    def load_all(self) -> list[AgentSession]:
        if not self._dir.is_dir():
            return []
        sessions: list[AgentSession] = []
        for entry in sorted(self._dir.iterdir()):
            meta_path = entry / METADATA_FILE
            if not meta_path.is_file():
                continue
            try:
                data = json.loads(meta_path.read_text(encoding="utf-8"))
                session = AgentSession.from_dict(data)
            except (OSError, ValueError, KeyError, TypeError) as exc:
                logger.warning("Skipping unreadable session %s: %s", entry.name, exc)
                continue
            session.status = SessionStatus.STOPPED
            sessions.append(session)
        sessions.sort(key=lambda s: s.created_at)
        logger.info("Loaded %d persisted sessions from %s", len(sessions), self._dir)
        return sessions

    def delete(self, session_id: str) -> bool:
        with _translate_os_errors("delete", session_id):
            removed = remove_tree_durable(self._session_dir(session_id))
        if removed:
            logger.info("Deleted history for session %s", session_id)
        return removed

    def append_terminal_output(self, session_id: str, chunk: str) -> None:
        path = self._session_dir(session_id) / TERMINAL_FILE
        with _translate_os_errors("append_terminal_output", session_id):
            append_text_durable(path, chunk)

    def load_terminal_history(self, session_id: str) -> str:
        path = self._session_dir(session_id) / TERMINAL_FILE
        try:
            with open(path, encoding="utf-8", errors="replace", newline="") as f:
                return f.read()
        except FileNotFoundError:
            return ""

    def append_stream_message(self, session_id: str, message: StreamMessage) -> None:
        path = self._session_dir(session_id) / STREAM_FILE
        with _translate_os_errors("append_stream_message", session_id):
            append_text_durable(path, json.dumps(message.to_dict()) + "\n")

    def load_stream_history(self, session_id: str) -> list[StreamMessage]:
        messages: list[StreamMessage] = []
        for doc in self._read_ndjson(self._session_dir(session_id) / STREAM_FILE):
            try:
                messages.append(StreamMessage.from_dict(doc))
            except (KeyError, TypeError, ValueError):
                logger.debug("Skipping malformed stream record in session %s", session_id)
        return messages

    def append_input(self, session_id: str, text: str) -> None:
        path = self._session_dir(session_id) / INPUT_FILE
        record = {"timestamp": datetime.now(timezone.utc).isoformat(), "input": text}
        with _translate_os_errors("append_input", session_id):
            append_text_durable(path, json.dumps(record) + "\n")

    def load_input_history(self, session_id: str) -> list[str]:
        inputs: list[str] = []
        for doc in self._read_ndjson(self._session_dir(session_id) / INPUT_FILE):
            text = doc.get("input")
            if isinstance(text, str):
                inputs.append(text)
        return inputs

    @staticmethod
    def _read_ndjson(path: Path) -> list[dict[str, Any]]:
        try:
            raw = path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return []
        docs: list[dict[str, Any]] = []
        for line in raw.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                doc = json.loads(line)
            except json.JSONDecodeError:
                # A crash mid-append leaves at most one torn line.
                logger.debug("Skipping malformed line in %s", path)
                continue
            if isinstance(doc, dict):
                docs.append(doc)
        return docs


class MemoryHistoryStore(HistoryStore):
    """Non-durable store for tests and throwaway runs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._metadata: dict[str, dict[str, Any]] = {}
        self._terminal: dict[str, list[str]] = {}
        self._messages: dict[str, list[dict[str, Any]]] = {}
        self._inputs: dict[str, list[str]] = {}

    def save_metadata(self, session: AgentSession) -> None:
        with self._lock:
            self._metadata[session.id] = session.to_dict()

    def load_all(self) -> list[AgentSession]:
        with self._lock:
            records = list(self._metadata.values())
        sessions = [AgentSession.from_dict(r) for r in records]
        for session in sessions:
            session.status = SessionStatus.STOPPED
        sessions.sort(key=lambda s: s.created_at)
        return sessions

    def delete(self, session_id: str) -> bool:
        with self._lock:
            existed = self._metadata.pop(session_id, None) is not None
            self._terminal.pop(session_id, None)
            self._messages.pop(session_id, None)
            self._inputs.pop(session_id, None)
        return existed

    def append_terminal_output(self, session_id: str, chunk: str) -> None:
        with self._lock:
            self._terminal.setdefault(session_id, []).append(chunk)

    def load_terminal_history(self, session_id: str) -> str:
        with self._lock:
            return "".join(self._terminal.get(session_id, []))

    def append_stream_message(self, session_id: str, message: StreamMessage) -> None:
        with self._lock:
            self._messages.setdefault(session_id, []).append(message.to_dict())

    def load_stream_history(self, session_id: str) -> list[StreamMessage]:
        with self._lock:
            records = list(self._messages.get(session_id, []))
        return [StreamMessage.from_dict(r) for r in records]

    def append_input(self, session_id: str, text: str) -> None:
        with self._lock:
            self._inputs.setdefault(session_id, []).append(text)

    def load_input_history(self, session_id: str) -> list[str]:
        with self._lock:
            return list(self._inputs.get(session_id, []))


_STOP = object()


class PersistenceWriter:
    """Detached, ordered execution of store writes.

    Each session gets one FIFO worker; its writes run in a thread in the
    order they were submitted. Failures are logged and dropped. Once a
    session's deletion is queued, later writes for it are discarded.
    """

    def __init__(self, store: HistoryStore) -> None:
        self._store = store
        self._queues: dict[str, asyncio.Queue] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._deleted: set[str] = set()
        self._closed = False

    @property
    def store(self) -> HistoryStore:
        return self._store

    def submit(self, session_id: str, operation: str, func: Callable[..., Any], *args: Any) -> None:
        if self._closed:
            logger.debug("Writer closed; dropping %s for session %s", operation, session_id)
            return
        if session_id in self._deleted:
            logger.debug("Dropping %s for deleted session %s", operation, session_id)
            return
        self._queue_for(session_id).put_nowait((operation, func, args))

    def save_metadata(self, session: AgentSession) -> None:
        snapshot = dataclasses.replace(session, process=None)
        self.submit(session.id, "save_metadata", self._store.save_metadata, snapshot)

    def append_terminal_output(self, session_id: str, chunk: str) -> None:
        self.submit(session_id, "append_terminal_output", self._store.append_terminal_output, session_id, chunk)

    def append_stream_message(self, session_id: str, message: StreamMessage) -> None:
        self.submit(session_id, "append_stream_message", self._store.append_stream_message, session_id, message)

    def append_input(self, session_id: str, text: str) -> None:
        self.submit(session_id, "append_input", self._store.append_input, session_id, text)

    def delete(self, session_id: str) -> None:
        """Queue deletion behind the session's pending writes."""
        if self._closed or session_id in self._deleted:
            return
        queue = self._queue_for(session_id)
        self._deleted.add(session_id)
        queue.put_nowait(("delete", self._store.delete, (session_id,)))
        queue.put_nowait(_STOP)

    def _queue_for(self, session_id: str) -> asyncio.Queue:
        queue = self._queues.get(session_id)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[session_id] = queue
            task = asyncio.create_task(self._run(session_id, queue))
            self._workers[session_id] = task
            task.add_done_callback(lambda _t: self._forget(session_id, queue))
        return queue

    def _forget(self, session_id: str, queue: asyncio.Queue) -> None:
        if self._queues.get(session_id) is queue:
            del self._queues[session_id]
            self._workers.pop(session_id, None)

    async def _run(self, session_id: str, queue: asyncio.Queue) -> None:
        while True:
            item = await queue.get()
            try:
                if item is _STOP:
                    return
                operation, func, args = item
                try:
                    await asyncio.to_thread(func, *args)
                except Exception as exc:
                    logger.warning(
                        "Persistence %s failed for session %s: %s",
                        operation, session_id, exc, exc_info=True,
                    )
            finally:
                queue.task_done()

    async def flush(self) -> None:
        """Wait until every write submitted so far has been attempted."""
        queues = list(self._queues.values())
        if queues:
            await asyncio.gather(*(q.join() for q in queues))

    async def close(self) -> None:
        """Flush pending writes and stop all workers."""
        if self._closed:
            return
        await self.flush()
        self._closed = True
        workers = list(self._workers.values())
        for queue in list(self._queues.values()):
            queue.put_nowait(_STOP)
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        self._queues.clear()
        self._workers.clear()
