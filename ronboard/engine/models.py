"""Core data models for the session engine.

All dataclasses and enums. Single source of truth to avoid circular
imports.
"""
from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .launcher import AgentProcess

UNTITLED = "Untitled"
USER_MESSAGE_TYPE = "user_message"
UNDELIVERED_TYPE = "user_message_undelivered"


class SessionMode(str, Enum):
    """Framing protocol of a session, fixed at creation."""
    TERMINAL = "terminal"
    STREAM = "stream"

    @classmethod
    def parse(cls, value: str | SessionMode | None) -> SessionMode:
        """Parse a mode name. Empty means terminal; unknown names raise ValueError."""
        if isinstance(value, SessionMode):
            return value
        name = (value or "").strip().lower()
        if not name:
            return cls.TERMINAL
        try:
            return cls(name)
        except ValueError:
            raise ValueError(f"unknown session mode: {value!r}") from None


class SessionStatus(str, Enum):
    """Session lifecycle states. See lifecycle.py for transition rules."""
    STARTING = "starting"
    RUNNING = "running"
    IDLE = "idle"
    STOPPED = "stopped"
    ERROR = "error"


def _make_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: str | None) -> datetime:
    if not value:
        return _utcnow()
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class AgentSession:
    """One conversation with one agent process at a time."""

    mode: SessionMode = SessionMode.TERMINAL
    name: str = UNTITLED
    working_directory: str = ""
    status: SessionStatus = SessionStatus.STARTING
    model: str | None = None
    id: str = field(default_factory=_make_id)
    created_at: datetime = field(default_factory=_utcnow)
    last_used_at: datetime = field(default_factory=_utcnow)
    # Present only while a child process is attached; never serialized.
    process: AgentProcess | None = field(
        default=None, repr=False, compare=False,
    )

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "mode":
            value = SessionMode(value)
            current = self.__dict__.get("mode")
            if current is not None and current != value:
                raise AttributeError("session mode cannot change after creation")
        super().__setattr__(name, value)

    @property
    def is_running(self) -> bool:
        return self.process is not None and not self.process.has_exited

    def touch(self) -> None:
        self.last_used_at = _utcnow()

    def to_dict(self) -> dict[str, Any]:
        """Metadata for persistence. The process handle is never included."""
        return {
            "id": self.id,
            "name": self.name,
            "working_directory": self.working_directory,
            "mode": self.mode.value,
            "status": self.status.value,
            "model": self.model,
            "created_at": self.created_at.isoformat(),
            "last_used_at": self.last_used_at.isoformat(),
        }

    def to_public_dict(self) -> dict[str, Any]:
        data = self.to_dict()
        data["is_running"] = self.is_running
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentSession:
        return cls(
            id=str(data["id"]),
            name=data.get("name") or UNTITLED,
            working_directory=data.get("working_directory", ""),
            mode=SessionMode(data.get("mode", SessionMode.TERMINAL.value)),
            status=SessionStatus(data.get("status", SessionStatus.STOPPED.value)),
            model=data.get("model"),
            created_at=_parse_timestamp(data.get("created_at")),
            last_used_at=_parse_timestamp(
                data.get("last_used_at") or data.get("created_at")
            ),
        )


@dataclass
class StreamMessage:
    """One structured record in a stream-mode session's history.

    ``payload`` is the agent's JSON object as-is (or ``{"text": ...}`` for
    a locally synthesized user message); its shape varies by ``type``.
    """
    index: int
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "timestamp": self.timestamp.isoformat(),
            "type": self.type,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StreamMessage:
        return cls(
            index=int(data["index"]),
            type=str(data.get("type") or "unknown"),
            payload=data.get("payload") or {},
            timestamp=_parse_timestamp(data.get("timestamp")),
        )


@dataclass
class StreamFrame:
    """A parsed stream-mode output line before it gets its history index."""
    type: str
    payload: dict[str, Any]


class SessionBuffers:
    """In-memory transcript cache for one session.

    Appends and snapshots take the same lock, so a reader never sees a
    half-applied append.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._chunks: list[str] = []
        self._messages: list[StreamMessage] = []

    def append_terminal(self, chunk: str) -> None:
        with self._lock:
            self._chunks.append(chunk)

    def terminal_text(self) -> str:
        with self._lock:
            return "".join(self._chunks)

    def seed_terminal(self, text: str) -> None:
        with self._lock:
            self._chunks = [text] if text else []

    def append_message(self, type_: str, payload: dict[str, Any]) -> StreamMessage:
        """Append a structured record, assigning the next gap-free index."""
        with self._lock:
            msg = StreamMessage(
                index=len(self._messages), type=type_, payload=payload,
            )
            self._messages.append(msg)
            return msg

    def messages(self) -> list[StreamMessage]:
        with self._lock:
            return list(self._messages)

    def seed_messages(self, messages: list[StreamMessage]) -> None:
        """Load persisted history, renumbering so indices stay 0..N-1."""
        with self._lock:
            self._messages = [
                StreamMessage(
                    index=i, type=m.type, payload=m.payload, timestamp=m.timestamp,
                )
                for i, m in enumerate(messages)
            ]

    @property
    def message_count(self) -> int:
        with self._lock:
            return len(self._messages)
