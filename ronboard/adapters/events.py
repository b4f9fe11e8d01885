"""Event types published by the session registry.

Group events carry one session's live output and are delivered only to
that session's subscribers. Broadcast events describe session lifecycle
changes and go to every subscriber.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class SessionEvent:
    """Base event from the session engine."""
    event_type: str = ""
    session_id: str = ""

    # Group events are routed to the session's own subscribers only.
    group_scoped = False


@dataclass
class TerminalOutput(SessionEvent):
    event_type: str = "terminal_output"
    data: str = ""

    group_scoped = True


@dataclass
class StreamMessageEvent(SessionEvent):
    event_type: str = "stream_message"
    message: dict[str, Any] = field(default_factory=dict)

    group_scoped = True


@dataclass
class SessionEnded(SessionEvent):
    event_type: str = "session_ended"

    group_scoped = True


@dataclass
class SessionCreated(SessionEvent):
    event_type: str = "session_created"
    session: dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionStopped(SessionEvent):
    event_type: str = "session_stopped"


@dataclass
class SessionRemoved(SessionEvent):
    event_type: str = "session_removed"


@dataclass
class SessionResumed(SessionEvent):
    event_type: str = "session_resumed"
    session: dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionRenamed(SessionEvent):
    event_type: str = "session_renamed"
    name: str = ""


def event_to_dict(event: SessionEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d

