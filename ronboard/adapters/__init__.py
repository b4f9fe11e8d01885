"""Adapters package - event types and the fan-out bus.

Connects the session engine to its transports (the HTTP/SSE server)
without the engine knowing who is listening.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "Notifier",
    "SessionEvent",
    "event_to_dict",
]

from ronboard.adapters.event_bus import EventBus, Notifier
from ronboard.adapters.events import SessionEvent, event_to_dict
