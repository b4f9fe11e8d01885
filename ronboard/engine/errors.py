"""Exception hierarchy for the session engine.

Specific exceptions for each failure mode. Failures that affect one unit
of work (a malformed line, a persistence write) are caught where they
happen; failures that affect session establishment are captured into the
session's status by the registry.
"""
from __future__ import annotations


class RonboardError(Exception):
    """Base exception for all session engine errors."""


class DirectoryNotFoundError(RonboardError):
    """Working directory for a session does not exist."""
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Working directory not found: {path}")


class SessionNotFoundError(RonboardError):
    """Operation referenced an unknown session id."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class ProcessSpawnError(RonboardError):
    """Failed to create the agent child process."""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to start '{command}': {reason}")


class MalformedFrameError(RonboardError):
    """One line of structured agent output could not be parsed."""
    def __init__(self, line: str, reason: str):
        self.line = line
        self.reason = reason
        super().__init__(f"Malformed frame ({reason}): {line[:200]}")


class PersistenceError(RonboardError):
    """A durable history write failed."""
    def __init__(self, operation: str, session_id: str | None, reason: str):
        self.operation = operation
        self.session_id = session_id
        self.reason = reason
        super().__init__(
            f"Persistence {operation} failed for session {session_id}: {reason}"
        )


class ConfigError(RonboardError):
    """Configuration file could not be loaded."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid configuration: {reason}")


class InvalidTransitionError(RonboardError):
    """Requested session status change is not allowed."""
    def __init__(self, current: str, target: str, allowed: list[str]):
        self.current = current
        self.target = target
        allowed_str = ", ".join(allowed) if allowed else "none"
        super().__init__(
            f"Invalid status transition: {current} -> {target}. "
            f"Allowed from {current}: {allowed_str}"
        )
