"""Ronboard session engine: many concurrent agent CLI sessions with live fan-out."""
from .models import (
    UNDELIVERED_TYPE,
    UNTITLED,
    USER_MESSAGE_TYPE,
    AgentSession,
    SessionBuffers,
    SessionMode,
    SessionStatus,
    StreamFrame,
    StreamMessage,
)
from .config import RonboardConfig
from .errors import (
    ConfigError,
    DirectoryNotFoundError,
    InvalidTransitionError,
    MalformedFrameError,
    PersistenceError,
    ProcessSpawnError,
    RonboardError,
    SessionNotFoundError,
)

__all__ = [
    # Core (lazy import to avoid circular deps with shared.services)
    "SessionRegistry",
    "ProcessLauncher",
    "AgentProcess",
    "OutputRelay",
    "ResumeEngine",
    "LifecycleSupervisor",
    # Models
    "UNDELIVERED_TYPE",
    "UNTITLED",
    "USER_MESSAGE_TYPE",
    "AgentSession",
    "SessionBuffers",
    "SessionMode",
    "SessionStatus",
    "StreamFrame",
    "StreamMessage",
    # Config
    "RonboardConfig",
    "load_yaml_config",
    # Errors
    "ConfigError",
    "DirectoryNotFoundError",
    "InvalidTransitionError",
    "MalformedFrameError",
    "PersistenceError",
    "ProcessSpawnError",
    "RonboardError",
    "SessionNotFoundError",
]


def __getattr__(name: str):
    if name == "SessionRegistry":
        from .registry import SessionRegistry
        return SessionRegistry
    if name == "ProcessLauncher":
        from .launcher import ProcessLauncher
        return ProcessLauncher
    if name == "AgentProcess":
        from .launcher import AgentProcess
        return AgentProcess
    if name == "OutputRelay":
        from .relay import OutputRelay
        return OutputRelay
    if name == "ResumeEngine":
        from .resume import ResumeEngine
        return ResumeEngine
    if name == "LifecycleSupervisor":
        from .lifecycle import LifecycleSupervisor
        return LifecycleSupervisor
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
