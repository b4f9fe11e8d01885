"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via RONBOARD_* env vars,
or via a YAML file (see yaml_config.py) which env vars take precedence
over.
"""
from __future__ import annotations

import dataclasses
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}


def _default_data_dir() -> str:
    return str(Path.home() / ".ronboard")


def default_shell() -> str:
    """Shell used to launch the agent when SHELL is unset."""
    if sys.platform == "darwin":
        return "/bin/zsh"
    return "/bin/bash"


def _resolve_shell() -> str:
    return os.environ.get("SHELL") or default_shell()


@dataclass
class RonboardConfig:
    """Session engine and server configuration."""

    # Storage root: sessions/, logs/
    data_dir: str = field(default_factory=_default_data_dir)

    # Agent invocation
    agent_command: str = "claude"
    shell: str = field(default_factory=_resolve_shell)

    # Terminal mode geometry and reading
    terminal_columns: int = 120
    terminal_rows: int = 40
    term: str = "xterm-256color"
    read_chunk_size: int = 4096

    # Stream mode: max bytes for a single JSON line
    stream_line_limit: int = 16 * 1024 * 1024

    # Delay before priming a resumed terminal session, so the agent's
    # startup banner has been drawn.
    resume_settle_seconds: float = 2.0

    # last_used_at is batched; dirty sessions are saved on this cadence.
    metadata_flush_seconds: float = 5.0

    # How long a finished process's output relay may take to drain.
    relay_drain_seconds: float = 5.0

    # Auto-naming of "Untitled" sessions
    naming_enabled: bool = True
    naming_min_chars: int = 200
    naming_snippet_chars: int = 500
    naming_max_title_chars: int = 60
    naming_timeout_seconds: float = 60.0

    # HTTP + SSE server
    host: str = "127.0.0.1"
    port: int = 5100

    # Logging
    log_level: str = "INFO"

    @property
    def logs_dir(self) -> Path:
        return Path(self.data_dir).expanduser() / "logs"

    @classmethod
    def from_env(cls, base: RonboardConfig | None = None) -> RonboardConfig:
        """Load configuration from RONBOARD_* environment variables.

        Values not set in the environment come from *base* (typically a
        YAML-loaded config) or the dataclass defaults.
        """
        base = base or cls()
        overrides = {
            k: v for k, v in os.environ.items() if k.startswith("RONBOARD_")
        }
        if overrides:
            logger.info(
                "RonboardConfig.from_env: RONBOARD_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(overrides.items())),
            )
        else:
            logger.debug("RonboardConfig.from_env: no RONBOARD_* env vars set")

        values = {}
        for f in dataclasses.fields(cls):
            raw = os.getenv(f"RONBOARD_{f.name.upper()}")
            if raw is None or raw == "":
                continue
            values[f.name] = _coerce(f.name, raw, getattr(base, f.name))

        config = dataclasses.replace(base, **values)
        logger.info(
            "RonboardConfig: data_dir=%s agent=%s shell=%s port=%d log_level=%s",
            config.data_dir, config.agent_command, config.shell,
            config.port, config.log_level,
        )
        return config


def _coerce(name: str, raw: str, current: object) -> object:
    """Convert a string setting to the type of its current value."""
    if isinstance(current, bool):
        return raw.strip().lower() in _TRUTHY
    try:
        if isinstance(current, int):
            return int(raw)
        if isinstance(current, float):
            return float(raw)
    except ValueError:
        logger.warning(
            "Ignoring RONBOARD_%s=%r: expected %s",
            name.upper(), raw, type(current).__name__,
        )
        return current
    return raw
