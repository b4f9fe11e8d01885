"""YAML configuration loader.

Loads a single YAML file into a RonboardConfig. Environment variables
still win over file values (see RonboardConfig.from_env).

Example YAML:
    ronboard:
      data_dir: ~/.ronboard
      agent_command: claude
      terminal_columns: 160
      resume_settle_seconds: 3
      naming_enabled: false
      port: 5100
"""
from __future__ import annotations

import dataclasses
import logging
from pathlib import Path

import yaml

from .config import RonboardConfig
from .errors import ConfigError

logger = logging.getLogger(__name__)


def load_yaml_config(path: str | Path) -> RonboardConfig:
    """Load and parse a YAML config file.

    Raises ConfigError when the file is missing, is not valid YAML, or a
    value has the wrong type. Unknown keys are logged and ignored.
    """
    path = Path(path).expanduser()
    logger.info(
        "load_yaml_config: loading %s (exists=%s)", path, path.exists()
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigError(f"config file not found: {path}")
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise ConfigError(f"YAML parse error in {path}: {exc}")

    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: top level must be a mapping")

    section = raw.get("ronboard", raw)
    if not isinstance(section, dict):
        raise ConfigError(f"{path}: 'ronboard' section must be a mapping")

    known = {f.name: f for f in dataclasses.fields(RonboardConfig)}
    defaults = RonboardConfig()
    values = {}
    for key, value in section.items():
        if key not in known:
            logger.warning("load_yaml_config: ignoring unknown key %r", key)
            continue
        values[key] = _check_type(key, value, getattr(defaults, key))

    logger.info(
        "Parsed YAML config %s, keys: %s",
        path.name, ", ".join(sorted(values)) if values else "(none)",
    )
    return dataclasses.replace(defaults, **values)


def _check_type(key: str, value: object, default: object) -> object:
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigError(f"{key} must be a boolean")
        return value
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{key} must be an integer")
        return value
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"{key} must be a number")
        return float(value)
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string")
    return value
