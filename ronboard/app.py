"""Ronboard CLI main application entry point."""

from __future__ import annotations

import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


def _configure_logging(log_level: str, log_dir: Path) -> Path:
    """Rotating file log plus stderr on the root logger."""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "ronboard-server.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def main() -> None:
    import argparse

    from ronboard.engine.config import RonboardConfig
    from ronboard.engine.errors import ConfigError

    parser = argparse.ArgumentParser(
        prog="ronboard",
        description="Ronboard: run and share many agent CLI sessions",
    )
    parser.add_argument(
        "--host", metavar="HOST",
        help="Interface to listen on (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port", type=int,
        help="Server port (default: 5100)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (ronboard: section)",
    )
    parser.add_argument(
        "--data-dir", metavar="DIR",
        help="Where session history and logs are kept (default: ~/.ronboard)",
    )
    parser.add_argument(
        "--list", action="store_true",
        help="List saved sessions and exit",
    )
    parser.add_argument(
        "--ephemeral", action="store_true",
        help="Keep session history in memory only",
    )
    args = parser.parse_args()

    base = None
    if args.config:
        from ronboard.engine.yaml_config import load_yaml_config

        try:
            base = load_yaml_config(args.config)
        except ConfigError as exc:
            print(f"ronboard: {exc}", file=sys.stderr)
            sys.exit(2)
    config = RonboardConfig.from_env(base)
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.data_dir:
        config.data_dir = args.data_dir

    if args.list:
        from ronboard.shared.services.persistence import FileHistoryStore

        sessions = FileHistoryStore(config.data_dir).load_all()
        if not sessions:
            print("No saved sessions.")
        else:
            for session in sessions:
                print(
                    f"  {session.id}  {session.mode.value:<8}  "
                    f"{session.last_used_at:%Y-%m-%d %H:%M}  {session.name}"
                )
        sys.exit(0)

    from ronboard.engine.registry import SessionRegistry
    from ronboard.shared.services.persistence import (
        FileHistoryStore,
        MemoryHistoryStore,
    )
    from ronboard.web.server import RonboardServer

    log_file = _configure_logging(config.log_level, config.logs_dir)
    logging.getLogger(__name__).info(
        "Starting Ronboard server cwd=%s host=%s port=%s config=%s log=%s",
        Path.cwd(), config.host, config.port, args.config or "<none>", log_file,
    )

    store = MemoryHistoryStore() if args.ephemeral else FileHistoryStore(config.data_dir)
    server = RonboardServer(config, registry=SessionRegistry(config, store))
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        pass
    sys.exit(0)


if __name__ == "__main__":
    main()
