"""Agent process launcher.

Starts the `claude` CLI as a child process in one of two framing modes
and exposes its output as an OutputChannel:

- terminal: run under the `script` pseudo-terminal wrapper so the agent
  believes it is interactive; output is relayed as raw text chunks whose
  boundaries carry no meaning.
- stream: run with stream-json input/output; each stdout line is one
  JSON document.

Mode-specific behaviour (command line, output framing, input encoding,
resume priming) lives in a Framing strategy chosen by framing_for().
"""
from __future__ import annotations

import abc
import asyncio
import codecs
import json
import logging
import os
import shlex
import sys
from typing import Any

from ronboard.shared.services.process_cleanup import kill_process_tree

from .channel import OutputChannel
from .config import RonboardConfig
from .errors import DirectoryNotFoundError, MalformedFrameError, ProcessSpawnError
from .models import SessionMode, StreamFrame
from .text import collapse_keystrokes

logger = logging.getLogger(__name__)

STREAM_FLAGS = [
    "--print",
    "--input-format", "stream-json",
    "--output-format", "stream-json",
    "--include-partial-messages",
    "--verbose",
]

# Bracketed paste markers: the agent's TUI takes the whole block as one
# input instead of submitting at every newline.
_PASTE_START = "\x1b[200~"
_PASTE_END = "\x1b[201~"


def resolve_working_directory(path: str) -> str:
    """Expand a leading ``~`` and make *path* absolute.

    Raises DirectoryNotFoundError if the result is not an existing
    directory.
    """
    if not path or not path.strip():
        raise DirectoryNotFoundError(path or "")
    resolved = os.path.abspath(os.path.expanduser(path.strip()))
    if not os.path.isdir(resolved):
        raise DirectoryNotFoundError(resolved)
    return resolved


def parse_frame(line: str) -> StreamFrame:
    """Parse one stream-json output line.

    Raises MalformedFrameError for invalid JSON or a non-object document.
    """
    try:
        doc = json.loads(line)
    except json.JSONDecodeError as exc:
        raise MalformedFrameError(line, str(exc)) from exc
    if not isinstance(doc, dict):
        raise MalformedFrameError(line, "not a JSON object")
    type_ = doc.get("type")
    if not isinstance(type_, str) or not type_:
        type_ = "unknown"
    return StreamFrame(type=type_, payload=doc)


class Framing(abc.ABC):
    """Mode strategy: how to launch, read, write and prime one agent."""

    mode: SessionMode

    def __init__(self, config: RonboardConfig) -> None:
        self._config = config

    def agent_invocation(self, extra_args: list[str], model: str | None) -> str:
        """Shell command line that runs the agent CLI."""
        args = list(extra_args)
        if model:
            args.extend(["--model", model])
        if not args:
            return self._config.agent_command
        return f"{self._config.agent_command} {shlex.join(args)}"

    @abc.abstractmethod
    def build_command(self, model: str | None) -> tuple[list[str], dict[str, str] | None]:
        """Return (argv, env_or_None) for the child process."""

    @abc.abstractmethod
    async def pump(self, stdout: asyncio.StreamReader, channel: OutputChannel) -> None:
        """Read stdout until EOF, putting framed units on *channel*."""

    @abc.abstractmethod
    def encode_input(self, text: str) -> bytes:
        """Encode one user input for the child's stdin."""

    @abc.abstractmethod
    def transcript(self, inputs: list[str]) -> list[str]:
        """Turn the raw input log into the user turns it represents."""

    @abc.abstractmethod
    def encode_priming(self, prompt: str) -> bytes:
        """Encode the resume priming prompt as a single submitted turn."""

    @property
    def priming_delay(self) -> float:
        return 0.0


class TerminalFraming(Framing):
    """Raw pseudo-terminal relay."""

    mode = SessionMode.TERMINAL

    def build_command(self, model: str | None) -> tuple[list[str], dict[str, str] | None]:
        cfg = self._config
        inner = (
            f"stty cols {cfg.terminal_columns} rows {cfg.terminal_rows} 2>/dev/null; "
            f"exec {self.agent_invocation([], model)}"
        )
        shell_cmd = [cfg.shell, "-l", "-c", inner]
        if sys.platform == "darwin":
            cmd = ["script", "-q", "/dev/null", *shell_cmd]
        else:
            # util-linux: -e returns the child's exit code, -f flushes per write
            cmd = ["script", "-q", "-e", "-f", "-c", shlex.join(shell_cmd), "/dev/null"]

        env = os.environ.copy()
        env["TERM"] = cfg.term
        env["COLUMNS"] = str(cfg.terminal_columns)
        env["LINES"] = str(cfg.terminal_rows)
        return cmd, env

    async def pump(self, stdout: asyncio.StreamReader, channel: OutputChannel) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stdout.read(self._config.read_chunk_size)
            if not data:
                tail = decoder.decode(b"", final=True)
                if tail:
                    channel.put(tail)
                return
            text = decoder.decode(data)
            if text:
                channel.put(text)

    def encode_input(self, text: str) -> bytes:
        return text.encode("utf-8")

    def transcript(self, inputs: list[str]) -> list[str]:
        return collapse_keystrokes(inputs)

    def encode_priming(self, prompt: str) -> bytes:
        return f"{_PASTE_START}{prompt}{_PASTE_END}\r".encode("utf-8")

    @property
    def priming_delay(self) -> float:
        return self._config.resume_settle_seconds


class StreamFraming(Framing):
    """Line-delimited JSON in both directions."""

    mode = SessionMode.STREAM

    def build_command(self, model: str | None) -> tuple[list[str], dict[str, str] | None]:
        return [self._config.shell, "-l", "-c", self.agent_invocation(STREAM_FLAGS, model)], None

    async def pump(self, stdout: asyncio.StreamReader, channel: OutputChannel) -> None:
        while True:
            try:
                raw = await stdout.readline()
            except ValueError:
                logger.warning(
                    "Dropped stream line longer than %d bytes",
                    self._config.stream_line_limit,
                )
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            try:
                frame = parse_frame(line)
            except MalformedFrameError as exc:
                logger.debug("Non-JSON output: %s", exc.line[:200])
                continue
            channel.put(frame)

    def encode_input(self, text: str) -> bytes:
        envelope = {"type": "user", "message": {"role": "user", "content": text}}
        return (json.dumps(envelope) + "\n").encode("utf-8")

    def transcript(self, inputs: list[str]) -> list[str]:
        return [text for text in inputs if text.strip()]

    def encode_priming(self, prompt: str) -> bytes:
        return self.encode_input(prompt)


def framing_for(mode: SessionMode, config: RonboardConfig) -> Framing:
    if mode == SessionMode.STREAM:
        return StreamFraming(config)
    return TerminalFraming(config)


class AgentProcess:
    """Handle for one running agent child process."""

    def __init__(self, proc: Any, framing: Framing, cwd: str = "") -> None:
        self._proc = proc
        self.framing = framing
        self.cwd = cwd
        self._write_lock = asyncio.Lock()
        self._reader_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def mode(self) -> SessionMode:
        return self.framing.mode

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    @property
    def has_exited(self) -> bool:
        return self._proc.returncode is not None

    async def write(self, text: str) -> None:
        """Write one user input, encoded for this process's mode."""
        await self.write_raw(self.framing.encode_input(text))

    async def write_raw(self, data: bytes) -> None:
        stdin = self._proc.stdin
        if stdin is None:
            raise BrokenPipeError("agent stdin is not available")
        async with self._write_lock:
            stdin.write(data)
            await stdin.drain()

    async def wait(self) -> int:
        return await self._proc.wait()

    def kill_tree(self) -> None:
        """Forcibly terminate the process and all of its descendants."""
        if self.has_exited:
            return
        kill_process_tree(self.pid)


class ProcessLauncher:
    """Starts agent processes and wires their output readers."""

    def __init__(self, config: RonboardConfig) -> None:
        self._config = config

    async def start(
        self,
        mode: SessionMode,
        working_directory: str,
        model: str | None = None,
    ) -> tuple[AgentProcess, OutputChannel]:
        """Launch the agent in *working_directory*.

        Raises DirectoryNotFoundError or ProcessSpawnError.
        """
        resolved = resolve_working_directory(working_directory)
        framing = framing_for(mode, self._config)
        cmd, env = framing.build_command(model)

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=resolved,
                env=env,
                start_new_session=True,
                limit=self._config.stream_line_limit,
            )
        except OSError as exc:
            raise ProcessSpawnError(cmd[0], f"{type(exc).__name__}: {exc}") from exc

        logger.info(
            "Started %s agent process (PID %d) in %s", mode.value, proc.pid, resolved,
        )
        channel: OutputChannel = OutputChannel()
        process = AgentProcess(proc, framing, resolved)
        process._reader_task = asyncio.create_task(
            _read_output(framing, proc.stdout, channel, proc.pid)
        )
        process._stderr_task = asyncio.create_task(
            _read_stderr(proc.stderr, proc.pid)
        )
        return process, channel


async def _read_output(
    framing: Framing,
    stdout: asyncio.StreamReader,
    channel: OutputChannel,
    pid: int,
) -> None:
    try:
        await framing.pump(stdout, channel)
    except Exception:
        logger.error("Error reading %s stdout (PID %d)", framing.mode.value, pid, exc_info=True)
    finally:
        channel.close()


async def _read_stderr(stderr: asyncio.StreamReader, pid: int) -> None:
    """Log the agent's stderr; never affects session health."""
    try:
        while True:
            raw = await stderr.readline()
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line.strip():
                logger.warning("Agent stderr (PID %d): %s", pid, line)
    except Exception:
        logger.debug("stderr reader for PID %d stopped", pid, exc_info=True)
