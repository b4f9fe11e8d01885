"""Forced termination of an agent process and everything it spawned.

The terminal wrapper (`script`) puts the agent's shell in its own
session, so killing the wrapper's process group alone would leave the
agent running. Descendants are therefore collected from the process
table before anything is signalled.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    ppid: int


def _list_processes() -> dict[int, ProcessInfo]:
    """Return process table keyed by PID using `ps` output."""
    out = subprocess.check_output(
        ["ps", "-eo", "pid=,ppid="],
        text=True,
        stderr=subprocess.DEVNULL,
    )
    table: dict[int, ProcessInfo] = {}
    for line in out.splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        try:
            pid = int(parts[0])
            ppid = int(parts[1])
        except ValueError:
            continue
        table[pid] = ProcessInfo(pid=pid, ppid=ppid)
    return table


def find_descendants(pid: int, table: dict[int, ProcessInfo] | None = None) -> list[int]:
    """PIDs of every descendant of *pid*, parents before children."""
    if table is None:
        try:
            table = _list_processes()
        except (OSError, subprocess.SubprocessError):
            logger.debug("Could not read process table", exc_info=True)
            return []
    children: dict[int, list[int]] = {}
    for proc in table.values():
        children.setdefault(proc.ppid, []).append(proc.pid)

    result: list[int] = []
    frontier = [pid]
    seen = {pid}
    while frontier:
        current = frontier.pop(0)
        for child in children.get(current, []):
            if child in seen:
                continue
            seen.add(child)
            result.append(child)
            frontier.append(child)
    return result


def kill_process_tree(pid: int, *, sig: int = signal.SIGKILL) -> int:
    """Signal *pid*, its process group and all its descendants.

    Processes that are already gone are skipped. Returns the number of
    processes signalled. Permission errors propagate to the caller.
    """
    targets = find_descendants(pid)
    killed = 0
    for target in reversed(targets):
        try:
            os.kill(target, sig)
            killed += 1
        except ProcessLookupError:
            continue

    try:
        os.killpg(pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        # pid does not lead its own group; fall through to a direct kill.
        logger.debug("killpg(%d) not permitted", pid)

    try:
        os.kill(pid, sig)
        killed += 1
    except ProcessLookupError:
        pass
    return killed
