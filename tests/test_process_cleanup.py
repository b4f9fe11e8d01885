"""Tests for process tree termination."""
from __future__ import annotations

import signal
import subprocess
from unittest.mock import patch

import pytest

from ronboard.shared.services.process_cleanup import (
    ProcessInfo,
    find_descendants,
    kill_process_tree,
)


def _table(*pairs: tuple[int, int]) -> dict[int, ProcessInfo]:
    return {pid: ProcessInfo(pid=pid, ppid=ppid) for pid, ppid in pairs}


def test_find_descendants_walks_whole_tree():
    table = _table((100, 1), (101, 100), (102, 100), (103, 101), (104, 103), (200, 1))
    assert find_descendants(100, table) == [101, 102, 103, 104]
    assert find_descendants(200, table) == []


def test_find_descendants_survives_cycles():
    table = _table((10, 11), (11, 10))
    assert find_descendants(10, table) == [11]


def test_find_descendants_without_ps_returns_empty():
    with patch(
        "ronboard.shared.services.process_cleanup._list_processes",
        side_effect=subprocess.CalledProcessError(1, "ps"),
    ):
        assert find_descendants(100) == []


def test_kill_process_tree_signals_children_first():
    table = _table((100, 1), (101, 100), (102, 101))
    killed: list[int] = []

    with patch("ronboard.shared.services.process_cleanup._list_processes", return_value=table), \
         patch("ronboard.shared.services.process_cleanup.os.kill", side_effect=lambda pid, sig: killed.append(pid)), \
         patch("ronboard.shared.services.process_cleanup.os.killpg") as killpg:
        count = kill_process_tree(100)

    assert killed == [102, 101, 100]
    assert count == 3
    killpg.assert_called_once_with(100, signal.SIGKILL)


def test_kill_process_tree_skips_vanished_processes():
    table = _table((100, 1), (101, 100))

    def fake_kill(pid, sig):
        raise ProcessLookupError(pid)

    with patch("ronboard.shared.services.process_cleanup._list_processes", return_value=table), \
         patch("ronboard.shared.services.process_cleanup.os.kill", side_effect=fake_kill), \
         patch("ronboard.shared.services.process_cleanup.os.killpg", side_effect=ProcessLookupError):
        assert kill_process_tree(100) == 0


def test_kill_process_tree_propagates_permission_error():
    with patch("ronboard.shared.services.process_cleanup._list_processes", return_value={}), \
         patch("ronboard.shared.services.process_cleanup.os.killpg", side_effect=PermissionError), \
         patch("ronboard.shared.services.process_cleanup.os.kill", side_effect=PermissionError("denied")):
        with pytest.raises(PermissionError):
            kill_process_tree(100)
