"""Crash-safe file primitives for the history store."""
from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path


def _fsync_dir(dir_path: Path) -> None:
    """Best-effort directory fsync to persist rename/unlink metadata."""
    try:
        flags = os.O_RDONLY
        if hasattr(os, "O_DIRECTORY"):
            flags |= os.O_DIRECTORY
        fd = os.open(str(dir_path), flags)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except OSError:
        # Not every filesystem supports directory fsync.
        pass


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Replace *path* with *content* via a fsynced temp file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        os.replace(tmp_path, path)
        _fsync_dir(path.parent)
    finally:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                pass


def append_text_durable(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Append *content* and fsync before returning.

    The parent directory is fsynced too when the file is newly created.
    """
    created = not path.exists()
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding=encoding, newline="") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())
    if created:
        _fsync_dir(path.parent)


def remove_tree_durable(path: Path) -> bool:
    """Delete a directory tree and fsync its parent. Returns False if absent."""
    if not path.exists():
        return False
    shutil.rmtree(path)
    _fsync_dir(path.parent)
    return True
