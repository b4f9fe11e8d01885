"""Tests for the history stores and the detached PersistenceWriter."""
from __future__ import annotations

import asyncio
import json
import logging
import threading
from datetime import datetime, timezone

import pytest

from ronboard.engine.errors import PersistenceError
from ronboard.engine.models import AgentSession, SessionMode, SessionStatus, StreamMessage
from ronboard.shared.services.persistence import (
    FileHistoryStore,
    INPUT_FILE,
    METADATA_FILE,
    MemoryHistoryStore,
    PersistenceWriter,
    STREAM_FILE,
    TERMINAL_FILE,
)


@pytest.fixture
def file_store(tmp_path) -> FileHistoryStore:
    store = FileHistoryStore(tmp_path)
    store.ensure_directories()
    return store


def _session(**kwargs) -> AgentSession:
    defaults = dict(name="Test", working_directory="/tmp", mode=SessionMode.STREAM)
    defaults.update(kwargs)
    return AgentSession(**defaults)


# ── FileHistoryStore ──


def test_metadata_round_trip_forces_stopped(file_store):
    session = _session(status=SessionStatus.RUNNING, model="opus")
    file_store.save_metadata(session)

    loaded = file_store.load_all()

    assert len(loaded) == 1
    assert loaded[0].id == session.id
    assert loaded[0].name == "Test"
    assert loaded[0].mode == SessionMode.STREAM
    assert loaded[0].model == "opus"
    assert loaded[0].created_at == session.created_at
    assert loaded[0].status == SessionStatus.STOPPED


def test_metadata_file_layout(file_store):
    session = _session()
    file_store.save_metadata(session)
    file_store.append_terminal_output(session.id, "x")
    file_store.append_stream_message(session.id, StreamMessage(index=0, type="system"))
    file_store.append_input(session.id, "hi")

    session_dir = file_store.sessions_dir / session.id
    assert sorted(p.name for p in session_dir.iterdir()) == sorted(
        [METADATA_FILE, TERMINAL_FILE, STREAM_FILE, INPUT_FILE]
    )
    meta = json.loads((session_dir / METADATA_FILE).read_text())
    assert "process" not in meta
    record = json.loads((session_dir / INPUT_FILE).read_text())
    assert record["input"] == "hi"
    assert "timestamp" in record


def test_load_all_sorted_by_creation_and_skips_unreadable(file_store):
    first = _session(name="first", created_at=datetime(2026, 1, 1, tzinfo=timezone.utc))
    second = _session(name="second", created_at=datetime(2026, 1, 2, tzinfo=timezone.utc))
    file_store.save_metadata(second)
    file_store.save_metadata(first)
    broken = file_store.sessions_dir / "broken"
    broken.mkdir()
    (broken / METADATA_FILE).write_text("{not json")

    names = [s.name for s in file_store.load_all()]

    assert names == ["first", "second"]


def test_load_all_without_directory(tmp_path):
    assert FileHistoryStore(tmp_path / "absent").load_all() == []


def test_terminal_history_is_exact_concatenation(file_store):
    for chunk in ("\x1b[1mbold", "\r\n", "café"):
        file_store.append_terminal_output("s1", chunk)
    assert file_store.load_terminal_history("s1") == "\x1b[1mbold\r\ncafé"
    assert file_store.load_terminal_history("other") == ""


def test_stream_history_skips_torn_line(file_store):
    file_store.append_stream_message("s1", StreamMessage(index=0, type="system", payload={"a": 1}))
    path = file_store.sessions_dir / "s1" / STREAM_FILE
    with open(path, "a", encoding="utf-8") as f:
        f.write('{"index": 1, "type": "assi\n')
    file_store.append_stream_message("s1", StreamMessage(index=2, type="result"))

    history = file_store.load_stream_history("s1")

    assert [(m.index, m.type) for m in history] == [(0, "system"), (2, "result")]
    assert history[0].payload == {"a": 1}


def test_input_history_preserves_order(file_store):
    for text in ("one", "two\r", ""):
        file_store.append_input("s1", text)
    assert file_store.load_input_history("s1") == ["one", "two\r", ""]
    assert file_store.load_input_history("nobody") == []


def test_delete_removes_everything(file_store):
    session = _session()
    file_store.save_metadata(session)
    file_store.append_input(session.id, "x")

    assert file_store.delete(session.id) is True
    assert file_store.delete(session.id) is False
    assert file_store.load_all() == []
    assert file_store.load_input_history(session.id) == []


@pytest.mark.parametrize("bad_id", ["../escape", "a/b", "..", ""])
def test_rejects_unsafe_session_ids(file_store, bad_id):
    with pytest.raises(PersistenceError):
        file_store.append_input(bad_id, "x")


def test_os_errors_become_persistence_errors(tmp_path):
    blocker = tmp_path / "data"
    blocker.write_text("a file, not a directory")
    store = FileHistoryStore(blocker)

    with pytest.raises(PersistenceError) as exc_info:
        store.append_terminal_output("s1", "x")
    assert exc_info.value.operation == "append_terminal_output"
    assert exc_info.value.session_id == "s1"


# ── MemoryHistoryStore ──


def test_memory_store_mirrors_file_store():
    store = MemoryHistoryStore()
    session = _session(status=SessionStatus.ERROR)
    store.save_metadata(session)
    store.append_terminal_output(session.id, "a")
    store.append_terminal_output(session.id, "b")
    store.append_input(session.id, "hi")

    assert store.load_all()[0].status == SessionStatus.STOPPED
    assert store.load_terminal_history(session.id) == "ab"
    assert store.load_input_history(session.id) == ["hi"]
    assert store.delete(session.id) is True
    assert store.load_terminal_history(session.id) == ""


# ── PersistenceWriter ──


class _RecordingStore(MemoryHistoryStore):
    def __init__(self) -> None:
        super().__init__()
        self.calls: list[tuple[str, str]] = []
        self.fail_on: set[str] = set()
        self.gate: threading.Event | None = None

    def append_input(self, session_id, text):
        if self.gate is not None:
            self.gate.wait(2)
        if text in self.fail_on:
            raise OSError("disk full")
        self.calls.append((session_id, text))
        super().append_input(session_id, text)


@pytest.mark.asyncio
async def test_writer_preserves_per_session_order():
    store = _RecordingStore()
    writer = PersistenceWriter(store)

    for i in range(20):
        writer.append_input("a", f"a{i}")
        writer.append_input("b", f"b{i}")
    await writer.flush()

    assert store.load_input_history("a") == [f"a{i}" for i in range(20)]
    assert store.load_input_history("b") == [f"b{i}" for i in range(20)]
    await writer.close()


@pytest.mark.asyncio
async def test_writer_does_not_block_caller():
    store = _RecordingStore()
    store.gate = threading.Event()
    writer = PersistenceWriter(store)

    writer.append_input("a", "slow")
    await asyncio.sleep(0)
    assert store.calls == []

    store.gate.set()
    await writer.flush()
    assert store.calls == [("a", "slow")]
    await writer.close()


@pytest.mark.asyncio
async def test_writer_logs_failure_and_continues(caplog):
    store = _RecordingStore()
    store.fail_on = {"bad"}
    writer = PersistenceWriter(store)

    with caplog.at_level(logging.WARNING, logger="ronboard.shared.services.persistence"):
        writer.append_input("a", "before")
        writer.append_input("a", "bad")
        writer.append_input("a", "after")
        await writer.flush()

    assert store.load_input_history("a") == ["before", "after"]
    assert "Persistence append_input failed for session a" in caplog.text
    await writer.close()


@pytest.mark.asyncio
async def test_writer_drops_writes_after_delete():
    store = _RecordingStore()
    writer = PersistenceWriter(store)
    session = _session()

    writer.save_metadata(session)
    writer.append_input(session.id, "kept until delete")
    writer.delete(session.id)
    writer.append_input(session.id, "late")
    writer.save_metadata(session)
    await writer.flush()

    assert store.load_all() == []
    assert store.load_input_history(session.id) == []
    assert (session.id, "late") not in store.calls
    await writer.close()


@pytest.mark.asyncio
async def test_writer_snapshots_metadata_without_process():
    store = MemoryHistoryStore()
    writer = PersistenceWriter(store)
    session = _session(name="before")

    writer.save_metadata(session)
    session.name = "after"
    await writer.flush()

    assert store.load_all()[0].name == "before"
    await writer.close()


@pytest.mark.asyncio
async def test_writer_close_flushes_then_rejects():
    store = MemoryHistoryStore()
    writer = PersistenceWriter(store)
    writer.append_input("a", "pending")

    await writer.close()
    writer.append_input("a", "after close")

    assert store.load_input_history("a") == ["pending"]
