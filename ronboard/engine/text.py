"""Plain-text extraction from terminal and stream transcripts."""
from __future__ import annotations

import re
from typing import Any, Iterable

from .models import StreamMessage

# CSI sequences, OSC sequences (BEL or ST terminated), charset selection.
_ANSI_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[()][A-Z0-9]"
    r"|\x1b[=>78]"
)
_CONTROL_RE = re.compile(r"[\x00-\x07\x0b\x0c\x0e-\x1f]")


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences."""
    return _ANSI_RE.sub("", text)


def extract_stream_text(messages: Iterable[StreamMessage]) -> str:
    """Concatenate assistant text deltas from partial-message stream events."""
    parts: list[str] = []
    for msg in messages:
        if msg.type != "stream_event":
            continue
        text = _text_delta(msg.payload)
        if text:
            parts.append(text)
    return "".join(parts)


def _text_delta(payload: dict[str, Any]) -> str | None:
    event = payload.get("event")
    if not isinstance(event, dict) or event.get("type") != "content_block_delta":
        return None
    delta = event.get("delta")
    if not isinstance(delta, dict) or delta.get("type") != "text_delta":
        return None
    text = delta.get("text")
    return text if isinstance(text, str) else None


def collapse_keystrokes(inputs: Iterable[str]) -> list[str]:
    """Rebuild the lines a user typed from raw terminal keystroke batches.

    Escape sequences (arrow keys, focus events) are dropped, backspace
    and DEL erase the previous character, CR or LF ends a line. Blank
    lines are omitted.
    """
    lines: list[str] = []
    current: list[str] = []
    for ch in strip_ansi("".join(inputs)):
        if ch in ("\r", "\n"):
            line = "".join(current).strip()
            if line:
                lines.append(line)
            current = []
        elif ch in ("\x7f", "\b"):
            if current:
                current.pop()
        elif ch == "\t" or not _CONTROL_RE.match(ch):
            current.append(ch)
    tail = "".join(current).strip()
    if tail:
        lines.append(tail)
    return lines
