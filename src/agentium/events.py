"""Normalized agent events and the append-only JSONL event sink."""

from __future__ import annotations

import dataclasses
import json
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

from agentium.constants import EVENT_TAIL_INTERVAL_SECONDS, MAX_SUMMARY_CHARS
from agentium.utils import _utc_now

EVENT_TEXT = "text"
EVENT_THINKING = "thinking"
EVENT_TOOL_USE = "tool_use"
EVENT_TOOL_RESULT = "tool_result"
EVENT_COMMAND = "command"
EVENT_FILE_CHANGE = "file_change"
EVENT_ERROR = "error"

# Kind -> the optional fields that kind may populate.
EVENT_KINDS: dict[str, frozenset[str]] = {
    EVENT_TEXT: frozenset(),
    EVENT_THINKING: frozenset(),
    EVENT_TOOL_USE: frozenset({"tool_name", "tool_input"}),
    EVENT_TOOL_RESULT: frozenset({"tool_name"}),
    EVENT_COMMAND: frozenset({"tool_name", "tool_input"}),
    EVENT_FILE_CHANGE: frozenset({"file_path", "action"}),
    EVENT_ERROR: frozenset(),
}
_KIND_SPECIFIC_FIELDS = ("tool_name", "tool_input", "file_path", "action")


@dataclass(frozen=True)
class AgentEvent:
    kind: str
    summary: str = ""
    content: str = ""
    tool_name: str = ""
    tool_input: str = ""
    file_path: str = ""
    action: str = ""
    timestamp: str = ""
    session_id: str = ""
    iteration: int = 0
    adapter: str = ""

    def __post_init__(self) -> None:
        allowed = EVENT_KINDS.get(self.kind)
        if allowed is None:
            raise ValueError(f"unknown event kind: {self.kind!r}")
        for name in _KIND_SPECIFIC_FIELDS:
            if getattr(self, name) and name not in allowed:
                raise ValueError(f"event kind {self.kind!r} does not carry {name}")


def _truncate_summary(text: str, limit: int = MAX_SUMMARY_CHARS) -> str:
    compact = " ".join(str(text).split())
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _stamp_events(
    events: tuple[AgentEvent, ...] | list[AgentEvent],
    *,
    session_id: str,
    iteration: int,
    adapter: str,
) -> tuple[AgentEvent, ...]:
    """Fill the identity fields parsers leave blank."""
    stamped: list[AgentEvent] = []
    for event in events:
        stamped.append(
            dataclasses.replace(
                event,
                timestamp=event.timestamp or _utc_now(),
                session_id=session_id,
                iteration=iteration,
                adapter=event.adapter or adapter,
            )
        )
    return tuple(stamped)


# ---------------------------------------------------------------------------
# Wire format
# ---------------------------------------------------------------------------


def _event_payload(event: AgentEvent) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "timestamp": event.timestamp,
        "session_id": event.session_id,
        "iteration": event.iteration,
        "adapter": event.adapter,
        "type": event.kind,
    }
    for name in ("summary", "content", *_KIND_SPECIFIC_FIELDS):
        value = getattr(event, name)
        if value:
            payload[name] = value
    return payload


def _encode_event(event: AgentEvent) -> str:
    return json.dumps(_event_payload(event), ensure_ascii=False)


def _decode_event(line: str) -> AgentEvent:
    payload = json.loads(line)
    if not isinstance(payload, dict):
        raise ValueError("event record must be a JSON object")
    try:
        iteration = int(payload.get("iteration") or 0)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"event iteration is not an integer: {payload.get('iteration')!r}") from exc
    return AgentEvent(
        kind=str(payload.get("type", "")),
        summary=str(payload.get("summary", "")),
        content=str(payload.get("content", "")),
        tool_name=str(payload.get("tool_name", "")),
        tool_input=str(payload.get("tool_input", "")),
        file_path=str(payload.get("file_path", "")),
        action=str(payload.get("action", "")),
        timestamp=str(payload.get("timestamp", "")),
        session_id=str(payload.get("session_id", "")),
        iteration=iteration,
        adapter=str(payload.get("adapter", "")),
    )


# ---------------------------------------------------------------------------
# Sink and tailing
# ---------------------------------------------------------------------------


class EventFileSink:
    """Append-only JSONL event writer, safe for concurrent producers."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._closed = False
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        self._handle = os.fdopen(fd, "a", encoding="utf-8")

    def write(self, events: tuple[AgentEvent, ...] | list[AgentEvent]) -> int:
        if not events:
            return 0
        lines = "".join(f"{_encode_event(event)}\n" for event in events)
        with self._lock:
            if self._closed:
                raise ValueError(f"event sink is closed: {self.path}")
            self._handle.write(lines)
            self._handle.flush()
        return len(events)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._handle.close()

    def __enter__(self) -> "EventFileSink":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def _read_events(path: Path) -> list[AgentEvent]:
    if not path.exists():
        return []
    events: list[AgentEvent] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        try:
            events.append(_decode_event(line))
        except ValueError:
            continue
    return events


def _tail_events(
    path: Path,
    stop_event: threading.Event,
    *,
    interval: float = EVENT_TAIL_INTERVAL_SECONDS,
    from_start: bool = True,
) -> Iterator[AgentEvent]:
    """Yield events appended to ``path`` until ``stop_event`` is set.

    Only newline-terminated records are decoded; a partially written trailing
    line is held back until the writer finishes it. Malformed lines are
    skipped. The file may not exist yet when tailing starts.
    """
    offset = 0
    if not from_start and path.exists():
        offset = path.stat().st_size
    pending = b""
    while True:
        if path.exists():
            with path.open("rb") as handle:
                handle.seek(offset)
                chunk = handle.read()
                offset = handle.tell()
            pending += chunk
            while b"\n" in pending:
                raw_line, pending = pending.split(b"\n", 1)
                line = raw_line.decode("utf-8", errors="replace")
                if not line.strip():
                    continue
                try:
                    yield _decode_event(line)
                except ValueError:
                    continue
        if stop_event.is_set():
            return
        stop_event.wait(interval)
        if stop_event.is_set() and not _has_new_data(path, offset):
            return


def _has_new_data(path: Path, offset: int) -> bool:
    try:
        return path.stat().st_size > offset
    except OSError:
        return False
