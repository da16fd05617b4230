from __future__ import annotations

import json
import os
import threading
import time
from pathlib import Path

import pytest

from agentium.events import (
    EVENT_KINDS,
    AgentEvent,
    EventFileSink,
    _decode_event,
    _encode_event,
    _read_events,
    _stamp_events,
    _tail_events,
    _truncate_summary,
)


def _sample_event(kind: str) -> AgentEvent:
    extra: dict[str, str] = {}
    if kind in ("tool_use", "command"):
        extra = {"tool_name": "bash", "tool_input": '{"command": "ls -la"}'}
    elif kind == "tool_result":
        extra = {"tool_name": "Read"}
    elif kind == "file_change":
        extra = {"file_path": "packages/core/src/x.ts", "action": "update"}
    return AgentEvent(
        kind=kind,
        summary=f"{kind} summary",
        content=f"{kind} content\nwith two lines",
        timestamp="2026-01-02T03:04:05Z",
        session_id="session-1",
        iteration=3,
        adapter="claude-code",
        **extra,
    )


@pytest.mark.parametrize("kind", sorted(EVENT_KINDS))
def test_encode_decode_preserves_kind_specific_fields(kind: str) -> None:
    event = _sample_event(kind)
    assert _decode_event(_encode_event(event)) == event


def test_encoded_event_uses_type_key_and_omits_empty_fields() -> None:
    payload = json.loads(_encode_event(AgentEvent(kind="text", summary="hi", content="hi")))
    assert payload["type"] == "text"
    assert "tool_name" not in payload
    assert "file_path" not in payload
    assert payload["summary"] == "hi"


def test_event_rejects_fields_outside_its_kind() -> None:
    with pytest.raises(ValueError, match="does not carry tool_name"):
        AgentEvent(kind="text", tool_name="bash")
    with pytest.raises(ValueError, match="does not carry file_path"):
        AgentEvent(kind="tool_use", tool_name="Edit", file_path="a.py")


def test_event_rejects_unknown_kind() -> None:
    with pytest.raises(ValueError, match="unknown event kind"):
        AgentEvent(kind="system")


def test_decode_rejects_non_object_records() -> None:
    with pytest.raises(ValueError):
        _decode_event("[1, 2, 3]")
    with pytest.raises(ValueError):
        _decode_event("not json")


def test_truncate_summary_collapses_whitespace_and_caps_length() -> None:
    assert _truncate_summary("  hello\n  world ") == "hello world"
    long_text = "x" * 150
    assert _truncate_summary(long_text) == "x" * 100 + "..."


def test_stamp_events_fills_identity_fields() -> None:
    events = (
        AgentEvent(kind="text", content="a"),
        AgentEvent(kind="text", content="b", timestamp="2026-01-01T00:00:00Z"),
    )
    stamped = _stamp_events(events, session_id="s-9", iteration=4, adapter="codex")
    assert [event.session_id for event in stamped] == ["s-9", "s-9"]
    assert [event.iteration for event in stamped] == [4, 4]
    assert [event.adapter for event in stamped] == ["codex", "codex"]
    assert stamped[0].timestamp.endswith("Z")
    assert stamped[1].timestamp == "2026-01-01T00:00:00Z"


def test_file_sink_is_private_and_appends(tmp_path: Path) -> None:
    path = tmp_path / "logs" / "events.jsonl"
    with EventFileSink(path) as sink:
        assert sink.write([_sample_event("text")]) == 1
        assert sink.write([]) == 0
    with EventFileSink(path) as sink:
        sink.write([_sample_event("error")])

    assert os.stat(path).st_mode & 0o777 == 0o600
    assert [event.kind for event in _read_events(path)] == ["text", "error"]


def test_file_sink_rejects_writes_after_close(tmp_path: Path) -> None:
    sink = EventFileSink(tmp_path / "events.jsonl")
    sink.close()
    sink.close()
    with pytest.raises(ValueError, match="closed"):
        sink.write([_sample_event("text")])


def test_file_sink_serializes_concurrent_writers(tmp_path: Path) -> None:
    path = tmp_path / "events.jsonl"
    sink = EventFileSink(path)

    def _producer(index: int) -> None:
        for n in range(50):
            sink.write([AgentEvent(kind="text", content=f"producer-{index}-{n}" + "y" * 500)])

    threads = [threading.Thread(target=_producer, args=(index,)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    sink.close()

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 200
    decoded = [_decode_event(line) for line in lines]
    assert len({event.content for event in decoded}) == 200


def test_read_events_skips_malformed_lines(tmp_path: Path) -> None:
    path = tmp_path / "events.jsonl"
    path.write_text(
        "\n".join(
            [
                _encode_event(_sample_event("text")),
                "{not json",
                json.dumps({"type": "bogus"}),
                _encode_event(_sample_event("command")),
            ]
        )
        + "\n",
        encoding="utf-8",
    )
    assert [event.kind for event in _read_events(path)] == ["text", "command"]


def test_tail_events_yields_only_complete_lines(tmp_path: Path) -> None:
    path = tmp_path / "events.jsonl"
    complete = _encode_event(_sample_event("text"))
    partial = _encode_event(_sample_event("error"))[:20]
    path.write_text(f"{complete}\ngarbage\n{partial}", encoding="utf-8")

    stop_event = threading.Event()
    stop_event.set()
    events = list(_tail_events(path, stop_event, interval=0.01))
    assert [event.kind for event in events] == ["text"]


def test_tail_events_returns_when_file_missing_and_stopped(tmp_path: Path) -> None:
    stop_event = threading.Event()
    stop_event.set()
    assert list(_tail_events(tmp_path / "absent.jsonl", stop_event, interval=0.01)) == []


def test_tail_events_picks_up_appended_events_until_stopped(tmp_path: Path) -> None:
    path = tmp_path / "events.jsonl"
    stop_event = threading.Event()

    def _writer() -> None:
        time.sleep(0.05)
        with EventFileSink(path) as sink:
            sink.write([_sample_event("text")])
            time.sleep(0.05)
            sink.write([_sample_event("file_change")])
        time.sleep(0.05)
        stop_event.set()

    thread = threading.Thread(target=_writer)
    thread.start()
    events = list(_tail_events(path, stop_event, interval=0.01))
    thread.join()
    assert [event.kind for event in events] == ["text", "file_change"]
