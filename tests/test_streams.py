from __future__ import annotations

import json

from agentium.streams import (
    _parse_codex_jsonl,
    _parse_plain_text,
    _parse_stream_json,
    _truncate_utf8,
)


def _lines(*records: object) -> str:
    return "\n".join(json.dumps(record) for record in records) + "\n"


def test_stream_json_collects_blocks_and_result_usage() -> None:
    stdout = _lines(
        {"type": "system", "subtype": "init"},
        {
            "type": "assistant",
            "message": {
                "content": [
                    {"type": "thinking", "thinking": "Let me look at the tests."},
                    {"type": "text", "text": "I'll fix the bug."},
                    {"type": "tool_use", "name": "Edit", "input": {"path": "a.py", "old": "x"}},
                ]
            },
        },
        {
            "type": "user",
            "message": {
                "content": [
                    {
                        "type": "tool_result",
                        "content": [{"type": "text", "text": "line one"}, {"type": "text", "text": "line two"}],
                    }
                ]
            },
        },
        {
            "type": "result",
            "subtype": "success",
            "usage": {"input_tokens": 1, "output_tokens": 1},
            "result": {
                "content": [{"type": "text", "text": "AGENTIUM_STATUS: COMPLETE"}],
                "usage": {"input_tokens": 1200, "output_tokens": 340},
                "stop_reason": "end_turn",
            },
        },
    )
    result = _parse_stream_json(stdout)

    assert [event.kind for event in result.events] == [
        "thinking",
        "text",
        "tool_use",
        "tool_result",
        "text",
    ]
    tool_use = result.events[2]
    assert tool_use.summary == "Tool: Edit"
    assert json.loads(tool_use.tool_input) == {"path": "a.py", "old": "x"}
    assert result.events[3].content == "line one\nline two"
    assert result.assistant_text == "I'll fix the bug."
    assert "AGENTIUM_STATUS: COMPLETE" in result.text
    assert "line one\nline two" in result.text
    assert (result.input_tokens, result.output_tokens) == (1200, 340)
    assert result.stop_reason == "end_turn"
    assert result.records_parsed == 4


def test_stream_json_uses_top_level_usage_and_subtype_without_nested_result() -> None:
    stdout = _lines(
        {
            "type": "result",
            "subtype": "error_max_turns",
            "result": "final answer text",
            "usage": {"input_tokens": 50, "output_tokens": 7},
        }
    )
    result = _parse_stream_json(stdout)
    assert (result.input_tokens, result.output_tokens) == (50, 7)
    assert result.stop_reason == "error_max_turns"
    assert result.text == ""


def test_stream_json_skips_malformed_lines() -> None:
    stdout = "not json\n[1, 2]\n" + _lines(
        {"type": "assistant", "message": {"content": [{"type": "text", "text": "ok"}]}}
    )
    result = _parse_stream_json(stdout)
    assert result.text == "ok"
    assert result.records_parsed == 1


def test_thinking_is_truncated_to_byte_limit() -> None:
    stdout = _lines(
        {"type": "assistant", "message": {"content": [{"type": "thinking", "thinking": "z" * 60000}]}}
    )
    result = _parse_stream_json(stdout)
    assert len(result.events[0].content.encode("utf-8")) == 50000


def test_truncate_utf8_does_not_split_multibyte_characters() -> None:
    text = "é" * 10
    truncated = _truncate_utf8(text, limit=5)
    assert truncated == "éé"
    assert _truncate_utf8("short", limit=50) == "short"


def test_codex_jsonl_sums_usage_and_converts_items() -> None:
    stdout = _lines(
        {"type": "thread.started", "thread_id": "t-1"},
        {"type": "item.completed", "item": {"type": "reasoning", "text": "planning"}},
        {
            "type": "item.completed",
            "item": {"type": "command_execution", "command": "pytest -q", "aggregated_output": "3 passed"},
        },
        {"type": "turn.completed", "usage": {"input_tokens": 1000, "output_tokens": 500}},
        {
            "type": "item.completed",
            "item": {
                "type": "file_change",
                "changes": [{"path": "src/a.py", "kind": "update"}, {"path": "src/b.py", "kind": "add"}],
            },
        },
        {"type": "item.completed", "item": {"type": "agent_message", "text": "Done.\nAGENTIUM_STATUS: COMPLETE"}},
        {"type": "turn.completed", "usage": {"input_tokens": 800, "output_tokens": 300}},
    )
    result = _parse_codex_jsonl(stdout)

    assert (result.input_tokens, result.output_tokens) == (1800, 800)
    assert [event.kind for event in result.events] == [
        "thinking",
        "command",
        "file_change",
        "file_change",
        "text",
    ]
    command = result.events[1]
    assert command.tool_name == "bash"
    assert command.tool_input == "pytest -q"
    assert command.summary == "Command: pytest -q"
    assert command.content == "3 passed"
    assert result.files_changed == ("src/a.py", "src/b.py")
    assert result.events[2].action == "update"
    assert result.assistant_text == "Done.\nAGENTIUM_STATUS: COMPLETE"
    assert result.text == "3 passed\nDone.\nAGENTIUM_STATUS: COMPLETE"


def test_codex_jsonl_concatenates_deltas_until_next_record() -> None:
    stdout = _lines(
        {"type": "item.delta", "delta": {"text": "Hel"}},
        {"type": "item.delta", "delta": {"text": "lo "}},
        {"type": "response.output_text.delta", "delta": "world"},
        {"type": "turn.completed", "usage": {"input_tokens": 1, "output_tokens": 2}},
        {"type": "item.delta", "delta": {"text": "tail"}},
    )
    result = _parse_codex_jsonl(stdout)
    assert [event.content for event in result.events] == ["Hello world", "tail"]
    assert result.text == "Hello world\ntail"


def test_codex_jsonl_reports_turn_failures_as_errors() -> None:
    stdout = _lines(
        {"type": "turn.failed", "error": {"message": "rate limited"}},
        {"type": "error", "message": "stream closed"},
    )
    result = _parse_codex_jsonl(stdout)
    assert result.errors == ("rate limited", "stream closed")
    assert result.last_error == "stream closed"
    assert [event.kind for event in result.events] == ["error", "error"]


def test_codex_jsonl_falls_back_to_raw_stdout() -> None:
    stdout = "codex: unknown option --bogus\n"
    result = _parse_codex_jsonl(stdout)
    assert result.text == stdout
    assert result.records_parsed == 0
    assert result.events == ()


def test_codex_message_records_contribute_text() -> None:
    stdout = _lines(
        {"type": "message", "content": [{"type": "output_text", "text": "from message"}]},
        {"type": "response.completed", "message": {"content": [{"type": "text", "text": "final"}]}},
    )
    assert _parse_codex_jsonl(stdout).text == "from message\nfinal"


def test_plain_text_detects_file_writes() -> None:
    stdout = (
        "Added src/app.py to the chat.\n"
        "Applied edit to src/app.py\n"
        "Wrote docs/notes.md\n"
        "Applied edit to src/app.py\n"
        "AGENTIUM_STATUS: COMPLETE\n"
    )
    result = _parse_plain_text(stdout)
    assert result.files_changed == ("src/app.py", "docs/notes.md")
    changes = [event for event in result.events if event.kind == "file_change"]
    assert [(event.file_path, event.action) for event in changes] == [
        ("src/app.py", "edit"),
        ("docs/notes.md", "write"),
    ]
    assert result.events[0].kind == "text"
    assert result.text == stdout
    assert result.assistant_text == stdout.strip()


def test_plain_text_empty_output_has_no_events() -> None:
    result = _parse_plain_text("   \n")
    assert result.events == ()
    assert result.files_changed == ()


def test_thinking_at_byte_limit_is_untouched() -> None:
    thinking = "q" * 50000
    stdout = _lines({"type": "assistant", "message": {"content": [{"type": "thinking", "thinking": thinking}]}})
    assert _parse_stream_json(stdout).events[0].content == thinking


def test_multibyte_thinking_is_cut_at_the_last_whole_character() -> None:
    stdout = _lines({"type": "assistant", "message": {"content": [{"type": "thinking", "thinking": "€" * 20000}]}})
    content = _parse_stream_json(stdout).events[0].content
    assert content == "€" * 16666
    assert len(content.encode("utf-8")) == 49998
