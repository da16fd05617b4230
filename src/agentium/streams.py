"""Decoders for the agent CLIs' stdout formats.

Three formats are understood:

* ``_parse_stream_json``: one JSON object per line with an envelope type
  (``assistant``/``user``/``system``/``result``) wrapping content blocks.
* ``_parse_codex_jsonl``: flat ``type``-tagged records (``item.completed``,
  deltas, ``turn.completed`` usage, ``turn.failed``/``error``).
* ``_parse_plain_text``: unstructured output scanned for file writes.

None of them raise on malformed input; bad lines are skipped.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from agentium.constants import MAX_THINKING_BYTES
from agentium.events import (
    EVENT_COMMAND,
    EVENT_ERROR,
    EVENT_FILE_CHANGE,
    EVENT_TEXT,
    EVENT_THINKING,
    EVENT_TOOL_RESULT,
    EVENT_TOOL_USE,
    AgentEvent,
    _truncate_summary,
)


@dataclass(frozen=True)
class StreamParseResult:
    events: tuple[AgentEvent, ...] = ()
    text: str = ""
    assistant_text: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str = ""
    files_changed: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()
    records_parsed: int = 0

    @property
    def last_error(self) -> str:
        return self.errors[-1] if self.errors else ""


def _truncate_utf8(text: str, limit: int = MAX_THINKING_BYTES) -> str:
    """Longest prefix that fits in ``limit`` bytes; a character split by the cut is dropped."""
    encoded = text.encode("utf-8")
    if len(encoded) <= limit:
        return text
    return encoded[:limit].decode("utf-8", errors="ignore")


def _iter_json_lines(stdout: str):
    for raw_line in stdout.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except ValueError:
            continue
        if isinstance(record, dict):
            yield record


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _text_event(text: str) -> AgentEvent:
    return AgentEvent(kind=EVENT_TEXT, summary=_truncate_summary(text), content=text)


def _thinking_event(text: str) -> AgentEvent:
    content = _truncate_utf8(text)
    return AgentEvent(kind=EVENT_THINKING, summary=_truncate_summary(content), content=content)


def _append_unique(items: list[str], value: str) -> None:
    if value and value not in items:
        items.append(value)


# ---------------------------------------------------------------------------
# Envelope + content-block stream (claude-code --output-format stream-json)
# ---------------------------------------------------------------------------


def _block_content_to_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            str(item["text"])
            for item in content
            if isinstance(item, dict) and isinstance(item.get("text"), str) and item["text"]
        ]
        if parts:
            return "\n".join(parts)
    try:
        return json.dumps(content, ensure_ascii=False)
    except (TypeError, ValueError):
        return ""


def _encode_tool_input(value: Any) -> str:
    if value is None or value == {}:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError):
        return str(value)


def _parse_stream_json(stdout: str) -> StreamParseResult:
    events: list[AgentEvent] = []
    text_parts: list[str] = []
    assistant_parts: list[str] = []
    input_tokens = 0
    output_tokens = 0
    stop_reason = ""
    records = 0

    def _extract_blocks(envelope: str, blocks: Any) -> None:
        if not isinstance(blocks, list):
            return
        for block in blocks:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                text = str(block.get("text") or "")
                if not text:
                    continue
                events.append(_text_event(text))
                text_parts.append(text)
                if envelope == "assistant":
                    assistant_parts.append(text)
            elif block_type == "thinking":
                thinking = str(block.get("thinking") or "")
                if not thinking:
                    continue
                event = _thinking_event(thinking)
                events.append(event)
                text_parts.append(event.content)
            elif block_type == "tool_use":
                name = str(block.get("name") or "")
                events.append(
                    AgentEvent(
                        kind=EVENT_TOOL_USE,
                        summary=f"Tool: {name}",
                        tool_name=name,
                        tool_input=_encode_tool_input(block.get("input")),
                    )
                )
            elif block_type == "tool_result":
                content = _block_content_to_text(block.get("content"))
                events.append(
                    AgentEvent(
                        kind=EVENT_TOOL_RESULT,
                        summary=_truncate_summary(content),
                        content=content,
                    )
                )
                if content:
                    text_parts.append(content)

    for record in _iter_json_lines(stdout):
        records += 1
        envelope = record.get("type")
        if envelope in ("assistant", "user"):
            message = record.get("message")
            if isinstance(message, dict):
                _extract_blocks(envelope, message.get("content"))
        elif envelope == "result":
            result = record.get("result")
            usage = record.get("usage")
            if isinstance(result, dict):
                _extract_blocks(envelope, result.get("content"))
                if isinstance(result.get("usage"), dict):
                    usage = result["usage"]
                stop_reason = str(result.get("stop_reason") or "") or stop_reason
            if isinstance(usage, dict):
                input_tokens = _as_int(usage.get("input_tokens"))
                output_tokens = _as_int(usage.get("output_tokens"))
            if not stop_reason:
                stop_reason = str(record.get("stop_reason") or record.get("subtype") or "")

    return StreamParseResult(
        events=tuple(events),
        text="\n".join(text_parts),
        assistant_text="\n".join(assistant_parts),
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        stop_reason=stop_reason,
        records_parsed=records,
    )


# ---------------------------------------------------------------------------
# Flat typed-record stream (codex exec --json)
# ---------------------------------------------------------------------------

_DELTA_TYPES = frozenset({"item.delta", "response.output_text.delta"})


def _content_texts(content: Any) -> list[str]:
    if not isinstance(content, list):
        return []
    return [
        str(block["text"])
        for block in content
        if isinstance(block, dict) and block.get("type") in ("text", "output_text") and block.get("text")
    ]


def _error_message(record: dict[str, Any]) -> str:
    error = record.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or "")
    if isinstance(error, str):
        return error
    return str(record.get("message") or "")


def _parse_codex_jsonl(stdout: str) -> StreamParseResult:
    events: list[AgentEvent] = []
    text_parts: list[str] = []
    assistant_parts: list[str] = []
    files_changed: list[str] = []
    errors: list[str] = []
    delta_buffer: list[str] = []
    input_tokens = 0
    output_tokens = 0
    records = 0

    def _flush_deltas() -> None:
        if not delta_buffer:
            return
        text = "".join(delta_buffer)
        delta_buffer.clear()
        if text:
            events.append(_text_event(text))
            text_parts.append(text)

    for record in _iter_json_lines(stdout):
        records += 1
        record_type = record.get("type")
        if record_type in _DELTA_TYPES:
            delta = record.get("delta")
            item = record.get("item")
            if isinstance(delta, dict) and delta.get("text"):
                delta_buffer.append(str(delta["text"]))
            elif isinstance(delta, str) and delta:
                delta_buffer.append(delta)
            elif isinstance(item, dict) and item.get("text"):
                delta_buffer.append(str(item["text"]))
            continue

        _flush_deltas()
        if record_type == "item.completed":
            item = record.get("item")
            if isinstance(item, dict):
                _convert_codex_item(item, events, text_parts, assistant_parts, files_changed)
        elif record_type in ("message", "response.completed"):
            texts = _content_texts(record.get("content"))
            message = record.get("message")
            if isinstance(message, dict):
                texts.extend(_content_texts(message.get("content")))
            for text in texts:
                events.append(_text_event(text))
                text_parts.append(text)
        elif record_type == "turn.completed":
            usage = record.get("usage")
            if isinstance(usage, dict):
                input_tokens += _as_int(usage.get("input_tokens"))
                output_tokens += _as_int(usage.get("output_tokens"))
        elif record_type in ("turn.failed", "error"):
            message = _error_message(record)
            if message:
                errors.append(message)
                events.append(
                    AgentEvent(kind=EVENT_ERROR, summary=_truncate_summary(message), content=message)
                )
    _flush_deltas()

    text = "\n".join(text_parts)
    if records == 0 or (not text_parts and stdout):
        text = stdout

    return StreamParseResult(
        events=tuple(events),
        text=text,
        assistant_text="\n".join(assistant_parts),
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        files_changed=tuple(files_changed),
        errors=tuple(errors),
        records_parsed=records,
    )


def _convert_codex_item(
    item: dict[str, Any],
    events: list[AgentEvent],
    text_parts: list[str],
    assistant_parts: list[str],
    files_changed: list[str],
) -> None:
    item_type = item.get("type")
    if item_type == "agent_message":
        text = str(item.get("text") or "")
        if text:
            events.append(_text_event(text))
            text_parts.append(text)
            assistant_parts.append(text)
    elif item_type == "reasoning":
        text = str(item.get("text") or "")
        if text:
            events.append(_thinking_event(text))
    elif item_type == "command_execution":
        command = str(item.get("command") or "")
        output = str(item.get("aggregated_output") or item.get("output") or "")
        events.append(
            AgentEvent(
                kind=EVENT_COMMAND,
                summary=_truncate_summary(f"Command: {command}"),
                content=output,
                tool_name="bash",
                tool_input=command,
            )
        )
        if output:
            text_parts.append(output)
    elif item_type == "file_change":
        for path, action in _file_change_entries(item):
            _append_unique(files_changed, path)
            events.append(
                AgentEvent(
                    kind=EVENT_FILE_CHANGE,
                    summary=_truncate_summary(f"{action}: {path}" if action else path),
                    file_path=path,
                    action=action,
                )
            )


def _file_change_entries(item: dict[str, Any]) -> list[tuple[str, str]]:
    entries: list[tuple[str, str]] = []
    path = str(item.get("file_path") or "")
    if path:
        entries.append((path, str(item.get("action") or "")))
    changes = item.get("changes")
    if isinstance(changes, list):
        for change in changes:
            if not isinstance(change, dict):
                continue
            change_path = str(change.get("path") or change.get("file_path") or "")
            if change_path:
                entries.append((change_path, str(change.get("kind") or change.get("action") or "")))
    return entries


# ---------------------------------------------------------------------------
# Plain text (aider)
# ---------------------------------------------------------------------------

_FILE_WRITE_PATTERN = re.compile(r"(?m)^[ \t]*(Applied edit to|Wrote)[ \t]+(\S+)")


def _parse_plain_text(stdout: str) -> StreamParseResult:
    events: list[AgentEvent] = []
    files_changed: list[str] = []
    if stdout.strip():
        events.append(_text_event(stdout.strip()))
    for match in _FILE_WRITE_PATTERN.finditer(stdout):
        verb, path = match.group(1), match.group(2)
        if path in files_changed:
            continue
        files_changed.append(path)
        action = "edit" if verb.startswith("Applied") else "write"
        events.append(
            AgentEvent(
                kind=EVENT_FILE_CHANGE,
                summary=_truncate_summary(f"{action}: {path}"),
                file_path=path,
                action=action,
            )
        )
    return StreamParseResult(
        events=tuple(events),
        text=stdout,
        assistant_text=stdout.strip(),
        files_changed=tuple(files_changed),
    )
