"""
Incremental parsers for agent CLI output.

Each parser turns one line of stdout into zero or more OutputEvents.
JSON-streaming CLIs (claude ``--output-format stream-json``, codex
``exec --json``) are decoded into thinking/text/tool/result variants;
anything that is not JSON degrades to a single TEXT event per line.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

from .models import OutputEvent, OutputKind, TokenUsage

LineParser = Callable[[str], list[OutputEvent]]

MAX_TOOL_OUTPUT = 500


def _truncate(text: str, limit: int = MAX_TOOL_OUTPUT) -> str:
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def _decode(line: str) -> dict[str, Any] | None:
    line = line.strip()
    if not line.startswith("{"):
        return None
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def summarize_tool(name: str, tool_input: dict[str, Any]) -> str:
    """One-line description of a tool call, e.g. ``Bash: pytest -q``."""
    for key in ("command", "file_path", "path", "pattern", "url", "query", "description"):
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return f"{name}: {_truncate(value.splitlines()[0], 120)}"
    return name


def _usage_from(data: dict[str, Any] | None, cost: float | None = None) -> TokenUsage:
    data = data or {}
    return TokenUsage(
        input_tokens=int(data.get("input_tokens", 0) or 0),
        output_tokens=int(data.get("output_tokens", 0) or 0),
        cache_read_tokens=int(
            data.get("cache_read_input_tokens", data.get("cached_input_tokens", 0)) or 0
        ),
        cache_creation_tokens=int(data.get("cache_creation_input_tokens", 0) or 0),
        cost_usd=cost,
    )


def parse_plain_line(line: str) -> list[OutputEvent]:
    """Plain-text tools: one TEXT event per non-empty line."""
    text = line.rstrip("\r\n")
    if not text.strip():
        return []
    return [OutputEvent(kind=OutputKind.TEXT, text=text)]


def _tool_result_text(block: dict[str, Any]) -> str:
    content = block.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [c.get("text", "") for c in content if isinstance(c, dict)]
        return "\n".join(p for p in parts if p)
    return ""


def parse_claude_line(line: str) -> list[OutputEvent]:
    """
    Parse one line of ``claude --output-format stream-json``.

    Handles system/assistant/user/result events plus raw
    ``content_block_delta`` text deltas.
    """
    event = _decode(line)
    if event is None:
        return parse_plain_line(line)

    event_type = event.get("type", "")
    events: list[OutputEvent] = []

    if event_type == "system":
        subtype = event.get("subtype", "")
        model = event.get("model")
        text = f"session {subtype}" if subtype else "system"
        if model:
            text += f" (model {model})"
        events.append(OutputEvent(kind=OutputKind.SYSTEM, text=text, raw=event))

    elif event_type in ("assistant", "message"):
        message = event.get("message") or {}
        for block in message.get("content") or []:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text" and block.get("text"):
                events.append(OutputEvent(kind=OutputKind.TEXT, text=block["text"], raw=event))
            elif block_type == "thinking" and block.get("thinking"):
                events.append(
                    OutputEvent(
                        kind=OutputKind.TEXT, text=block["thinking"], thinking=True, raw=event
                    )
                )
            elif block_type == "tool_use":
                name = block.get("name", "tool")
                tool_input = block.get("input") or {}
                events.append(
                    OutputEvent(
                        kind=OutputKind.TOOL_START,
                        text=summarize_tool(name, tool_input),
                        tool_name=name,
                        tool_input=tool_input,
                        raw=event,
                    )
                )

    elif event_type == "user":
        message = event.get("message") or {}
        for block in message.get("content") or []:
            if isinstance(block, dict) and block.get("type") == "tool_result":
                text = _tool_result_text(block)
                if text:
                    events.append(
                        OutputEvent(
                            kind=OutputKind.SYSTEM,
                            text=_truncate(text),
                            is_error=bool(block.get("is_error")),
                            raw=event,
                        )
                    )

    elif event_type == "content_block_delta":
        delta = event.get("delta") or {}
        if delta.get("type") == "text_delta" and delta.get("text"):
            events.append(OutputEvent(kind=OutputKind.TEXT, text=delta["text"], raw=event))
        elif delta.get("type") == "thinking_delta" and delta.get("thinking"):
            events.append(
                OutputEvent(kind=OutputKind.TEXT, text=delta["thinking"], thinking=True, raw=event)
            )

    elif event_type == "result":
        # Claude reports total_cost_usd, not cost_usd
        cost = event.get("total_cost_usd", event.get("cost_usd"))
        events.append(
            OutputEvent(
                kind=OutputKind.RESULT,
                text=str(event.get("result") or event.get("subtype") or ""),
                usage=_usage_from(event.get("usage"), cost),
                is_error=bool(event.get("is_error")),
                raw=event,
            )
        )

    return events


def parse_codex_line(line: str) -> list[OutputEvent]:
    """Parse one line of ``codex exec --json``."""
    event = _decode(line)
    if event is None:
        return parse_plain_line(line)

    event_type = event.get("type", "")
    item = event.get("item") or {}
    item_type = item.get("type", "")

    if event_type == "thread.started":
        return [OutputEvent(kind=OutputKind.SYSTEM, text="session started", raw=event)]

    if event_type == "item.started":
        if item_type == "command_execution":
            command = item.get("command", "")
            return [
                OutputEvent(
                    kind=OutputKind.TOOL_START,
                    text=f"shell: {command}",
                    tool_name="shell",
                    tool_input={"command": command},
                    raw=event,
                )
            ]
        if item_type in ("file_edit", "file_write", "file_change"):
            path = item.get("file_path") or item.get("path", "")
            return [
                OutputEvent(
                    kind=OutputKind.TOOL_START,
                    text=f"edit: {path}",
                    tool_name="edit",
                    tool_input={"path": path},
                    raw=event,
                )
            ]
        return []

    if event_type == "item.completed":
        if item_type == "reasoning" and item.get("text"):
            return [OutputEvent(kind=OutputKind.TEXT, text=item["text"], thinking=True, raw=event)]
        if item_type in ("message", "agent_message"):
            content = item.get("content") or item.get("text", "")
            if isinstance(content, str) and content:
                return [OutputEvent(kind=OutputKind.TEXT, text=content, raw=event)]
            return []
        if item_type == "command_execution":
            output = item.get("aggregated_output", "")
            if output:
                return [
                    OutputEvent(
                        kind=OutputKind.SYSTEM,
                        text=_truncate(output),
                        is_error=item.get("exit_code") not in (None, 0),
                        raw=event,
                    )
                ]
        return []

    if event_type == "turn.completed":
        return [
            OutputEvent(
                kind=OutputKind.RESULT,
                text="turn completed",
                usage=_usage_from(event.get("usage")),
                raw=event,
            )
        ]

    if event_type in ("turn.failed", "error"):
        error = event.get("error") or {}
        message = error.get("message") if isinstance(error, dict) else str(error)
        return [
            OutputEvent(
                kind=OutputKind.RESULT,
                text=message or event.get("message", "turn failed"),
                is_error=True,
                raw=event,
            )
        ]

    return []
