"""Tests for agent output line parsers."""

import json

from storyloop.core.harness.models import OutputKind, TokenUsage
from storyloop.core.harness.stream import (
    MAX_TOOL_OUTPUT,
    parse_claude_line,
    parse_codex_line,
    parse_plain_line,
    summarize_tool,
)


def _line(data: dict) -> str:
    return json.dumps(data) + "\n"


class TestPlainParser:
    """Tests for plain-text output."""

    def test_text_line(self):
        """Test a line becomes one TEXT event without the newline."""
        events = parse_plain_line("hello world\n")
        assert len(events) == 1
        assert events[0].kind == OutputKind.TEXT
        assert events[0].text == "hello world"

    def test_blank_line(self):
        """Test whitespace-only lines produce nothing."""
        assert parse_plain_line("   \n") == []


class TestClaudeParser:
    """Tests for claude stream-json."""

    def test_non_json_degrades_to_text(self):
        """Test non-JSON output is passed through as text."""
        events = parse_claude_line("Warning: something\n")
        assert [e.kind for e in events] == [OutputKind.TEXT]

    def test_system_init(self):
        """Test the init event names the model."""
        events = parse_claude_line(
            _line({"type": "system", "subtype": "init", "model": "claude-sonnet-4-5"})
        )
        assert events[0].kind == OutputKind.SYSTEM
        assert events[0].text == "session init (model claude-sonnet-4-5)"

    def test_assistant_blocks(self):
        """Test text, thinking and tool_use blocks in one message."""
        events = parse_claude_line(
            _line(
                {
                    "type": "assistant",
                    "message": {
                        "content": [
                            {"type": "thinking", "thinking": "Plan first"},
                            {"type": "text", "text": "Running tests"},
                            {"type": "tool_use", "name": "Bash", "input": {"command": "pytest -q"}},
                        ]
                    },
                }
            )
        )
        assert [e.kind for e in events] == [OutputKind.TEXT, OutputKind.TEXT, OutputKind.TOOL_START]
        assert events[0].thinking is True
        assert events[1].thinking is False
        assert events[2].text == "Bash: pytest -q"
        assert events[2].tool_input == {"command": "pytest -q"}

    def test_tool_result_error(self):
        """Test tool results become SYSTEM events with the error flag."""
        events = parse_claude_line(
            _line(
                {
                    "type": "user",
                    "message": {
                        "content": [
                            {"type": "tool_result", "content": "x" * 1000, "is_error": True}
                        ]
                    },
                }
            )
        )
        assert events[0].kind == OutputKind.SYSTEM
        assert events[0].is_error is True
        assert len(events[0].text) == MAX_TOOL_OUTPUT + 3

    def test_text_delta(self):
        """Test streaming text deltas."""
        events = parse_claude_line(
            _line({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}})
        )
        assert events[0].text == "Hi"

    def test_result_usage(self):
        """Test the result event carries usage and total_cost_usd."""
        events = parse_claude_line(
            _line(
                {
                    "type": "result",
                    "subtype": "success",
                    "result": "Done",
                    "total_cost_usd": 0.25,
                    "usage": {
                        "input_tokens": 100,
                        "output_tokens": 40,
                        "cache_read_input_tokens": 7,
                    },
                }
            )
        )
        result = events[0]
        assert result.kind == OutputKind.RESULT
        assert result.text == "Done"
        assert result.usage.input_tokens == 100
        assert result.usage.cache_read_tokens == 7
        assert result.usage.cost_usd == 0.25
        assert result.usage.total_tokens == 140

    def test_unknown_event(self):
        """Test unknown JSON events are dropped."""
        assert parse_claude_line(_line({"type": "ping"})) == []


class TestCodexParser:
    """Tests for codex exec --json."""

    def test_command_start(self):
        """Test command executions become TOOL_START."""
        events = parse_codex_line(
            _line(
                {
                    "type": "item.started",
                    "item": {"type": "command_execution", "command": "npm test"},
                }
            )
        )
        assert events[0].kind == OutputKind.TOOL_START
        assert events[0].text == "shell: npm test"

    def test_agent_message(self):
        """Test completed agent messages become TEXT."""
        events = parse_codex_line(
            _line({"type": "item.completed", "item": {"type": "agent_message", "text": "ok"}})
        )
        assert events[0].text == "ok"

    def test_failed_command_output(self):
        """Test a nonzero command exit is flagged as an error."""
        events = parse_codex_line(
            _line(
                {
                    "type": "item.completed",
                    "item": {
                        "type": "command_execution",
                        "aggregated_output": "1 failed",
                        "exit_code": 1,
                    },
                }
            )
        )
        assert events[0].is_error is True

    def test_turn_completed_usage(self):
        """Test usage from turn.completed."""
        events = parse_codex_line(
            _line(
                {
                    "type": "turn.completed",
                    "usage": {"input_tokens": 10, "cached_input_tokens": 2, "output_tokens": 5},
                }
            )
        )
        assert events[0].kind == OutputKind.RESULT
        assert events[0].usage.cache_read_tokens == 2

    def test_turn_failed(self):
        """Test turn.failed is an error result."""
        events = parse_codex_line(_line({"type": "turn.failed", "error": {"message": "boom"}}))
        assert events[0].is_error is True
        assert events[0].text == "boom"


class TestHelpers:
    """Tests for tool summaries and usage accumulation."""

    def test_summarize_tool_fallback(self):
        """Test tools without known keys are summarized by name."""
        assert summarize_tool("TodoWrite", {"todos": []}) == "TodoWrite"

    def test_summarize_tool_first_line(self):
        """Test multi-line commands are cut to the first line."""
        assert summarize_tool("Bash", {"command": "cd src\nmake"}) == "Bash: cd src"

    def test_usage_add(self):
        """Test usage accumulation keeps cost None until reported."""
        total = TokenUsage()
        total.add(TokenUsage(input_tokens=5, output_tokens=1))
        assert total.cost_usd is None
        total.add(TokenUsage(input_tokens=5, cost_usd=0.1))
        assert total.input_tokens == 10
        assert total.cost_usd == 0.1
