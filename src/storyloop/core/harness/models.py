"""
Harness data models.

Defines the structured output stream emitted by the process runner, the
final exit result, token usage, and the observable process state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ProcessState(str, Enum):
    """
    Observable lifecycle of a project's agent process.

    EXTERNAL means an agent session was found running that this process
    did not spawn (e.g. a tmux session started from another terminal).
    """

    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    EXTERNAL = "external"
    PAUSED = "paused"


class OutputKind(str, Enum):
    """Variant tag for a structured output line."""

    TOOL_START = "tool_start"
    TEXT = "text"
    SYSTEM = "system"
    RESULT = "result"


class TokenUsage(BaseModel):
    """
    Token usage for one agent invocation.

    Tracks input/output tokens and cache usage for cost estimation.
    """

    input_tokens: int = Field(default=0, description="Input tokens consumed")
    output_tokens: int = Field(default=0, description="Output tokens generated")
    cache_read_tokens: int = Field(default=0, description="Tokens read from prompt cache")
    cache_creation_tokens: int = Field(default=0, description="Tokens written to prompt cache")
    cost_usd: float | None = Field(default=None, description="Cost reported by the CLI")
    estimated: bool = Field(default=False, description="Whether usage is estimated")

    @property
    def total_tokens(self) -> int:
        """Total tokens consumed (input + output)."""
        return self.input_tokens + self.output_tokens

    def add(self, other: TokenUsage) -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_read_tokens += other.cache_read_tokens
        self.cache_creation_tokens += other.cache_creation_tokens
        if other.cost_usd is not None:
            self.cost_usd = (self.cost_usd or 0.0) + other.cost_usd


@dataclass
class OutputEvent:
    """
    One structured line of agent output.

    Attributes:
        kind: Variant tag.
        text: Display text. For TOOL_START this is a one-line summary.
        thinking: True when the text is model reasoning rather than a reply.
        tool_name: Tool being invoked (TOOL_START only).
        tool_input: Tool arguments (TOOL_START only).
        usage: Token usage (RESULT only, when the CLI reports it).
        is_error: RESULT reported an error, or a SYSTEM line came from stderr.
        raw: Original decoded JSON event, if any.
    """

    kind: OutputKind
    text: str = ""
    thinking: bool = False
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None
    usage: TokenUsage | None = None
    is_error: bool = False
    raw: dict[str, Any] | None = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind.value, "text": self.text}
        if self.thinking:
            data["thinking"] = True
        if self.tool_name:
            data["tool_name"] = self.tool_name
            data["tool_input"] = self.tool_input or {}
        if self.usage is not None:
            data["usage"] = self.usage.model_dump()
        if self.is_error:
            data["is_error"] = True
        return data


@dataclass(frozen=True)
class ExitResult:
    """Final outcome of a process run."""

    code: int | None
    duration_ms: int
    timed_out: bool = False
    stopped: bool = False
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.code == 0 and not self.stopped and not self.timed_out
