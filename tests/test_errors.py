"""Tests for the error taxonomy."""

import pytest

from storyloop.core.errors import (
    CLIUnhealthyError,
    MalformedPRDError,
    NoCLIAvailableError,
    ProcessExitNonZeroError,
    ProcessSpawnError,
    QuotaExhaustedError,
    RetryLimitExceededError,
    RunLimitError,
    StoryloopError,
    StoryNotFoundError,
    TestCommandFailure,
    UnknownCLIError,
)


@pytest.mark.parametrize(
    "error,message",
    [
        (NoCLIAvailableError(["claude", "codex"]),
         "No supported AI CLI is installed and healthy (tried: claude, codex)"),
        (NoCLIAvailableError(), "No supported AI CLI is installed and healthy"),
        (CLIUnhealthyError("codex", "exit code 1"), "CLI 'codex' failed health check: exit code 1"),
        (UnknownCLIError("bash"), "CLI 'bash' is not a supported CLI"),
        (ProcessSpawnError("claude", "not found"), "Failed to start 'claude': not found"),
        (ProcessExitNonZeroError("claude", 2), "'claude' exited with code 2"),
        (TestCommandFailure("US-1", "AC-1", 1, "boom"), "US-1/AC-1 failed (exit 1): boom"),
        (RetryLimitExceededError("US-1", 3), "Story 'US-1' failed after 3 attempts"),
        (MalformedPRDError("prd.json", "invalid JSON"), "Malformed PRD at prd.json: invalid JSON"),
        (QuotaExhaustedError("anthropic", "claude-sonnet-4-20250514"),
         "Quota exhausted for anthropic (model claude-sonnet-4-20250514)"),
        (RunLimitError(5), "Maximum of 5 concurrent project runs reached"),
        (StoryNotFoundError("US-9"), "Story 'US-9' not found in PRD"),
    ],
)
def test_messages(error, message):
    """Test each error renders its structured detail."""
    assert str(error) == message
    assert isinstance(error, StoryloopError)


def test_structured_fields():
    """Test errors keep the fields callers report on."""
    error = RetryLimitExceededError("US-1", 3, "AC-2 failed")
    assert (error.story_id, error.attempts, error.last_error) == ("US-1", 3, "AC-2 failed")
    assert NoCLIAvailableError(["claude"]).tried == ["claude"]
