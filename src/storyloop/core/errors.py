"""
Error taxonomy for the story runner.

Each error carries the structured detail (which CLI, which story, which
criterion, which exit code) needed to report it to the user. Errors local to
one story are caught by the retry controller and never abort a run;
NoCLIAvailableError and MalformedPRDError abort only the affected project's run.
"""

from __future__ import annotations


class StoryloopError(Exception):
    """Base exception for storyloop errors."""


class NoCLIAvailableError(StoryloopError):
    """No whitelisted CLI is installed and healthy."""

    def __init__(self, tried: list[str] | None = None) -> None:
        self.tried = list(tried or [])
        detail = f" (tried: {', '.join(self.tried)})" if self.tried else ""
        super().__init__(f"No supported AI CLI is installed and healthy{detail}")


class CLIUnhealthyError(StoryloopError):
    """A specific CLI candidate failed its health check."""

    def __init__(self, cli: str, reason: str = "") -> None:
        self.cli = cli
        self.reason = reason
        suffix = f": {reason}" if reason else ""
        super().__init__(f"CLI '{cli}' failed health check{suffix}")


class UnknownCLIError(StoryloopError):
    """A CLI identifier is not on the whitelist."""

    def __init__(self, cli: str) -> None:
        self.cli = cli
        super().__init__(f"CLI '{cli}' is not a supported CLI")


class ProcessSpawnError(StoryloopError):
    """The external CLI process could not be started."""

    def __init__(self, executable: str, reason: str) -> None:
        self.executable = executable
        self.reason = reason
        super().__init__(f"Failed to start '{executable}': {reason}")


class ProcessExitNonZeroError(StoryloopError):
    """The external CLI process exited with a nonzero code."""

    def __init__(self, executable: str, exit_code: int | None) -> None:
        self.executable = executable
        self.exit_code = exit_code
        super().__init__(f"'{executable}' exited with code {exit_code}")


class TestCommandFailure(StoryloopError):
    """An acceptance criterion's test command did not exit 0."""

    __test__ = False  # not a pytest test class

    def __init__(
        self,
        story_id: str,
        criterion_id: str,
        exit_code: int | None,
        detail: str = "",
    ) -> None:
        self.story_id = story_id
        self.criterion_id = criterion_id
        self.exit_code = exit_code
        self.detail = detail
        super().__init__(
            f"{story_id}/{criterion_id} failed (exit {exit_code})"
            + (f": {detail}" if detail else "")
        )


class RetryLimitExceededError(StoryloopError):
    """A story used all of its attempts without passing."""

    def __init__(self, story_id: str, attempts: int, last_error: str | None = None) -> None:
        self.story_id = story_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Story '{story_id}' failed after {attempts} attempts")


class MalformedPRDError(StoryloopError):
    """The PRD file is missing, unreadable, or fails validation."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Malformed PRD at {path}: {reason}")


class QuotaExhaustedError(StoryloopError):
    """Every candidate model's provider reports no remaining quota."""

    def __init__(self, provider: str, model_id: str) -> None:
        self.provider = provider
        self.model_id = model_id
        super().__init__(f"Quota exhausted for {provider} (model {model_id})")


class RunLimitError(StoryloopError):
    """Too many projects are already running."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"Maximum of {limit} concurrent project runs reached")


class StoryNotFoundError(StoryloopError):
    """Story ID not present in the PRD."""

    def __init__(self, story_id: str) -> None:
        self.story_id = story_id
        super().__init__(f"Story '{story_id}' not found in PRD")
