"""
Standardized error handling and exit codes for the storyloop CLI.

Consistent error messaging with actionable guidance and standardized exit
codes across all commands.
"""

from enum import IntEnum

from rich.console import Console

from storyloop.core.errors import (
    MalformedPRDError,
    NoCLIAvailableError,
    StoryloopError,
    StoryNotFoundError,
    UnknownCLIError,
)
from storyloop.core.harness.clis import CLI_WHITELIST

console = Console(stderr=True)


class ExitCode(IntEnum):
    """Standard exit codes for storyloop CLI operations."""

    SUCCESS = 0
    """Operation completed successfully."""

    GENERAL_ERROR = 1
    """Generic error, or a run finished with failed stories."""

    USER_ERROR = 2
    """User configuration or input error (actionable by user)."""

    SIGINT = 130
    """Terminated by SIGINT (Ctrl+C) - Unix standard."""


def print_error(
    problem: str,
    *,
    reason: str | None = None,
    solution: str | None = None,
) -> None:
    """
    Print a standardized error message with actionable guidance.

    Args:
        problem: Brief description of what went wrong
        reason: Optional explanation of why it happened
        solution: Optional command or action to fix it

    Example:
        >>> print_error(
        ...     "No AI CLI available",
        ...     reason="storyloop delegates each story to an external coding CLI",
        ...     solution="npm install -g @anthropic-ai/claude-code",
        ... )
    """
    console.print(f"[red]Error:[/red] {problem}")

    if reason:
        console.print(f"[dim]{reason}[/dim]")

    if solution:
        console.print(f"[cyan]→ Try:[/cyan] {solution}")


def print_storyloop_error(error: StoryloopError) -> ExitCode:
    """Print a core error with guidance and return the exit code to use."""
    if isinstance(error, NoCLIAvailableError):
        print_error(
            "No AI CLI is installed and healthy",
            reason=f"Tried: {', '.join(error.tried) or 'none'}",
            solution="storyloop cli doctor  # to see which CLIs were found",
        )
        return ExitCode.GENERAL_ERROR
    if isinstance(error, MalformedPRDError):
        print_error(
            f"Invalid PRD: {error.path}",
            reason=error.reason,
            solution="storyloop backup restore  # to restore the last good PRD",
        )
        return ExitCode.USER_ERROR
    if isinstance(error, StoryNotFoundError):
        print_error(
            f"Story not found: {error.story_id}",
            solution="storyloop status  # to list story IDs",
        )
        return ExitCode.USER_ERROR
    if isinstance(error, UnknownCLIError):
        print_invalid_option_error(error.cli, list(CLI_WHITELIST))
        return ExitCode.USER_ERROR
    print_error(str(error))
    return ExitCode.GENERAL_ERROR


def print_invalid_option_error(option: str, valid_options: list[str]) -> None:
    """Print error when an invalid option value is provided."""
    valid_str = ", ".join(valid_options)
    print_error(
        f"Invalid option: {option}",
        reason=f"Valid options are: {valid_str}",
    )
