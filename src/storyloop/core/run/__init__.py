"""
Core run package.

Business logic for running a project's stories, separated from CLI
concerns so the operator CLI and the dashboard service share it.

Modules:
    prompt_builder: Task prompt composition, including retry context.
    models: Configuration, per-story state and event models.
    loop: Retry controller state machine (route → run → verify → retry/advance).
"""

from storyloop.core.run.loop import RetryController
from storyloop.core.run.models import (
    MAX_ATTEMPTS,
    RunConfig,
    RunEvent,
    RunEventType,
    RunResult,
    StoryPhase,
    StoryState,
)
from storyloop.core.run.prompt_builder import (
    TaskPrompt,
    generate_retry_context,
    generate_story_prompt,
    load_custom_principles,
)

__all__ = [
    # Prompt builder
    "TaskPrompt",
    "generate_retry_context",
    "generate_story_prompt",
    "load_custom_principles",
    # Run loop
    "MAX_ATTEMPTS",
    "RetryController",
    "RunConfig",
    "RunEvent",
    "RunEventType",
    "RunResult",
    "StoryPhase",
    "StoryState",
]
