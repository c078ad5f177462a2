"""
Prompt builder for story attempts.

Builds the task prompt handed to the external CLI: working principles,
optional project principles, the story and its acceptance criteria, and on
retries the failure detail from the previous attempt so the tool can
self-correct. Independent of CLI concerns.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from storyloop.core.prd.models import UserStory

PRINCIPLES_FILENAME = "principles.md"
MIN_PRINCIPLES_CHARS = 100

_HTML_COMMENT = re.compile(r"<!--.*?-->", re.DOTALL)

_BASE_PRINCIPLES = """\
You are a pragmatic programmer implementing a user story.

## Core Principles

- Search for existing similar code before writing new code; do not duplicate logic.
- Match the existing patterns, naming and conventions of the codebase.
- Make small, verifiable steps; get a minimal end-to-end version working first.
- Fail early with clear error messages.
- Leave no broken code behind.
"""

_INSTRUCTIONS = """\
## Instructions

1. Explore the existing code related to this story.
2. Implement the story incrementally, following the project's conventions.
3. Run every acceptance test command listed above and make sure it exits 0.
4. When complete, summarize what you implemented and any key decisions.

Begin implementation now.
"""


@dataclass(frozen=True)
class TaskPrompt:
    """
    Rendered prompt plus what went into it.

    Attributes:
        text: Full prompt.
        has_retry_context: Whether failure detail from a prior attempt was included.
        has_custom_principles: Whether project principles were included.
    """

    text: str
    has_retry_context: bool = False
    has_custom_principles: bool = False


def load_custom_principles(*paths: Path) -> str | None:
    """
    First meaningful principles file among ``paths``.

    HTML comments and blank lines are stripped; files with less than
    ``MIN_PRINCIPLES_CHARS`` of remaining content are ignored.
    """
    for path in paths:
        if not path.is_file():
            continue
        try:
            content = path.read_text(encoding="utf-8")
        except OSError:
            continue
        cleaned = "\n".join(
            line for line in _HTML_COMMENT.sub("", content).splitlines() if line.strip()
        )
        if len(cleaned) >= MIN_PRINCIPLES_CHARS:
            return cleaned
    return None


def format_criteria(story: UserStory) -> str:
    if story.is_testable:
        return "\n".join(
            f"- {c.text}" + (f" (test: {c.test_command})" if c.test_command else "")
            for c in story.criteria
        )
    return "\n".join(f"- {text}" for text in story.criteria_texts)


def generate_retry_context(attempt: int, max_attempts: int, failure_detail: str) -> str:
    return (
        f"## Previous Attempt Failed (attempt {attempt} of {max_attempts})\n\n"
        "The previous attempt did not pass verification:\n\n"
        f"{failure_detail.strip()}\n\n"
        "Fix these failures before doing anything else.\n"
    )


def generate_story_prompt(
    story: UserStory,
    *,
    attempt: int = 1,
    max_attempts: int = 3,
    failure_detail: str | None = None,
    principles: str | None = None,
) -> TaskPrompt:
    """
    Build the prompt for one attempt at ``story``.

    Args:
        story: Story to implement.
        attempt: 1-based attempt number.
        max_attempts: Attempt cap (shown in retry context).
        failure_detail: What failed last time; included when attempt > 1.
        principles: Project-specific principles text.
    """
    sections = [_BASE_PRINCIPLES]
    if principles:
        sections.append(f"## Project-Specific Principles\n\n{principles}\n")
    sections.append(
        "---\n\n"
        f"## User Story: {story.id} - {story.title}\n\n"
        f"**Description:**\n{story.description}\n\n"
        f"**Acceptance Criteria:**\n{format_criteria(story)}\n\n"
        f"**Complexity:** {story.complexity.value}\n"
    )
    has_retry = False
    if failure_detail and attempt > 1:
        has_retry = True
        sections.append(generate_retry_context(attempt - 1, max_attempts, failure_detail))
    sections.append("---\n\n" + _INSTRUCTIONS)
    return TaskPrompt(
        text="\n".join(sections),
        has_retry_context=has_retry,
        has_custom_principles=bool(principles),
    )
