"""
Run loop configuration, state and event models.

- RunConfig: parameters for one run of a project
- StoryPhase / StoryState: explicit per-story state owned by the controller
- RunEvent: events yielded by RetryController.execute()
- RunResult: summary after the generator is consumed

Usage:
    >>> config = RunConfig(project_dir="/work/app", mode=ExecutionMode.BALANCED)
    >>> async for event in RetryController(config, ...).execute():
    ...     handle(event)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from storyloop.core.harness.models import OutputEvent
from storyloop.core.routing.models import ExecutionMode, TaskType
from storyloop.core.verify.service import CriterionResult

MAX_ATTEMPTS = 3


@dataclass(frozen=True)
class RunConfig:
    """
    Configuration for one project run. Immutable once created.

    Attributes:
        project_dir: Project root; CLIs and test commands run here.
        prd_path: PRD file (defaults to ``<project_dir>/prd.json``).
        mode: Execution mode for model routing (None uses the settings
            file, then the routing config).
        cli_override: CLI forced from the command line (takes precedence
            over the PRD's ``cli``).
        model_override: Model forced from the command line.
        story_id: Run only this story.
        max_attempts: Attempts per story, 1 to MAX_ATTEMPTS.
        attempt_timeout_seconds: Stop an attempt after this long.
        use_learning: Blend learned performance into routing.
        check_quotas: Refresh provider quotas before routing.
        check_api_status: Check the Claude status page before the run.
        session_name: Run log session name (auto-generated if None).
    """

    project_dir: str = "."
    prd_path: str | None = None
    mode: ExecutionMode | None = None
    cli_override: str | None = None
    model_override: str | None = None
    story_id: str | None = None
    max_attempts: int = MAX_ATTEMPTS
    attempt_timeout_seconds: float | None = 3600.0
    use_learning: bool = True
    check_quotas: bool = True
    check_api_status: bool = True
    session_name: str | None = None

    def __post_init__(self) -> None:
        if not 1 <= self.max_attempts <= MAX_ATTEMPTS:
            raise ValueError(
                f"max_attempts must be between 1 and {MAX_ATTEMPTS}, got {self.max_attempts}"
            )


class StoryPhase(str, Enum):
    """Retry controller states for one story."""

    PENDING = "pending"
    RUNNING = "running"
    VERIFYING = "verifying"
    RETRYING = "retrying"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (StoryPhase.COMPLETE, StoryPhase.FAILED)


@dataclass
class StoryState:
    """
    Explicit state for one story during a run.

    Consumers read this rather than re-parsing logs.
    """

    story_id: str
    title: str = ""
    phase: StoryPhase = StoryPhase.PENDING
    attempt: int = 0
    task_type: TaskType = TaskType.UNKNOWN
    cli: str | None = None
    model_id: str | None = None
    provider: str | None = None
    last_exit_code: int | None = None
    last_error: str | None = None
    criteria: list[CriterionResult] = field(default_factory=list)
    history: list[StoryPhase] = field(default_factory=lambda: [StoryPhase.PENDING])

    def transition(self, phase: StoryPhase) -> None:
        self.phase = phase
        self.history.append(phase)


class RunEventType(str, Enum):
    """
    Discriminator for run loop events.

    Consumers switch on this to render or log each event.
    """

    # Lifecycle events
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_STOPPED = "run_stopped"

    # Story events
    STORY_SELECTED = "story_selected"
    STORY_STARTED = "story_started"
    STORY_COMPLETED = "story_completed"
    STORY_FAILED = "story_failed"
    STORY_SKIPPED = "story_skipped"

    # Attempt events
    ATTEMPT_STARTED = "attempt_started"
    ATTEMPT_FINISHED = "attempt_finished"
    CLI_RESOLVED = "cli_resolved"
    MODEL_SELECTED = "model_selected"
    OUTPUT = "output"
    VERIFICATION_RESULT = "verification_result"
    RETRYING = "retrying"

    # Advisory events
    API_STATUS = "api_status"


@dataclass
class RunEvent:
    """
    Event yielded by the retry controller.

    Attributes:
        event_type: Discriminator.
        message: Human-readable description.
        story_id: Associated story (if any).
        attempt: Attempt number (1-based) for attempt events.
        exit_code: CLI exit code (if applicable).
        error: Error detail (if applicable).
        output: Streamed output event for OUTPUT events.
        state: Snapshot reference of the story's state.
        data: Extra structured data.
    """

    event_type: RunEventType
    message: str = ""
    story_id: str | None = None
    attempt: int = 0
    exit_code: int | None = None
    error: str | None = None
    output: OutputEvent | None = None
    state: StoryState | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class RunResult:
    """Summary of a finished run."""

    run_id: str = ""
    phase: str = "completed"
    stories_completed: int = 0
    stories_failed: int = 0
    stories_skipped: int = 0
    total_attempts: int = 0
    total_cost_usd: float = 0.0
    total_duration_seconds: float = 0.0
    archive_path: str | None = None
    error: str | None = None
    states: dict[str, StoryState] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.phase == "completed" and self.stories_failed == 0
