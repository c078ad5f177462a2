"""
Acceptance verification.

Runs each acceptance criterion's ``testCommand`` through the shell in the
project directory. Exit code 0 passes; anything else (including a timeout)
fails. Every criterion result is written back to the PRD immediately, so a
crash mid-verification never loses progress that was already checked.

Stories with legacy string criteria are never auto-verified: their result
has ``all_passed=None``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from storyloop.core.errors import TestCommandFailure
from storyloop.core.harness.process import ProcessResult, run_shell
from storyloop.core.prd.models import PRD, AcceptanceCriterion, UserStory

logger = logging.getLogger(__name__)

NO_TEST_COMMAND = "No test command defined"

SaveCallback = Callable[[PRD], None]


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a Z suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class CriterionResult:
    """Outcome of one criterion's test command."""

    criterion_id: str
    passed: bool
    exit_code: int | None = None
    duration_ms: int = 0
    error: str | None = None
    timed_out: bool = False

    def as_failure(self, story_id: str) -> TestCommandFailure:
        return TestCommandFailure(story_id, self.criterion_id, self.exit_code, self.error or "")


@dataclass
class VerificationResult:
    """
    Outcome of verifying one story.

    ``all_passed`` is None for legacy stories, which cannot be verified.
    """

    story_id: str
    all_passed: bool | None
    per_criterion: list[CriterionResult] = field(default_factory=list)

    @property
    def failures(self) -> list[TestCommandFailure]:
        return [r.as_failure(self.story_id) for r in self.per_criterion if not r.passed]

    @property
    def passed_count(self) -> int:
        return sum(1 for r in self.per_criterion if r.passed)

    @property
    def pass_rate(self) -> float:
        """Fraction of criteria that passed (0.0 when nothing was checked)."""
        if not self.per_criterion:
            return 0.0
        return self.passed_count / len(self.per_criterion)

    def failure_summary(self) -> str:
        """Multi-line description of failing criteria for retry prompts."""
        lines = []
        for r in self.per_criterion:
            if r.passed:
                continue
            exit_info = "timed out" if r.timed_out else f"exit {r.exit_code}"
            lines.append(f"- {r.criterion_id} ({exit_info}): {r.error or 'failed'}")
        return "\n".join(lines)


def _error_detail(result: ProcessResult, limit: int) -> str:
    if result.timed_out or (result.error and result.exit_code is None):
        detail = result.error or "timed out"
    else:
        detail = (
            result.stderr.strip() or result.stdout.strip() or f"Exit code {result.exit_code}"
        )
    return detail[:limit]


class AcceptanceVerifier:
    """
    Verifies stories by running their criteria test commands.

    Args:
        project_dir: Working directory for test commands.
        save: Called with the PRD after every criterion result.
        timeout_seconds: Per-command timeout.
        max_parallel: Maximum commands running at once.
        error_max_chars: Truncation limit for failure detail.
    """

    def __init__(
        self,
        project_dir: Path,
        save: SaveCallback | None = None,
        *,
        timeout_seconds: float = 30.0,
        max_parallel: int = 1,
        error_max_chars: int = 200,
    ) -> None:
        self.project_dir = project_dir
        self._save = save
        self.timeout_seconds = timeout_seconds
        self.max_parallel = max(1, max_parallel)
        self.error_max_chars = error_max_chars
        self._save_lock = asyncio.Lock()

    async def run_criterion(self, criterion: AcceptanceCriterion) -> CriterionResult:
        """Run one criterion's test command without touching the PRD."""
        if not criterion.test_command:
            return CriterionResult(criterion_id=criterion.id, passed=False, error=NO_TEST_COMMAND)

        result = await run_shell(
            criterion.test_command, timeout=self.timeout_seconds, cwd=self.project_dir
        )
        if result.success:
            return CriterionResult(
                criterion_id=criterion.id,
                passed=True,
                exit_code=result.exit_code,
                duration_ms=result.duration_ms,
            )
        return CriterionResult(
            criterion_id=criterion.id,
            passed=False,
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
            error=_error_detail(result, self.error_max_chars),
            timed_out=result.timed_out,
        )

    async def _check(
        self,
        prd: PRD,
        story: UserStory,
        criterion: AcceptanceCriterion,
        semaphore: asyncio.Semaphore,
    ) -> CriterionResult:
        async with semaphore:
            result = await self.run_criterion(criterion)

        criterion.passes = result.passed
        criterion.last_run = utc_timestamp()
        if result.passed:
            logger.info("%s/%s passed", story.id, criterion.id)
        else:
            logger.info("%s/%s failed: %s", story.id, criterion.id, result.error)

        if self._save is not None:
            async with self._save_lock:
                self._save(prd)
        return result

    async def verify(self, prd: PRD, story: UserStory) -> VerificationResult:
        """
        Run every criterion of ``story`` and update the PRD in place.

        ``story`` must belong to ``prd``. ``story.passes`` becomes true only
        when every criterion passed.
        """
        if not story.is_testable:
            logger.info("Story %s has legacy criteria; skipping auto-verification", story.id)
            return VerificationResult(story_id=story.id, all_passed=None)

        semaphore = asyncio.Semaphore(self.max_parallel)
        results = await asyncio.gather(
            *(self._check(prd, story, c, semaphore) for c in story.criteria)
        )
        all_passed = all(r.passed for r in results)
        story.passes = all_passed
        if self._save is not None:
            async with self._save_lock:
                self._save(prd)

        logger.info(
            "Verified %s: %d/%d criteria passed",
            story.id,
            sum(1 for r in results if r.passed),
            len(results),
        )
        return VerificationResult(
            story_id=story.id, all_passed=all_passed, per_criterion=list(results)
        )
