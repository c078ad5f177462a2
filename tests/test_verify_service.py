"""
Tests for acceptance verification.

Criteria run real shell commands in tmp_path.
"""

from __future__ import annotations

import pytest

from storyloop.core.prd.models import PRD
from storyloop.core.verify.service import (
    NO_TEST_COMMAND,
    AcceptanceVerifier,
    CriterionResult,
    VerificationResult,
)


def _prd(*commands: str | None) -> PRD:
    return PRD.model_validate(
        {
            "project": "demo",
            "userStories": [
                {
                    "id": "US-1",
                    "title": "Story",
                    "acceptanceCriteria": [
                        {"id": f"AC-{i}", "text": f"criterion {i}", "testCommand": cmd}
                        for i, cmd in enumerate(commands, 1)
                    ],
                }
            ],
        }
    )


class TestVerify:
    """Tests for AcceptanceVerifier.verify."""

    @pytest.mark.asyncio
    async def test_all_pass(self, tmp_path, sample_prd):
        """Test passing commands mark criteria and the story passed."""
        saves: list[PRD] = []
        verifier = AcceptanceVerifier(tmp_path, save=saves.append)
        story = sample_prd.get_story("US-001")

        result = await verifier.verify(sample_prd, story)

        assert result.all_passed is True
        assert result.passed_count == 2
        assert result.pass_rate == 1.0
        assert story.passes is True
        assert all(c.passes and c.last_run for c in story.criteria)
        assert story.criteria[0].last_run.endswith("Z")
        # once per criterion plus the final story update
        assert len(saves) == 3

    @pytest.mark.asyncio
    async def test_partial_failure(self, tmp_path):
        """Test one failing criterion fails the story and reports detail."""
        prd = _prd("true", "echo 'expected 200, got 500' >&2; exit 3")
        story = prd.user_stories[0]

        result = await AcceptanceVerifier(tmp_path).verify(prd, story)

        assert result.all_passed is False
        assert story.passes is False
        assert story.criteria[0].passes is True
        assert story.criteria[1].passes is False
        failure = result.per_criterion[1]
        assert failure.exit_code == 3
        assert failure.error == "expected 200, got 500"
        assert result.failure_summary() == "- AC-2 (exit 3): expected 200, got 500"
        assert [f.criterion_id for f in result.failures] == ["AC-2"]

    @pytest.mark.asyncio
    async def test_stdout_used_when_stderr_empty(self, tmp_path):
        """Test stdout becomes the detail when stderr is empty."""
        prd = _prd("echo 'assertion failed'; exit 1")
        result = await AcceptanceVerifier(tmp_path).verify(prd, prd.user_stories[0])
        assert result.per_criterion[0].error == "assertion failed"

    @pytest.mark.asyncio
    async def test_error_truncated(self, tmp_path):
        """Test failure detail is cut to error_max_chars."""
        prd = _prd("printf 'x%.0s' $(seq 1 500) >&2; exit 1")
        verifier = AcceptanceVerifier(tmp_path, error_max_chars=20)
        result = await verifier.verify(prd, prd.user_stories[0])
        assert result.per_criterion[0].error == "x" * 20

    @pytest.mark.asyncio
    async def test_timeout_fails(self, tmp_path):
        """Test a hung command fails the criterion as timed out."""
        prd = _prd("sleep 30")
        verifier = AcceptanceVerifier(tmp_path, timeout_seconds=0.3)
        result = await verifier.verify(prd, prd.user_stories[0])

        criterion = result.per_criterion[0]
        assert criterion.passed is False
        assert criterion.timed_out is True
        assert "timed out" in result.failure_summary()

    @pytest.mark.asyncio
    async def test_missing_command(self, tmp_path):
        """Test a criterion without a test command fails without running anything."""
        prd = _prd(None)
        result = await AcceptanceVerifier(tmp_path).verify(prd, prd.user_stories[0])
        assert result.all_passed is False
        assert result.per_criterion[0].error == NO_TEST_COMMAND

    @pytest.mark.asyncio
    async def test_runs_in_project_dir(self, tmp_path):
        """Test commands run in the project directory."""
        (tmp_path / "built.txt").write_text("ok")
        prd = _prd("test -f built.txt")
        result = await AcceptanceVerifier(tmp_path).verify(prd, prd.user_stories[0])
        assert result.all_passed is True

    @pytest.mark.asyncio
    async def test_parallel(self, tmp_path):
        """Test criteria can run concurrently and keep their order."""
        prd = _prd("sleep 0.2; true", "sleep 0.2; false", "true")
        verifier = AcceptanceVerifier(tmp_path, max_parallel=3)
        result = await verifier.verify(prd, prd.user_stories[0])
        assert [r.criterion_id for r in result.per_criterion] == ["AC-1", "AC-2", "AC-3"]
        assert [r.passed for r in result.per_criterion] == [True, False, True]

    @pytest.mark.asyncio
    async def test_legacy_story_not_verified(self, tmp_path, sample_prd):
        """Test legacy stories return all_passed=None and stay untouched."""
        saves: list[PRD] = []
        story = sample_prd.get_story("US-002")
        result = await AcceptanceVerifier(tmp_path, save=saves.append).verify(sample_prd, story)
        assert result.all_passed is None
        assert result.per_criterion == []
        assert story.passes is False
        assert saves == []


class TestResults:
    """Tests for result helpers."""

    def test_empty_pass_rate(self):
        """Test pass_rate is zero when nothing ran."""
        assert VerificationResult(story_id="S", all_passed=None).pass_rate == 0.0

    def test_as_failure(self):
        """Test a failed criterion converts to TestCommandFailure."""
        failure = CriterionResult("AC-1", passed=False, exit_code=2, error="bad").as_failure("S")
        assert failure.story_id == "S"
        assert failure.criterion_id == "AC-1"
        assert failure.exit_code == 2
