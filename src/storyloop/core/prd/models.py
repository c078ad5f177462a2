"""
PRD data models.

The PRD (Project Requirements Document) is a JSON file with camelCase keys:

    {
      "project": "...",
      "branchName": "...",
      "cli": "claude",
      "cliFallbackOrder": ["codex"],
      "userStories": [
        {
          "id": "US-001", "title": "...", "description": "...",
          "complexity": "simple", "passes": false,
          "acceptanceCriteria": [
            {"id": "AC-1", "text": "...", "testCommand": "pytest -q",
             "passes": false, "lastRun": null}
          ]
        }
      ]
    }

acceptanceCriteria may instead be a plain list of strings (legacy,
non-testable). Unknown keys are preserved on every model so a load/save
round trip never drops dashboard-owned data.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger = logging.getLogger(__name__)


class Complexity(str, Enum):
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"


class AcceptanceCriterion(BaseModel):
    """A machine-checkable acceptance criterion."""

    model_config = ConfigDict(populate_by_name=True, extra="allow", validate_assignment=True)

    id: str
    text: str = ""
    test_command: str | None = Field(default=None, alias="testCommand")
    passes: bool = False
    last_run: str | None = Field(default=None, alias="lastRun")


class UserStory(BaseModel):
    """
    One unit of work.

    ``passes`` may only be true when every testable criterion passes; the
    verifier and the store keep it that way. Stories with legacy string
    criteria are completed only via PRDStore.mark_story_complete().
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow", validate_assignment=True)

    id: str
    title: str
    description: str = ""
    complexity: Complexity = Complexity.MEDIUM
    passes: bool = False
    priority: int | None = None
    acceptance_criteria: list[AcceptanceCriterion] | list[str] = Field(
        default_factory=list, alias="acceptanceCriteria"
    )

    @field_validator("id")
    @classmethod
    def id_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("story id must not be empty")
        return v

    @model_validator(mode="after")
    def passes_requires_criteria(self) -> UserStory:
        # Only reassign when demoting, so the assignment re-validation stops
        if self.passes and self.is_testable and not all(c.passes for c in self.criteria):
            logger.warning(
                "Story %s is marked passing but has failing criteria; treating as pending",
                self.id,
            )
            self.passes = False
        return self

    @property
    def is_testable(self) -> bool:
        """True when criteria are objects (first element decides)."""
        return bool(self.acceptance_criteria) and isinstance(
            self.acceptance_criteria[0], AcceptanceCriterion
        )

    @property
    def criteria(self) -> list[AcceptanceCriterion]:
        """Testable criteria, or an empty list for legacy stories."""
        if not self.is_testable:
            return []
        return [c for c in self.acceptance_criteria if isinstance(c, AcceptanceCriterion)]

    @property
    def criteria_texts(self) -> list[str]:
        return [c if isinstance(c, str) else c.text for c in self.acceptance_criteria]

    def get_criterion(self, criterion_id: str) -> AcceptanceCriterion | None:
        for criterion in self.criteria:
            if criterion.id == criterion_id:
                return criterion
        return None

    def refresh_passes(self) -> bool:
        """Recompute ``passes`` from the criteria of a testable story."""
        if self.is_testable:
            self.passes = all(c.passes for c in self.criteria)
        return self.passes


class PRD(BaseModel):
    """Root PRD document."""

    model_config = ConfigDict(populate_by_name=True, extra="allow", validate_assignment=True)

    project: str
    branch_name: str | None = Field(default=None, alias="branchName")
    cli: str | None = None
    cli_fallback_order: list[str] = Field(default_factory=list, alias="cliFallbackOrder")
    user_stories: list[UserStory] = Field(default_factory=list, alias="userStories")

    @field_validator("cli_fallback_order", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    @model_validator(mode="after")
    def unique_story_ids(self) -> PRD:
        seen: set[str] = set()
        for story in self.user_stories:
            if story.id in seen:
                raise ValueError(f"duplicate story id '{story.id}'")
            seen.add(story.id)
        return self

    def get_story(self, story_id: str) -> UserStory | None:
        for story in self.user_stories:
            if story.id == story_id:
                return story
        return None

    def ordered_stories(self) -> list[UserStory]:
        """
        Stories in execution order.

        Stories with an explicit priority run first (ascending, stable);
        the rest follow in file order.
        """
        prioritized = [s for s in self.user_stories if s.priority is not None]
        prioritized.sort(key=lambda s: s.priority)  # type: ignore[arg-type,return-value]
        rest = [s for s in self.user_stories if s.priority is None]
        return prioritized + rest

    @property
    def all_passed(self) -> bool:
        return bool(self.user_stories) and all(s.passes for s in self.user_stories)

    def to_json_dict(self) -> dict[str, Any]:
        """On-disk representation (camelCase, unknown keys kept)."""
        data = self.model_dump(mode="json", by_alias=True, exclude_unset=True)
        for story in data.get("userStories", []):
            for criterion in story.get("acceptanceCriteria", []):
                if isinstance(criterion, dict):
                    criterion.setdefault("lastRun", None)
        return data
