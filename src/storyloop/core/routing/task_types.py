"""
Task type detection.

Scores a story against keyword lists for each task type and returns the
best match. Matching is case-insensitive on word boundaries; a keyword
that also appears in the story title counts three times.

Example:
    >>> detect_task_type("Fix crash on login", "The app crashes")
    <TaskType.BUGFIX: 'bugfix'>
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import TYPE_CHECKING

from .models import TaskType

if TYPE_CHECKING:
    from storyloop.core.prd.models import UserStory

TITLE_WEIGHT = 3

# Dict order is the tie-break order
TASK_KEYWORDS: dict[TaskType, tuple[str, ...]] = {
    TaskType.COMPLEX_INTEGRATION: (
        "integration", "multi-system", "architecture", "orchestration",
        "microservice", "end-to-end", "full-stack", "cross-cutting",
    ),
    TaskType.MATHEMATICAL: (
        "algorithm", "calculation", "formula", "optimization",
        "compute", "math", "statistics", "probability",
    ),
    TaskType.BACKEND_API: (
        "endpoint", "rest", "graphql", "api", "route",
        "controller", "request", "response", "http",
    ),
    TaskType.BACKEND_LOGIC: (
        "service", "business logic", "validation", "processing",
        "workflow", "domain logic", "data processing",
    ),
    TaskType.FRONTEND_UI: (
        "component", "ui", "style", "css", "layout", "design", "visual",
        "responsive", "theme", "button", "form", "modal", "dashboard",
    ),
    TaskType.FRONTEND_LOGIC: (
        "hook", "state", "context", "reducer", "effect",
        "react", "vue", "store", "state management",
    ),
    TaskType.DATABASE: (
        "schema", "migration", "query", "database", "sql",
        "table", "index", "relation", "model",
    ),
    TaskType.TESTING: (
        "test", "spec", "mock", "jest", "vitest", "cypress",
        "e2e", "unit test", "integration test", "coverage",
    ),
    TaskType.DOCUMENTATION: (
        "documentation", "readme", "docs", "guide",
        "tutorial", "comment", "jsdoc", "api docs",
    ),
    TaskType.REFACTORING: (
        "refactor", "cleanup", "reorganize", "restructure",
        "simplify", "optimize", "improve",
    ),
    TaskType.BUGFIX: (
        "fix", "bug", "issue", "error", "crash", "defect", "problem", "broken",
    ),
    TaskType.DEVOPS: (
        "docker", "ci/cd", "pipeline", "deploy", "deployment",
        "kubernetes", "container", "build",
    ),
    TaskType.CONFIG: (
        "configuration", "config", "setup", "environment", "settings", "env", "dotenv",
    ),
}

_PATTERNS: dict[str, re.Pattern[str]] = {
    kw: re.compile(rf"\b{re.escape(kw)}\b", re.IGNORECASE)
    for keywords in TASK_KEYWORDS.values()
    for kw in keywords
}


def score_text(
    title: str, description: str = "", criteria: Iterable[str] = ()
) -> dict[TaskType, int]:
    """Keyword score for every known task type (``unknown`` excluded)."""
    combined = " ".join([title, description, *criteria])
    scores: dict[TaskType, int] = {}
    for task_type, keywords in TASK_KEYWORDS.items():
        score = 0
        for kw in keywords:
            pattern = _PATTERNS[kw]
            hits = len(pattern.findall(combined))
            if not hits:
                continue
            weight = TITLE_WEIGHT if pattern.search(title) else 1
            score += weight * hits
        scores[task_type] = score
    return scores


def detect_task_type(
    title: str, description: str = "", criteria: Iterable[str] = ()
) -> TaskType:
    """Highest-scoring task type; ties go to the earlier type, no hits to UNKNOWN."""
    best = TaskType.UNKNOWN
    best_score = 0
    for task_type, score in score_text(title, description, criteria).items():
        if score > best_score:
            best, best_score = task_type, score
    return best


def detect_story_task_type(story: UserStory) -> TaskType:
    return detect_task_type(story.title, story.description, story.criteria_texts)
