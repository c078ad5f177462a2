"""PRD models and persistence."""

from .models import PRD, AcceptanceCriterion, Complexity, UserStory
from .store import BackupInfo, PRDStore

__all__ = [
    "PRD",
    "AcceptanceCriterion",
    "BackupInfo",
    "Complexity",
    "PRDStore",
    "UserStory",
]
