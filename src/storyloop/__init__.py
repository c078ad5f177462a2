"""
storyloop - unattended story runner.

Drives external AI coding CLIs through a PRD's user stories, verifying each
against its acceptance test commands and retrying with failure context.
"""

__version__ = "0.1.0"

# Re-export core models for convenience
from storyloop.core.prd.models import PRD, AcceptanceCriterion, UserStory

__all__ = ["PRD", "AcceptanceCriterion", "UserStory", "__version__"]
