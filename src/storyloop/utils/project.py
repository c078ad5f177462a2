"""
Project root discovery.

A project root is the nearest directory, searching upward, that holds a
PRD or one of the storyloop/git markers.
"""

from pathlib import Path

# Markers that indicate a project root, in order of priority
PROJECT_ROOT_MARKERS = [
    "prd.json",
    ".storyloop",
    ".storyloop.json",
    ".git",
]


def find_project_root(start: Path | None = None) -> Path | None:
    """
    Find the project root directory by searching upward for marker files.

    Args:
        start: Directory to start searching from. Defaults to current working directory.

    Returns:
        Path to the project root directory, or None if not found.

    Example:
        >>> find_project_root(Path("/work/app/src/module"))
        PosixPath('/work/app')
    """
    if start is None:
        start = Path.cwd()

    current = start.resolve()
    while True:
        for marker in PROJECT_ROOT_MARKERS:
            if (current / marker).exists():
                return current
        if current == current.parent:
            return None
        current = current.parent


def resolve_project_dir(project: Path | None = None) -> Path:
    """Explicit project path, else the discovered root, else the cwd."""
    if project is not None:
        return project.resolve()
    return find_project_root() or Path.cwd().resolve()


def tmux_session_name(branch: str | None, project: str) -> str:
    """
    tmux session name for a project run.

    Example:
        >>> tmux_session_name("feature/login", "app")
        'storyloop-feature-login'
        >>> tmux_session_name(None, "app")
        'storyloop-storyloop-app'
    """
    branch = branch or f"storyloop/{project}"
    return f"storyloop-{branch.replace('/', '-')}"
