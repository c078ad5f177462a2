"""Environment loading helpers.

storyloop reads provider API keys from the environment. Values may also
come from .env files:

  os.environ (pre-existing) > project .env.local > project .env > user .env

Pre-existing process environment always wins; .env never overrides a
variable exported in the shell.
"""

from __future__ import annotations

import os
from collections.abc import Iterable
from pathlib import Path

from dotenv import dotenv_values

from .loader import get_state_dir


def _read_env(path: Path) -> dict[str, str]:
    if not path.exists():
        return {}
    values = dotenv_values(path)
    out: dict[str, str] = {}
    for k, v in values.items():
        if k is None or v is None:
            continue
        out[str(k)] = str(v)
    return out


def _default_paths(project_dir: Path | None) -> tuple[list[Path], list[Path]]:
    user_paths = [get_state_dir() / ".env"]
    project_paths: list[Path] = []
    if project_dir is not None:
        project_paths = [project_dir / ".env", project_dir / ".env.local"]
    return user_paths, project_paths


def read_layered_env(
    *,
    project_dir: Path | None = None,
    user_env_paths: Iterable[Path] | None = None,
    project_env_paths: Iterable[Path] | None = None,
) -> dict[str, str]:
    """Merge user and project .env files under the live process environment.

    Returns a new mapping; os.environ is not modified.
    """
    default_user, default_project = _default_paths(project_dir)
    if user_env_paths is None:
        user_env_paths = default_user
    if project_env_paths is None:
        project_env_paths = default_project

    merged: dict[str, str] = {}
    for p in user_env_paths:
        merged.update(_read_env(Path(p)))
    for p in project_env_paths:
        merged.update(_read_env(Path(p)))
    merged.update(os.environ)
    return merged


def load_layered_env(
    *,
    project_dir: Path | None = None,
    user_env_paths: Iterable[Path] | None = None,
    project_env_paths: Iterable[Path] | None = None,
) -> None:
    """Load variables from user + project .env files into os.environ.

    Keys already present in the process environment are left alone.
    """
    layered = read_layered_env(
        project_dir=project_dir,
        user_env_paths=user_env_paths,
        project_env_paths=project_env_paths,
    )
    for k, v in layered.items():
        if k not in os.environ:
            os.environ[k] = v
