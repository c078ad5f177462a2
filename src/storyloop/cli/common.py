"""Helpers shared by CLI commands."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import typer

from storyloop.core.config.loader import load_config
from storyloop.core.config.models import StoryloopConfig
from storyloop.core.errors import StoryloopError
from storyloop.core.prd.models import PRD
from storyloop.core.prd.store import PRDStore
from storyloop.utils.project import resolve_project_dir

from .errors import print_storyloop_error


def open_project(project: Path | None) -> tuple[Path, StoryloopConfig, PRDStore]:
    """Project dir, its config and its PRD store."""
    project_dir = resolve_project_dir(project)
    config = load_config(project_dir)
    return project_dir, config, PRDStore.for_project(project_dir, config.paths)


def load_prd_or_exit(store: PRDStore) -> PRD:
    try:
        return store.load()
    except StoryloopError as e:
        raise typer.Exit(print_storyloop_error(e)) from e


def write_json(data: Any) -> None:
    """Machine-readable output: unwrapped, no markup."""
    sys.stdout.write(json.dumps(data, indent=2, default=str))
    sys.stdout.write("\n")
