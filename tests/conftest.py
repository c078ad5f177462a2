"""
Pytest configuration and shared fixtures.

Provides fixtures for an isolated storyloop home, sample PRDs in both the
testable and legacy shapes, and fake CLI executables written to tmp_path.
"""

import json
import os
import stat
from pathlib import Path
from typing import Any

import pytest

from storyloop.core.config.loader import clear_cache
from storyloop.core.prd.models import PRD
from storyloop.core.prd.store import PRDStore

# ==============================================================================
# Environment Isolation
# ==============================================================================


@pytest.fixture(autouse=True)
def storyloop_home(tmp_path, monkeypatch):
    """
    Point the global state dir at a temp directory for every test.

    Keeps learning data, quota snapshots and settings out of the real
    home directory, and resets the config cache.
    """
    home = tmp_path / "storyloop-home"
    home.mkdir()
    monkeypatch.setenv("STORYLOOP_HOME", str(home))
    for var in (
        "STORYLOOP_MODE",
        "STORYLOOP_HEALTH_TIMEOUT",
        "STORYLOOP_VERIFY_TIMEOUT",
        "STORYLOOP_VERIFY_PARALLEL",
        "STORYLOOP_ATTEMPT_TIMEOUT",
        "LM_STUDIO_URL",
        "STORYLOOP_IGNORE_API_STATUS",
    ):
        monkeypatch.delenv(var, raising=False)
    clear_cache()
    yield home
    clear_cache()


# ==============================================================================
# Sample Data Fixtures
# ==============================================================================


@pytest.fixture
def sample_prd_dict() -> dict[str, Any]:
    """A PRD with one testable story and one legacy story."""
    return {
        "project": "demo",
        "branchName": "feature/demo",
        "cli": "claude",
        "userStories": [
            {
                "id": "US-001",
                "title": "Add health endpoint",
                "description": "Expose GET /health returning 200",
                "complexity": "simple",
                "passes": False,
                "acceptanceCriteria": [
                    {"id": "AC-1", "text": "returns 200", "testCommand": "true", "passes": False},
                    {"id": "AC-2", "text": "has body", "testCommand": "true", "passes": False},
                ],
            },
            {
                "id": "US-002",
                "title": "Write README",
                "description": "Document setup",
                "passes": False,
                "acceptanceCriteria": ["README explains setup"],
            },
        ],
    }


@pytest.fixture
def sample_prd(sample_prd_dict) -> PRD:
    return PRD.model_validate(sample_prd_dict)


@pytest.fixture
def project_dir(tmp_path, sample_prd_dict) -> Path:
    """
    A project directory holding prd.json.

    Creates:
    - prd.json (sample_prd_dict)
    - .git/ directory
    """
    project = tmp_path / "project"
    project.mkdir()
    (project / ".git").mkdir()
    (project / "prd.json").write_text(json.dumps(sample_prd_dict, indent=2))
    return project


@pytest.fixture
def prd_store(project_dir) -> PRDStore:
    return PRDStore.for_project(project_dir)


# ==============================================================================
# Fake Executables
# ==============================================================================


@pytest.fixture
def bin_dir(tmp_path) -> Path:
    path = tmp_path / "bin"
    path.mkdir()
    return path


@pytest.fixture
def make_script(bin_dir):
    """
    Factory writing executable /bin/sh scripts into bin_dir.

    Usage:
        def test_something(make_script):
            path = make_script("claude", 'echo "hi"\n')
    """

    def factory(name: str, body: str) -> Path:
        script = bin_dir / name
        script.write_text("#!/bin/sh\n" + body)
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return script

    return factory


@pytest.fixture
def fake_path(bin_dir, monkeypatch):
    """Put bin_dir first on PATH so fake CLIs shadow real ones."""
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    return bin_dir
