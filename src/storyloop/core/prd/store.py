"""
PRD persistence: validated load, atomic save, archive and backups.

The live PRD is validated in full before anything mutates it; a file that
fails validation raises MalformedPRDError and is left untouched on disk.
Saves go through a temp file and os.replace so a crash never leaves a
half-written PRD.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from storyloop.core.config.models import PathsConfig
from storyloop.core.errors import MalformedPRDError, StoryloopError, StoryNotFoundError

from .models import PRD

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = "_completed_prd.json"
ARCHIVE_TIMESTAMP_FORMAT = "%Y-%m-%dT%H-%M-%S"
BACKUP_PREFIX = "prd_"
BACKUP_LATEST = "prd_latest.json"
BACKUP_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S-%f"


@dataclass(frozen=True)
class BackupInfo:
    """A PRD backup on disk."""

    name: str
    path: Path
    created_at: datetime
    size_bytes: int


def write_json_atomic(path: Path, data: dict[str, Any]) -> None:
    """Write JSON to ``path`` via a temp file in the same directory."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}_", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.write("\n")
        os.replace(temp_path, path)
    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


def parse_prd(data: Any, source: Path) -> PRD:
    """Validate raw JSON data as a PRD or raise MalformedPRDError."""
    if not isinstance(data, dict):
        raise MalformedPRDError(str(source), "PRD must be a JSON object")
    try:
        return PRD.model_validate(data)
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()[:5]
        )
        raise MalformedPRDError(str(source), errors) from e


class PRDStore:
    """
    Reads and writes one project's PRD file.

    Example:
        >>> store = PRDStore(Path("prd.json"))
        >>> prd = store.load()
        >>> prd.user_stories[0].passes = True
        >>> store.save(prd)
    """

    def __init__(
        self,
        path: Path,
        *,
        archive_dir_name: str = ".archive",
        backup_dir: Path | None = None,
        backup_limit: int = 20,
    ) -> None:
        self.path = Path(path)
        self.archive_dir = self.path.parent / archive_dir_name
        self.backup_dir = backup_dir or (self.path.parent / ".storyloop" / "backups")
        self.backup_limit = backup_limit

    @classmethod
    def for_project(cls, project_dir: Path, paths: PathsConfig | None = None) -> PRDStore:
        """Store for the PRD in ``project_dir``, laid out per ``paths``."""
        paths = paths or PathsConfig()
        return cls(
            project_dir / paths.prd_filename,
            archive_dir_name=paths.archive_dir_name,
            backup_dir=project_dir / paths.state_dir_name / "backups",
            backup_limit=paths.backup_limit,
        )

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> PRD:
        """
        Load and validate the PRD.

        Raises:
            MalformedPRDError: If the file is missing, not JSON, or invalid.
        """
        try:
            with self.path.open(encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError as e:
            raise MalformedPRDError(str(self.path), "file not found") from e
        except json.JSONDecodeError as e:
            raise MalformedPRDError(str(self.path), f"invalid JSON: {e}") from e
        except OSError as e:
            raise MalformedPRDError(str(self.path), str(e)) from e
        return parse_prd(data, self.path)

    def save(self, prd: PRD) -> None:
        """Persist the PRD atomically."""
        write_json_atomic(self.path, prd.to_json_dict())
        logger.debug("Saved PRD %s", self.path)

    # ------------------------------------------------------------------
    # Archive
    # ------------------------------------------------------------------

    def archive(self, now: datetime | None = None) -> Path:
        """
        Copy the live PRD into the archive directory.

        The live file is left in place and unchanged. The copy is named
        ``<timestamp>_completed_prd.json``.
        """
        now = now or datetime.now()
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        stamp = now.strftime(ARCHIVE_TIMESTAMP_FORMAT)
        target = self.archive_dir / f"{stamp}{ARCHIVE_SUFFIX}"
        counter = 1
        while target.exists():
            target = self.archive_dir / f"{stamp}-{counter}{ARCHIVE_SUFFIX}"
            counter += 1
        shutil.copy2(self.path, target)
        logger.info("Archived completed PRD to %s", target)
        return target

    def list_archives(self) -> list[Path]:
        if not self.archive_dir.is_dir():
            return []
        return sorted(self.archive_dir.glob(f"*{ARCHIVE_SUFFIX}"))

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def create_backup(self, now: datetime | None = None) -> Path | None:
        """
        Snapshot the live PRD into the backup directory.

        Also refreshes ``prd_latest.json`` and prunes old backups beyond
        ``backup_limit``. Returns None when there is no PRD to back up.
        """
        if not self.exists():
            return None
        now = now or datetime.now()
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        target = self.backup_dir / f"{BACKUP_PREFIX}{now.strftime(BACKUP_TIMESTAMP_FORMAT)}.json"
        shutil.copy2(self.path, target)
        shutil.copy2(self.path, self.backup_dir / BACKUP_LATEST)
        self._prune_backups()
        logger.debug("Backed up PRD to %s", target)
        return target

    def _timestamped_backups(self) -> list[Path]:
        if not self.backup_dir.is_dir():
            return []
        return sorted(
            p
            for p in self.backup_dir.glob(f"{BACKUP_PREFIX}*.json")
            if p.name != BACKUP_LATEST
        )

    def _prune_backups(self) -> None:
        backups = self._timestamped_backups()
        excess = len(backups) - self.backup_limit
        for old in backups[: max(0, excess)]:
            try:
                old.unlink()
            except OSError as e:
                logger.warning("Could not remove old backup %s: %s", old, e)

    def list_backups(self) -> list[BackupInfo]:
        """Backups, newest first."""
        infos: list[BackupInfo] = []
        for path in reversed(self._timestamped_backups()):
            stat = path.stat()
            infos.append(
                BackupInfo(
                    name=path.name,
                    path=path,
                    created_at=datetime.fromtimestamp(stat.st_mtime),
                    size_bytes=stat.st_size,
                )
            )
        return infos

    def restore_backup(self, name: str | None = None) -> Path:
        """
        Restore the PRD from a backup (latest when ``name`` is None).

        The backup is validated first; a malformed backup raises
        MalformedPRDError and the live PRD is not touched.
        """
        source = self.backup_dir / (name or BACKUP_LATEST)
        if source.parent != self.backup_dir or not source.is_file():
            raise StoryloopError(f"Backup '{name or BACKUP_LATEST}' not found")
        try:
            data = json.loads(source.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise MalformedPRDError(str(source), str(e)) from e
        prd = parse_prd(data, source)
        self.save(prd)
        logger.info("Restored PRD from %s", source)
        return source

    # ------------------------------------------------------------------
    # External completion signal
    # ------------------------------------------------------------------

    def mark_story_complete(self, story_id: str) -> PRD:
        """
        Explicitly mark a story complete.

        This is the only way a story with legacy string criteria becomes
        ``passes: true``. A testable story is accepted only if all of its
        criteria already pass.

        Raises:
            StoryNotFoundError: If the story is not in the PRD.
            StoryloopError: If a testable story has failing criteria.
        """
        prd = self.load()
        story = prd.get_story(story_id)
        if story is None:
            raise StoryNotFoundError(story_id)
        if story.is_testable:
            if not all(c.passes for c in story.criteria):
                failing = [c.id for c in story.criteria if not c.passes]
                raise StoryloopError(
                    f"Story '{story_id}' has failing criteria: {', '.join(failing)}"
                )
        story.passes = True
        self.save(prd)
        logger.info("Story %s marked complete by external signal", story_id)
        return prd
