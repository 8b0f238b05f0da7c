"""Enumerate conversation log files across Claude project directories."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import NamedTuple

logger = logging.getLogger("convtree.parser")

LOG_SUFFIX = ".jsonl"


class LogFileRef(NamedTuple):
    path: Path
    encoded_dir: str

    @property
    def conversation_id(self) -> str:
        return self.path.stem


def enumerate_log_files(projects_dir: Path) -> list[LogFileRef]:
    """Return every ``(log path, encoded directory name)`` pair under *projects_dir*.

    A missing root yields an empty list. Unreadable project directories are
    logged and skipped.
    """
    refs: list[LogFileRef] = []
    try:
        project_dirs = sorted(projects_dir.iterdir())
    except FileNotFoundError:
        return refs
    except OSError as exc:
        logger.warning("Cannot read projects directory %s: %s", projects_dir, exc)
        return refs

    for project_dir in project_dirs:
        try:
            if not project_dir.is_dir():
                continue
            entries = sorted(project_dir.iterdir())
        except OSError as exc:
            logger.warning("Skipping unreadable project directory %s: %s", project_dir, exc)
            continue

        for entry in entries:
            if entry.suffix != LOG_SUFFIX:
                continue
            try:
                if not entry.is_file():
                    continue
            except OSError:
                continue
            refs.append(LogFileRef(entry, project_dir.name))

    return refs
