"""Decode Claude project-directory names back into real filesystem paths.

Claude flattens both ``/`` and ``_`` in a working directory to ``-`` when it
names the per-project log directory, so ``-home-me-my_app`` and
``-home-me-my-app`` collide. Decoding is a two-tier decision: names that
match none of the known-ambiguous patterns are decoded naively and
memoized; ambiguous names are verified against the ``cwd`` recorded in the
first line of one of the directory's logs, and only cached once verified.
"""
from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Iterable

from convtree import config

logger = logging.getLogger("convtree.paths")

UNKNOWN_DIRECTORY = "unknown"
SEPARATOR = "-"


class PathCache:
    """Encoded directory name -> decoded path. Entries never expire."""

    def __init__(self) -> None:
        self._entries: dict[str, str] = {}
        self._lock = threading.Lock()
        self.hits = 0

    def get(self, encoded_name: str) -> str | None:
        with self._lock:
            value = self._entries.get(encoded_name)
            if value is not None:
                self.hits += 1
            return value

    def set(self, encoded_name: str, decoded_path: str) -> None:
        with self._lock:
            self._entries.setdefault(encoded_name, decoded_path)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0

    def __len__(self) -> int:
        return len(self._entries)


def naive_decode(encoded_name: str) -> str:
    """Replace every separator with ``/``."""
    if not encoded_name:
        return UNKNOWN_DIRECTORY
    return encoded_name.replace(SEPARATOR, "/")


def read_first_line(path: Path) -> str:
    with path.open("r", encoding="utf-8") as handle:
        return handle.readline().strip()


class PathDecoder:
    def __init__(self, cache: PathCache | None = None, ambiguous_patterns: Iterable[str] | None = None) -> None:
        self.cache = cache if cache is not None else PathCache()
        patterns = config.AMBIGUOUS_PATTERNS if ambiguous_patterns is None else ambiguous_patterns
        self.ambiguous_patterns = tuple(patterns)

    def needs_verification(self, encoded_name: str) -> bool:
        return any(pattern in encoded_name for pattern in self.ambiguous_patterns)

    def decode(self, encoded_name: str, project_dir: Path | None = None) -> str:
        cached = self.cache.get(encoded_name)
        if cached is not None:
            return cached

        decoded = naive_decode(encoded_name)
        if decoded == UNKNOWN_DIRECTORY:
            return decoded

        if not self.needs_verification(encoded_name):
            self.cache.set(encoded_name, decoded)
            return decoded

        verified = self._verify(project_dir) if project_dir is not None else None
        if verified:
            self.cache.set(encoded_name, verified)
            return verified

        # Left uncached so the next scan tries verification again.
        logger.debug("Could not verify ambiguous project dir %s, using %s", encoded_name, decoded)
        return decoded

    def _verify(self, project_dir: Path) -> str | None:
        """Return the ``cwd`` from the first line of the directory's first log."""
        try:
            logs = sorted(p for p in project_dir.iterdir() if p.suffix == ".jsonl" and p.is_file())
        except OSError as exc:
            logger.warning("Cannot list %s for path verification: %s", project_dir, exc)
            return None
        if not logs:
            return None

        try:
            first_line = read_first_line(logs[0])
        except (OSError, UnicodeDecodeError) as exc:
            logger.debug("Cannot read %s for path verification: %s", logs[0], exc)
            return None
        if not first_line:
            return None

        try:
            record = json.loads(first_line)
        except json.JSONDecodeError:
            return None
        if not isinstance(record, dict):
            return None
        cwd = record.get("cwd")
        if isinstance(cwd, str) and cwd.strip():
            return cwd.strip()
        return None
