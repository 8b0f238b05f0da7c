"""File watcher service using watchfiles.

Monitors the Claude projects root and triggers an incremental scan when
conversation logs are added, removed or appended to.
"""
from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Optional

from watchfiles import Change, awatch

from convtree.parsers.projects import LOG_SUFFIX

logger = logging.getLogger("convtree.watcher")


class FileWatcher:
    """Background file watcher that triggers incremental scans on change.

    Additions and deletions scan right away. Appends to existing logs only
    refresh size/mtime, so they are throttled to one scan per
    ``modified_interval`` seconds.
    """

    def __init__(self, modified_interval: float = 30.0):
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._stop_event: Optional[asyncio.Event] = None
        self.modified_interval = modified_interval
        self._last_modified_scan = 0.0

    async def start(self, scan_engine, projects_dir: Path) -> None:
        """Start watching the projects root in a background task."""
        if self._running:
            logger.warning("File watcher already running")
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._watch_loop(scan_engine, projects_dir))
        logger.info(f"File watcher started for {projects_dir}")

    async def stop(self) -> None:
        """Stop the file watcher."""
        self._running = False
        if self._stop_event:
            self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("File watcher stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _watch_loop(self, scan_engine, projects_dir: Path) -> None:
        if not projects_dir.exists():
            logger.warning(f"Projects directory {projects_dir} does not exist, watcher has nothing to monitor")
            self._running = False
            return

        logger.info(f"Watching {projects_dir}")
        try:
            async for changes in awatch(projects_dir, stop_event=self._stop_event):
                if not self._running:
                    break
                if not self.should_scan(self._classify_changes(changes)):
                    continue
                logger.info("Detected conversation log changes, running incremental scan...")
                try:
                    await scan_engine.scan_incremental(trigger="watcher")
                except Exception as e:
                    logger.error(f"Error scanning changed conversations: {e}")
        except asyncio.CancelledError:
            logger.info("File watcher task cancelled")
        except Exception as e:
            logger.error(f"File watcher error: {e}")
        finally:
            self._running = False

    def _classify_changes(self, changes: set[tuple[Change, str]]) -> list[tuple[str, Path]]:
        """Classify raw watchfiles changes into (change_type, path) pairs.

        Only conversation logs are returned.
        """
        result = []
        for change_type, path_str in changes:
            path = Path(path_str)
            if path.suffix != LOG_SUFFIX:
                continue

            if change_type == Change.deleted:
                result.append(("deleted", path))
            elif change_type == Change.added:
                result.append(("added", path))
            elif change_type == Change.modified:
                result.append(("modified", path))

        return result

    def should_scan(self, classified: list[tuple[str, Path]], now: float | None = None) -> bool:
        if not classified:
            return False
        now = time.monotonic() if now is None else now
        if any(change_type != "modified" for change_type, _ in classified):
            self._last_modified_scan = now
            return True
        if now - self._last_modified_scan >= self.modified_interval:
            self._last_modified_scan = now
            return True
        return False


# Singleton instance
file_watcher = FileWatcher()
