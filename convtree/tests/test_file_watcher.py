import unittest
from pathlib import Path

from watchfiles import Change

from convtree.db.file_watcher import FileWatcher


class FileWatcherTests(unittest.TestCase):
    def test_only_conversation_logs_are_classified(self) -> None:
        watcher = FileWatcher()
        classified = watcher._classify_changes(
            {
                (Change.added, "/p/-a/new.jsonl"),
                (Change.modified, "/p/-a/notes.md"),
                (Change.deleted, "/p/-a/old.jsonl"),
            }
        )

        self.assertEqual(
            sorted(classified),
            [("added", Path("/p/-a/new.jsonl")), ("deleted", Path("/p/-a/old.jsonl"))],
        )

    def test_additions_scan_immediately_and_appends_are_throttled(self) -> None:
        watcher = FileWatcher(modified_interval=30.0)
        modified = [("modified", Path("/p/-a/c.jsonl"))]
        added = [("added", Path("/p/-a/d.jsonl"))]

        self.assertFalse(watcher.should_scan([], now=100.0))
        self.assertTrue(watcher.should_scan(added, now=100.0))
        self.assertFalse(watcher.should_scan(modified, now=110.0))
        self.assertTrue(watcher.should_scan(added, now=111.0))
        self.assertTrue(watcher.should_scan(modified, now=141.0))
        self.assertFalse(watcher.should_scan(modified, now=150.0))


class FileWatcherLifecycleTests(unittest.IsolatedAsyncioTestCase):
    async def test_missing_projects_dir_stops_quietly(self) -> None:
        watcher = FileWatcher()

        await watcher.start(object(), Path("/definitely/not/here/projects"))
        await watcher._task
        self.assertFalse(watcher.is_running)
        await watcher.stop()


if __name__ == "__main__":
    unittest.main()
