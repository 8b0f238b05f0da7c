import asyncio
import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from convtree.db.cache_store import CacheStore, CacheStoreError
from convtree.db import scan_engine
from convtree.db.scan_engine import ScanEngine, ScanError
from convtree.name_store import NameStore
from convtree.path_decoder import PathCache


class ScanEngineTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.root = Path(tmpdir.name)
        self.projects_dir = self.root / "projects"
        self.projects_dir.mkdir()
        self.cache_path = self.root / "state" / "conversation-tree-cache.json"
        self.store = CacheStore(self.cache_path)

    def _engine(self, with_names: bool = False) -> ScanEngine:
        return ScanEngine(
            projects_dir=self.projects_dir,
            cache_store=self.store,
            path_cache=PathCache(),
            name_store=NameStore(self.root / "names.json") if with_names else None,
        )

    def _write_log(self, conversation_id: str, records: list[dict], project: str = "-home-me-app") -> Path:
        project_dir = self.projects_dir / project
        project_dir.mkdir(exist_ok=True)
        path = project_dir / f"{conversation_id}.jsonl"
        path.write_text("\n".join(json.dumps(record) for record in records) + "\n", encoding="utf-8")
        return path

    def _user(self, record_id: str, text: str, parent: str | None = None, **extra) -> dict:
        record = {"type": "user", "uuid": record_id, "message": {"role": "user", "content": text}}
        if parent:
            record["parentUuid"] = parent
        record.update(extra)
        return record

    def _cache_document(self) -> dict:
        data = json.loads(self.cache_path.read_text(encoding="utf-8"))
        data.pop("lastScanTimestamp", None)
        return data

    async def test_incremental_scan_twice_is_idempotent(self) -> None:
        self._write_log("A", [self._user("a1", "first")])
        self._write_log("B", [self._user("b1", "second")], project="-home-me-other")
        engine = self._engine()

        first = await engine.scan_incremental()
        snapshot = self._cache_document()
        second = await engine.scan_incremental()

        self.assertEqual((first.updatedCount, first.totalCount), (2, 2))
        self.assertEqual((second.updatedCount, second.deletedCount, second.totalCount), (0, 0, 2))
        self.assertEqual(self._cache_document(), snapshot)
        self.assertEqual(snapshot["knownIds"], ["A", "B"])

    async def test_deleted_log_is_dropped_from_cache(self) -> None:
        for conversation_id in ("A", "B", "C"):
            self._write_log(conversation_id, [self._user(f"{conversation_id}1", conversation_id)])
        engine = self._engine()
        await engine.scan_incremental()

        (self.projects_dir / "-home-me-app" / "B.jsonl").unlink()
        result = await engine.scan_incremental()

        document = self._cache_document()
        self.assertEqual(result.deletedCount, 1)
        self.assertEqual(document["knownIds"], ["A", "C"])
        self.assertNotIn("B", document["conversations"])

    async def test_incremental_refresh_keeps_content_fields(self) -> None:
        path = self._write_log("A", [self._user("a1", "original title")])
        engine = self._engine()
        await engine.scan_incremental()

        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(self._user("a2", "appended", parent="a1")) + "\n")
        await engine.scan_incremental()

        meta = await engine.get_conversation("A")
        self.assertEqual(meta.title, "original title")
        self.assertEqual(meta.recordCount, 1)
        self.assertEqual(meta.fileSizeBytes, path.stat().st_size)

    async def test_incremental_scan_links_new_conversation_by_leaf_only(self) -> None:
        self._write_log("P", [self._user("p1", "parent"), {"type": "assistant", "uuid": "p2", "leafUuid": "leaf-p"}])
        engine = self._engine()
        await engine.scan_incremental()

        self._write_log("C", [{"type": "summary", "summary": "Prior work", "leafUuid": "leaf-p"}])
        self._write_log("R", [self._user("r1", "refers to parent record", parent="p1")])
        result = await engine.scan_incremental()

        self.assertEqual(result.updatedCount, 2)
        self.assertEqual((await engine.get_conversation("C")).parentId, "P")
        self.assertIsNone((await engine.get_conversation("R")).parentId)
        self.assertEqual((await engine.get_conversation("P")).children, ["C"])

    async def test_full_scan_resolves_parents_and_keeps_forest_invariant(self) -> None:
        self._write_log("Y", [self._user("y1", "parent conversation")])
        self._write_log("Z", [self._user("z1", "leaf decoy"), {"type": "assistant", "uuid": "z2", "leafUuid": "leaf-z"}])
        self._write_log(
            "X",
            [
                {"type": "summary", "summary": "Continuing", "leafUuid": "leaf-z"},
                self._user("x1", "child", parent="y1"),
                {"type": "assistant", "uuid": "x2", "parentUuid": "x1", "leafUuid": "leaf-x"},
            ],
        )
        engine = self._engine()

        result = await engine.scan_full()

        self.assertEqual(result.totalCount, 3)
        self.assertTrue(result.persisted)
        document = self._cache_document()
        conversations = document["conversations"]
        self.assertEqual(conversations["X"]["parentId"], "Y")
        self.assertEqual(conversations["Y"]["children"], ["X"])
        for conversation_id, meta in conversations.items():
            for child_id in meta["children"]:
                self.assertEqual(conversations[child_id]["parentId"], conversation_id)
            seen = set()
            current = conversation_id
            while current:
                self.assertNotIn(current, seen)
                seen.add(current)
                current = conversations[current]["parentId"]

        tree = await engine.get_tree()
        self.assertEqual(sorted(node.id for node in tree), ["Y", "Z"])
        lineage = await engine.get_lineage("X")
        self.assertEqual([meta.id for meta in lineage], ["Y", "X"])

    async def test_corrupt_cache_recovers_with_full_scan(self) -> None:
        self._write_log("A", [self._user("a1", "hello")])
        self.cache_path.parent.mkdir(parents=True)
        self.cache_path.write_text("{definitely not json", encoding="utf-8")

        self.assertEqual(self.store.load().knownIds, [])
        result = await self._engine().scan_full()

        self.assertTrue(result.persisted)
        self.assertEqual(self._cache_document()["knownIds"], ["A"])

    async def test_concurrent_incremental_requests_share_one_execution(self) -> None:
        self._write_log("A", [self._user("a1", "hello")])
        engine = self._engine()
        original = engine._incremental_sync
        calls = []

        def counting_sync():
            calls.append(1)
            return original()

        engine._incremental_sync = counting_sync

        first, second = await asyncio.gather(engine.scan_incremental(), engine.scan_incremental())

        self.assertEqual(len(calls), 1)
        self.assertIs(first, second)
        operations = await engine.list_operations()
        self.assertEqual(len(operations), 1)
        self.assertEqual(operations[0]["status"], "completed")

        await engine.scan_incremental()
        self.assertEqual(len(calls), 2)

    async def test_save_failure_reports_unpersisted_result_but_tree_is_available(self) -> None:
        self._write_log("A", [self._user("a1", "hello")])
        engine = self._engine()

        with patch.object(self.store, "save", side_effect=CacheStoreError("read-only filesystem")):
            result = await engine.scan_full()

        self.assertFalse(result.persisted)
        self.assertEqual(result.persistenceError, "read-only filesystem")
        self.assertEqual([node.id for node in await engine.get_tree()], ["A"])
        operations = await engine.list_operations()
        self.assertEqual(operations[0]["status"], "completed_unsaved")

    async def test_unexpected_failure_raises_scan_error(self) -> None:
        engine = self._engine()

        with patch.object(engine, "_full_sync", side_effect=RuntimeError("boom")):
            with self.assertRaises(ScanError):
                await engine.scan_full()

        operations = await engine.list_operations()
        self.assertEqual(operations[0]["status"], "failed")
        self.assertIn("boom", operations[0]["error"])

    async def test_custom_name_survives_both_scan_modes(self) -> None:
        self._write_log("A", [self._user("a1", "hello")])
        engine = self._engine(with_names=True)
        await engine.scan_incremental()

        renamed = await engine.set_custom_name("A", "  My rename ")
        self.assertEqual(renamed.customName, "My rename")
        self.assertIsNone(await engine.set_custom_name("missing", "x"))

        await engine.scan_full()
        self.assertEqual((await engine.get_conversation("A")).customName, "My rename")
        await engine.scan_incremental()
        self.assertEqual((await engine.get_conversation("A")).customName, "My rename")
        self.assertEqual(engine.name_store.get_name("A"), "My rename")

        await engine.set_custom_name("A", None)
        self.assertIsNone((await engine.get_conversation("A")).customName)
        self.assertIsNone(engine.name_store.get_name("A"))

    async def test_full_scan_carries_cached_name_without_name_store(self) -> None:
        self._write_log("A", [self._user("a1", "hello")])
        engine = self._engine()
        await engine.scan_full()
        await engine.set_custom_name("A", "Kept")

        await self._engine().scan_full()

        self.assertEqual(self._cache_document()["conversations"]["A"]["customName"], "Kept")

    async def test_full_scan_links_sibling_continuations_to_their_origin(self) -> None:
        self._write_log("p", [self._user("p1", "origin"), {"type": "assistant", "uuid": "p2", "leafUuid": "leaf-origin"}])
        self._write_log("a", [{"type": "summary", "summary": "Resumed once", "leafUuid": "leaf-origin"}])
        self._write_log("b", [{"type": "summary", "summary": "Resumed twice", "leafUuid": "leaf-origin"}])
        engine = self._engine()

        await engine.scan_full()

        conversations = self._cache_document()["conversations"]
        self.assertEqual(conversations["a"]["parentId"], "p")
        self.assertEqual(conversations["b"]["parentId"], "p")
        self.assertEqual(sorted(conversations["p"]["children"]), ["a", "b"])

    async def test_full_scan_keeps_entry_for_unreadable_log(self) -> None:
        self._write_log("A", [self._user("a1", "parent")])
        self._write_log("B", [self._user("b1", "child", parent="a1")])
        engine = self._engine()
        await engine.scan_full()

        original_parse = scan_engine.parse_conversation_file

        def failing_for_a(path, **kwargs):
            if path.stem == "A":
                return None
            return original_parse(path, **kwargs)

        with patch.object(scan_engine, "parse_conversation_file", side_effect=failing_for_a):
            result = await engine.scan_full()

        document = self._cache_document()
        self.assertEqual(result.totalCount, 2)
        self.assertEqual(document["knownIds"], ["A", "B"])
        self.assertEqual(document["conversations"]["A"]["title"], "parent")
        self.assertEqual(document["conversations"]["B"]["parentId"], "A")
        self.assertEqual(document["conversations"]["A"]["children"], ["B"])

    async def test_full_scan_reverifies_ambiguous_directory(self) -> None:
        project = "-home-me-my--app"
        self._write_log("A", [self._user("a1", "hello", cwd="/home/me/my_app")], project=project)
        engine = self._engine()
        await engine.scan_full()
        self.assertEqual((await engine.get_conversation("A")).sourceDirectory, "/home/me/my_app")

        self._write_log("A", [self._user("a1", "hello", cwd="/home/me/my-_app")], project=project)
        await engine.scan_full()

        self.assertEqual((await engine.get_conversation("A")).sourceDirectory, "/home/me/my-_app")

    async def test_missing_projects_dir_yields_empty_cache(self) -> None:
        self.projects_dir.rmdir()
        result = await self._engine().scan_incremental()

        self.assertEqual(result.totalCount, 0)
        self.assertTrue(result.persisted)
        self.assertEqual(self._cache_document()["knownIds"], [])

    async def test_status_reports_counts(self) -> None:
        self._write_log("A", [self._user("a1", "hello")])
        engine = self._engine()
        await engine.scan_full(trigger="test")

        status = await engine.get_status()

        self.assertEqual(status["conversationCount"], 1)
        self.assertFalse(status["scanInProgress"])
        self.assertEqual(status["lastResults"]["full"]["trigger"], "test")
        self.assertEqual(status["activeOperations"], [])


if __name__ == "__main__":
    unittest.main()
