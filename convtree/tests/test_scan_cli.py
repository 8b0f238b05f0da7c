import io
import json
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path

from convtree.scripts import scan as scan_cli


class ScanCliTests(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.root = Path(tmpdir.name)
        project_dir = self.root / "projects" / "-home-me-app"
        project_dir.mkdir(parents=True)
        (project_dir / "P.jsonl").write_text(
            json.dumps({"type": "user", "uuid": "p1", "message": {"content": "Parent task"}}) + "\n",
            encoding="utf-8",
        )
        (project_dir / "C.jsonl").write_text(
            json.dumps({"type": "user", "uuid": "c1", "parentUuid": "p1", "message": {"content": "Child task"}}) + "\n",
            encoding="utf-8",
        )

    def _run(self, *args: str, cache_path: Path | None = None) -> tuple[int, str]:
        argv = [
            "--projects-dir", str(self.root / "projects"),
            "--cache-path", str(cache_path or self.root / "cache" / "tree.json"),
            "--names-path", str(self.root / "names.json"),
            *args,
        ]
        out = io.StringIO()
        with redirect_stdout(out):
            code = scan_cli.main(argv)
        return code, out.getvalue()

    def test_full_scan_then_lineage_json(self) -> None:
        code, output = self._run("--json", "full")
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(output)["totalCount"], 2)

        code, output = self._run("--json", "lineage", "C")
        self.assertEqual(code, 0)
        self.assertEqual([item["id"] for item in json.loads(output)], ["P", "C"])

    def test_tree_text_output_is_indented(self) -> None:
        self._run("full")
        code, output = self._run("tree")

        self.assertEqual(code, 0)
        self.assertIn("- Parent task [P]", output)
        self.assertIn("  - Child task [C]", output)

    def test_tree_can_hide_agent_conversations(self) -> None:
        (self.root / "projects" / "-home-me-app" / "A.jsonl").write_text(
            json.dumps({"type": "user", "uuid": "a1", "parentUuid": "c1", "agentId": "a3f2", "message": {"content": "Agent task"}})
            + "\n",
            encoding="utf-8",
        )
        self._run("full")

        _, shown = self._run("tree")
        code, hidden = self._run("tree", "--hide-sidechains")

        self.assertEqual(code, 0)
        self.assertIn("Agent task [A]", shown)
        self.assertNotIn("[A]", hidden)
        self.assertIn("  - Child task [C]", hidden)

    def test_unwritable_cache_location_exits_non_zero(self) -> None:
        blocker = self.root / "blocker"
        blocker.write_text("x", encoding="utf-8")

        code, _ = self._run("scan", cache_path=blocker / "cache.json")

        self.assertEqual(code, 1)

    def test_analyze_reports_records(self) -> None:
        code, output = self._run("--json", "analyze")

        self.assertEqual(code, 0)
        self.assertEqual(json.loads(output)["records"], 2)


if __name__ == "__main__":
    unittest.main()
