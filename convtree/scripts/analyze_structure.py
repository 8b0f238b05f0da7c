#!/usr/bin/env python3
"""Report the record structure found across Claude conversation logs.

Counts record types, every dotted field path observed (list items appear as
``[]``), and how many records carry linkage fields such as ``leafUuid`` and
``parentUuid``. Useful when the log format changes underneath the scanner.

Usage:
  python -m convtree.scripts.analyze_structure [--projects-dir DIR] [--json]
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from collections import Counter
from pathlib import Path
from typing import Any, Iterable

from convtree import config
from convtree.parsers.projects import enumerate_log_files

logger = logging.getLogger("convtree.analyze")

LINKAGE_FIELDS = ("uuid", "parentUuid", "leafUuid", "sessionId", "cwd", "isSidechain")
EXAMPLE_LIMIT = 60


def iter_field_paths(value: Any) -> Iterable[tuple[str, str]]:
    """Yield ``(path, type_name)`` for every nested field of ``value``."""
    stack: list[tuple[str, Any]] = [("", value)]
    while stack:
        prefix, current = stack.pop()
        if isinstance(current, dict):
            for key, child in current.items():
                path = f"{prefix}.{key}" if prefix else str(key)
                yield path, type(child).__name__
                stack.append((path, child))
        elif isinstance(current, list):
            path = f"{prefix}[]"
            for child in current:
                yield path, type(child).__name__
                stack.append((path, child))


def analyze_records(records: Iterable[dict], report: dict | None = None) -> dict:
    report = report if report is not None else _empty_report()
    record_types: Counter = report["recordTypes"]
    field_paths: Counter = report["fieldPaths"]
    linkage: Counter = report["linkage"]

    for record in records:
        report["records"] += 1
        record_types[str(record.get("type") or "unknown")] += 1
        for field in LINKAGE_FIELDS:
            if record.get(field) not in (None, ""):
                linkage[field] += 1
        seen: set[str] = set()
        for path, type_name in iter_field_paths(record):
            key = f"{path}:{type_name}"
            if key in seen:
                continue
            seen.add(key)
            field_paths[key] += 1
    return report


def _empty_report() -> dict:
    return {
        "files": 0,
        "records": 0,
        "malformedLines": 0,
        "recordTypes": Counter(),
        "fieldPaths": Counter(),
        "linkage": Counter(),
    }


def _iter_json_lines(path: Path, report: dict) -> Iterable[dict]:
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                report["malformedLines"] += 1
                continue
            if isinstance(parsed, dict):
                yield parsed
            else:
                report["malformedLines"] += 1


def analyze_corpus(projects_dir: Path) -> dict:
    """Analyze every log under ``projects_dir`` and return a JSON-ready report."""
    report = _empty_report()
    for ref in enumerate_log_files(projects_dir):
        try:
            analyze_records(_iter_json_lines(ref.path, report), report)
        except OSError as exc:
            logger.warning("Could not read %s: %s", ref.path, exc)
            continue
        report["files"] += 1

    return {
        "projectsDir": str(projects_dir),
        "files": report["files"],
        "records": report["records"],
        "malformedLines": report["malformedLines"],
        "recordTypes": dict(report["recordTypes"].most_common()),
        "linkage": dict(report["linkage"].most_common()),
        "fieldPaths": dict(report["fieldPaths"].most_common(EXAMPLE_LIMIT)),
    }


def format_report(report: dict) -> str:
    lines = [
        f"Projects dir: {report['projectsDir']}",
        f"Files: {report['files']}  Records: {report['records']}  Malformed lines: {report['malformedLines']}",
        "",
        "Record types:",
    ]
    lines.extend(f"  {name:<24} {count}" for name, count in report["recordTypes"].items())
    lines.append("")
    lines.append("Linkage fields:")
    lines.extend(f"  {name:<24} {count}" for name, count in report["linkage"].items())
    lines.append("")
    lines.append("Most common field paths:")
    lines.extend(f"  {name:<48} {count}" for name, count in report["fieldPaths"].items())
    return "\n".join(lines)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Analyze conversation log structure")
    parser.add_argument("--projects-dir", type=Path, default=config.PROJECTS_DIR)
    parser.add_argument("--json", action="store_true")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    report = analyze_corpus(args.projects_dir)
    print(json.dumps(report, indent=2) if args.json else format_report(report))
    return 0


if __name__ == "__main__":
    sys.exit(main())
