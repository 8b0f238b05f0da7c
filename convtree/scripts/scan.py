#!/usr/bin/env python3
"""Scan Claude conversation logs and inspect the conversation tree.

Usage:
  convtree scan                 # incremental scan
  convtree full                 # full rescan with parent resolution
  convtree tree [--hide-sidechains]
  convtree lineage <id>
  convtree analyze              # field/structure report over all logs

Pass --json before the command for machine-readable output.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from convtree import config
from convtree.db.cache_store import CacheStore, CacheStoreError
from convtree.db.scan_engine import ScanEngine, ScanError
from convtree.models import ConversationNode
from convtree.name_store import NameStore
from convtree.scripts.analyze_structure import analyze_corpus, format_report

logger = logging.getLogger("convtree.cli")


def _print_tree(nodes: list[ConversationNode]) -> None:
    stack = [(node, 0) for node in reversed(nodes)]
    while stack:
        node, depth = stack.pop()
        label = (node.displayName or node.id).splitlines()[0][:80]
        print(f"{'  ' * depth}- {label} [{node.id}]")
        stack.extend((child, depth + 1) for child in reversed(node.nodes))


async def _run(args: argparse.Namespace, engine: ScanEngine) -> int:
    if args.command == "scan":
        result = await engine.scan_incremental(trigger="cli")
    elif args.command == "full":
        result = await engine.scan_full(trigger="cli")
    elif args.command == "tree":
        forest = await engine.get_tree(include_sidechains=not args.hide_sidechains)
        if args.json:
            print(json.dumps([node.model_dump() for node in forest], indent=2))
        else:
            _print_tree(forest)
        return 0
    elif args.command == "lineage":
        chain = await engine.get_lineage(args.conversation_id)
        if args.json:
            print(json.dumps([meta.model_dump() for meta in chain], indent=2))
        elif not chain:
            print(f"Unknown conversation: {args.conversation_id}")
        else:
            for depth, meta in enumerate(chain):
                print(f"{'  ' * depth}{meta.display_name.splitlines()[0][:80]} [{meta.id}]")
        return 0
    else:
        report = await asyncio.to_thread(analyze_corpus, engine.projects_dir)
        print(json.dumps(report, indent=2) if args.json else format_report(report))
        return 0

    if args.json:
        print(result.model_dump_json(indent=2))
    else:
        print(", ".join(f"{key}={value}" for key, value in result.model_dump().items() if value is not None))
    if not result.persisted:
        logger.error("Cache could not be written: %s", result.persistenceError)
        return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Claude conversation tree scanner")
    parser.add_argument("--projects-dir", type=Path, default=config.PROJECTS_DIR)
    parser.add_argument("--cache-path", type=Path, default=config.CACHE_PATH)
    parser.add_argument("--names-path", type=Path, default=config.NAMES_PATH)
    parser.add_argument("--json", action="store_true", help="Emit JSON output")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("scan", help="Incremental scan (only new/removed files are parsed)")
    sub.add_parser("full", help="Full rescan of all conversations")
    tree_parser = sub.add_parser("tree", help="Display the cached conversation tree")
    tree_parser.add_argument("--hide-sidechains", action="store_true", help="Leave out sidechain/agent conversations")
    lineage_parser = sub.add_parser("lineage", help="Show the lineage of one conversation")
    lineage_parser.add_argument("conversation_id")
    sub.add_parser("analyze", help="Report record types and field paths across all logs")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    store = CacheStore(args.cache_path)
    try:
        store.ensure_directory()
    except CacheStoreError as exc:
        logger.error(str(exc))
        return 1

    engine = ScanEngine(
        projects_dir=args.projects_dir,
        cache_store=store,
        name_store=NameStore(args.names_path),
    )
    try:
        return asyncio.run(_run(args, engine))
    except ScanError as exc:
        logger.error(str(exc))
        return 1


if __name__ == "__main__":
    sys.exit(main())
