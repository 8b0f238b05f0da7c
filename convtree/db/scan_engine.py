"""Incremental and full conversation scan orchestration.

Enumerates conversation logs on disk, diffs them against the cached id
set, parses only what changed (incremental) or everything (full), resolves
parent links and rebuilds the forest before saving the cache.

Scans never run concurrently: the whole load-mutate-save cycle holds one
lock, and concurrent requests for the same mode share a single in-flight
execution and its result.
"""
from __future__ import annotations

import asyncio
import copy
import functools
import logging
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from convtree import config
from convtree.date_utils import utc_now_iso
from convtree.db.cache_store import CacheStore, CacheStoreError
from convtree.lineage import (
    CrossReferenceIndex,
    build_forest,
    build_leaf_index,
    lineage,
    rebuild_children,
    resolve_by_leaf,
    resolve_parents,
)
from convtree.models import (
    ConversationCache,
    ConversationMetadata,
    ConversationNode,
    FullScanResult,
    IncrementalScanResult,
)
from convtree.name_store import NameStore
from convtree.parsers.conversations import ConversationScan, parse_conversation_file
from convtree.parsers.projects import LogFileRef, enumerate_log_files
from convtree.path_decoder import PathCache, PathDecoder

logger = logging.getLogger("convtree.scan")

SCAN_INCREMENTAL = "incremental"
SCAN_FULL = "full"


class ScanError(Exception):
    """A scan failed outright (not a per-file or persistence problem)."""


class ScanEngine:
    """Conversation scanner over one projects root and one cache file.

    The path cache and the name store are injected so callers can share
    or fake them.
    """

    def __init__(
        self,
        projects_dir: Path,
        cache_store: CacheStore,
        path_cache: PathCache | None = None,
        name_store: NameStore | None = None,
        ambiguous_patterns: tuple[str, ...] | None = None,
        max_operation_history: int = config.MAX_OPERATION_HISTORY,
    ):
        self.projects_dir = projects_dir
        self.cache_store = cache_store
        self.path_cache = path_cache if path_cache is not None else PathCache()
        self.decoder = PathDecoder(self.path_cache, ambiguous_patterns)
        self.name_store = name_store
        self._scan_lock = asyncio.Lock()
        self._inflight: dict[str, asyncio.Future] = {}
        self._snapshot: ConversationCache | None = None
        self._snapshot_mtime: float | None = None
        self._last_results: dict[str, dict[str, Any]] = {}
        self._ops_lock = asyncio.Lock()
        self._operations: dict[str, dict[str, Any]] = {}
        self._operation_order: list[str] = []
        self._active_operation_ids: set[str] = set()
        self._max_operation_history = max(1, max_operation_history)

    # ── Public scan API ─────────────────────────────────────────────

    async def scan_incremental(
        self,
        trigger: str = "api",
        operation_id: str | None = None,
    ) -> IncrementalScanResult:
        """Pick up added and removed logs; refresh size/mtime of known ones."""
        return await self._single_flight(SCAN_INCREMENTAL, self._incremental_sync, trigger, operation_id)

    async def scan_full(
        self,
        trigger: str = "api",
        operation_id: str | None = None,
    ) -> FullScanResult:
        """Re-read every log and re-resolve every parent link."""
        return await self._single_flight(SCAN_FULL, self._full_sync, trigger, operation_id)

    async def _single_flight(
        self,
        kind: str,
        work: Callable[[], tuple[Any, ConversationCache]],
        trigger: str,
        operation_id: str | None,
    ) -> Any:
        task = self._inflight.get(kind)
        if task is None or task.done():
            task = asyncio.ensure_future(self._run_scan(kind, work, trigger, operation_id))
            self._inflight[kind] = task
            task.add_done_callback(functools.partial(self._clear_inflight, kind))
            return await asyncio.shield(task)

        logger.info("Joining in-flight %s scan (trigger=%s)", kind, trigger)
        try:
            result = await asyncio.shield(task)
        except ScanError as exc:
            await self._finish_operation(operation_id, status="failed", error=str(exc))
            raise
        await self._finish_operation(
            operation_id,
            status="completed",
            stats={**result.model_dump(), "coalesced": True},
        )
        return result

    def _clear_inflight(self, kind: str, task: asyncio.Future) -> None:
        if self._inflight.get(kind) is task:
            del self._inflight[kind]

    async def _run_scan(
        self,
        kind: str,
        work: Callable[[], tuple[Any, ConversationCache]],
        trigger: str,
        operation_id: str | None,
    ) -> Any:
        if not operation_id:
            operation_id = await self._start_operation(
                kind,
                trigger,
                {"projectsDir": str(self.projects_dir), "cachePath": str(self.cache_store.path)},
            )
        await self._update_operation(operation_id, phase="queued", message="Waiting for scan lock")

        async with self._scan_lock:
            await self._update_operation(operation_id, phase="scanning", message=f"Running {kind} scan")
            try:
                result, cache = await asyncio.to_thread(work)
            except Exception as exc:
                logger.exception("%s scan failed", kind.capitalize())
                await self._finish_operation(operation_id, status="failed", error=str(exc))
                raise ScanError(f"{kind} scan failed: {exc}") from exc

            self._snapshot = cache
            if result.persisted:
                self._snapshot_mtime = self._cache_mtime()

        stats = result.model_dump()
        self._last_results[kind] = {**stats, "finishedAt": utc_now_iso(), "trigger": trigger}
        await self._finish_operation(
            operation_id,
            status="completed" if result.persisted else "completed_unsaved",
            stats=stats,
            error=result.persistenceError or "",
        )
        return result

    # ── Scan bodies (run in a worker thread) ────────────────────────

    def _custom_names(self) -> dict[str, str]:
        if self.name_store is None:
            return {}
        return self.name_store.all_names()

    def _persist(self, cache: ConversationCache) -> str | None:
        try:
            self.cache_store.save(cache)
        except CacheStoreError as exc:
            logger.error("Scan succeeded but the cache could not be saved: %s", exc)
            return str(exc)
        return None

    def _current_files(self) -> dict[str, LogFileRef]:
        return {ref.conversation_id: ref for ref in enumerate_log_files(self.projects_dir)}

    def _incremental_sync(self) -> tuple[IncrementalScanResult, ConversationCache]:
        t0 = time.monotonic()
        cache = self.cache_store.load()
        conversations = cache.conversations
        files = self._current_files()

        current_ids = set(files)
        known_ids = set(cache.knownIds)
        new_ids = current_ids - known_ids
        deleted_ids = known_ids - current_ids

        # Known conversations: refresh filesystem fields only.
        for conversation_id in sorted(current_ids & known_ids):
            previous = conversations.get(conversation_id)
            if previous is None:
                new_ids.add(conversation_id)
                continue
            ref = files[conversation_id]
            scan = parse_conversation_file(ref.path, extract_content=False, decoder=self.decoder, previous=previous)
            if scan is not None:
                conversations[conversation_id] = scan.metadata
            elif not ref.path.exists():
                logger.info("Conversation %s vanished during scan", conversation_id)
                deleted_ids.add(conversation_id)
                current_ids.discard(conversation_id)

        # New conversations: full content parse.
        fresh: list[ConversationMetadata] = []
        for conversation_id in sorted(new_ids):
            stale = conversations.get(conversation_id)
            logger.info("Scanning new conversation: %s", conversation_id)
            scan = parse_conversation_file(
                files[conversation_id].path,
                extract_content=True,
                decoder=self.decoder,
                previous=stale,
            )
            if scan is None:
                # Not recorded as known, so the next scan retries it.
                current_ids.discard(conversation_id)
                conversations.pop(conversation_id, None)
                continue
            meta = scan.metadata
            if stale is not None:
                meta.parentId = stale.parentId or meta.parentId
            else:
                fresh.append(meta)
            conversations[conversation_id] = meta

        for conversation_id in list(conversations):
            if conversation_id not in current_ids:
                logger.info("Removing deleted conversation: %s", conversation_id)
                del conversations[conversation_id]

        # Cheap parent guess for first sightings only; no cross-reference pass.
        leaf_index = build_leaf_index(conversations.values())
        for meta in fresh:
            if not meta.parentId:
                meta.parentId = resolve_by_leaf(meta, leaf_index)

        for conversation_id, name in self._custom_names().items():
            if conversation_id in conversations:
                conversations[conversation_id].customName = name

        rebuild_children(conversations)
        cache.knownIds = sorted(conversations)
        cache.lastScanTimestamp = utc_now_iso()
        error = self._persist(cache)

        updated = len(new_ids & set(conversations))
        deleted = len(deleted_ids)
        elapsed = int((time.monotonic() - t0) * 1000)
        logger.info(
            f"Incremental scan complete in {elapsed}ms: "
            f"new={updated}, deleted={deleted}, total={len(conversations)}"
        )
        result = IncrementalScanResult(
            updatedCount=updated,
            deletedCount=deleted,
            totalCount=len(conversations),
            elapsedMs=elapsed,
            persisted=error is None,
            persistenceError=error,
        )
        return result, cache

    def _full_sync(self) -> tuple[FullScanResult, ConversationCache]:
        t0 = time.monotonic()
        previous_cache = self.cache_store.load()
        names = self._custom_names()
        files = self._current_files()
        total = len(files)
        logger.info("Starting full conversation scan of %d files", total)
        # Verified directory mappings are re-checked on every full scan.
        self.path_cache.clear()

        scans: list[ConversationScan] = []
        unreadable: dict[str, ConversationMetadata] = {}
        for index, ref in enumerate(files.values(), start=1):
            if index % 100 == 0:
                logger.info("Processing %d/%d conversations...", index, total)
            scan = parse_conversation_file(ref.path, extract_content=True, decoder=self.decoder)
            previous = previous_cache.conversations.get(ref.conversation_id)
            if scan is None:
                if previous is not None and ref.path.exists():
                    logger.warning("Keeping cached metadata for unreadable conversation %s", ref.conversation_id)
                    kept = previous.model_copy(deep=True)
                    kept.customName = names.get(kept.id) or kept.customName
                    unreadable[kept.id] = kept
                continue
            meta = scan.metadata
            meta.customName = names.get(meta.id) or (previous.customName if previous else None)
            scans.append(scan)

        index = CrossReferenceIndex.from_scans(scans)
        resolve_parents(scans, index)
        # Records of unreadable conversations are not indexed this pass, so
        # links into them are carried over from the previous cache.
        for scan in scans:
            meta = scan.metadata
            previous = previous_cache.conversations.get(meta.id)
            if not meta.parentId and previous is not None and previous.parentId in unreadable:
                meta.parentId = previous.parentId
        conversations = {scan.metadata.id: scan.metadata for scan in scans}
        conversations.update(unreadable)
        rebuild_children(conversations)

        root_count = sum(1 for meta in conversations.values() if not meta.parentId)
        logger.info(
            "Conversation structure: %d roots, %d children",
            root_count,
            len(conversations) - root_count,
        )

        cache = ConversationCache(
            lastScanTimestamp=utc_now_iso(),
            knownIds=sorted(conversations),
            conversations=conversations,
        )
        error = self._persist(cache)
        elapsed = int((time.monotonic() - t0) * 1000)
        logger.info(f"Full scan complete in {elapsed}ms: {len(conversations)} conversations")
        result = FullScanResult(
            totalCount=len(conversations),
            elapsedMs=elapsed,
            persisted=error is None,
            persistenceError=error,
        )
        return result, cache

    # ── Queries ─────────────────────────────────────────────────────

    def _cache_mtime(self) -> float | None:
        try:
            return self.cache_store.path.stat().st_mtime
        except OSError:
            return None

    async def _current_cache(self) -> ConversationCache:
        """Latest scan result, reloaded if another process rewrote the file."""
        mtime = self._cache_mtime()
        if self._snapshot is None or (mtime is not None and mtime != self._snapshot_mtime):
            self._snapshot = await asyncio.to_thread(self.cache_store.load)
            self._snapshot_mtime = mtime
        return self._snapshot

    async def list_conversations(self) -> list[ConversationMetadata]:
        cache = await self._current_cache()
        return list(cache.conversations.values())

    async def get_conversation(self, conversation_id: str) -> ConversationMetadata | None:
        cache = await self._current_cache()
        return cache.conversations.get(conversation_id)

    async def get_tree(self, include_sidechains: bool = True) -> list[ConversationNode]:
        cache = await self._current_cache()
        return build_forest(cache.conversations, include_sidechains=include_sidechains)

    async def get_lineage(self, conversation_id: str) -> list[ConversationMetadata]:
        cache = await self._current_cache()
        return lineage(cache.conversations, conversation_id)

    async def set_custom_name(self, conversation_id: str, name: str | None) -> ConversationMetadata | None:
        """Set (or clear, with None) a display name; returns None for unknown ids."""
        cleaned = name.strip() if name is not None else None
        if cleaned == "":
            raise ValueError("Name must not be empty")
        async with self._scan_lock:
            cache = await self._current_cache()
            meta = cache.conversations.get(conversation_id)
            if meta is None:
                return None
            if self.name_store is not None:
                if cleaned:
                    await asyncio.to_thread(self.name_store.set_name, conversation_id, cleaned)
                else:
                    await asyncio.to_thread(self.name_store.remove_name, conversation_id)
            meta.customName = cleaned
            error = await asyncio.to_thread(self._persist, cache)
            if error is None:
                self._snapshot_mtime = self._cache_mtime()
            return meta

    # ── Operation tracking ──────────────────────────────────────────

    async def start_operation(
        self,
        kind: str,
        trigger: str = "api",
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Create an observable operation and return its ID."""
        return await self._start_operation(kind, trigger, metadata or {})

    async def list_operations(self, limit: int = 20) -> list[dict[str, Any]]:
        """Return latest operation snapshots, newest first."""
        async with self._ops_lock:
            op_ids = self._operation_order[: max(1, limit)]
            return [copy.deepcopy(self._operations[op_id]) for op_id in op_ids if op_id in self._operations]

    async def get_operation(self, operation_id: str) -> dict[str, Any] | None:
        """Return a single operation snapshot."""
        async with self._ops_lock:
            op = self._operations.get(operation_id)
            if not op:
                return None
            return copy.deepcopy(op)

    async def get_status(self) -> dict[str, Any]:
        """Return scanner status for the cache API."""
        cache = await self._current_cache()
        async with self._ops_lock:
            active = [
                copy.deepcopy(self._operations[op_id])
                for op_id in self._operation_order
                if op_id in self._active_operation_ids and op_id in self._operations
            ]
        return {
            "projectsDir": str(self.projects_dir),
            "cachePath": str(self.cache_store.path),
            "lastScanTimestamp": cache.lastScanTimestamp,
            "conversationCount": len(cache.conversations),
            "pathCacheSize": len(self.path_cache),
            "pathCacheHits": self.path_cache.hits,
            "scanInProgress": self._scan_lock.locked(),
            "lastResults": copy.deepcopy(self._last_results),
            "activeOperations": active,
        }

    async def _start_operation(self, kind: str, trigger: str, metadata: dict[str, Any]) -> str:
        op_id = f"OP-{uuid.uuid4()}"
        now = datetime.now(timezone.utc).isoformat()
        payload = {
            "id": op_id,
            "kind": kind,
            "trigger": trigger,
            "status": "running",
            "phase": "queued",
            "message": "",
            "startedAt": now,
            "updatedAt": now,
            "finishedAt": "",
            "durationMs": 0,
            "stats": {},
            "metadata": metadata,
            "error": "",
        }
        async with self._ops_lock:
            self._operations[op_id] = payload
            self._operation_order.insert(0, op_id)
            self._active_operation_ids.add(op_id)
            if len(self._operation_order) > self._max_operation_history:
                stale_ids = self._operation_order[self._max_operation_history :]
                self._operation_order = self._operation_order[: self._max_operation_history]
                for stale_id in stale_ids:
                    self._operations.pop(stale_id, None)
                    self._active_operation_ids.discard(stale_id)
        logger.info("Operation started [%s] %s (trigger=%s)", op_id, kind, trigger)
        return op_id

    async def _update_operation(
        self,
        operation_id: str | None,
        *,
        phase: str | None = None,
        message: str | None = None,
    ) -> None:
        if not operation_id:
            return
        now = datetime.now(timezone.utc).isoformat()
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            if phase:
                operation["phase"] = phase
            if message is not None:
                operation["message"] = message
            operation["updatedAt"] = now
        if message:
            logger.debug("Operation update [%s] %s - %s", operation_id, phase or "progress", message)

    async def _finish_operation(
        self,
        operation_id: str | None,
        *,
        status: str,
        stats: dict[str, Any] | None = None,
        error: str = "",
    ) -> None:
        if not operation_id:
            return
        now = datetime.now(timezone.utc).isoformat()
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            operation["status"] = status
            operation["phase"] = "completed" if status != "failed" else "failed"
            operation["updatedAt"] = now
            operation["finishedAt"] = now
            if stats:
                operation.setdefault("stats", {}).update(stats)
            if error:
                operation["error"] = error
            started_at = datetime.fromisoformat(str(operation["startedAt"]))
            finished_at = datetime.fromisoformat(now)
            operation["durationMs"] = max(0, int((finished_at - started_at).total_seconds() * 1000))
            self._active_operation_ids.discard(operation_id)

        if status == "failed":
            logger.error("Operation failed [%s]: %s", operation_id, error)
        else:
            logger.info("Operation finished [%s] status=%s", operation_id, status)

