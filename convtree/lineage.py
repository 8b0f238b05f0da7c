"""Parent resolution and forest reconstruction between conversations."""
from __future__ import annotations

import logging
from typing import Iterable, Mapping, MutableMapping

from convtree.date_utils import iso_to_epoch
from convtree.models import ConversationMetadata, ConversationNode, ConversationView
from convtree.parsers.conversations import ConversationScan

logger = logging.getLogger("convtree.scan")


class CrossReferenceIndex:
    """Record id -> id of the conversation containing that record."""

    def __init__(self) -> None:
        self._owners: dict[str, str] = {}

    @classmethod
    def from_scans(cls, scans: Iterable[ConversationScan]) -> CrossReferenceIndex:
        index = cls()
        for scan in scans:
            index.add(scan.metadata.id, scan.record_ids)
        return index

    def add(self, conversation_id: str, record_ids: Iterable[str]) -> None:
        for record_id in record_ids:
            self._owners[record_id] = conversation_id

    def owner_of(self, record_id: str) -> str | None:
        return self._owners.get(record_id)

    def __len__(self) -> int:
        return len(self._owners)


def _resolve_by_reference(scan: ConversationScan, index: CrossReferenceIndex) -> str | None:
    conversation_id = scan.metadata.id
    for ref in scan.parent_refs:
        owner = index.owner_of(ref)
        if owner and owner != conversation_id:
            return owner
    return None


def build_leaf_index(conversations: Iterable[ConversationMetadata]) -> dict[str, list[ConversationMetadata]]:
    leaf_index: dict[str, list[ConversationMetadata]] = {}
    for meta in conversations:
        if meta.leafId:
            leaf_index.setdefault(meta.leafId, []).append(meta)
    return leaf_index


def resolve_by_leaf(
    meta: ConversationMetadata,
    leaf_index: Mapping[str, list[ConversationMetadata]],
) -> str | None:
    """Legacy fallback: the conversation whose leaf id this one continues from.

    A continuation whose only records are summaries ends on the same leaf it
    continues from, so siblings that continue from that leaf are passed over
    while the conversation that actually produced it is among the candidates.
    """
    leaf = meta.parentLeafId
    if not leaf:
        return None
    candidates = [candidate for candidate in leaf_index.get(leaf, []) if candidate.id != meta.id]
    for candidate in candidates:
        if candidate.parentLeafId != leaf:
            return candidate.id
    return candidates[0].id if candidates else None


def resolve_parents(scans: list[ConversationScan], index: CrossReferenceIndex) -> dict[str, int]:
    """Assign ``parentId`` on every scanned conversation in place.

    Cross-references win; the leaf-id heuristic only fills gaps.
    """
    stats = {"byReference": 0, "byLeaf": 0}
    unresolved: list[ConversationMetadata] = []
    for scan in scans:
        meta = scan.metadata
        meta.parentId = None
        parent_id = _resolve_by_reference(scan, index)
        if parent_id:
            meta.parentId = parent_id
            stats["byReference"] += 1
            logger.debug("Parent for %s: %s (via parentUuid)", meta.id, parent_id)
        else:
            unresolved.append(meta)

    leaf_index = build_leaf_index(scan.metadata for scan in scans)
    for meta in unresolved:
        parent_id = resolve_by_leaf(meta, leaf_index)
        if parent_id and parent_id != meta.id:
            meta.parentId = parent_id
            stats["byLeaf"] += 1
            logger.debug("Parent for %s: %s (via leafUuid %s)", meta.id, parent_id, meta.parentLeafId)

    logger.info(
        "Resolved %d parents via parentUuid and %d via leafUuid",
        stats["byReference"],
        stats["byLeaf"],
    )
    return stats


def break_cycles(conversations: Mapping[str, ConversationMetadata]) -> int:
    """Clear any parent pointer that would make a conversation its own ancestor."""
    broken = 0
    settled: set[str] = set()
    for start_id in conversations:
        path: list[str] = []
        on_path: set[str] = set()
        current = start_id
        while current in conversations and current not in settled:
            if current in on_path:
                # The last hop on the path closes the loop back to `current`.
                closer = conversations[path[-1]]
                logger.warning("Breaking parent cycle at %s -> %s", closer.id, closer.parentId)
                closer.parentId = None
                broken += 1
                break
            path.append(current)
            on_path.add(current)
            parent_id = conversations[current].parentId
            if parent_id == current:
                conversations[current].parentId = None
                broken += 1
                break
            if not parent_id:
                break
            current = parent_id
        settled.update(path)
    return broken


def rebuild_children(conversations: MutableMapping[str, ConversationMetadata]) -> None:
    """Recompute every ``children`` list from the full set of parent pointers."""
    break_cycles(conversations)
    for meta in conversations.values():
        meta.children = []
    for conversation_id, meta in conversations.items():
        if meta.parentId and meta.parentId in conversations:
            conversations[meta.parentId].children.append(conversation_id)


def _newest_first(items: list[ConversationMetadata]) -> list[ConversationMetadata]:
    return sorted(items, key=lambda meta: (iso_to_epoch(meta.createdAt), meta.id), reverse=True)


def build_forest(
    conversations: Mapping[str, ConversationMetadata],
    include_sidechains: bool = True,
) -> list[ConversationNode]:
    """Nested trees, roots newest-first. A root has no parent present in the set.

    With ``include_sidechains=False`` sidechain/agent conversations are left
    out; their non-sidechain descendants become roots.
    """
    if not include_sidechains:
        conversations = {cid: meta for cid, meta in conversations.items() if not meta.isSidechain}
    roots = [
        meta
        for meta in conversations.values()
        if not meta.parentId or meta.parentId not in conversations or meta.parentId == meta.id
    ]

    def to_node(meta: ConversationMetadata) -> ConversationNode:
        return ConversationNode(**ConversationView.from_metadata(meta).model_dump())

    forest: list[ConversationNode] = []
    seen: set[str] = set()
    stack: list[tuple[ConversationMetadata, list[ConversationNode]]] = [
        (meta, forest) for meta in reversed(_newest_first(roots))
    ]
    while stack:
        meta, siblings = stack.pop()
        if meta.id in seen:
            continue
        seen.add(meta.id)
        node = to_node(meta)
        siblings.append(node)
        children = [conversations[cid] for cid in meta.children if cid in conversations]
        for child in reversed(_newest_first(children)):
            stack.append((child, node.nodes))
    return forest


def lineage(conversations: Mapping[str, ConversationMetadata], conversation_id: str) -> list[ConversationMetadata]:
    """Ancestors of *conversation_id*, root first, ending with the conversation itself."""
    chain: list[ConversationMetadata] = []
    seen: set[str] = set()
    current = conversations.get(conversation_id)
    while current is not None and current.id not in seen:
        seen.add(current.id)
        chain.append(current)
        current = conversations.get(current.parentId) if current.parentId else None
    chain.reverse()
    return chain
