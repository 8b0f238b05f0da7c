"""Parse JSONL conversation logs into ConversationMetadata."""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

from convtree.date_utils import stat_dates
from convtree.models import ConversationMetadata
from convtree.path_decoder import PathDecoder, naive_decode

logger = logging.getLogger("convtree.parser")

CONTINUATION_MARKER = "This session is being continued from a previous conversation"
CONTINUATION_HINT = "continued from a previous conversation"

_ANALYSIS_SECTION_PATTERN = re.compile(r"Analysis:\s*(.+?)(?:Summary:|$)", re.DOTALL)
_SUMMARY_SECTION_PATTERN = re.compile(r"Summary:\s*(.+?)(?:Analysis:|$)", re.DOTALL)
_BOILERPLATE_SENTENCE_PATTERN = re.compile(re.escape(CONTINUATION_MARKER) + r"[^.]*\.\s*")


@dataclass
class ConversationRecord:
    """One normalized log line. Never persisted."""

    kind: str
    record_id: str | None = None
    parent_record_id: str | None = None
    leaf_id: str | None = None
    content: str = ""
    timestamp: str = ""
    cwd: str | None = None
    summary: str | None = None
    is_sidechain: bool = False


@dataclass
class ConversationScan:
    """Parser output: metadata plus the reference data lineage needs."""

    metadata: ConversationMetadata
    record_ids: list[str] = field(default_factory=list)
    parent_refs: list[str] = field(default_factory=list)


def _str_or_none(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _content_to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        text = value.get("text")
        if isinstance(text, str):
            return text
        return ""
    if isinstance(value, list):
        parts = []
        for block in value:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type", "text") == "text":
                text = block.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "\n".join(part for part in parts if part)
    return ""


def _extract_content(raw: dict[str, Any]) -> str:
    """Collapse the historical payload shapes into one text value."""
    message = raw.get("message")
    if isinstance(message, dict) and message.get("content"):
        return _content_to_text(message["content"])
    if raw.get("content"):
        return _content_to_text(raw["content"])
    if isinstance(message, str):
        return message
    return ""


def normalize_record(raw: Any) -> ConversationRecord | None:
    if not isinstance(raw, dict):
        return None
    return ConversationRecord(
        kind=str(raw.get("type") or ""),
        record_id=_str_or_none(raw.get("uuid")),
        parent_record_id=_str_or_none(raw.get("parentUuid")),
        leaf_id=_str_or_none(raw.get("leafUuid")),
        content=_extract_content(raw),
        timestamp=str(raw.get("timestamp") or ""),
        cwd=_str_or_none(raw.get("cwd")),
        summary=_str_or_none(raw.get("summary")),
        # Subagent logs carry agentId; older ones also set isSidechain.
        is_sidechain=raw.get("isSidechain") is True or bool(raw.get("agentId")),
    )


def iter_records(path: Path) -> Iterator[ConversationRecord]:
    """Yield normalized records, skipping malformed lines one at a time."""
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        for line_no, line in enumerate(handle, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                raw = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Skipping malformed line %s:%d", path, line_no)
                continue
            record = normalize_record(raw)
            if record is None:
                logger.debug("Skipping non-object line %s:%d", path, line_no)
                continue
            yield record


def strip_continuation_boilerplate(text: str) -> str | None:
    """Pull the useful part out of a compacted-session opener.

    Tries the ``Analysis:`` section, then the ``Summary:`` section, then
    everything after the first line. Returns None when nothing is left.
    """
    if not text.startswith(CONTINUATION_MARKER):
        return text

    for pattern in (_ANALYSIS_SECTION_PATTERN, _SUMMARY_SECTION_PATTERN):
        match = pattern.search(text)
        if match and match.group(1).strip():
            return match.group(1).strip()

    _, newline, rest = text.partition("\n")
    if newline and rest.strip():
        return rest.strip()
    return None


def resolve_title(first_user_text: str | None, summary: str | None, is_continuation: bool) -> str | None:
    title = first_user_text or summary
    if is_continuation and summary and title and CONTINUATION_HINT in title:
        title = summary
    if title and CONTINUATION_MARKER in title:
        cleaned = _BOILERPLATE_SENTENCE_PATTERN.sub("", title).strip()
        if cleaned:
            title = cleaned
    return title or None


def _filesystem_fields(path: Path, source_directory: str) -> dict[str, Any]:
    stats = path.stat()
    dates = stat_dates(stats)
    return {
        "createdAt": dates["createdAt"],
        "lastModifiedAt": dates["updatedAt"],
        "fileSizeBytes": int(stats.st_size),
        "sourceDirectory": source_directory,
        "filePath": str(path),
    }


def parse_conversation_file(
    path: Path,
    *,
    extract_content: bool,
    decoder: PathDecoder | None = None,
    previous: ConversationMetadata | None = None,
) -> ConversationScan | None:
    """Build metadata for one log file.

    With ``extract_content=False`` only filesystem-derived fields are
    (re)computed and every content-derived field is carried over from
    *previous*. Returns None when the file cannot be stat'ed or read.
    """
    conversation_id = path.stem
    encoded_dir = path.parent.name
    if decoder is not None:
        source_directory = decoder.decode(encoded_dir, path.parent)
    else:
        source_directory = naive_decode(encoded_dir)

    try:
        fs_fields = _filesystem_fields(path, source_directory)
    except OSError as exc:
        logger.warning("Cannot stat %s: %s", path, exc)
        return None

    if not extract_content:
        if previous is not None:
            metadata = previous.model_copy(update=fs_fields, deep=True)
        else:
            metadata = ConversationMetadata(id=conversation_id, **fs_fields)
        return ConversationScan(metadata=metadata)

    record_count = 0
    leaf_id: str | None = None
    parent_leaf_id: str | None = None
    summary_text: str | None = None
    seen_summary_record = False
    first_user_text: str | None = None
    is_continuation = False
    is_sidechain = False
    record_ids: list[str] = []
    parent_refs: list[str] = []

    try:
        for record in iter_records(path):
            record_count += 1
            if record.record_id:
                record_ids.append(record.record_id)
            if record.parent_record_id:
                parent_refs.append(record.parent_record_id)
            if record.leaf_id:
                leaf_id = record.leaf_id
            if record.is_sidechain:
                is_sidechain = True

            if record.kind == "summary":
                if not seen_summary_record:
                    seen_summary_record = True
                    parent_leaf_id = record.leaf_id
                if summary_text is None and record.summary:
                    summary_text = record.summary

            if first_user_text is None and record.kind == "user" and record.content:
                first_user_text = strip_continuation_boilerplate(record.content)

            if CONTINUATION_HINT in record.content:
                is_continuation = True
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Cannot read %s: %s", path, exc)
        return None

    metadata = ConversationMetadata(
        id=conversation_id,
        **fs_fields,
        isContinuationSummary=is_continuation,
        isSidechain=is_sidechain,
        recordCount=record_count,
        title=resolve_title(first_user_text, summary_text, is_continuation),
        summary=summary_text,
        leafId=leaf_id,
        parentLeafId=parent_leaf_id,
    )
    if previous is not None:
        metadata.customName = previous.customName
    return ConversationScan(metadata=metadata, record_ids=record_ids, parent_refs=parent_refs)
