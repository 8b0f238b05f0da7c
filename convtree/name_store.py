"""Persisted custom display names for conversations."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from convtree.date_utils import utc_now_iso
from convtree.models import ConversationName

logger = logging.getLogger("convtree.names")


class NameStore:
    """Maps conversation ids to user-assigned names, stored as JSON."""

    def __init__(self, storage_path: Path):
        self.storage_path = storage_path
        self._names: dict[str, ConversationName] = {}
        self._loaded = False

    def _load(self):
        """Load names from JSON storage."""
        if self._loaded:
            return
        self._loaded = True
        if not self.storage_path.exists():
            return

        try:
            content = self.storage_path.read_text(encoding="utf-8")
            if not content.strip():
                return
            data = json.loads(content)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load conversation names file: {e}")
            return

        if not isinstance(data, dict):
            logger.error("Conversation names file is not an object, ignoring it")
            return
        for conversation_id, entry in data.items():
            try:
                self._names[conversation_id] = ConversationName.model_validate(entry)
            except ValidationError as e:
                logger.error(f"Failed to load name for {conversation_id}: {e}")

    def _save(self):
        """Save names to JSON storage."""
        data = {cid: entry.model_dump() for cid, entry in self._names.items()}
        self.storage_path.parent.mkdir(parents=True, exist_ok=True)
        self.storage_path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    def get_name(self, conversation_id: str) -> Optional[str]:
        self._load()
        entry = self._names.get(conversation_id)
        return entry.name if entry else None

    def all_names(self) -> dict[str, str]:
        self._load()
        return {cid: entry.name for cid, entry in self._names.items()}

    def set_name(self, conversation_id: str, name: str):
        cleaned = name.strip()
        if not cleaned:
            raise ValueError("Name must not be empty")
        self._load()
        self._names[conversation_id] = ConversationName(name=cleaned, updatedAt=utc_now_iso())
        self._save()
        logger.info(f"Named conversation {conversation_id}: {cleaned}")

    def remove_name(self, conversation_id: str) -> bool:
        self._load()
        if conversation_id not in self._names:
            return False
        del self._names[conversation_id]
        self._save()
        return True

    def reload(self):
        self._names.clear()
        self._loaded = False
        self._load()
