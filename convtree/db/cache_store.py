"""On-disk JSON cache of conversation metadata.

The cache is the only persistence boundary of the scanner. Loading never
fails: a missing or corrupt file degrades to an empty cache, which makes
the next scan a full rebuild. Saving writes a sibling temp file and
renames it over the target, so readers see either the old or the new
document.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError

from convtree.models import ConversationCache

logger = logging.getLogger("convtree.cache")


class CacheStoreError(Exception):
    """The cache could not be persisted."""


class CacheStore:
    def __init__(self, path: Path):
        self.path = path

    def ensure_directory(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CacheStoreError(f"Cannot create cache directory {self.path.parent}: {exc}") from exc

    def load(self) -> ConversationCache:
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ConversationCache()
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Cannot read cache %s, starting fresh: %s", self.path, exc)
            return ConversationCache()

        if not content.strip():
            return ConversationCache()
        try:
            return ConversationCache.model_validate(json.loads(content))
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Cache %s is corrupt, starting fresh: %s", self.path, exc)
            return ConversationCache()

    def save(self, cache: ConversationCache) -> None:
        self.ensure_directory()
        payload = json.dumps(cache.model_dump(mode="json"), indent=2, ensure_ascii=False)
        tmp_path: Path | None = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                delete=False,
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                encoding="utf-8",
            ) as handle:
                tmp_path = Path(handle.name)
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        except OSError as exc:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            raise CacheStoreError(f"Cannot write cache {self.path}: {exc}") from exc
