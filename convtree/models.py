"""Pydantic models matching the cache file and API payload shapes."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

# ── Conversation models ─────────────────────────────────────────────


class ConversationMetadata(BaseModel):
    id: str
    parentId: Optional[str] = None
    children: list[str] = Field(default_factory=list)  # derived, rebuilt after every scan
    createdAt: str = ""
    lastModifiedAt: str = ""
    fileSizeBytes: int = 0
    sourceDirectory: str = "unknown"
    isContinuationSummary: bool = False
    isSidechain: bool = False
    recordCount: int = 0
    title: Optional[str] = None
    summary: Optional[str] = None
    customName: Optional[str] = None
    leafId: Optional[str] = None
    parentLeafId: Optional[str] = None
    filePath: str = ""

    @property
    def display_name(self) -> str:
        return self.customName or self.title or self.id


class ConversationView(ConversationMetadata):
    """API shape: metadata plus the resolved display label."""

    displayName: str = ""

    @classmethod
    def from_metadata(cls, meta: ConversationMetadata) -> ConversationView:
        return cls(**meta.model_dump(), displayName=meta.display_name)


class ConversationNode(ConversationView):
    nodes: list[ConversationNode] = Field(default_factory=list)


ConversationNode.model_rebuild()


class ConversationGroup(BaseModel):
    sourceDirectory: str
    conversations: list[ConversationView] = Field(default_factory=list)


class ConversationCache(BaseModel):
    lastScanTimestamp: Optional[str] = None
    knownIds: list[str] = Field(default_factory=list)
    conversations: dict[str, ConversationMetadata] = Field(default_factory=dict)


# ── Scan result models ──────────────────────────────────────────────


class IncrementalScanResult(BaseModel):
    updatedCount: int = 0
    deletedCount: int = 0
    totalCount: int = 0
    elapsedMs: int = 0
    persisted: bool = True
    persistenceError: Optional[str] = None


class FullScanResult(BaseModel):
    totalCount: int = 0
    elapsedMs: int = 0
    persisted: bool = True
    persistenceError: Optional[str] = None


# ── Custom names ────────────────────────────────────────────────────


class ConversationName(BaseModel):
    name: str
    updatedAt: str = ""
