"""API router for conversation listing, tree, lineage and naming."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from convtree.date_utils import iso_to_epoch
from convtree.models import ConversationGroup, ConversationNode, ConversationView

conversations_router = APIRouter(prefix="/api/conversations", tags=["conversations"])


class RenameRequest(BaseModel):
    name: str = Field(..., min_length=1)


def _get_scan_engine(request: Request):
    scan_engine = getattr(request.app.state, "scan_engine", None)
    if not scan_engine:
        raise HTTPException(status_code=503, detail="Scan engine not initialized")
    return scan_engine


def _views_newest_first(items) -> list[ConversationView]:
    ordered = sorted(items, key=lambda meta: (iso_to_epoch(meta.lastModifiedAt), meta.id), reverse=True)
    return [ConversationView.from_metadata(meta) for meta in ordered]


@conversations_router.get("")
async def list_conversations(request: Request, grouped: bool = Query(False)):
    """List known conversations, most recently modified first."""
    scan_engine = _get_scan_engine(request)
    conversations = _views_newest_first(await scan_engine.list_conversations())
    if not grouped:
        return {"total": len(conversations), "items": conversations}

    groups: dict[str, ConversationGroup] = {}
    for view in conversations:
        group = groups.setdefault(view.sourceDirectory, ConversationGroup(sourceDirectory=view.sourceDirectory))
        group.conversations.append(view)
    return {"total": len(conversations), "groups": list(groups.values())}


@conversations_router.get("/tree", response_model=list[ConversationNode])
async def get_conversation_tree(
    request: Request,
    include_sidechains: bool = Query(True, alias="includeSidechains"),
):
    """Conversation forest, roots newest-first. Sidechain/agent logs can be hidden."""
    scan_engine = _get_scan_engine(request)
    return await scan_engine.get_tree(include_sidechains=include_sidechains)


@conversations_router.get("/{conversation_id}", response_model=ConversationView)
async def get_conversation(request: Request, conversation_id: str):
    scan_engine = _get_scan_engine(request)
    meta = await scan_engine.get_conversation(conversation_id)
    if meta is None:
        raise HTTPException(status_code=404, detail=f"Conversation {conversation_id} not found")
    return ConversationView.from_metadata(meta)


@conversations_router.get("/{conversation_id}/lineage", response_model=list[ConversationView])
async def get_conversation_lineage(request: Request, conversation_id: str):
    """Ancestors from the root down to the conversation; empty when unknown."""
    scan_engine = _get_scan_engine(request)
    chain = await scan_engine.get_lineage(conversation_id)
    return [ConversationView.from_metadata(meta) for meta in chain]


@conversations_router.put("/{conversation_id}/name", response_model=ConversationView)
async def rename_conversation(request: Request, conversation_id: str, body: RenameRequest):
    scan_engine = _get_scan_engine(request)
    try:
        meta = await scan_engine.set_custom_name(conversation_id, body.name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if meta is None:
        raise HTTPException(status_code=404, detail=f"Conversation {conversation_id} not found")
    return ConversationView.from_metadata(meta)


@conversations_router.delete("/{conversation_id}/name", response_model=ConversationView)
async def clear_conversation_name(request: Request, conversation_id: str):
    scan_engine = _get_scan_engine(request)
    meta = await scan_engine.set_custom_name(conversation_id, None)
    if meta is None:
        raise HTTPException(status_code=404, detail=f"Conversation {conversation_id} not found")
    return ConversationView.from_metadata(meta)
