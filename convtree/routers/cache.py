"""Cache + scan observability API."""
from __future__ import annotations

import logging
from typing import Literal

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request
from pydantic import BaseModel

from convtree.db.file_watcher import file_watcher
from convtree.db.scan_engine import SCAN_FULL, ScanError

logger = logging.getLogger("convtree.cache")

cache_router = APIRouter(prefix="/api/cache", tags=["cache"])


class ScanRequest(BaseModel):
    mode: Literal["incremental", "full"] = "incremental"
    background: bool = False
    trigger: str = "api"


def _get_scan_engine(request: Request):
    scan_engine = getattr(request.app.state, "scan_engine", None)
    if not scan_engine:
        raise HTTPException(status_code=503, detail="Scan engine not initialized")
    return scan_engine


async def _run_background_scan(scan_engine, mode: str, operation_id: str, trigger: str) -> None:
    try:
        if mode == SCAN_FULL:
            await scan_engine.scan_full(trigger=trigger, operation_id=operation_id)
        else:
            await scan_engine.scan_incremental(trigger=trigger, operation_id=operation_id)
    except ScanError as exc:
        logger.error(f"Background {mode} scan failed: {exc}")


@cache_router.get("/status")
async def get_cache_status(request: Request):
    """Return scanner + watcher status, including live operations."""
    scan_engine = _get_scan_engine(request)
    status = await scan_engine.get_status()
    return {
        "status": "active",
        "watcher": "running" if file_watcher.is_running else "stopped",
        **status,
    }


@cache_router.get("/operations")
async def list_cache_operations(request: Request, limit: int = Query(20, ge=1, le=200)):
    """List recent scan operations."""
    scan_engine = _get_scan_engine(request)
    operations = await scan_engine.list_operations(limit=limit)
    return {"status": "ok", "count": len(operations), "items": operations}


@cache_router.get("/operations/{operation_id}")
async def get_cache_operation(request: Request, operation_id: str):
    """Get one scan operation by ID."""
    scan_engine = _get_scan_engine(request)
    operation = await scan_engine.get_operation(operation_id)
    if not operation:
        raise HTTPException(status_code=404, detail=f"Operation {operation_id} not found")
    return operation


@cache_router.post("/scan")
async def trigger_scan(request: Request, background_tasks: BackgroundTasks, body: ScanRequest):
    """Trigger an incremental or full scan."""
    scan_engine = _get_scan_engine(request)

    if body.background:
        operation_id = await scan_engine.start_operation(
            body.mode,
            trigger=body.trigger,
            metadata={"background": True},
        )
        background_tasks.add_task(_run_background_scan, scan_engine, body.mode, operation_id, body.trigger)
        return {
            "status": "ok",
            "mode": "background",
            "scanMode": body.mode,
            "message": f"{body.mode.capitalize()} scan triggered in background",
            "operationId": operation_id,
        }

    try:
        if body.mode == SCAN_FULL:
            result = await scan_engine.scan_full(trigger=body.trigger)
        else:
            result = await scan_engine.scan_incremental(trigger=body.trigger)
    except ScanError as exc:
        raise HTTPException(status_code=500, detail=str(exc))

    return {
        "status": "ok" if result.persisted else "unsaved",
        "mode": "foreground",
        "scanMode": body.mode,
        "result": result,
    }
