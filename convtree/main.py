"""ConvTree FastAPI backend: main application entry point."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from convtree import config
from convtree.db.cache_store import CacheStore
from convtree.db.file_watcher import file_watcher
from convtree.db.scan_engine import SCAN_FULL, SCAN_INCREMENTAL, ScanEngine, ScanError
from convtree.name_store import NameStore
from convtree.path_decoder import PathCache
from convtree.routers.cache import cache_router
from convtree.routers.conversations import conversations_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("convtree")


def build_scan_engine() -> ScanEngine:
    return ScanEngine(
        projects_dir=config.PROJECTS_DIR,
        cache_store=CacheStore(config.CACHE_PATH),
        path_cache=PathCache(),
        name_store=NameStore(config.NAMES_PATH),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("ConvTree backend starting up")

    scan = build_scan_engine()
    app.state.scan_engine = scan

    mode = config.STARTUP_SCAN_MODE
    if mode in (SCAN_INCREMENTAL, SCAN_FULL):
        async def _run_startup_scan() -> None:
            delay = max(0, config.STARTUP_SCAN_DELAY_SECONDS)
            if delay > 0:
                await asyncio.sleep(delay)
            try:
                if mode == SCAN_FULL:
                    await scan.scan_full(trigger="startup")
                else:
                    await scan.scan_incremental(trigger="startup")
            except ScanError as e:
                logger.error(f"Startup scan failed: {e}")

        # Keep reference to cancel on shutdown.
        app.state.scan_task = asyncio.create_task(_run_startup_scan())

    if config.WATCH_ENABLED:
        await file_watcher.start(scan, config.PROJECTS_DIR)

    yield

    logger.info("ConvTree backend shutting down")

    if hasattr(app.state, "scan_task"):
        app.state.scan_task.cancel()
        try:
            await app.state.scan_task
        except asyncio.CancelledError:
            pass

    await file_watcher.stop()


app = FastAPI(
    title="ConvTree API",
    description="Conversation log scanner and lineage cache",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(conversations_router)
app.include_router(cache_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "projectsDir": str(config.PROJECTS_DIR),
        "watcher": "running" if file_watcher.is_running else "stopped",
    }


def serve() -> None:
    """Run the API with uvicorn on the configured host/port."""
    import uvicorn

    uvicorn.run(app, host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    serve()
