"""ccanalytics FastAPI service: main application entry point."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from ccanalytics import config
from ccanalytics.db import connection, migrations
from ccanalytics.db.file_watcher import FileWatcher
from ccanalytics.db.retention import DataRetentionManager
from ccanalytics.db.sync_engine import SyncEngine
from ccanalytics.file_discovery import FileDiscoveryService
from ccanalytics.observability import initialize as initialize_observability, shutdown as shutdown_observability
from ccanalytics.routers.sync import retention_router, sync_router

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("ccanalytics")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("ccanalytics starting up")
    initialize_observability(app)

    db = await connection.open_connection()
    await migrations.run_migrations(db)
    app.state.db = db

    sync = SyncEngine(db, discovery=FileDiscoveryService(config.SESSIONS_DIR))
    app.state.sync_engine = sync
    app.state.retention_manager = DataRetentionManager(db)

    if config.STARTUP_SYNC_ENABLED:
        async def _run_startup_sync() -> None:
            delay = max(0, config.STARTUP_SYNC_DELAY_SECONDS)
            if delay > 0:
                await asyncio.sleep(delay)
            await sync.sync_incremental(trigger="startup")

        app.state.sync_task = asyncio.create_task(_run_startup_sync())

    watcher = FileWatcher()
    app.state.file_watcher = watcher
    if config.WATCHER_ENABLED:
        await watcher.start(sync, config.SESSIONS_DIR)

    yield

    logger.info("ccanalytics shutting down")

    sync_task = getattr(app.state, "sync_task", None)
    if sync_task:
        sync_task.cancel()
        try:
            await sync_task
        except asyncio.CancelledError:
            pass

    await watcher.stop()
    shutdown_observability(app)
    await connection.close_connection(db)


app = FastAPI(
    title="ccanalytics",
    description="Incremental session log sync and retention API",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(sync_router)
app.include_router(retention_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    watcher = getattr(app.state, "file_watcher", None)
    return {
        "status": "ok",
        "db": "connected" if getattr(app.state, "db", None) is not None else "disconnected",
        "watcher": "running" if watcher and watcher.is_running else "stopped",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("ccanalytics.main:app", host=config.HOST, port=config.PORT, reload=False)
