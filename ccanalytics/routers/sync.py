"""Sync and retention API."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request
from pydantic import BaseModel, Field

from ccanalytics.models import RetentionConfig, SyncOptions

logger = logging.getLogger("ccanalytics.api")

sync_router = APIRouter(prefix="/api/sync", tags=["sync"])
retention_router = APIRouter(prefix="/api/retention", tags=["retention"])


class SyncRequest(BaseModel):
    dryRun: bool = False
    maxFiles: Optional[int] = Field(default=None, ge=1)
    skipExisting: bool = False
    skipUnchanged: bool = False
    incremental: bool = False
    background: bool = False
    trigger: str = "api"

    def to_options(self) -> SyncOptions:
        return SyncOptions(
            dry_run=self.dryRun,
            max_files=self.maxFiles,
            skip_existing=self.skipExisting,
            skip_unchanged=self.skipUnchanged,
            incremental=self.incremental,
        )


class SyncPathsRequest(BaseModel):
    paths: list[str] = Field(..., min_length=1)
    dryRun: bool = False
    skipUnchanged: bool = False
    trigger: str = "api"


class RetentionRequest(BaseModel):
    retentionDays: Optional[int] = Field(default=None, ge=1)
    messageRetentionDays: Optional[int] = Field(default=None, ge=1)
    metricsRetentionDays: Optional[int] = Field(default=None, ge=1)
    syncRetentionDays: Optional[int] = Field(default=None, ge=1)
    batchSize: Optional[int] = Field(default=None, ge=1)
    dryRun: bool = False

    def apply(self, base: RetentionConfig) -> RetentionConfig:
        overrides = {
            "retention_days": self.retentionDays,
            "message_retention_days": self.messageRetentionDays,
            "metrics_retention_days": self.metricsRetentionDays,
            "sync_retention_days": self.syncRetentionDays,
            "batch_size": self.batchSize,
        }
        update = {key: value for key, value in overrides.items() if value is not None}
        update["dry_run"] = self.dryRun
        return base.model_copy(update=update)


def _get_sync_engine(request: Request):
    sync_engine = getattr(request.app.state, "sync_engine", None)
    if not sync_engine:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    return sync_engine


def _get_retention_manager(request: Request):
    manager = getattr(request.app.state, "retention_manager", None)
    if not manager:
        raise HTTPException(status_code=503, detail="Retention manager not initialized")
    return manager


def _is_under(path: Path, root: Path) -> bool:
    try:
        path.resolve(strict=False).relative_to(root.resolve(strict=False))
        return True
    except ValueError:
        return False


def _resolve_session_path(raw_path: str, sessions_dir: Path) -> Path:
    candidate = Path(raw_path).expanduser()
    if not candidate.is_absolute():
        candidate = sessions_dir / candidate
    candidate = candidate.resolve(strict=False)
    if not _is_under(candidate, sessions_dir):
        raise HTTPException(status_code=400, detail=f"Path outside the sessions directory: {raw_path}")
    return candidate


# ── Sync ────────────────────────────────────────────────────────────


@sync_router.get("/status")
async def get_sync_status(request: Request):
    """Checkpoint, filesystem and store totals, live progress."""
    sync_engine = _get_sync_engine(request)
    watcher = getattr(request.app.state, "file_watcher", None)
    status = await sync_engine.get_sync_status()
    status["watcher"] = "running" if watcher and watcher.is_running else "stopped"
    return status


@sync_router.get("/preview")
async def preview_incremental_sync(request: Request):
    sync_engine = _get_sync_engine(request)
    preview = await sync_engine.preview_incremental_sync()
    return preview.model_dump(mode="json")


@sync_router.get("/progress")
async def get_sync_progress(request: Request):
    sync_engine = _get_sync_engine(request)
    return sync_engine.progress.current.model_dump(mode="json", by_alias=True)


@sync_router.post("/run")
async def run_sync(request: Request, background_tasks: BackgroundTasks, body: SyncRequest):
    """Run a full or incremental sync, inline or as a background task."""
    sync_engine = _get_sync_engine(request)
    options = body.to_options()
    if body.background:
        if sync_engine.progress.is_running:
            raise HTTPException(status_code=409, detail="A sync is already running")
        background_tasks.add_task(sync_engine.sync_all, options, trigger=body.trigger)
        return {"status": "accepted", "incremental": options.incremental, "dryRun": options.dry_run}

    result = await sync_engine.sync_all(options, trigger=body.trigger)
    return result.model_dump(mode="json")


@sync_router.post("/files")
async def sync_files(request: Request, body: SyncPathsRequest):
    sync_engine = _get_sync_engine(request)
    sessions_dir = Path(sync_engine.discovery.root)
    paths = [_resolve_session_path(raw, sessions_dir) for raw in body.paths]
    options = SyncOptions(dry_run=body.dryRun, skip_unchanged=body.skipUnchanged)
    result = await sync_engine.sync_files(paths, options, trigger=body.trigger)
    return result.model_dump(mode="json")


@sync_router.post("/reset")
async def reset_sync_checkpoint(request: Request):
    sync_engine = _get_sync_engine(request)
    await sync_engine.reset_checkpoint()
    return {"status": "ok"}


@sync_router.get("/operations")
async def list_sync_operations(request: Request, limit: int = Query(20, ge=1, le=200)):
    sync_engine = _get_sync_engine(request)
    operations = await sync_engine.list_operations(limit=limit)
    return {"status": "ok", "count": len(operations), "items": operations}


@sync_router.get("/operations/{operation_id}")
async def get_sync_operation(request: Request, operation_id: str):
    sync_engine = _get_sync_engine(request)
    operation = await sync_engine.get_operation(operation_id)
    if not operation:
        raise HTTPException(status_code=404, detail=f"Operation {operation_id} not found")
    return operation


# ── Retention ───────────────────────────────────────────────────────


@retention_router.get("/stats")
async def get_retention_stats(
    request: Request,
    retentionDays: Optional[int] = Query(None, ge=1),
    messageRetentionDays: Optional[int] = Query(None, ge=1),
    metricsRetentionDays: Optional[int] = Query(None, ge=1),
    syncRetentionDays: Optional[int] = Query(None, ge=1),
):
    manager = _get_retention_manager(request)
    policy = RetentionRequest(
        retentionDays=retentionDays,
        messageRetentionDays=messageRetentionDays,
        metricsRetentionDays=metricsRetentionDays,
        syncRetentionDays=syncRetentionDays,
    ).apply(manager.default)
    stats = await manager.get_stats(policy)
    return stats.model_dump(mode="json")


@retention_router.get("/oldest")
async def get_oldest_records(request: Request, limit: int = Query(10, ge=1, le=1000)):
    manager = _get_retention_manager(request)
    records = await manager.oldest_records(limit)
    return {"count": len(records), "items": records}


@retention_router.get("/policy")
async def validate_retention_policy(request: Request):
    manager = _get_retention_manager(request)
    report = await manager.validate_policy()
    return report.model_dump(mode="json")


@retention_router.post("/cleanup")
async def run_retention_cleanup(request: Request, body: RetentionRequest):
    manager = _get_retention_manager(request)
    sync_engine = getattr(request.app.state, "sync_engine", None)
    if not body.dryRun and sync_engine is not None and sync_engine.progress.is_running:
        raise HTTPException(status_code=409, detail="Cannot run cleanup while a sync is running")
    result = await manager.cleanup(body.apply(manager.default))
    return result.model_dump(mode="json")
