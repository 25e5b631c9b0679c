"""Incremental JSONL → DB sync engine.

Discovers session logs, parses them one file at a time and writes each
session through the transactional writer. A durable checkpoint row in
``sync_metadata`` records the watermark consulted by incremental runs.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Any, Iterable

from ccanalytics import config
from ccanalytics import observability as otel
from ccanalytics.date_utils import utc_now
from ccanalytics.db.factory import get_sync_metadata_repository
from ccanalytics.db.schema import SchemaCapabilities
from ccanalytics.db.writer import SessionWriter
from ccanalytics.file_discovery import FileDiscoveryService
from ccanalytics.models import (
    FailedFile,
    FileInfo,
    IncrementalPreview,
    InsertionError,
    ParseError,
    ParseErrorType,
    ParseResult,
    SessionBundle,
    SyncMetadata,
    SyncOptions,
    SyncResult,
    SyncStatus,
    SyncTiming,
)
from ccanalytics.parsers.sessions import parse_session_file
from ccanalytics.services.sync_progress import SyncProgressTracker

logger = logging.getLogger("ccanalytics.sync")

_ERROR_MESSAGE_LIMIT = 5


def _cap(files: list[FileInfo], max_files: int | None) -> list[FileInfo]:
    if max_files is None:
        return files
    return files[:max_files]


def _error_summary(result: SyncResult) -> str | None:
    messages = [err.error for err in result.details.insertion_errors]
    if not messages:
        return None
    summary = "; ".join(messages[:_ERROR_MESSAGE_LIMIT])
    if len(messages) > _ERROR_MESSAGE_LIMIT:
        summary += f" (+{len(messages) - _ERROR_MESSAGE_LIMIT} more)"
    return summary


class SyncEngine:
    """Sequential file → DB synchronization with a durable checkpoint."""

    def __init__(
        self,
        db: Any,  # Union[aiosqlite.Connection, asyncpg.Pool]
        *,
        discovery: FileDiscoveryService | None = None,
        capabilities: SchemaCapabilities | None = None,
        progress: SyncProgressTracker | None = None,
        sync_key: str = config.SYNC_KEY,
        stale_after_seconds: int = config.SYNC_STALE_AFTER_SECONDS,
        extended_threshold: int = config.EXTENDED_SESSION_SECONDS,
        autonomy_threshold: int = config.AUTONOMY_THRESHOLD,
    ):
        self.db = db
        self.capabilities = capabilities or SchemaCapabilities(db)
        self.writer = SessionWriter(db, self.capabilities)
        self.sync_repo = get_sync_metadata_repository(db)
        self.discovery = discovery or FileDiscoveryService()
        self.progress = progress or SyncProgressTracker()
        self.sync_key = sync_key
        self.stale_after_seconds = stale_after_seconds
        self.extended_threshold = extended_threshold
        self.autonomy_threshold = autonomy_threshold
        self._ops_lock = asyncio.Lock()
        self._operations: dict[str, dict[str, Any]] = {}
        self._operation_order: list[str] = []
        self._active_operation_ids: set[str] = set()
        self._max_operation_history = 40

    # ── Operation tracking ──────────────────────────────────────────

    async def list_operations(self, limit: int = 20) -> list[dict[str, Any]]:
        """Return latest operation snapshots, newest first."""
        async with self._ops_lock:
            op_ids = self._operation_order[: max(1, limit)]
            return [copy.deepcopy(self._operations[op_id]) for op_id in op_ids if op_id in self._operations]

    async def get_operation(self, operation_id: str) -> dict[str, Any] | None:
        async with self._ops_lock:
            op = self._operations.get(operation_id)
            return copy.deepcopy(op) if op else None

    async def _start_operation(self, kind: str, trigger: str, metadata: dict[str, Any]) -> str:
        op_id = f"OP-{uuid.uuid4()}"
        now = utc_now().isoformat()
        payload = {
            "id": op_id,
            "kind": kind,
            "trigger": trigger,
            "status": "running",
            "startedAt": now,
            "updatedAt": now,
            "finishedAt": "",
            "durationMs": 0,
            "counters": {},
            "metadata": metadata,
            "error": "",
        }
        async with self._ops_lock:
            self._operations[op_id] = payload
            self._operation_order.insert(0, op_id)
            self._active_operation_ids.add(op_id)
            if len(self._operation_order) > self._max_operation_history:
                stale_ids = self._operation_order[self._max_operation_history :]
                self._operation_order = self._operation_order[: self._max_operation_history]
                for stale_id in stale_ids:
                    self._operations.pop(stale_id, None)
                    self._active_operation_ids.discard(stale_id)
        logger.info("Operation started [%s] %s (trigger=%s)", op_id, kind, trigger)
        return op_id

    async def _update_operation(self, operation_id: str, counters: dict[str, Any]) -> None:
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            operation["counters"].update(counters)
            operation["updatedAt"] = utc_now().isoformat()

    async def _finish_operation(self, operation_id: str, *, status: str, duration_ms: int, error: str = "") -> None:
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            now = utc_now().isoformat()
            operation["status"] = status
            operation["updatedAt"] = now
            operation["finishedAt"] = now
            operation["durationMs"] = duration_ms
            if error:
                operation["error"] = error
            self._active_operation_ids.discard(operation_id)

        if status == "failed":
            logger.error("Operation failed [%s]: %s", operation_id, error)
        else:
            logger.info("Operation finished [%s] status=%s", operation_id, status)

    # ── Public operations ───────────────────────────────────────────

    async def sync_all(self, options: SyncOptions | None = None, *, trigger: str = "api") -> SyncResult:
        """Full sync, or incremental when ``options.incremental`` is set."""
        options = options or SyncOptions()
        if options.incremental:
            return await self.sync_incremental(options, trigger=trigger)

        try:
            all_files = await self.discovery.list_files()
        except Exception as exc:
            return await self._aborted("full_sync", options, exc)
        candidates = _cap(self.discovery.diff(all_files, None).new, options.max_files)
        return await self._run(
            "full_sync",
            candidates,
            options,
            trigger=trigger,
            files_discovered=len(all_files),
            advance_watermark=True,
        )

    async def sync_incremental(self, options: SyncOptions | None = None, *, trigger: str = "api") -> SyncResult:
        """Process files changed since the last completed run.

        Without a stored watermark this is exactly a full sync.
        """
        options = options or SyncOptions()
        try:
            checkpoint = await self.sync_repo.get(self.sync_key)
            watermark = checkpoint.last_sync_timestamp if checkpoint else None
            if watermark is not None:
                known = await self.writer.known_source_files()
                diff = await self.discovery.find_new_and_updated(watermark, known)
        except Exception as exc:
            return await self._aborted("incremental_sync", options, exc)

        if watermark is None:
            logger.info("No sync checkpoint found, running full sync")
            return await self.sync_all(options.model_copy(update={"incremental": False}), trigger=trigger)

        candidates = _cap(diff.to_process, options.max_files)
        logger.info(
            "Incremental sync since %s: %d new, %d updated",
            watermark.isoformat(),
            len(diff.new),
            len(diff.updated),
        )
        return await self._run(
            "incremental_sync",
            candidates,
            options,
            trigger=trigger,
            files_discovered=len(diff.all),
            advance_watermark=True,
        )

    async def sync_files(
        self,
        paths: Iterable[Path | str],
        options: SyncOptions | None = None,
        *,
        trigger: str = "api",
    ) -> SyncResult:
        """Sync an explicit file list. The stored watermark is left unchanged."""
        options = options or SyncOptions()
        candidates: list[FileInfo] = []
        unreadable: list[FailedFile] = []
        for path in paths:
            info = await self.discovery.get_file_info(path)
            if info is None:
                logger.warning("Skipping %s: not a readable session file", path)
                unreadable.append(
                    FailedFile(
                        file_path=str(path),
                        errors=[
                            ParseError(
                                file_path=str(path),
                                error_type=ParseErrorType.FILE_ACCESS,
                                message="File not found or not a session log",
                            )
                        ],
                    )
                )
            else:
                candidates.append(info)
        candidates = _cap(candidates, options.max_files)
        return await self._run(
            "file_sync",
            candidates,
            options,
            trigger=trigger,
            files_discovered=len(candidates),
            advance_watermark=False,
            failed_files=unreadable,
        )

    async def preview_incremental_sync(self) -> IncrementalPreview:
        """Report what an incremental run would process. Nothing is written."""
        checkpoint = await self.sync_repo.get(self.sync_key)
        watermark = checkpoint.last_sync_timestamp if checkpoint else None
        known = await self.writer.known_source_files() if watermark else None
        diff = await self.discovery.find_new_and_updated(watermark, known)
        return IncrementalPreview(
            last_sync=watermark,
            new_files=diff.new,
            updated_files=diff.updated,
            total_files=len(diff.all),
            estimated_sessions=len(diff.to_process),
        )

    async def get_checkpoint(self) -> SyncMetadata | None:
        return await self.sync_repo.get(self.sync_key)

    async def get_sync_status(self) -> dict[str, Any]:
        checkpoint = await self.sync_repo.get(self.sync_key)
        async with self._ops_lock:
            active = [
                copy.deepcopy(self._operations[op_id])
                for op_id in self._operation_order
                if op_id in self._active_operation_ids and op_id in self._operations
            ]
        return {
            "checkpoint": checkpoint.model_dump(mode="json") if checkpoint else None,
            "files": await self.discovery.file_stats(),
            "database": await self.writer.session_stats(),
            "progress": self.progress.current.model_dump(mode="json", by_alias=True),
            "activeOperations": active,
        }

    async def reset_checkpoint(self) -> None:
        """Clear the watermark so the next incremental run is a full sync."""
        await self.sync_repo.reset(self.sync_key, utc_now())
        logger.info("Sync checkpoint %s reset", self.sync_key)

    # ── Pipeline ────────────────────────────────────────────────────

    async def _run(
        self,
        kind: str,
        files: list[FileInfo],
        options: SyncOptions,
        *,
        trigger: str,
        files_discovered: int,
        advance_watermark: bool,
        failed_files: list[FailedFile] | None = None,
    ) -> SyncResult:
        started_at = utc_now()
        t0 = time.monotonic()
        result = SyncResult(timing=SyncTiming(started_at=started_at))
        result.details.files_discovered = files_discovered
        result.details.failed_files.extend(failed_files or [])
        result.summary.new_files = sum(1 for info in files if not info.is_updated)
        result.summary.updated_files = sum(1 for info in files if info.is_updated)

        if not options.dry_run:
            stale_before = started_at - timedelta(seconds=self.stale_after_seconds)
            try:
                acquired = await self.sync_repo.try_begin(self.sync_key, started_at, stale_before)
            except Exception as exc:
                return await self._aborted(kind, options, exc)
            if not acquired:
                logger.warning("Sync %s refused: another run holds the checkpoint", kind)
                result.details.insertion_errors.append(
                    InsertionError(entity_type="sync_process", error="Another sync is already in progress")
                )
                return self._finalize(result, t0)

        op_id = await self._start_operation(
            kind,
            trigger,
            {"files": len(files), "dryRun": options.dry_run, "skipExisting": options.skip_existing},
        )
        await self.progress.start(len(files))

        crashed = False
        with otel.start_span(f"sync.{kind}", {"files": len(files), "dry_run": options.dry_run}):
            try:
                for info in files:
                    await self._process_file(info, options, result)
                    await self._update_operation(
                        op_id,
                        {
                            "filesProcessed": result.summary.files_processed,
                            "sessionsInserted": result.summary.sessions_inserted,
                            "errors": len(result.parse_errors) + len(result.details.insertion_errors),
                        },
                    )
            except Exception as exc:
                logger.exception("Sync %s aborted", kind)
                crashed = True
                result.details.insertion_errors.append(InsertionError(entity_type="sync_process", error=str(exc)))

        self._finalize(result, t0)
        completed = not crashed and not result.details.insertion_errors
        if not options.dry_run:
            await self._persist_checkpoint(result, completed=completed, advance_watermark=advance_watermark)

        await self.progress.finish(success=result.success)
        await self._finish_operation(
            op_id,
            status="completed" if completed else "failed",
            duration_ms=result.timing.duration_ms,
            error=_error_summary(result) or "",
        )
        logger.info(
            "Sync %s finished: %d files, %d sessions inserted, %d duplicates, %d errors in %dms",
            kind,
            result.summary.files_processed,
            result.summary.sessions_inserted,
            result.summary.duplicates_skipped,
            result.summary.errors,
            result.timing.duration_ms,
        )
        return result

    def _finalize(self, result: SyncResult, t0: float) -> SyncResult:
        result.summary.errors = len(result.parse_errors) + len(result.details.insertion_errors)
        result.success = result.summary.errors == 0
        result.timing.finished_at = utc_now()
        result.timing.duration_ms = int((time.monotonic() - t0) * 1000)
        return result

    async def _persist_checkpoint(self, result: SyncResult, *, completed: bool, advance_watermark: bool) -> None:
        watermark = result.timing.started_at if completed and advance_watermark else None
        try:
            await self.sync_repo.finish(
                self.sync_key,
                status=SyncStatus.COMPLETED if completed else SyncStatus.FAILED,
                files_processed=result.summary.files_processed,
                sessions_processed=len(result.details.session_ids),
                error_message=_error_summary(result),
                last_sync_timestamp=watermark,
                now=utc_now(),
            )
        except Exception as exc:
            logger.exception("Failed to persist sync checkpoint")
            result.details.insertion_errors.append(InsertionError(entity_type="sync_process", error=str(exc)))
            result.summary.errors += 1
            result.success = False

    async def _aborted(self, kind: str, options: SyncOptions, exc: Exception) -> SyncResult:
        """Failed result for a run that could not start because the store or discovery failed."""
        logger.exception("Sync %s could not start", kind)
        result = SyncResult(timing=SyncTiming(started_at=utc_now()))
        result.details.insertion_errors.append(InsertionError(entity_type="sync_process", error=str(exc)))
        self._finalize(result, time.monotonic())
        if not options.dry_run:
            await self._mark_failed(result)
        return result

    async def _mark_failed(self, result: SyncResult) -> None:
        try:
            current = await self.sync_repo.get(self.sync_key)
            if current is not None and current.sync_status == SyncStatus.IN_PROGRESS:
                # Never release a checkpoint held by another run.
                logger.warning("Sync checkpoint %s is held by another run; not marking failed", self.sync_key)
                return
            await self.sync_repo.finish(
                self.sync_key,
                status=SyncStatus.FAILED,
                files_processed=0,
                sessions_processed=0,
                error_message=_error_summary(result),
                last_sync_timestamp=None,
                now=utc_now(),
            )
        except Exception:
            # The store is usually what failed; the result already carries the error.
            logger.exception("Failed to record failed sync checkpoint")

    async def _process_file(self, info: FileInfo, options: SyncOptions, result: SyncResult) -> None:
        await self.progress.file_started(info.path)
        t0 = time.monotonic()
        try:
            parsed = await asyncio.to_thread(
                parse_session_file,
                info.path,
                extended_threshold=self.extended_threshold,
                autonomy_threshold=self.autonomy_threshold,
            )
        except Exception as exc:
            # Parser crashes stay per-file.
            logger.exception("Parser crashed on %s", info.path)
            parsed = ParseResult(
                success=False,
                errors=[
                    ParseError(
                        file_path=info.path,
                        error_type=ParseErrorType.INVALID_DATA,
                        message=f"Parser error: {exc}",
                    )
                ],
            )
        result.summary.files_processed += 1
        if parsed.errors:
            result.details.failed_files.append(FailedFile(file_path=info.path, errors=parsed.errors))
        for warning in parsed.warnings:
            logger.debug("%s: %s", info.path, warning)

        bundle = parsed.data
        if not parsed.success or bundle is None:
            project = Path(info.path).parent.name
            otel.record_parser_failure("session", project=project)
            otel.record_ingestion("session", "parse_failed", (time.monotonic() - t0) * 1000, project=project)
            logger.warning("Failed to parse %s (%d errors)", info.path, len(parsed.errors))
            await self.progress.file_finished(errors=len(parsed.errors))
            return

        session = bundle.session
        outcome = await self._write(bundle, options, result)
        otel.record_ingestion("session", outcome, (time.monotonic() - t0) * 1000, project=session.project_name)
        await self.progress.file_finished(
            sessions=1 if outcome in ("inserted", "updated") else 0,
            messages=len(bundle.messages) if outcome in ("inserted", "updated") else 0,
            errors=len(parsed.errors) + (1 if outcome == "failed" else 0),
        )

    async def _write(self, bundle: SessionBundle, options: SyncOptions, result: SyncResult) -> str:
        session = bundle.session
        summary = result.summary

        if options.skip_existing:
            if session.session_id in await self.writer.existing_session_ids([session.session_id]):
                summary.duplicates_skipped += 1
                return "skipped"

        if options.skip_unchanged:
            resolution = await self.writer.resolve_conflicts([session])
            if resolution.to_skip:
                summary.duplicates_skipped += 1
                return "skipped"

        if options.dry_run:
            exists = session.session_id in await self.writer.existing_session_ids([session.session_id])
            if exists:
                summary.duplicates_skipped += 1
            else:
                summary.sessions_inserted += 1
            summary.messages_inserted += len(bundle.messages)
            summary.metrics_inserted += 1
            result.details.session_ids.append(session.session_id)
            return "updated" if exists else "inserted"

        written = await self.writer.batch_insert_sessions([bundle])
        if written.errors:
            result.details.insertion_errors.extend(written.errors)
            return "failed"

        summary.sessions_inserted += written.inserted.sessions
        summary.messages_inserted += written.inserted.messages
        summary.metrics_inserted += written.inserted.metrics
        summary.duplicates_skipped += written.duplicates_skipped
        result.details.session_ids.append(session.session_id)
        otel.record_token_cost(
            project=session.project_name,
            model=session.model_name,
            token_input=session.total_input_tokens,
            token_output=session.total_output_tokens,
            cost_usd=session.total_cost_usd,
        )
        return "inserted" if written.inserted.sessions else "updated"
