#!/usr/bin/env python3
"""Run sync and retention operations from the command line.

Usage:
  ccanalytics-sync sync
  ccanalytics-sync sync --incremental --max-files 50
  ccanalytics-sync sync --files ~/.claude/projects/demo/abc.jsonl
  ccanalytics-sync preview
  ccanalytics-sync --json status
  ccanalytics-sync cleanup --dry-run --retention-days 30
  ccanalytics-sync retention-stats
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from ccanalytics import config
from ccanalytics.db import connection, migrations
from ccanalytics.db.retention import DataRetentionManager
from ccanalytics.db.sync_engine import SyncEngine
from ccanalytics.file_discovery import FileDiscoveryService
from ccanalytics.models import SyncOptions, SyncResult


def _dump(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _print_sync_result(result: SyncResult) -> None:
    summary = result.summary
    print(
        f"success={result.success} files={summary.files_processed} "
        f"new={summary.new_files} updated={summary.updated_files} "
        f"sessions_inserted={summary.sessions_inserted} messages_inserted={summary.messages_inserted} "
        f"duplicates_skipped={summary.duplicates_skipped} errors={summary.errors} "
        f"duration_ms={result.timing.duration_ms}"
    )
    for failed in result.details.failed_files:
        for error in failed.errors:
            location = f"{failed.file_path}:{error.line_number}" if error.line_number else failed.file_path
            print(f"  {error.error_type.value} {location} {error.message}")
    for error in result.details.insertion_errors:
        print(f"  {error.entity_type} {error.session_id or '-'} {error.error}")


async def _cmd_sync(args: argparse.Namespace, engine: SyncEngine) -> int:
    options = SyncOptions(
        dry_run=args.dry_run,
        max_files=args.max_files,
        skip_existing=args.skip_existing,
        skip_unchanged=args.skip_unchanged,
        incremental=args.incremental,
    )
    if args.files:
        result = await engine.sync_files([Path(p).expanduser() for p in args.files], options, trigger="cli")
    else:
        result = await engine.sync_all(options, trigger="cli")
    if args.json:
        _dump(result.model_dump(mode="json"))
    else:
        _print_sync_result(result)
    return 0 if result.success else 1


async def _cmd_preview(args: argparse.Namespace, engine: SyncEngine) -> int:
    preview = await engine.preview_incremental_sync()
    if args.json:
        _dump(preview.model_dump(mode="json"))
        return 0
    print(f"last_sync={preview.last_sync.isoformat() if preview.last_sync else 'never'}")
    print(
        f"total_files={preview.total_files} new={len(preview.new_files)} "
        f"updated={len(preview.updated_files)} estimated_sessions={preview.estimated_sessions}"
    )
    for info in preview.new_files:
        print(f"  + {info.path}")
    for info in preview.updated_files:
        print(f"  ~ {info.path}")
    return 0


async def _cmd_status(args: argparse.Namespace, engine: SyncEngine) -> int:
    _dump(await engine.get_sync_status())
    return 0


async def _cmd_reset(args: argparse.Namespace, engine: SyncEngine) -> int:
    await engine.reset_checkpoint()
    print("Sync checkpoint reset; the next incremental sync runs in full.")
    return 0


def _retention_policy(args: argparse.Namespace, manager: DataRetentionManager):
    overrides = {
        "retention_days": args.retention_days,
        "message_retention_days": args.message_retention_days,
        "metrics_retention_days": args.metrics_retention_days,
        "sync_retention_days": args.sync_retention_days,
        "batch_size": args.batch_size,
    }
    update = {key: value for key, value in overrides.items() if value is not None}
    update["dry_run"] = bool(getattr(args, "dry_run", False))
    return manager.default.model_copy(update=update)


async def _cmd_cleanup(args: argparse.Namespace, manager: DataRetentionManager) -> int:
    result = await manager.cleanup(_retention_policy(args, manager))
    if args.json:
        _dump(result.model_dump(mode="json"))
    else:
        verb = "would delete" if result.dry_run else "deleted"
        for table, count in result.deleted.items():
            print(f"{table}: {verb} {count}")
        for error in result.errors:
            print(f"  error: {error}")
        print(f"vacuumed={result.vacuumed} duration_ms={result.duration_ms}")
    return 0 if result.success else 1


async def _cmd_retention_stats(args: argparse.Namespace, manager: DataRetentionManager) -> int:
    policy = _retention_policy(args, manager)
    stats = await manager.get_stats(policy)
    report = await manager.validate_policy(policy)
    if args.json:
        _dump({"stats": stats.model_dump(mode="json"), "policy": report.model_dump(mode="json")})
        return 0
    for table in stats.tables:
        print(
            f"{table.table}: total={table.total_records} eligible={table.eligible_for_deletion} "
            f"oldest={table.oldest_record or '-'} size_bytes={table.size_bytes if table.size_bytes is not None else '-'}"
        )
    print(f"total_eligible={stats.total_eligible_records}")
    for warning in report.warnings:
        print(f"  warning: {warning}")
    for recommendation in report.recommendations:
        print(f"  recommendation: {recommendation}")
    return 0


def _add_retention_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--retention-days", type=int, default=None)
    parser.add_argument("--message-retention-days", type=int, default=None)
    parser.add_argument("--metrics-retention-days", type=int, default=None)
    parser.add_argument("--sync-retention-days", type=int, default=None)
    parser.add_argument("--batch-size", type=int, default=None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ccanalytics-sync")
    parser.add_argument("--sessions-dir", default="", help=f"Session log root (default: {config.SESSIONS_DIR})")
    parser.add_argument("--db-backend", default="", choices=["", "sqlite", "postgres"])
    parser.add_argument("--db-path", default="", help="SQLite database path")
    parser.add_argument("--json", action="store_true", help="Emit JSON output")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync", help="Run a full or incremental sync")
    sync.add_argument("--dry-run", action="store_true")
    sync.add_argument("--max-files", type=int, default=None)
    sync.add_argument("--skip-existing", action="store_true")
    sync.add_argument("--skip-unchanged", action="store_true")
    sync.add_argument("--incremental", action="store_true")
    sync.add_argument("--files", nargs="+", default=None, help="Sync only these files")

    sub.add_parser("preview", help="Show what an incremental sync would process")
    sub.add_parser("status", help="Show checkpoint and totals")
    sub.add_parser("reset", help="Clear the sync watermark")

    cleanup = sub.add_parser("cleanup", help="Delete rows past their retention period")
    cleanup.add_argument("--dry-run", action="store_true")
    _add_retention_args(cleanup)

    stats = sub.add_parser("retention-stats", help="Show retention eligibility per table")
    _add_retention_args(stats)
    return parser


async def _run(args: argparse.Namespace) -> int:
    db = await connection.open_connection(args.db_backend or None, path=args.db_path or None)
    try:
        await migrations.run_migrations(db)
        if args.command in ("cleanup", "retention-stats"):
            manager = DataRetentionManager(db)
            handler = _cmd_cleanup if args.command == "cleanup" else _cmd_retention_stats
            return await handler(args, manager)

        discovery = FileDiscoveryService(args.sessions_dir or config.SESSIONS_DIR)
        engine = SyncEngine(db, discovery=discovery)
        handlers = {
            "sync": _cmd_sync,
            "preview": _cmd_preview,
            "status": _cmd_status,
            "reset": _cmd_reset,
        }
        return await handlers[args.command](args, engine)
    finally:
        await connection.close_connection(db)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if getattr(args, "max_files", None) is not None and args.max_files < 1:
        build_parser().error("--max-files must be at least 1")
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
