"""Age-based data retention.

Tables are swept in a fixed order, dependents before their parent and the
sync checkpoint last. Each sweep deletes in bounded batches with a pause in
between so a running sync is never locked out for long.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from ccanalytics import config
from ccanalytics import observability as otel
from ccanalytics.date_utils import from_storage, utc_now
from ccanalytics.db.factory import get_retention_repository
from ccanalytics.models import (
    RetentionConfig,
    RetentionPolicyReport,
    RetentionResult,
    RetentionStats,
    RetentionTableStats,
)

logger = logging.getLogger("ccanalytics.retention")

_LARGE_CLEANUP_THRESHOLD = 10_000


@dataclass(frozen=True)
class _TablePlan:
    table: str
    column: str
    days_field: str
    id_column: str
    optional: bool = False


_PLAN: tuple[_TablePlan, ...] = (
    _TablePlan("checkpoints", "created_at", "retention_days", "checkpoint_id", optional=True),
    _TablePlan("background_tasks", "started_at", "retention_days", "task_id", optional=True),
    _TablePlan("subagents", "started_at", "retention_days", "subagent_id", optional=True),
    _TablePlan("vscode_integrations", "started_at", "retention_days", "integration_id", optional=True),
    _TablePlan("raw_messages", "timestamp", "message_retention_days", "id"),
    _TablePlan("session_metrics", "created_at", "metrics_retention_days", "session_id"),
    _TablePlan("sessions", "started_at", "retention_days", "session_id"),
    _TablePlan("sync_metadata", "updated_at", "sync_retention_days", "sync_key"),
)

_OLDEST_TABLES = ("sessions", "raw_messages", "session_metrics")


def default_config() -> RetentionConfig:
    """Retention policy from the environment."""
    return RetentionConfig(
        retention_days=config.RETENTION_DAYS,
        message_retention_days=config.MESSAGE_RETENTION_DAYS,
        metrics_retention_days=config.METRICS_RETENTION_DAYS,
        sync_retention_days=config.SYNC_RETENTION_DAYS,
        batch_size=config.RETENTION_BATCH_SIZE,
        batch_pause_seconds=config.RETENTION_BATCH_PAUSE_SECONDS,
    )


class DataRetentionManager:
    def __init__(self, db: Any, default: RetentionConfig | None = None):
        self.db = db
        self.repo = get_retention_repository(db)
        self.default = default or default_config()

    async def _tables(self) -> list[_TablePlan]:
        plans = []
        for plan in _PLAN:
            if plan.optional and not await self.repo.table_exists(plan.table):
                continue
            plans.append(plan)
        return plans

    @staticmethod
    def _cutoff(policy: RetentionConfig, plan: _TablePlan, now: datetime) -> datetime:
        return now - timedelta(days=getattr(policy, plan.days_field))

    async def get_stats(self, policy: RetentionConfig | None = None) -> RetentionStats:
        policy = policy or self.default
        now = utc_now()
        stats = RetentionStats()
        for plan in await self._tables():
            row = await self.repo.table_stats(plan.table, plan.column, self._cutoff(policy, plan, now))
            table_stats = RetentionTableStats(
                table=plan.table,
                total_records=row["total"],
                eligible_for_deletion=row["eligible"],
                oldest_record=row["oldest"],
                newest_record=row["newest"],
                size_bytes=await self.repo.table_size(plan.table),
            )
            stats.tables.append(table_stats)
            stats.total_eligible_records += table_stats.eligible_for_deletion
        return stats

    async def cleanup(self, policy: RetentionConfig | None = None) -> RetentionResult:
        """Delete rows older than each table's cutoff. ``dry_run`` only counts."""
        policy = policy or self.default
        t0 = time.monotonic()
        now = utc_now()
        result = RetentionResult(dry_run=policy.dry_run)

        with otel.start_span("retention.cleanup", {"dry_run": policy.dry_run}):
            for plan in await self._tables():
                try:
                    result.deleted[plan.table] = await self._sweep(plan, self._cutoff(policy, plan, now), policy)
                except Exception as exc:
                    logger.exception("Retention sweep of %s failed", plan.table)
                    result.errors.append(f"{plan.table}: {exc}")

            total_deleted = sum(result.deleted.values())
            if not policy.dry_run and total_deleted > 0:
                try:
                    await self.repo.reclaim_space()
                    result.vacuumed = True
                except Exception as exc:
                    logger.exception("Space reclamation failed")
                    result.errors.append(f"vacuum: {exc}")

        result.success = not result.errors
        result.duration_ms = int((time.monotonic() - t0) * 1000)
        logger.info(
            "Retention cleanup%s: %d rows %s across %d tables in %dms",
            " (dry run)" if policy.dry_run else "",
            sum(result.deleted.values()),
            "eligible" if policy.dry_run else "deleted",
            len(result.deleted),
            result.duration_ms,
        )
        return result

    async def _sweep(self, plan: _TablePlan, cutoff: datetime, policy: RetentionConfig) -> int:
        eligible = await self.repo.count_eligible(plan.table, plan.column, cutoff)
        if policy.dry_run or eligible == 0:
            return eligible

        deleted = 0
        while deleted < eligible:
            batch = await self.repo.delete_batch(
                plan.table, plan.column, cutoff, min(policy.batch_size, eligible - deleted)
            )
            if batch <= 0:
                break
            deleted += batch
            logger.debug("Deleted %d rows from %s (%d/%d)", batch, plan.table, deleted, eligible)
            if deleted < eligible and policy.batch_pause_seconds > 0:
                await asyncio.sleep(policy.batch_pause_seconds)

        otel.record_retention_deleted(plan.table, deleted)
        return deleted

    async def oldest_records(self, limit: int = 10) -> list[dict[str, Any]]:
        """Oldest rows across sessions, messages and metrics, oldest first."""
        now = utc_now()
        records: list[dict[str, Any]] = []
        for plan in _PLAN:
            if plan.table not in _OLDEST_TABLES:
                continue
            for row in await self.repo.oldest_records(plan.table, plan.column, limit):
                date = from_storage(row.get(plan.column))
                if date is None:
                    continue
                records.append(
                    {
                        "table": plan.table,
                        "id": str(row.get(plan.id_column)),
                        "date": date,
                        "ageDays": (now - date).days,
                    }
                )
        records.sort(key=lambda record: record["date"])
        return records[:limit]

    async def validate_policy(self, policy: RetentionConfig | None = None) -> RetentionPolicyReport:
        policy = policy or self.default
        report = RetentionPolicyReport()

        if policy.retention_days < 7:
            report.warnings.append("Session retention period is less than 7 days - this may result in data loss")
        if policy.message_retention_days < policy.retention_days:
            report.warnings.append(
                "Message retention is shorter than session retention - sessions may outlive their messages"
            )
        if policy.metrics_retention_days > policy.retention_days:
            report.warnings.append(
                "Metrics retention is longer than session retention - metrics are removed with their session"
            )

        stats = await self.get_stats(policy)
        if stats.total_eligible_records > _LARGE_CLEANUP_THRESHOLD:
            report.recommendations.append(
                "Large number of records eligible for deletion - consider a smaller batch size"
            )
        if stats.total_eligible_records == 0:
            report.recommendations.append("No records eligible for deletion - retention policy may be too generous")

        report.valid = not report.warnings
        return report
