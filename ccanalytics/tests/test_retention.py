import unittest
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch

import aiosqlite

from ccanalytics.date_utils import utc_now
from ccanalytics.db.repositories.sync_metadata import SqliteSyncMetadataRepository
from ccanalytics.db.retention import DataRetentionManager
from ccanalytics.db.sqlite_migrations import run_migrations
from ccanalytics.db.writer import SessionWriter
from ccanalytics.models import MessageRole, RawMessage, RetentionConfig
from ccanalytics.parsers.sessions import build_session_bundle


def _policy(**overrides) -> RetentionConfig:
    values = {
        "retention_days": 90,
        "message_retention_days": 90,
        "metrics_retention_days": 90,
        "sync_retention_days": 30,
        "batch_pause_seconds": 0,
    }
    values.update(overrides)
    return RetentionConfig(**values)


class RetentionTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db, extended=True)
        self.writer = SessionWriter(self.db)
        self.manager = DataRetentionManager(self.db, _policy())
        self.now = utc_now()

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def _session(self, name: str, age_days: int, *, checkpoint: str | None = None) -> None:
        start = self.now - timedelta(days=age_days)
        messages = [
            RawMessage(line_number=1, role=MessageRole.USER, content="q", timestamp=start, checkpoint_id=checkpoint),
            RawMessage(line_number=2, role=MessageRole.ASSISTANT, content="a", timestamp=start + timedelta(minutes=1)),
        ]
        await self.writer.insert_session(build_session_bundle(Path(f"/logs/demo/{name}.jsonl"), messages))

    async def _count(self, table: str) -> int:
        async with self.db.execute(f"SELECT COUNT(*) FROM {table}") as cur:
            return (await cur.fetchone())[0]

    async def test_dry_run_reports_without_deleting(self) -> None:
        await self._session("old", 200, checkpoint="cp-old")
        await self._session("recent", 1)

        result = await self.manager.cleanup(_policy(dry_run=True))

        self.assertTrue(result.dry_run)
        self.assertTrue(result.success)
        self.assertEqual(result.deleted["sessions"], 1)
        self.assertEqual(result.deleted["raw_messages"], 2)
        self.assertEqual(result.deleted["checkpoints"], 1)
        self.assertFalse(result.vacuumed)
        self.assertEqual(await self._count("sessions"), 2)
        self.assertEqual(await self._count("raw_messages"), 4)
        self.assertEqual(await self._count("checkpoints"), 1)

    async def test_cleanup_deletes_rows_older_than_cutoff(self) -> None:
        await self._session("old", 200, checkpoint="cp-old")
        await self._session("recent", 1, checkpoint="cp-new")

        result = await self.manager.cleanup()

        self.assertTrue(result.success)
        self.assertEqual(
            result.deleted,
            {
                "checkpoints": 1,
                "background_tasks": 0,
                "subagents": 0,
                "vscode_integrations": 0,
                "raw_messages": 2,
                "session_metrics": 0,
                "sessions": 1,
                "sync_metadata": 0,
            },
        )
        self.assertTrue(result.vacuumed)
        async with self.db.execute("SELECT session_id FROM sessions") as cur:
            self.assertEqual([r[0] for r in await cur.fetchall()], ["session_recent"])
        self.assertEqual(await self._count("raw_messages"), 2)
        self.assertEqual(await self._count("checkpoints"), 1)

    async def test_per_table_retention_periods(self) -> None:
        await self._session("mid", 60)

        result = await self.manager.cleanup(_policy(message_retention_days=30))

        self.assertEqual(result.deleted["raw_messages"], 2)
        self.assertEqual(result.deleted["sessions"], 0)
        self.assertEqual(await self._count("sessions"), 1)

    async def test_stale_sync_rows_are_removed(self) -> None:
        old = self.now - timedelta(days=45)
        await SqliteSyncMetadataRepository(self.db).try_begin("stale-key", old, old)

        result = await self.manager.cleanup()

        self.assertEqual(result.deleted["sync_metadata"], 1)
        self.assertEqual(await self._count("sync_metadata"), 0)

    async def test_deletes_in_bounded_batches(self) -> None:
        for i in range(5):
            await self._session(f"old{i}", 120 + i)

        with patch.object(self.manager.repo, "delete_batch", wraps=self.manager.repo.delete_batch) as delete_batch:
            result = await self.manager.cleanup(_policy(batch_size=2))

        self.assertEqual(result.deleted["sessions"], 5)
        self.assertEqual(result.deleted["raw_messages"], 10)
        session_limits = [c.args[3] for c in delete_batch.call_args_list if c.args[0] == "sessions"]
        self.assertEqual(session_limits, [2, 2, 1])
        self.assertEqual(await self._count("sessions"), 0)

    async def test_failed_table_is_reported_and_others_continue(self) -> None:
        await self._session("old", 200)
        original = self.manager.repo.delete_batch

        async def _fail_messages(table, column, cutoff, limit):
            if table == "raw_messages":
                raise aiosqlite.OperationalError("database is locked")
            return await original(table, column, cutoff, limit)

        with patch.object(self.manager.repo, "delete_batch", side_effect=_fail_messages):
            with self.assertLogs("ccanalytics.retention", level="ERROR"):
                result = await self.manager.cleanup()

        self.assertFalse(result.success)
        self.assertEqual(result.errors, ["raw_messages: database is locked"])
        self.assertNotIn("raw_messages", result.deleted)
        self.assertEqual(result.deleted["sessions"], 1)

    async def test_stats(self) -> None:
        await self._session("old", 200)
        await self._session("recent", 1)

        stats = await self.manager.get_stats()

        by_table = {t.table: t for t in stats.tables}
        self.assertEqual(by_table["sessions"].total_records, 2)
        self.assertEqual(by_table["sessions"].eligible_for_deletion, 1)
        self.assertLess(by_table["sessions"].oldest_record, by_table["sessions"].newest_record)
        self.assertEqual(by_table["raw_messages"].eligible_for_deletion, 2)
        self.assertEqual(stats.total_eligible_records, 3)

    async def test_oldest_records(self) -> None:
        await self._session("old", 200)
        await self._session("recent", 1)

        records = await self.manager.oldest_records(limit=3)

        self.assertEqual(len(records), 3)
        dates = [r["date"] for r in records]
        self.assertEqual(dates, sorted(dates))
        self.assertEqual(records[0]["ageDays"], 200)
        self.assertIn(records[0]["table"], ("sessions", "raw_messages"))

    async def test_validate_policy_warnings(self) -> None:
        report = await self.manager.validate_policy(
            _policy(retention_days=3, message_retention_days=2, metrics_retention_days=10)
        )

        self.assertFalse(report.valid)
        self.assertEqual(len(report.warnings), 3)
        self.assertIn("No records eligible for deletion - retention policy may be too generous", report.recommendations)

    async def test_validate_policy_accepts_sane_defaults(self) -> None:
        await self._session("old", 200)
        report = await self.manager.validate_policy()
        self.assertTrue(report.valid)
        self.assertEqual(report.warnings, [])
        self.assertEqual(report.recommendations, [])


if __name__ == "__main__":
    unittest.main()
