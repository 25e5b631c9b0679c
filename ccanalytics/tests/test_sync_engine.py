import json
import os
import tempfile
import unittest
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import aiosqlite

from ccanalytics.date_utils import to_storage, utc_now
from ccanalytics.db.repositories.sessions import SqliteSessionRepository
from ccanalytics.db.sqlite_migrations import run_migrations
from ccanalytics.db.sync_engine import SyncEngine
from ccanalytics.file_discovery import FileDiscoveryService
from ccanalytics.models import ParseErrorType, SyncOptions, SyncStatus
from ccanalytics.parsers.sessions import parse_session_file


def _lines(start: str, count: int = 2) -> list[dict]:
    base = datetime.fromisoformat(start.replace("Z", "+00:00"))
    return [
        {
            "role": "user" if i % 2 == 0 else "assistant",
            "content": f"message {i}",
            "timestamp": (base + timedelta(seconds=10 * i)).isoformat(),
            "tokens": {"input": 10, "output": 5 * i},
        }
        for i in range(count)
    ]


class SyncEngineTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.root = Path(tmpdir.name) / "projects"
        self.root.mkdir()
        self.db = await self._open_db()
        self.engine = SyncEngine(self.db, discovery=FileDiscoveryService(self.root))

    async def _open_db(self) -> aiosqlite.Connection:
        db = await aiosqlite.connect(":memory:")
        db.row_factory = aiosqlite.Row
        await run_migrations(db, extended=True)
        self.addAsyncCleanup(db.close)
        return db

    def _write(self, name: str, lines: list, *, age: timedelta = timedelta(days=1)) -> Path:
        path = self.root / "demo" / f"{name}.jsonl"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("\n".join(l if isinstance(l, str) else json.dumps(l) for l in lines), encoding="utf-8")
        stamp = (utc_now() - age).timestamp()
        os.utime(path, (stamp, stamp))
        return path

    def _seed(self) -> None:
        self._write("alpha", _lines("2026-02-16T10:00:00Z", 2))
        self._write("beta", _lines("2026-02-16T11:00:00Z", 3))
        self._write("broken", ["{", "nope"])

    async def _count(self, table: str, db=None) -> int:
        async with (db or self.db).execute(f"SELECT COUNT(*) FROM {table}") as cur:
            return (await cur.fetchone())[0]

    async def test_full_sync_writes_sessions_and_checkpoint(self) -> None:
        self._seed()

        result = await self.engine.sync_all()

        summary = result.summary
        self.assertEqual(summary.files_processed, 3)
        self.assertEqual(summary.new_files, 3)
        self.assertEqual(summary.sessions_inserted, 2)
        self.assertEqual(summary.messages_inserted, 5)
        self.assertEqual(summary.metrics_inserted, 2)
        self.assertEqual(result.details.files_discovered, 3)
        self.assertEqual(sorted(result.details.session_ids), ["session_alpha", "session_beta"])
        # The broken file is a data problem: reported, but the run still completes.
        self.assertFalse(result.success)
        self.assertEqual(len(result.details.failed_files), 1)
        self.assertEqual(
            [e.error_type for e in result.parse_errors],
            [ParseErrorType.MALFORMED_JSON, ParseErrorType.MALFORMED_JSON, ParseErrorType.INVALID_DATA],
        )
        self.assertEqual(summary.errors, 3)

        checkpoint = await self.engine.get_checkpoint()
        self.assertEqual(checkpoint.sync_status, SyncStatus.COMPLETED)
        self.assertEqual(checkpoint.files_processed, 3)
        self.assertEqual(checkpoint.sessions_processed, 2)
        self.assertEqual(to_storage(checkpoint.last_sync_timestamp), to_storage(result.timing.started_at))
        self.assertEqual(await self._count("sessions"), 2)

    async def test_clean_run_is_successful(self) -> None:
        self._write("alpha", _lines("2026-02-16T10:00:00Z"))
        result = await self.engine.sync_all()
        self.assertTrue(result.success)
        self.assertEqual(result.summary.errors, 0)

    async def test_sync_files_twice_is_idempotent(self) -> None:
        paths = [
            self._write("alpha", _lines("2026-02-16T10:00:00Z", 2)),
            self._write("beta", _lines("2026-02-16T11:00:00Z", 4)),
        ]
        repo = SqliteSessionRepository(self.db)

        first = await self.engine.sync_files(paths)
        before = [await repo.get_session(s) for s in ("session_alpha", "session_beta")]
        before_metrics = [await repo.get_metrics(s) for s in ("session_alpha", "session_beta")]
        second = await self.engine.sync_files(paths)

        self.assertEqual(first.summary.sessions_inserted, 2)
        self.assertEqual(second.summary.sessions_inserted, 0)
        self.assertEqual(second.summary.duplicates_skipped, 2)
        self.assertEqual(second.summary.messages_inserted, 6)
        after = [await repo.get_session(s) for s in ("session_alpha", "session_beta")]
        after_metrics = [await repo.get_metrics(s) for s in ("session_alpha", "session_beta")]
        for old, new in zip(before, after):
            old.pop("updated_at")
            new.pop("updated_at")
            self.assertEqual(old, new)
        self.assertEqual(before_metrics, after_metrics)
        self.assertEqual(await self._count("raw_messages"), 6)

    async def test_sync_files_does_not_move_watermark(self) -> None:
        path = self._write("alpha", _lines("2026-02-16T10:00:00Z"))
        await self.engine.sync_files([path])
        checkpoint = await self.engine.get_checkpoint()
        self.assertEqual(checkpoint.sync_status, SyncStatus.COMPLETED)
        self.assertIsNone(checkpoint.last_sync_timestamp)

    async def test_sync_files_reports_unreadable_paths(self) -> None:
        result = await self.engine.sync_files([self.root / "demo" / "missing.jsonl"])
        self.assertFalse(result.success)
        self.assertEqual(result.summary.files_processed, 0)
        self.assertEqual(result.parse_errors[0].error_type, ParseErrorType.FILE_ACCESS)

    async def test_dry_run_matches_real_run_without_writing(self) -> None:
        self._seed()

        dry = await self.engine.sync_all(SyncOptions(dry_run=True))

        self.assertEqual(await self._count("sessions"), 0)
        self.assertEqual(await self._count("raw_messages"), 0)
        self.assertEqual(await self._count("sync_metadata"), 0)

        real = await self.engine.sync_all()
        self.assertEqual(dry.summary.model_dump(), real.summary.model_dump())

    async def test_incremental_without_checkpoint_equals_full_sync(self) -> None:
        self._seed()
        other_db = await self._open_db()
        other = SyncEngine(other_db, discovery=FileDiscoveryService(self.root))

        incremental = await self.engine.sync_all(SyncOptions(incremental=True))
        full = await other.sync_all()

        self.assertEqual(incremental.summary.model_dump(), full.summary.model_dump())
        self.assertEqual(incremental.details.session_ids, full.details.session_ids)
        self.assertIsNotNone((await self.engine.get_checkpoint()).last_sync_timestamp)

    async def test_incremental_processes_only_changed_files(self) -> None:
        self._seed()
        await self.engine.sync_all()

        self._write("beta", _lines("2026-02-16T11:00:00Z", 5), age=-timedelta(hours=1))
        self._write("gamma", _lines("2026-02-16T12:00:00Z", 2), age=-timedelta(hours=1))

        preview = await self.engine.preview_incremental_sync()
        self.assertEqual([Path(f.path).name for f in preview.updated_files], ["beta.jsonl"])
        self.assertEqual([Path(f.path).name for f in preview.new_files], ["gamma.jsonl"])
        self.assertEqual(preview.estimated_sessions, 2)
        self.assertEqual(preview.total_files, 4)

        result = await self.engine.sync_incremental()

        self.assertEqual(result.summary.files_processed, 2)
        self.assertEqual(result.summary.new_files, 1)
        self.assertEqual(result.summary.updated_files, 1)
        self.assertEqual(result.summary.sessions_inserted, 1)
        self.assertEqual(result.summary.duplicates_skipped, 1)
        self.assertTrue(result.success)
        self.assertEqual(await self._count("sessions"), 3)

    async def test_reset_checkpoint_forces_full_sync(self) -> None:
        self._seed()
        await self.engine.sync_all()
        await self.engine.reset_checkpoint()

        self.assertIsNone((await self.engine.get_checkpoint()).last_sync_timestamp)
        result = await self.engine.sync_incremental()
        self.assertEqual(result.summary.files_processed, 3)

    async def test_max_files_caps_newest_first(self) -> None:
        self._write("old", _lines("2026-02-16T10:00:00Z"), age=timedelta(days=2))
        self._write("new", _lines("2026-02-16T11:00:00Z"), age=timedelta(hours=2))

        result = await self.engine.sync_all(SyncOptions(max_files=1))

        self.assertEqual(result.summary.files_processed, 1)
        self.assertEqual(result.details.session_ids, ["session_new"])

    async def test_skip_existing_and_skip_unchanged(self) -> None:
        self._seed()
        await self.engine.sync_all()

        existing = await self.engine.sync_all(SyncOptions(skip_existing=True))
        unchanged = await self.engine.sync_all(SyncOptions(skip_unchanged=True))

        for result in (existing, unchanged):
            self.assertEqual(result.summary.sessions_inserted, 0)
            self.assertEqual(result.summary.messages_inserted, 0)
            self.assertEqual(result.summary.duplicates_skipped, 2)

    async def test_pipeline_exception_becomes_failed_checkpoint(self) -> None:
        self._seed()
        events = []
        self.engine.progress.subscribe(events.append)

        with patch.object(self.engine.writer, "batch_insert_sessions", side_effect=RuntimeError("database is locked")):
            result = await self.engine.sync_all()

        self.assertFalse(result.success)
        self.assertEqual(result.details.insertion_errors[-1].entity_type, "sync_process")
        self.assertIn("database is locked", result.details.insertion_errors[-1].error)
        checkpoint = await self.engine.get_checkpoint()
        self.assertEqual(checkpoint.sync_status, SyncStatus.FAILED)
        self.assertIn("database is locked", checkpoint.error_message)
        self.assertIsNone(checkpoint.last_sync_timestamp)
        self.assertEqual(events[-1].status, "failed")
        operations = await self.engine.list_operations()
        self.assertEqual(operations[0]["status"], "failed")

    async def test_failed_run_keeps_previous_watermark(self) -> None:
        self._seed()
        first = await self.engine.sync_all()

        with patch.object(self.engine.writer, "batch_insert_sessions", side_effect=RuntimeError("boom")):
            await self.engine.sync_all()

        checkpoint = await self.engine.get_checkpoint()
        self.assertEqual(checkpoint.sync_status, SyncStatus.FAILED)
        self.assertEqual(to_storage(checkpoint.last_sync_timestamp), to_storage(first.timing.started_at))

    async def test_bad_files_do_not_block_good_ones(self) -> None:
        self._write("alpha", _lines("2026-02-16T10:00:00Z", 2))
        self._write("beta", _lines("2026-02-16T11:00:00Z", 3))
        self._write("nested", ["[" * 200_000])
        self._write("ancient", [{"role": "user", "content": "a", "timestamp": "0001-01-01T00:00:00+01:00"}])
        self._write("cursed", _lines("2026-02-16T12:00:00Z", 2))

        def parse_or_crash(path, **kwargs):
            if Path(path).name == "cursed.jsonl":
                raise RuntimeError("parser bug")
            return parse_session_file(path, **kwargs)

        with patch("ccanalytics.db.sync_engine.parse_session_file", side_effect=parse_or_crash):
            with self.assertLogs("ccanalytics.sync", level="ERROR"):
                result = await self.engine.sync_all()

        self.assertEqual(result.summary.files_processed, 5)
        self.assertEqual(sorted(result.details.session_ids), ["session_alpha", "session_beta"])
        self.assertEqual(await self._count("sessions"), 2)
        self.assertEqual(result.details.insertion_errors, [])
        failed = {Path(f.file_path).name: f.errors for f in result.details.failed_files}
        self.assertEqual(sorted(failed), ["ancient.jsonl", "cursed.jsonl", "nested.jsonl"])
        self.assertEqual(failed["nested.jsonl"][0].error_type, ParseErrorType.MALFORMED_JSON)
        self.assertEqual(failed["ancient.jsonl"][0].error_type, ParseErrorType.INVALID_DATA)
        self.assertIn("parser bug", failed["cursed.jsonl"][0].message)
        self.assertFalse(result.success)
        self.assertEqual((await self.engine.get_checkpoint()).sync_status, SyncStatus.COMPLETED)

    def _assert_store_failure(self, result, message: str) -> None:
        self.assertFalse(result.success)
        self.assertEqual(result.summary.files_processed, 0)
        self.assertEqual(result.summary.errors, 1)
        self.assertEqual(len(result.details.insertion_errors), 1)
        self.assertEqual(result.details.insertion_errors[0].entity_type, "sync_process")
        self.assertIn(message, result.details.insertion_errors[0].error)
        self.assertIsNotNone(result.timing.finished_at)

    async def test_failing_try_begin_returns_failed_result(self) -> None:
        self._seed()

        with patch.object(self.engine.sync_repo, "try_begin", side_effect=RuntimeError("connection refused")):
            with self.assertLogs("ccanalytics.sync", level="ERROR"):
                result = await self.engine.sync_all()

        self._assert_store_failure(result, "connection refused")
        self.assertEqual(await self._count("sessions"), 0)

    async def test_failing_checkpoint_read_returns_failed_result(self) -> None:
        self._seed()

        with patch.object(self.engine.sync_repo, "get", side_effect=RuntimeError("connection refused")):
            with self.assertLogs("ccanalytics.sync", level="ERROR"):
                result = await self.engine.sync_incremental()

        self._assert_store_failure(result, "connection refused")
        self.assertEqual(await self._count("sessions"), 0)

    async def test_failing_discovery_marks_checkpoint_failed(self) -> None:
        self._seed()
        first = await self.engine.sync_all()

        with patch.object(self.engine.discovery, "list_files", side_effect=OSError("stale file handle")):
            with self.assertLogs("ccanalytics.sync", level="ERROR"):
                result = await self.engine.sync_all()

        self._assert_store_failure(result, "stale file handle")
        checkpoint = await self.engine.get_checkpoint()
        self.assertEqual(checkpoint.sync_status, SyncStatus.FAILED)
        self.assertIn("stale file handle", checkpoint.error_message)
        self.assertEqual(to_storage(checkpoint.last_sync_timestamp), to_storage(first.timing.started_at))

    async def test_failed_start_leaves_running_checkpoint_alone(self) -> None:
        now = utc_now()
        self.assertTrue(await self.engine.sync_repo.try_begin("global", now, now - timedelta(hours=1)))

        with patch.object(self.engine.discovery, "list_files", side_effect=OSError("stale file handle")):
            with self.assertLogs("ccanalytics.sync", level="ERROR"):
                result = await self.engine.sync_all()

        self.assertFalse(result.success)
        self.assertEqual((await self.engine.get_checkpoint()).sync_status, SyncStatus.IN_PROGRESS)

    async def test_concurrent_run_is_refused(self) -> None:
        self._seed()
        now = utc_now()
        self.assertTrue(await self.engine.sync_repo.try_begin("global", now, now - timedelta(hours=1)))

        result = await self.engine.sync_all()

        self.assertFalse(result.success)
        self.assertEqual(result.summary.files_processed, 0)
        self.assertEqual(result.details.insertion_errors[0].entity_type, "sync_process")
        self.assertEqual((await self.engine.get_checkpoint()).sync_status, SyncStatus.IN_PROGRESS)
        self.assertEqual(await self._count("sessions"), 0)

    async def test_stale_in_progress_row_is_taken_over(self) -> None:
        self._seed()
        stale = utc_now() - timedelta(hours=2)
        await self.engine.sync_repo.try_begin("global", stale, stale - timedelta(hours=1))

        result = await self.engine.sync_all()

        self.assertEqual(result.summary.sessions_inserted, 2)
        self.assertEqual((await self.engine.get_checkpoint()).sync_status, SyncStatus.COMPLETED)

    async def test_progress_events(self) -> None:
        self._seed()
        events = []
        self.engine.progress.subscribe(events.append)

        await self.engine.sync_all()

        self.assertEqual(events[0].status, "in_progress")
        self.assertEqual(events[0].total_files, 3)
        self.assertIsNone(events[0].estimated_time_remaining_ms)
        finished = [e for prev, e in zip(events, events[1:]) if e.processed_files > prev.processed_files]
        self.assertEqual([e.processed_files for e in finished[:3]], [1, 2, 3])
        self.assertEqual([e.progress_percent for e in finished[:3]], [33, 67, 100])
        self.assertTrue(all(e.estimated_time_remaining_ms is not None for e in finished))
        self.assertEqual(events[-1].status, "failed")  # broken.jsonl carries parse errors
        self.assertEqual(events[-1].sessions_processed, 2)
        self.assertEqual(events[-1].messages_processed, 5)

    async def test_status_snapshot(self) -> None:
        self._seed()
        await self.engine.sync_all()

        status = await self.engine.get_sync_status()

        self.assertEqual(status["checkpoint"]["sync_status"], "completed")
        self.assertEqual(status["files"]["totalFiles"], 3)
        self.assertEqual(status["database"]["totalSessions"], 2)
        self.assertIn("progressPercent", status["progress"])
        self.assertEqual(status["activeOperations"], [])


if __name__ == "__main__":
    unittest.main()
