import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import aiosqlite

from ccanalytics.db.repositories.sessions import SqliteSessionRepository
from ccanalytics.db.schema import SchemaCapabilities
from ccanalytics.db.sqlite_migrations import run_migrations
from ccanalytics.db.writer import SessionWriter, session_content_hash
from ccanalytics.models import MessageRole, RawMessage, SessionBundle
from ccanalytics.parsers.sessions import build_session_bundle

_T0 = datetime(2026, 2, 16, 10, 0, 0, tzinfo=timezone.utc)


def _bundle(name: str, *, output_tokens: int = 75, checkpoint: str | None = None) -> SessionBundle:
    messages = [
        RawMessage(line_number=1, role=MessageRole.USER, content="hi", timestamp=_T0, input_tokens=100),
        RawMessage(
            line_number=2,
            role=MessageRole.ASSISTANT,
            content="hello",
            timestamp=_T0 + timedelta(seconds=30),
            input_tokens=50,
            output_tokens=output_tokens,
            checkpoint_id=checkpoint,
        ),
    ]
    return build_session_bundle(Path(f"/data/projects/demo/{name}.jsonl"), messages)


class SessionWriterTests(unittest.IsolatedAsyncioTestCase):
    extended = True

    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db, extended=self.extended)
        self.writer = SessionWriter(self.db, SchemaCapabilities(self.db), message_batch_size=1)
        self.repo = SqliteSessionRepository(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def _count(self, table: str) -> int:
        async with self.db.execute(f"SELECT COUNT(*) FROM {table}") as cur:
            return (await cur.fetchone())[0]

    async def test_insert_session_writes_all_rows(self) -> None:
        result = await self.writer.insert_session(_bundle("alpha", checkpoint="cp-1"))

        self.assertTrue(result.success)
        self.assertEqual(result.inserted.sessions, 1)
        self.assertEqual(result.inserted.messages, 2)
        self.assertEqual(result.inserted.metrics, 1)
        self.assertEqual(result.inserted.checkpoints, 1)
        self.assertEqual(result.duplicates_skipped, 0)

        stored = await self.repo.get_session("session_alpha")
        self.assertEqual(stored["total_input_tokens"], 150)
        self.assertEqual(stored["total_output_tokens"], 75)
        self.assertEqual(stored["duration_seconds"], 30)
        self.assertEqual(stored["source_file"], "/data/projects/demo/alpha.jsonl")
        self.assertEqual(len(await self.repo.list_messages("session_alpha")), 2)
        self.assertEqual((await self.repo.get_metrics("session_alpha"))["message_count"], 2)
        self.assertEqual(await self._count("checkpoints"), 1)

    async def test_rewriting_a_session_is_idempotent(self) -> None:
        bundle = _bundle("alpha", checkpoint="cp-1")
        await self.writer.insert_session(bundle)
        first_session = await self.repo.get_session("session_alpha")
        first_metrics = await self.repo.get_metrics("session_alpha")

        again = await self.writer.insert_session(bundle)

        self.assertEqual(again.inserted.sessions, 0)
        self.assertEqual(again.duplicates_skipped, 1)
        second_session = await self.repo.get_session("session_alpha")
        second_metrics = await self.repo.get_metrics("session_alpha")
        for key in ("total_input_tokens", "total_output_tokens", "duration_seconds", "started_at", "ended_at", "created_at"):
            self.assertEqual(first_session[key], second_session[key])
        self.assertEqual(first_metrics, second_metrics)
        self.assertEqual(await self._count("raw_messages"), 2)
        self.assertEqual(await self._count("checkpoints"), 1)

    async def test_failed_sub_step_rolls_back_whole_session(self) -> None:
        with patch.object(SqliteSessionRepository, "upsert_metrics", side_effect=RuntimeError("disk full")):
            with self.assertRaises(RuntimeError):
                await self.writer.insert_session(_bundle("alpha"))

        self.assertEqual(await self._count("sessions"), 0)
        self.assertEqual(await self._count("raw_messages"), 0)
        self.assertEqual(await self._count("session_metrics"), 0)

    async def test_batch_collects_failures_per_session(self) -> None:
        async def _fail_for_beta(metrics, *, extended):
            if metrics.session_id == "session_beta":
                raise RuntimeError("constraint failed")

        await self.writer.insert_session(_bundle("alpha"))
        with patch.object(SqliteSessionRepository, "upsert_metrics", side_effect=_fail_for_beta):
            result = await self.writer.batch_insert_sessions([_bundle("alpha"), _bundle("beta"), _bundle("gamma")])

        self.assertFalse(result.success)
        self.assertEqual([(e.entity_type, e.session_id) for e in result.errors], [("session", "session_beta")])
        self.assertEqual(result.inserted.sessions, 1)
        self.assertEqual(result.duplicates_skipped, 1)
        self.assertEqual(
            await self.writer.existing_session_ids(["session_alpha", "session_beta", "session_gamma"]),
            {"session_alpha", "session_gamma"},
        )

    async def test_resolve_conflicts(self) -> None:
        stored = _bundle("alpha")
        await self.writer.insert_session(stored)

        changed = _bundle("alpha", output_tokens=500).session
        fresh = _bundle("beta").session
        resolution = await self.writer.resolve_conflicts([stored.session, fresh])
        self.assertEqual([s.session_id for s in resolution.to_skip], ["session_alpha"])
        self.assertEqual([s.session_id for s in resolution.to_insert], ["session_beta"])
        self.assertEqual(resolution.to_update, [])

        resolution = await self.writer.resolve_conflicts([changed])
        self.assertEqual([s.session_id for s in resolution.to_update], ["session_alpha"])

    async def test_content_hash_ignores_storage_representation(self) -> None:
        session = _bundle("alpha").session
        as_row = {
            "ended_at": session.ended_at.isoformat(),
            "duration_seconds": session.duration_seconds,
            "total_input_tokens": session.total_input_tokens,
            "total_output_tokens": session.total_output_tokens,
            "total_cost_usd": session.total_cost_usd,
        }
        self.assertEqual(session_content_hash(session), session_content_hash(as_row))

    async def test_session_stats_and_known_files(self) -> None:
        await self.writer.insert_session(_bundle("alpha"))
        await self.writer.insert_session(_bundle("beta"))

        stats = await self.writer.session_stats()

        self.assertEqual(stats["totalSessions"], 2)
        self.assertEqual(stats["totalMessages"], 4)
        self.assertEqual(stats["totalInputTokens"], 300)
        self.assertEqual(stats["earliestSession"], _T0)
        self.assertEqual(
            await self.writer.known_source_files(),
            {"/data/projects/demo/alpha.jsonl", "/data/projects/demo/beta.jsonl"},
        )


class LegacySchemaWriterTests(SessionWriterTests):
    extended = False

    async def test_insert_session_writes_all_rows(self) -> None:
        result = await self.writer.insert_session(_bundle("alpha", checkpoint="cp-1"))

        self.assertTrue(result.success)
        self.assertEqual(result.inserted.sessions, 1)
        self.assertEqual(result.inserted.messages, 2)
        self.assertEqual(result.inserted.checkpoints, 0)
        async with self.db.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'checkpoints'"
        ) as cur:
            self.assertIsNone(await cur.fetchone())
        stored = await self.repo.get_session("session_alpha")
        self.assertNotIn("session_type", stored)

    async def test_rewriting_a_session_is_idempotent(self) -> None:
        bundle = _bundle("alpha")
        await self.writer.insert_session(bundle)
        again = await self.writer.insert_session(bundle)
        self.assertEqual(again.duplicates_skipped, 1)
        self.assertEqual(await self._count("raw_messages"), 2)


if __name__ == "__main__":
    unittest.main()
