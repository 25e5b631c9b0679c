"""SQLite implementation of the session repository."""
from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Iterable

import aiosqlite

from ccanalytics.date_utils import from_storage, to_storage, utc_now
from ccanalytics.db.repositories.common import (
    FEATURE_TABLES,
    MESSAGE_COLUMNS,
    MESSAGE_EXTENDED_COLUMNS,
    METRICS_COLUMNS,
    METRICS_EXTENDED_COLUMNS,
    SESSION_COLUMNS,
    SESSION_EXTENDED_COLUMNS,
    columns_for,
    record_values,
    sqlite_write_lock,
)
from ccanalytics.models import MessageRecord, MetricsRecord, SessionBundle, SessionRecord


def _to_sqlite(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_storage(value)
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return value


def _row_values(record: Any, columns: tuple[str, ...], now: str) -> list[Any]:
    values = record_values(record, columns)
    return [_to_sqlite(values[c]) for c in columns] + [now]


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


class SqliteSessionRepository:
    """SQLite-backed session storage with messages, metrics and feature rows."""

    def __init__(self, db: aiosqlite.Connection, *, autocommit: bool = True):
        self.db = db
        self._autocommit = autocommit

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SqliteSessionRepository]:
        """Yield a repository whose writes commit together or roll back together."""
        async with sqlite_write_lock(self.db):
            tx = SqliteSessionRepository(self.db, autocommit=False)
            try:
                yield tx
            except BaseException:
                await self.db.rollback()
                raise
            await self.db.commit()

    async def _commit(self) -> None:
        if self._autocommit:
            await self.db.commit()

    # ── Writes ──────────────────────────────────────────────────────

    async def upsert_session(self, session: SessionRecord, *, extended: bool) -> bool:
        """Insert or update by session_id. Returns True when the row is new."""
        async with self.db.execute(
            "SELECT 1 FROM sessions WHERE session_id = ?", (session.session_id,)
        ) as cur:
            existed = await cur.fetchone() is not None

        columns = columns_for(SESSION_COLUMNS, SESSION_EXTENDED_COLUMNS, extended)
        now = to_storage(utc_now())
        updates = ", ".join(f"{c}=excluded.{c}" for c in columns if c != "session_id")
        await self.db.execute(
            f"""INSERT INTO sessions ({", ".join(columns)}, created_at, updated_at)
                VALUES ({_placeholders(len(columns) + 2)})
                ON CONFLICT(session_id) DO UPDATE SET {updates}, updated_at=excluded.updated_at""",
            _row_values(session, columns, now) + [now],
        )
        await self._commit()
        return not existed

    async def replace_messages(
        self,
        session_id: str,
        messages: list[MessageRecord],
        *,
        extended: bool,
        batch_size: int = 100,
    ) -> int:
        await self.db.execute("DELETE FROM raw_messages WHERE session_id = ?", (session_id,))
        columns = columns_for(MESSAGE_COLUMNS, MESSAGE_EXTENDED_COLUMNS, extended)
        sql = (
            f"INSERT INTO raw_messages ({', '.join(columns)}, created_at) "
            f"VALUES ({_placeholders(len(columns) + 1)})"
        )
        now = to_storage(utc_now())
        step = max(1, batch_size)
        for start in range(0, len(messages), step):
            batch = messages[start:start + step]
            await self.db.executemany(sql, [_row_values(m, columns, now) for m in batch])
        await self._commit()
        return len(messages)

    async def upsert_metrics(self, metrics: MetricsRecord, *, extended: bool) -> None:
        columns = columns_for(METRICS_COLUMNS, METRICS_EXTENDED_COLUMNS, extended)
        updates = ", ".join(f"{c}=excluded.{c}" for c in columns if c != "session_id")
        await self.db.execute(
            f"""INSERT INTO session_metrics ({", ".join(columns)}, created_at)
                VALUES ({_placeholders(len(columns) + 1)})
                ON CONFLICT(session_id) DO UPDATE SET {updates}""",
            _row_values(metrics, columns, to_storage(utc_now())),
        )
        await self._commit()

    async def replace_features(self, bundle: SessionBundle) -> dict[str, int]:
        """Replace checkpoint/background task/subagent/editor rows. Extended schema only."""
        counts: dict[str, int] = {}
        session_id = bundle.session.session_id
        for table, attribute, columns in FEATURE_TABLES:
            await self.db.execute(f"DELETE FROM {table} WHERE session_id = ?", (session_id,))
            records = getattr(bundle, attribute)
            if records:
                await self.db.executemany(
                    f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({_placeholders(len(columns))})",
                    [[_to_sqlite(v) for v in record_values(r, columns).values()] for r in records],
                )
            counts[attribute] = len(records)
        await self._commit()
        return counts

    async def delete_by_source(self, source_file: str) -> int:
        async with sqlite_write_lock(self.db):
            cur = await self.db.execute("DELETE FROM sessions WHERE source_file = ?", (source_file,))
            await self.db.commit()
        return cur.rowcount

    # ── Reads ───────────────────────────────────────────────────────

    async def get_session(self, session_id: str) -> dict | None:
        async with self.db.execute("SELECT * FROM sessions WHERE session_id = ?", (session_id,)) as cur:
            row = await cur.fetchone()
        if not row:
            return None
        data = dict(row)
        data["tools_used"] = json.loads(data.get("tools_used") or "[]")
        return data

    async def get_metrics(self, session_id: str) -> dict | None:
        async with self.db.execute("SELECT * FROM session_metrics WHERE session_id = ?", (session_id,)) as cur:
            row = await cur.fetchone()
        return dict(row) if row else None

    async def list_messages(self, session_id: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM raw_messages WHERE session_id = ? ORDER BY message_index", (session_id,)
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def existing_session_ids(self, session_ids: Iterable[str]) -> set[str]:
        ids = list(dict.fromkeys(session_ids))
        found: set[str] = set()
        # Stay well under SQLITE_MAX_VARIABLE_NUMBER.
        for start in range(0, len(ids), 500):
            chunk = ids[start:start + 500]
            async with self.db.execute(
                f"SELECT session_id FROM sessions WHERE session_id IN ({_placeholders(len(chunk))})", chunk
            ) as cur:
                found.update(row[0] for row in await cur.fetchall())
        return found

    async def conflict_rows(self, session_ids: Iterable[str]) -> dict[str, dict]:
        ids = list(dict.fromkeys(session_ids))
        rows: dict[str, dict] = {}
        for start in range(0, len(ids), 500):
            chunk = ids[start:start + 500]
            async with self.db.execute(
                f"""SELECT session_id, ended_at, duration_seconds, total_input_tokens,
                           total_output_tokens, total_cost_usd
                    FROM sessions WHERE session_id IN ({_placeholders(len(chunk))})""",
                chunk,
            ) as cur:
                for row in await cur.fetchall():
                    data = dict(row)
                    data["ended_at"] = from_storage(data["ended_at"])
                    rows[data["session_id"]] = data
        return rows

    async def known_source_files(self) -> set[str]:
        async with self.db.execute("SELECT DISTINCT source_file FROM sessions WHERE source_file != ''") as cur:
            return {row[0] for row in await cur.fetchall()}

    async def session_stats(self) -> dict[str, Any]:
        async with self.db.execute(
            """SELECT COUNT(*) AS total_sessions,
                      MIN(started_at) AS earliest, MAX(started_at) AS latest,
                      COALESCE(SUM(total_input_tokens), 0) AS input_tokens,
                      COALESCE(SUM(total_output_tokens), 0) AS output_tokens,
                      COALESCE(SUM(total_cost_usd), 0) AS total_cost
               FROM sessions"""
        ) as cur:
            row = dict(await cur.fetchone())
        async with self.db.execute("SELECT COUNT(*) FROM raw_messages") as cur:
            messages = (await cur.fetchone())[0]
        return {
            "totalSessions": row["total_sessions"],
            "totalMessages": messages,
            "totalInputTokens": row["input_tokens"],
            "totalOutputTokens": row["output_tokens"],
            "totalCostUsd": float(row["total_cost"]),
            "earliestSession": from_storage(row["earliest"]),
            "latestSession": from_storage(row["latest"]),
        }
