"""PostgreSQL implementation of the session repository."""
from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal
from typing import Any, AsyncIterator, Iterable

import asyncpg

from ccanalytics.date_utils import utc_now
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
)
from ccanalytics.models import MessageRecord, MetricsRecord, SessionBundle, SessionRecord

_NUMERIC_COLUMNS = {"total_cost_usd", "cost_usd", "cache_efficiency", "autonomy_score", "parallel_development_efficiency"}


def _to_postgres(column: str, value: Any) -> Any:
    if column == "tools_used":
        return json.dumps(value or [])
    if column == "date_bucket" and isinstance(value, str):
        return date.fromisoformat(value)
    if column in _NUMERIC_COLUMNS and value is not None:
        return Decimal(str(round(float(value), 6)))
    return value


def _params(record: Any, columns: tuple[str, ...]) -> list[Any]:
    values = record_values(record, columns)
    return [_to_postgres(c, values[c]) for c in columns]


def _placeholders(columns: tuple[str, ...], start: int = 1) -> str:
    parts = []
    for offset, column in enumerate(columns):
        cast = "::jsonb" if column == "tools_used" else ""
        parts.append(f"${start + offset}{cast}")
    return ", ".join(parts)


def _row_dict(row: asyncpg.Record) -> dict:
    data = dict(row)
    for key, value in data.items():
        if isinstance(value, Decimal):
            data[key] = float(value)
    return data


class PostgresSessionRepository:
    """PostgreSQL-backed session storage.

    ``db`` is either the pool (standalone calls) or a connection acquired
    inside ``transaction()``.
    """

    def __init__(self, db: Any):
        self.db = db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgresSessionRepository]:
        async with self.db.acquire() as conn:
            async with conn.transaction():
                yield PostgresSessionRepository(conn)

    async def upsert_session(self, session: SessionRecord, *, extended: bool) -> bool:
        """Insert or update by session_id. Returns True when the row is new."""
        columns = columns_for(SESSION_COLUMNS, SESSION_EXTENDED_COLUMNS, extended)
        updates = ", ".join(f"{c}=EXCLUDED.{c}" for c in columns if c != "session_id")
        now = utc_now()
        count = len(columns)
        query = f"""
            INSERT INTO sessions ({", ".join(columns)}, created_at, updated_at)
            VALUES ({_placeholders(columns)}, ${count + 1}, ${count + 2})
            ON CONFLICT(session_id) DO UPDATE SET {updates}, updated_at=EXCLUDED.updated_at
            RETURNING (xmax = 0) AS inserted
        """
        row = await self.db.fetchrow(query, *_params(session, columns), now, now)
        return bool(row["inserted"])

    async def replace_messages(
        self,
        session_id: str,
        messages: list[MessageRecord],
        *,
        extended: bool,
        batch_size: int = 100,
    ) -> int:
        await self.db.execute("DELETE FROM raw_messages WHERE session_id = $1", session_id)
        columns = columns_for(MESSAGE_COLUMNS, MESSAGE_EXTENDED_COLUMNS, extended)
        query = (
            f"INSERT INTO raw_messages ({', '.join(columns)}, created_at) "
            f"VALUES ({_placeholders(columns)}, ${len(columns) + 1})"
        )
        now = utc_now()
        step = max(1, batch_size)
        for start in range(0, len(messages), step):
            batch = messages[start:start + step]
            await self.db.executemany(query, [[*_params(m, columns), now] for m in batch])
        return len(messages)

    async def upsert_metrics(self, metrics: MetricsRecord, *, extended: bool) -> None:
        columns = columns_for(METRICS_COLUMNS, METRICS_EXTENDED_COLUMNS, extended)
        updates = ", ".join(f"{c}=EXCLUDED.{c}" for c in columns if c != "session_id")
        await self.db.execute(
            f"""INSERT INTO session_metrics ({", ".join(columns)}, created_at)
                VALUES ({_placeholders(columns)}, ${len(columns) + 1})
                ON CONFLICT(session_id) DO UPDATE SET {updates}""",
            *_params(metrics, columns),
            utc_now(),
        )

    async def replace_features(self, bundle: SessionBundle) -> dict[str, int]:
        counts: dict[str, int] = {}
        session_id = bundle.session.session_id
        for table, attribute, columns in FEATURE_TABLES:
            await self.db.execute(f"DELETE FROM {table} WHERE session_id = $1", session_id)
            records = getattr(bundle, attribute)
            if records:
                await self.db.executemany(
                    f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({_placeholders(columns)})",
                    [_params(r, columns) for r in records],
                )
            counts[attribute] = len(records)
        return counts

    async def delete_by_source(self, source_file: str) -> int:
        status = await self.db.execute("DELETE FROM sessions WHERE source_file = $1", source_file)
        return int(status.split()[-1])

    async def get_session(self, session_id: str) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM sessions WHERE session_id = $1", session_id)
        if not row:
            return None
        data = _row_dict(row)
        tools = data.get("tools_used")
        data["tools_used"] = json.loads(tools) if isinstance(tools, str) else (tools or [])
        return data

    async def get_metrics(self, session_id: str) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM session_metrics WHERE session_id = $1", session_id)
        return _row_dict(row) if row else None

    async def list_messages(self, session_id: str) -> list[dict]:
        rows = await self.db.fetch(
            "SELECT * FROM raw_messages WHERE session_id = $1 ORDER BY message_index", session_id
        )
        return [_row_dict(r) for r in rows]

    async def existing_session_ids(self, session_ids: Iterable[str]) -> set[str]:
        ids = list(dict.fromkeys(session_ids))
        if not ids:
            return set()
        rows = await self.db.fetch("SELECT session_id FROM sessions WHERE session_id = ANY($1::text[])", ids)
        return {r["session_id"] for r in rows}

    async def conflict_rows(self, session_ids: Iterable[str]) -> dict[str, dict]:
        ids = list(dict.fromkeys(session_ids))
        if not ids:
            return {}
        rows = await self.db.fetch(
            """SELECT session_id, ended_at, duration_seconds, total_input_tokens,
                      total_output_tokens, total_cost_usd
               FROM sessions WHERE session_id = ANY($1::text[])""",
            ids,
        )
        return {r["session_id"]: _row_dict(r) for r in rows}

    async def known_source_files(self) -> set[str]:
        rows = await self.db.fetch("SELECT DISTINCT source_file FROM sessions WHERE source_file <> ''")
        return {r["source_file"] for r in rows}

    async def session_stats(self) -> dict[str, Any]:
        row = await self.db.fetchrow(
            """SELECT COUNT(*) AS total_sessions,
                      MIN(started_at) AS earliest, MAX(started_at) AS latest,
                      COALESCE(SUM(total_input_tokens), 0) AS input_tokens,
                      COALESCE(SUM(total_output_tokens), 0) AS output_tokens,
                      COALESCE(SUM(total_cost_usd), 0) AS total_cost
               FROM sessions"""
        )
        messages = await self.db.fetchval("SELECT COUNT(*) FROM raw_messages")
        return {
            "totalSessions": row["total_sessions"],
            "totalMessages": messages,
            "totalInputTokens": int(row["input_tokens"]),
            "totalOutputTokens": int(row["output_tokens"]),
            "totalCostUsd": float(row["total_cost"]),
            "earliestSession": row["earliest"],
            "latestSession": row["latest"],
        }
