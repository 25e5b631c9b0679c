"""SQLite queries for age-based retention sweeps."""
from __future__ import annotations

import logging
from datetime import datetime

import aiosqlite

from ccanalytics.date_utils import from_storage, to_storage
from ccanalytics.db.repositories.common import sqlite_write_lock

logger = logging.getLogger("ccanalytics.retention")


class SqliteRetentionRepository:
    """Table/column names come from the retention plan, never from callers."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def table_exists(self, table: str) -> bool:
        async with self.db.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
        ) as cur:
            return await cur.fetchone() is not None

    async def table_stats(self, table: str, column: str, cutoff: datetime) -> dict:
        async with self.db.execute(
            f"""SELECT COUNT(*) AS total,
                       SUM(CASE WHEN {column} < ? THEN 1 ELSE 0 END) AS eligible,
                       MIN({column}) AS oldest,
                       MAX({column}) AS newest
                FROM {table}""",
            (to_storage(cutoff),),
        ) as cur:
            row = dict(await cur.fetchone())
        return {
            "total": row["total"] or 0,
            "eligible": row["eligible"] or 0,
            "oldest": from_storage(row["oldest"]),
            "newest": from_storage(row["newest"]),
        }

    async def count_eligible(self, table: str, column: str, cutoff: datetime) -> int:
        async with self.db.execute(
            f"SELECT COUNT(*) FROM {table} WHERE {column} < ?", (to_storage(cutoff),)
        ) as cur:
            return (await cur.fetchone())[0]

    async def table_size(self, table: str) -> int | None:
        """Bytes used by the table, None when the dbstat virtual table is unavailable."""
        try:
            async with self.db.execute("SELECT SUM(pgsize) FROM dbstat WHERE name = ?", (table,)) as cur:
                row = await cur.fetchone()
        except aiosqlite.OperationalError as exc:
            logger.debug("dbstat unavailable for %s: %s", table, exc)
            return None
        return int(row[0]) if row and row[0] is not None else 0

    async def delete_batch(self, table: str, column: str, cutoff: datetime, limit: int) -> int:
        async with sqlite_write_lock(self.db):
            cur = await self.db.execute(
                f"""DELETE FROM {table} WHERE rowid IN (
                        SELECT rowid FROM {table} WHERE {column} < ? LIMIT ?
                    )""",
                (to_storage(cutoff), limit),
            )
            await self.db.commit()
        return cur.rowcount

    async def oldest_records(self, table: str, column: str, limit: int) -> list[dict]:
        async with self.db.execute(
            f"SELECT * FROM {table} ORDER BY {column} ASC LIMIT ?", (limit,)
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def reclaim_space(self) -> None:
        async with sqlite_write_lock(self.db):
            await self.db.commit()
            await self.db.execute("VACUUM")
