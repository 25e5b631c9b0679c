"""PostgreSQL queries for age-based retention sweeps."""
from __future__ import annotations

from datetime import datetime
from typing import Any


class PostgresRetentionRepository:
    def __init__(self, db: Any):
        self.db = db

    async def table_exists(self, table: str) -> bool:
        return await self.db.fetchval("SELECT to_regclass($1) IS NOT NULL", table)

    async def table_stats(self, table: str, column: str, cutoff: datetime) -> dict:
        row = await self.db.fetchrow(
            f"""SELECT COUNT(*) AS total,
                       COUNT(*) FILTER (WHERE {column} < $1) AS eligible,
                       MIN({column}) AS oldest,
                       MAX({column}) AS newest
                FROM {table}""",
            cutoff,
        )
        return {
            "total": row["total"],
            "eligible": row["eligible"],
            "oldest": row["oldest"],
            "newest": row["newest"],
        }

    async def count_eligible(self, table: str, column: str, cutoff: datetime) -> int:
        return await self.db.fetchval(f"SELECT COUNT(*) FROM {table} WHERE {column} < $1", cutoff)

    async def table_size(self, table: str) -> int | None:
        return await self.db.fetchval("SELECT pg_total_relation_size($1::regclass)", table)

    async def delete_batch(self, table: str, column: str, cutoff: datetime, limit: int) -> int:
        status = await self.db.execute(
            f"""DELETE FROM {table} WHERE ctid IN (
                    SELECT ctid FROM {table} WHERE {column} < $1 LIMIT $2
                )""",
            cutoff,
            limit,
        )
        return int(status.split()[-1])

    async def oldest_records(self, table: str, column: str, limit: int) -> list[dict]:
        rows = await self.db.fetch(f"SELECT * FROM {table} ORDER BY {column} ASC LIMIT $1", limit)
        return [dict(r) for r in rows]

    async def reclaim_space(self) -> None:
        await self.db.execute("VACUUM ANALYZE")
