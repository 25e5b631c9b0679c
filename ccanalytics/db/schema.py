"""Runtime detection of the extended session schema.

The store may be on the legacy shape (base columns only) or the extended
shape (feature columns and tables). The answer is probed once per handle and
threaded to the write path as an explicit ``extended`` argument.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiosqlite

logger = logging.getLogger("ccanalytics.db")

EXTENDED_MARKER_TABLE = "sessions"
EXTENDED_MARKER_COLUMN = "is_extended_session"


async def _probe_sqlite(db: aiosqlite.Connection) -> bool:
    async with db.execute(f"PRAGMA table_info({EXTENDED_MARKER_TABLE})") as cur:
        rows = await cur.fetchall()
    return any(row[1] == EXTENDED_MARKER_COLUMN for row in rows)


async def _probe_postgres(db: Any) -> bool:
    row = await db.fetchrow(
        """
        SELECT 1 FROM information_schema.columns
        WHERE table_schema = current_schema() AND table_name = $1 AND column_name = $2
        """,
        EXTENDED_MARKER_TABLE,
        EXTENDED_MARKER_COLUMN,
    )
    return row is not None


class SchemaCapabilities:
    """Memoized view of which schema generation the store supports."""

    def __init__(self, db: Any):
        self.db = db
        self._extended: bool | None = None
        self._lock = asyncio.Lock()

    async def has_extended_schema(self) -> bool:
        if self._extended is not None:
            return self._extended
        async with self._lock:
            if self._extended is None:
                self._extended = await self._probe()
        return self._extended

    async def _probe(self) -> bool:
        try:
            if isinstance(self.db, aiosqlite.Connection):
                extended = await _probe_sqlite(self.db)
            else:
                extended = await _probe_postgres(self.db)
        except Exception:
            logger.exception("Schema probe failed, using legacy write path")
            return False
        logger.info("Extended session schema %s", "detected" if extended else "not present")
        return extended

    def reset(self) -> None:
        """Forget the cached answer so the next call probes again."""
        self._extended = None
