"""Database migration dispatcher.

Routes migration calls to the appropriate backend implementation (SQLite or Postgres).
"""
from __future__ import annotations

import logging
from typing import Any

import aiosqlite
import asyncpg

from ccanalytics.db import postgres_migrations, sqlite_migrations

logger = logging.getLogger("ccanalytics.db")


async def run_migrations(db: Any, *, extended: bool | None = None) -> None:
    """Run migrations on the provided database connection."""
    if isinstance(db, aiosqlite.Connection):
        logger.info("Running SQLite migrations...")
        await sqlite_migrations.run_migrations(db, extended=extended)
        return

    if isinstance(db, asyncpg.Pool):
        logger.info("Running Postgres migrations...")
        await postgres_migrations.run_migrations(db, extended=extended)
        return

    raise TypeError(f"Unknown database connection type: {type(db)!r}")
