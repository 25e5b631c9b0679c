"""Database connection factory.

Opens an explicit store handle: an aiosqlite connection (default, WAL mode)
or an asyncpg pool. Callers own the handle and pass it to each component.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Union

import aiosqlite
import asyncpg

from ccanalytics import config

logger = logging.getLogger("ccanalytics.db")

# Type alias for DB connection/pool
DbConnection = Union[aiosqlite.Connection, asyncpg.Pool, Any]


async def open_sqlite(path: Path | str) -> aiosqlite.Connection:
    target = str(path)
    if target != ":memory:":
        Path(target).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(target)
    conn.row_factory = aiosqlite.Row
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute("PRAGMA busy_timeout=5000")
    logger.info("Database connection established: %s", target)
    return conn


async def open_postgres(url: str) -> asyncpg.Pool:
    logger.info("Connecting to PostgreSQL pool (min=%s max=%s)", config.DB_POOL_MIN_SIZE, config.DB_POOL_MAX_SIZE)
    return await asyncpg.create_pool(url, min_size=config.DB_POOL_MIN_SIZE, max_size=config.DB_POOL_MAX_SIZE)


async def open_connection(
    backend: str | None = None,
    *,
    path: Path | str | None = None,
    url: str | None = None,
) -> DbConnection:
    """Open a new store handle for the configured backend."""
    selected = (backend or config.DB_BACKEND).strip().lower()
    if selected == "postgres":
        return await open_postgres(url or config.DATABASE_URL)
    if selected != "sqlite":
        raise ValueError(f"Unsupported database backend: {selected}")
    return await open_sqlite(path or config.DB_PATH)


async def close_connection(db: DbConnection | None) -> None:
    """Close a handle returned by open_connection."""
    if db is None:
        return
    await db.close()
    logger.info("Database connection closed")
