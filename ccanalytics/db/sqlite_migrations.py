"""SQLite schema creation and versioning.

All CREATE TABLE statements for the session store. Uses IF NOT EXISTS for
idempotent runs. Extended columns and feature tables are only created when
the extended schema is enabled, so a store can stay on the legacy shape.
"""
from __future__ import annotations

import logging

import aiosqlite

from ccanalytics import config
from ccanalytics.date_utils import to_storage, utc_now

logger = logging.getLogger("ccanalytics.db")

SCHEMA_VERSION = 1

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL
);

-- ── 1. Sessions ────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS sessions (
    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id           TEXT NOT NULL UNIQUE,
    project_name         TEXT DEFAULT '',
    source_file          TEXT DEFAULT '',
    started_at           TEXT NOT NULL,
    ended_at             TEXT,
    duration_seconds     INTEGER DEFAULT 0,
    model_name           TEXT DEFAULT '',
    total_input_tokens   INTEGER DEFAULT 0,
    total_output_tokens  INTEGER DEFAULT 0,
    total_cost_usd       REAL DEFAULT 0.0,
    tools_used           TEXT DEFAULT '[]',
    cache_hit_count      INTEGER DEFAULT 0,
    cache_miss_count     INTEGER DEFAULT 0,
    created_at           TEXT NOT NULL,
    updated_at           TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_started_at ON sessions(started_at);
CREATE INDEX IF NOT EXISTS idx_sessions_project_name ON sessions(project_name);
CREATE INDEX IF NOT EXISTS idx_sessions_source_file ON sessions(source_file);

-- ── 2. Messages (detail rows, replaced on every upsert) ───────────
CREATE TABLE IF NOT EXISTS raw_messages (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id          TEXT NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
    message_index       INTEGER NOT NULL,
    role                TEXT NOT NULL,
    content             TEXT DEFAULT '',
    content_length      INTEGER DEFAULT 0,
    input_tokens        INTEGER DEFAULT 0,
    output_tokens       INTEGER DEFAULT 0,
    tool_name           TEXT,
    tool_input          TEXT,
    tool_output         TEXT,
    timestamp           TEXT NOT NULL,
    processing_time_ms  INTEGER,
    created_at          TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_raw_messages_session ON raw_messages(session_id, message_index);
CREATE INDEX IF NOT EXISTS idx_raw_messages_timestamp ON raw_messages(timestamp);

-- ── 3. Metrics (one row per session) ───────────────────────────────
CREATE TABLE IF NOT EXISTS session_metrics (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id        TEXT NOT NULL UNIQUE REFERENCES sessions(session_id) ON DELETE CASCADE,
    date_bucket       TEXT NOT NULL,
    hour_bucket       INTEGER NOT NULL,
    weekday           INTEGER NOT NULL,
    week_of_year      INTEGER NOT NULL,
    month             INTEGER NOT NULL,
    year              INTEGER NOT NULL,
    input_tokens      INTEGER DEFAULT 0,
    output_tokens     INTEGER DEFAULT 0,
    cost_usd          REAL DEFAULT 0.0,
    duration_seconds  INTEGER DEFAULT 0,
    message_count     INTEGER DEFAULT 0,
    tool_usage_count  INTEGER DEFAULT 0,
    cache_efficiency  REAL DEFAULT 0.0,
    created_at        TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_session_metrics_date ON session_metrics(date_bucket);
CREATE INDEX IF NOT EXISTS idx_session_metrics_created ON session_metrics(created_at);

-- ── 4. Sync checkpoint ─────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS sync_metadata (
    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
    sync_key             TEXT NOT NULL UNIQUE,
    last_sync_timestamp  TEXT,
    files_processed      INTEGER DEFAULT 0,
    sessions_processed   INTEGER DEFAULT 0,
    sync_status          TEXT NOT NULL DEFAULT 'completed',
    error_message        TEXT,
    created_at           TEXT NOT NULL,
    updated_at           TEXT NOT NULL
);
"""

_EXTENDED_TABLES = """
CREATE TABLE IF NOT EXISTS checkpoints (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id       TEXT NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
    checkpoint_id    TEXT NOT NULL,
    created_at       TEXT NOT NULL,
    is_rewind_point  INTEGER DEFAULT 0,
    rewind_count     INTEGER DEFAULT 0,
    tokens_used      INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS background_tasks (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id        TEXT NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
    task_id           TEXT NOT NULL,
    started_at        TEXT NOT NULL,
    completed_at      TEXT,
    duration_seconds  INTEGER DEFAULT 0,
    input_tokens      INTEGER DEFAULT 0,
    output_tokens     INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS subagents (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id        TEXT NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
    subagent_id       TEXT NOT NULL,
    started_at        TEXT NOT NULL,
    completed_at      TEXT,
    duration_seconds  INTEGER DEFAULT 0,
    input_tokens      INTEGER DEFAULT 0,
    output_tokens     INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS vscode_integrations (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id        TEXT NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
    integration_id    TEXT NOT NULL,
    started_at        TEXT NOT NULL,
    ended_at          TEXT,
    duration_seconds  INTEGER DEFAULT 0,
    file_operations   INTEGER DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_checkpoints_session ON checkpoints(session_id);
CREATE INDEX IF NOT EXISTS idx_background_tasks_session ON background_tasks(session_id);
CREATE INDEX IF NOT EXISTS idx_subagents_session ON subagents(session_id);
CREATE INDEX IF NOT EXISTS idx_vscode_integrations_session ON vscode_integrations(session_id);
"""


async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
    return any(row[1] == column for row in rows)


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, definition: str) -> None:
    if await _column_exists(db, table, column):
        return
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


async def _ensure_extended_schema(db: aiosqlite.Connection) -> None:
    await _ensure_column(db, "sessions", "is_extended_session", "INTEGER DEFAULT 0")
    await _ensure_column(db, "sessions", "session_type", "TEXT DEFAULT 'standard'")
    await _ensure_column(db, "sessions", "autonomy_level", "INTEGER DEFAULT 0")
    await _ensure_column(db, "sessions", "has_background_tasks", "INTEGER DEFAULT 0")
    await _ensure_column(db, "sessions", "has_subagents", "INTEGER DEFAULT 0")
    await _ensure_column(db, "sessions", "has_vscode_integration", "INTEGER DEFAULT 0")

    await _ensure_column(db, "raw_messages", "checkpoint_id", "TEXT")
    await _ensure_column(db, "raw_messages", "subagent_id", "TEXT")
    await _ensure_column(db, "raw_messages", "background_task_id", "TEXT")
    await _ensure_column(db, "raw_messages", "vscode_integration_id", "TEXT")
    await _ensure_column(db, "raw_messages", "is_rewind_trigger", "INTEGER DEFAULT 0")
    await _ensure_column(db, "raw_messages", "autonomy_level", "INTEGER DEFAULT 0")

    await _ensure_column(db, "session_metrics", "checkpoint_count", "INTEGER DEFAULT 0")
    await _ensure_column(db, "session_metrics", "rewind_count", "INTEGER DEFAULT 0")
    await _ensure_column(db, "session_metrics", "background_task_count", "INTEGER DEFAULT 0")
    await _ensure_column(db, "session_metrics", "subagent_count", "INTEGER DEFAULT 0")
    await _ensure_column(db, "session_metrics", "vscode_integration_count", "INTEGER DEFAULT 0")
    await _ensure_column(db, "session_metrics", "autonomy_score", "REAL DEFAULT 0.0")
    await _ensure_column(db, "session_metrics", "parallel_development_efficiency", "REAL DEFAULT 0.0")

    await db.executescript(_EXTENDED_TABLES)
    await db.execute("CREATE INDEX IF NOT EXISTS idx_sessions_session_type ON sessions(session_type)")


async def run_migrations(db: aiosqlite.Connection, *, extended: bool | None = None) -> None:
    """Create all tables. Idempotent."""
    use_extended = config.EXTENDED_SCHEMA_ENABLED if extended is None else extended

    await db.executescript(_TABLES)
    if use_extended:
        await _ensure_extended_schema(db)

    async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
        row = await cur.fetchone()
        current_version = row[0] if row and row[0] else 0
    if current_version < SCHEMA_VERSION:
        await db.execute(
            "INSERT INTO schema_version (version, applied) VALUES (?, ?)",
            (SCHEMA_VERSION, to_storage(utc_now())),
        )
    await db.commit()
    logger.info("Migrations complete, schema version %s (extended=%s)", SCHEMA_VERSION, use_extended)
