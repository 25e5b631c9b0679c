"""PostgreSQL schema creation.

Mirrors sqlite_migrations with native types (TIMESTAMPTZ, BOOLEAN, JSONB).
"""
from __future__ import annotations

import logging

import asyncpg

from ccanalytics import config

logger = logging.getLogger("ccanalytics.db")

SCHEMA_VERSION = 1

_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS sessions (
    id                   BIGSERIAL PRIMARY KEY,
    session_id           VARCHAR(255) NOT NULL UNIQUE,
    project_name         VARCHAR(255) DEFAULT '',
    source_file          TEXT DEFAULT '',
    started_at           TIMESTAMPTZ NOT NULL,
    ended_at             TIMESTAMPTZ,
    duration_seconds     INTEGER DEFAULT 0,
    model_name           VARCHAR(100) DEFAULT '',
    total_input_tokens   BIGINT DEFAULT 0,
    total_output_tokens  BIGINT DEFAULT 0,
    total_cost_usd       NUMERIC(12, 6) DEFAULT 0,
    tools_used           JSONB DEFAULT '[]'::jsonb,
    cache_hit_count      INTEGER DEFAULT 0,
    cache_miss_count     INTEGER DEFAULT 0,
    created_at           TIMESTAMPTZ NOT NULL,
    updated_at           TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_started_at ON sessions(started_at);
CREATE INDEX IF NOT EXISTS idx_sessions_project_name ON sessions(project_name);
CREATE INDEX IF NOT EXISTS idx_sessions_source_file ON sessions(source_file);

CREATE TABLE IF NOT EXISTS raw_messages (
    id                  BIGSERIAL PRIMARY KEY,
    session_id          VARCHAR(255) NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
    message_index       INTEGER NOT NULL,
    role                VARCHAR(50) NOT NULL,
    content             TEXT DEFAULT '',
    content_length      INTEGER DEFAULT 0,
    input_tokens        INTEGER DEFAULT 0,
    output_tokens       INTEGER DEFAULT 0,
    tool_name           VARCHAR(255),
    tool_input          TEXT,
    tool_output         TEXT,
    timestamp           TIMESTAMPTZ NOT NULL,
    processing_time_ms  INTEGER,
    created_at          TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_raw_messages_session ON raw_messages(session_id, message_index);
CREATE INDEX IF NOT EXISTS idx_raw_messages_timestamp ON raw_messages(timestamp);

CREATE TABLE IF NOT EXISTS session_metrics (
    id                BIGSERIAL PRIMARY KEY,
    session_id        VARCHAR(255) NOT NULL UNIQUE REFERENCES sessions(session_id) ON DELETE CASCADE,
    date_bucket       DATE NOT NULL,
    hour_bucket       INTEGER NOT NULL,
    weekday           INTEGER NOT NULL,
    week_of_year      INTEGER NOT NULL,
    month             INTEGER NOT NULL,
    year              INTEGER NOT NULL,
    input_tokens      BIGINT DEFAULT 0,
    output_tokens     BIGINT DEFAULT 0,
    cost_usd          NUMERIC(12, 6) DEFAULT 0,
    duration_seconds  INTEGER DEFAULT 0,
    message_count     INTEGER DEFAULT 0,
    tool_usage_count  INTEGER DEFAULT 0,
    cache_efficiency  NUMERIC(5, 4) DEFAULT 0,
    created_at        TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_session_metrics_date ON session_metrics(date_bucket);
CREATE INDEX IF NOT EXISTS idx_session_metrics_created ON session_metrics(created_at);

CREATE TABLE IF NOT EXISTS sync_metadata (
    id                   BIGSERIAL PRIMARY KEY,
    sync_key             VARCHAR(255) NOT NULL UNIQUE,
    last_sync_timestamp  TIMESTAMPTZ,
    files_processed      INTEGER DEFAULT 0,
    sessions_processed   INTEGER DEFAULT 0,
    sync_status          VARCHAR(50) NOT NULL DEFAULT 'completed',
    error_message        TEXT,
    created_at           TIMESTAMPTZ NOT NULL,
    updated_at           TIMESTAMPTZ NOT NULL
);
"""

_EXTENDED = """
ALTER TABLE sessions ADD COLUMN IF NOT EXISTS is_extended_session BOOLEAN DEFAULT FALSE;
ALTER TABLE sessions ADD COLUMN IF NOT EXISTS session_type VARCHAR(50) DEFAULT 'standard';
ALTER TABLE sessions ADD COLUMN IF NOT EXISTS autonomy_level INTEGER DEFAULT 0;
ALTER TABLE sessions ADD COLUMN IF NOT EXISTS has_background_tasks BOOLEAN DEFAULT FALSE;
ALTER TABLE sessions ADD COLUMN IF NOT EXISTS has_subagents BOOLEAN DEFAULT FALSE;
ALTER TABLE sessions ADD COLUMN IF NOT EXISTS has_vscode_integration BOOLEAN DEFAULT FALSE;

ALTER TABLE raw_messages ADD COLUMN IF NOT EXISTS checkpoint_id VARCHAR(255);
ALTER TABLE raw_messages ADD COLUMN IF NOT EXISTS subagent_id VARCHAR(255);
ALTER TABLE raw_messages ADD COLUMN IF NOT EXISTS background_task_id VARCHAR(255);
ALTER TABLE raw_messages ADD COLUMN IF NOT EXISTS vscode_integration_id VARCHAR(255);
ALTER TABLE raw_messages ADD COLUMN IF NOT EXISTS is_rewind_trigger BOOLEAN DEFAULT FALSE;
ALTER TABLE raw_messages ADD COLUMN IF NOT EXISTS autonomy_level INTEGER DEFAULT 0;

ALTER TABLE session_metrics ADD COLUMN IF NOT EXISTS checkpoint_count INTEGER DEFAULT 0;
ALTER TABLE session_metrics ADD COLUMN IF NOT EXISTS rewind_count INTEGER DEFAULT 0;
ALTER TABLE session_metrics ADD COLUMN IF NOT EXISTS background_task_count INTEGER DEFAULT 0;
ALTER TABLE session_metrics ADD COLUMN IF NOT EXISTS subagent_count INTEGER DEFAULT 0;
ALTER TABLE session_metrics ADD COLUMN IF NOT EXISTS vscode_integration_count INTEGER DEFAULT 0;
ALTER TABLE session_metrics ADD COLUMN IF NOT EXISTS autonomy_score NUMERIC(5, 2) DEFAULT 0;
ALTER TABLE session_metrics ADD COLUMN IF NOT EXISTS parallel_development_efficiency NUMERIC(7, 2) DEFAULT 0;

CREATE TABLE IF NOT EXISTS checkpoints (
    id               BIGSERIAL PRIMARY KEY,
    session_id       VARCHAR(255) NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
    checkpoint_id    VARCHAR(255) NOT NULL,
    created_at       TIMESTAMPTZ NOT NULL,
    is_rewind_point  BOOLEAN DEFAULT FALSE,
    rewind_count     INTEGER DEFAULT 0,
    tokens_used      INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS background_tasks (
    id                BIGSERIAL PRIMARY KEY,
    session_id        VARCHAR(255) NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
    task_id           VARCHAR(255) NOT NULL,
    started_at        TIMESTAMPTZ NOT NULL,
    completed_at      TIMESTAMPTZ,
    duration_seconds  INTEGER DEFAULT 0,
    input_tokens      INTEGER DEFAULT 0,
    output_tokens     INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS subagents (
    id                BIGSERIAL PRIMARY KEY,
    session_id        VARCHAR(255) NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
    subagent_id       VARCHAR(255) NOT NULL,
    started_at        TIMESTAMPTZ NOT NULL,
    completed_at      TIMESTAMPTZ,
    duration_seconds  INTEGER DEFAULT 0,
    input_tokens      INTEGER DEFAULT 0,
    output_tokens     INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS vscode_integrations (
    id                BIGSERIAL PRIMARY KEY,
    session_id        VARCHAR(255) NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
    integration_id    VARCHAR(255) NOT NULL,
    started_at        TIMESTAMPTZ NOT NULL,
    ended_at          TIMESTAMPTZ,
    duration_seconds  INTEGER DEFAULT 0,
    file_operations   INTEGER DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_checkpoints_session ON checkpoints(session_id);
CREATE INDEX IF NOT EXISTS idx_background_tasks_session ON background_tasks(session_id);
CREATE INDEX IF NOT EXISTS idx_subagents_session ON subagents(session_id);
CREATE INDEX IF NOT EXISTS idx_vscode_integrations_session ON vscode_integrations(session_id);
CREATE INDEX IF NOT EXISTS idx_sessions_session_type ON sessions(session_type);
"""


async def run_migrations(pool: asyncpg.Pool, *, extended: bool | None = None) -> None:
    """Create all tables. Idempotent."""
    use_extended = config.EXTENDED_SCHEMA_ENABLED if extended is None else extended
    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute(_TABLES)
            if use_extended:
                await conn.execute(_EXTENDED)
            current_version = await conn.fetchval("SELECT COALESCE(MAX(version), 0) FROM schema_version")
            if current_version < SCHEMA_VERSION:
                await conn.execute("INSERT INTO schema_version (version) VALUES ($1)", SCHEMA_VERSION)
    logger.info("Migrations complete, schema version %s (extended=%s)", SCHEMA_VERSION, use_extended)
