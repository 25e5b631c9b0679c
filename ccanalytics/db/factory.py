"""Repository factory to abstract DB backend (SQLite vs Postgres)."""
from __future__ import annotations

from typing import Any

import aiosqlite

from ccanalytics.db.repositories.retention import SqliteRetentionRepository
from ccanalytics.db.repositories.sessions import SqliteSessionRepository
from ccanalytics.db.repositories.sync_metadata import SqliteSyncMetadataRepository


def get_session_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteSessionRepository(db)
    from ccanalytics.db.repositories.postgres.sessions import PostgresSessionRepository
    return PostgresSessionRepository(db)


def get_sync_metadata_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteSyncMetadataRepository(db)
    from ccanalytics.db.repositories.postgres.sync_metadata import PostgresSyncMetadataRepository
    return PostgresSyncMetadataRepository(db)


def get_retention_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteRetentionRepository(db)
    from ccanalytics.db.repositories.postgres.retention import PostgresRetentionRepository
    return PostgresRetentionRepository(db)
