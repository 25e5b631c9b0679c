"""PostgreSQL storage for the sync checkpoint row."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from ccanalytics.models import SyncMetadata, SyncStatus


class PostgresSyncMetadataRepository:
    def __init__(self, db: Any):
        self.db = db

    async def get(self, sync_key: str) -> SyncMetadata | None:
        row = await self.db.fetchrow("SELECT * FROM sync_metadata WHERE sync_key = $1", sync_key)
        if not row:
            return None
        return SyncMetadata(
            sync_key=row["sync_key"],
            last_sync_timestamp=row["last_sync_timestamp"],
            files_processed=row["files_processed"] or 0,
            sessions_processed=row["sessions_processed"] or 0,
            sync_status=SyncStatus(row["sync_status"]),
            error_message=row["error_message"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def try_begin(self, sync_key: str, now: datetime, stale_before: datetime) -> bool:
        row = await self.db.fetchrow(
            """INSERT INTO sync_metadata (
                   sync_key, last_sync_timestamp, files_processed, sessions_processed,
                   sync_status, error_message, created_at, updated_at
               ) VALUES ($1, NULL, 0, 0, 'in_progress', NULL, $2, $2)
               ON CONFLICT(sync_key) DO UPDATE SET
                   sync_status='in_progress', error_message=NULL,
                   files_processed=0, sessions_processed=0,
                   updated_at=EXCLUDED.updated_at
               WHERE sync_metadata.sync_status <> 'in_progress'
                  OR sync_metadata.updated_at < $3
               RETURNING sync_key""",
            sync_key,
            now,
            stale_before,
        )
        return row is not None

    async def finish(
        self,
        sync_key: str,
        *,
        status: SyncStatus,
        files_processed: int,
        sessions_processed: int,
        error_message: str | None,
        last_sync_timestamp: datetime | None,
        now: datetime,
    ) -> None:
        await self.db.execute(
            """UPDATE sync_metadata SET
                   sync_status=$1, files_processed=$2, sessions_processed=$3, error_message=$4,
                   last_sync_timestamp=COALESCE($5, last_sync_timestamp), updated_at=$6
               WHERE sync_key=$7""",
            status.value,
            files_processed,
            sessions_processed,
            error_message,
            last_sync_timestamp,
            now,
            sync_key,
        )

    async def reset(self, sync_key: str, now: datetime) -> None:
        await self.db.execute(
            """UPDATE sync_metadata SET last_sync_timestamp=NULL, sync_status='completed',
                   error_message=NULL, updated_at=$1
               WHERE sync_key=$2""",
            now,
            sync_key,
        )
