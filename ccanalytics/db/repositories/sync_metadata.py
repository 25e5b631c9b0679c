"""SQLite storage for the sync checkpoint row."""
from __future__ import annotations

from datetime import datetime

import aiosqlite

from ccanalytics.date_utils import from_storage, to_storage
from ccanalytics.db.repositories.common import sqlite_write_lock
from ccanalytics.models import SyncMetadata, SyncStatus


def _row_to_metadata(row: aiosqlite.Row) -> SyncMetadata:
    data = dict(row)
    return SyncMetadata(
        sync_key=data["sync_key"],
        last_sync_timestamp=from_storage(data.get("last_sync_timestamp")),
        files_processed=data.get("files_processed") or 0,
        sessions_processed=data.get("sessions_processed") or 0,
        sync_status=SyncStatus(data.get("sync_status") or SyncStatus.COMPLETED.value),
        error_message=data.get("error_message"),
        created_at=from_storage(data.get("created_at")),
        updated_at=from_storage(data.get("updated_at")),
    )


class SqliteSyncMetadataRepository:
    """Keyed checkpoint rows (``global`` for the whole tree)."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get(self, sync_key: str) -> SyncMetadata | None:
        async with self.db.execute("SELECT * FROM sync_metadata WHERE sync_key = ?", (sync_key,)) as cur:
            row = await cur.fetchone()
        return _row_to_metadata(row) if row else None

    async def try_begin(self, sync_key: str, now: datetime, stale_before: datetime) -> bool:
        """Compare-and-set the row to in_progress.

        Succeeds when no row exists, the row is not in_progress, or the
        in_progress row has not been touched since ``stale_before``.
        """
        async with sqlite_write_lock(self.db):
            cur = await self.db.execute(
                """INSERT INTO sync_metadata (
                       sync_key, last_sync_timestamp, files_processed, sessions_processed,
                       sync_status, error_message, created_at, updated_at
                   ) VALUES (?, NULL, 0, 0, 'in_progress', NULL, ?, ?)
                   ON CONFLICT(sync_key) DO UPDATE SET
                       sync_status='in_progress', error_message=NULL,
                       files_processed=0, sessions_processed=0,
                       updated_at=excluded.updated_at
                   WHERE sync_metadata.sync_status != 'in_progress'
                      OR sync_metadata.updated_at < ?""",
                (sync_key, to_storage(now), to_storage(now), to_storage(stale_before)),
            )
            acquired = cur.rowcount > 0
            await self.db.commit()
        return acquired

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
        """Write a terminal state. A None watermark keeps the stored one."""
        async with sqlite_write_lock(self.db):
            await self.db.execute(
                """UPDATE sync_metadata SET
                       sync_status=?, files_processed=?, sessions_processed=?, error_message=?,
                       last_sync_timestamp=COALESCE(?, last_sync_timestamp), updated_at=?
                   WHERE sync_key=?""",
                (
                    status.value,
                    files_processed,
                    sessions_processed,
                    error_message,
                    to_storage(last_sync_timestamp),
                    to_storage(now),
                    sync_key,
                ),
            )
            await self.db.commit()

    async def reset(self, sync_key: str, now: datetime) -> None:
        """Clear the watermark so the next incremental run is a full sync."""
        async with sqlite_write_lock(self.db):
            await self.db.execute(
                """UPDATE sync_metadata SET last_sync_timestamp=NULL, sync_status='completed',
                       error_message=NULL, updated_at=?
                   WHERE sync_key=?""",
                (to_storage(now), sync_key),
            )
            await self.db.commit()
