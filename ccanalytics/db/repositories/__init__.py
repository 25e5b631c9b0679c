"""Repository package for database access."""

from .sessions import SqliteSessionRepository
from .sync_metadata import SqliteSyncMetadataRepository
from .retention import SqliteRetentionRepository

__all__ = [
    "SqliteSessionRepository",
    "SqliteSyncMetadataRepository",
    "SqliteRetentionRepository",
]
