"""Transactional, idempotent session writes.

Each session is written in its own transaction: the session upsert, the
message replacement, the metrics upsert and (extended schema) the feature
rows commit together or not at all.
"""
from __future__ import annotations

import hashlib
import logging
from typing import Any, Iterable

from ccanalytics import config
from ccanalytics.date_utils import from_storage, to_storage
from ccanalytics.db.factory import get_session_repository
from ccanalytics.db.repositories.common import CONFLICT_FIELDS
from ccanalytics.db.schema import SchemaCapabilities
from ccanalytics.models import (
    ConflictResolution,
    InsertedCounts,
    InsertionError,
    InsertionResult,
    SessionBundle,
    SessionRecord,
)

logger = logging.getLogger("ccanalytics.db")


def _normalized_conflict_fields(values: dict[str, Any]) -> str:
    ended_at = from_storage(values.get("ended_at"))
    parts = [
        to_storage(ended_at) or "",
        str(int(values.get("duration_seconds") or 0)),
        str(int(values.get("total_input_tokens") or 0)),
        str(int(values.get("total_output_tokens") or 0)),
        f"{float(values.get('total_cost_usd') or 0.0):.6f}",
    ]
    return "|".join(parts)


def session_content_hash(values: dict[str, Any] | SessionRecord) -> str:
    """md5 over the mutable numeric/time fields of a session."""
    if isinstance(values, SessionRecord):
        values = values.model_dump(include=set(CONFLICT_FIELDS))
    return hashlib.md5(_normalized_conflict_fields(values).encode("utf-8")).hexdigest()


class SessionWriter:
    """Write parsed session bundles to the store."""

    def __init__(
        self,
        db: Any,
        capabilities: SchemaCapabilities | None = None,
        *,
        message_batch_size: int = config.MESSAGE_BATCH_SIZE,
    ):
        self.db = db
        self.session_repo = get_session_repository(db)
        self.capabilities = capabilities or SchemaCapabilities(db)
        self.message_batch_size = message_batch_size

    async def _write_bundle(self, bundle: SessionBundle, extended: bool) -> tuple[InsertedCounts, bool]:
        counts = InsertedCounts()
        async with self.session_repo.transaction() as tx:
            inserted = await tx.upsert_session(bundle.session, extended=extended)
            counts.messages = await tx.replace_messages(
                bundle.session.session_id,
                bundle.messages,
                extended=extended,
                batch_size=self.message_batch_size,
            )
            await tx.upsert_metrics(bundle.metrics, extended=extended)
            counts.metrics = 1
            if extended:
                features = await tx.replace_features(bundle)
                counts.checkpoints = features.get("checkpoints", 0)
                counts.background_tasks = features.get("background_tasks", 0)
                counts.subagents = features.get("subagents", 0)
                counts.vscode_integrations = features.get("vscode_integrations", 0)
        counts.sessions = 1 if inserted else 0
        return counts, inserted

    async def insert_session(self, bundle: SessionBundle) -> InsertionResult:
        """Write one bundle in a single transaction.

        Any failure rolls the whole session back and is re-raised. An update of
        an existing session counts toward ``duplicates_skipped``.
        """
        extended = await self.capabilities.has_extended_schema()
        counts, inserted = await self._write_bundle(bundle, extended)
        return InsertionResult(
            success=True,
            inserted=counts,
            duplicates_skipped=0 if inserted else 1,
        )

    async def batch_insert_sessions(self, bundles: Iterable[SessionBundle]) -> InsertionResult:
        """Write many bundles, one transaction each. Failures are collected, not raised."""
        extended = await self.capabilities.has_extended_schema()
        result = InsertionResult()
        for bundle in bundles:
            session_id = bundle.session.session_id
            try:
                counts, inserted = await self._write_bundle(bundle, extended)
            except Exception as exc:
                logger.warning("Failed to write session %s: %s", session_id, exc)
                result.errors.append(InsertionError(entity_type="session", session_id=session_id, error=str(exc)))
                continue
            result.inserted.merge(counts)
            if not inserted:
                result.duplicates_skipped += 1
        result.success = not result.errors
        return result

    async def resolve_conflicts(self, sessions: Iterable[SessionRecord]) -> ConflictResolution:
        """Classify sessions as insert/update/skip by comparing content hashes."""
        incoming = list(sessions)
        stored = await self.session_repo.conflict_rows(s.session_id for s in incoming)
        resolution = ConflictResolution()
        for session in incoming:
            existing = stored.get(session.session_id)
            if existing is None:
                resolution.to_insert.append(session)
            elif session_content_hash(existing) == session_content_hash(session):
                resolution.to_skip.append(session)
            else:
                resolution.to_update.append(session)
        return resolution

    async def existing_session_ids(self, session_ids: Iterable[str]) -> set[str]:
        return await self.session_repo.existing_session_ids(session_ids)

    async def known_source_files(self) -> set[str]:
        return await self.session_repo.known_source_files()

    async def session_stats(self) -> dict[str, Any]:
        return await self.session_repo.session_stats()
