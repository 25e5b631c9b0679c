"""Column layouts shared by the SQLite and Postgres repositories."""
from __future__ import annotations

import asyncio
import weakref
from typing import Any

SESSION_COLUMNS = (
    "session_id",
    "project_name",
    "source_file",
    "started_at",
    "ended_at",
    "duration_seconds",
    "model_name",
    "total_input_tokens",
    "total_output_tokens",
    "total_cost_usd",
    "tools_used",
    "cache_hit_count",
    "cache_miss_count",
)
SESSION_EXTENDED_COLUMNS = (
    "is_extended_session",
    "session_type",
    "autonomy_level",
    "has_background_tasks",
    "has_subagents",
    "has_vscode_integration",
)

MESSAGE_COLUMNS = (
    "session_id",
    "message_index",
    "role",
    "content",
    "content_length",
    "input_tokens",
    "output_tokens",
    "tool_name",
    "tool_input",
    "tool_output",
    "timestamp",
    "processing_time_ms",
)
MESSAGE_EXTENDED_COLUMNS = (
    "checkpoint_id",
    "subagent_id",
    "background_task_id",
    "vscode_integration_id",
    "is_rewind_trigger",
    "autonomy_level",
)

METRICS_COLUMNS = (
    "session_id",
    "date_bucket",
    "hour_bucket",
    "weekday",
    "week_of_year",
    "month",
    "year",
    "input_tokens",
    "output_tokens",
    "cost_usd",
    "duration_seconds",
    "message_count",
    "tool_usage_count",
    "cache_efficiency",
)
METRICS_EXTENDED_COLUMNS = (
    "checkpoint_count",
    "rewind_count",
    "background_task_count",
    "subagent_count",
    "vscode_integration_count",
    "autonomy_score",
    "parallel_development_efficiency",
)

# (table, bundle attribute, columns)
FEATURE_TABLES: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    (
        "checkpoints",
        "checkpoints",
        ("session_id", "checkpoint_id", "created_at", "is_rewind_point", "rewind_count", "tokens_used"),
    ),
    (
        "background_tasks",
        "background_tasks",
        ("session_id", "task_id", "started_at", "completed_at", "duration_seconds", "input_tokens", "output_tokens"),
    ),
    (
        "subagents",
        "subagents",
        ("session_id", "subagent_id", "started_at", "completed_at", "duration_seconds", "input_tokens", "output_tokens"),
    ),
    (
        "vscode_integrations",
        "vscode_integrations",
        ("session_id", "integration_id", "started_at", "ended_at", "duration_seconds", "file_operations"),
    ),
)

# Fields hashed to decide whether a stored session changed.
CONFLICT_FIELDS = (
    "ended_at",
    "duration_seconds",
    "total_input_tokens",
    "total_output_tokens",
    "total_cost_usd",
)


def columns_for(base: tuple[str, ...], extra: tuple[str, ...], extended: bool) -> tuple[str, ...]:
    return base + extra if extended else base


def record_values(record: Any, columns: tuple[str, ...]) -> dict[str, Any]:
    data = record.model_dump()
    return {column: data.get(column) for column in columns}


_sqlite_locks: "weakref.WeakKeyDictionary[Any, asyncio.Lock]" = weakref.WeakKeyDictionary()


def sqlite_write_lock(db: Any) -> asyncio.Lock:
    """One writer at a time per SQLite connection, so commits never split a transaction."""
    lock = _sqlite_locks.get(db)
    if lock is None:
        lock = asyncio.Lock()
        _sqlite_locks[db] = lock
    return lock
