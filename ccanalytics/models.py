"""Pydantic models for parsed session data, sync results and retention reports."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ── Discovery ───────────────────────────────────────────────────────

class FileInfo(BaseModel):
    path: str
    size: int = 0
    modified_time: datetime
    is_new: bool = False
    is_updated: bool = False


class DiscoveryDiff(BaseModel):
    new: list[FileInfo] = Field(default_factory=list)
    updated: list[FileInfo] = Field(default_factory=list)
    all: list[FileInfo] = Field(default_factory=list)

    @property
    def to_process(self) -> list[FileInfo]:
        return [*self.new, *self.updated]


# ── Parsed messages ─────────────────────────────────────────────────

class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    SUBAGENT = "subagent"
    BACKGROUND_TASK = "background_task"


class ToolCall(BaseModel):
    name: str
    input: Any = None
    id: Optional[str] = None


class ToolResult(BaseModel):
    tool_use_id: Optional[str] = None
    content: Any = None
    is_error: bool = False


class CacheStats(BaseModel):
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_hits: Optional[int] = None
    cache_misses: Optional[int] = None


class RawMessage(BaseModel):
    line_number: int
    role: MessageRole
    content: str = ""
    timestamp: datetime
    model: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_results: list[ToolResult] = Field(default_factory=list)
    cache_stats: Optional[CacheStats] = None
    processing_time_ms: Optional[int] = None
    checkpoint_id: Optional[str] = None
    subagent_id: Optional[str] = None
    background_task_id: Optional[str] = None
    vscode_integration_id: Optional[str] = None
    is_rewind_trigger: bool = False
    autonomy_level: int = 0


# ── Session bundle ──────────────────────────────────────────────────

class SessionRecord(BaseModel):
    session_id: str
    project_name: str = ""
    source_file: str = ""
    started_at: datetime
    ended_at: datetime
    duration_seconds: int = 0
    model_name: str = "unknown"
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost_usd: float = 0.0
    tools_used: list[str] = Field(default_factory=list)
    cache_hit_count: int = 0
    cache_miss_count: int = 0
    is_extended_session: bool = False
    session_type: str = "standard"
    autonomy_level: int = 0
    has_background_tasks: bool = False
    has_subagents: bool = False
    has_vscode_integration: bool = False


class MessageRecord(BaseModel):
    session_id: str
    message_index: int
    role: str
    content: str = ""
    content_length: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    tool_name: Optional[str] = None
    tool_input: Optional[str] = None
    tool_output: Optional[str] = None
    timestamp: datetime
    processing_time_ms: Optional[int] = None
    checkpoint_id: Optional[str] = None
    subagent_id: Optional[str] = None
    background_task_id: Optional[str] = None
    vscode_integration_id: Optional[str] = None
    is_rewind_trigger: bool = False
    autonomy_level: int = 0


class MetricsRecord(BaseModel):
    session_id: str
    date_bucket: str
    hour_bucket: int
    weekday: int
    week_of_year: int
    month: int
    year: int
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    duration_seconds: int = 0
    message_count: int = 0
    tool_usage_count: int = 0
    cache_efficiency: float = 0.0
    checkpoint_count: int = 0
    rewind_count: int = 0
    background_task_count: int = 0
    subagent_count: int = 0
    vscode_integration_count: int = 0
    autonomy_score: float = 0.0
    parallel_development_efficiency: float = 0.0


class CheckpointRecord(BaseModel):
    session_id: str
    checkpoint_id: str
    created_at: datetime
    is_rewind_point: bool = False
    rewind_count: int = 0
    tokens_used: int = 0


class BackgroundTaskRecord(BaseModel):
    session_id: str
    task_id: str
    started_at: datetime
    completed_at: datetime
    duration_seconds: int = 0
    input_tokens: int = 0
    output_tokens: int = 0


class SubagentRecord(BaseModel):
    session_id: str
    subagent_id: str
    started_at: datetime
    completed_at: datetime
    duration_seconds: int = 0
    input_tokens: int = 0
    output_tokens: int = 0


class VSCodeIntegrationRecord(BaseModel):
    session_id: str
    integration_id: str
    started_at: datetime
    ended_at: datetime
    duration_seconds: int = 0
    file_operations: int = 0


class SessionBundle(BaseModel):
    session: SessionRecord
    messages: list[MessageRecord] = Field(default_factory=list)
    metrics: MetricsRecord
    checkpoints: list[CheckpointRecord] = Field(default_factory=list)
    background_tasks: list[BackgroundTaskRecord] = Field(default_factory=list)
    subagents: list[SubagentRecord] = Field(default_factory=list)
    vscode_integrations: list[VSCodeIntegrationRecord] = Field(default_factory=list)


# ── Parse results ───────────────────────────────────────────────────

class ParseErrorType(str, Enum):
    FILE_ACCESS = "FILE_ACCESS"
    MALFORMED_JSON = "MALFORMED_JSON"
    INVALID_DATA = "INVALID_DATA"
    MISSING_FIELD = "MISSING_FIELD"


class ParseError(BaseModel):
    file_path: str
    line_number: Optional[int] = None
    error_type: ParseErrorType
    message: str
    raw_data: Optional[str] = None


class ParseResult(BaseModel):
    success: bool
    data: Optional[SessionBundle] = None
    errors: list[ParseError] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


# ── Writer results ──────────────────────────────────────────────────

class InsertedCounts(BaseModel):
    sessions: int = 0
    messages: int = 0
    metrics: int = 0
    checkpoints: int = 0
    background_tasks: int = 0
    subagents: int = 0
    vscode_integrations: int = 0

    def merge(self, other: InsertedCounts) -> None:
        for name in type(self).model_fields:
            setattr(self, name, getattr(self, name) + getattr(other, name))


class InsertionError(BaseModel):
    entity_type: str
    session_id: Optional[str] = None
    error: str


class InsertionResult(BaseModel):
    success: bool = True
    inserted: InsertedCounts = Field(default_factory=InsertedCounts)
    errors: list[InsertionError] = Field(default_factory=list)
    duplicates_skipped: int = 0

    def merge(self, other: InsertionResult) -> None:
        self.inserted.merge(other.inserted)
        self.errors.extend(other.errors)
        self.duplicates_skipped += other.duplicates_skipped
        self.success = self.success and other.success


class ConflictResolution(BaseModel):
    to_insert: list[SessionRecord] = Field(default_factory=list)
    to_update: list[SessionRecord] = Field(default_factory=list)
    to_skip: list[SessionRecord] = Field(default_factory=list)


# ── Sync orchestration ──────────────────────────────────────────────

class SyncStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncMetadata(BaseModel):
    sync_key: str = "global"
    last_sync_timestamp: Optional[datetime] = None
    files_processed: int = 0
    sessions_processed: int = 0
    sync_status: SyncStatus = SyncStatus.COMPLETED
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SyncOptions(BaseModel):
    dry_run: bool = False
    max_files: Optional[int] = Field(default=None, ge=1)
    skip_existing: bool = False
    incremental: bool = False
    skip_unchanged: bool = False


class SyncSummary(BaseModel):
    files_processed: int = 0
    new_files: int = 0
    updated_files: int = 0
    sessions_inserted: int = 0
    messages_inserted: int = 0
    metrics_inserted: int = 0
    duplicates_skipped: int = 0
    errors: int = 0


class FailedFile(BaseModel):
    file_path: str
    errors: list[ParseError] = Field(default_factory=list)


class SyncDetails(BaseModel):
    files_discovered: int = 0
    session_ids: list[str] = Field(default_factory=list)
    failed_files: list[FailedFile] = Field(default_factory=list)
    insertion_errors: list[InsertionError] = Field(default_factory=list)


class SyncTiming(BaseModel):
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_ms: int = 0


class SyncResult(BaseModel):
    success: bool = False
    summary: SyncSummary = Field(default_factory=SyncSummary)
    details: SyncDetails = Field(default_factory=SyncDetails)
    timing: SyncTiming

    @property
    def parse_errors(self) -> list[ParseError]:
        return [err for failed in self.details.failed_files for err in failed.errors]


class IncrementalPreview(BaseModel):
    last_sync: Optional[datetime] = None
    new_files: list[FileInfo] = Field(default_factory=list)
    updated_files: list[FileInfo] = Field(default_factory=list)
    total_files: int = 0
    estimated_sessions: int = 0


class SyncProgressUpdate(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    status: str = "idle"
    progress_percent: int = 0
    current_file: Optional[str] = None
    total_files: int = 0
    processed_files: int = 0
    sessions_processed: int = 0
    messages_processed: int = 0
    errors: int = 0
    start_time: Optional[datetime] = None
    estimated_time_remaining_ms: Optional[int] = None


# ── Retention ───────────────────────────────────────────────────────

class RetentionConfig(BaseModel):
    retention_days: int = Field(default=90, ge=1)
    message_retention_days: int = Field(default=90, ge=1)
    metrics_retention_days: int = Field(default=90, ge=1)
    sync_retention_days: int = Field(default=30, ge=1)
    batch_size: int = Field(default=1000, ge=1)
    batch_pause_seconds: float = Field(default=0.1, ge=0)
    dry_run: bool = False


class RetentionTableStats(BaseModel):
    table: str
    total_records: int = 0
    eligible_for_deletion: int = 0
    oldest_record: Optional[datetime] = None
    newest_record: Optional[datetime] = None
    size_bytes: Optional[int] = None


class RetentionStats(BaseModel):
    tables: list[RetentionTableStats] = Field(default_factory=list)
    total_eligible_records: int = 0


class RetentionResult(BaseModel):
    success: bool = True
    dry_run: bool = False
    deleted: dict[str, int] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)
    vacuumed: bool = False
    duration_ms: int = 0


class RetentionPolicyReport(BaseModel):
    valid: bool = True
    warnings: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
