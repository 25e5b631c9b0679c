"""Parse JSONL session log files into SessionBundle records."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from ccanalytics import config
from ccanalytics.models import (
    BackgroundTaskRecord,
    CheckpointRecord,
    MessageRecord,
    MessageRole,
    MetricsRecord,
    ParseError,
    ParseErrorType,
    ParseResult,
    RawMessage,
    SessionBundle,
    SessionRecord,
    SubagentRecord,
    VSCodeIntegrationRecord,
)
from ccanalytics.parsers.messages import InvalidLineError, normalize_message

logger = logging.getLogger("ccanalytics.parser")

DEFAULT_MODEL = "claude-3-sonnet-20240229"

# USD per million tokens (input, output)
_MODEL_RATES: dict[str, tuple[float, float]] = {
    "claude-3-sonnet-20240229": (3.0, 15.0),
    "claude-3-haiku-20240307": (0.25, 1.25),
    "claude-3-opus-20240229": (15.0, 75.0),
    "claude-sonnet-4-20250514": (3.0, 15.0),
    "claude-sonnet-4-5-20250929": (3.0, 15.0),
}
_FAMILY_RATES: tuple[tuple[str, tuple[float, float]], ...] = (
    ("opus", (15.0, 75.0)),
    ("haiku", (0.25, 1.25)),
    ("sonnet", (3.0, 15.0)),
)
_RAW_DATA_LIMIT = 500


def _make_id(path: Path) -> str:
    """Derive the session natural key from the source filename."""
    stem = path.stem
    return stem if "session_" in stem else f"session_{stem}"


def _project_name(path: Path) -> str:
    parts = path.parts
    if "projects" in parts:
        index = len(parts) - 1 - parts[::-1].index("projects")
        if index + 1 < len(parts) - 1:
            return parts[index + 1]
    return path.parent.name


def _model_rates(model: str) -> tuple[float, float]:
    if model in _MODEL_RATES:
        return _MODEL_RATES[model]
    lowered = model.lower()
    for family, rates in _FAMILY_RATES:
        if family in lowered:
            return rates
    return _MODEL_RATES[DEFAULT_MODEL]


def estimate_cost(tokens_in: int, tokens_out: int, model: str) -> float:
    """Cost estimate from the static rate table. Unknown models use the default rate."""
    in_rate, out_rate = _model_rates(model)
    return (tokens_in / 1_000_000 * in_rate) + (tokens_out / 1_000_000 * out_rate)


def detect_model(messages: list[RawMessage]) -> str:
    for message in messages:
        if message.model:
            return message.model
    if any(message.role == MessageRole.ASSISTANT for message in messages):
        return DEFAULT_MODEL
    return "unknown"


def classify_session(
    duration_seconds: int,
    max_autonomy: int,
    *,
    extended_threshold: int = config.EXTENDED_SESSION_SECONDS,
    autonomy_threshold: int = config.AUTONOMY_THRESHOLD,
) -> str:
    if duration_seconds < extended_threshold:
        return "standard"
    if max_autonomy < autonomy_threshold:
        return "extended"
    return "autonomous"


def _whole_seconds(start: datetime, end: datetime) -> int:
    return max(0, (end - start) // timedelta(seconds=1))


def _json_or_none(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str)


@dataclass
class _Span:
    """First/last sighting of a feature id plus token totals."""

    first: datetime
    last: datetime
    input_tokens: int = 0
    output_tokens: int = 0
    tool_messages: int = 0
    rewinds: int = 0

    def add(self, message: RawMessage) -> None:
        self.last = message.timestamp
        self.input_tokens += message.input_tokens
        self.output_tokens += message.output_tokens
        if message.tool_calls:
            self.tool_messages += 1
        if message.is_rewind_trigger:
            self.rewinds += 1


@dataclass
class _Fold:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    tools: dict[str, None] = field(default_factory=dict)
    max_autonomy: int = 0
    autonomy_total: int = 0
    checkpoint_count: int = 0
    rewind_count: int = 0
    background_task_count: int = 0
    subagent_count: int = 0
    vscode_count: int = 0
    checkpoints: dict[str, _Span] = field(default_factory=dict)
    background_tasks: dict[str, _Span] = field(default_factory=dict)
    subagents: dict[str, _Span] = field(default_factory=dict)
    vscode: dict[str, _Span] = field(default_factory=dict)


def _track(spans: dict[str, _Span], key: str | None, message: RawMessage) -> None:
    if not key:
        return
    span = spans.get(key)
    if span is None:
        span = _Span(first=message.timestamp, last=message.timestamp)
        spans[key] = span
    span.add(message)


def _count_cache(fold: _Fold, message: RawMessage) -> None:
    stats = message.cache_stats
    if stats is not None and (stats.cache_hits is not None or stats.cache_misses is not None):
        fold.cache_hits += stats.cache_hits or 0
        fold.cache_misses += stats.cache_misses or 0
        return
    if stats is not None and stats.cache_read_input_tokens > 0:
        fold.cache_hits += 1
    elif message.input_tokens > 0:
        fold.cache_misses += 1


def _fold_messages(messages: list[RawMessage]) -> _Fold:
    fold = _Fold()
    for message in messages:
        fold.input_tokens += message.input_tokens
        fold.output_tokens += message.output_tokens
        _count_cache(fold, message)
        if message.tool_calls:
            fold.tools.setdefault(message.tool_calls[0].name, None)
        fold.max_autonomy = max(fold.max_autonomy, message.autonomy_level)
        fold.autonomy_total += message.autonomy_level

        if message.checkpoint_id:
            fold.checkpoint_count += 1
        if message.is_rewind_trigger:
            fold.rewind_count += 1
        if message.background_task_id or message.role == MessageRole.BACKGROUND_TASK:
            fold.background_task_count += 1
        if message.subagent_id or message.role == MessageRole.SUBAGENT:
            fold.subagent_count += 1
        if message.vscode_integration_id:
            fold.vscode_count += 1

        _track(fold.checkpoints, message.checkpoint_id, message)
        _track(fold.background_tasks, message.background_task_id, message)
        _track(fold.subagents, message.subagent_id, message)
        _track(fold.vscode, message.vscode_integration_id, message)
    return fold


def _message_record(session_id: str, index: int, message: RawMessage) -> MessageRecord:
    first_call = message.tool_calls[0] if message.tool_calls else None
    first_result = message.tool_results[0] if message.tool_results else None
    return MessageRecord(
        session_id=session_id,
        message_index=index,
        role=message.role.value,
        content=message.content,
        content_length=len(message.content),
        input_tokens=message.input_tokens,
        output_tokens=message.output_tokens,
        tool_name=first_call.name if first_call else None,
        tool_input=_json_or_none(first_call.input) if first_call else None,
        tool_output=_json_or_none(first_result.content) if first_result else None,
        timestamp=message.timestamp,
        processing_time_ms=message.processing_time_ms,
        checkpoint_id=message.checkpoint_id,
        subagent_id=message.subagent_id,
        background_task_id=message.background_task_id,
        vscode_integration_id=message.vscode_integration_id,
        is_rewind_trigger=message.is_rewind_trigger,
        autonomy_level=message.autonomy_level,
    )


def build_session_bundle(
    path: Path,
    messages: list[RawMessage],
    *,
    extended_threshold: int = config.EXTENDED_SESSION_SECONDS,
    autonomy_threshold: int = config.AUTONOMY_THRESHOLD,
) -> SessionBundle:
    """Fold a non-empty message stream into one session bundle.

    Messages are ordered by timestamp first; start, end, duration and the
    metric buckets come from the ordered stream, never from line order.
    """
    if not messages:
        raise ValueError("No messages found to build session from")

    ordered = sorted(messages, key=lambda m: m.timestamp)
    session_id = _make_id(path)
    started_at = ordered[0].timestamp
    ended_at = ordered[-1].timestamp
    duration = _whole_seconds(started_at, ended_at)

    fold = _fold_messages(ordered)
    model = detect_model(ordered)
    cost = estimate_cost(fold.input_tokens, fold.output_tokens, model)
    session_type = classify_session(
        duration,
        fold.max_autonomy,
        extended_threshold=extended_threshold,
        autonomy_threshold=autonomy_threshold,
    )

    session = SessionRecord(
        session_id=session_id,
        project_name=_project_name(path),
        source_file=str(path),
        started_at=started_at,
        ended_at=ended_at,
        duration_seconds=duration,
        model_name=model,
        total_input_tokens=fold.input_tokens,
        total_output_tokens=fold.output_tokens,
        total_cost_usd=cost,
        tools_used=list(fold.tools),
        cache_hit_count=fold.cache_hits,
        cache_miss_count=fold.cache_misses,
        is_extended_session=duration >= extended_threshold,
        session_type=session_type,
        autonomy_level=fold.max_autonomy,
        has_background_tasks=fold.background_task_count > 0,
        has_subagents=fold.subagent_count > 0,
        has_vscode_integration=fold.vscode_count > 0,
    )

    cache_total = fold.cache_hits + fold.cache_misses
    message_count = len(ordered)
    metrics = MetricsRecord(
        session_id=session_id,
        date_bucket=started_at.date().isoformat(),
        hour_bucket=started_at.hour,
        weekday=(started_at.weekday() + 1) % 7,
        week_of_year=started_at.isocalendar()[1],
        month=started_at.month,
        year=started_at.year,
        input_tokens=fold.input_tokens,
        output_tokens=fold.output_tokens,
        cost_usd=cost,
        duration_seconds=duration,
        message_count=message_count,
        tool_usage_count=len(fold.tools),
        cache_efficiency=fold.cache_hits / cache_total if cache_total else 0.0,
        checkpoint_count=fold.checkpoint_count,
        rewind_count=fold.rewind_count,
        background_task_count=fold.background_task_count,
        subagent_count=fold.subagent_count,
        vscode_integration_count=fold.vscode_count,
        autonomy_score=fold.autonomy_total / message_count,
        parallel_development_efficiency=(
            fold.subagent_count / message_count * 100 if fold.subagent_count else 0.0
        ),
    )

    return SessionBundle(
        session=session,
        messages=[_message_record(session_id, i, m) for i, m in enumerate(ordered)],
        metrics=metrics,
        checkpoints=[
            CheckpointRecord(
                session_id=session_id,
                checkpoint_id=key,
                created_at=span.first,
                is_rewind_point=span.rewinds > 0,
                rewind_count=span.rewinds,
                tokens_used=span.input_tokens + span.output_tokens,
            )
            for key, span in fold.checkpoints.items()
        ],
        background_tasks=[
            BackgroundTaskRecord(
                session_id=session_id,
                task_id=key,
                started_at=span.first,
                completed_at=span.last,
                duration_seconds=_whole_seconds(span.first, span.last),
                input_tokens=span.input_tokens,
                output_tokens=span.output_tokens,
            )
            for key, span in fold.background_tasks.items()
        ],
        subagents=[
            SubagentRecord(
                session_id=session_id,
                subagent_id=key,
                started_at=span.first,
                completed_at=span.last,
                duration_seconds=_whole_seconds(span.first, span.last),
                input_tokens=span.input_tokens,
                output_tokens=span.output_tokens,
            )
            for key, span in fold.subagents.items()
        ],
        vscode_integrations=[
            VSCodeIntegrationRecord(
                session_id=session_id,
                integration_id=key,
                started_at=span.first,
                ended_at=span.last,
                duration_seconds=_whole_seconds(span.first, span.last),
                file_operations=span.tool_messages,
            )
            for key, span in fold.vscode.items()
        ],
    )


def parse_session_file(
    path: Path | str,
    *,
    extended_threshold: int = config.EXTENDED_SESSION_SECONDS,
    autonomy_threshold: int = config.AUTONOMY_THRESHOLD,
) -> ParseResult:
    """Parse one JSONL session log.

    Bad lines are collected as errors and skipped. The file fails as a whole
    only when it cannot be read or yields no messages.
    """
    path = Path(path)
    file_path = str(path)
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        return ParseResult(
            success=False,
            errors=[
                ParseError(
                    file_path=file_path,
                    error_type=ParseErrorType.FILE_ACCESS,
                    message=f"Failed to read file: {exc}",
                )
            ],
        )

    lines = [(number, line.strip()) for number, line in enumerate(text.splitlines(), start=1) if line.strip()]
    if not lines:
        return ParseResult(
            success=False,
            errors=[
                ParseError(
                    file_path=file_path,
                    error_type=ParseErrorType.INVALID_DATA,
                    message="File is empty",
                )
            ],
        )

    errors: list[ParseError] = []
    messages: list[RawMessage] = []
    for line_number, line in lines:
        try:
            payload = json.loads(line)
        except (json.JSONDecodeError, RecursionError) as exc:
            detail = exc.msg if isinstance(exc, json.JSONDecodeError) else "nesting too deep"
            errors.append(
                ParseError(
                    file_path=file_path,
                    line_number=line_number,
                    error_type=ParseErrorType.MALFORMED_JSON,
                    message=f"Invalid JSON: {detail}",
                    raw_data=line[:_RAW_DATA_LIMIT],
                )
            )
            continue
        try:
            messages.append(normalize_message(payload, line_number))
        except InvalidLineError as exc:
            errors.append(
                ParseError(
                    file_path=file_path,
                    line_number=line_number,
                    error_type=exc.error_type,
                    message=str(exc),
                    raw_data=line[:_RAW_DATA_LIMIT],
                )
            )

    warnings: list[str] = []
    if errors:
        warnings.append(f"Skipped {len(errors)} of {len(lines)} lines")

    if not messages:
        errors.append(
            ParseError(
                file_path=file_path,
                error_type=ParseErrorType.INVALID_DATA,
                message="No valid messages found in file",
            )
        )
        return ParseResult(success=False, errors=errors, warnings=warnings)

    bundle = build_session_bundle(
        path,
        messages,
        extended_threshold=extended_threshold,
        autonomy_threshold=autonomy_threshold,
    )
    logger.debug("Parsed %s: %d messages, %d skipped lines", file_path, len(messages), len(errors))
    return ParseResult(success=True, data=bundle, errors=errors, warnings=warnings)
