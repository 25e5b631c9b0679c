"""Normalize one decoded JSONL line into a RawMessage.

Every field maps absent or invalid input to a documented default:

* token counts: non-negative integers, else 0
* timestamp: ``timestamp``/``created_at``; absent means now, unparseable is an error
* autonomy level: integer in 0..10, else 0
* rewind flag: only a JSON ``true`` counts
* processing time: non-negative number, else None
* feature ids: flat ``<name>_id`` field or ``<name>.id`` sub-object, else None
"""
from __future__ import annotations

import math
from typing import Any

from ccanalytics.date_utils import parse_timestamp, utc_now
from ccanalytics.models import CacheStats, MessageRole, ParseErrorType, RawMessage, ToolCall, ToolResult

AUTONOMY_MIN = 0
AUTONOMY_MAX = 10

_ROLE_ALIASES = {
    "background-task": MessageRole.BACKGROUND_TASK,
    "backgroundtask": MessageRole.BACKGROUND_TASK,
}
_BODY_KEYS = ("message", "role", "content", "text")


class InvalidLineError(ValueError):
    """A decoded line that cannot become a message."""

    def __init__(self, error_type: ParseErrorType, message: str):
        super().__init__(message)
        self.error_type = error_type


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _first_present(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def coerce_tokens(value: Any) -> int:
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, (int, float)):
        if not math.isfinite(value) or value < 0:
            return 0
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return 0


def coerce_autonomy(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, int) and AUTONOMY_MIN <= value <= AUTONOMY_MAX:
        return value
    return 0


def coerce_processing_time(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return int(value)


def _feature_id(payload: dict[str, Any], name: str) -> str | None:
    flat = payload.get(f"{name}_id")
    if flat is None:
        flat = _as_dict(payload.get(name)).get("id")
    if isinstance(flat, bool) or flat is None:
        return None
    if isinstance(flat, (str, int)):
        token = str(flat).strip()
        return token or None
    return None


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for block in content:
            if isinstance(block, str):
                chunks.append(block)
            elif isinstance(block, dict) and block.get("type", "text") == "text":
                text = block.get("text")
                if isinstance(text, str):
                    chunks.append(text)
        return "\n".join(chunks)
    if isinstance(content, dict) and isinstance(content.get("text"), str):
        return content["text"]
    return ""


def _resolve_role(payload: dict[str, Any], message: dict[str, Any]) -> MessageRole:
    raw = _first_present(message.get("role"), payload.get("role"))
    if isinstance(raw, str):
        token = raw.strip().lower()
        if token in _ROLE_ALIASES:
            return _ROLE_ALIASES[token]
        try:
            return MessageRole(token)
        except ValueError:
            pass
    return MessageRole.USER if payload.get("type") == "user" else MessageRole.ASSISTANT


def _content_blocks(payload: dict[str, Any], message: dict[str, Any]) -> list[Any]:
    content = _first_present(message.get("content"), payload.get("content"))
    return content if isinstance(content, list) else []


def _tool_calls(payload: dict[str, Any], blocks: list[Any]) -> list[ToolCall]:
    raw: list[Any] = [b for b in blocks if isinstance(b, dict) and b.get("type") == "tool_use"]
    legacy = payload.get("tool_calls")
    if legacy is not None:
        raw = legacy if isinstance(legacy, list) else [legacy]
    calls: list[ToolCall] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        name = item.get("name")
        if not isinstance(name, str) or not name.strip():
            continue
        tool_id = item.get("id")
        calls.append(ToolCall(name=name.strip(), input=item.get("input"), id=str(tool_id) if tool_id else None))
    return calls


def _tool_results(payload: dict[str, Any], blocks: list[Any]) -> list[ToolResult]:
    raw: list[Any] = [b for b in blocks if isinstance(b, dict) and b.get("type") == "tool_result"]
    legacy = payload.get("tool_results")
    if legacy is not None:
        raw = legacy if isinstance(legacy, list) else [legacy]
    results: list[ToolResult] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        tool_use_id = item.get("tool_use_id")
        results.append(
            ToolResult(
                tool_use_id=str(tool_use_id) if tool_use_id else None,
                content=item.get("content"),
                is_error=item.get("is_error") is True,
            )
        )
    return results


def _cache_stats(payload: dict[str, Any], message: dict[str, Any]) -> CacheStats | None:
    usage = _as_dict(_first_present(message.get("usage"), payload.get("usage")))
    cache = _as_dict(_first_present(payload.get("cache_stats"), payload.get("cache")))
    if not usage and not cache:
        return None

    hits = _first_present(cache.get("cache_hits"), cache.get("hits"))
    misses = _first_present(cache.get("cache_misses"), cache.get("misses"))
    return CacheStats(
        cache_creation_input_tokens=coerce_tokens(
            _first_present(usage.get("cache_creation_input_tokens"), cache.get("cache_creation_input_tokens"))
        ),
        cache_read_input_tokens=coerce_tokens(
            _first_present(usage.get("cache_read_input_tokens"), cache.get("cache_read_input_tokens"))
        ),
        cache_hits=coerce_tokens(hits) if hits is not None else None,
        cache_misses=coerce_tokens(misses) if misses is not None else None,
    )


def normalize_message(payload: Any, line_number: int) -> RawMessage:
    """Map one decoded line to a RawMessage or raise InvalidLineError."""
    if not isinstance(payload, dict):
        raise InvalidLineError(ParseErrorType.INVALID_DATA, "Line is not a JSON object")
    if not any(key in payload for key in _BODY_KEYS):
        raise InvalidLineError(ParseErrorType.MISSING_FIELD, "Line has no message, role or content")

    message = _as_dict(payload.get("message"))
    usage = _as_dict(_first_present(message.get("usage"), payload.get("usage")))
    tokens = _as_dict(payload.get("tokens"))

    raw_timestamp = _first_present(payload.get("timestamp"), payload.get("created_at"))
    if raw_timestamp is None:
        timestamp = utc_now()
    else:
        timestamp = parse_timestamp(raw_timestamp)
        if timestamp is None:
            raise InvalidLineError(ParseErrorType.INVALID_DATA, f"Unparseable timestamp: {raw_timestamp!r}")

    model = _first_present(message.get("model"), payload.get("model"))
    blocks = _content_blocks(payload, message)
    autonomy = _first_present(payload.get("autonomy_level"), _as_dict(payload.get("autonomy")).get("level"))
    rewind = _first_present(payload.get("is_rewind_trigger"), payload.get("rewind_trigger"))

    return RawMessage(
        line_number=line_number,
        role=_resolve_role(payload, message),
        content=_content_text(_first_present(message.get("content"), payload.get("content"), payload.get("text"))),
        timestamp=timestamp,
        model=model.strip() if isinstance(model, str) and model.strip() else None,
        input_tokens=coerce_tokens(
            _first_present(usage.get("input_tokens"), tokens.get("input"), payload.get("input_tokens"))
        ),
        output_tokens=coerce_tokens(
            _first_present(usage.get("output_tokens"), tokens.get("output"), payload.get("output_tokens"))
        ),
        tool_calls=_tool_calls(payload, blocks),
        tool_results=_tool_results(payload, blocks),
        cache_stats=_cache_stats(payload, message),
        processing_time_ms=coerce_processing_time(
            _first_present(payload.get("processing_time_ms"), payload.get("duration_ms"))
        ),
        checkpoint_id=_feature_id(payload, "checkpoint"),
        subagent_id=_feature_id(payload, "subagent"),
        background_task_id=_feature_id(payload, "background_task"),
        vscode_integration_id=_feature_id(payload, "vscode_integration"),
        is_rewind_trigger=rewind is True,
        autonomy_level=coerce_autonomy(autonomy),
    )
