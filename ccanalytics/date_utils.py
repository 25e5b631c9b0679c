"""Shared timestamp coercion helpers."""
from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any

# Epoch values above this are treated as milliseconds.
_EPOCH_MS_CUTOFF = 100_000_000_000


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _parse_datetime_token(token: str) -> datetime | None:
    cleaned = token.strip()
    if not cleaned:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(cleaned.replace("Z", "+00:00")))
    except (ValueError, OverflowError):
        # Overflow: offsets that push year 1 or year 9999 out of range in UTC.
        pass
    for fmt in ("%Y-%m-%d %H:%M:%S", "%Y/%m/%d %H:%M:%S"):
        try:
            return datetime.strptime(cleaned, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def parse_timestamp(value: Any) -> datetime | None:
    """Coerce an ISO string, epoch number or datetime into an aware UTC datetime.

    Returns None when the value cannot be interpreted.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        try:
            return ensure_utc(value)
        except OverflowError:
            return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value) or value < 0:
            return None
        seconds = value / 1000 if value > _EPOCH_MS_CUTOFF else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        token = value.strip()
        if token.isdigit():
            return parse_timestamp(int(token))
        return _parse_datetime_token(token)
    return None


def to_storage(value: datetime | None) -> str | None:
    """Fixed-width UTC ISO string so TEXT columns sort chronologically."""
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="milliseconds")


def from_storage(value: Any) -> datetime | None:
    """Read a timestamp column back from either backend."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return _parse_datetime_token(str(value))
