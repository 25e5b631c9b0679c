"""Observability helpers."""

from ccanalytics.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_ingestion,
    record_parser_failure,
    record_retention_deleted,
    record_token_cost,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_ingestion",
    "record_parser_failure",
    "record_retention_deleted",
    "record_token_cost",
]
