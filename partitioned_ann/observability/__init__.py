"""Structured logging."""

from partitioned_ann.observability.logging import (
    JsonFormatter,
    KeyValueFormatter,
    LogLevel,
    StructuredLogger,
    get_logger,
    setup_logging,
)

__all__ = [
    "JsonFormatter",
    "KeyValueFormatter",
    "LogLevel",
    "StructuredLogger",
    "get_logger",
    "setup_logging",
]
