"""
Structured Logging for Builds and Searches

Every call takes keyword fields (index=..., partition=..., fencing_token=...).
Fields bound with StructuredLogger.context() live in a contextvar, so the
search_id set by the executor follows work onto pool threads that run
inside a copied context.

Two output modes:
    json      one JSON object per line (log shippers)
    key=value human-readable line with trailing fields (CLI, demo)
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Mapping, Optional, TextIO

PACKAGE_LOGGER = "partitioned_ann"


class LogLevel(IntEnum):
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL

    @classmethod
    def parse(cls, name: str) -> "LogLevel":
        return cls[name.strip().upper()]


_bound_fields: ContextVar[Mapping[str, Any]] = ContextVar("partitioned_ann_log_fields", default={})

# Attributes every LogRecord carries; anything else came in through `extra`
_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def _field_value(value: Any) -> Any:
    """JSON-safe rendering of a log field."""
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_field_value(v) for v in value]
    return str(value)


def _record_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = dict(_bound_fields.get())
    fields.update((k, v) for k, v in vars(record).items() if k not in _STANDARD_ATTRS)
    return fields


# =============================================================================
# FORMATTERS
# =============================================================================
class JsonFormatter(logging.Formatter):
    """One JSON object per record: timestamp, level, logger, message, fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_record_fields(record))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class KeyValueFormatter(logging.Formatter):
    """`time LEVEL logger: message key=value ...`"""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = _record_fields(record)
        if not fields:
            return line
        return line + " " + " ".join(f"{k}={v}" for k, v in sorted(fields.items()))


# =============================================================================
# LOGGER
# =============================================================================
class StructuredLogger:
    """
    Thin wrapper over a stdlib logger accepting keyword fields.

    Usage:
        logger = get_logger(__name__)
        with StructuredLogger.context(index="docs_idx"):
            logger.info("Build started", partition=partition, fencing_token=7)
    """

    __slots__ = ("_logger",)

    def __init__(self, name: str) -> None:
        self._logger = logging.getLogger(name)

    @property
    def name(self) -> str:
        return self._logger.name

    def debug(self, message: str, **fields: Any) -> None:
        self._emit(logging.DEBUG, message, fields)

    def info(self, message: str, **fields: Any) -> None:
        self._emit(logging.INFO, message, fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._emit(logging.WARNING, message, fields)

    def error(self, message: str, **fields: Any) -> None:
        self._emit(logging.ERROR, message, fields)

    def _emit(self, level: int, message: str, fields: dict[str, Any]) -> None:
        if self._logger.isEnabledFor(level):
            self._logger.log(level, message, extra={k: _field_value(v) for k, v in fields.items()})

    @staticmethod
    def context(**fields: Any) -> "_BoundFields":
        """Bind fields to every log line emitted inside the `with` block."""
        return _BoundFields({k: _field_value(v) for k, v in fields.items()})


class _BoundFields:
    __slots__ = ("_fields", "_token")

    def __init__(self, fields: Mapping[str, Any]) -> None:
        self._fields = fields
        self._token = None

    def __enter__(self) -> "_BoundFields":
        self._token = _bound_fields.set({**_bound_fields.get(), **self._fields})
        return self

    def __exit__(self, *exc: Any) -> None:
        _bound_fields.reset(self._token)


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(name)


def setup_logging(
    level: LogLevel = LogLevel.INFO,
    json_output: bool = True,
    stream: Optional[TextIO] = None,
) -> None:
    """Route the package logger to `stream` (default stderr), replacing earlier handlers."""
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(level)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonFormatter() if json_output else KeyValueFormatter())
    package_logger.addHandler(handler)
    package_logger.propagate = False
