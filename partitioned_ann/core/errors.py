"""
Result Monad & Error Taxonomy for Partitioned Vector Index Management

Every fallible catalog, build and search operation returns Result[T, E]
instead of raising. Errors are structured exception dataclasses so that
the session facade can re-raise them unchanged via unwrap_or_raise().

Error code ranges:
    1000-1999: Definition / catalog errors
    2000-2999: Build lifecycle errors
    3000-3999: Search errors
    9000-9999: Internal errors
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import (
    Any,
    Callable,
    Generic,
    Literal,
    NoReturn,
    Optional,
    Sequence,
    TypeVar,
    Union,
    final,
)


T = TypeVar("T")
E = TypeVar("E")
U = TypeVar("U")


# =============================================================================
# RESULT
# =============================================================================
@final
@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """
    A successful outcome.

        result = catalog.define(definition)
        if result.is_ok():
            index_id = result.unwrap()
    """
    _value: T

    def is_ok(self) -> Literal[True]:
        return True

    def is_err(self) -> Literal[False]:
        return False

    def unwrap(self) -> T:
        return self._value

    def unwrap_or_raise(self) -> T:
        return self._value

    def map(self, fn: Callable[[T], U]) -> "Ok[U]":
        return Ok(fn(self._value))

    @property
    def error(self) -> None:
        return None

    def __bool__(self) -> Literal[True]:
        return True

    def __repr__(self) -> str:
        return f"Ok({self._value!r})"


@final
@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """
    A failed outcome carrying a structured error.

    The facade calls unwrap_or_raise(), which raises the carried
    VectorIndexError as-is so callers see the precise subclass.
    """
    _error: E

    def is_ok(self) -> Literal[False]:
        return False

    def is_err(self) -> Literal[True]:
        return True

    def unwrap(self) -> NoReturn:
        """Unwrapping a failure is a bug in the caller; always raises RuntimeError."""
        raise RuntimeError(f"unwrap() on a failed result: {self._error}")

    def unwrap_or_raise(self) -> NoReturn:
        if isinstance(self._error, BaseException):
            raise self._error
        raise RuntimeError(str(self._error))

    def map(self, fn: Callable[[Any], U]) -> "Err[E]":
        return self

    @property
    def error(self) -> E:
        return self._error

    def __bool__(self) -> Literal[False]:
        return False

    def __repr__(self) -> str:
        return f"Err({self._error!r})"


Result = Union[Ok[T], Err[E]]


# =============================================================================
# ERROR CODES
# =============================================================================
class ErrorCode(Enum):
    """Canonical error codes for categorization and metrics."""
    # Definition / catalog errors (1000-1999)
    INVALID_DEFINITION = 1001
    ALREADY_EXISTS = 1002
    NOT_FOUND = 1003

    # Build lifecycle errors (2000-2999)
    DIMENSION_MISMATCH = 2001
    BUILD_CONFLICT = 2002
    BUILD_FAILED = 2003
    LEASE_EXPIRED = 2004
    INVALID_TRANSITION = 2005

    # Search errors (3000-3999)
    INVALID_REQUEST = 3001
    METRIC_INCOMPATIBLE = 3002
    PARTITION_TASK_FAILED = 3003
    SEARCH_CANCELLED = 3004
    SEARCH_TIMEOUT = 3005

    # Internal errors (9000-9999)
    INTERNAL_ERROR = 9001


# =============================================================================
# BASE ERROR
# =============================================================================
@dataclass
class VectorIndexError(Exception):
    """
    Base error for all index lifecycle and search operations.

    `code` is stable for callers to branch on, `context` holds the ids and
    values involved, and `cause` keeps the underlying exception when one
    was wrapped (plugin failures, task failures).
    """
    code: ErrorCode
    message: str
    context: dict[str, Any] = field(default_factory=dict)
    cause: Optional[BaseException] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.message}"

    def __hash__(self) -> int:
        return id(self)

    def to_dict(self) -> dict[str, Any]:
        """Plain dict for log fields and API payloads."""
        return {
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "context": self.context,
            "cause": str(self.cause) if self.cause else None,
            "timestamp": self.timestamp.isoformat(),
        }


# =============================================================================
# DEFINITION / CATALOG ERRORS
# =============================================================================
@dataclass(eq=False)
class InvalidDefinition(VectorIndexError):
    """Rejected at define time; never persisted."""

    @classmethod
    def because(cls, index_name: str, reason: str, **context: Any) -> "InvalidDefinition":
        return cls(
            code=ErrorCode.INVALID_DEFINITION,
            message=f"Invalid definition for index '{index_name}': {reason}",
            context={"index_name": index_name, "reason": reason, **context},
        )


@dataclass(eq=False)
class AlreadyExists(VectorIndexError):

    @classmethod
    def index(cls, table: str, index_name: str) -> "AlreadyExists":
        return cls(
            code=ErrorCode.ALREADY_EXISTS,
            message=f"Index '{index_name}' already exists on table '{table}'",
            context={"table": table, "index_name": index_name},
        )


@dataclass(eq=False)
class NotFound(VectorIndexError):

    @classmethod
    def index(cls, key: Any) -> "NotFound":
        return cls(
            code=ErrorCode.NOT_FOUND,
            message=f"Index '{key}' not found",
            context={"index": str(key)},
        )

    @classmethod
    def table(cls, table: str) -> "NotFound":
        return cls(
            code=ErrorCode.NOT_FOUND,
            message=f"Table '{table}' not found",
            context={"table": table},
        )

    @classmethod
    def partition(cls, index_name: str, partition: str) -> "NotFound":
        return cls(
            code=ErrorCode.NOT_FOUND,
            message=f"Partition '{partition}' of index '{index_name}' not found",
            context={"index_name": index_name, "partition": partition},
        )

    @classmethod
    def table_partition(cls, table: str, partition: str) -> "NotFound":
        return cls(
            code=ErrorCode.NOT_FOUND,
            message=f"Partition '{partition}' of table '{table}' not found",
            context={"table": table, "partition": partition},
        )

    @classmethod
    def artifact(cls, handle: str) -> "NotFound":
        return cls(
            code=ErrorCode.NOT_FOUND,
            message=f"Artifact '{handle}' not found",
            context={"handle": handle},
        )


# =============================================================================
# BUILD LIFECYCLE ERRORS
# =============================================================================
@dataclass(frozen=True, slots=True)
class OffendingRow:
    """A candidate row whose embedding has the wrong dimension."""
    candidate_id: Any
    partition: str
    expected: int
    actual: int


@dataclass(eq=False)
class DimensionMismatch(VectorIndexError):
    """Build failed because one or more rows have a wrong-sized embedding."""
    offending_rows: tuple[OffendingRow, ...] = ()

    @classmethod
    def rows(cls, partition: str, offending: Sequence[OffendingRow]) -> "DimensionMismatch":
        sample = ", ".join(
            f"{r.candidate_id!r}({r.actual})" for r in list(offending)[:5]
        )
        return cls(
            code=ErrorCode.DIMENSION_MISMATCH,
            message=(
                f"{len(offending)} row(s) in partition '{partition}' have the "
                f"wrong embedding dimension: {sample}"
            ),
            context={"partition": partition, "count": len(offending)},
            offending_rows=tuple(offending),
        )


@dataclass(eq=False)
class BuildConflict(VectorIndexError):
    """A build is already in flight for the partition; caller may retry later."""

    @classmethod
    def in_flight(cls, index_name: str, partition: str, holder: str) -> "BuildConflict":
        return cls(
            code=ErrorCode.BUILD_CONFLICT,
            message=f"Partition '{partition}' of index '{index_name}' is already BUILDING",
            context={"index_name": index_name, "partition": partition, "holder": holder},
        )


@dataclass(eq=False)
class BuildFailed(VectorIndexError):

    @classmethod
    def plugin_error(cls, index_type: str, partition: str, cause: BaseException) -> "BuildFailed":
        return cls(
            code=ErrorCode.BUILD_FAILED,
            message=f"Index type '{index_type}' failed to build partition '{partition}': {cause}",
            context={"index_type": index_type, "partition": partition},
            cause=cause,
        )

    @classmethod
    def unexpected(cls, partition: str, cause: BaseException) -> "BuildFailed":
        return cls(
            code=ErrorCode.BUILD_FAILED,
            message=f"Build of partition '{partition}' raised {type(cause).__name__}: {cause}",
            context={"partition": partition},
            cause=cause,
        )

    @classmethod
    def invalid_transition(cls, partition: str, from_state: str, to_state: str) -> "BuildFailed":
        return cls(
            code=ErrorCode.INVALID_TRANSITION,
            message=f"Partition '{partition}' cannot move from {from_state} to {to_state}",
            context={"partition": partition, "from": from_state, "to": to_state},
        )


@dataclass(eq=False)
class LeaseExpired(VectorIndexError):
    """Build lease lost (expired or fenced out by a newer build)."""

    @classmethod
    def for_partition(cls, partition: str, token: int) -> "LeaseExpired":
        return cls(
            code=ErrorCode.LEASE_EXPIRED,
            message=f"Build lease {token} for partition '{partition}' is no longer valid",
            context={"partition": partition, "fencing_token": token},
        )


# =============================================================================
# SEARCH ERRORS
# =============================================================================
@dataclass(eq=False)
class InvalidRequest(VectorIndexError):

    @classmethod
    def because(cls, reason: str, **context: Any) -> "InvalidRequest":
        return cls(
            code=ErrorCode.INVALID_REQUEST,
            message=f"Invalid search request: {reason}",
            context={"reason": reason, **context},
        )


@dataclass(eq=False)
class DimensionOrMetricIncompatible(VectorIndexError):
    """The request disagrees with the selected index; fail fast."""

    @classmethod
    def metric(cls, index_name: str, index_metric: str, requested: str) -> "DimensionOrMetricIncompatible":
        return cls(
            code=ErrorCode.METRIC_INCOMPATIBLE,
            message=(
                f"Requested metric '{requested}' disagrees with index "
                f"'{index_name}' metric '{index_metric}'"
            ),
            context={"index_name": index_name, "index_metric": index_metric, "requested": requested},
        )

    @classmethod
    def dimension(cls, index_name: str, expected: int, actual: int) -> "DimensionOrMetricIncompatible":
        return cls(
            code=ErrorCode.METRIC_INCOMPATIBLE,
            message=f"Query dimension {actual} disagrees with index '{index_name}' dimension {expected}",
            context={"index_name": index_name, "expected": expected, "actual": actual},
        )


@dataclass(eq=False)
class PartitionTaskFailed(VectorIndexError):
    """One partition's task failed; the whole query fails."""

    @classmethod
    def task(cls, fragment: str, cause: BaseException) -> "PartitionTaskFailed":
        return cls(
            code=ErrorCode.PARTITION_TASK_FAILED,
            message=f"Search task for {fragment} failed: {cause}",
            context={"fragment": fragment},
            cause=cause,
        )


@dataclass(eq=False)
class SearchCancelled(VectorIndexError):

    @classmethod
    def by_caller(cls, query_id: str, outstanding: int) -> "SearchCancelled":
        return cls(
            code=ErrorCode.SEARCH_CANCELLED,
            message=f"Search {query_id} cancelled with {outstanding} task(s) outstanding",
            context={"query_id": query_id, "outstanding": outstanding},
        )


@dataclass(eq=False)
class SearchTimeout(VectorIndexError):

    @classmethod
    def after(cls, query_id: str, timeout_ms: float) -> "SearchTimeout":
        return cls(
            code=ErrorCode.SEARCH_TIMEOUT,
            message=f"Search {query_id} timed out after {timeout_ms}ms",
            context={"query_id": query_id, "timeout_ms": timeout_ms},
        )


# =============================================================================
# WARNINGS (SURFACED, NOT RAISED)
# =============================================================================
@dataclass(frozen=True, slots=True)
class StaleIndexUsed:
    """
    Annotation attached to search metadata when a STALE artifact served
    a partition. Never raised, never dropped.
    """
    index_name: str
    partition: str
    built_version: tuple[tuple[str, int], ...]
    current_version: tuple[tuple[str, int], ...]

    def __str__(self) -> str:
        return (
            f"Index '{self.index_name}' partition '{self.partition}' is STALE "
            f"(built at {dict(self.built_version)}, current {dict(self.current_version)})"
        )
