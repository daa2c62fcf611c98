"""
Configuration Classes: Session Policy, Builder and Executor Settings

Immutable, validated configuration with environment overrides
(prefix PARTITIONED_ANN_).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional

from partitioned_ann.core.types import IndexHint

ENV_PREFIX = "PARTITIONED_ANN_"


def _env(name: str, default: str) -> str:
    return os.getenv(f"{ENV_PREFIX}{name}", default)


def _env_bool(name: str, default: bool) -> bool:
    return _env(name, "1" if default else "0").strip().lower() in ("1", "true", "yes", "on")


# =============================================================================
# SESSION POLICY
# =============================================================================
@dataclass(frozen=True, slots=True)
class SessionPolicy:
    """
    Per-session search policy consumed by the rewriter and executor.

    Attributes:
        exact_only: Demand exact search for every partition
        allow_stale_reads: Serve STALE partitions from their (outdated)
            artifact; every such use is surfaced as StaleIndexUsed
        index_hint: Session-selected index and runtime probe options
    """
    exact_only: bool = False
    allow_stale_reads: bool = False
    index_hint: Optional[IndexHint] = None

    def with_index(self, index_name: str, **runtime_options: Any) -> "SessionPolicy":
        return replace(self, index_hint=IndexHint(index_name, dict(runtime_options)))

    def without_index(self) -> "SessionPolicy":
        return replace(self, index_hint=None)

    @classmethod
    def from_env(cls) -> "SessionPolicy":
        return cls(
            exact_only=_env_bool("EXACT_ONLY", False),
            allow_stale_reads=_env_bool("ALLOW_STALE_READS", False),
        )


# =============================================================================
# BUILDER CONFIGURATION
# =============================================================================
@dataclass(frozen=True, slots=True)
class BuilderConfig:
    """
    Partition index builder configuration.

    Parameters:
        max_workers: Parallel partition builds
        lease_ttl_ms: Build lease lifetime; an unrenewed lease is reverted
            to FAILED by the recovery sweep
        artifact_retention_s: Grace period before superseded artifacts are
            purged (queries compiled earlier may still probe them)
    """
    max_workers: int = 4
    lease_ttl_ms: int = 60_000
    artifact_retention_s: float = 300.0
    holder_id: str = field(default_factory=lambda: f"builder-{os.getpid()}")

    def validate(self) -> Optional[str]:
        if self.max_workers < 1:
            return f"max_workers must be >= 1, got {self.max_workers}"
        if self.lease_ttl_ms < 1:
            return f"lease_ttl_ms must be >= 1, got {self.lease_ttl_ms}"
        if self.artifact_retention_s < 0:
            return f"artifact_retention_s must be >= 0, got {self.artifact_retention_s}"
        return None

    @classmethod
    def from_env(cls) -> "BuilderConfig":
        return cls(
            max_workers=int(_env("BUILD_WORKERS", "4")),
            lease_ttl_ms=int(_env("LEASE_TTL_MS", "60000")),
            artifact_retention_s=float(_env("ARTIFACT_RETENTION_S", "300")),
        )


# =============================================================================
# EXECUTOR CONFIGURATION
# =============================================================================
@dataclass(frozen=True, slots=True)
class ExecutorConfig:
    """Distributed search executor configuration."""
    max_workers: int = 8
    timeout_ms: Optional[float] = None
    max_k: int = 10_000

    def validate(self) -> Optional[str]:
        if self.max_workers < 1:
            return f"max_workers must be >= 1, got {self.max_workers}"
        if self.timeout_ms is not None and self.timeout_ms <= 0:
            return f"timeout_ms must be > 0, got {self.timeout_ms}"
        if self.max_k < 1:
            return f"max_k must be >= 1, got {self.max_k}"
        return None

    @classmethod
    def from_env(cls) -> "ExecutorConfig":
        timeout = _env("SEARCH_TIMEOUT_MS", "")
        return cls(
            max_workers=int(_env("SEARCH_WORKERS", "8")),
            timeout_ms=float(timeout) if timeout else None,
            max_k=int(_env("MAX_K", "10000")),
        )


# =============================================================================
# SERVICE CONFIGURATION
# =============================================================================
@dataclass(frozen=True, slots=True)
class ServiceConfig:
    """Top-level configuration bundling all subsystems."""
    policy: SessionPolicy = field(default_factory=SessionPolicy)
    builder: BuilderConfig = field(default_factory=BuilderConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    log_level: str = "INFO"
    log_json: bool = True

    def validate(self) -> Optional[str]:
        for section in (self.builder, self.executor):
            if error := section.validate():
                return error
        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            return f"unknown log level {self.log_level!r}"
        return None

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        return cls(
            policy=SessionPolicy.from_env(),
            builder=BuilderConfig.from_env(),
            executor=ExecutorConfig.from_env(),
            log_level=_env("LOG_LEVEL", "INFO"),
            log_json=_env_bool("LOG_JSON", True),
        )

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "ServiceConfig":
        """Build from a nested mapping (e.g. parsed settings file)."""
        return cls(
            policy=SessionPolicy(**values.get("policy", {})),
            builder=BuilderConfig(**values.get("builder", {})),
            executor=ExecutorConfig(**values.get("executor", {})),
            log_level=values.get("log_level", "INFO"),
            log_json=values.get("log_json", True),
        )
