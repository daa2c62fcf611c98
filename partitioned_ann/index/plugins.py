"""
Index-Type Plugin Registry

Index types are selected by the string tag stored in a
VectorIndexDefinition. Every plugin satisfies IndexTypePlugin
({validate_options, build, probe}); the core never inspects artifacts.

Built-in tags:
    flat  - exhaustive scan of the stored matrix (exact, baseline)
    ivf   - inverted file over k-means lists
    hnsw  - hierarchical navigable small world graph
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

import numpy as np

from partitioned_ann.core.errors import Err, InvalidDefinition, Ok, Result
from partitioned_ann.core.protocols import IndexTypePlugin
from partitioned_ann.core.types import Match, MetricType, PartitionRows
from partitioned_ann.index.exact import exact_top_k

_PLUGINS: dict[str, IndexTypePlugin] = {}
_PLUGINS_LOCK = threading.Lock()


def register_index_type(plugin: IndexTypePlugin) -> None:
    """Register (or replace) an index-type plugin under its tag."""
    with _PLUGINS_LOCK:
        _PLUGINS[plugin.name.lower()] = plugin


def get_index_type(tag: str) -> Result[IndexTypePlugin, InvalidDefinition]:
    plugin = _PLUGINS.get(tag.lower())
    if plugin is None:
        return Err(InvalidDefinition.because(
            "<unknown>",
            f"unknown index type {tag!r}; available: {available_index_types()}",
            index_type=tag,
        ))
    return Ok(plugin)


def available_index_types() -> list[str]:
    return sorted(_PLUGINS)


def check_int_option(
    options: Mapping[str, Any],
    key: str,
    minimum: int = 1,
) -> Optional[str]:
    """Shared validation for positive integer options."""
    if key not in options:
        return None
    value = options[key]
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        return f"option '{key}' must be an integer >= {minimum}, got {value!r}"
    return None


# =============================================================================
# FLAT (EXHAUSTIVE) INDEX TYPE
# =============================================================================
@dataclass(frozen=True, slots=True)
class FlatArtifact:
    ids: tuple[Any, ...]
    vectors: np.ndarray
    metric: MetricType


class FlatIndexType:
    """Stores the partition matrix; probes score every row."""

    name = "flat"

    def validate_options(self, options: Mapping[str, Any]) -> Optional[str]:
        if options:
            return f"flat index takes no options, got {sorted(options)}"
        return None

    def build(self, rows: PartitionRows, options: Mapping[str, Any]) -> FlatArtifact:
        vectors = np.ascontiguousarray(rows.vectors, dtype=np.float32)
        vectors.setflags(write=False)
        return FlatArtifact(ids=rows.ids, vectors=vectors, metric=rows.metric)

    def probe(
        self,
        artifact: FlatArtifact,
        query_vector: np.ndarray,
        runtime_options: Mapping[str, Any],
        k: int,
    ) -> Sequence[Match]:
        return exact_top_k(query_vector, artifact.ids, artifact.vectors, k, artifact.metric).matches


def _register_builtins() -> None:
    from partitioned_ann.index.hnsw import HNSWIndexType
    from partitioned_ann.index.ivf import IVFIndexType

    register_index_type(FlatIndexType())
    register_index_type(IVFIndexType())
    register_index_type(HNSWIndexType())


_register_builtins()
