"""
Distance Metric Registry

Pluggable similarity/distance functions with a defined comparison direction:
    - cosine: similarity in [-1, 1], higher is better
    - l2: Euclidean distance >= 0, lower is better
    - ip: inner product, higher is better

Kernels are vectorized with NumPy broadcasting; every metric exposes a
batch form (one query against an (n, d) matrix) used by both the exact
fallback and the index-type plugins, so scores agree across paths.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Sequence, Union

import numpy as np

from partitioned_ann.core.errors import Err, InvalidRequest, Ok, Result
from partitioned_ann.core.types import MetricType

VectorLike = Union[np.ndarray, Sequence[float]]
BatchKernel = Callable[[VectorLike, VectorLike], np.ndarray]


# =============================================================================
# KERNELS
# =============================================================================
def normalize_vector(v: VectorLike) -> np.ndarray:
    """
    L2-normalize vector(s) to unit length; zero vectors are left unchanged.

    Args:
        v: Single vector (1D) or batch of vectors (2D)
    """
    v = np.asarray(v, dtype=np.float32)
    if v.ndim == 1:
        norm = np.linalg.norm(v)
        return v / norm if norm > 0 else v
    norms = np.linalg.norm(v, axis=1, keepdims=True)
    norms = np.where(norms > 0, norms, 1.0)
    return v / norms


def cosine_similarity_batch(query: VectorLike, vectors: VectorLike) -> np.ndarray:
    """
    Cosine similarity between a query (d,) and candidates (n, d).

    Zero vectors score 0.0 against everything.
    """
    query = normalize_vector(query)
    vectors = normalize_vector(np.atleast_2d(np.asarray(vectors, dtype=np.float32)))
    return (vectors @ query).astype(np.float64)


def l2_distance_batch(query: VectorLike, vectors: VectorLike) -> np.ndarray:
    """Euclidean distance between a query (d,) and candidates (n, d)."""
    query = np.asarray(query, dtype=np.float32)
    vectors = np.atleast_2d(np.asarray(vectors, dtype=np.float32))
    diff = vectors - query
    return np.sqrt(np.einsum("ij,ij->i", diff, diff)).astype(np.float64)


def inner_product_batch(query: VectorLike, vectors: VectorLike) -> np.ndarray:
    """Inner product between a query (d,) and candidates (n, d)."""
    query = np.asarray(query, dtype=np.float32)
    vectors = np.atleast_2d(np.asarray(vectors, dtype=np.float32))
    return (vectors @ query).astype(np.float64)


# =============================================================================
# METRIC DESCRIPTOR
# =============================================================================
@dataclass(frozen=True, slots=True)
class DistanceMetric:
    """
    A registered metric and its comparison direction.

    Attributes:
        metric: Metric identity
        batch: Kernel scoring one query against a candidate matrix
        higher_is_better: Preferred direction when ranking scores
    """
    metric: MetricType
    batch: BatchKernel
    higher_is_better: bool

    @property
    def name(self) -> str:
        return self.metric.value

    def score(self, query: VectorLike, vectors: VectorLike) -> np.ndarray:
        return self.batch(query, vectors)

    def score_one(self, a: VectorLike, b: VectorLike) -> float:
        return float(self.batch(a, np.atleast_2d(np.asarray(b, dtype=np.float32)))[0])

    def goodness(self, score: float) -> float:
        """Map a score so that larger is always better."""
        return score if self.higher_is_better else -score

    def is_better(self, a: float, b: float) -> bool:
        return a > b if self.higher_is_better else a < b


# =============================================================================
# REGISTRY
# =============================================================================
_ALIASES: dict[str, MetricType] = {
    "cosine": MetricType.COSINE,
    "cosine_similarity": MetricType.COSINE,
    "l2": MetricType.L2,
    "euclidean": MetricType.L2,
    "ip": MetricType.INNER_PRODUCT,
    "inner_product": MetricType.INNER_PRODUCT,
    "dot_product": MetricType.INNER_PRODUCT,
}

_REGISTRY: dict[MetricType, DistanceMetric] = {}
_REGISTRY_LOCK = threading.Lock()


def register_metric(metric: DistanceMetric, *aliases: str) -> None:
    """Register (or replace) a metric kernel under its name and aliases."""
    with _REGISTRY_LOCK:
        _REGISTRY[metric.metric] = metric
        _ALIASES[metric.metric.value] = metric.metric
        for alias in aliases:
            _ALIASES[alias.lower()] = metric.metric


def parse_metric(value: Union[str, MetricType]) -> Result[MetricType, InvalidRequest]:
    """Resolve a metric name or alias; Err for unrecognized metrics."""
    if isinstance(value, MetricType):
        return Ok(value)
    metric = _ALIASES.get(str(value).strip().lower())
    if metric is None:
        return Err(InvalidRequest.because(
            f"unknown distance metric {value!r}",
            known=sorted(_ALIASES),
        ))
    return Ok(metric)


def get_metric(value: Union[str, MetricType]) -> Result[DistanceMetric, InvalidRequest]:
    """Look up the registered kernel for a metric."""
    parsed = parse_metric(value)
    if parsed.is_err():
        return parsed
    metric = _REGISTRY.get(parsed.unwrap())
    if metric is None:
        return Err(InvalidRequest.because(f"no kernel registered for metric {value!r}"))
    return Ok(metric)


def metric_for(metric: MetricType) -> DistanceMetric:
    """Kernel for a metric already validated at define/rewrite time."""
    return _REGISTRY[metric]


def registered_metrics() -> list[str]:
    return sorted(m.value for m in _REGISTRY)


def vector_dimension(vector: Any) -> int:
    """Length of a flat vector; -1 for None or nested input."""
    if vector is None:
        return -1
    arr = np.asarray(vector, dtype=object)
    return int(arr.shape[0]) if arr.ndim == 1 else -1


register_metric(DistanceMetric(MetricType.COSINE, cosine_similarity_batch, higher_is_better=True))
register_metric(DistanceMetric(MetricType.L2, l2_distance_batch, higher_is_better=False))
register_metric(DistanceMetric(MetricType.INNER_PRODUCT, inner_product_batch, higher_is_better=True))
