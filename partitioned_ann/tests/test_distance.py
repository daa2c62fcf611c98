"""
Unit Tests: Distance Metric Registry

Tests:
    - Metric name / alias resolution
    - Comparison direction per metric
    - Batch kernels (cosine, L2, inner product)
    - Dimension helper
"""

import numpy as np
import pytest

from partitioned_ann.core.errors import InvalidRequest
from partitioned_ann.core.types import MetricType
from partitioned_ann.index.distance import (
    get_metric,
    metric_for,
    normalize_vector,
    parse_metric,
    registered_metrics,
    vector_dimension,
)


class TestMetricResolution:
    """Tests for metric lookup."""

    @pytest.mark.parametrize("name,expected", [
        ("cosine", MetricType.COSINE),
        ("COSINE", MetricType.COSINE),
        ("l2", MetricType.L2),
        ("euclidean", MetricType.L2),
        ("ip", MetricType.INNER_PRODUCT),
        ("dot_product", MetricType.INNER_PRODUCT),
    ])
    def test_aliases(self, name, expected):
        """Test names and aliases resolve to the metric."""
        assert parse_metric(name).unwrap() is expected

    def test_unknown_metric(self):
        """Test unknown metric names are rejected, not defaulted."""
        result = parse_metric("manhattan")

        assert result.is_err()
        assert isinstance(result.error, InvalidRequest)

    def test_all_builtins_registered(self):
        assert registered_metrics() == ["cosine", "ip", "l2"]

    def test_direction(self):
        """Test higher-is-better flags."""
        assert get_metric("cosine").unwrap().higher_is_better
        assert get_metric("ip").unwrap().higher_is_better
        assert not get_metric("l2").unwrap().higher_is_better


class TestKernels:
    """Tests for batch kernels."""

    def test_cosine_self_similarity(self):
        """Test a vector is perfectly similar to itself."""
        v = np.array([1.0, 2.0, 3.0])
        score = metric_for(MetricType.COSINE).score_one(v, v)

        np.testing.assert_allclose(score, 1.0, rtol=1e-5)

    def test_cosine_batch(self):
        query = np.array([1.0, 0.0])
        candidates = np.array([
            [1.0, 0.0],    # Identical
            [0.0, 1.0],    # Orthogonal
            [-2.0, 0.0],   # Opposite
        ])
        scores = metric_for(MetricType.COSINE).score(query, candidates)

        np.testing.assert_allclose(scores, [1.0, 0.0, -1.0], atol=1e-6)

    def test_cosine_zero_vector(self):
        """Test zero vectors score 0.0 instead of NaN."""
        scores = metric_for(MetricType.COSINE).score([0.0, 0.0], [[1.0, 0.0]])

        np.testing.assert_allclose(scores, [0.0])

    def test_l2_batch(self):
        query = np.array([0.0, 0.0])
        candidates = np.array([[3.0, 4.0], [0.0, 0.0]])
        scores = metric_for(MetricType.L2).score(query, candidates)

        np.testing.assert_allclose(scores, [5.0, 0.0], rtol=1e-6)

    def test_inner_product_batch(self):
        scores = metric_for(MetricType.INNER_PRODUCT).score([1.0, 2.0], [[3.0, 4.0], [-1.0, 0.0]])

        np.testing.assert_allclose(scores, [11.0, -1.0], rtol=1e-6)

    def test_is_better(self):
        l2 = metric_for(MetricType.L2)
        cosine = metric_for(MetricType.COSINE)

        assert l2.is_better(0.1, 0.2)
        assert cosine.is_better(0.9, 0.2)

    def test_normalize_batch(self):
        normalized = normalize_vector(np.array([[3.0, 4.0], [0.0, 0.0]]))

        np.testing.assert_allclose(normalized, [[0.6, 0.8], [0.0, 0.0]], rtol=1e-6)


class TestVectorDimension:
    """Tests for the dimension helper used by build and search validation."""

    def test_flat_vector(self):
        assert vector_dimension([0.1, 0.2, 0.3]) == 3
        assert vector_dimension(np.zeros(5)) == 5

    def test_missing_or_nested(self):
        assert vector_dimension(None) == -1
        assert vector_dimension([[1.0, 2.0]]) == -1
