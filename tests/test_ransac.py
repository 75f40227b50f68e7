"""
Tests for the generic RANSAC engine.

A 2D line model is used as a small stand-in for the geometric models:
    - Inlier counting and best model selection
    - Degenerate samples are skipped
    - No model found is reported, not raised
    - Reproducibility with a seeded generator
"""

import numpy as np
import pytest

from sfm.errors import InvalidInputError
from sfm.ransac import RansacParameters, RansacResult, ransac_estimate, required_iterations


class LineEstimator:
    """Line a*x + b*y + c = 0 through two points, None if they coincide."""

    def __init__(self):
        self.samples = []

    def estimate(self, sample):
        sample = np.asarray(sample)
        self.samples.append(sample.copy())
        p, q = sample
        d = q - p
        norm = np.hypot(d[0], d[1])
        if norm < 1e-12:
            return None
        a, b = -d[1] / norm, d[0] / norm
        return np.array([a, b, -(a * p[0] + b * p[1])])


class LineEvaluator:
    def evaluate(self, model, observation):
        return abs(model[0] * observation[0] + model[1] * observation[1] + model[2])


class NeverEstimator:
    def estimate(self, sample):
        return None


def line_data(n_inliers=70, n_outliers=30, seed=0):
    rng = np.random.default_rng(seed)
    x = rng.uniform(-10, 10, n_inliers)
    inliers = np.column_stack([x, 2 * x + 1])
    outliers = rng.uniform(-30, 30, (n_outliers, 2))
    return np.vstack([inliers, outliers])


class TestRansacParameters:
    """Validation of the run parameters."""

    def test_valid(self):
        params = RansacParameters(sample_size=8, inlier_threshold=1.0, max_iterations=100)
        assert params.min_inlier_fraction == 0.0

    @pytest.mark.parametrize("kwargs", [
        dict(sample_size=0, inlier_threshold=1.0, max_iterations=10),
        dict(sample_size=2, inlier_threshold=0.0, max_iterations=10),
        dict(sample_size=2, inlier_threshold=1.0, max_iterations=0),
        dict(sample_size=2, inlier_threshold=1.0, max_iterations=10, min_inlier_fraction=1.5),
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(InvalidInputError):
            RansacParameters(**kwargs)

    def test_immutable(self):
        params = RansacParameters(sample_size=2, inlier_threshold=1.0, max_iterations=10)
        with pytest.raises(Exception):
            params.sample_size = 3


class TestRansacEstimate:
    """Tests for ransac_estimate."""

    def test_finds_line_among_outliers(self):
        """All 70 points on the line are found as inliers."""
        data = line_data()
        params = RansacParameters(sample_size=2, inlier_threshold=0.01, max_iterations=200)
        result = ransac_estimate(data, LineEstimator(), LineEvaluator(), params, np.random.default_rng(1))

        assert result.found
        assert result.inlier_count >= 70
        assert set(range(70)).issubset(set(result.inliers.tolist()))
        # the model is the line y = 2x + 1
        a, b, c = result.model
        assert abs(a * 1.0 + b * 3.0 + c) < 1e-9

    def test_robust_across_seeds(self):
        data = line_data(n_inliers=60, n_outliers=40, seed=3)
        params = RansacParameters(sample_size=2, inlier_threshold=0.01, max_iterations=100)
        for seed in range(10):
            result = ransac_estimate(data, LineEstimator(), LineEvaluator(), params, np.random.default_rng(seed))
            assert result.inlier_count >= 60

    def test_samples_are_distinct(self):
        """Every candidate is built from sample_size distinct observations."""
        data = np.column_stack([np.arange(10.0), np.arange(10.0)])
        estimator = LineEstimator()
        params = RansacParameters(sample_size=2, inlier_threshold=0.1, max_iterations=50)
        ransac_estimate(data, estimator, LineEvaluator(), params, np.random.default_rng(0))

        assert len(estimator.samples) == 50
        for sample in estimator.samples:
            assert len(sample) == 2
            assert not np.array_equal(sample[0], sample[1])

    def test_degenerate_samples_skipped(self):
        """Coinciding points give no model and do not stop the loop."""
        data = np.vstack([np.zeros((5, 2)), line_data(20, 0)])
        params = RansacParameters(sample_size=2, inlier_threshold=0.01, max_iterations=300)
        result = ransac_estimate(data, LineEstimator(), LineEvaluator(), params, np.random.default_rng(2))

        assert result.found
        assert result.degenerate_samples > 0
        assert result.inlier_count >= 20

    def test_no_model_found(self):
        data = line_data(10, 0)
        params = RansacParameters(sample_size=2, inlier_threshold=0.01, max_iterations=20)
        result = ransac_estimate(data, NeverEstimator(), LineEvaluator(), params, np.random.default_rng(0))

        assert isinstance(result, RansacResult)
        assert not result.found
        assert result.model is None
        assert result.inlier_count == 0
        assert len(result.inliers) == 0
        assert result.degenerate_samples == 20

    def test_min_inlier_fraction(self):
        """A best model below the required support is reported as not found."""
        data = line_data(n_inliers=30, n_outliers=70)
        params = RansacParameters(sample_size=2, inlier_threshold=0.01, max_iterations=200,
                                  min_inlier_fraction=0.5)
        result = ransac_estimate(data, LineEstimator(), LineEvaluator(), params, np.random.default_rng(0))
        assert not result.found

    def test_reproducible_with_seed(self):
        data = line_data()
        params = RansacParameters(sample_size=2, inlier_threshold=0.5, max_iterations=30)
        r1 = ransac_estimate(data, LineEstimator(), LineEvaluator(), params, np.random.default_rng(7))
        r2 = ransac_estimate(data, LineEstimator(), LineEvaluator(), params, np.random.default_rng(7))

        np.testing.assert_array_equal(r1.inliers, r2.inliers)
        np.testing.assert_array_equal(r1.model, r2.model)

    def test_works_on_sequences(self):
        data = [tuple(p) for p in line_data(20, 5)]
        params = RansacParameters(sample_size=2, inlier_threshold=0.01, max_iterations=100)
        result = ransac_estimate(data, LineEstimator(), LineEvaluator(), params, np.random.default_rng(0))
        assert result.inlier_count >= 20

    def test_too_few_observations(self):
        params = RansacParameters(sample_size=8, inlier_threshold=1.0, max_iterations=10)
        with pytest.raises(InvalidInputError):
            ransac_estimate(np.zeros((7, 4)), LineEstimator(), LineEvaluator(), params)

    def test_mask(self):
        data = line_data(10, 5)
        params = RansacParameters(sample_size=2, inlier_threshold=0.01, max_iterations=100)
        result = ransac_estimate(data, LineEstimator(), LineEvaluator(), params, np.random.default_rng(0))
        mask = result.mask(len(data))
        assert mask.sum() == result.inlier_count
        assert mask[:10].all()


class TestRequiredIterations:

    def test_known_value(self):
        assert required_iterations(0.99, 0.5, 8) == 1177

    def test_all_inliers(self):
        assert required_iterations(0.99, 1.0, 8) == 1

    def test_invalid(self):
        with pytest.raises(InvalidInputError):
            required_iterations(1.0, 0.5, 8)
        with pytest.raises(InvalidInputError):
            required_iterations(0.99, 0.0, 8)
