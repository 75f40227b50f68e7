"""
Generic RANSAC engine.

The engine is parameterized over a pair of strategy objects:
- an Estimator building a candidate model from a minimal sample
- an Evaluator scoring one observation against a model

The loop is bounded by the iteration count only. The returned model is the
one estimated from the winning minimal sample, it is not refit on the inliers.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Generic, Optional, Protocol, Sequence, TypeVar

import numpy as np

from .errors import InvalidInputError

logger = logging.getLogger(__name__)

M = TypeVar("M")


class Estimator(Protocol[M]):
    def estimate(self, sample: Sequence) -> Optional[M]:
        """
        Build a model from a minimal sample.
        Return None if the sample is degenerate.
        """
        ...


class Evaluator(Protocol[M]):
    def evaluate(self, model: M, observation) -> float:
        """Distance of one observation to the model, smaller is better."""
        ...


@dataclass(frozen=True)
class RansacParameters:
    """
    Parameters of a single RANSAC run.

    Attributes:
        sample_size: Number of distinct observations per minimal sample.
        inlier_threshold: An observation is an inlier when its evaluated
            distance is strictly below this value.
        max_iterations: Number of samples drawn.
        min_inlier_fraction: Best results supported by a smaller fraction
            of the observations are reported as not found.
    """
    sample_size: int
    inlier_threshold: float
    max_iterations: int
    min_inlier_fraction: float = 0.0

    def __post_init__(self):
        if self.sample_size < 1:
            raise InvalidInputError(f"sample_size must be positive, got {self.sample_size}")
        if self.max_iterations < 1:
            raise InvalidInputError(f"max_iterations must be positive, got {self.max_iterations}")
        if not self.inlier_threshold > 0:
            raise InvalidInputError(f"inlier_threshold must be positive, got {self.inlier_threshold}")
        if not 0.0 <= self.min_inlier_fraction <= 1.0:
            raise InvalidInputError(f"min_inlier_fraction must lie in [0, 1], got {self.min_inlier_fraction}")


@dataclass(frozen=True)
class RansacResult(Generic[M]):
    model: Optional[M]          # model of the winning sample, None if nothing was found
    inliers: np.ndarray         # sorted indices of the inlier observations
    inlier_count: int
    iterations: int             # samples drawn
    degenerate_samples: int     # samples skipped because the estimator rejected them

    @property
    def found(self) -> bool:
        return self.model is not None and self.inlier_count > 0

    def mask(self, n: int) -> np.ndarray:
        """Boolean inlier mask over n observations."""
        mask = np.zeros(n, dtype=bool)
        mask[self.inliers] = True
        return mask


def required_iterations(confidence: float, inlier_fraction: float, sample_size: int) -> int:
    """
    Number of samples needed to draw at least one outlier free sample
    with the given confidence.
    """
    if not 0.0 < confidence < 1.0:
        raise InvalidInputError(f"confidence must lie in (0, 1), got {confidence}")
    if not 0.0 < inlier_fraction <= 1.0:
        raise InvalidInputError(f"inlier_fraction must lie in (0, 1], got {inlier_fraction}")

    good_sample = inlier_fraction ** sample_size
    if good_sample >= 1.0:
        return 1
    if good_sample <= 0.0:
        raise InvalidInputError("inlier_fraction too small for the sample size")
    return int(math.ceil(math.log(1.0 - confidence) / math.log(1.0 - good_sample)))


def _take(observations, indices: np.ndarray):
    if isinstance(observations, np.ndarray):
        return observations[indices]
    return [observations[i] for i in indices]


def _distances(evaluator, model, observations) -> np.ndarray:
    # Evaluators may provide a vectorized variant over the whole set
    evaluate_all = getattr(evaluator, "evaluate_all", None)
    if evaluate_all is not None:
        return np.asarray(evaluate_all(model, observations), dtype=np.float64)
    return np.array([evaluator.evaluate(model, obs) for obs in observations], dtype=np.float64)


def ransac_estimate(
    observations: Sequence,
    estimator: Estimator[M],
    evaluator: Evaluator[M],
    params: RansacParameters,
    rng: Optional[np.random.Generator] = None,
) -> RansacResult[M]:
    """
    Robustly fit a model to observations containing outliers.

    Args:
        observations: Ordered, indexable collection (sequence or array whose
            first axis indexes the observations).
        estimator: Builds a model from params.sample_size observations,
            returns None for degenerate samples.
        evaluator: Scores observations against a model.
        params: RANSAC parameters.
        rng: Random generator used for sampling, a fresh unseeded one if None.

    Returns:
        RansacResult. When no sample produced a model, model is None and
        inlier_count is 0; check result.found before using the model.
    """
    n = len(observations)
    if n < params.sample_size:
        raise InvalidInputError(
            f"RANSAC needs at least {params.sample_size} observations, got {n}"
        )
    if rng is None:
        rng = np.random.default_rng()

    best_model = None
    best_inliers = np.zeros(0, dtype=np.intp)
    degenerate = 0

    for _ in range(params.max_iterations):
        sample_idx = rng.choice(n, size=params.sample_size, replace=False)
        model = estimator.estimate(_take(observations, sample_idx))
        if model is None:
            degenerate += 1
            continue

        distances = _distances(evaluator, model, observations)
        inliers = np.flatnonzero(distances < params.inlier_threshold)
        if len(inliers) > len(best_inliers):
            best_model = model
            best_inliers = inliers

    if degenerate:
        logger.debug(f"RANSAC skipped {degenerate}/{params.max_iterations} degenerate samples")

    if best_model is not None and len(best_inliers) < params.min_inlier_fraction * n:
        logger.debug(
            f"Best RANSAC model supported by {len(best_inliers)}/{n} observations, "
            f"below required fraction {params.min_inlier_fraction}"
        )
        best_model = None
        best_inliers = np.zeros(0, dtype=np.intp)

    if best_model is None or len(best_inliers) == 0:
        logger.warning(f"RANSAC found no model after {params.max_iterations} iterations")
        return RansacResult(None, np.zeros(0, dtype=np.intp), 0, params.max_iterations, degenerate)

    logger.debug(f"RANSAC best model has {len(best_inliers)}/{n} inliers")
    return RansacResult(best_model, best_inliers, len(best_inliers), params.max_iterations, degenerate)
