"""
Tool tip (pivot) calibration.

A tracked tool is rotated about its tip, which stays fixed in the world.
Every tracker pose (marker to world) then satisfies

    R_i @ p_marker + t_i = p_world

with p_marker the tip in marker coordinates and p_world the pivot point.
Stacking the poses gives a linear least squares problem in the six unknowns.
"""

import logging
from typing import Optional, Sequence

import numpy as np

from .errors import DegenerateSampleError, InvalidInputError
from .pose import Pose
from .ransac import RansacParameters, ransac_estimate

logger = logging.getLogger(__name__)


def estimate_tooltip(poses: Sequence[Pose]) -> tuple:
    """
    Linear pivot calibration.

    Args:
        poses: marker to world poses, at least two with different rotations.

    Returns:
        tuple: (p_world, p_marker), both (3,)
    """
    if len(poses) < 2:
        raise InvalidInputError(f"Tool tip calibration needs at least 2 poses, got {len(poses)}")

    A = np.zeros((3 * len(poses), 6))
    b = np.zeros(3 * len(poses))
    for i, pose in enumerate(poses):
        A[3 * i:3 * i + 3, :3] = -np.eye(3)
        A[3 * i:3 * i + 3, 3:] = pose.rotation
        b[3 * i:3 * i + 3] = -pose.translation

    solution, _, rank, _ = np.linalg.lstsq(A, b, rcond=None)
    if rank < 6:
        raise DegenerateSampleError("Poses do not span enough rotations to locate the tip")

    return solution[:3], solution[3:]


class TooltipEstimator:
    """Estimates the 6-vector [p_world, p_marker] from a sample of poses."""

    def estimate(self, sample) -> Optional[np.ndarray]:
        try:
            p_world, p_marker = estimate_tooltip(sample)
        except DegenerateSampleError:
            return None
        return np.concatenate([p_world, p_marker])


class TooltipEvaluator:
    """Euclidean distance between the pivot and the tip seen through a pose."""

    def evaluate(self, model, pose: Pose) -> float:
        tip = pose.apply(model[3:])
        return float(np.linalg.norm(model[:3] - tip))

    def evaluate_all(self, model, poses) -> np.ndarray:
        rotations = np.stack([p.rotation for p in poses])
        translations = np.stack([p.translation for p in poses])
        tips = rotations @ model[3:] + translations
        return np.linalg.norm(tips - model[:3], axis=1)


def estimate_tooltip_ransac(
    poses: Sequence[Pose],
    params: Optional[RansacParameters] = None,
    rng: Optional[np.random.Generator] = None,
) -> tuple:
    """
    Robust pivot calibration.

    Returns:
        tuple: (p_world, p_marker, RansacResult). Both points are None when
        no model was found.
    """
    if params is None:
        params = RansacParameters(sample_size=3, inlier_threshold=1.0, max_iterations=500)

    result = ransac_estimate(list(poses), TooltipEstimator(), TooltipEvaluator(), params, rng)
    if not result.found:
        return None, None, result

    logger.info(f"Tool tip calibration: {result.inlier_count}/{len(poses)} inlier poses")
    return result.model[:3], result.model[3:], result
