"""
Epipolar geometry between two views.
- Normalized 8-point fundamental matrix estimation
- Point to epipolar line distance
- Estimator / evaluator pair for RANSAC
- Fundamental matrix from known camera poses
- Relative pose recovery from a fundamental matrix

Convention: for a correspondence x (first view) <-> x' (second view),
x'^T F x = 0, so F maps points of the first view to lines in the second.
"""

import logging
from typing import Optional

import numpy as np

from .errors import DegenerateSampleError, InvalidInputError, NumericalFailureError
from .pose import Pose
from .ransac import RansacParameters, RansacResult, ransac_estimate
from .reconstruction import triangulate
from .utils import as_matrix, as_points, skew, to_homogeneous, working_dtype

logger = logging.getLogger(__name__)

MIN_CORRESPONDENCES = 8


def _svd(A: np.ndarray, **kwargs):
    if not np.all(np.isfinite(A)):
        raise NumericalFailureError("SVD input contains non-finite values")
    try:
        return np.linalg.svd(A, **kwargs)
    except np.linalg.LinAlgError as e:
        raise NumericalFailureError(f"SVD did not converge: {e}") from e


def normalize_points(points):
    """
    Normalize 2D points for the 8-point algorithm.

    1. Shifting the points so their centroid is at the origin.
    2. Scaling the points so that the average distance from the origin is sqrt(2).

    Args:
        points: Input 2D points, (N, 2), where N is the number of points.

    Returns:
        tuple:
            - norm_points: Normalized 2D points, shape (N, 2).
            - T: Transformation matrix of shape (3, 3) that was used for normalization.
    """
    if not np.all(np.isfinite(points)):
        raise NumericalFailureError("Points contain non-finite values")

    centroid = np.mean(points, axis=0)
    shifted_points = points - centroid

    avg_distance = np.mean(np.sqrt(np.sum(shifted_points**2, axis=1)))
    if not avg_distance > 0:
        raise DegenerateSampleError("All points coincide, cannot normalize")

    scale = np.sqrt(2) / avg_distance

    # homogenous points multiplied by T gives you normalized points
    T = np.array(
        [[scale, 0, -scale * centroid[0]], [0, scale, -scale * centroid[1]], [0, 0, 1]],
        dtype=points.dtype,
    )

    norm_points = shifted_points * scale
    return norm_points.astype(points.dtype), T


def _eight_point(pts_from: np.ndarray, pts_to: np.ndarray) -> np.ndarray:
    norm_from, T_from = normalize_points(pts_from)
    norm_to, T_to = normalize_points(pts_to)

    # One row per correspondence: kron(x', x) . vec(F) = 0
    x = to_homogeneous(norm_from)
    x_ = to_homogeneous(norm_to)
    A = (x_[:, :, None] * x[:, None, :]).reshape(-1, 9)

    _, S, Vt = _svd(A, full_matrices=True)

    # The null space must be one dimensional
    tol = S[0] * max(A.shape) * np.finfo(A.dtype).eps
    if S[MIN_CORRESPONDENCES - 1] <= tol:
        raise DegenerateSampleError("Correspondences do not constrain the fundamental matrix")

    F = Vt[-1].reshape(3, 3)

    # Enforce rank 2
    U, S, Vt = _svd(F)
    S[2] = 0
    F = U @ np.diag(S) @ Vt

    # Denormalize
    return T_to.T @ F @ T_from


def estimate_fundamental_matrix(points_from, points_to, step_size: int = 1) -> np.ndarray:
    """
    Calculate the fundamental matrix using the normalized 8-point algorithm.

    Args:
        points_from: Points x from image 1, shape (N, 2).
        points_to: Points x' from image 2, shape (N, 2).
        step_size: Use only every step_size-th correspondence.

    Returns:
        F : Fundamental matrix, shape (3, 3), with x'^T F x = 0.
        Single precision inputs give a single precision result.

    Raises:
        InvalidInputError: fewer than 8 correspondences (after subsampling)
        DegenerateSampleError: the correspondences are rank deficient
        NumericalFailureError: the SVD failed
    """
    dtype = working_dtype(points_from, points_to)
    pts_from = as_points(points_from, 2, "points_from", dtype)
    pts_to = as_points(points_to, 2, "points_to", dtype)
    if len(pts_from) != len(pts_to):
        raise InvalidInputError(
            f"Point lists differ in length: {len(pts_from)} vs {len(pts_to)}"
        )
    if step_size < 1:
        raise InvalidInputError(f"step_size must be positive, got {step_size}")

    pts_from = pts_from[::step_size]
    pts_to = pts_to[::step_size]
    if len(pts_from) < MIN_CORRESPONDENCES:
        raise InvalidInputError(
            f"Fundamental matrix estimation needs at least {MIN_CORRESPONDENCES} correspondences, got {len(pts_from)}"
        )

    return _eight_point(pts_from, pts_to)


def epipolar_distance(F, points_from, points_to):
    """
    Squared distance of the `to` point(s) to the epipolar line F @ from.

    Points may be inhomogeneous 2-vectors or homogeneous 3-vectors, single
    or stacked as (N, 2|3). A single pair yields a scalar.
    """
    F = np.asarray(F)
    dtype = working_dtype(F, points_from, points_to)
    F = F.astype(dtype, copy=False)
    single = np.ndim(points_from) == 1 and np.ndim(points_to) == 1

    def _homogeneous(points, name):
        arr = np.asarray(points, dtype=dtype)
        if arr.ndim == 1:
            arr = arr.reshape(1, -1)
        if arr.ndim != 2 or arr.shape[1] not in (2, 3):
            raise InvalidInputError(f"Expected {name} of shape (N, 2) or (N, 3), got {np.shape(points)}")
        return to_homogeneous(arr) if arr.shape[1] == 2 else arr

    x = _homogeneous(points_from, "points_from")
    x_ = _homogeneous(points_to, "points_to")

    lines = x @ F.T
    term = lines[:, 0] * x_[:, 0] + lines[:, 1] * x_[:, 1] + lines[:, 2]
    norm = lines[:, 0] ** 2 + lines[:, 1] ** 2
    with np.errstate(divide="ignore", invalid="ignore"):
        dist = np.where(norm > 0, term**2 / norm, np.inf).astype(dtype)

    return dist[0] if single else dist


class FundamentalMatrixEstimator:
    """
    Minimal sample estimator for RANSAC.

    Observations are rows [x, y, x', y'] of an (N, 4) array.
    """

    def estimate(self, sample) -> Optional[np.ndarray]:
        sample = np.asarray(sample)
        try:
            return estimate_fundamental_matrix(sample[:, :2], sample[:, 2:4])
        except DegenerateSampleError:
            return None


class FundamentalMatrixEvaluator:
    """Squared point to epipolar line distance, one directional."""

    def evaluate(self, F, observation) -> float:
        observation = np.asarray(observation)
        return float(epipolar_distance(F, observation[:2], observation[2:4]))

    def evaluate_all(self, F, observations) -> np.ndarray:
        observations = np.asarray(observations)
        return epipolar_distance(F, observations[:, :2], observations[:, 2:4])


def estimate_fundamental_matrix_ransac(
    points_from,
    points_to,
    params: Optional[RansacParameters] = None,
    rng: Optional[np.random.Generator] = None,
) -> tuple:
    """
    Robust fundamental matrix estimation.

    Returns:
        tuple: (F, RansacResult). F is None when no model was found.
    """
    dtype = working_dtype(points_from, points_to)
    pts_from = as_points(points_from, 2, "points_from", dtype)
    pts_to = as_points(points_to, 2, "points_to", dtype)
    if len(pts_from) != len(pts_to):
        raise InvalidInputError(
            f"Point lists differ in length: {len(pts_from)} vs {len(pts_to)}"
        )
    if params is None:
        params = RansacParameters(sample_size=MIN_CORRESPONDENCES, inlier_threshold=1.0, max_iterations=1000)

    observations = np.hstack([pts_from, pts_to])
    result: RansacResult = ransac_estimate(
        observations, FundamentalMatrixEstimator(), FundamentalMatrixEvaluator(), params, rng
    )
    logger.info(f"Fundamental matrix RANSAC: {result.inlier_count}/{len(observations)} inliers")
    return result.model, result


def fundamental_matrix_from_poses(pose1: Pose, pose2: Pose, K1, K2) -> np.ndarray:
    """
    Computes a fundamental matrix from two camera poses.

    Args:
        pose1: world to camera pose of the first camera
        pose2: world to camera pose of the second camera
        K1: intrinsic matrix of the first camera
        K2: intrinsic matrix of the second camera

    Returns:
        F such that x'^T F x = 0 for projections x, x' of the same world point.
    """
    K1 = as_matrix(K1, (3, 3), "K1")
    K2 = as_matrix(K2, (3, 3), "K2")

    relative = pose2 * pose1.inverse()
    E = skew(relative.translation) @ relative.rotation
    try:
        return np.linalg.inv(K2).T @ E @ np.linalg.inv(K1)
    except np.linalg.LinAlgError as e:
        raise NumericalFailureError(f"Intrinsic matrix is singular: {e}") from e


def essential_from_fundamental(F, K1, K2) -> np.ndarray:
    """E = K2^T F K1."""
    F = as_matrix(F, (3, 3), "F")
    K1 = as_matrix(K1, (3, 3), "K1")
    K2 = as_matrix(K2, (3, 3), "K2")
    return K2.T @ F @ K1


def decompose_essential_matrix(E) -> list:
    """
    Decompose an essential matrix into its four (R, t) candidates.

    Returns:
        list of (R, t): two rotations times two translation signs, the
        rotations proper (det = +1) and the translation of unit length.
    """
    E = as_matrix(E, (3, 3), "E")
    U, _, Vt = _svd(E)
    if np.linalg.det(U) < 0:
        U = -U
    if np.linalg.det(Vt) < 0:
        Vt = -Vt

    W = np.array([[0.0, -1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])
    R1 = U @ W @ Vt
    R2 = U @ W.T @ Vt
    t = U[:, 2]

    return [(R1, t), (R1, -t), (R2, t), (R2, -t)]


def _in_front(R: np.ndarray, t: np.ndarray, x, x_, K1, K2) -> bool:
    P1 = K1 @ np.hstack([np.eye(3), np.zeros((3, 1))])
    P2 = K2 @ np.hstack([R, t.reshape(3, 1)])
    X = triangulate(P1, P2, x, x_)
    if not np.all(np.isfinite(X)):
        return False
    depth1 = X[2]
    depth2 = (R @ X + t)[2]
    return depth1 > 0 and depth2 > 0


def pose_from_fundamental_matrix(F, x, x_, K1, K2) -> Pose:
    """
    Computes the pose of a second camera relative to the first camera.

    The correspondence x <-> x_ is triangulated under each of the four
    candidate poses, the one placing the point in front of both cameras
    is returned. The translation has unit length.

    Raises:
        NumericalFailureError: no candidate passes the cheirality test
    """
    K1 = as_matrix(K1, (3, 3), "K1")
    K2 = as_matrix(K2, (3, 3), "K2")
    x = as_points(x, 2, "x")[0]
    x_ = as_points(x_, 2, "x_")[0]

    E = essential_from_fundamental(F, K1, K2)
    valid = [(R, t) for R, t in decompose_essential_matrix(E) if _in_front(R, t, x, x_, K1, K2)]

    if not valid:
        raise NumericalFailureError("No pose candidate places the point in front of both cameras")
    if len(valid) > 1:
        logger.warning(f"{len(valid)} pose candidates pass the cheirality test, using the first")

    R, t = valid[0]
    return Pose(R, t)
