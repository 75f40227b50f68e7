"""
Helper functions for the `Triangulation` part of the SFM pipeline.
- Point projection
- Linear (DLT) triangulation from two or more views
- Nonlinear refinement of triangulated points
- Reprojection error
"""

import logging

import cv2 as cv
import numpy as np
from scipy.optimize import least_squares

from .errors import InvalidInputError, NumericalFailureError
from .pose import Pose
from .utils import as_matrix, as_points, skew, to_homogeneous, working_dtype

logger = logging.getLogger(__name__)

REFINE_MAX_ITERATIONS = 200
REFINE_TOLERANCE = 1e-6


def _null_vector(A: np.ndarray) -> np.ndarray:
    if not np.all(np.isfinite(A)):
        raise NumericalFailureError("Triangulation system contains non-finite values")
    try:
        _, _, Vt = np.linalg.svd(A)
    except np.linalg.LinAlgError as e:
        raise NumericalFailureError(f"SVD for point reconstruction failed: {e}") from e
    return Vt[-1]


def project_points(P, points) -> np.ndarray:
    """
    Project points with a 3x4 or 3x3 projection matrix.

    With a 3x4 matrix, points may be 2D (z = 0 is assumed), 3D or homogeneous
    4D. With a 3x3 matrix, points may be 2D (w = 1 is assumed) or homogeneous 3D.

    Returns:
        (N, 2) image points, or (2,) for a single input point.
    """
    P = np.asarray(P)
    if P.shape not in ((3, 4), (3, 3)):
        raise InvalidInputError(f"Expected a 3x4 or 3x3 projection matrix, got {P.shape}")
    dtype = working_dtype(P, points)
    P = P.astype(dtype, copy=False)

    single = np.ndim(points) == 1
    pts = np.asarray(points, dtype=dtype)
    if single:
        pts = pts.reshape(1, -1)
    if pts.ndim != 2:
        raise InvalidInputError(f"Expected points of shape (N, d), got {np.shape(points)}")

    dim = pts.shape[1]
    if P.shape == (3, 4):
        if dim == 2:
            pts = np.hstack([pts, np.zeros((len(pts), 1), dtype=dtype)])
            dim = 3
        if dim == 3:
            pts = to_homogeneous(pts)
        elif dim != 4:
            raise InvalidInputError(f"Cannot project {dim}D points with a 3x4 matrix")
    else:
        if dim == 2:
            pts = to_homogeneous(pts)
        elif dim != 3:
            raise InvalidInputError(f"Cannot project {dim}D points with a 3x3 matrix")

    proj = pts @ P.T
    with np.errstate(divide="ignore", invalid="ignore"):
        image = proj[:, :2] / proj[:, 2:3]
    return image[0] if single else image


def triangulate(P0, P1, pts0, pts1) -> np.ndarray:
    """
    Triangulate 2D correspondences from two views using the Direct Linear Transformation (DLT) method.

    Args:
        P0: 3x4 projection matrix for the first image.
        P1: 3x4 projection matrix for the second image.
        pts0: a 2D point (2,) or Nx2 array of 2D points from the first image.
        pts1: a 2D point (2,) or Nx2 array of 2D points from the second image.

    Returns:
        np.ndarray: 3D point (3,) or Nx3 array of 3D points in Cartesian coordinates.
        A point whose homogeneous coordinate vanishes comes back non-finite.
    """
    dtype = working_dtype(P0, P1, pts0, pts1)
    P0 = as_matrix(P0, (3, 4), "P0", dtype)
    P1 = as_matrix(P1, (3, 4), "P1", dtype)
    single = np.ndim(pts0) == 1 and np.ndim(pts1) == 1
    pts0 = as_points(pts0, 2, "pts0", dtype)
    pts1 = as_points(pts1, 2, "pts1", dtype)
    if len(pts0) != len(pts1):
        raise InvalidInputError(f"Point lists differ in length: {len(pts0)} vs {len(pts1)}")

    def get_A_mat(uv0: np.ndarray, uv1: np.ndarray) -> np.ndarray:
        u0, v0 = uv0[0], uv0[1]
        u1, v1 = uv1[0], uv1[1]

        return np.array([
            u0 * P0[2] - P0[0],
            v0 * P0[2] - P0[1],
            u1 * P1[2] - P1[0],
            v1 * P1[2] - P1[1]
        ], dtype=dtype)

    points_3d = np.empty((len(pts0), 3), dtype=dtype)
    for i, (uv0, uv1) in enumerate(zip(pts0, pts1)):
        X_hom = _null_vector(get_A_mat(uv0, uv1))
        with np.errstate(divide="ignore", invalid="ignore"):
            points_3d[i] = X_hom[0:3] / X_hom[3]

    return points_3d[0] if single else points_3d


def _dlt_multiview(projections: list, points: np.ndarray) -> np.ndarray:
    dtype = points.dtype
    A = np.empty((3 * len(projections), 4), dtype=dtype)
    for i, (P, x) in enumerate(zip(projections, points)):
        # Each view contributes [x]_x P, the cross product of the image point with P X
        A[3 * i:3 * i + 3] = skew(np.array([x[0], x[1], 1], dtype=dtype)) @ P

    vec = _null_vector(A)

    # Point must lie in front of the cameras, flip the solution once if not
    for P in projections:
        if P[2] @ vec < 0:
            vec = -vec
            break

    if vec[3] == 0:
        raise NumericalFailureError("Triangulated point lies at infinity")
    return vec[:3] / vec[3]


def _reprojection_residuals(X: np.ndarray, projections: list, points: np.ndarray) -> np.ndarray:
    X_h = np.append(X, 1.0)
    residuals = np.empty(2 * len(projections))
    for i, (P, x) in enumerate(zip(projections, points)):
        p = P @ X_h
        residuals[2 * i] = p[0] / p[2] - x[0]
        residuals[2 * i + 1] = p[1] / p[2] - x[1]
    return residuals


def _reprojection_jacobian(X: np.ndarray, projections: list, points: np.ndarray) -> np.ndarray:
    X_h = np.append(X, 1.0)
    J = np.empty((2 * len(projections), 3))
    for i, P in enumerate(projections):
        p = P @ X_h
        J[2 * i] = (P[0, :3] * p[2] - p[0] * P[2, :3]) / p[2] ** 2
        J[2 * i + 1] = (P[1, :3] * p[2] - p[1] * P[2, :3]) / p[2] ** 2
    return J


def refine_point(projections, points, initial_point,
                 max_iterations: int = REFINE_MAX_ITERATIONS,
                 tolerance: float = REFINE_TOLERANCE) -> tuple:
    """
    Minimize the reprojection error of a single 3D point over all views.

    Uses damped Gauss-Newton (Levenberg-Marquardt) iterations starting from
    `initial_point`.

    Returns:
        tuple: (refined point (3,), final residual norm)
    """
    Ps = [as_matrix(P, (3, 4), "projection") for P in projections]
    pts = as_points(points, 2, "points")
    X0 = np.asarray(initial_point, dtype=np.float64).reshape(3)
    if not np.all(np.isfinite(X0)):
        raise NumericalFailureError("Initial point for refinement is not finite")

    result = least_squares(
        fun=_reprojection_residuals,
        x0=X0,
        jac=_reprojection_jacobian,
        args=(Ps, pts),
        method="lm",
        max_nfev=max_iterations,
        xtol=tolerance,
        ftol=tolerance,
    )
    if not result.success:
        logger.debug(f"Point refinement stopped without converging: {result.message}")

    return result.x, float(np.linalg.norm(result.fun))


def triangulate_multiview(projections, points, refine: bool = False, return_residual: bool = False,
                          max_iterations: int = REFINE_MAX_ITERATIONS,
                          tolerance: float = REFINE_TOLERANCE):
    """
    Triangulate one 3D point observed in two or more views.

    Args:
        projections: list of 3x4 projection matrices, one per view.
        points: list of 2D observations of the point, one per view.
        refine: minimize the reprojection error after the linear solve.
        return_residual: also return the reprojection residual norm.
        max_iterations: refinement iteration cap.
        tolerance: refinement convergence tolerance.

    Returns:
        3D point (3,), or (point, residual) if return_residual is set.

    Raises:
        InvalidInputError: fewer than two views, or unequal list lengths
        NumericalFailureError: the SVD or the refinement failed
    """
    if len(projections) != len(points):
        raise InvalidInputError(
            f"No equal amount of camera projections ({len(projections)}) and corresponding points ({len(points)})"
        )
    if len(projections) < 2:
        raise InvalidInputError("3D point estimation requires at least 2 projections and 2 image points")

    dtype = working_dtype(*projections, *points)
    Ps = [as_matrix(P, (3, 4), "projection", dtype) for P in projections]
    pts = as_points(points, 2, "points", dtype)

    X = _dlt_multiview(Ps, pts)

    if refine:
        X, residual = refine_point(Ps, pts, X, max_iterations, tolerance)
    else:
        residual = float(np.linalg.norm(_reprojection_residuals(X.astype(np.float64), Ps, pts)))

    X = X.astype(dtype)
    if return_residual:
        return X, residual
    return X


def reprojection_error(points_3d: np.ndarray, points_2d: np.ndarray, pose: Pose, K: np.ndarray):
    """
    Calculates the error between 2D image points and the corresponding 3D
    points projected back down to the image plane.

    Args:
        points_3d (np.ndarray): Nx3 array of 3D points.
        points_2d (np.ndarray): Nx2 array of 2D image points that correspond to points_3d.
        pose (Pose): world to camera pose.
        K (np.ndarray): The 3x3 camera intrinsic matrix.

    Returns:
        float: The mean reprojection error in pixels.
        np.ndarray: The 2D projected points.
    """
    points_3d = as_points(points_3d, 3, "points_3d")
    points_2d = as_points(points_2d, 2, "points_2d")
    if len(points_3d) != len(points_2d):
        raise InvalidInputError("points_3d and points_2d differ in length")
    if len(points_3d) == 0:
        return 0.0, np.zeros((0, 2))

    # Convert rotation matrix to Rodrigues vector for OpenCV compatibility
    rotation, _ = cv.Rodrigues(pose.rotation)

    proj, _ = cv.projectPoints(points_3d, rotation, pose.translation, as_matrix(K, (3, 3), "K"), distCoeffs=None)  # type: ignore
    proj = proj[:, 0, :]

    error = float(np.mean(np.linalg.norm(proj - points_2d, axis=1)))
    return error, proj
