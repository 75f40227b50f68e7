"""
Reconstruction of a point cloud from two unmatched sets of detections.

The detections are first paired by minimum epipolar cost, each pair is then
triangulated with the two known projection matrices.
"""

import logging

import numpy as np

from .assignment import UNMATCHED, Munkres, build_cost_matrix
from .reconstruction import refine_point, triangulate
from .utils import as_matrix, as_points, working_dtype

logger = logging.getLogger(__name__)


def reconstruct_points(points_a, points_b, P1, P2, F, refine: bool = False, return_matches: bool = False):
    """
    Triangulate the optimal pairing of two 2D point sets.

    Args:
        points_a: (R, 2) detections in the first image.
        points_b: (C, 2) detections in the second image.
        P1: 3x4 projection matrix of the first camera.
        P2: 3x4 projection matrix of the second camera.
        F: fundamental matrix with x_b^T F x_a = 0.
        refine: refine each point by minimizing its reprojection error.
        return_matches: also return the (index_a, index_b) pairs used.

    Returns:
        (M, 3) array of 3D points in the order of points_a. Rows without a
        partner and pairs whose point lies at infinity are left out, with or
        without refinement. With return_matches, a tuple (points, matches).
    """
    dtype = working_dtype(points_a, points_b, P1, P2, F)
    pts_a = as_points(points_a, 2, "points_a", dtype)
    pts_b = as_points(points_b, 2, "points_b", dtype)
    P1 = as_matrix(P1, (3, 4), "P1", dtype)
    P2 = as_matrix(P2, (3, 4), "P2", dtype)

    cost = build_cost_matrix(pts_a, pts_b, F)
    row_matches = Munkres(cost).solve()

    idx_a = np.flatnonzero(row_matches != UNMATCHED)
    idx_b = row_matches[idx_a]
    logger.debug(f"Matched {len(idx_a)} of {len(pts_a)}x{len(pts_b)} detections")

    points_3d = triangulate(P1, P2, pts_a[idx_a], pts_b[idx_b])

    # pairs triangulating to infinity are dropped like unmatched rows
    finite = np.all(np.isfinite(points_3d), axis=1)
    if not np.all(finite):
        logger.warning(f"Dropped {int((~finite).sum())} matched pairs with a point at infinity")
        points_3d, idx_a, idx_b = points_3d[finite], idx_a[finite], idx_b[finite]

    if refine:
        points_3d = np.array([
            refine_point([P1, P2], [pts_a[i], pts_b[j]], X)[0]
            for i, j, X in zip(idx_a, idx_b, points_3d)
        ], dtype=dtype).reshape(-1, 3)

    if return_matches:
        return points_3d, list(zip(idx_a.tolist(), idx_b.tolist()))
    return points_3d
