"""
Helper functions for the `Correspondence Search` part of the SFM pipeline.
- Feature extraction
- Matching
- Geometric verification
"""

import logging
from typing import Optional

import cv2 as cv
import numpy as np

from .fundamental import estimate_fundamental_matrix_ransac
from .ransac import RansacParameters

logger = logging.getLogger(__name__)


def extract_features(img: np.ndarray, intr_mat=None, dist_coeff=None) -> tuple:
    """
    Extract SIFT feature points from input image; undistort the image if camera parameters are known

    Args:
        img: BGR or grayscale image
        intr_mat: optional 3x3 intrinsic matrix
        dist_coeff: optional distortion coefficients

    Returns:
        tuple: (keypoints, descriptors)
    """
    if intr_mat is not None and dist_coeff is not None:
        img = cv.undistort(img, intr_mat, dist_coeff)  # type: ignore

    if img.ndim == 3:
        img = cv.cvtColor(img, cv.COLOR_BGR2GRAY)
    sift = cv.SIFT.create()
    kp, desc = sift.detectAndCompute(img, None)  # type: ignore
    return kp, desc


def _ratio_test(knn_matches, lowe_ratio: float) -> list:
    good = []
    for pair in knn_matches:
        if len(pair) < 2:
            continue
        m, n = pair
        if m.distance < lowe_ratio * n.distance:
            good.append(m)
    return good


def _matched_points(kp0, kp1, matches) -> tuple:
    pts0 = np.array([kp0[m.queryIdx].pt for m in matches], dtype=np.float64).reshape(-1, 2)
    pts1 = np.array([kp1[m.trainIdx].pt for m in matches], dtype=np.float64).reshape(-1, 2)
    return pts0, pts1


def match_keypoints_bf(img0, img1, lowe_ratio=0.7):
    kp0, desc0 = extract_features(img0)
    kp1, desc1 = extract_features(img1)
    if desc0 is None or desc1 is None or len(desc0) < 2 or len(desc1) < 2:
        return np.zeros((0, 2)), np.zeros((0, 2))

    bf = cv.BFMatcher(cv.NORM_L1, crossCheck=False)
    good = _ratio_test(bf.knnMatch(desc0, desc1, k=2), lowe_ratio)
    logger.debug(f"BF matching: {len(kp0)}/{len(kp1)} keypoints, {len(good)} good matches")
    return _matched_points(kp0, kp1, good)


def match_keypoints_flann(
    img1, img2, n_trees=5, n_checks=50, lowe_ratio=0.8
):
    FLANN_INDEX_KDTREE = 1
    index_params = dict(
        algorithm=FLANN_INDEX_KDTREE, trees=n_trees
    )  # number of trees in the KD-Tree, higher the better, but slower
    search_params = dict(
        checks=n_checks
    )  # number of recursive checks, higher the better, but slower
    flann = cv.FlannBasedMatcher(index_params, search_params)  # type: ignore

    kp1, desc1 = extract_features(img1)
    kp2, desc2 = extract_features(img2)
    if desc1 is None or desc2 is None or len(desc1) < 2 or len(desc2) < 2:
        return np.zeros((0, 2)), np.zeros((0, 2))

    good_matches = _ratio_test(flann.knnMatch(desc1, desc2, k=2), lowe_ratio)
    logger.debug(f"FLANN matching: {len(kp1)}/{len(kp2)} keypoints, {len(good_matches)} good matches")
    return _matched_points(kp1, kp2, good_matches)


def verify_matches(pts0, pts1, params: Optional[RansacParameters] = None,
                   rng: Optional[np.random.Generator] = None) -> tuple:
    """
    Geometric verification of putative matches with a RANSAC fundamental matrix.

    Returns:
        tuple: (F, inlier_pts0, inlier_pts1). F is None and the point arrays
        are empty when no model was found.
    """
    F, result = estimate_fundamental_matrix_ransac(pts0, pts1, params, rng)
    if F is None:
        return None, np.zeros((0, 2)), np.zeros((0, 2))

    pts0 = np.asarray(pts0)[result.inliers]
    pts1 = np.asarray(pts1)[result.inliers]
    return F, pts0, pts1
