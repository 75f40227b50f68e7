"""
Command-line interface for sparse reconstruction from an image sequence.

Usage:
    sfm-reconstruct IMAGE_DIR --config config.yaml [--output sparse.ply]
"""

import argparse
import logging
import os
import sys

import cv2 as cv
import numpy as np
from tqdm import tqdm

from .config import Config
from .corres_search import match_keypoints_bf, match_keypoints_flann, verify_matches
from .errors import NumericalFailureError, SfmError
from .fundamental import MIN_CORRESPONDENCES, pose_from_fundamental_matrix
from .pose import Pose
from .reconstruction import reprojection_error, triangulate, triangulate_multiview
from .utils import clean_point_cloud, downsample, save_to_ply

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = ('.jpg', '.jpeg', '.png')


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


def load_images(img_dir: str, downscale: float, max_images=None) -> list:
    if not os.path.isdir(img_dir):
        raise FileNotFoundError(f"Image directory not found: {img_dir}")

    img_list = sorted(img for img in os.listdir(img_dir) if img.lower().endswith(IMAGE_EXTENSIONS))
    if max_images is not None:
        img_list = img_list[:max_images]

    images = []
    for name in img_list:
        img = cv.imread(os.path.join(img_dir, name))
        if img is None:
            logger.warning(f"Could not read image {name}, skipping")
            continue
        images.append(downsample(img, downscale))
    logger.info(f"Loaded {len(images)} images from {img_dir}")
    return images


def _triangulate_pair(P_prev, P_next, pts_prev, pts_next, config: Config) -> np.ndarray:
    tri = config.triangulation
    if not tri.refine:
        return triangulate(P_prev, P_next, pts_prev, pts_next)
    return np.array([
        triangulate_multiview([P_prev, P_next], [x0, x1], refine=True,
                              max_iterations=tri.max_iterations, tolerance=tri.tolerance)
        for x0, x1 in zip(pts_prev, pts_next)
    ]).reshape(-1, 3)


def _relative_pose(F, pts_prev, pts_next, K) -> Pose:
    """Pose from F, using the inliers in turn as cheirality witness until one passes."""
    for i, (x, x_) in enumerate(zip(pts_prev, pts_next)):
        try:
            return pose_from_fundamental_matrix(F, x, x_, K, K)
        except NumericalFailureError as e:
            logger.debug(f"Inlier {i} rejected as cheirality witness: {e}")
    raise NumericalFailureError(f"None of the {len(pts_prev)} inliers passes the cheirality test")


def reconstruct_sequence(images: list, config: Config) -> np.ndarray:
    """
    Incremental two-view reconstruction over consecutive image pairs.

    Every pair is matched, verified with a RANSAC fundamental matrix, the
    relative pose is recovered from F and the inliers are triangulated.
    Each relative translation has unit length.

    Returns:
        (N, 3) sparse point cloud in the frame of the first camera.
    """
    K = config.camera.matrix()
    params = config.ransac.parameters()
    rng = config.ransac.rng()

    pose_prev = Pose.identity()
    clouds = []

    for i in tqdm(range(len(images) - 1), desc="Processing image pairs"):
        if config.matching.method == "flann":
            pts_prev, pts_next = match_keypoints_flann(
                images[i], images[i + 1],
                n_trees=config.matching.n_trees,
                n_checks=config.matching.n_checks,
                lowe_ratio=config.matching.lowe_ratio,
            )
        else:
            pts_prev, pts_next = match_keypoints_bf(images[i], images[i + 1], lowe_ratio=config.matching.lowe_ratio)

        if len(pts_prev) < max(MIN_CORRESPONDENCES, params.sample_size):
            logger.warning(f"Only {len(pts_prev)} matches between images {i} and {i + 1}, stopping")
            break

        F, pts_prev, pts_next = verify_matches(pts_prev, pts_next, params, rng)
        if F is None:
            logger.warning(f"No fundamental matrix found between images {i} and {i + 1}, stopping")
            break

        relative = _relative_pose(F, pts_prev, pts_next, K)
        pose_next = relative * pose_prev

        P_prev = pose_prev.projection(K)
        P_next = pose_next.projection(K)
        points_3d = _triangulate_pair(P_prev, P_next, pts_prev, pts_next, config)

        # keep points in front of both cameras
        finite = np.all(np.isfinite(points_3d), axis=1)
        depth_prev = pose_prev.apply(points_3d[finite])[:, 2]
        depth_next = pose_next.apply(points_3d[finite])[:, 2]
        keep = np.flatnonzero(finite)[(depth_prev > 0) & (depth_next > 0)]

        error, _ = reprojection_error(points_3d[keep], pts_next[keep], pose_next, K)
        logger.info(f"Pair {i}-{i + 1}: {len(keep)} points, reprojection error {np.round(error, 4)} px")

        clouds.append(points_3d[keep])
        pose_prev = pose_next

    if not clouds:
        return np.zeros((0, 3))
    return np.vstack(clouds)


def main() -> int:
    """Main entry point for CLI."""
    parser = argparse.ArgumentParser(
        description='Sparse 3D reconstruction from an ordered image sequence',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
    # Reconstruct with the camera described in config.yaml
    sfm-reconstruct ./gustav --config config.yaml

    # Write the cloud somewhere else, use only the first 5 images
    sfm-reconstruct ./gustav --config config.yaml -o out/cloud.ply --max-images 5
'''
    )

    parser.add_argument('image_dir', type=str, help='Directory containing the images (sorted by name)')
    parser.add_argument('--config', '-c', type=str, required=True, help='Path to YAML configuration file')
    parser.add_argument('--output', '-o', type=str, default=None, help='Output .ply file (default: from config)')
    parser.add_argument('--max-images', type=int, default=None, help='Use at most this many images')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose output')

    args = parser.parse_args()

    setup_logging(args.verbose)

    try:
        config = Config.from_yaml(args.config)
        images = load_images(args.image_dir, config.camera.downscale, args.max_images)
        if len(images) < 2:
            logger.error("At least two images are needed for reconstruction")
            return 1

        point_cloud = clean_point_cloud(reconstruct_sequence(images, config))
        if len(point_cloud) == 0:
            logger.error("Reconstruction produced no points")
            return 1

        output_path = args.output or config.output.ply_path
        save_to_ply(point_cloud, output_path)
        return 0

    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        return 1
    except (SfmError, ValueError) as e:
        logger.error(f"Reconstruction failed: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
