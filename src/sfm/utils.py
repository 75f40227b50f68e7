"""
Shared helpers for the SFM pipeline.
- Numeric precision handling
- Point / homogeneous coordinate conversion
- Image downsampling
- Point cloud cleaning and export
"""

import logging
from pathlib import Path

import cv2 as cv
import numpy as np

from .errors import InvalidInputError

logger = logging.getLogger(__name__)


def working_dtype(*arrays) -> type:
    """
    Pick the floating point precision for a computation.

    Single precision is kept only when every input is already float32,
    anything else is computed in double precision.
    """
    dtypes = [np.asarray(a).dtype for a in arrays]
    if dtypes and all(dt == np.float32 for dt in dtypes):
        return np.float32
    return np.float64


def as_points(points, dim: int, name: str = "points", dtype=np.float64) -> np.ndarray:
    """
    Coerce input to an (N, dim) float array.

    A single point of shape (dim,) is returned as (1, dim).
    """
    arr = np.asarray(points, dtype=dtype)
    if arr.ndim == 1:
        arr = arr.reshape(1, -1)
    if arr.ndim != 2 or arr.shape[1] != dim:
        raise InvalidInputError(f"Expected {name} of shape (N, {dim}) but got {np.shape(points)}")
    return arr


def as_matrix(mat, shape: tuple, name: str = "matrix", dtype=np.float64) -> np.ndarray:
    arr = np.asarray(mat, dtype=dtype)
    if arr.shape != shape:
        raise InvalidInputError(f"Expected {name} of shape {shape} but got {arr.shape}")
    return arr


def to_homogeneous(points: np.ndarray) -> np.ndarray:
    """(N, d) -> (N, d+1) with a trailing column of ones."""
    ones = np.ones((points.shape[0], 1), dtype=points.dtype)
    return np.hstack([points, ones])


def from_homogeneous(points: np.ndarray) -> np.ndarray:
    """(N, d+1) -> (N, d) by dividing through the last coordinate."""
    return points[:, :-1] / points[:, -1:]


def skew(v: np.ndarray) -> np.ndarray:
    """Cross product matrix [v]_x such that [v]_x @ w == cross(v, w)."""
    return np.array([
        [0, -v[2], v[1]],
        [v[2], 0, -v[0]],
        [-v[1], v[0], 0]
    ], dtype=v.dtype)


def downsample(img, downscale):
    downscale = int(downscale / 2)
    i = 0
    while i < downscale:
        img = cv.pyrDown(img)
        i += 1
    return img


def clean_point_cloud(point_cloud: np.ndarray, sigma: float = 3.0) -> np.ndarray:
    """
    Remove points lying far away from the bulk of the cloud.

    Points whose distance to the centroid exceeds mean + sigma * std of all
    centroid distances are dropped. Non-finite points are always dropped.
    """
    points = np.asarray(point_cloud).reshape(-1, 3)
    points = points[np.all(np.isfinite(points), axis=1)]
    if len(points) == 0:
        return points

    diff = points - np.mean(points, axis=0)
    distance = np.sqrt(np.sum(diff**2, axis=1))
    keep = distance <= np.mean(distance) + sigma * np.std(distance)
    logger.debug(f"Point cloud cleaning kept {int(keep.sum())}/{len(points)} points")
    return points[keep]


def save_to_ply(point_cloud, filename="output.ply", colors=None):
    """
    Save the 3D point cloud to a .ply file.

    Parameters:
        point_cloud (numpy.ndarray): Array of shape (N, 3) containing 3D points.
        filename (str): Name of the output .ply file.
        colors (numpy.ndarray, optional): Array of shape (N, 3) containing RGB colors for each point.
    """
    point_cloud = np.asarray(point_cloud)
    if point_cloud.ndim != 2 or point_cloud.shape[1] != 3:
        raise InvalidInputError(f"Point cloud must have shape (N, 3), got {point_cloud.shape}")

    if colors is None:
        # Default to white if no colors are provided
        colors = np.full((point_cloud.shape[0], 3), 255, dtype=np.uint8)
    colors = np.asarray(colors)

    if colors.shape != point_cloud.shape:
        raise InvalidInputError("Colors must have shape (N, 3) matching the point cloud")

    ply_header = (
        "ply\n"
        "format ascii 1.0\n"
        f"element vertex {len(point_cloud)}\n"
        "property float x\n"
        "property float y\n"
        "property float z\n"
        "property uchar red\n"
        "property uchar green\n"
        "property uchar blue\n"
        "end_header\n"
    )
    Path(filename).parent.mkdir(parents=True, exist_ok=True)
    with open(filename, 'w') as ply_file:
        ply_file.write(ply_header)
        for point, color in zip(point_cloud, colors):
            ply_file.write(f"{point[0]} {point[1]} {point[2]} {int(color[0])} {int(color[1])} {int(color[2])}\n")

    logger.info(f"Point cloud with {len(point_cloud)} points saved to {filename}")
