"""
Structure from Motion geometry package

Multi-view geometry building blocks for sparse reconstruction:
    - Generic RANSAC over pluggable estimator / evaluator pairs
    - Normalized 8-point fundamental matrix estimation and pose recovery
    - DLT triangulation from two or more views with nonlinear refinement
    - Minimum cost (Munkres) pairing of unmatched detections
    - Tool tip (pivot) calibration from tracker poses

Conventions:
    - Image points are (N, 2) arrays in pixels
    - Poses map world to camera coordinates: x_cam = R @ x_world + t
    - Fundamental matrices satisfy x'^T F x = 0 for x in the first view
    - float32 inputs are processed in float32, everything else in float64
"""

from .errors import SfmError, InvalidInputError, NumericalFailureError, DegenerateSampleError
from .ransac import RansacParameters, RansacResult, ransac_estimate, required_iterations
from .pose import Pose
from .fundamental import (
    estimate_fundamental_matrix,
    estimate_fundamental_matrix_ransac,
    epipolar_distance,
    fundamental_matrix_from_poses,
    essential_from_fundamental,
    decompose_essential_matrix,
    pose_from_fundamental_matrix,
    FundamentalMatrixEstimator,
    FundamentalMatrixEvaluator,
)
from .reconstruction import project_points, triangulate, triangulate_multiview, refine_point, reprojection_error
from .assignment import UNMATCHED, Munkres, build_cost_matrix, match_points
from .pipeline import reconstruct_points
from .tooltip import estimate_tooltip, estimate_tooltip_ransac, TooltipEstimator, TooltipEvaluator

__version__ = "0.2.0"
__all__ = [
    "SfmError",
    "InvalidInputError",
    "NumericalFailureError",
    "DegenerateSampleError",
    "RansacParameters",
    "RansacResult",
    "ransac_estimate",
    "required_iterations",
    "Pose",
    "estimate_fundamental_matrix",
    "estimate_fundamental_matrix_ransac",
    "epipolar_distance",
    "fundamental_matrix_from_poses",
    "essential_from_fundamental",
    "decompose_essential_matrix",
    "pose_from_fundamental_matrix",
    "FundamentalMatrixEstimator",
    "FundamentalMatrixEvaluator",
    "project_points",
    "triangulate",
    "triangulate_multiview",
    "refine_point",
    "reprojection_error",
    "UNMATCHED",
    "Munkres",
    "build_cost_matrix",
    "match_points",
    "reconstruct_points",
    "estimate_tooltip",
    "estimate_tooltip_ransac",
    "TooltipEstimator",
    "TooltipEvaluator",
]
