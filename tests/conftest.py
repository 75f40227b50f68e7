"""
Synthetic camera rigs and scenes shared by the tests.
"""

import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from sfm.pose import Pose
from sfm.reconstruction import project_points


def make_pose(euler_xyz, translation) -> Pose:
    return Pose(Rotation.from_euler("xyz", euler_xyz).as_matrix(), np.asarray(translation, dtype=float))


@pytest.fixture
def K():
    return np.array([
        [800.0, 0.0, 320.0],
        [0.0, 780.0, 240.0],
        [0.0, 0.0, 1.0]
    ])


@pytest.fixture
def two_view_scene(K):
    """Two cameras looking at a cloud of points 4-8 units in front of them."""
    rng = np.random.default_rng(42)
    pose1 = Pose.identity()
    pose2 = make_pose([0.05, -0.1, 0.02], [-1.0, 0.1, 0.05])

    points_3d = np.column_stack([
        rng.uniform(-2, 2, 40),
        rng.uniform(-1.5, 1.5, 40),
        rng.uniform(4, 8, 40),
    ])
    P1 = pose1.projection(K)
    P2 = pose2.projection(K)

    return {
        "K": K,
        "pose1": pose1,
        "pose2": pose2,
        "P1": P1,
        "P2": P2,
        "points_3d": points_3d,
        "pts1": project_points(P1, points_3d),
        "pts2": project_points(P2, points_3d),
    }


@pytest.fixture
def multi_view_rig(K):
    """Four cameras on an arc, all facing the origin region at z ~ 6."""
    poses = [
        make_pose([0.0, 0.0, 0.0], [0.0, 0.0, 0.0]),
        make_pose([0.0, -0.15, 0.0], [-1.0, 0.0, 0.1]),
        make_pose([0.1, 0.1, 0.0], [0.8, -0.5, 0.2]),
        make_pose([-0.05, 0.2, 0.03], [1.5, 0.3, -0.2]),
    ]
    return [pose.projection(K) for pose in poses]
