"""
Tests for the command-line driver that do not need real images.
"""

import sys

import numpy as np
import pytest
import yaml
from numpy.testing import assert_allclose

from conftest import make_pose

from sfm import cli, fundamental
from sfm.config import Config
from sfm.errors import NumericalFailureError
from sfm.fundamental import fundamental_matrix_from_poses
from sfm.reconstruction import project_points


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    with open(path, "w") as f:
        yaml.safe_dump({"camera": {"fx": 800.0, "fy": 780.0, "cx": 320.0, "cy": 240.0}}, f)
    return path


def run_cli(monkeypatch, *args):
    monkeypatch.setattr(sys, "argv", ["sfm-reconstruct", *args])
    return cli.main()


class TestMain:

    def test_missing_image_dir(self, monkeypatch, tmp_path, config_file):
        assert run_cli(monkeypatch, str(tmp_path / "missing"), "--config", str(config_file)) == 1

    def test_missing_config(self, monkeypatch, tmp_path):
        assert run_cli(monkeypatch, str(tmp_path), "--config", str(tmp_path / "missing.yaml")) == 1

    def test_too_few_images(self, monkeypatch, tmp_path, config_file):
        assert run_cli(monkeypatch, str(tmp_path), "--config", str(config_file)) == 1

    def test_invalid_config(self, monkeypatch, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("camera:\n  fx: 1.0\n")
        assert run_cli(monkeypatch, str(tmp_path), "--config", str(path)) == 1

    def test_writes_point_cloud(self, monkeypatch, tmp_path, config_file):
        cloud = np.random.default_rng(0).normal(0.0, 1.0, (50, 3))
        monkeypatch.setattr(cli, "load_images", lambda *args: [np.zeros((8, 8, 3))] * 2)
        monkeypatch.setattr(cli, "reconstruct_sequence", lambda images, config: cloud)

        out = tmp_path / "cloud.ply"
        assert run_cli(monkeypatch, str(tmp_path), "--config", str(config_file), "-o", str(out)) == 0
        assert out.exists()


class TestLoadImages:

    def test_missing_directory(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            cli.load_images(str(tmp_path / "missing"), 1.0)

    def test_skips_other_files(self, tmp_path):
        (tmp_path / "notes.txt").write_text("not an image")
        assert cli.load_images(str(tmp_path), 1.0) == []


def test_reconstruct_sequence_stops_without_matches(monkeypatch):
    """A pair with too few matches ends the sequence with an empty cloud."""
    config = Config.from_dict({"camera": {"fx": 800.0, "fy": 780.0, "cx": 320.0, "cy": 240.0}})
    monkeypatch.setattr(cli, "match_keypoints_flann", lambda *args, **kwargs: (np.zeros((0, 2)), np.zeros((0, 2))))

    cloud = cli.reconstruct_sequence([np.zeros((8, 8, 3))] * 3, config)
    assert cloud.shape == (0, 3)


def _camera_config(**ransac):
    return Config.from_dict({
        "camera": {"fx": 800.0, "fy": 780.0, "cx": 320.0, "cy": 240.0},
        "ransac": dict({"seed": 0, "max_iterations": 200}, **ransac),
    })


def _sequence_matcher(observations):
    """Stand-in for feature matching: images are indices into noise free observations."""
    def match(img_a, img_b, **kwargs):
        return observations[img_a], observations[img_b]
    return match


class TestReconstructSequence:
    """Pose recovery, chaining and triangulation on synthetic image pairs."""

    def test_two_views(self, monkeypatch, two_view_scene):
        s = two_view_scene
        monkeypatch.setattr(cli, "match_keypoints_flann", _sequence_matcher([s["pts1"], s["pts2"]]))

        cloud = cli.reconstruct_sequence([0, 1], _camera_config())

        # relative translations have unit length
        scale = np.linalg.norm(s["pose2"].translation)
        assert cloud.shape == s["points_3d"].shape
        assert_allclose(cloud, s["points_3d"] / scale, atol=1e-6)

    def test_three_views_chained(self, monkeypatch, two_view_scene):
        """The second pair is expressed in the frame of the first camera."""
        s = two_view_scene
        scale = np.linalg.norm(s["pose2"].translation)
        direction = np.array([1.0, -0.05, 0.02])
        # same baseline length so both pairs share one scale
        step = make_pose([0.02, -0.05, 0.01], -scale * direction / np.linalg.norm(direction))
        pose3 = step * s["pose2"]
        pts3 = project_points(pose3.projection(s["K"]), s["points_3d"])
        monkeypatch.setattr(cli, "match_keypoints_flann", _sequence_matcher([s["pts1"], s["pts2"], pts3]))

        cloud = cli.reconstruct_sequence([0, 1, 2], _camera_config())

        expected = s["points_3d"] / scale
        assert cloud.shape == (2 * len(expected), 3)
        assert_allclose(cloud, np.vstack([expected, expected]), atol=1e-6)

    def test_without_refinement(self, monkeypatch, two_view_scene):
        s = two_view_scene
        monkeypatch.setattr(cli, "match_keypoints_flann", _sequence_matcher([s["pts1"], s["pts2"]]))
        config = _camera_config()
        config.triangulation.refine = False

        cloud = cli.reconstruct_sequence([0, 1], config)
        assert_allclose(cloud, s["points_3d"] / np.linalg.norm(s["pose2"].translation), atol=1e-6)


class TestRelativePose:

    def test_later_witness_used(self, monkeypatch, two_view_scene):
        """A witness failing the cheirality test does not end the run."""
        s = two_view_scene
        F = fundamental_matrix_from_poses(s["pose1"], s["pose2"], s["K"], s["K"])
        witnesses = []

        def pose_from_fundamental_matrix(F, x, x_, K1, K2):
            witnesses.append(x)
            if len(witnesses) < 3:
                raise NumericalFailureError("no candidate in front of both cameras")
            return fundamental.pose_from_fundamental_matrix(F, x, x_, K1, K2)

        monkeypatch.setattr(cli, "pose_from_fundamental_matrix", pose_from_fundamental_matrix)
        pose = cli._relative_pose(F, s["pts1"], s["pts2"], s["K"])

        assert len(witnesses) == 3
        assert_allclose(witnesses[2], s["pts1"][2])
        assert_allclose(pose.rotation, s["pose2"].rotation, atol=1e-9)

    def test_no_witness_passes(self, monkeypatch, two_view_scene):
        s = two_view_scene

        def always_fails(*args):
            raise NumericalFailureError("no candidate in front of both cameras")

        monkeypatch.setattr(cli, "pose_from_fundamental_matrix", always_fails)
        with pytest.raises(NumericalFailureError):
            cli._relative_pose(np.eye(3), s["pts1"][:4], s["pts2"][:4], s["K"])
