"""
Configuration for the reconstruction driver.

Handles loading and saving of the configuration from YAML files.
"""

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

import numpy as np
import yaml

from .ransac import RansacParameters

logger = logging.getLogger(__name__)


@dataclass
class CameraConfig:
    """Camera intrinsic parameters, shared by all images."""
    fx: float  # Focal length in x (pixels)
    fy: float  # Focal length in y (pixels)
    cx: float  # Principal point x (pixels)
    cy: float  # Principal point y (pixels)
    downscale: float = 1.0  # Image downscale factor, also applied to the intrinsics

    def matrix(self) -> np.ndarray:
        """Intrinsic matrix K for the downscaled images."""
        scale = 1.0 / self.downscale
        return np.array([
            [self.fx * scale, 0.0, self.cx * scale],
            [0.0, self.fy * scale, self.cy * scale],
            [0.0, 0.0, 1.0]
        ])


@dataclass
class RansacConfig:
    sample_size: int = 8
    inlier_threshold: float = 1.0  # squared pixel distance to the epipolar line
    max_iterations: int = 1000
    min_inlier_fraction: float = 0.0
    seed: Optional[int] = None

    def parameters(self) -> RansacParameters:
        return RansacParameters(
            sample_size=self.sample_size,
            inlier_threshold=self.inlier_threshold,
            max_iterations=self.max_iterations,
            min_inlier_fraction=self.min_inlier_fraction,
        )

    def rng(self) -> np.random.Generator:
        return np.random.default_rng(self.seed)


@dataclass
class TriangulationConfig:
    refine: bool = True
    max_iterations: int = 200
    tolerance: float = 1e-6


@dataclass
class MatchingConfig:
    method: str = "flann"  # 'flann' or 'bf'
    lowe_ratio: float = 0.8
    n_trees: int = 5
    n_checks: int = 50


@dataclass
class OutputConfig:
    ply_path: str = "sparse.ply"


@dataclass
class Config:
    """
    Main configuration of the reconstruction driver.

    Example YAML structure:
        camera:
          fx: 2393.95
          fy: 2398.12
          cx: 932.38
          cy: 628.26
          downscale: 2.0
        ransac:
          inlier_threshold: 1.0
          max_iterations: 2000
          seed: 0
        triangulation:
          refine: true
        matching:
          method: flann
          lowe_ratio: 0.8
        output:
          ply_path: sparse.ply
    """
    camera: CameraConfig
    ransac: RansacConfig = field(default_factory=RansacConfig)
    triangulation: TriangulationConfig = field(default_factory=TriangulationConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    def __post_init__(self):
        if self.matching.method not in ("flann", "bf"):
            raise ValueError(f"Unknown matching method: {self.matching.method}")
        if self.camera.downscale <= 0:
            raise ValueError(f"downscale must be positive, got {self.camera.downscale}")

    @classmethod
    def from_dict(cls, data: dict, base_dir: Optional[Path] = None) -> "Config":
        if 'camera' not in data:
            raise ValueError("Configuration is missing the 'camera' section")

        output = OutputConfig(**data.get('output', {}))
        if base_dir is not None and not Path(output.ply_path).is_absolute():
            output.ply_path = str(base_dir / output.ply_path)

        return cls(
            camera=CameraConfig(**data['camera']),
            ransac=RansacConfig(**data.get('ransac', {})),
            triangulation=TriangulationConfig(**data.get('triangulation', {})),
            matching=MatchingConfig(**data.get('matching', {})),
            output=output,
        )

    @classmethod
    def from_yaml(cls, config_path: str) -> "Config":
        """
        Load configuration from a YAML file.

        Relative output paths are resolved against the config file location.
        """
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}

        logger.info(f"Loading configuration from {config_path}")
        try:
            return cls.from_dict(data, base_dir=path.parent)
        except TypeError as e:
            # unknown keys in one of the sections
            raise ValueError(f"Invalid configuration in {config_path}: {e}") from e

    def to_yaml(self, config_path: str) -> None:
        """Save configuration to a YAML file."""
        with open(config_path, 'w') as f:
            yaml.dump(asdict(self), f, default_flow_style=False, sort_keys=False)

        logger.info(f"Configuration saved to {config_path}")
