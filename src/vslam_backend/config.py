"""Configuration for the loop closing engine and the pose graph.

Configuration is a set of dataclasses with defaults, optionally loaded
from a YAML file:

    camera:
      intrinsics: [458.654, 457.296, 367.215, 248.375]  # fx, fy, cx, cy
    loop_closing:
      neighbors: 5
      min_inliers: 30
    hash:
      n_projections: 2
    pose_graph:
      sequential_inliers: 100

The camera may alternatively be given as a full 3x3 ``camera_matrix``.
"""

from __future__ import annotations

import tempfile
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import numpy as np
import yaml

from .errors import ConfigurationError


def _default_store_directory() -> Path:
    return Path(tempfile.gettempdir()) / "vslam_backend" / "loop_closing"


@dataclass
class CameraIntrinsics:
    """Camera intrinsic parameters (pinhole model)."""

    fx: float  # Focal length x (pixels)
    fy: float  # Focal length y (pixels)
    cx: float  # Principal point x (pixels)
    cy: float  # Principal point y (pixels)

    def to_matrix(self) -> np.ndarray:
        """Return 3x3 camera intrinsic matrix K."""
        return np.array(
            [[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )


@dataclass
class HashConfig:
    """Configuration for the global hash descriptor."""

    max_features: int = 200  # Descriptor rows used to build the basis
    n_projections: int = 2  # Random projection vectors
    seed: int = 0  # Seed for the random basis


@dataclass
class LoopClosingConfig:
    """Configuration for loop closure detection."""

    neighbors: int = 5  # Temporal neighbors checked / excluded from search
    ratio: float = 0.8  # Ratio test threshold
    min_match_percentage: int = 50  # Neighbors must match above this
    reprojection_error: float = 1.3  # RANSAC threshold (pixels)
    ransac_iterations: int = 100  # RANSAC iteration cap
    max_inliers: int = 100  # Inlier count cap
    min_inliers: int = 30  # Inliers needed to confirm a loop closure
    n_candidates: int = 5  # Hash candidates verified per cluster
    tick_rate: float = 500.0  # Polling rate of the processing loop (Hz)
    store_directory: Path = field(default_factory=_default_store_directory)

    def __post_init__(self) -> None:
        self.store_directory = Path(self.store_directory)
        if self.neighbors < 0:
            raise ConfigurationError("loop_closing.neighbors must be >= 0")
        if not 0.0 < self.ratio <= 1.0:
            raise ConfigurationError("loop_closing.ratio must be in (0, 1]")
        if self.tick_rate <= 0:
            raise ConfigurationError("loop_closing.tick_rate must be positive")


@dataclass
class PoseGraphConfig:
    """Configuration for the pose graph."""

    sequential_inliers: int = 100  # Inlier count assigned to sequential edges
    max_iterations: int = 50  # Optimizer iterations (per parameter)
    tick_rate: float = 500.0  # Polling rate of the vertex insertion loop (Hz)
    optimize_on_loop: bool = True  # Optimize after a loop edge once idle

    def __post_init__(self) -> None:
        if self.sequential_inliers < 0:
            raise ConfigurationError("pose_graph.sequential_inliers must be >= 0")
        if self.tick_rate <= 0:
            raise ConfigurationError("pose_graph.tick_rate must be positive")


@dataclass
class BackendConfig:
    """Complete backend configuration.

    Attributes:
        camera_matrix: 3x3 camera intrinsics, required
        loop_closing: Loop closing engine settings
        hash: Hash descriptor settings
        pose_graph: Pose graph settings
    """

    camera_matrix: np.ndarray
    loop_closing: LoopClosingConfig = field(default_factory=LoopClosingConfig)
    hash: HashConfig = field(default_factory=HashConfig)
    pose_graph: PoseGraphConfig = field(default_factory=PoseGraphConfig)

    def __post_init__(self) -> None:
        self.camera_matrix = validate_camera_matrix(self.camera_matrix)


def validate_camera_matrix(camera_matrix: Any) -> np.ndarray:
    """Return the camera matrix as a 3x3 float64 array.

    Raises:
        ConfigurationError: If the matrix is missing or malformed
    """
    if camera_matrix is None:
        raise ConfigurationError("Camera matrix is required")

    try:
        K = np.asarray(camera_matrix, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid camera matrix: {e}") from e

    if K.shape != (3, 3):
        raise ConfigurationError(f"Camera matrix must be 3x3, got {K.shape}")
    if not np.all(np.isfinite(K)) or K[0, 0] <= 0 or K[1, 1] <= 0:
        raise ConfigurationError("Camera matrix must have positive focal lengths")

    return K


def _build_section(cls: type, data: dict | None, name: str):
    """Instantiate a config dataclass from a YAML section."""
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigurationError(f"Section '{name}' must be a mapping")

    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown keys in section '{name}': {', '.join(sorted(unknown))}"
        )
    return cls(**data)


def _parse_camera(data: dict | None) -> np.ndarray:
    if not isinstance(data, dict):
        raise ConfigurationError("Missing 'camera' section")

    if "camera_matrix" in data:
        return validate_camera_matrix(data["camera_matrix"])

    # EuRoC sensor.yaml style [fu, fv, cu, cv]
    intrinsics_list = data.get("intrinsics")
    if intrinsics_list is None or len(intrinsics_list) != 4:
        raise ConfigurationError(
            "Camera needs 'camera_matrix' (3x3) or 'intrinsics' [fx, fy, cx, cy]"
        )

    intrinsics = CameraIntrinsics(
        fx=float(intrinsics_list[0]),
        fy=float(intrinsics_list[1]),
        cx=float(intrinsics_list[2]),
        cy=float(intrinsics_list[3]),
    )
    return validate_camera_matrix(intrinsics.to_matrix())


def config_from_dict(data: dict) -> BackendConfig:
    """Build a BackendConfig from a parsed YAML document.

    Raises:
        ConfigurationError: If the camera is missing or a section is invalid
    """
    if not isinstance(data, dict):
        raise ConfigurationError("Configuration must be a mapping")

    return BackendConfig(
        camera_matrix=_parse_camera(data.get("camera")),
        loop_closing=_build_section(
            LoopClosingConfig, data.get("loop_closing"), "loop_closing"
        ),
        hash=_build_section(HashConfig, data.get("hash"), "hash"),
        pose_graph=_build_section(
            PoseGraphConfig, data.get("pose_graph"), "pose_graph"
        ),
    )


def load_config(path: str | Path) -> BackendConfig:
    """Load backend configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file

    Returns:
        Parsed configuration

    Raises:
        FileNotFoundError: If the file doesn't exist
        ConfigurationError: If the content is invalid
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path, "r") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    return config_from_dict(data or {})
