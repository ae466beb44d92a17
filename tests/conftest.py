"""Shared fixtures: synthetic clusters seen through a pinhole camera."""

from pathlib import Path

import numpy as np
import pytest

from vslam_backend.cluster import Cluster
from vslam_backend.config import LoopClosingConfig, PoseGraphConfig
from vslam_backend.loop_closure import ClusterStore, LoopClosingEngine, PoseGraph
from vslam_backend.pose import SE3

CAMERA_MATRIX = np.array(
    [[500.0, 0.0, 320.0], [0.0, 500.0, 240.0], [0.0, 0.0, 1.0]],
    dtype=np.float64,
)


class SyntheticScene:
    """Generates clusters of random ORB-like features with exact geometry.

    Every place is a set of 3D points in front of the camera, each with its
    own random 32-byte descriptor. Keypoints are exact projections, so PnP
    on a revisit recovers the relative pose with all matches as inliers.
    """

    def __init__(self, seed: int = 0, num_features: int = 60) -> None:
        self.rng = np.random.default_rng(seed)
        self.num_features = num_features
        self.camera_matrix = CAMERA_MATRIX.copy()

    def descriptors(self, n: int | None = None) -> np.ndarray:
        n = self.num_features if n is None else n
        return self.rng.integers(0, 256, size=(n, 32), dtype=np.uint8)

    def points(self, n: int | None = None) -> np.ndarray:
        n = self.num_features if n is None else n
        xy = self.rng.uniform(-2.0, 2.0, size=(n, 2))
        z = self.rng.uniform(4.0, 8.0, size=(n, 1))
        return np.hstack([xy, z])

    def project(self, points: np.ndarray) -> np.ndarray:
        projected = points @ self.camera_matrix.T
        return projected[:, :2] / projected[:, 2:3]

    def cluster(
        self,
        cluster_id: int,
        frame_id: int | None = None,
        pose: SE3 | None = None,
        points: np.ndarray | None = None,
        descriptors: np.ndarray | None = None,
    ) -> Cluster:
        """A cluster of a new place (or of the given points/descriptors)."""
        points = self.points() if points is None else points
        descriptors = self.descriptors(len(points)) if descriptors is None else descriptors
        return Cluster(
            id=cluster_id,
            frame_id=cluster_id if frame_id is None else frame_id,
            pose=pose if pose is not None else SE3.identity(),
            keypoints=self.project(points),
            descriptors=descriptors,
            points=points,
        )

    def revisit(
        self,
        cluster: Cluster,
        cluster_id: int,
        relative: SE3 | None = None,
    ) -> Cluster:
        """A cluster observing the same place from a displaced camera.

        Args:
            cluster: The earlier observation
            cluster_id: ID of the new cluster
            relative: T_old_new, pose of the new camera in the old one
        """
        if relative is None:
            relative = self.default_relative()
        points_new = relative.inverse().transform_points(cluster.points)
        return Cluster(
            id=cluster_id,
            frame_id=cluster_id,
            pose=cluster.pose.compose(relative),
            keypoints=self.project(points_new),
            descriptors=cluster.descriptors,
            points=points_new,
        )

    @staticmethod
    def default_relative() -> SE3:
        return SE3.from_rvec_tvec([0.02, -0.01, 0.03], [0.1, 0.05, -0.2])

    @staticmethod
    def pose_at(x: float) -> SE3:
        return SE3(rotation=np.eye(3), translation=[x, 0.0, 0.0])


@pytest.fixture
def scene() -> SyntheticScene:
    return SyntheticScene(seed=42)


@pytest.fixture
def camera_matrix() -> np.ndarray:
    return CAMERA_MATRIX.copy()


@pytest.fixture
def store_dir(tmp_path: Path) -> Path:
    return tmp_path / "loop_closing"


@pytest.fixture
def lc_config(store_dir: Path) -> LoopClosingConfig:
    return LoopClosingConfig(neighbors=2, min_inliers=20, store_directory=store_dir)


@pytest.fixture
def pose_graph(camera_matrix: np.ndarray) -> PoseGraph:
    return PoseGraph(camera_matrix, PoseGraphConfig(tick_rate=1000.0))


@pytest.fixture
def engine(pose_graph: PoseGraph, lc_config: LoopClosingConfig) -> LoopClosingEngine:
    engine = LoopClosingEngine(
        graph=pose_graph.cluster_handle,
        store=ClusterStore(lc_config.store_directory),
        config=lc_config,
    )
    yield engine
    engine.stop()
