#!/usr/bin/env python3
"""Demo of loop closing on a synthetic square trajectory.

A camera drives around a square, seeing a fresh set of landmarks at every
keyframe, and finally returns to its starting place. The simulated
front-end accumulates drift, so the reported poses don't close the loop.
The backend recognizes the revisit, adds a loop closure edge and the pose
graph pulls the trajectory back together.

Usage:
    uv run python examples/synthetic_loop_demo.py
    uv run python examples/synthetic_loop_demo.py --no-viewer
"""

import argparse
import logging
import tempfile
import threading
from pathlib import Path

import numpy as np

from vslam_backend import (
    SE3,
    BackendConfig,
    Cluster,
    LoopClosingConfig,
    SLAMBackend,
)

logger = logging.getLogger("synthetic_loop_demo")

CAMERA_MATRIX = np.array(
    [[458.654, 0.0, 367.215], [0.0, 457.296, 248.375], [0.0, 0.0, 1.0]]
)


def make_place(rng: np.random.Generator, n_features: int) -> tuple[np.ndarray, np.ndarray]:
    """Random landmarks in front of the camera and their ORB-like descriptors."""
    xy = rng.uniform(-3.0, 3.0, size=(n_features, 2))
    z = rng.uniform(4.0, 10.0, size=(n_features, 1))
    descriptors = rng.integers(0, 256, size=(n_features, 32), dtype=np.uint8)
    return np.hstack([xy, z]), descriptors


def project(points: np.ndarray) -> np.ndarray:
    projected = points @ CAMERA_MATRIX.T
    return projected[:, :2] / projected[:, 2:3]


def square_trajectory(side: int) -> list[SE3]:
    """Camera poses along a square of the given side (1 m steps)."""
    poses = []
    yaw = 0.0
    position = np.zeros(3)
    for leg in range(4):
        for _ in range(side):
            R = SE3.from_rvec_tvec([0.0, yaw, 0.0], [0.0, 0.0, 0.0]).rotation
            poses.append(SE3(rotation=R, translation=position.copy()))
            position = position + R @ np.array([0.0, 0.0, 1.0])
        yaw += np.pi / 2
    return poses


def main() -> None:
    """Run the synthetic loop closure demo."""
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--side", type=int, default=6, help="Keyframes per side")
    parser.add_argument("--features", type=int, default=150, help="Features per keyframe")
    parser.add_argument("--drift", type=float, default=0.03, help="Drift per step (m)")
    parser.add_argument("--no-viewer", action="store_true", help="Don't start Rerun")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(threadName)s %(name)s: %(message)s",
    )

    rng = np.random.default_rng(0)
    store_directory = Path(tempfile.mkdtemp()) / "loop_closing"
    config = BackendConfig(
        camera_matrix=CAMERA_MATRIX,
        loop_closing=LoopClosingConfig(store_directory=store_directory),
    )

    visualizer = None
    if not args.no_viewer:
        from vslam_backend.visualization import RerunVisualizer

        visualizer = RerunVisualizer("vslam-backend-synthetic-loop")

    true_poses = square_trajectory(args.side)
    places = [make_place(rng, args.features) for _ in true_poses]

    # Return to the first place, observed from its true pose
    true_poses.append(true_poses[0])
    places.append(places[0])

    wait = threading.Event()
    with SLAMBackend(config, visualizer=visualizer) as backend:
        for cluster_id, (true_pose, (points, descriptors)) in enumerate(
            zip(true_poses, places)
        ):
            drift = SE3(rotation=np.eye(3), translation=[args.drift * cluster_id, 0.0, 0.0])
            cluster = Cluster(
                id=cluster_id,
                frame_id=cluster_id,
                pose=drift.compose(true_pose),
                keypoints=project(points),
                descriptors=descriptors,
                points=points,
            )
            backend.add_cluster(cluster)
            wait.wait(0.05)

        # Let both threads drain their queues
        while backend.stats.loop_closing_queue or backend.stats.pose_graph_queue:
            wait.wait(0.05)
        wait.wait(0.5)

        poses = backend.optimize()
        stats = backend.stats

    last_id = len(true_poses) - 1
    error = np.linalg.norm(poses[last_id].translation - poses[0].translation)
    logger.info(
        "%d clusters, %d edges, %d loop closures",
        stats.num_clusters,
        stats.num_edges,
        stats.num_loop_closures,
    )
    logger.info(
        "Loop gap after optimization: %.3f m (drift was %.3f m)",
        error,
        args.drift * last_id,
    )


if __name__ == "__main__":
    main()
